"""
Configuration management for neodeck.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

DEFAULT_BASE_URL = "https://api.pulumi.com"


@dataclass
class ServiceConfig:
    """Configuration for the remote task service."""

    base_url: str = DEFAULT_BASE_URL
    organization: str | None = None
    access_token: str | None = None
    page_size: int = 100
    request_timeout: float = 30.0
    max_list_items: int = 10000  # Pagination safety cap


@dataclass
class PollingConfig:
    """Cadence and stop thresholds for task polling."""

    tick_ms: int = 100
    active_interval_ticks: int = 5  # ~500ms
    background_interval_ticks: int = 30  # ~3s
    max_active_polls: int = 60  # ~30s hard timeout
    stable_poll_limit: int = 20

    @property
    def tick_seconds(self) -> float:
        return self.tick_ms / 1000.0


@dataclass
class ExecutorConfig:
    """Configuration for the pty-backed command runner."""

    default_command: str = "pulumi"
    rows: int = 50
    cols: int = 200
    env: dict[str, str] = field(default_factory=dict)
    terminate_grace_seconds: float = 2.0
    read_chunk: int = 4096


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before retrying after the 0-indexed ``attempt``."""
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)


@dataclass
class LoggingConfig:
    """Configuration for file logging."""

    level: str = "INFO"
    log_file: str | None = None  # Defaults to ~/.cache/neodeck/app.log


@dataclass
class NeodeckConfig:
    """Main application configuration."""

    service: ServiceConfig = field(default_factory=ServiceConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "NeodeckConfig":
        """Load configuration from file."""
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path) as f:
                if config_path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NeodeckConfig":
        """Build a config from plain nested dictionaries."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        sections = {
            "service": ServiceConfig,
            "polling": PollingConfig,
            "executor": ExecutorConfig,
            "retry": RetryConfig,
            "logging": LoggingConfig,
        }
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            section_cls = sections.get(key)
            if section_cls is None:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section '{key}' must be a mapping")
            try:
                kwargs[key] = section_cls(**value)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{key}' section: {e}") from e

        config = cls(**kwargs)
        config.validate()
        return config

    def validate(self) -> None:
        """Reject settings the scheduler cannot work with."""
        positive = {
            "polling.tick_ms": self.polling.tick_ms,
            "polling.active_interval_ticks": self.polling.active_interval_ticks,
            "polling.background_interval_ticks": self.polling.background_interval_ticks,
            "polling.max_active_polls": self.polling.max_active_polls,
            "polling.stable_poll_limit": self.polling.stable_poll_limit,
            "service.page_size": self.service.page_size,
            "service.request_timeout": self.service.request_timeout,
            "executor.rows": self.executor.rows,
            "executor.cols": self.executor.cols,
            "retry.max_attempts": self.retry.max_attempts,
        }
        for name, value in positive.items():
            if value is None or value <= 0:
                raise ConfigurationError(f"'{name}' must be positive, got {value!r}")

    def apply_env(self, environ: dict[str, str] | None = None) -> None:
        """Overlay environment variables on top of file settings."""
        env = os.environ if environ is None else environ

        if env.get("PULUMI_ACCESS_TOKEN"):
            self.service.access_token = env["PULUMI_ACCESS_TOKEN"]
        if env.get("PULUMI_ORG"):
            self.service.organization = env["PULUMI_ORG"]
        if env.get("PULUMI_BACKEND_URL"):
            self.service.base_url = env["PULUMI_BACKEND_URL"].rstrip("/")
        if env.get("NEODECK_LOG_LEVEL"):
            self.logging.level = env["NEODECK_LOG_LEVEL"].upper()

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to file. Access tokens are never written."""
        data = asdict(self)
        data["service"]["access_token"] = None

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w") as f:
                if config_path.suffix.lower() == ".json":
                    json.dump(data, f, indent=2)
                else:
                    yaml.dump(data, f, default_flow_style=False, indent=2)
        except Exception as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e


class ConfigManager:
    """Manages user configuration."""

    CONFIG_FILENAME = "config.yaml"

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or self.default_config_dir() / self.CONFIG_FILENAME
        self._config: NeodeckConfig | None = None

    @staticmethod
    def default_config_dir() -> Path:
        base = os.environ.get("XDG_CONFIG_HOME")
        root = Path(base) if base else Path.home() / ".config"
        return root / "neodeck"

    @property
    def config(self) -> NeodeckConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load_config()
        return self._config

    def load_config(self, environ: dict[str, str] | None = None) -> NeodeckConfig:
        """Load configuration from file, falling back to defaults."""
        if self.config_path.exists():
            self._config = NeodeckConfig.load_from_file(self.config_path)
        else:
            self._config = NeodeckConfig()

        self._config.apply_env(environ)
        return self._config

    def save_config(self) -> None:
        if self._config is None:
            raise ConfigurationError("No configuration to save")
        self._config.save_to_file(self.config_path)

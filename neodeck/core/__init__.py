"""
Core functionality for neodeck.
"""

from .config import (
    ConfigManager,
    ExecutorConfig,
    LoggingConfig,
    NeodeckConfig,
    PollingConfig,
    RetryConfig,
    ServiceConfig,
)
from .exceptions import (
    CommandValidationError,
    ConfigurationError,
    NeodeckError,
    NoAccessTokenError,
    ProcessError,
    ProcessSpawnError,
    ServiceConnectionError,
    ServiceError,
    ServiceParseError,
    ServiceResponseError,
)
from .logging import read_log_lines, setup_logging

__all__ = [
    "CommandValidationError",
    "ConfigManager",
    "ConfigurationError",
    "ExecutorConfig",
    "LoggingConfig",
    "NeodeckConfig",
    "NeodeckError",
    "NoAccessTokenError",
    "PollingConfig",
    "ProcessError",
    "ProcessSpawnError",
    "RetryConfig",
    "ServiceConfig",
    "ServiceConnectionError",
    "ServiceError",
    "ServiceParseError",
    "ServiceResponseError",
    "read_log_lines",
    "setup_logging",
]

"""
Tests for configuration loading, validation and environment overlay.
"""

import json

import pytest
import yaml

from neodeck.core.config import ConfigManager, NeodeckConfig
from neodeck.core.exceptions import ConfigurationError


def test_defaults_match_polling_cadence():
    config = NeodeckConfig()
    assert config.polling.tick_ms == 100
    assert config.polling.tick_seconds == pytest.approx(0.1)
    assert config.polling.active_interval_ticks == 5
    assert config.polling.background_interval_ticks == 30
    assert config.polling.max_active_polls == 60
    assert config.polling.stable_poll_limit == 20
    assert config.executor.rows == 50
    assert config.executor.cols == 200


def test_load_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "service": {"organization": "acme", "page_size": 25},
                "polling": {"active_interval_ticks": 3},
                "executor": {"env": {"PULUMI_CONFIG_PASSPHRASE": "x"}},
            }
        )
    )
    config = NeodeckConfig.load_from_file(path)
    assert config.service.organization == "acme"
    assert config.service.page_size == 25
    assert config.polling.active_interval_ticks == 3
    assert config.polling.background_interval_ticks == 30
    assert config.executor.env == {"PULUMI_CONFIG_PASSPHRASE": "x"}


def test_load_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"retry": {"max_attempts": 5}}))
    assert NeodeckConfig.load_from_file(path).retry.max_attempts == 5


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert NeodeckConfig.load_from_file(path) == NeodeckConfig()


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        NeodeckConfig.load_from_file(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    "data",
    [
        {"unknown": {}},
        {"service": "not a mapping"},
        {"polling": {"no_such_field": 1}},
        {"polling": {"active_interval_ticks": 0}},
        {"polling": {"max_active_polls": -1}},
        ["not", "a", "mapping"],
    ],
)
def test_invalid_settings_rejected(data):
    with pytest.raises(ConfigurationError):
        NeodeckConfig.from_dict(data)


def test_env_overlay():
    config = NeodeckConfig()
    config.apply_env(
        {
            "PULUMI_ACCESS_TOKEN": "pul-123",
            "PULUMI_ORG": "acme",
            "PULUMI_BACKEND_URL": "https://api.internal/",
            "NEODECK_LOG_LEVEL": "debug",
        }
    )
    assert config.service.access_token == "pul-123"
    assert config.service.organization == "acme"
    assert config.service.base_url == "https://api.internal"
    assert config.logging.level == "DEBUG"


def test_empty_env_values_ignored():
    config = NeodeckConfig()
    config.apply_env({"PULUMI_ACCESS_TOKEN": ""})
    assert config.service.access_token is None


def test_save_round_trip_never_writes_token(tmp_path):
    path = tmp_path / "nested" / "config.yaml"
    config = NeodeckConfig()
    config.service.organization = "acme"
    config.service.access_token = "secret"
    config.save_to_file(path)

    assert "secret" not in path.read_text()
    loaded = NeodeckConfig.load_from_file(path)
    assert loaded.service.organization == "acme"
    assert loaded.service.access_token is None
    # Saving does not mutate the live config.
    assert config.service.access_token == "secret"


def test_config_manager_defaults_when_file_absent(tmp_path):
    manager = ConfigManager(tmp_path / "config.yaml")
    config = manager.load_config(environ={"PULUMI_ORG": "from-env"})
    assert config.service.organization == "from-env"
    assert manager.config is config


def test_config_manager_default_dir_honours_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert ConfigManager.default_config_dir() == tmp_path / "neodeck"
    assert ConfigManager().config_path == tmp_path / "neodeck" / "config.yaml"


def test_config_manager_save(tmp_path):
    manager = ConfigManager(tmp_path / "config.yaml")
    with pytest.raises(ConfigurationError):
        manager.save_config()
    manager.load_config(environ={})
    manager.config.service.organization = "saved"
    manager.save_config()
    assert ConfigManager(tmp_path / "config.yaml").load_config(environ={}).service.organization == "saved"

"""
Configuration loading and validation.
"""
import os
from pathlib import Path

import pytest

from signal_autoclose.config.config import Config, load_config
from signal_autoclose.config.dotenv_loader import load_dotenv_files
from signal_autoclose.domain.models import NotificationChannel

CONFIG_PATH = Path(__file__).resolve().parents[2] / "signal_autoclose" / "config" / "config.yaml"


def test_bundled_config_loads(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()

    assert config.environment == "test"
    assert config.expiration.default_grace_period_minutes == 30
    assert config.expiration.warning_minutes_before == 60
    assert config.notifications.default_channel == NotificationChannel.IN_APP
    assert config.tasks.max_attempts == 1
    assert config.database.url is None


def test_database_url_env_override(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/autoclose")

    config = load_config(str(CONFIG_PATH))

    assert config.database.url == "postgresql://localhost/autoclose"


def test_yaml_variable_expansion(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setenv("HOOK_URL", "https://hooks.example/n")
    path = tmp_path / "config.yaml"
    path.write_text("environment: dev\nnotifications:\n  webhook_url: ${HOOK_URL}\n")

    config = Config.from_yaml(path)

    assert config.notifications.webhook_url == "https://hooks.example/n"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.from_yaml(tmp_path / "nope.yaml")


class TestValidation:

    def test_sqlite_rejected_in_prod(self):
        config = Config(environment="prod", database={"url": "sqlite:///x.db"})

        with pytest.raises(ValueError, match="SQLite"):
            config.validate_config()

    def test_slack_requires_url(self):
        config = Config(environment="dev", monitoring={"alert_methods": ["log", "slack"]})

        with pytest.raises(ValueError, match="slack_webhook_url"):
            config.validate_config()

    def test_webhook_channel_requires_url(self):
        config = Config(environment="dev", notifications={"default_channel": "WEBHOOK"})

        with pytest.raises(ValueError, match="webhook_url"):
            config.validate_config()

    def test_grace_range(self):
        with pytest.raises(ValueError):
            Config(environment="dev", expiration={"default_grace_period_minutes": 2000})

    def test_unknown_alert_method(self):
        with pytest.raises(ValueError):
            Config(environment="dev", monitoring={"alert_methods": ["pager"]})


class TestDotenv:

    def test_noop_in_prod(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "prod")
        (tmp_path / ".env").write_text("AUTOCLOSE_TEST_VAR=1\n")

        assert load_dotenv_files(repo_root=tmp_path) == []

    def test_local_overrides_base(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "dev")
        monkeypatch.setenv("AUTOCLOSE_TEST_VAR", "preset")
        (tmp_path / ".env").write_text("AUTOCLOSE_TEST_VAR=base\n")
        (tmp_path / ".env.local").write_text("AUTOCLOSE_TEST_VAR=local\n")

        loaded = load_dotenv_files(repo_root=tmp_path)

        assert [p.name for p in loaded] == [".env", ".env.local"]
        assert os.environ["AUTOCLOSE_TEST_VAR"] == "local"

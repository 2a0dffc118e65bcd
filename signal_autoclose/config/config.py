"""
Configuration models for the signal auto-close engine.

Uses Pydantic for validation and type safety.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
import os
import re
import yaml

from signal_autoclose.domain.models import NotificationChannel


class DatabaseConfig(BaseSettings):
    """Persistence store configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # postgresql:// in production; sqlite:// accepted for local runs and tests
    url: Optional[str] = None
    echo: bool = False


class ExpirationConfig(BaseSettings):
    """Expiration policy and schedule configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # Grace window applied when a task marks a signal expired (0 = close immediately)
    default_grace_period_minutes: int = Field(default=30, ge=0, le=1440)
    warning_minutes_before: int = Field(default=60, ge=5, le=1440)

    # Scheduler cadence
    check_interval_seconds: int = Field(default=60, ge=5, le=3600)
    grace_check_interval_seconds: int = Field(default=60, ge=5, le=3600)
    warning_interval_seconds: int = Field(default=300, ge=5, le=86400)


class NotificationsConfig(BaseSettings):
    """Notification delivery configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_channel: NotificationChannel = NotificationChannel.IN_APP
    webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)

    # Width of the time bucket used in notification dedupe keys
    dedupe_window_minutes: int = Field(default=60, ge=1, le=1440)


class TasksConfig(BaseSettings):
    """In-process task queue configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    max_attempts: int = Field(default=1, ge=1, le=10)
    max_finished_jobs: int = Field(default=1000, ge=1)


class MonitoringConfig(BaseSettings):
    """Logging and operator alert configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    # Alert delivery
    alert_methods: List[str] = ["log"]
    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None

    @field_validator("alert_methods")
    @classmethod
    def _known_methods(cls, v: List[str]) -> List[str]:
        unknown = set(v) - {"log", "slack", "discord"}
        if unknown:
            raise ValueError(f"Unknown alert methods: {sorted(unknown)}")
        return v


class ApiConfig(BaseSettings):
    """HTTP read surface configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    expiration: ExpirationConfig = Field(default_factory=ExpirationConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown variables are left as written
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("database", {})
            config_dict["database"]["url"] = db_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform cross-section validation checks."""
        if "slack" in self.monitoring.alert_methods and not self.monitoring.slack_webhook_url:
            raise ValueError("alert_methods includes 'slack' but slack_webhook_url is not set")
        if "discord" in self.monitoring.alert_methods and not self.monitoring.discord_webhook_url:
            raise ValueError("alert_methods includes 'discord' but discord_webhook_url is not set")
        if (
            self.notifications.default_channel == NotificationChannel.WEBHOOK
            and not self.notifications.webhook_url
        ):
            raise ValueError("default_channel is WEBHOOK but notifications.webhook_url is not set")
        if self.environment == "prod" and self.database.url and self.database.url.startswith("sqlite"):
            raise ValueError("SQLite is not allowed in prod; set DATABASE_URL to a postgresql:// URL")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses the bundled config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from signal_autoclose.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config

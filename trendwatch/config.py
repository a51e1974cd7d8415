"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

PROVIDERS = ("alpha_vantage", "yahoo_finance")


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/trendwatch.db"


@dataclass
class DataSourceConfig:
    """Market data provider configuration."""

    provider: str = "alpha_vantage"
    api_key: Optional[str] = None
    base_url: str = "https://www.alphavantage.co/query"
    timeout_seconds: float = 30.0
    history_years: int = 5
    logo_enabled: bool = True
    logo_base_url: str = "https://api.elbstream.com/logos/symbol"


@dataclass
class PacingConfig:
    """Batch sizes and delays used against the provider's call budget."""

    bulk_batch_size: int = 100
    bulk_delay_ms: int = 500
    chunk_size: int = 5
    call_delay_ms: int = 100
    instrument_delay_ms: int = 200
    chunk_delay_ms: int = 1000
    chart_batch_size: int = 1000


@dataclass
class DiscordNotificationConfig:
    """Discord notification settings."""

    webhook_url: Optional[str] = None
    mention_on_high_priority: bool = True
    include_chart_link: bool = True


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    discord: DiscordNotificationConfig = field(
        default_factory=DiscordNotificationConfig
    )


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    max_error_length: int = 1000
    max_errors: int = 100


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    data_source: DataSourceConfig = field(default_factory=DataSourceConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_pacing(pacing: dict[str, Any]) -> None:
    """Validate batch sizes and delays."""
    for name in ("bulk_batch_size", "chunk_size", "chart_batch_size"):
        value = pacing.get(name)
        if value is not None and int(value) <= 0:
            raise ConfigValidationError(f"pacing.{name} must be positive")

    bulk_size = pacing.get("bulk_batch_size")
    if bulk_size is not None and int(bulk_size) > 100:
        raise ConfigValidationError("pacing.bulk_batch_size cannot exceed 100")

    for name in (
        "bulk_delay_ms",
        "call_delay_ms",
        "instrument_delay_ms",
        "chunk_delay_ms",
    ):
        value = pacing.get(name)
        if value is not None and int(value) < 0:
            raise ConfigValidationError(f"pacing.{name} cannot be negative")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    path = Path(db_path)
    parent = path.parent
    if parent.exists() and not os.access(parent, os.W_OK):
        raise ConfigValidationError(f"Database path not writable: {parent}")

    data_source = config_dict.get("data_source") or {}
    provider = data_source.get("provider", "alpha_vantage")
    if provider not in PROVIDERS:
        raise ConfigValidationError(f"Unknown data provider: {provider}")

    if provider == "alpha_vantage" and not data_source.get("api_key"):
        raise ConfigValidationError("data_source.api_key is required for alpha_vantage")

    _validate_pacing(config_dict.get("pacing") or {})


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    # Validate
    _validate_config(config_dict)

    database = DatabaseConfig(**(config_dict.get("database") or {}))
    data_source = DataSourceConfig(**(config_dict.get("data_source") or {}))
    pacing = PacingConfig(**(config_dict.get("pacing") or {}))

    # Notifications
    notif_dict = config_dict.get("notifications") or {}
    discord_dict = dict(notif_dict.get("discord") or {})
    if not discord_dict.get("webhook_url"):
        discord_dict["webhook_url"] = None
    notifications = NotificationsConfig(
        discord=DiscordNotificationConfig(**discord_dict),
    )

    # Advanced
    advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))

    return AppConfig(
        database=database,
        data_source=data_source,
        pacing=pacing,
        notifications=notifications,
        advanced=advanced,
    )

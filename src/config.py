"""
Configuration module for the secretsync operator.

Loads configuration from environment variables. Durations accept either a
number of seconds or a duration string such as ``"90s"`` or ``"1h30m"``.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from models import DEFAULT_REFRESH_INTERVAL
from utils import parse_duration

logger = logging.getLogger(__name__)


def _env_duration(name: str, default: float) -> float:
    """Read a duration in seconds from the environment."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse_duration(raw.strip())
    except ValueError as e:
        raise ValueError(f"{name}: {e}") from e


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "secretsync"
    user: str = "secretsync"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "secretsync"),
            user=os.getenv("DB_USER", "secretsync"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Controller reconcile loop configuration. All durations are seconds."""

    # Interval of the database resync poll
    reconcile_interval: float = 60
    max_concurrent_reconciles: int = 5

    # Exponential backoff for transient failures
    backoff_base_delay: float = 60
    backoff_max_delay: float = 3600
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Fixed requeue delay for permanent failures
    store_error_delay: float = 300
    write_conflict_retries: int = 3

    fetch_timeout: float = 30
    reconcile_deadline: float = 120

    default_refresh_interval: float = DEFAULT_REFRESH_INTERVAL

    # Only stores naming this controller class (or none) are processed
    controller_class: Optional[str] = None

    # Delete the target secret when its declaration is removed
    delete_target_on_removal: bool = False

    def __post_init__(self):
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")
        if self.write_conflict_retries < 0:
            raise ValueError("write_conflict_retries cannot be negative")
        if not 0 <= self.backoff_jitter_factor < 1:
            raise ValueError("backoff_jitter_factor must be in [0, 1)")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=_env_duration("RECONCILE_INTERVAL", 60),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=_env_duration("BACKOFF_BASE_DELAY", 60),
            backoff_max_delay=_env_duration("BACKOFF_MAX_DELAY", 3600),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            store_error_delay=_env_duration("STORE_ERROR_DELAY", 300),
            write_conflict_retries=int(os.getenv("WRITE_CONFLICT_RETRIES", "3")),
            fetch_timeout=_env_duration("FETCH_TIMEOUT", 30),
            reconcile_deadline=_env_duration("RECONCILE_DEADLINE", 120),
            default_refresh_interval=_env_duration(
                "DEFAULT_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL
            ),
            controller_class=os.getenv("CONTROLLER_CLASS") or None,
            delete_target_on_removal=_env_bool("DELETE_TARGET_ON_REMOVAL"),
        )


@dataclass
class APIConfig:
    """Status API server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=_env_bool("API_ENABLED", True),
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=_env_bool("CORS_ENABLED"),
            cors_origins=_env_list("CORS_ORIGINS") or ["*"],
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Provider plugins to load (empty = all registered providers)
    enabled_provider_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        plugin_configs = {}
        raw = os.getenv("PLUGIN_CONFIGS")
        if raw:
            try:
                plugin_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring PLUGIN_CONFIGS, not valid JSON: {e}")

        return cls(
            enabled_provider_plugins=_env_list("ENABLED_PROVIDER_PLUGINS"),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})

    def is_provider_enabled(self, plugin_name: str) -> bool:
        return (
            not self.enabled_provider_plugins
            or plugin_name in self.enabled_provider_plugins
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None

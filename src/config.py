"""
Configuration module for the extension operator.

Loads configuration from environment variables. Controller settings are
defaults for every extension controller and can be overridden per actuator
through ACTUATOR_CONFIGS.
"""

import dataclasses
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

STORE_BACKENDS = ("postgres", "memory")
CLUSTER_UPDATE_BEHAVIORS = ("old", "new", "both")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "extension_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "extension_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=os.getenv("DB_PASSWORD", ""),
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class StoreConfig:
    """Which resource store backs the controllers."""

    backend: str = "postgres"

    def __post_init__(self):
        if self.backend not in STORE_BACKENDS:
            raise ValueError(
                f"Unknown store backend '{self.backend}'. "
                f"Expected one of: {', '.join(STORE_BACKENDS)}"
            )

    @classmethod
    def from_env(cls):
        return cls(backend=os.getenv("STORE_BACKEND", "postgres").lower())


@dataclass
class ControllerConfig:
    """Default settings for every extension controller."""

    resync_interval: int = 60  # seconds, 0 disables the periodic resync
    max_concurrent_reconciles: int = 5
    reconcile_timeout: int = 300  # seconds per actuator call
    shutdown_timeout: int = 30  # seconds to let in-flight reconciles finish
    ignore_operation_annotation: bool = False
    extension_class: Optional[str] = None  # None accepts every class
    cluster_update_behavior: str = "new"  # which side of a Cluster update maps

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 1000  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.cluster_update_behavior not in CLUSTER_UPDATE_BEHAVIORS:
            raise ValueError(
                f"Unknown cluster update behavior '{self.cluster_update_behavior}'. "
                f"Expected one of: {', '.join(CLUSTER_UPDATE_BEHAVIORS)}"
            )

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=int(os.getenv("RECONCILE_TIMEOUT", "300")),
            shutdown_timeout=int(os.getenv("SHUTDOWN_TIMEOUT", "30")),
            ignore_operation_annotation=_env_bool("IGNORE_OPERATION_ANNOTATION"),
            extension_class=os.getenv("EXTENSION_CLASS") or None,
            cluster_update_behavior=os.getenv("CLUSTER_UPDATE_BEHAVIOR", "new").lower(),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )

    def with_overrides(self, overrides: Dict[str, Any]) -> "ControllerConfig":
        """
        Return a copy with the controller keys of ``overrides`` applied.

        Keys that are not controller settings (e.g. actuator options) are
        ignored.
        """
        names = {f.name for f in dataclasses.fields(self)}
        return dataclasses.replace(
            self, **{k: v for k, v in overrides.items() if k in names}
        )


@dataclass
class ActuatorConfig:
    """Actuator selection and actuator-specific configuration."""

    # List of enabled actuator names (empty = use all registered actuators)
    enabled_actuators: List[str] = field(default_factory=list)

    # Actuator-specific configurations keyed by actuator name
    actuator_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """
        Load from environment variables.

        Raises:
            ValueError: If ACTUATOR_CONFIGS is not a JSON object.
        """
        enabled_str = os.getenv("ENABLED_ACTUATORS", "")
        enabled = [a.strip() for a in enabled_str.split(",") if a.strip()]

        actuator_configs: Dict[str, Dict[str, Any]] = {}
        raw = os.getenv("ACTUATOR_CONFIGS")
        if raw:
            try:
                actuator_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"ACTUATOR_CONFIGS is not valid JSON: {e}") from e
            if not isinstance(actuator_configs, dict):
                raise ValueError("ACTUATOR_CONFIGS must be a JSON object")

        return cls(enabled_actuators=enabled, actuator_configs=actuator_configs)

    def get_actuator_config(self, actuator_name: str) -> Dict[str, Any]:
        """Get configuration for a specific actuator."""
        return dict(self.actuator_configs.get(actuator_name, {}))


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    store: StoreConfig
    controller: ControllerConfig
    actuators: ActuatorConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """
        Load all configuration from environment variables.

        Raises:
            ValueError: If the postgres store is selected without DB_PASSWORD.
        """
        database = DatabaseConfig.from_env()
        store = StoreConfig.from_env()
        if store.backend == "postgres" and not database.password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            database=database,
            store=store,
            controller=ControllerConfig.from_env(),
            actuators=ActuatorConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            store=StoreConfig(),
            controller=ControllerConfig(),
            actuators=ActuatorConfig(),
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

"""
Configuration module for tether.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from objects import Claim, Managed, ResourceClass, ResourceKind, Scheme

STORE_BACKEND_MEMORY = "memory"
STORE_BACKEND_POSTGRES = "postgres"


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "tether"
    user: str = "tether"
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
            database=os.getenv("DB_NAME", "tether"),
            user=os.getenv("DB_USER", "tether"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Reconciliation runtime configuration shared by every controller."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 60.0  # seconds, per reconcile invocation
    resync_interval: float = 30.0  # seconds between full re-lists, 0 disables
    short_wait: float = 30.0  # seconds, requeue delay for waiting loops
    defaulting_max_jitter_ms: int = 1500

    # Exponential backoff configuration for failed reconciles
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds (5 minutes)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "60")),
            resync_interval=float(os.getenv("RESYNC_INTERVAL", "30")),
            short_wait=float(os.getenv("SHORT_WAIT", "30")),
            defaulting_max_jitter_ms=int(os.getenv("DEFAULTING_MAX_JITTER_MS", "1500")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class StoreConfig:
    """Object store backend selection."""

    backend: str = STORE_BACKEND_MEMORY

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STORE_BACKEND", STORE_BACKEND_MEMORY).lower()
        if backend not in (STORE_BACKEND_MEMORY, STORE_BACKEND_POSTGRES):
            raise ValueError(
                f"STORE_BACKEND must be '{STORE_BACKEND_MEMORY}' or "
                f"'{STORE_BACKEND_POSTGRES}', got '{backend}'"
            )
        return cls(backend=backend)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class KindConfig:
    """Identifies a kind by api_version and kind name."""

    api_version: str
    kind: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        try:
            return cls(api_version=data["api_version"], kind=data["kind"])
        except (KeyError, TypeError):
            raise ValueError(f"Kind must have api_version and kind: {data!r}")


@dataclass
class BindingConfig:
    """A claim kind bound to a managed resource kind through a class kind."""

    claim: KindConfig
    resource_class: KindConfig
    managed: KindConfig
    # Whether the managed kind persists status separately from its spec
    status_subresource: bool = True
    # Wait for the kinds' schema definitions before starting the controllers
    gated: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls(
            claim=KindConfig.from_dict(data.get("claim")),
            resource_class=KindConfig.from_dict(data.get("class")),
            managed=KindConfig.from_dict(data.get("managed")),
            status_subresource=bool(data.get("status_subresource", True)),
            gated=bool(data.get("gated", False)),
        )

    def kinds(self) -> Tuple[ResourceKind, ResourceKind, ResourceKind]:
        """Return the claim, class and managed kinds."""
        return tuple(
            ResourceKind.from_api_version(k.api_version, k.kind)
            for k in (self.claim, self.resource_class, self.managed)
        )


def load_bindings(path: str) -> List[BindingConfig]:
    """
    Load claim bindings from a YAML file.

    The file holds a ``bindings`` list; each entry names a ``claim``,
    ``class`` and ``managed`` kind by ``api_version`` and ``kind``.

    Raises:
        ValueError: If the file is malformed.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict) or not isinstance(data.get("bindings", []), list):
        raise ValueError(f"{path}: expected a mapping with a 'bindings' list")
    return [BindingConfig.from_dict(b) for b in data.get("bindings", [])]


def register_bindings(scheme: Scheme, bindings: Iterable[BindingConfig]) -> None:
    """Register the kinds named by each binding with the scheme."""
    for binding in bindings:
        claim_kind, class_kind, managed_kind = binding.kinds()
        scheme.register(claim_kind, Claim, status_subresource=True)
        scheme.register(class_kind, ResourceClass)
        scheme.register(
            managed_kind, Managed, status_subresource=binding.status_subresource
        )


@dataclass
class Config:
    """Main configuration object."""

    database: Optional[DatabaseConfig]
    controller: ControllerConfig
    store: StoreConfig
    logging: LoggingConfig
    bindings: List[BindingConfig] = field(default_factory=list)

    @classmethod
    def from_env(cls):
        """
        Load all configuration from environment variables.

        Database settings are only required, and only loaded, when the
        postgres store backend is selected. Claim bindings are read from
        the YAML file named by BINDINGS_FILE, if set.
        """
        store = StoreConfig.from_env()
        database = None
        if store.backend == STORE_BACKEND_POSTGRES:
            database = DatabaseConfig.from_env()
        bindings_file = os.getenv("BINDINGS_FILE", "")
        return cls(
            database=database,
            controller=ControllerConfig.from_env(),
            store=store,
            logging=LoggingConfig.from_env(),
            bindings=load_bindings(bindings_file) if bindings_file else [],
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            store=StoreConfig(),
            logging=LoggingConfig(),
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

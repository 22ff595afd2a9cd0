"""
Backend factory.

Turns a tagged BackendConfig into a ready StorageBackend. Backend modules are
imported on demand, so a deployment only needs the driver it is configured for.
"""

from __future__ import annotations

import importlib
import logging

from .backends.base import StorageBackend
from .config import (
    BACKEND_COSMOS,
    BACKEND_POSTGRESQL,
    BACKEND_SQLITE,
    BackendConfig,
    CosmosConfig,
    PostgreSQLConfig,
    SQLiteConfig,
)
from .exceptions import ConfigurationError, UnsupportedBackendError

logger = logging.getLogger(__name__)

# backend type -> (module, class name)
_BACKEND_CLASSES: dict[str, tuple[str, str]] = {
    BACKEND_SQLITE: ("feedgen_storage.backends.sqlite", "SQLiteBackend"),
    BACKEND_POSTGRESQL: ("feedgen_storage.backends.postgresql", "PostgreSQLBackend"),
    BACKEND_COSMOS: ("feedgen_storage.backends.cosmos", "CosmosBackend"),
}

_COSMOS_AUTH_METHODS = ("key", "default_credential")


def _require(section: str, name: str, value: object) -> None:
    if value is None or value == "":
        raise ConfigurationError(f"{section}.{name}")


def _validate_sqlite(config: SQLiteConfig) -> None:
    _require(BACKEND_SQLITE, "db_path", config.db_path)


def _validate_postgresql(config: PostgreSQLConfig) -> None:
    if not config.dsn:
        _require(BACKEND_POSTGRESQL, "host", config.host)
        _require(BACKEND_POSTGRESQL, "database", config.database)
        _require(BACKEND_POSTGRESQL, "username", config.username)
    if config.min_pool_size < 0:
        raise ConfigurationError("postgresql.min_pool_size", "must not be negative")
    if config.max_pool_size < max(config.min_pool_size, 1):
        raise ConfigurationError(
            "postgresql.max_pool_size", "must be at least 1 and at least min_pool_size"
        )


def _validate_cosmos(config: CosmosConfig) -> None:
    _require(BACKEND_COSMOS, "endpoint", config.endpoint)
    _require(BACKEND_COSMOS, "database_name", config.database_name)
    if config.auth_method not in _COSMOS_AUTH_METHODS:
        raise ConfigurationError(
            "cosmos.auth_method", f"must be one of {', '.join(_COSMOS_AUTH_METHODS)}"
        )
    if config.auth_method == "key":
        _require(BACKEND_COSMOS, "key", config.key)


def validate_config(config: BackendConfig) -> None:
    """
    Check a backend configuration without touching the network.

    Raises:
        UnsupportedBackendError: Unknown backend type
        ConfigurationError: Settings section or a required field is missing
    """
    if config.backend_type not in _BACKEND_CLASSES:
        raise UnsupportedBackendError(config.backend_type)

    settings = config.settings
    if settings is None:
        raise ConfigurationError(config.backend_type, "settings section is missing")

    if isinstance(settings, SQLiteConfig):
        _validate_sqlite(settings)
    elif isinstance(settings, PostgreSQLConfig):
        _validate_postgresql(settings)
    elif isinstance(settings, CosmosConfig):
        _validate_cosmos(settings)


def build_backend(config: BackendConfig) -> StorageBackend:
    """Construct the configured backend without connecting it."""
    validate_config(config)

    module_name, class_name = _BACKEND_CLASSES[config.backend_type]
    backend_cls = getattr(importlib.import_module(module_name), class_name)
    return backend_cls(config.settings)


async def create_backend(config: BackendConfig) -> StorageBackend:
    """
    Build, connect and migrate the configured backend.

    Never returns an adapter that is not ready: if connecting or migrating
    fails, the partially opened adapter is disconnected and the error
    propagates.

    Raises:
        UnsupportedBackendError: Unknown backend type
        ConfigurationError: Invalid settings
        StorageConnectionError: Backend unreachable or credentials rejected
        MigrationError: A schema step failed
    """
    backend = build_backend(config)
    try:
        await backend.connect()
        await backend.migrate()
    except BaseException:
        await backend.disconnect()
        raise

    logger.info(
        "Storage backend ready",
        extra={"backend": backend.backend_type, "endpoint": backend.endpoint},
    )
    return backend

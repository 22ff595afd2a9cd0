"""
Feedgen Storage

Pluggable storage for a feed generator: one backend contract with SQLite,
PostgreSQL and Cosmos DB implementations, plus the ingestion pipeline and
filtered, cursor-paginated feed queries built on it.

Provides:
- Storage backends selected by configuration (SQLite, PostgreSQL, Cosmos DB)
- Versioned schema migrations applied at startup
- At-least-once ingestion with a persisted resumption cursor
- Keyset pagination ordered by (indexed_at DESC, uri DESC)

Usage:

    >>> from feedgen_storage import create_backend, load_backend_config
    >>> config = load_backend_config("settings.yaml")
    >>> backend = await create_backend(config)  # connected and migrated
    >>> posts = await backend.find_posts(FindPostsCriteria(limit=50))
    >>> await backend.disconnect()

Backend Selection:

    # SQLite for single-node deployments and tests
    database:
      type: sqlite
      sqlite: {db_path: feedgen.db}

    # PostgreSQL for shared multi-process deployments
    database:
      type: postgresql
      postgresql: {dsn: "postgresql://feedgen@db/feedgen"}

    # Cosmos DB for managed document storage
    database:
      type: cosmos
      cosmos: {endpoint: "https://acct.documents.azure.com:443/", auth_method: default_credential}
"""

# Backend abstraction
from .backends import PostReader, PostWriter, StorageBackend, SubscriptionStore

# Configuration
from .config import (
    BackendConfig,
    CosmosConfig,
    PostgreSQLConfig,
    ServiceSettings,
    SQLiteConfig,
    load_backend_config,
    load_service_settings,
)

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    DuplicateKeyError,
    FeedStorageError,
    MigrationError,
    NotConnectedError,
    StorageConnectionError,
    StorageIOError,
    UnsupportedBackendError,
    ValidationError,
)
from .factory import build_backend, create_backend, validate_config

# Ingestion
from .ingestion import BatchResult, CreateOp, IngestionBatch, IngestionPipeline, IngestionRunner

# Logging
from .logging_utils import StorageLoggerAdapter, configure_structured_logging

# Migrations
from .migrations import MigrationLedger, MigrationRunner, MigrationStep

# Record model
from .models import FeedPage, FindPostsCriteria, PageCursor, Post, SubscriptionState

# Queries
from .query import AlgorithmRegistry, FeedQueryService, FeedSkeleton, default_registry
from .service import FeedGeneratorService

# Conditional imports for backends whose driver may not be installed
try:
    from .backends.sqlite import SQLiteBackend  # noqa: F401

    _has_sqlite = True
except ImportError:
    _has_sqlite = False

try:
    from .backends.postgresql import PostgreSQLBackend  # noqa: F401

    _has_postgresql = True
except ImportError:
    _has_postgresql = False

try:
    from .backends.cosmos import CosmosBackend  # noqa: F401

    _has_cosmos = True
except ImportError:
    _has_cosmos = False


__all__ = [
    # Core abstractions
    "StorageBackend",
    "PostReader",
    "PostWriter",
    "SubscriptionStore",
    # Model
    "Post",
    "SubscriptionState",
    "PageCursor",
    "FindPostsCriteria",
    "FeedPage",
    # Configuration and factory
    "BackendConfig",
    "SQLiteConfig",
    "PostgreSQLConfig",
    "CosmosConfig",
    "ServiceSettings",
    "load_backend_config",
    "load_service_settings",
    "validate_config",
    "build_backend",
    "create_backend",
    # Migrations
    "MigrationStep",
    "MigrationLedger",
    "MigrationRunner",
    # Ingestion
    "CreateOp",
    "IngestionBatch",
    "BatchResult",
    "IngestionPipeline",
    "IngestionRunner",
    # Logging
    "configure_structured_logging",
    "StorageLoggerAdapter",
    # Queries
    "FeedQueryService",
    "FeedSkeleton",
    "AlgorithmRegistry",
    "default_registry",
    "FeedGeneratorService",
    # Exceptions
    "FeedStorageError",
    "ConfigurationError",
    "UnsupportedBackendError",
    "StorageConnectionError",
    "AuthenticationError",
    "StorageIOError",
    "NotConnectedError",
    "MigrationError",
    "DuplicateKeyError",
    "ValidationError",
]

# Add optional exports
if _has_sqlite:
    __all__.append("SQLiteBackend")

if _has_postgresql:
    __all__.append("PostgreSQLBackend")

if _has_cosmos:
    __all__.append("CosmosBackend")

__version__ = "0.1.0"

"""
Storage backend abstraction layer.

Provides the abstract contract for the storage backends (SQLite, PostgreSQL,
Cosmos DB). Each backend implements the same interface, allowing seamless
switching through configuration.

Backend modules are imported on demand so that only the driver of the
configured backend has to be installed.
"""

from .base import (
    PostReader,
    PostWriter,
    StorageBackend,
    SubscriptionStore,
    format_timestamp,
    parse_timestamp,
)

__all__ = [
    # Core classes
    "StorageBackend",
    # Protocol ABCs
    "PostReader",
    "PostWriter",
    "SubscriptionStore",
    # Helpers
    "format_timestamp",
    "parse_timestamp",
]

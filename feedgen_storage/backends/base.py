"""
Abstract base classes for storage backends.

All storage implementations (SQLite, PostgreSQL, Cosmos DB) implement these
interfaces. The lifecycle (connect / migrate / health check / disconnect) is
implemented once here on top of a few backend hooks, so every backend
enforces the same ordering rules.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from typing import Any, ClassVar

from ..exceptions import FeedStorageError, NotConnectedError, StorageConnectionError
from ..migrations import MigrationLedger, MigrationRunner, MigrationStep
from ..models import FindPostsCriteria, Post, SubscriptionState, ensure_utc

logger = logging.getLogger(__name__)

# Fixed-width, so lexical order of the text equals chronological order.
# The year is padded separately: strftime("%Y") does not pad years below 1000.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_TIME_OF_YEAR_FORMAT = "-%m-%dT%H:%M:%S.%fZ"

# Columns every backend reads back for a post
POST_COLUMNS = (
    "uri",
    "content_hash",
    "reply_parent",
    "reply_root",
    "author_id",
    "payload",
    "indexed_at",
)


def format_timestamp(value: datetime) -> str:
    """Encode a datetime as sortable UTC text."""
    value = ensure_utc(value)
    return f"{value.year:04d}" + value.strftime(_TIME_OF_YEAR_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Decode text written by :func:`format_timestamp`."""
    return ensure_utc(datetime.strptime(value, TIMESTAMP_FORMAT))


def post_from_row(row: Mapping[str, Any]) -> Post:
    """Build a Post from a row or document keyed by POST_COLUMNS."""
    indexed_at = row["indexed_at"]
    if isinstance(indexed_at, str):
        indexed_at = parse_timestamp(indexed_at)

    return Post(
        uri=row["uri"],
        content_hash=row["content_hash"],
        reply_parent=row["reply_parent"],
        reply_root=row["reply_root"],
        author_id=row["author_id"],
        payload=row["payload"],
        indexed_at=indexed_at,
    )


class _StorageLifecycle(ABC):
    """Connection lifecycle shared by every backend.

    Order: connect() -> migrate() -> data operations -> disconnect().
    Data operations before connect() raise NotConnectedError; so do data
    operations after a failed migrate().
    """

    backend_type: ClassVar[str]

    _connected: bool = False
    _migrated: bool = False
    _unusable_reason: str | None = None

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Human-readable location of the backend (path, host or URL)."""

    @abstractmethod
    async def _open(self) -> None:
        """Open the connection or pool and verify it with a round trip."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the connection or pool."""

    @abstractmethod
    async def _ping(self) -> None:
        """Cheap round trip; raise on failure."""

    @abstractmethod
    def _migration_ledger(self) -> MigrationLedger:
        """Ledger recording which schema steps ran."""

    @abstractmethod
    def _migration_steps(self) -> list[MigrationStep]:
        """Ordered schema steps for this backend."""

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_ready(self) -> bool:
        """Connected, migrated and not marked unusable."""
        return self._connected and self._migrated and self._unusable_reason is None

    async def connect(self) -> None:
        """Establish the connection or pool.

        Raises:
            StorageConnectionError: Backend unreachable, bad DSN or credentials
        """
        if self._connected:
            logger.debug("Backend already connected", extra={"backend": self.backend_type})
            return

        try:
            await self._open()
        except FeedStorageError:
            await self._close_quietly()
            raise
        except Exception as e:
            await self._close_quietly()
            raise StorageConnectionError(self.endpoint, e) from e

        self._connected = True
        self._migrated = False
        self._unusable_reason = None
        logger.info(
            "Backend connected",
            extra={"backend": self.backend_type, "endpoint": self.endpoint},
        )

    async def migrate(self) -> list[str]:
        """Bring the schema to the latest version.

        Returns:
            Names of the migration steps applied by this call

        Raises:
            NotConnectedError: connect() has not been called
            MigrationError: A step failed; the backend is left unusable
        """
        if not self._connected:
            raise NotConnectedError("migrate")

        runner = MigrationRunner(self._migration_ledger(), self._migration_steps())
        try:
            applied = await runner.run()
        except FeedStorageError as e:
            self._migrated = False
            self._unusable_reason = f"migration failed: {e.message}"
            raise

        self._migrated = True
        return applied

    async def health_check(self) -> bool:
        """Return True if the backend answers a trivial query. Never raises."""
        if not self._connected:
            return False
        try:
            await self._ping()
            return True
        except Exception as e:
            logger.warning(
                "Health check failed",
                extra={"backend": self.backend_type, "error": str(e)},
            )
            return False

    async def disconnect(self) -> None:
        """Release the connection or pool. Safe to call more than once."""
        if not self._connected:
            return
        try:
            await self._close()
        finally:
            self._connected = False
            self._migrated = False
            logger.info("Backend disconnected", extra={"backend": self.backend_type})

    async def _close_quietly(self) -> None:
        try:
            await self._close()
        except Exception as e:
            logger.debug("Error closing after failed connect", extra={"error": str(e)})

    def _require_connection(self, operation: str) -> None:
        if not self._connected:
            raise NotConnectedError(operation)
        if self._unusable_reason is not None:
            raise NotConnectedError(operation, self._unusable_reason)

    async def __aenter__(self) -> _StorageLifecycle:
        await self.connect()
        try:
            await self.migrate()
        except BaseException:
            await self.disconnect()
            raise
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()


class PostReader(_StorageLifecycle):
    """Read access to stored posts."""

    @abstractmethod
    async def find_post_by_uri(self, uri: str) -> Post | None:
        """Return the post, or None if it is not stored."""

    @abstractmethod
    async def find_posts(self, criteria: FindPostsCriteria) -> list[Post]:
        """
        Keyset-paginated post listing.

        Ordered by (indexed_at DESC, uri DESC). With a cursor, only rows
        strictly after it in that order are returned. ``author_id`` filters
        before the limit applies.
        """


class PostWriter(_StorageLifecycle):
    """Write access to stored posts."""

    @abstractmethod
    async def create_post(self, post: Post) -> Post:
        """
        Insert a new post.

        Raises:
            DuplicateKeyError: A post with the same uri already exists
        """

    @abstractmethod
    async def delete_post_by_uri(self, uri: str) -> bool:
        """Delete a post; return False if it was not stored."""


class SubscriptionStore(_StorageLifecycle):
    """Persisted resumption cursors, keyed by service."""

    @abstractmethod
    async def get_subscription_state(self, service: str) -> SubscriptionState | None:
        """Return the stored state, or None for an unknown service."""

    @abstractmethod
    async def update_subscription_state(self, service: str, cursor: int) -> None:
        """Insert or replace the cursor for ``service`` (last write wins)."""


class StorageBackend(PostReader, PostWriter, SubscriptionStore):
    """
    Composed storage contract.

    Every backend implements this. Callers depend on this type only, never
    on a backend's native client or query objects.
    """

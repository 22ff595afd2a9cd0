"""
SQLite storage backend.

Single-file (or in-memory) embedded database through aiosqlite.
Ideal for single-node deployments, development and testing.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any

import aiosqlite

from ..config import SQLiteConfig
from ..exceptions import DuplicateKeyError, StorageIOError
from ..migrations import MigrationLedger, MigrationStep
from ..models import FindPostsCriteria, Post, SubscriptionState, utc_now
from .base import POST_COLUMNS, StorageBackend, format_timestamp, post_from_row

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_SELECT_POST = f"SELECT {', '.join(POST_COLUMNS)} FROM post"

# =============================================================================
# Schema steps - applied in name order by the migration runner
# =============================================================================

_SCHEMA_STEPS: dict[str, tuple[str, list[str]]] = {
    "001": (
        "Create post and subscription state tables",
        [
            """
            CREATE TABLE post (
                uri TEXT PRIMARY KEY,
                content_hash TEXT NOT NULL,
                indexed_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE sub_state (
                service TEXT PRIMARY KEY,
                cursor INTEGER NOT NULL
            )
            """,
            "CREATE INDEX post_indexed_at_idx ON post (indexed_at)",
        ],
    ),
    "002": (
        "Add reply, author and payload columns",
        [
            "ALTER TABLE post ADD COLUMN reply_parent TEXT",
            "ALTER TABLE post ADD COLUMN reply_root TEXT",
            "ALTER TABLE post ADD COLUMN author_id TEXT NOT NULL DEFAULT ''",
            "ALTER TABLE post ADD COLUMN payload TEXT NOT NULL DEFAULT '{}'",
            "CREATE INDEX post_author_id_idx ON post (author_id)",
        ],
    ),
    "003": (
        "Index the full pagination key",
        [
            "DROP INDEX IF EXISTS post_indexed_at_idx",
            "CREATE INDEX post_indexed_at_uri_idx ON post (indexed_at DESC, uri DESC)",
        ],
    ),
}


class _SQLiteLedger(MigrationLedger):
    def __init__(self, backend: SQLiteBackend):
        self._backend = backend

    async def ensure(self) -> None:
        conn = self._backend.conn
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migration (
                name TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        await conn.commit()

    async def applied(self) -> set[str]:
        async with self._backend.conn.execute("SELECT name FROM schema_migration") as cursor:
            rows = await cursor.fetchall()
        return {row[0] for row in rows}

    async def record(self, name: str) -> None:
        conn = self._backend.conn
        await conn.execute(
            "INSERT INTO schema_migration (name, applied_at) VALUES (?, ?)",
            (name, format_timestamp(utc_now())),
        )
        await conn.commit()


class SQLiteBackend(StorageBackend):
    """
    SQLite storage backend.

    Features:
    - Single file database, or ":memory:" for tests
    - One connection, owned by this instance
    - Writes serialized through a lock (single-writer engine)
    """

    backend_type = "sqlite"

    def __init__(self, config: SQLiteConfig):
        """
        Initialize SQLite backend.

        Args:
            config: SQLite configuration
        """
        self.config = config
        self.conn: Any = None  # aiosqlite.Connection
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, config: SQLiteConfig | None = None) -> SQLiteBackend:
        """Create, connect and migrate a SQLite backend."""
        if config is None:
            config = SQLiteConfig.from_env()

        backend = cls(config)
        await backend.connect()
        await backend.migrate()
        return backend

    @property
    def endpoint(self) -> str:
        return str(self.config.db_path)

    # =========================================================================
    # Lifecycle hooks
    # =========================================================================

    async def _open(self) -> None:
        self.conn = await aiosqlite.connect(str(self.config.db_path))
        self.conn.row_factory = aiosqlite.Row

        if str(self.config.db_path) != MEMORY_PATH:
            await self.conn.execute("PRAGMA journal_mode = WAL")
            await self.conn.execute("PRAGMA synchronous = NORMAL")

        await self._ping()

    async def _close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _ping(self) -> None:
        async with self.conn.execute("SELECT 1") as cursor:
            await cursor.fetchone()

    def _migration_ledger(self) -> MigrationLedger:
        return _SQLiteLedger(self)

    def _migration_steps(self) -> list[MigrationStep]:
        return [
            MigrationStep(name, self._step_runner(statements), description)
            for name, (description, statements) in _SCHEMA_STEPS.items()
        ]

    def _step_runner(self, statements: list[str]):
        async def apply() -> None:
            async with self._write_lock:
                await self.conn.execute("BEGIN")
                try:
                    for statement in statements:
                        await self.conn.execute(statement)
                    await self.conn.commit()
                except BaseException:
                    await self.conn.rollback()
                    raise

        return apply

    # =========================================================================
    # Post Operations
    # =========================================================================

    async def create_post(self, post: Post) -> Post:
        """Insert a new post."""
        self._require_connection("create_post")

        async with self._write_lock:
            try:
                await self.conn.execute(
                    """
                    INSERT INTO post (
                        uri, content_hash, reply_parent, reply_root,
                        author_id, payload, indexed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        post.uri,
                        post.content_hash,
                        post.reply_parent,
                        post.reply_root,
                        post.author_id,
                        post.payload,
                        format_timestamp(post.indexed_at),
                    ),
                )
                await self.conn.commit()
            except sqlite3.IntegrityError as e:
                await self.conn.rollback()
                if "UNIQUE" in str(e):
                    raise DuplicateKeyError(post.uri) from e
                raise StorageIOError("create_post", post.uri, e) from e

        return post

    async def find_post_by_uri(self, uri: str) -> Post | None:
        """Get a post by uri."""
        self._require_connection("find_post_by_uri")

        async with self.conn.execute(f"{_SELECT_POST} WHERE uri = ?", (uri,)) as cursor:
            row = await cursor.fetchone()
        return post_from_row(row) if row else None

    async def delete_post_by_uri(self, uri: str) -> bool:
        """Delete a post by uri."""
        self._require_connection("delete_post_by_uri")

        async with self._write_lock:
            cursor = await self.conn.execute("DELETE FROM post WHERE uri = ?", (uri,))
            deleted = cursor.rowcount
            await cursor.close()
            await self.conn.commit()
        return deleted > 0

    async def find_posts(self, criteria: FindPostsCriteria) -> list[Post]:
        """Keyset-paginated listing ordered by (indexed_at DESC, uri DESC)."""
        self._require_connection("find_posts")

        conditions: list[str] = []
        params: list[Any] = []

        if criteria.author_id:
            conditions.append("author_id = ?")
            params.append(criteria.author_id)

        if criteria.cursor is not None:
            boundary = format_timestamp(criteria.cursor.indexed_at)
            if criteria.cursor.uri is None:
                conditions.append("indexed_at < ?")
                params.append(boundary)
            else:
                conditions.append("(indexed_at < ? OR (indexed_at = ? AND uri < ?))")
                params.extend([boundary, boundary, criteria.cursor.uri])

        query = _SELECT_POST
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY indexed_at DESC, uri DESC"

        if criteria.limit is not None:
            query += " LIMIT ?"
            params.append(criteria.limit)

        async with self.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [post_from_row(row) for row in rows]

    # =========================================================================
    # Subscription State Operations
    # =========================================================================

    async def get_subscription_state(self, service: str) -> SubscriptionState | None:
        """Get the stored cursor for a service."""
        self._require_connection("get_subscription_state")

        async with self.conn.execute(
            "SELECT service, cursor FROM sub_state WHERE service = ?", (service,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SubscriptionState(service=row["service"], cursor=row["cursor"])

    async def update_subscription_state(self, service: str, cursor: int) -> None:
        """Upsert the cursor for a service."""
        self._require_connection("update_subscription_state")

        async with self._write_lock:
            await self.conn.execute(
                """
                INSERT INTO sub_state (service, cursor) VALUES (?, ?)
                ON CONFLICT (service) DO UPDATE SET cursor = excluded.cursor
                """,
                (service, cursor),
            )
            await self.conn.commit()

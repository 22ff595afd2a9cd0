"""
PostgreSQL storage backend.

Client/server relational engine accessed through an asyncpg connection pool.
Suited to multi-process deployments where ingestion and feed serving run
against one shared database.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import asyncpg
from asyncpg import exceptions as pg_exc

from ..config import PostgreSQLConfig
from ..exceptions import (
    AuthenticationError,
    DuplicateKeyError,
    StorageConnectionError,
    StorageIOError,
)
from ..migrations import MigrationLedger, MigrationStep
from ..models import FindPostsCriteria, Post, SubscriptionState
from .base import POST_COLUMNS, StorageBackend, post_from_row

logger = logging.getLogger(__name__)

_SELECT_POST = f"SELECT {', '.join(POST_COLUMNS)} FROM post"

# uri uses the "C" collation so the pagination tie-break is byte order,
# matching SQLite and Cosmos DB.
_SCHEMA_STEPS: dict[str, tuple[str, list[str]]] = {
    "001": (
        "Create post and subscription state tables",
        [
            """
            CREATE TABLE post (
                uri TEXT COLLATE "C" PRIMARY KEY,
                content_hash TEXT NOT NULL,
                indexed_at TIMESTAMPTZ NOT NULL
            )
            """,
            """
            CREATE TABLE sub_state (
                service TEXT PRIMARY KEY,
                cursor BIGINT NOT NULL
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

_CONNECTION_ERRORS = (
    pg_exc.PostgresConnectionError,
    pg_exc.CannotConnectNowError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
)

_AUTH_ERRORS = (
    pg_exc.InvalidPasswordError,
    pg_exc.InvalidAuthorizationSpecificationError,
)


class _PostgreSQLLedger(MigrationLedger):
    def __init__(self, backend: PostgreSQLBackend):
        self._backend = backend

    async def ensure(self) -> None:
        await self._backend.pool.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migration (
                name TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )

    async def applied(self) -> set[str]:
        rows = await self._backend.pool.fetch("SELECT name FROM schema_migration")
        return {row["name"] for row in rows}

    async def record(self, name: str) -> None:
        await self._backend.pool.execute(
            "INSERT INTO schema_migration (name) VALUES ($1)",
            name,
        )


class PostgreSQLBackend(StorageBackend):
    """
    PostgreSQL storage backend.

    Features:
    - asyncpg connection pool owned by this instance
    - Transactional DDL, so each schema step is all-or-nothing
    - Per-statement atomicity for post and cursor writes
    """

    backend_type = "postgresql"

    def __init__(self, config: PostgreSQLConfig):
        self.config = config
        self._pool: asyncpg.Pool | None = None

    @classmethod
    async def create(cls, config: PostgreSQLConfig | None = None) -> PostgreSQLBackend:
        """Create, connect and migrate a PostgreSQL backend."""
        if config is None:
            config = PostgreSQLConfig.from_env()

        backend = cls(config)
        await backend.connect()
        await backend.migrate()
        return backend

    @property
    def endpoint(self) -> str:
        return self.config.display_endpoint

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageIOError("pool", cause=RuntimeError("Pool not initialized"))
        return self._pool

    # =========================================================================
    # Lifecycle hooks
    # =========================================================================

    async def _open(self) -> None:
        kwargs: dict[str, Any] = {
            "min_size": self.config.min_pool_size,
            "max_size": self.config.max_pool_size,
            "timeout": self.config.connect_timeout,
        }
        if self.config.dsn:
            kwargs["dsn"] = self.config.dsn
        else:
            kwargs.update(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.username,
                password=self.config.password,
            )
        if self.config.ssl:
            kwargs["ssl"] = "require"

        try:
            self._pool = await asyncpg.create_pool(**kwargs)
        except _AUTH_ERRORS as e:
            raise AuthenticationError(self.endpoint, str(e)) from e

        await self._ping()

    async def _close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ping(self) -> None:
        await self.pool.fetchval("SELECT 1")

    def _migration_ledger(self) -> MigrationLedger:
        return _PostgreSQLLedger(self)

    def _migration_steps(self) -> list[MigrationStep]:
        return [
            MigrationStep(name, self._step_runner(statements), description)
            for name, (description, statements) in _SCHEMA_STEPS.items()
        ]

    def _step_runner(self, statements: list[str]):
        async def apply() -> None:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for statement in statements:
                        await conn.execute(statement)

        return apply

    @contextmanager
    def _translate_errors(self, operation: str, key: str | None = None) -> Iterator[None]:
        """Map asyncpg failures onto the storage exception taxonomy."""
        try:
            yield
        except _CONNECTION_ERRORS as e:
            raise StorageConnectionError(self.endpoint, e) from e
        except asyncpg.PostgresError as e:
            raise StorageIOError(operation, key, e) from e

    # =========================================================================
    # Post Operations
    # =========================================================================

    async def create_post(self, post: Post) -> Post:
        """Insert a new post."""
        self._require_connection("create_post")

        with self._translate_errors("create_post", post.uri):
            try:
                await self.pool.execute(
                    """
                    INSERT INTO post (
                        uri, content_hash, reply_parent, reply_root,
                        author_id, payload, indexed_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    post.uri,
                    post.content_hash,
                    post.reply_parent,
                    post.reply_root,
                    post.author_id,
                    post.payload,
                    post.indexed_at,
                )
            except pg_exc.UniqueViolationError as e:
                raise DuplicateKeyError(post.uri) from e
        return post

    async def find_post_by_uri(self, uri: str) -> Post | None:
        """Get a post by uri."""
        self._require_connection("find_post_by_uri")

        with self._translate_errors("find_post_by_uri", uri):
            row = await self.pool.fetchrow(f"{_SELECT_POST} WHERE uri = $1", uri)
        return post_from_row(row) if row else None

    async def delete_post_by_uri(self, uri: str) -> bool:
        """Delete a post by uri."""
        self._require_connection("delete_post_by_uri")

        with self._translate_errors("delete_post_by_uri", uri):
            status = await self.pool.execute("DELETE FROM post WHERE uri = $1", uri)
        # Command tag looks like "DELETE 1"
        return int(status.split()[-1]) > 0

    async def find_posts(self, criteria: FindPostsCriteria) -> list[Post]:
        """Keyset-paginated listing ordered by (indexed_at DESC, uri DESC)."""
        self._require_connection("find_posts")

        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if criteria.author_id:
            conditions.append(f"author_id = {bind(criteria.author_id)}")

        if criteria.cursor is not None:
            boundary = bind(criteria.cursor.indexed_at)
            if criteria.cursor.uri is None:
                conditions.append(f"indexed_at < {boundary}")
            else:
                uri = bind(criteria.cursor.uri)
                conditions.append(
                    f"(indexed_at < {boundary} OR (indexed_at = {boundary} AND uri < {uri}))"
                )

        query = _SELECT_POST
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY indexed_at DESC, uri DESC"

        if criteria.limit is not None:
            query += f" LIMIT {bind(criteria.limit)}"

        with self._translate_errors("find_posts"):
            rows = await self.pool.fetch(query, *params)
        return [post_from_row(row) for row in rows]

    # =========================================================================
    # Subscription State Operations
    # =========================================================================

    async def get_subscription_state(self, service: str) -> SubscriptionState | None:
        """Get the stored cursor for a service."""
        self._require_connection("get_subscription_state")

        with self._translate_errors("get_subscription_state", service):
            row = await self.pool.fetchrow(
                "SELECT service, cursor FROM sub_state WHERE service = $1", service
            )
        if row is None:
            return None
        return SubscriptionState(service=row["service"], cursor=row["cursor"])

    async def update_subscription_state(self, service: str, cursor: int) -> None:
        """Upsert the cursor for a service."""
        self._require_connection("update_subscription_state")

        with self._translate_errors("update_subscription_state", service):
            await self.pool.execute(
                """
                INSERT INTO sub_state (service, cursor) VALUES ($1, $2)
                ON CONFLICT (service) DO UPDATE SET cursor = EXCLUDED.cursor
                """,
                service,
                cursor,
            )

"""
Tests for SQLite storage backend.

Uses real SQLite (in-memory or a temp file) for accurate testing. Behavior
shared by every backend lives in test_backend_contract.py.
"""

import pytest

from feedgen_storage.backends.sqlite import SQLiteBackend
from feedgen_storage.config import SQLiteConfig
from feedgen_storage.exceptions import NotConnectedError
from feedgen_storage.models import FindPostsCriteria

from conftest import make_post


class TestSQLiteLifecycle:
    """Connection lifecycle rules."""

    @pytest.mark.asyncio
    async def test_create_with_defaults(self):
        """Backend creates with an in-memory database by default."""
        backend = await SQLiteBackend.create()
        assert backend.is_ready
        assert backend.endpoint == ":memory:"
        await backend.disconnect()

    @pytest.mark.asyncio
    async def test_create_reads_path_from_env(self, monkeypatch, tmp_path):
        db_path = tmp_path / "env.db"
        monkeypatch.setenv("FEEDGEN_SQLITE_PATH", str(db_path))

        backend = await SQLiteBackend.create()
        await backend.disconnect()

        assert db_path.exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation, args",
        [
            ("create_post", (make_post(1),)),
            ("find_post_by_uri", ("at://a/p/1",)),
            ("delete_post_by_uri", ("at://a/p/1",)),
            ("find_posts", (FindPostsCriteria(),)),
            ("get_subscription_state", ("svc",)),
            ("update_subscription_state", ("svc", 1)),
        ],
    )
    async def test_operations_before_connect_raise(self, operation, args):
        backend = SQLiteBackend(SQLiteConfig())
        with pytest.raises(NotConnectedError) as exc_info:
            await getattr(backend, operation)(*args)
        assert exc_info.value.operation == operation

    @pytest.mark.asyncio
    async def test_operations_after_disconnect_raise(self, sqlite_backend):
        await sqlite_backend.disconnect()
        with pytest.raises(NotConnectedError):
            await sqlite_backend.find_posts(FindPostsCriteria(limit=1))

    @pytest.mark.asyncio
    async def test_connect_twice_keeps_connection(self, sqlite_backend):
        conn = sqlite_backend.conn
        await sqlite_backend.connect()
        assert sqlite_backend.conn is conn

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        backend = await SQLiteBackend.create()
        await backend.disconnect()
        await backend.disconnect()
        assert backend.is_connected is False

    @pytest.mark.asyncio
    async def test_health_check(self, sqlite_backend):
        assert await sqlite_backend.health_check() is True
        await sqlite_backend.disconnect()
        assert await sqlite_backend.health_check() is False

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with SQLiteBackend(SQLiteConfig()) as backend:
            assert backend.is_ready
            await backend.create_post(make_post(1))
        assert backend.is_connected is False


class TestSQLiteFileDatabase:
    """File-backed databases keep data across connections."""

    @pytest.mark.asyncio
    async def test_data_persists_across_reconnect(self, tmp_path):
        config = SQLiteConfig(db_path=str(tmp_path / "feed.db"))
        post = make_post(1)

        async with SQLiteBackend(config) as backend:
            await backend.create_post(post)
            await backend.update_subscription_state("wss://bsky.network", 42)

        async with SQLiteBackend(config) as backend:
            assert await backend.find_post_by_uri(post.uri) == post
            state = await backend.get_subscription_state("wss://bsky.network")
            assert state is not None and state.cursor == 42

    @pytest.mark.asyncio
    async def test_file_database_uses_wal(self, tmp_path):
        async with SQLiteBackend(SQLiteConfig(db_path=str(tmp_path / "feed.db"))) as backend:
            async with backend.conn.execute("PRAGMA journal_mode") as cursor:
                row = await cursor.fetchone()
        assert row[0].lower() == "wal"

    @pytest.mark.asyncio
    async def test_timestamps_stored_as_sortable_text(self, sqlite_backend):
        await sqlite_backend.create_post(make_post(1))
        async with sqlite_backend.conn.execute("SELECT indexed_at FROM post") as cursor:
            row = await cursor.fetchone()
        assert row[0] == "2024-01-01T11:59:59.000000Z"

"""
Tests for the ingestion pipeline and runner.

Runs against real in-memory SQLite; failures are injected by wrapping the
backend methods.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from feedgen_storage.exceptions import StorageIOError
from feedgen_storage.ingestion import (
    CreateOp,
    IngestionBatch,
    IngestionPipeline,
    IngestionRunner,
)
from feedgen_storage.models import FindPostsCriteria

SERVICE = "wss://bsky.network"
AUTHOR = "did:plc:alice"


def create_op(n: int, text: str = "hello") -> CreateOp:
    return CreateOp.from_record(
        uri=f"at://{AUTHOR}/app.bsky.feed.post/{n:04d}",
        cid=f"bafy{n:04d}",
        author=AUTHOR,
        record={"$type": "app.bsky.feed.post", "text": f"{text} {n}"},
    )


class FixedClock:
    """Clock that advances one millisecond per call."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, tzinfo=UTC))


@pytest.fixture
def pipeline(sqlite_backend, clock):
    return IngestionPipeline(sqlite_backend, SERVICE, clock=clock)


async def all_posts(backend):
    return await backend.find_posts(FindPostsCriteria())


class TestCreateOp:
    def test_from_record_without_reply(self):
        op = create_op(1)
        assert op.content_hash == "bafy0001"
        assert op.author_id == AUTHOR
        assert json.loads(op.payload) == {"$type": "app.bsky.feed.post", "text": "hello 1"}
        assert op.reply_parent is None
        assert op.reply_root is None

    def test_from_record_with_reply(self):
        record = {
            "text": "me too",
            "reply": {
                "parent": {"uri": "at://did:plc:bob/app.bsky.feed.post/p", "cid": "bafyp"},
                "root": {"uri": "at://did:plc:bob/app.bsky.feed.post/r", "cid": "bafyr"},
            },
        }
        op = CreateOp.from_record("at://a/p/1", "bafy1", AUTHOR, record)
        assert op.reply_parent == "at://did:plc:bob/app.bsky.feed.post/p"
        assert op.reply_root == "at://did:plc:bob/app.bsky.feed.post/r"

    def test_malformed_reply_is_ignored(self):
        op = CreateOp.from_record("at://a/p/1", "bafy1", AUTHOR, {"text": "x", "reply": "nope"})
        assert op.reply_parent is None


class TestApplyBatch:
    @pytest.mark.asyncio
    async def test_creates_posts_and_records_cursor(self, pipeline, sqlite_backend, clock):
        result = await pipeline.apply_batch(
            IngestionBatch(cursor=10, creates=[create_op(1), create_op(2)])
        )

        assert result.created == 2
        assert result.failed == 0
        assert result.cursor == 10

        stored = await sqlite_backend.find_post_by_uri(create_op(2).uri)
        assert stored is not None
        assert stored.indexed_at == clock.now
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 10

    @pytest.mark.asyncio
    async def test_replayed_batch_changes_nothing(self, pipeline, sqlite_backend):
        batch = IngestionBatch(cursor=10, creates=[create_op(1), create_op(2)])

        await pipeline.apply_batch(batch)
        before = await all_posts(sqlite_backend)

        result = await pipeline.apply_batch(batch)

        assert result.created == 0
        assert result.duplicates == 2
        assert result.failed == 0
        assert await all_posts(sqlite_backend) == before

    @pytest.mark.asyncio
    async def test_deletes_run_before_creates(self, pipeline, sqlite_backend):
        await pipeline.apply_batch(IngestionBatch(cursor=1, creates=[create_op(1, "old")]))

        replacement = create_op(1, "new")
        result = await pipeline.apply_batch(
            IngestionBatch(cursor=2, deletes=[replacement.uri], creates=[replacement])
        )

        assert result.deleted == 1
        assert result.created == 1
        stored = await sqlite_backend.find_post_by_uri(replacement.uri)
        assert json.loads(stored.payload)["text"] == "new 1"

    @pytest.mark.asyncio
    async def test_delete_of_unknown_post_is_not_counted(self, pipeline):
        result = await pipeline.apply_batch(
            IngestionBatch(cursor=1, deletes=["at://did:plc:x/app.bsky.feed.post/gone"])
        )
        assert result.deleted == 0
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_record_failure_is_counted_and_cursor_still_advances(
        self, pipeline, sqlite_backend, monkeypatch
    ):
        bad = create_op(2)
        original_create = sqlite_backend.create_post

        async def flaky_create(post):
            if post.uri == bad.uri:
                raise StorageIOError("create_post", post.uri)
            return await original_create(post)

        monkeypatch.setattr(sqlite_backend, "create_post", flaky_create)

        result = await pipeline.apply_batch(
            IngestionBatch(cursor=50, creates=[create_op(1), bad, create_op(3)])
        )

        assert result.created == 2
        assert result.failed == 1
        assert await sqlite_backend.find_post_by_uri(bad.uri) is None
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 50

    @pytest.mark.asyncio
    async def test_delete_failure_is_counted(self, pipeline, sqlite_backend, monkeypatch):
        async def broken_delete(uri):
            raise StorageIOError("delete_post_by_uri", uri)

        monkeypatch.setattr(sqlite_backend, "delete_post_by_uri", broken_delete)

        result = await pipeline.apply_batch(
            IngestionBatch(cursor=5, deletes=["at://a/p/1"], creates=[create_op(1)])
        )
        assert result.failed == 1
        assert result.created == 1

    @pytest.mark.asyncio
    async def test_cursor_write_failure_propagates(self, pipeline, sqlite_backend, monkeypatch):
        async def broken_update(service, cursor):
            raise StorageIOError("update_subscription_state", service)

        monkeypatch.setattr(sqlite_backend, "update_subscription_state", broken_update)

        with pytest.raises(StorageIOError):
            await pipeline.apply_batch(IngestionBatch(cursor=5, creates=[create_op(1)]))

    @pytest.mark.asyncio
    async def test_empty_batch_still_records_cursor(self, pipeline, sqlite_backend):
        await pipeline.apply_batch(IngestionBatch(cursor=77))
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 77

    @pytest.mark.asyncio
    async def test_older_cursor_does_not_move_state_backwards(self, pipeline, sqlite_backend):
        await pipeline.apply_batch(IngestionBatch(cursor=200))
        result = await pipeline.apply_batch(IngestionBatch(cursor=150, creates=[create_op(1)]))

        assert result.created == 1
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 200

    @pytest.mark.asyncio
    async def test_resume_cursor(self, pipeline, sqlite_backend):
        assert await pipeline.resume_cursor() is None

        await sqlite_backend.update_subscription_state(SERVICE, 999)
        assert await pipeline.resume_cursor() == 999

        # The persisted cursor also guards against regression
        await pipeline.apply_batch(IngestionBatch(cursor=10))
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 999


async def batches(*items: IngestionBatch):
    for item in items:
        yield item


class GatedPipeline(IngestionPipeline):
    """Pipeline whose apply_batch waits until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def apply_batch(self, batch):
        self.started.set()
        await self.release.wait()
        return await super().apply_batch(batch)


class TestIngestionRunner:
    @pytest.mark.asyncio
    async def test_consumes_source_until_exhausted(self, pipeline, sqlite_backend):
        runner = IngestionRunner(
            pipeline,
            source=batches(
                IngestionBatch(cursor=1, creates=[create_op(1)]),
                IngestionBatch(cursor=2, creates=[create_op(2)]),
            ),
        )

        assert await runner.run() == 2
        assert len(await all_posts(sqlite_backend)) == 2
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 2

    @pytest.mark.asyncio
    async def test_source_factory_receives_persisted_cursor(self, pipeline, sqlite_backend):
        await sqlite_backend.update_subscription_state(SERVICE, 41)
        seen: list[int | None] = []

        def factory(cursor):
            seen.append(cursor)
            return batches(IngestionBatch(cursor=cursor + 1))

        await IngestionRunner(pipeline, source_factory=factory).run()

        assert seen == [41]
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 42

    @pytest.mark.asyncio
    async def test_first_run_factory_gets_none(self, pipeline):
        seen: list[int | None] = []

        def factory(cursor):
            seen.append(cursor)
            return batches()

        await IngestionRunner(pipeline, source_factory=factory).run()
        assert seen == [None]

    def test_requires_exactly_one_source(self, pipeline):
        with pytest.raises(ValueError):
            IngestionRunner(pipeline)
        with pytest.raises(ValueError):
            IngestionRunner(pipeline, source=batches(), source_factory=lambda cursor: batches())

    @pytest.mark.asyncio
    async def test_run_without_source_is_an_error(self, pipeline):
        runner = IngestionRunner(pipeline, source=batches())
        runner._source = None
        with pytest.raises(RuntimeError):
            await runner.run()

    @pytest.mark.asyncio
    async def test_stop_while_waiting_for_source(self, pipeline):
        never = asyncio.Event()
        closed = asyncio.Event()

        async def idle_source():
            try:
                await never.wait()
                yield IngestionBatch(cursor=1)
            finally:
                closed.set()

        runner = IngestionRunner(pipeline, source=idle_source())
        task = asyncio.create_task(runner.run())
        await asyncio.sleep(0.01)

        runner.stop()
        assert await asyncio.wait_for(task, timeout=1) == 0
        assert runner.stopped
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_batch_finish(self, sqlite_backend, clock):
        pipeline = GatedPipeline(sqlite_backend, SERVICE, clock=clock)
        runner = IngestionRunner(
            pipeline,
            source=batches(
                IngestionBatch(cursor=1, creates=[create_op(1)]),
                IngestionBatch(cursor=2, creates=[create_op(2)]),
            ),
        )
        task = asyncio.create_task(runner.run())

        await asyncio.wait_for(pipeline.started.wait(), timeout=1)
        runner.stop()
        pipeline.release.set()

        assert await asyncio.wait_for(task, timeout=1) == 1
        assert len(await all_posts(sqlite_backend)) == 1
        assert (await sqlite_backend.get_subscription_state(SERVICE)).cursor == 1

    @pytest.mark.asyncio
    async def test_stop_before_run_applies_nothing(self, pipeline, sqlite_backend):
        runner = IngestionRunner(pipeline, source=batches(IngestionBatch(cursor=1)))
        runner.stop()

        assert await runner.run() == 0
        assert await sqlite_backend.get_subscription_state(SERVICE) is None

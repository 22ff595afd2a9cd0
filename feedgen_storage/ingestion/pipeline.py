"""
Ingestion pipeline.

Applies batches of post creates and deletes from an event source to a storage
backend and records how far the source has been consumed.

Delivery is at-least-once: after a crash the source replays from the last
persisted cursor, so a create may arrive for a post that is already stored.
That surfaces as DuplicateKeyError and is counted, not treated as a failure.

The cursor is written after every batch, whether or not each record in it was
stored. A record that failed for a reason other than a duplicate is therefore
not retried on restart. BatchResult.failed and the ERROR log line are the
only record of such a loss.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..backends.base import StorageBackend
from ..exceptions import DuplicateKeyError
from ..logging_utils import StorageLoggerAdapter
from ..models import Post, utc_now

logger = logging.getLogger(__name__)


def _ref_uri(record: Mapping[str, Any], key: str) -> str | None:
    reply = record.get("reply")
    if not isinstance(reply, Mapping):
        return None
    ref = reply.get(key)
    if not isinstance(ref, Mapping):
        return None
    uri = ref.get("uri")
    return uri if isinstance(uri, str) else None


@dataclass
class CreateOp:
    """A post to store, as decoded from the event source."""

    uri: str
    content_hash: str
    author_id: str
    payload: str
    reply_parent: str | None = None
    reply_root: str | None = None

    @classmethod
    def from_record(
        cls, uri: str, cid: str, author: str, record: Mapping[str, Any]
    ) -> CreateOp:
        """Build from a decoded post record (``text``, optional ``reply`` refs)."""
        return cls(
            uri=uri,
            content_hash=cid,
            author_id=author,
            payload=json.dumps(record, separators=(",", ":"), default=str),
            reply_parent=_ref_uri(record, "parent"),
            reply_root=_ref_uri(record, "root"),
        )

    def to_post(self, indexed_at: datetime) -> Post:
        return Post(
            uri=self.uri,
            content_hash=self.content_hash,
            author_id=self.author_id,
            payload=self.payload,
            indexed_at=indexed_at,
            reply_parent=self.reply_parent,
            reply_root=self.reply_root,
        )


@dataclass
class IngestionBatch:
    """One unit of work from the event source."""

    cursor: int
    deletes: list[str] = field(default_factory=list)
    creates: list[CreateOp] = field(default_factory=list)


@dataclass
class BatchResult:
    """Outcome counters for one applied batch."""

    cursor: int
    deleted: int = 0
    created: int = 0
    duplicates: int = 0
    failed: int = 0


class IngestionPipeline:
    """Writes batches to a backend and persists the resumption cursor."""

    def __init__(
        self,
        backend: StorageBackend,
        service: str,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend
        self.service = service
        self.clock = clock
        self._last_cursor: int | None = None
        self._log = StorageLoggerAdapter(logger, {"service": service})

    async def resume_cursor(self) -> int | None:
        """Last persisted cursor for this service, or None on first run."""
        state = await self.backend.get_subscription_state(self.service)
        if state is None:
            return None
        self._last_cursor = state.cursor
        return state.cursor

    async def apply_batch(self, batch: IngestionBatch) -> BatchResult:
        """
        Apply deletes, then creates, then record the batch cursor.

        Per-record errors are logged and counted. Only a failure to write the
        cursor propagates; the source can then redeliver the batch.
        """
        result = BatchResult(cursor=batch.cursor)

        for uri in batch.deletes:
            try:
                if await self.backend.delete_post_by_uri(uri):
                    result.deleted += 1
            except Exception as e:
                result.failed += 1
                self._log.error("Failed to delete post", extra={"uri": uri, "error": str(e)})

        for op in batch.creates:
            try:
                await self.backend.create_post(op.to_post(self.clock()))
                result.created += 1
            except DuplicateKeyError:
                result.duplicates += 1
                self._log.debug("Post already stored", extra={"uri": op.uri})
            except Exception as e:
                result.failed += 1
                self._log.error("Failed to store post", extra={"uri": op.uri, "error": str(e)})

        await self._persist_cursor(batch.cursor)

        if batch.deletes or batch.creates:
            self._log.info(
                "Applied batch",
                extra={
                    "cursor": batch.cursor,
                    "created": result.created,
                    "deleted": result.deleted,
                    "duplicates": result.duplicates,
                    "failed": result.failed,
                },
            )
        return result

    async def _persist_cursor(self, cursor: int) -> None:
        if self._last_cursor is not None and cursor < self._last_cursor:
            self._log.warning(
                "Batch cursor is behind the persisted cursor; keeping the persisted one",
                extra={"cursor": cursor, "persisted": self._last_cursor},
            )
            return
        await self.backend.update_subscription_state(self.service, cursor)
        self._last_cursor = cursor


class IngestionRunner:
    """
    Sequential consumer of an event source.

    Pulls one batch at a time and applies it fully before pulling the next.
    ``stop()`` trips the cancellation token: no new batch is admitted, a
    batch that is being applied finishes, and ``run()`` returns.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        source: AsyncIterable[IngestionBatch] | None = None,
        source_factory: Callable[[int | None], AsyncIterable[IngestionBatch]] | None = None,
    ):
        if (source is None) == (source_factory is None):
            raise ValueError("Pass exactly one of source or source_factory")
        self.pipeline = pipeline
        self._source = source
        self._source_factory = source_factory
        self._stop = asyncio.Event()
        self.batches_applied = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Stop admitting batches."""
        self._stop.set()

    async def run(self) -> int:
        """
        Consume the source until it ends or stop() is called.

        Returns:
            Number of batches applied by this call
        """
        if self._source_factory is not None:
            cursor = await self.pipeline.resume_cursor()
            logger.info(
                "Resuming ingestion",
                extra={"service": self.pipeline.service, "cursor": cursor},
            )
            source = self._source_factory(cursor)
        elif self._source is not None:
            source = self._source
        else:
            raise RuntimeError("IngestionRunner has no event source")

        iterator = aiter(source)
        applied = 0
        try:
            while not self.stopped:
                batch = await self._next_batch(iterator)
                if batch is None:
                    break
                await self.pipeline.apply_batch(batch)
                applied += 1
                self.batches_applied += 1
        finally:
            await _close_iterator(iterator)

        logger.info(
            "Ingestion stopped",
            extra={"service": self.pipeline.service, "batches": applied},
        )
        return applied

    async def _next_batch(self, iterator: AsyncIterator[IngestionBatch]) -> IngestionBatch | None:
        """Wait for the next batch or the stop token, whichever comes first."""

        async def pull() -> IngestionBatch | None:
            try:
                return await anext(iterator)
            except StopAsyncIteration:
                return None

        next_task = asyncio.create_task(pull())
        stop_task = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({next_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            next_task.cancel()
            raise
        finally:
            stop_task.cancel()

        if not next_task.done():
            next_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await next_task
            return None

        batch = next_task.result()
        # A batch that arrived together with stop() is not admitted
        if self.stopped:
            return None
        return batch


async def _close_iterator(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug("Error closing event source", extra={"error": str(e)})

"""
Feed generator service.

Wires one storage backend to the ingestion pipeline and the feed query
service, and owns their shutdown order: stop admitting batches, let the
in-flight batch finish, then release the backend.

Usage:

    >>> config = load_backend_config("settings.yaml")
    >>> settings = load_service_settings("settings.yaml")
    >>> service = FeedGeneratorService(config, settings)
    >>> await service.start()
    >>> ingest = asyncio.create_task(service.run_ingestion(firehose_batches))
    >>> skeleton = await service.feed_skeleton("whats-alf", limit=30)
    >>> await service.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Callable
from typing import Any

from .backends.base import StorageBackend
from .config import BackendConfig, ServiceSettings
from .exceptions import NotConnectedError, ValidationError
from .factory import create_backend
from .ingestion import IngestionBatch, IngestionPipeline, IngestionRunner
from .query import AlgorithmRegistry, FeedQueryService, FeedSkeleton, default_registry

logger = logging.getLogger(__name__)

SourceFactory = Callable[[int | None], AsyncIterable[IngestionBatch]]


class FeedGeneratorService:
    """Process-level composition of storage, ingestion and feed queries."""

    def __init__(
        self,
        config: BackendConfig,
        settings: ServiceSettings | None = None,
        registry: AlgorithmRegistry | None = None,
    ):
        self.config = config
        self.settings = settings or ServiceSettings()
        self.registry = registry or default_registry()

        self._backend: StorageBackend | None = None
        self._pipeline: IngestionPipeline | None = None
        self._query: FeedQueryService | None = None
        self._runner: IngestionRunner | None = None
        self._ingestion_idle = asyncio.Event()
        self._ingestion_idle.set()
        self._shut_down = False

    @property
    def backend(self) -> StorageBackend:
        if self._backend is None:
            raise NotConnectedError("backend", "service is not started")
        return self._backend

    @property
    def pipeline(self) -> IngestionPipeline:
        if self._pipeline is None:
            raise NotConnectedError("ingest", "service is not started")
        return self._pipeline

    @property
    def query(self) -> FeedQueryService:
        if self._query is None:
            raise NotConnectedError("query", "service is not started")
        return self._query

    async def start(self) -> None:
        """Create a ready backend and the components that use it."""
        if self._backend is not None:
            return
        if self._shut_down:
            raise NotConnectedError("start", "service has been shut down")

        backend = await create_backend(self.config)
        self._backend = backend
        self._pipeline = IngestionPipeline(backend, self.settings.service_name)
        self._query = FeedQueryService(
            backend,
            overfetch_multiplier=self.settings.overfetch_multiplier,
            max_fetch=self.settings.max_fetch,
        )
        logger.info(
            "Feed generator started",
            extra={"backend": backend.backend_type, "service": self.settings.service_name},
        )

    async def run_ingestion(self, source_factory: SourceFactory) -> int:
        """
        Consume the event source from the persisted cursor until shutdown.

        Args:
            source_factory: Called with the persisted cursor (None on first
                run) and returns the async iterable of batches

        Returns:
            Number of batches applied
        """
        if self._shut_down:
            raise NotConnectedError("ingest", "service has been shut down")
        if not self._ingestion_idle.is_set():
            raise RuntimeError("Ingestion is already running")

        runner = IngestionRunner(self.pipeline, source_factory=source_factory)
        self._runner = runner
        self._ingestion_idle.clear()
        try:
            return await runner.run()
        finally:
            self._ingestion_idle.set()

    async def feed_skeleton(
        self,
        shortname: str,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> FeedSkeleton:
        """
        One page of the named algorithm.

        ``limit`` defaults to the configured default and may not exceed the
        configured maximum.

        Raises:
            ValidationError: Unknown algorithm, limit out of range or bad cursor
        """
        handler = self.registry.get(shortname)
        if handler is None:
            raise ValidationError("feed", "unknown algorithm", shortname)

        if limit is None:
            limit = self.settings.default_feed_limit
        if not 1 <= limit <= self.settings.max_feed_limit:
            raise ValidationError(
                "limit", f"must be between 1 and {self.settings.max_feed_limit}", str(limit)
            )
        return await handler(self.query, limit, cursor)

    async def shutdown(self) -> None:
        """Stop ingestion, wait for the in-flight batch, disconnect. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True

        if self._runner is not None:
            self._runner.stop()
        await self._ingestion_idle.wait()

        if self._backend is not None:
            await self._backend.disconnect()
        logger.info("Feed generator stopped")

    async def health(self) -> dict[str, Any]:
        """Liveness summary for a health endpoint."""
        healthy = (
            self._backend is not None
            and not self._shut_down
            and await self._backend.health_check()
        )
        return {
            "status": "ok" if healthy else "unavailable",
            "backend": self.config.backend_type,
        }

"""Event ingestion: batches of post creates/deletes into a storage backend."""

from .pipeline import (
    BatchResult,
    CreateOp,
    IngestionBatch,
    IngestionPipeline,
    IngestionRunner,
)

__all__ = [
    "BatchResult",
    "CreateOp",
    "IngestionBatch",
    "IngestionPipeline",
    "IngestionRunner",
]

"""Feed queries: filtered keyset pagination and the algorithm registry."""

from .algorithms import (
    WHATS_ALF,
    AlgorithmRegistry,
    FeedSkeleton,
    contains_ignore_case,
    default_registry,
    filtered_algorithm,
    whats_alf,
)
from .feed import FeedQueryService, RecordPredicate

__all__ = [
    "FeedQueryService",
    "RecordPredicate",
    "AlgorithmRegistry",
    "FeedSkeleton",
    "WHATS_ALF",
    "contains_ignore_case",
    "default_registry",
    "filtered_algorithm",
    "whats_alf",
]

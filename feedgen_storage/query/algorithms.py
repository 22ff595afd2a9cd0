"""
Feed algorithms.

An algorithm maps a page request (limit, cursor) to a feed skeleton: the post
uris for one page plus the cursor for the next. Algorithms are registered by
shortname, which is the last path segment of the feed's generator URI.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .feed import FeedQueryService, RecordPredicate

# Feed generator record keys are limited to 15 characters
MAX_SHORTNAME_LENGTH = 15


@dataclass
class FeedSkeleton:
    """Response body of a feed skeleton request."""

    feed: list[dict[str, str]] = field(default_factory=list)
    cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"feed": self.feed}
        if self.cursor is not None:
            result["cursor"] = self.cursor
        return result


AlgorithmHandler = Callable[[FeedQueryService, int, str | None], Awaitable[FeedSkeleton]]


def contains_ignore_case(needle: str) -> RecordPredicate:
    """Predicate: the record's ``text`` contains ``needle``, ignoring case."""
    lowered = needle.lower()

    def predicate(record: dict[str, Any]) -> bool:
        text = record.get("text")
        return isinstance(text, str) and lowered in text.lower()

    return predicate


def filtered_algorithm(predicate: RecordPredicate) -> AlgorithmHandler:
    """Build a handler that pages through posts matching ``predicate``."""

    async def handler(
        service: FeedQueryService, limit: int, cursor: str | None = None
    ) -> FeedSkeleton:
        page = await service.get_filtered_feed(predicate, limit, cursor)
        return FeedSkeleton(feed=[{"post": post.uri} for post in page.items], cursor=page.cursor)

    return handler


WHATS_ALF = "whats-alf"

whats_alf = filtered_algorithm(contains_ignore_case("alf"))


class AlgorithmRegistry:
    """Algorithms by shortname."""

    def __init__(self) -> None:
        self._handlers: dict[str, AlgorithmHandler] = {}

    def register(self, shortname: str, handler: AlgorithmHandler) -> None:
        if not shortname or len(shortname) > MAX_SHORTNAME_LENGTH:
            raise ValueError(
                f"Algorithm shortname must be 1-{MAX_SHORTNAME_LENGTH} characters: {shortname!r}"
            )
        if shortname in self._handlers:
            raise ValueError(f"Algorithm already registered: {shortname}")
        self._handlers[shortname] = handler

    def get(self, shortname: str) -> AlgorithmHandler | None:
        return self._handlers.get(shortname)

    def names(self) -> list[str]:
        return list(self._handlers)


def default_registry() -> AlgorithmRegistry:
    """Registry holding the built-in algorithms."""
    registry = AlgorithmRegistry()
    registry.register(WHATS_ALF, whats_alf)
    return registry

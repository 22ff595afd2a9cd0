"""
Filtered feed queries over keyset pagination.

A feed is a predicate over the decoded post record. Storage cannot evaluate
the predicate, so the service over-fetches pages in storage order, filters
them in memory and keeps going until it has enough matches or the data runs
out.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from ..backends.base import StorageBackend
from ..exceptions import ValidationError
from ..models import FeedPage, FindPostsCriteria, PageCursor, Post

logger = logging.getLogger(__name__)

RecordPredicate = Callable[[dict[str, Any]], bool]


def _decode_payload(post: Post) -> dict[str, Any] | None:
    try:
        record = json.loads(post.payload)
    except (TypeError, ValueError) as e:
        logger.debug(
            "Skipping post with undecodable payload",
            extra={"uri": post.uri, "error": str(e)},
        )
        return None
    if not isinstance(record, dict):
        logger.debug("Skipping post whose payload is not an object", extra={"uri": post.uri})
        return None
    return record


def _matches(predicate: RecordPredicate, post: Post) -> bool:
    record = _decode_payload(post)
    if record is None:
        return False
    try:
        return bool(predicate(record))
    except Exception as e:
        logger.debug(
            "Predicate raised; treating as no match",
            extra={"uri": post.uri, "error": str(e)},
        )
        return False


class FeedQueryService:
    """Paginated, filtered reads over a StorageBackend."""

    def __init__(
        self,
        backend: StorageBackend,
        overfetch_multiplier: int = 3,
        max_fetch: int = 300,
    ):
        if overfetch_multiplier < 1:
            raise ValueError("overfetch_multiplier must be at least 1")
        if max_fetch < 1:
            raise ValueError("max_fetch must be at least 1")
        self.backend = backend
        self.overfetch_multiplier = overfetch_multiplier
        self.max_fetch = max_fetch

    def fetch_window(self, limit: int) -> int:
        """Rows requested from storage per round for a page of ``limit``."""
        return max(limit, min(limit * self.overfetch_multiplier, self.max_fetch))

    async def get_filtered_feed(
        self,
        predicate: RecordPredicate,
        limit: int,
        cursor: str | None = None,
    ) -> FeedPage:
        """
        Return up to ``limit`` posts whose record satisfies ``predicate``.

        Args:
            predicate: Called with the decoded record of each candidate post
            limit: Page size, at least 1
            cursor: Encoded cursor from a previous page

        Returns:
            FeedPage in storage order; its cursor is the key of the last
            returned post, or None when the page is empty

        Raises:
            ValidationError: Bad limit or undecodable cursor
        """
        if limit < 1:
            raise ValidationError("limit", "must be a positive integer", str(limit))

        position = PageCursor.decode(cursor) if cursor else None
        window = self.fetch_window(limit)
        matched: list[Post] = []
        scanned = 0

        while len(matched) < limit:
            batch = await self.backend.find_posts(
                FindPostsCriteria(cursor=position, limit=window)
            )
            scanned += len(batch)
            matched.extend(post for post in batch if _matches(predicate, post))

            if len(batch) < window:
                break
            position = PageCursor.from_post(batch[-1])

        items = matched[:limit]
        next_cursor = PageCursor.from_post(items[-1]).encode() if items else None

        logger.debug(
            "Filtered feed page",
            extra={"limit": limit, "returned": len(items), "scanned": scanned},
        )
        return FeedPage(items=items, cursor=next_cursor)

    async def find_posts(self, criteria: FindPostsCriteria) -> list[Post]:
        """Unfiltered keyset listing."""
        return await self.backend.find_posts(criteria)

    async def health_check(self) -> bool:
        return await self.backend.health_check()

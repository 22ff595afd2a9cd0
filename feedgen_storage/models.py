"""
Storage record model.

Canonical shapes shared by every backend, the ingestion pipeline and the
feed query service. Backends convert to and from these; nothing outside a
backend module ever sees a row or document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from .exceptions import ValidationError

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MICROSECOND = timedelta(microseconds=1)
_CURSOR_SEPARATOR = "::"


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class Post:
    """One indexed post.

    ``indexed_at`` is when the record was written into this store, not when
    the post was authored.
    """

    uri: str
    content_hash: str
    author_id: str
    payload: str  # JSON text of the full record
    indexed_at: datetime
    reply_parent: str | None = None
    reply_root: str | None = None

    def __post_init__(self) -> None:
        self.indexed_at = ensure_utc(self.indexed_at)


@dataclass
class SubscriptionState:
    """Resumption position for one ingestion source."""

    service: str
    cursor: int


@dataclass(frozen=True)
class PageCursor:
    """Keyset boundary over ``(indexed_at DESC, uri DESC)``.

    A cursor without ``uri`` only bounds by time (``indexed_at < cursor``).
    """

    indexed_at: datetime
    uri: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "indexed_at", ensure_utc(self.indexed_at))

    @classmethod
    def from_post(cls, post: Post) -> PageCursor:
        return cls(indexed_at=post.indexed_at, uri=post.uri)

    def encode(self) -> str:
        """Serialize as ``<epoch-microseconds>::<uri>``."""
        micros = (self.indexed_at - EPOCH) // _MICROSECOND
        return f"{micros}{_CURSOR_SEPARATOR}{self.uri or ''}"

    @classmethod
    def decode(cls, value: str) -> PageCursor:
        """Parse an encoded cursor.

        Accepts the composite form produced by :meth:`encode` and a bare
        integer of epoch milliseconds, the older time-only feed cursor.
        """
        if not value:
            raise ValidationError("cursor", "empty cursor")

        if _CURSOR_SEPARATOR in value:
            micros_str, uri = value.split(_CURSOR_SEPARATOR, 1)
            try:
                micros = int(micros_str)
            except ValueError:
                raise ValidationError("cursor", "timestamp is not an integer", value) from None
        else:
            uri = ""
            try:
                micros = int(value) * 1000
            except ValueError:
                raise ValidationError("cursor", "unrecognized cursor format", value) from None

        # Must land inside datetime's year 1..9999
        try:
            indexed_at = EPOCH + timedelta(microseconds=micros)
        except (OverflowError, ValueError):
            raise ValidationError("cursor", "timestamp out of range", value) from None
        return cls(indexed_at=indexed_at, uri=uri or None)


@dataclass
class FindPostsCriteria:
    """Inputs to ``find_posts``.

    ``limit=None`` means no bound; callers are expected to pass one.
    """

    author_id: str | None = None
    cursor: PageCursor | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 1:
            raise ValidationError("limit", "must be a positive integer", str(self.limit))


@dataclass
class FeedPage:
    """A page of posts plus the cursor for the next page (None at end of data)."""

    items: list[Post] = field(default_factory=list)
    cursor: str | None = None

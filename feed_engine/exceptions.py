from __future__ import annotations

from typing import Optional


class FeedEngineError(Exception):
    """Base class for errors raised by feed_engine."""


class FetchError(FeedEngineError):
    """Raised when a feed cannot be fetched (network failure, timeout, non-2xx). Retryable."""

    def __init__(self, source_id: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"{source_id}: {message}")
        self.source_id = source_id
        self.message = message
        self.status_code = status_code


class ParseError(FeedEngineError):
    """Raised when a feed payload is malformed or in an unrecognized format."""


class PersistenceError(FeedEngineError):
    """Raised when the key-value store cannot be read or written."""


class RateLimitSkip(Exception):
    """Signals that a source was skipped because its rate limit window is full.

    Not an error: the source is simply tried again on the next tick.
    """

    def __init__(self, source_id: str, count: int, allowed: int) -> None:
        super().__init__(f"{source_id}: {count} requests in window (allowed {allowed})")
        self.source_id = source_id
        self.count = count
        self.allowed = allowed

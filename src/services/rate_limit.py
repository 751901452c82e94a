"""
Chat Rate Limiter

Fixed-window request counting per caller identity. The store is injectable:
the in-memory store suits a single process; a shared cache can implement
``RateLimitStore`` for multi-instance deployments.
"""

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from src.services.errors import RateLimitError

logger = structlog.get_logger(__name__)

DEFAULT_MAX_REQUESTS = 45
DEFAULT_WINDOW_SECONDS = 60
DEFAULT_SWEEP_THRESHOLD = 5000
RATE_LIMIT_MESSAGE = "Too many chat requests. Please wait a minute and try again."


class RateLimitStore(Protocol):
    """Counts requests per identity."""

    def check_and_increment(self, identity: str, now: Optional[float] = None) -> bool:
        """Record one request and return whether it is allowed."""
        ...


@dataclass
class _Bucket:
    count: int
    reset_at: float


class InMemoryRateLimitStore:
    """
    Thread-safe fixed-window counters held in process memory.

    A bucket resets lazily once its window has passed. When the number of
    buckets exceeds ``sweep_threshold``, expired buckets are compacted away
    before the next request is counted.

    Args:
        max_requests: Requests allowed per window.
        window_seconds: Window length.
        sweep_threshold: Bucket count that triggers compaction.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_threshold = sweep_threshold
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def check_and_increment(self, identity: str, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now

        with self._lock:
            if len(self._buckets) > self.sweep_threshold:
                self._compact_locked(now)

            bucket = self._buckets.get(identity)
            if bucket is None or bucket.reset_at <= now:
                self._buckets[identity] = _Bucket(count=1, reset_at=now + self.window_seconds)
                return True

            if bucket.count >= self.max_requests:
                return False

            bucket.count += 1
            return True

    def compact(self, now: Optional[float] = None) -> int:
        """Drop expired buckets. Returns how many were removed."""
        now = time.monotonic() if now is None else now
        with self._lock:
            return self._compact_locked(now)

    def _compact_locked(self, now: float) -> int:
        expired = [key for key, bucket in self._buckets.items() if bucket.reset_at <= now]
        for key in expired:
            del self._buckets[key]
        return len(expired)


class ChatRateLimiter:
    """
    Applies a RateLimitStore to chat requests.

    Identity is the user id when known, else the client IP, else
    ``"anonymous"``.
    """

    def __init__(self, store: Optional[RateLimitStore] = None):
        if store is None:
            store = InMemoryRateLimitStore(
                max_requests=int(os.environ.get("CHAT_RATE_LIMIT_MAX", DEFAULT_MAX_REQUESTS))
            )
        self._store = store

    @staticmethod
    def identity(user_id: Optional[str] = None, client_ip: Optional[str] = None) -> str:
        return str(user_id or "").strip() or str(client_ip or "").strip() or "anonymous"

    def check(self, user_id: Optional[str] = None, client_ip: Optional[str] = None, now: Optional[float] = None) -> None:
        """
        Count one chat request.

        Raises:
            RateLimitError: Identity has used up its window.
        """
        identity = self.identity(user_id, client_ip)
        if not self._store.check_and_increment(identity, now=now):
            logger.warning("chat_rate_limited", identity_kind="user" if user_id else "ip")
            raise RateLimitError(RATE_LIMIT_MESSAGE)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_chat_rate_limiter: Optional[ChatRateLimiter] = None


def get_chat_rate_limiter() -> ChatRateLimiter:
    """Return the process-wide chat rate limiter."""
    global _chat_rate_limiter
    if _chat_rate_limiter is None:
        _chat_rate_limiter = ChatRateLimiter()
    return _chat_rate_limiter


def set_chat_rate_limiter(limiter: Optional[ChatRateLimiter]) -> None:
    """Replace the process-wide chat rate limiter (for testing)."""
    global _chat_rate_limiter
    _chat_rate_limiter = limiter

"""
Process-local TTL cache and rate-limit bookkeeping for the ServiceM8 client.

Both are shared by every coroutine using a client instance. Updates are
guarded by a lock so concurrent readers never observe a half-written entry
or counter.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Optional

from fieldsync.integrations.errors import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
# Window assumed when ServiceM8 reports no quota left but no reset time
DEFAULT_RESET_SECONDS = 60


def make_cache_key(entity: str, params: Optional[dict] = None) -> str:
    """Cache key from entity type + a stable signature of the query params."""
    signature = json.dumps(params or {}, sort_keys=True, default=str)
    return f"{entity}:{signature}"


class CacheEntry:
    __slots__ = ("data", "stored_at", "ttl")

    def __init__(self, data: Any, stored_at: float, ttl: float):
        self.data = data
        self.stored_at = stored_at
        self.ttl = ttl

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class TTLCache:
    """Entries expire after ttl seconds; the oldest entry is evicted when full."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> tuple[bool, Any]:
        """Returns (hit, value)."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                if entry is not None:
                    del self._entries[key]
                self.misses += 1
                return False, None
            self.hits += 1
            return True, entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].stored_at)
                del self._entries[oldest]
            self._entries[key] = CacheEntry(value, self._clock(), ttl or self.ttl_seconds)

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix. Returns count removed."""
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug("Invalidated %d cache entries for %s", len(keys), prefix)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "keys": sorted(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
                "ttl_seconds": self.ttl_seconds,
            }


class RateLimitState:
    """
    Remaining quota as last reported by ServiceM8.

    Unknown until the first response carries X-RateLimit-* headers. Once the
    reset time passes the exhausted state is forgotten.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.limit: Optional[int] = None
        self.remaining: Optional[int] = None
        self.reset_at: Optional[float] = None

    def update_from_headers(self, headers) -> None:
        limit = _int_header(headers, "X-RateLimit-Limit")
        remaining = _int_header(headers, "X-RateLimit-Remaining")
        reset = _int_header(headers, "X-RateLimit-Reset")
        if limit is None and remaining is None and reset is None:
            return
        with self._lock:
            if limit is not None:
                self.limit = limit
            if remaining is not None:
                self.remaining = remaining
            if reset is not None:
                self.reset_at = float(reset)
            elif self.remaining is not None and self.remaining <= 0:
                now = self._clock()
                if self.reset_at is None or self.reset_at <= now:
                    self.reset_at = now + DEFAULT_RESET_SECONDS

    def mark_exhausted(self, reset_at: float) -> None:
        with self._lock:
            self.remaining = 0
            self.reset_at = reset_at

    def check(self) -> None:
        """Raise RateLimitedError if the quota is known to be exhausted."""
        now = self._clock()
        with self._lock:
            if self.remaining is None or self.remaining > 0:
                return
            if self.reset_at is None:
                self.reset_at = now + DEFAULT_RESET_SECONDS
            if now >= self.reset_at:
                self.remaining = None
                return
            reset_at = self.reset_at
        raise RateLimitedError("ServiceM8 rate limit exhausted", reset_at=reset_at)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "limit": self.limit,
                "remaining": self.remaining,
                "reset": self.reset_at,
            }


def _int_header(headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None

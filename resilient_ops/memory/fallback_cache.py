"""
Fallback Cache
==============
Last-known-good store consulted when the backend is unavailable.

This is a read-availability safety net, not a performance cache:
- Entries are written on every successful fetch (read-through)
- ``get`` returns the last stored value regardless of age
- TTL is advisory: it marks entries stale, it does not hide them
- Size is bounded by LRU eviction, age by an optional TTL sweep
- An explicit active flag says "the backend is currently not trusted"
"""

import time
import logging
import threading
from typing import Optional, Dict, Any, TypeVar, Generic, Callable
from dataclasses import dataclass
from collections import OrderedDict

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Cached value with the time it was stored."""
    key: str
    value: T
    stored_at: float

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.stored_at


@dataclass
class CacheStats:
    """Cache statistics."""
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class FallbackCache:
    """
    In-process keyed store of last-known-good results.

    Example:
        cache = FallbackCache(max_entries=10_000, ttl_seconds=600)

        cache.put("user:42", user)
        cache.enable()                 # backend judged unhealthy
        if cache.is_active():
            user = cache.get("user:42")
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize fallback cache.

        Args:
            max_entries: LRU bound on the number of keys
            ttl_seconds: Advisory freshness window used by is_stale()
            clock: Time source, overridable in tests
        """
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()

        # Read without the lock on the hot path; eventual visibility is enough
        self._active = False
        self._last_successful_sync: Optional[float] = None

    def enable(self):
        """Enable fallback mode when the backend is judged unhealthy."""
        if not self._active:
            self._active = True
            logger.warning("Fallback cache enabled - serving last-known-good data")

    def disable(self):
        """Disable fallback mode when the backend recovers."""
        if self._active:
            self._active = False
            logger.info("Fallback cache disabled - backend recovered")

    def is_active(self) -> bool:
        return self._active

    def put(self, key: str, value: Any):
        """Store the latest good value for ``key``."""
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock())
            self._stats.writes += 1

            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug(f"Fallback cache evicted '{evicted}'")

            self._stats.size = len(self._entries)

    def lookup(self, key: str) -> Optional[CacheEntry[Any]]:
        """Get the entry for ``key`` including when it was stored."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry

    def get(self, key: str) -> Optional[Any]:
        """Get the last stored value for ``key``, or None."""
        entry = self.lookup(key)
        return entry.value if entry is not None else None

    def is_stale(self, entry: CacheEntry[Any]) -> bool:
        """Whether an entry is older than the advisory TTL."""
        return entry.age(self._clock()) > self.ttl_seconds

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                self._stats.size = len(self._entries)
                return True
            return False

    def clear(self) -> int:
        """Clear all entries."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._stats.size = 0
        logger.info(f"Fallback cache cleared ({count} entries)")
        return count

    def sweep_expired(self, max_age: float) -> int:
        """Remove entries older than ``max_age`` seconds."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now - e.stored_at > max_age]
            for key in expired:
                del self._entries[key]
            self._stats.expirations += len(expired)
            self._stats.size = len(self._entries)

        if expired:
            logger.info(f"Swept {len(expired)} expired fallback entries")
        return len(expired)

    def update_sync_time(self):
        """Record a confirmed healthy contact with the backend."""
        self._last_successful_sync = self._clock()

    @property
    def last_successful_sync(self) -> Optional[float]:
        return self._last_successful_sync

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get_stats(self) -> CacheStats:
        """Get a copy of the cache statistics."""
        with self._lock:
            self._stats.size = len(self._entries)
            return CacheStats(**vars(self._stats))

    def status(self) -> Dict[str, Any]:
        """Summary for health endpoints."""
        stats = self.get_stats()
        return {
            "active": self._active,
            "entries": stats.size,
            "max_entries": self.max_entries,
            "hit_rate": stats.hit_rate,
            "last_sync": self._last_successful_sync,
        }


# Export public API
__all__ = [
    'FallbackCache',
    'CacheEntry',
    'CacheStats',
]

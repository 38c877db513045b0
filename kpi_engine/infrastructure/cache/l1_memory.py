"""L1 in-process cache: LRU with a short TTL."""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import RLock
from typing import Any

import structlog

from kpi_engine.domain.fingerprint import CacheFingerprint

logger = structlog.get_logger()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class L1MemoryCache:
    """Thread-safe LRU cache keyed by canonical fingerprints.

    Entries expire ``ttl_seconds`` after they are written; when ``max_size``
    is reached the least recently used entry is evicted.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 5.0,
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize L1 cache."""
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._time = time_func
        self._cache: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= self._time():
                del self._cache[key]
                self._expirations += 1
                self._misses += 1
                return None
            self._cache.move_to_end(key)
            self._hits += 1
            return entry.value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.max_size:
                self._cache.popitem(last=False)
                self._evictions += 1
            self._cache[key] = _Entry(value, self._time() + self.ttl_seconds)
            self._cache.move_to_end(key)

    def invalidate(self, metric_id: str, time_point: str) -> int:
        """Drop every entry that depends on metric_id at time_point.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            doomed = [key for key in self._cache if self._references(key, metric_id, time_point)]
            for key in doomed:
                del self._cache[key]
        if doomed:
            logger.debug("l1_invalidated", metric_id=metric_id, time_point=time_point, removed=len(doomed))
        return len(doomed)

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        return count

    def stats(self) -> dict[str, int | float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate_pct": (self._hits / total * 100) if total else 0.0,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "size": len(self._cache),
                "max_size": self.max_size,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def _references(key: str, metric_id: str, time_point: str) -> bool:
        try:
            return CacheFingerprint.parse(key).references(metric_id, time_point)
        except ValueError:
            logger.warning("l1_unparseable_key", key=key)
            return False

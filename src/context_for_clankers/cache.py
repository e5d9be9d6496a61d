"""
Bounded in-memory LRU cache with per-entry TTL and hit/miss metrics.

The cache is a non-authoritative accelerator: anything stored here can be
dropped at any time without losing data. Higher layers key their entries
with a prefix (``search:``, ``context:``) so they can be invalidated in
bulk after a mutation.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Generic, TypeVar

from .config import CacheConfig
from .errors import CacheError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class CacheEntry(Generic[T]):
    value: T
    inserted_at: float
    last_accessed_at: float
    expires_at: float | None
    size: int

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass
class CacheMetrics:
    hits: int
    misses: int
    hit_rate: float
    evictions: int
    total_size: int


class LRUCache(Generic[T]):
    """
    Thread-safe least-recently-used cache.

    Entries are kept in an ``OrderedDict`` ordered from least to most
    recently accessed. ``get`` moves a live hit to the end; inserting a new
    key into a full cache evicts from the front.

    Parameters
    ----------
    config:
        Size bound, TTL in milliseconds (0 or ``None`` disables expiry) and
        whether to record metrics.
    clock:
        Millisecond clock, injectable for tests.
    """

    def __init__(self, config: CacheConfig | None = None, clock=_now_ms) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> T | None:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                entry = None
            if entry is None:
                self._record_miss()
                return None
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._record_hit()
            return entry.value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            now = self._clock()
            ttl = self.config.ttl_ms
            expires_at = now + ttl if ttl else None
            size = self._estimate_size(value)

            if key in self._entries:
                self._entries[key] = CacheEntry(value, now, now, expires_at, size)
                self._entries.move_to_end(key)
                return

            while len(self._entries) >= self.config.max_size:
                evicted, _ = self._entries.popitem(last=False)
                if self.config.enable_metrics:
                    self._evictions += 1
                logger.debug("Evicted cache entry %s", evicted)

            self._entries[key] = CacheEntry(value, now, now, expires_at, size)

    def has(self, key: str) -> bool:
        """Membership test that leaves recency and metrics untouched."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    # ------------------------------------------------------------------
    # Bulk invalidation
    # ------------------------------------------------------------------

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Remove every key matched by the regex *pattern*."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        return self._invalidate(lambda key: regex.search(key) is not None, str(regex.pattern))

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with *prefix*."""
        return self._invalidate(lambda key: key.startswith(prefix), prefix)

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def _invalidate(self, predicate, label: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d cache entries matching %r", len(doomed), label)
        return len(doomed)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> CacheMetrics:
        with self._lock:
            lookups = self._hits + self._misses
            return CacheMetrics(
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
                evictions=self._evictions,
                total_size=sum(e.size for e in self._entries.values()),
            )

    def _record_hit(self) -> None:
        if self.config.enable_metrics:
            self._hits += 1

    def _record_miss(self) -> None:
        if self.config.enable_metrics:
            self._misses += 1

    @staticmethod
    def _estimate_size(value: object) -> int:
        try:
            try:
                return len(json.dumps(value, default=str))
            except (TypeError, ValueError):
                return len(repr(value))
        except Exception as exc:
            err = CacheError("Could not size cache value", original_error=exc)
            logger.debug("%s", err)
            return 0

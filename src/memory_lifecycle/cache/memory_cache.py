"""
In-process cache for project records.

Provides the read-through layer in front of the record store with:
- Configurable TTL (default 60 seconds), enforced on every get
- Size bound with eviction of the oldest insertion
- Regex-based invalidation
- Hit/miss accounting and an approximate memory estimate
- An optional background sweeper that reclaims expired entries
"""

import asyncio
import json
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Rough per-entry bookkeeping overhead used by the memory estimate
_ENTRY_OVERHEAD_BYTES = 48


def make_cache_key(namespace: str, name: str) -> str:
    """
    Build a cache key from a namespace and a name.

    Returns:
        Cache key string in format: namespace:name
    """
    return f"{namespace}:{name}"


@dataclass
class CacheEntry:
    """A cached value with its insertion time and expiry horizon."""

    key: str
    data: Any
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass
class CacheStats:
    """Snapshot of cache counters."""

    hits: int
    misses: int
    size: int
    approximate_memory_bytes: int

    def to_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "approximate_memory_bytes": self.approximate_memory_bytes,
        }


def _estimate_size(key: str, data: Any) -> int:
    """Approximate footprint of one entry (UTF-16 sized strings, as a rough upper bound)."""
    try:
        if isinstance(data, BaseModel):
            payload = data.model_dump_json()
        else:
            payload = json.dumps(data, default=str)
    except (TypeError, ValueError):
        payload = repr(data)
    return len(key) * 2 + len(payload) * 2 + _ENTRY_OVERHEAD_BYTES


class MemoryCache:
    """
    Time-boxed, size-bounded key/value cache.

    All operations are serialised by one lock and never raise to the caller:
    internal failures are logged and degrade to a miss.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_size: int = 1000,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Default TTL for entries set without an explicit ttl
            max_size: Maximum number of entries before eviction
            sweep_interval_seconds: Period of the background expiry sweep
            clock: Monotonic time source, injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._sweeper_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, config: Any) -> "MemoryCache":
        return cls(
            ttl_seconds=config.ttl_seconds,
            max_size=config.max_size,
            sweep_interval_seconds=config.sweep_interval_seconds,
        )

    def get(self, key: str) -> Any | None:
        """
        Get cached value by key.

        Returns:
            Cached value, or None if not found, expired, or on error
        """
        try:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    self._misses += 1
                    return None

                if entry.is_expired(self._clock()):
                    del self._entries[key]
                    self._misses += 1
                    return None

                self._hits += 1
                return entry.data
        except Exception as e:
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """
        Set cached value with TTL, evicting the oldest insertion when full.

        Returns:
            True if successful, False otherwise
        """
        try:
            with self._lock:
                if key not in self._entries and len(self._entries) >= self.max_size:
                    self._evict_oldest()

                self._entries[key] = CacheEntry(
                    key=key,
                    data=value,
                    timestamp=self._clock(),
                    ttl=ttl if ttl is not None else self.ttl_seconds,
                )
                return True
        except Exception as e:
            logger.warning(f"Cache set failed for key {key}: {e}")
            return False

    def has(self, key: str) -> bool:
        """True if the key is present and not expired (counts as a lookup)."""
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        """
        Delete cached value.

        Returns:
            True if an entry was removed
        """
        try:
            with self._lock:
                return self._entries.pop(key, None) is not None
        except Exception as e:
            logger.warning(f"Cache delete failed for key {key}: {e}")
            return False

    def clear(self) -> bool:
        """Remove every entry and reset the hit/miss counters."""
        try:
            with self._lock:
                self._entries.clear()
                self._hits = 0
                self._misses = 0
            return True
        except Exception as e:
            logger.warning(f"Cache clear failed: {e}")
            return False

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all keys matching a regular expression.

        Args:
            pattern: Regex searched within each key (e.g. "^project:")

        Returns:
            Number of keys deleted
        """
        try:
            regex = re.compile(pattern)
            with self._lock:
                doomed = [key for key in self._entries if regex.search(key)]
                for key in doomed:
                    del self._entries[key]
            if doomed:
                logger.debug(f"Cache invalidated {len(doomed)} keys matching pattern: {pattern}")
            return len(doomed)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for pattern {pattern}: {e}")
            return 0

    def invalidate_all(self) -> int:
        """Invalidate every key. Returns the number of keys deleted."""
        try:
            with self._lock:
                count = len(self._entries)
                self._entries.clear()
            return count
        except Exception as e:
            logger.warning(f"Cache invalidate_all failed: {e}")
            return 0

    def preload(self, entries: Iterable[tuple[str, Any, float | None]]) -> int:
        """Insert (key, value, ttl) triples. Returns how many were stored."""
        return sum(1 for key, value, ttl in entries if self.set(key, value, ttl))

    def sweep(self) -> int:
        """Physically remove every expired entry. Returns the count removed."""
        try:
            with self._lock:
                now = self._clock()
                expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
                for key in expired:
                    del self._entries[key]
        except Exception as e:
            logger.warning(f"Cache sweep failed: {e}")
            return 0
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            memory = sum(_estimate_size(key, entry.data) for key, entry in self._entries.items())
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                approximate_memory_bytes=memory,
            )

    def hit_ratio(self) -> float:
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total else 0.0

    def summary(self) -> str:
        """One-line human-readable cache summary."""
        stats = self.stats()
        memory_mb = stats.approximate_memory_bytes / 1024 / 1024
        return (
            f"Cache: {stats.size}/{self.max_size} entries, "
            f"{self.hit_ratio() * 100:.1f}% hit ratio, {memory_mb:.2f}MB memory"
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_oldest(self) -> None:
        """Drop the single entry with the oldest insertion timestamp. Caller holds the lock."""
        if not self._entries:
            return
        oldest_key = min(self._entries.values(), key=lambda e: e.timestamp).key
        del self._entries[oldest_key]
        logger.debug(f"Cache evicted oldest entry: {oldest_key}")

    # ── Background sweeper ──────────────────────────────────────────────

    async def start_sweeper(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            logger.warning("Cache sweeper already running")
            return
        self._sweeper_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Cache sweeper started (interval={self.sweep_interval_seconds}s)")

    async def stop_sweeper(self) -> None:
        """Cancel the sweeper and wait for it to finish."""
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None
        logger.info("Cache sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_task is not None and not self._sweeper_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}")

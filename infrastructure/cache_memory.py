"""
In-process cache with TTL (Time-To-Live) and LRU (Least Recently Used) eviction.

Default backend. Values are held by reference and never serialized, so
callers must not mutate objects after caching them.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any

from infrastructure.cache_base import BaseCache, CacheEntry, CacheStats, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 500


class MemoryCache(BaseCache):
    """
    Bounded in-memory cache with per-entry TTL and LRU eviction.

    Args:
        max_size: Maximum number of entries (default: 500). Writing a new key
            into a full cache evicts the least recently used entry.
    """

    backend_name = "memory"

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        """Initialize an empty cache."""
        super().__init__()
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self._cache: OrderedDict[str, CacheEntry[Any]] = OrderedDict()

    def _lookup(self, key: str) -> CacheEntry[Any] | None:
        """
        Return a live entry and mark it recently used.

        Expired entries are removed on sight.
        """
        entry = self._cache.get(key)
        if entry is None:
            return None

        if entry.is_expired():
            del self._cache[key]
            return None

        self._cache.move_to_end(key)
        return entry

    async def _read_entry(self, key: str) -> CacheEntry[Any] | None:
        entry = self._cache.get(key)
        if entry is not None:
            self._cache.move_to_end(key)
        return entry

    async def get(self, key: str) -> Any | None:
        """
        Retrieve a cached value if present and not expired.

        Args:
            key: Cache key

        Returns:
            Cached value, or None on miss / expiry
        """
        entry = self._lookup(key)
        if entry is None:
            self._record_miss()
            return None

        self._record_hit()
        return entry.data

    async def set(self, key: str, data: Any, ttl_ms: float) -> None:
        """
        Store a value with a TTL in milliseconds.

        A non-positive TTL stores nothing and drops any existing entry.

        Args:
            key: Cache key
            data: Value to cache
            ttl_ms: Time to live in milliseconds
        """
        if ttl_ms <= 0:
            self._cache.pop(key, None)
            return

        # Evict LRU entry if at capacity
        if len(self._cache) >= self.max_size and key not in self._cache:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("MemoryCache EVICT: %s", evicted)

        now = now_ms()
        self._cache[key] = CacheEntry(data=data, created_at=now, expires_at=now + ttl_ms)
        self._cache.move_to_end(key)

    async def has(self, key: str) -> bool:
        """Check if key exists and is not expired. Does not touch hit/miss counters."""
        return self._lookup(key) is not None

    async def delete(self, key: str) -> bool:
        """Delete a specific key. Returns True if it existed."""
        return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        """Clear all entries and reset hit/miss counters."""
        self._cache.clear()
        self.reset_metrics()

    def clear_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = now_ms()
        expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._cache[key]
        return len(expired_keys)

    async def stats(self) -> CacheStats:
        """Evict expired entries, then report the surviving key set."""
        self.clear_expired()
        return CacheStats(size=len(self._cache), keys=list(self._cache.keys()))

    def size(self) -> int:
        """Return current number of stored entries (expired ones included)."""
        return len(self._cache)

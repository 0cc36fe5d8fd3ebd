"""
Cache provider contract and the shared stale-while-revalidate algorithm.

Two backends implement ``CacheProvider``:
    MemoryCache (cache_memory.py) — default, bounded LRU in this process.
    RedisCache  (cache_redis.py)  — optional, shared across server instances.

Both inherit ``BaseCache``, which owns the hit/miss counters, the metrics
snapshot and ``get_with_refresh``. Backends only supply a raw entry lookup
plus the plain get/set/has/delete/clear/stats operations.

Timestamps are milliseconds since the epoch, matching the ``ttl_ms`` the
CRM handlers pass in.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from infrastructure.errors import CacheBackendError
from infrastructure.metrics import record_cache_hit, record_cache_miss, record_refresh_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")

RefreshFn = Callable[[], Awaitable[T]]

DEFAULT_REFRESH_THRESHOLD_PERCENT = 80


def now_ms() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Cached value with creation and hard-expiry timestamps (ms epoch)."""

    data: T
    created_at: float
    expires_at: float

    def is_expired(self, at: float | None = None) -> bool:
        """True once ``at`` (default: now) is past ``expires_at``."""
        return (now_ms() if at is None else at) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Wire form used by the Redis backend."""
        return {"data": self.data, "createdAt": self.created_at, "expiresAt": self.expires_at}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheEntry[Any]:
        """Inverse of ``to_dict``. Raises ``KeyError`` on malformed payloads."""
        return cls(
            data=raw["data"],
            created_at=float(raw["createdAt"]),
            expires_at=float(raw["expiresAt"]),
        )


@dataclass
class CacheStats:
    """Snapshot of the live key set."""

    size: int = 0
    keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"size": self.size, "keys": list(self.keys)}


@dataclass(frozen=True)
class CacheMetrics:
    """Hit/miss counters with an integer hit-rate percentage."""

    hits: int
    misses: int
    hit_rate: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"hits": self.hits, "misses": self.misses, "hit_rate": self.hit_rate}


@runtime_checkable
class CacheProvider(Protocol):
    """
    Protocol for cache backends.

    All data operations are coroutines so the in-process and networked
    backends are interchangeable. Metrics accessors are synchronous.
    """

    async def get(self, key: str) -> Any | None:
        """Return the value if present and not expired, else None. Counts a hit or miss."""
        ...

    async def set(self, key: str, data: Any, ttl_ms: float) -> None:
        """Store ``data`` for ``ttl_ms`` milliseconds, replacing any existing entry."""
        ...

    async def has(self, key: str) -> bool:
        """Existence check with ``get`` expiry semantics; never touches counters."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove ``key``. True iff an entry existed."""
        ...

    async def clear(self) -> None:
        """Remove every entry in this provider's namespace and zero the counters."""
        ...

    async def stats(self) -> CacheStats:
        """Return the current key set (expired entries excluded)."""
        ...

    async def get_with_refresh(
        self,
        key: str,
        refresh_fn: RefreshFn[Any],
        ttl_ms: float,
        refresh_threshold_percent: float = DEFAULT_REFRESH_THRESHOLD_PERCENT,
    ) -> Any:
        """Stale-while-revalidate read."""
        ...

    def get_metrics(self) -> CacheMetrics:
        """Return hit/miss counters and hit rate."""
        ...

    def reset_metrics(self) -> None:
        """Zero hit/miss counters without touching entries."""
        ...


class BaseCache:
    """
    Counters, metrics and stale-while-revalidate shared by every backend.

    Subclasses implement ``_read_entry`` (raw lookup, no bookkeeping) and the
    public data operations. ``_read_entry`` raises ``CacheBackendError`` when
    the backend itself is unreachable so ``get_with_refresh`` can fall back
    to a direct fetch instead of reporting a miss.
    """

    backend_name = "base"

    def __init__(self) -> None:
        """Initialize counters and the in-flight refresh guard."""
        self._hits = 0
        self._misses = 0
        # Keys with a background refresh in flight on THIS instance only.
        self._refreshing_keys: set[str] = set()
        self._background_tasks: set[asyncio.Task[None]] = set()

    # -- hooks -------------------------------------------------------------

    async def _read_entry(self, key: str) -> CacheEntry[Any] | None:
        raise NotImplementedError

    async def set(self, key: str, data: Any, ttl_ms: float) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    # -- bookkeeping -------------------------------------------------------

    def _record_hit(self) -> None:
        self._hits += 1
        record_cache_hit(self.backend_name)

    def _record_miss(self) -> None:
        self._misses += 1
        record_cache_miss(self.backend_name)

    @property
    def refreshing_keys(self) -> frozenset[str]:
        """Keys with a background refresh currently in flight."""
        return frozenset(self._refreshing_keys)

    def get_metrics(self) -> CacheMetrics:
        """
        Return hit/miss counters for this instance.

        ``hit_rate`` is rounded half-up to a whole percentage and is 0 when
        no requests have been made.
        """
        total = self._hits + self._misses
        hit_rate = math.floor(self._hits * 100 / total + 0.5) if total > 0 else 0
        return CacheMetrics(hits=self._hits, misses=self._misses, hit_rate=hit_rate)

    def reset_metrics(self) -> None:
        """Zero hit/miss counters without touching stored entries."""
        self._hits = 0
        self._misses = 0

    # -- stale-while-revalidate -------------------------------------------

    async def get_with_refresh(
        self,
        key: str,
        refresh_fn: RefreshFn[T],
        ttl_ms: float,
        refresh_threshold_percent: float = DEFAULT_REFRESH_THRESHOLD_PERCENT,
    ) -> T:
        """
        Return cached data, refreshing it in the background once it goes stale.

        Decision table for an entry created at ``created_at``:

            now < created_at + ttl_ms * threshold%   fresh    → hit, no fetch
            now < expires_at                         stale    → hit, return old
                                                                value, refresh
                                                                in background
            otherwise (missing / hard expired)       miss     → await refresh_fn,
                                                                cache, return

        Only one background refresh per key runs at a time on this instance.
        A background refresh that raises is logged and swallowed; a
        foreground ``refresh_fn`` failure propagates and nothing is cached.

        Args:
            key: Cache key.
            refresh_fn: Zero-argument coroutine function fetching fresh data.
            ttl_ms: Time to live for freshly fetched data, in milliseconds.
            refresh_threshold_percent: Share of the TTL after which an entry
                counts as stale (default: 80).

        Returns:
            Cached or freshly fetched data.
        """
        try:
            entry = await self._read_entry(key)
        except CacheBackendError as exc:
            logger.warning("get_with_refresh(%s): %s; fetching directly", key, exc)
            self._record_miss()
            fresh = await refresh_fn()
            self._spawn(self.set(key, fresh, ttl_ms))
            return fresh

        now = now_ms()
        # The entry's own expiry wins over the caller's ttl_ms.
        if entry is not None and entry.is_expired(now):
            await self.delete(key)
            entry = None

        if entry is not None:
            refresh_at = entry.created_at + ttl_ms * refresh_threshold_percent / 100
            if now < refresh_at:
                self._record_hit()
                return entry.data  # type: ignore[no-any-return]

            if now < entry.expires_at:
                self._record_hit()
                self._schedule_refresh(key, refresh_fn, ttl_ms)
                return entry.data  # type: ignore[no-any-return]

            await self.delete(key)

        self._record_miss()
        fresh = await refresh_fn()
        await self.set(key, fresh, ttl_ms)
        return fresh

    def _schedule_refresh(self, key: str, refresh_fn: RefreshFn[Any], ttl_ms: float) -> None:
        if key in self._refreshing_keys:
            logger.debug("Refresh already in flight for %s", key)
            return
        self._refreshing_keys.add(key)
        self._spawn(self._background_refresh(key, refresh_fn, ttl_ms))

    async def _background_refresh(
        self, key: str, refresh_fn: RefreshFn[Any], ttl_ms: float
    ) -> None:
        try:
            fresh = await refresh_fn()
            await self.set(key, fresh, ttl_ms)
            logger.debug("Background refresh stored %s", key)
        except Exception as exc:  # noqa: BLE001
            record_refresh_failure(self.backend_name)
            logger.error("Background refresh failed for %s: %s", key, exc)
        finally:
            self._refreshing_keys.discard(key)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run ``coro`` detached; keep a reference until it finishes."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def drain(self) -> None:
        """
        Wait for every detached refresh/write task to settle.

        Used on shutdown so in-flight writes are not cut off, and by tests
        that need to observe a background refresh result.
        """
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

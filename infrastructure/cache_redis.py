"""Redis-backed cache for multi-instance deployments.

Every server instance pointing at the same Redis shares one cache, so a CRM
lookup fetched by one instance is served from cache by all of them.

Storage layout:
    key   = ``{key_prefix}{cache key}``     (default prefix ``odoo-crm:``)
    value = JSON ``{"data": ..., "createdAt": ms, "expiresAt": ms}``
    TTL   = native ``PX`` expiry; ``expiresAt`` is re-checked on read in
            case the Redis clock and ours disagree.

Redis is best-effort: every connection or protocol error is logged and
reported as a miss / no-op / ``False``. Callers never see a Redis
exception. The stale-while-revalidate guard (``refreshing_keys``) is
per-instance; several instances may refresh the same key at once.

Enable with ``CACHE_TYPE=redis``.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

import redis.asyncio as redis_async
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from infrastructure.cache_base import BaseCache, CacheEntry, CacheStats, now_ms
from infrastructure.errors import CacheBackendError

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379"
DEFAULT_KEY_PREFIX = "odoo-crm:"

# Reconnect policy: 200ms, 400ms, 600ms ... capped at 2s, give up after 3 tries.
_RECONNECT_STEP_SECONDS = 0.2
_RECONNECT_CAP_SECONDS = 2.0
_RECONNECT_RETRIES = 3


class LinearBackoff(AbstractBackoff):
    """Reconnect delay growing by ``step`` per failure, capped at ``cap`` seconds."""

    def __init__(
        self, step: float = _RECONNECT_STEP_SECONDS, cap: float = _RECONNECT_CAP_SECONDS
    ) -> None:
        self._step = step
        self._cap = cap

    def reset(self) -> None:
        pass

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


def _make_client(redis_url: str) -> Any:
    """Build a lazily connecting asyncio Redis client with the reconnect policy."""
    return redis_async.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=2.0,
        socket_timeout=2.0,
        retry=Retry(LinearBackoff(), _RECONNECT_RETRIES),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )


class RedisCache(BaseCache):
    """
    Shared cache backed by Redis.

    Args:
        redis_url: Redis connection URL (default: ``redis://localhost:6379``).
        key_prefix: Namespace for every key written by this cache.
        client: Pre-built ``redis.asyncio`` client. Mainly for tests; when
            omitted a client is created from ``redis_url``. No connection
            is opened until the first command.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str = DEFAULT_REDIS_URL,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        *,
        client: Any = None,
    ) -> None:
        """Create the client (lazy, no network I/O here)."""
        super().__init__()
        self._key_prefix = key_prefix
        self._client = client if client is not None else _make_client(redis_url)
        self._connected = False
        logger.info("RedisCache: using %s (prefix=%r)", redis_url, key_prefix)

    @property
    def key_prefix(self) -> str:
        """Namespace prepended to every key."""
        return self._key_prefix

    def _prefixed(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _mark_ok(self) -> None:
        if not self._connected:
            logger.info("RedisCache: connected")
        self._connected = True

    def _mark_failed(self, operation: str, exc: Exception) -> None:
        if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
            self._connected = False
        logger.warning("RedisCache.%s error: %s", operation, exc)

    async def _keys(self) -> list[str]:
        return [k async for k in self._client.scan_iter(match=f"{self._key_prefix}*")]

    async def _read_entry(self, key: str) -> CacheEntry[Any] | None:
        """
        Fetch and decode the raw entry without hit/miss bookkeeping.

        Raises:
            CacheBackendError: If Redis is unreachable or the payload is corrupt.
        """
        try:
            raw = await self._client.get(self._prefixed(key))
        except Exception as exc:  # noqa: BLE001
            self._mark_failed("get", exc)
            raise CacheBackendError(self.backend_name, str(exc)) from exc
        self._mark_ok()

        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheBackendError(self.backend_name, f"corrupt entry for {key}: {exc}") from exc

    async def _live_entry(self, key: str) -> CacheEntry[Any] | None:
        """Entry if present and unexpired; expired entries are deleted. Never raises."""
        try:
            entry = await self._read_entry(key)
        except CacheBackendError as exc:
            logger.warning("RedisCache: %s", exc)
            return None

        if entry is not None and entry.is_expired():
            await self.delete(key)
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        """Return cached value or None on miss / expiry / Redis error."""
        entry = await self._live_entry(key)
        if entry is None:
            self._record_miss()
            return None

        self._record_hit()
        logger.debug("RedisCache HIT: %s", key)
        return entry.data

    async def set(self, key: str, data: Any, ttl_ms: float) -> None:
        """
        Store value with TTL. Errors are logged, never raised.

        A non-positive TTL stores nothing and drops any existing entry.

        Args:
            key: Cache key.
            data: JSON-serializable value.
            ttl_ms: Time to live in milliseconds (also used as the Redis ``PX``).
        """
        if ttl_ms <= 0:
            await self.delete(key)
            return

        now = now_ms()
        entry = CacheEntry(data=data, created_at=now, expires_at=now + ttl_ms)
        try:
            payload = json.dumps(entry.to_dict())
            await self._client.set(self._prefixed(key), payload, px=math.ceil(ttl_ms))
        except Exception as exc:  # noqa: BLE001
            self._mark_failed("set", exc)
            return
        self._mark_ok()
        logger.debug("RedisCache SET: %s (ttl=%dms)", key, ttl_ms)

    async def has(self, key: str) -> bool:
        """True if key exists and is not expired. Does not touch hit/miss counters."""
        return await self._live_entry(key) is not None

    async def delete(self, key: str) -> bool:
        """Delete a specific key. Returns False on miss or Redis error."""
        try:
            deleted = await self._client.delete(self._prefixed(key))
        except Exception as exc:  # noqa: BLE001
            self._mark_failed("delete", exc)
            return False
        self._mark_ok()
        return int(deleted) == 1

    async def clear(self) -> None:
        """Delete every key under this cache's prefix and reset hit/miss counters."""
        try:
            keys = await self._keys()
            if keys:
                await self._client.delete(*keys)
            logger.info("RedisCache: cleared %d keys", len(keys))
        except Exception as exc:  # noqa: BLE001
            self._mark_failed("clear", exc)
        else:
            self._mark_ok()
        self.reset_metrics()

    def clear_expired(self) -> int:
        """Redis expires keys natively; nothing to sweep."""
        return 0

    async def stats(self) -> CacheStats:
        """Enumerate keys under the prefix (prefix stripped). Empty on Redis error."""
        try:
            keys = await self._keys()
        except Exception as exc:  # noqa: BLE001
            self._mark_failed("stats", exc)
            return CacheStats()
        self._mark_ok()
        prefix_len = len(self._key_prefix)
        clean = [k[prefix_len:] for k in keys]
        return CacheStats(size=len(clean), keys=clean)

    def is_ready(self) -> bool:
        """True if the last Redis round-trip succeeded."""
        return self._connected

    async def close(self) -> None:
        """Let background writes settle, then close the connection pool."""
        await self.drain()
        await self._client.aclose()
        self._connected = False
        logger.info("RedisCache: connection closed")

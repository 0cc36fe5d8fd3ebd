"""
Resilience context — the one object CRM handlers need to reach Odoo safely.

Built once at startup and passed to every handler, instead of each handler
importing module-level singletons. Composition order for a cached read::

    cache.get_with_refresh(key, ...)          # fresh / stale / miss decision
      └─ execute_with_retry(...)              # transient-error retry
           └─ breaker.execute(fn)             # fail fast while Odoo is down
                └─ fn()                       # the actual Odoo RPC

Usage::

    ctx = build_context(load_settings())
    stages = await ctx.fetch(CACHE_KEYS.stages(), fetch_stages, CACHE_TTL.STAGES)
    await ctx.aclose()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from infrastructure.cache import get_cache
from infrastructure.cache_base import DEFAULT_REFRESH_THRESHOLD_PERCENT, BaseCache, CacheProvider
from infrastructure.cache_redis import RedisCache
from infrastructure.circuit_breaker import CircuitBreaker
from infrastructure.metrics import LatencyTimer, record_upstream_latency
from infrastructure.retry import execute_with_retry
from infrastructure.settings import RetryConfig, Settings, load_settings
from infrastructure.shared_circuit_breaker import get_shared_circuit_breaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResilienceContext:
    """
    Cache, shared breaker and retry policy bundled for dependency injection.

    Attributes:
        cache: Active cache provider.
        breaker: Circuit breaker shared by every Odoo client in the pool.
        retry: Retry executor defaults.
    """

    cache: CacheProvider
    breaker: CircuitBreaker
    retry: RetryConfig

    async def call_upstream(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Call Odoo through retry + circuit breaker (no caching).

        Raises:
            CircuitOpenError: Odoo is known to be down.
            Exception: The upstream error once the retry policy gives up.
        """

        async def guarded() -> T:
            timer = LatencyTimer()
            try:
                with timer:
                    return await self.breaker.execute(fn)
            finally:
                record_upstream_latency(timer.elapsed)

        return await execute_with_retry(guarded, self.retry.max_retries, self.retry.base_delay_ms)

    async def fetch(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        ttl_ms: float,
        refresh_threshold_percent: float = DEFAULT_REFRESH_THRESHOLD_PERCENT,
    ) -> T:
        """Cached Odoo read with stale-while-revalidate on top of ``call_upstream``."""
        return await self.cache.get_with_refresh(  # type: ignore[no-any-return]
            key,
            lambda: self.call_upstream(fn),
            ttl_ms,
            refresh_threshold_percent,
        )

    async def health(self) -> dict[str, Any]:
        """Snapshot of cache and breaker state for a health/status tool."""
        stats = await self.cache.stats()
        return {
            "cache": {
                "backend": type(self.cache).__name__,
                "size": stats.size,
                **self.cache.get_metrics().to_dict(),
            },
            "circuit_breaker": self.breaker.get_metrics().to_dict(),
        }

    async def aclose(self) -> None:
        """Let background refreshes settle, then release backend connections."""
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        elif isinstance(self.cache, BaseCache):
            await self.cache.drain()
        logger.info("ResilienceContext closed")


def build_context(settings: Settings | None = None) -> ResilienceContext:
    """
    Build the context from the process-wide cache and shared breaker.

    Call once at startup and pass the result around.
    """
    resolved = settings or load_settings()
    return ResilienceContext(
        cache=get_cache(resolved),
        breaker=get_shared_circuit_breaker(resolved),
        retry=resolved.retry,
    )

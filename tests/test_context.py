"""Tests for infrastructure/context.py — cache + retry + breaker composed."""

from __future__ import annotations

import asyncio

import pytest

from infrastructure.cache import CACHE_KEYS, CACHE_TTL, get_cache
from infrastructure.cache_memory import MemoryCache
from infrastructure.cache_redis import RedisCache
from infrastructure.circuit_breaker import CircuitBreaker, CircuitState
from infrastructure.context import ResilienceContext, build_context
from infrastructure.errors import CircuitOpenError
from infrastructure.metrics import get_sample_value
from infrastructure.settings import CircuitBreakerConfig, RetryConfig
from infrastructure.shared_circuit_breaker import get_shared_circuit_breaker

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeOdoo:
    """Scripted Odoo RPC: raises queued errors, then returns ``result``."""

    def __init__(self, *errors: Exception, result: object = None) -> None:
        self._errors = list(errors)
        self.result = result if result is not None else [{"id": 1, "name": "New"}]
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self.result


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestBuildContext:
    def test_uses_process_singletons(self, make_settings) -> None:
        settings = make_settings(retry=RetryConfig(max_retries=4, base_delay_ms=10))
        ctx = build_context(settings)

        assert ctx.cache is get_cache()
        assert ctx.breaker is get_shared_circuit_breaker()
        assert ctx.retry.max_retries == 4

    def test_two_contexts_share_breaker(self, make_settings) -> None:
        first = build_context(make_settings())
        second = build_context(make_settings())
        assert first.breaker is second.breaker


# ---------------------------------------------------------------------------
# call_upstream
# ---------------------------------------------------------------------------


class TestCallUpstream:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, make_settings) -> None:
        ctx = build_context(make_settings())
        odoo = FakeOdoo(RuntimeError("ECONNRESET"))

        assert await ctx.call_upstream(odoo) == odoo.result
        assert odoo.calls == 2
        assert ctx.breaker.get_metrics().failure_count == 0

    @pytest.mark.asyncio
    async def test_each_attempt_counts_against_breaker(self, make_settings) -> None:
        ctx = build_context(
            make_settings(
                circuit_breaker=CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=60_000)
            )
        )
        odoo = FakeOdoo(*[RuntimeError("503 Service Unavailable")] * 3)

        with pytest.raises(RuntimeError):
            await ctx.call_upstream(odoo)

        assert odoo.calls == 3
        assert ctx.breaker.get_state() == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_is_not_retried(self, make_settings) -> None:
        ctx = build_context(
            make_settings(
                circuit_breaker=CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=60_000)
            )
        )
        with pytest.raises(RuntimeError):
            await ctx.call_upstream(FakeOdoo(RuntimeError("Access Denied")))

        odoo = FakeOdoo()
        with pytest.raises(CircuitOpenError) as exc_info:
            await ctx.call_upstream(odoo)

        assert odoo.calls == 0
        assert exc_info.value.seconds_until_retry == 60

    @pytest.mark.asyncio
    async def test_records_latency(self, make_settings) -> None:
        ctx = build_context(make_settings())
        before = get_sample_value("odoo_crm_upstream_latency_seconds_count")
        await ctx.call_upstream(FakeOdoo())
        assert get_sample_value("odoo_crm_upstream_latency_seconds_count") == before + 1


# ---------------------------------------------------------------------------
# fetch (cached read)
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_second_read_served_from_cache(self, make_settings) -> None:
        ctx = build_context(make_settings())
        odoo = FakeOdoo()

        first = await ctx.fetch(CACHE_KEYS.stages(), odoo, CACHE_TTL.STAGES)
        second = await ctx.fetch(CACHE_KEYS.stages(), odoo, CACHE_TTL.STAGES)

        assert first == second == odoo.result
        assert odoo.calls == 1
        metrics = ctx.cache.get_metrics()
        assert (metrics.hits, metrics.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_cached_value_survives_open_circuit(self, make_settings) -> None:
        ctx = build_context(
            make_settings(
                circuit_breaker=CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=60_000)
            )
        )
        await ctx.fetch(CACHE_KEYS.teams(), FakeOdoo(), CACHE_TTL.TEAMS)
        with pytest.raises(RuntimeError):
            await ctx.call_upstream(FakeOdoo(RuntimeError("Forbidden")))
        assert ctx.breaker.get_state() == CircuitState.OPEN

        odoo = FakeOdoo()
        assert await ctx.fetch(CACHE_KEYS.teams(), odoo, CACHE_TTL.TEAMS) == odoo.result
        assert odoo.calls == 0

    @pytest.mark.asyncio
    async def test_miss_with_open_circuit_raises(self, make_settings) -> None:
        ctx = build_context(
            make_settings(
                circuit_breaker=CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=60_000)
            )
        )
        with pytest.raises(RuntimeError):
            await ctx.call_upstream(FakeOdoo(RuntimeError("Forbidden")))

        with pytest.raises(CircuitOpenError):
            await ctx.fetch(CACHE_KEYS.salespeople(3), FakeOdoo(), CACHE_TTL.SALESPEOPLE)
        assert await ctx.cache.has(CACHE_KEYS.salespeople(3)) is False


# ---------------------------------------------------------------------------
# health / aclose
# ---------------------------------------------------------------------------


class TestHealthAndShutdown:
    @pytest.mark.asyncio
    async def test_health_snapshot(self, make_settings) -> None:
        ctx = build_context(make_settings())
        await ctx.fetch(CACHE_KEYS.stages(), FakeOdoo(), CACHE_TTL.STAGES)

        health = await ctx.health()

        assert health["cache"]["backend"] == "MemoryCache"
        assert health["cache"]["size"] == 1
        assert health["cache"]["misses"] == 1
        assert health["circuit_breaker"]["state"] == "CLOSED"

    @pytest.mark.asyncio
    async def test_aclose_closes_redis(self, fake_redis) -> None:
        ctx = ResilienceContext(
            cache=RedisCache(client=fake_redis),
            breaker=CircuitBreaker(),
            retry=RetryConfig(),
        )
        await ctx.aclose()
        assert fake_redis.closed is True

    @pytest.mark.asyncio
    async def test_aclose_drains_memory_refreshes(self) -> None:
        cache = MemoryCache()
        ctx = ResilienceContext(cache=cache, breaker=CircuitBreaker(), retry=RetryConfig())
        await cache.set("k", "old", 200)
        await asyncio.sleep(0.12)

        async def slow_refresh() -> str:
            await asyncio.sleep(0.02)
            return "new"

        assert await cache.get_with_refresh("k", slow_refresh, 200, 50) == "old"
        assert cache.refreshing_keys == {"k"}

        await ctx.aclose()

        assert cache.refreshing_keys == frozenset()
        assert await cache.get("k") == "new"

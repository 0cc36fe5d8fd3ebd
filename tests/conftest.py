"""
Shared fixtures for the test suite.

Centralizes reusable test infrastructure so individual test files
don't need to repeat fake-Redis and singleton-reset boilerplate.
No test talks to a real Redis or Odoo.
"""

from __future__ import annotations

import fnmatch
import time
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from infrastructure.cache import reset_cache
from infrastructure.settings import CacheConfig, CircuitBreakerConfig, RetryConfig, Settings
from infrastructure.shared_circuit_breaker import discard_shared_circuit_breaker

# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` (decode_responses=True).

    Implements only the commands RedisCache uses. Set ``fail = True`` to make
    every command raise a Redis ``ConnectionError``.
    """

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.expiry: dict[str, float] = {}
        self.fail = False
        self.closed = False
        self.calls: list[str] = []

    def _check(self, command: str) -> None:
        self.calls.append(command)
        if self.fail:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def _purge(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and time.time() * 1000 >= deadline:
            self.store.pop(key, None)
            self.expiry.pop(key, None)

    async def get(self, key: str) -> str | None:
        self._check("get")
        self._purge(key)
        return self.store.get(key)

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        self._check("set")
        self.store[key] = value
        if px is not None:
            self.expiry[key] = time.time() * 1000 + px
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        removed = 0
        for key in keys:
            self._purge(key)
            if self.store.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def scan_iter(self, match: str = "*") -> AsyncIterator[str]:
        self._check("scan_iter")
        for key in list(self.store):
            self._purge(key)
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Fresh fake Redis per test."""
    return FakeRedis()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _make_settings(**overrides: Any) -> Settings:
    """Build ``Settings`` with fast test-friendly defaults.

    Accepts ``cache=``, ``circuit_breaker=`` and ``retry=`` overrides.
    """
    defaults: dict[str, Any] = {
        "cache": CacheConfig(),
        "circuit_breaker": CircuitBreakerConfig(
            failure_threshold=3, reset_timeout_ms=50, half_open_max_attempts=1
        ),
        "retry": RetryConfig(max_retries=3, base_delay_ms=0),
    }
    defaults.update(overrides)
    return Settings(**defaults)


@pytest.fixture
def make_settings() -> Any:
    """Factory fixture: ``make_settings(retry=RetryConfig(...))``."""
    return _make_settings


# ---------------------------------------------------------------------------
# Singleton isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_singletons() -> Iterator[None]:
    """Every test starts without a cached provider or shared breaker."""
    reset_cache()
    discard_shared_circuit_breaker()
    yield
    reset_cache()
    discard_shared_circuit_breaker()

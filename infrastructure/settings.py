"""
Environment-driven configuration for the resilience layer.

Immutable config objects decouple parameter passing from constructor
signatures. ``load_settings()`` reads a ``.env`` file (if present) and the
process environment once; callers thread the resulting ``Settings`` through
the cache factory and the shared circuit breaker.

Recognized variables:
    CACHE_TYPE                              memory (default) | redis
    CACHE_MAX_SIZE                          LRU capacity of the memory backend (500)
    REDIS_URL                               redis://localhost:6379
    CACHE_KEY_PREFIX                        odoo-crm:
    CIRCUIT_BREAKER_FAILURE_THRESHOLD       5
    CIRCUIT_BREAKER_RESET_TIMEOUT_MS        60000
    CIRCUIT_BREAKER_HALF_OPEN_MAX_ATTEMPTS  1
    RETRY_MAX_RETRIES                       3
    RETRY_BASE_DELAY_MS                     1000
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Literal

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CacheType = Literal["memory", "redis"]

VALID_CACHE_TYPES: frozenset[str] = frozenset({"memory", "redis"})


@dataclass(frozen=True)
class CacheConfig:
    """
    Cache backend selection and connection parameters.

    Attributes:
        cache_type: ``"memory"`` for the in-process LRU store, ``"redis"``
            for the shared networked store.
        max_size: Maximum entries held by the memory backend before LRU
            eviction kicks in.
        redis_url: Connection URL for the Redis backend.
        key_prefix: Namespace prepended to every Redis key so several
            deployments can share one Redis database.
    """

    cache_type: CacheType = "memory"
    max_size: int = 500
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "odoo-crm:"

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.cache_type not in VALID_CACHE_TYPES:
            raise ValueError(
                f"Unknown cache_type {self.cache_type!r}, "
                f"valid options: {sorted(VALID_CACHE_TYPES)}"
            )
        if self.max_size <= 0:
            raise ValueError(f"max_size must be positive, got {self.max_size}")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Thresholds for the shared upstream circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures (while CLOSED) that trip the
            breaker to OPEN.
        reset_timeout_ms: How long to stay OPEN before a trial request.
        half_open_max_attempts: Trial requests allowed through while
            HALF_OPEN.
    """

    failure_threshold: int = 5
    reset_timeout_ms: int = 60_000
    half_open_max_attempts: int = 1

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.failure_threshold <= 0:
            raise ValueError(
                f"failure_threshold must be positive, got {self.failure_threshold}"
            )
        if self.reset_timeout_ms < 0:
            raise ValueError(
                f"reset_timeout_ms must be non-negative, got {self.reset_timeout_ms}"
            )
        if self.half_open_max_attempts <= 0:
            raise ValueError(
                f"half_open_max_attempts must be positive, got {self.half_open_max_attempts}"
            )


@dataclass(frozen=True)
class RetryConfig:
    """Retry executor defaults."""

    max_retries: int = 3
    base_delay_ms: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_retries <= 0:
            raise ValueError(f"max_retries must be positive, got {self.max_retries}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be non-negative, got {self.base_delay_ms}")


@dataclass(frozen=True)
class Settings:
    """Top-level configuration bundle."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, raising a clear error on garbage."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_cache_type() -> CacheType:
    mode = os.environ.get("CACHE_TYPE", "memory").lower().strip() or "memory"
    if mode not in VALID_CACHE_TYPES:
        logger.warning("Unknown CACHE_TYPE=%r, falling back to memory", mode)
        return "memory"
    return mode  # type: ignore[return-value]


def load_settings() -> Settings:
    """
    Build ``Settings`` from ``.env`` and the process environment.

    Returns:
        Fully validated, immutable settings.

    Raises:
        ValueError: If a numeric variable is not an integer or a value
            fails validation.
    """
    load_dotenv()
    return Settings(
        cache=CacheConfig(
            cache_type=_env_cache_type(),
            max_size=_env_int("CACHE_MAX_SIZE", 500),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            key_prefix=os.environ.get("CACHE_KEY_PREFIX", "odoo-crm:"),
        ),
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=_env_int("CIRCUIT_BREAKER_FAILURE_THRESHOLD", 5),
            reset_timeout_ms=_env_int("CIRCUIT_BREAKER_RESET_TIMEOUT_MS", 60_000),
            half_open_max_attempts=_env_int("CIRCUIT_BREAKER_HALF_OPEN_MAX_ATTEMPTS", 1),
        ),
        retry=RetryConfig(
            max_retries=_env_int("RETRY_MAX_RETRIES", 3),
            base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", 1000),
        ),
    )


DEFAULT_SETTINGS = Settings()
"""Defaults with no environment lookup, used by tests."""

"""Shared circuit breaker for the Odoo connection pool.

Every pooled Odoo client routes its calls through ONE breaker. Pool members
share fate: when one client confirms Odoo is down, all of them fail fast
instead of each rediscovering the outage through its own timeouts, and the
first successful trial call closes the circuit for the whole pool.

Prefer building the breaker once at startup and passing it to whatever needs
it (see ``infrastructure.context``); these helpers exist for code that has no
context object at hand.
"""

from __future__ import annotations

import logging

from infrastructure.circuit_breaker import CircuitBreaker, CircuitBreakerMetrics, CircuitState
from infrastructure.settings import Settings, load_settings

logger = logging.getLogger(__name__)

_shared_breaker: CircuitBreaker | None = None


def get_shared_circuit_breaker(settings: Settings | None = None) -> CircuitBreaker:
    """
    Return the shared breaker, creating it on first call.

    ``settings`` only matters on the first call; thresholds are fixed once
    the breaker exists.
    """
    global _shared_breaker  # noqa: PLW0603
    if _shared_breaker is None:
        config = (settings or load_settings()).circuit_breaker
        _shared_breaker = CircuitBreaker(
            failure_threshold=config.failure_threshold,
            reset_timeout_ms=config.reset_timeout_ms,
            half_open_max_attempts=config.half_open_max_attempts,
        )
        logger.info("Created shared circuit breaker instance")
    return _shared_breaker


def reset_shared_circuit_breaker() -> None:
    """Force the shared breaker CLOSED. No-op if it was never created."""
    if _shared_breaker is not None:
        _shared_breaker.reset()
        logger.info("Shared circuit breaker reset to CLOSED")


def get_shared_circuit_breaker_state() -> CircuitState:
    """Shortcut for ``get_shared_circuit_breaker().get_state()``."""
    return get_shared_circuit_breaker().get_state()


def get_shared_circuit_breaker_metrics() -> CircuitBreakerMetrics:
    """Shortcut for ``get_shared_circuit_breaker().get_metrics()``."""
    return get_shared_circuit_breaker().get_metrics()


def discard_shared_circuit_breaker() -> None:
    """Drop the shared instance so the next access rebuilds it. Tests only."""
    global _shared_breaker  # noqa: PLW0603
    _shared_breaker = None

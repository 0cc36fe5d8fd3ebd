"""Prometheus metrics for the CRM integration server.

Metrics:
    odoo_crm_cache_hits_total                           Cache hits by backend
    odoo_crm_cache_misses_total                         Cache misses by backend
    odoo_crm_cache_background_refresh_failures_total    Failed stale-while-revalidate refreshes
    odoo_crm_circuit_breaker_trips_total                Times a breaker tripped to OPEN
    odoo_crm_circuit_breaker_rejected_total             Calls rejected without reaching Odoo
    odoo_crm_retry_attempts_total                       Retry decisions by outcome
    odoo_crm_upstream_latency_seconds                   Latency of protected upstream calls

All metrics live in a private registry so tests and multiple servers in
one process don't collide with the global default registry.

Usage::

    from infrastructure.metrics import record_cache_hit, record_circuit_trip

    record_cache_hit("memory")
"""

from __future__ import annotations

import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

cache_hits_total = Counter(
    "odoo_crm_cache_hits_total",
    "Cache hits",
    ["backend"],
    registry=_REGISTRY,
)

cache_misses_total = Counter(
    "odoo_crm_cache_misses_total",
    "Cache misses (missing, expired, or backend error)",
    ["backend"],
    registry=_REGISTRY,
)

cache_refresh_failures_total = Counter(
    "odoo_crm_cache_background_refresh_failures_total",
    "Background stale-while-revalidate refreshes that raised",
    ["backend"],
    registry=_REGISTRY,
)

circuit_breaker_trips_total = Counter(
    "odoo_crm_circuit_breaker_trips_total",
    "Number of times the circuit breaker tripped to OPEN state",
    registry=_REGISTRY,
)

circuit_breaker_rejected_total = Counter(
    "odoo_crm_circuit_breaker_rejected_total",
    "Calls rejected because the circuit was OPEN or the HALF_OPEN quota was used",
    registry=_REGISTRY,
)

retry_attempts_total = Counter(
    "odoo_crm_retry_attempts_total",
    "Retry executor decisions",
    ["outcome"],
    registry=_REGISTRY,
)

upstream_latency_seconds = Histogram(
    "odoo_crm_upstream_latency_seconds",
    "Latency of upstream Odoo calls made through the resilience layer",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=_REGISTRY,
)

RETRY_OUTCOMES: frozenset[str] = frozenset({"retried", "exhausted", "non_retryable"})


def record_cache_hit(backend: str) -> None:
    """Increment the cache hit counter for ``backend``."""
    cache_hits_total.labels(backend=backend).inc()


def record_cache_miss(backend: str) -> None:
    """Increment the cache miss counter for ``backend``."""
    cache_misses_total.labels(backend=backend).inc()


def record_refresh_failure(backend: str) -> None:
    """Increment the failed background refresh counter."""
    cache_refresh_failures_total.labels(backend=backend).inc()


def record_circuit_trip() -> None:
    """Increment circuit breaker trip counter."""
    circuit_breaker_trips_total.inc()


def record_circuit_rejected() -> None:
    """Increment circuit breaker rejected-call counter."""
    circuit_breaker_rejected_total.inc()


def record_retry(outcome: str) -> None:
    """Record a retry executor decision.

    Args:
        outcome: One of "retried", "exhausted", "non_retryable".

    Raises:
        ValueError: If outcome is not a known label value.
    """
    if outcome not in RETRY_OUTCOMES:
        raise ValueError(f"Unknown retry outcome {outcome!r}")
    retry_attempts_total.labels(outcome=outcome).inc()


def record_upstream_latency(latency_seconds: float) -> None:
    """Observe one upstream call latency."""
    upstream_latency_seconds.observe(latency_seconds)


def get_metrics_response() -> tuple[bytes, str]:
    """Generate Prometheus text exposition format.

    Returns:
        Tuple of (body_bytes, content_type_string).
    """
    return generate_latest(_REGISTRY), CONTENT_TYPE_LATEST


def get_sample_value(name: str, labels: dict[str, str] | None = None) -> float:
    """Read one sample from the private registry (0.0 if never recorded)."""
    value = _REGISTRY.get_sample_value(name, labels or {})
    return value if value is not None else 0.0


class LatencyTimer:
    """Context manager for measuring latency.

    Usage::

        with LatencyTimer() as t:
            result = await fn()
        record_upstream_latency(t.elapsed)
    """

    def __init__(self) -> None:
        """Initialize timer."""
        self._start: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> LatencyTimer:
        """Start timing."""
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_: object) -> None:
        """Stop timing and record elapsed."""
        self.elapsed = time.perf_counter() - self._start

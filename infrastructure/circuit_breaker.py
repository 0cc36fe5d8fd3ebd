"""Circuit breaker for calls into Odoo.

Prevents every CRM request from waiting out a timeout while Odoo is down.
The breaker has three states:

    CLOSED    — Normal operation. Requests pass through.
    OPEN      — Odoo is down. Requests fail immediately without calling it.
                Waits ``reset_timeout_ms`` after the last failure before testing.
    HALF-OPEN — Testing recovery. ``half_open_max_attempts`` trial requests
                are let through. Success → CLOSED. Failure → back to OPEN.

State machine::

    CLOSED ──(N failures)──→ OPEN ──(timeout)──→ HALF-OPEN
      ↑                                               │
      └──────────────(success)───────────────────────┘
                              └──(failure)──→ OPEN

Concurrency: the breaker runs on a single asyncio event loop and takes no
locks. Every check-then-transition happens between two awaits, so no other
coroutine can interleave with it. Running it from several OS threads
requires a lock around ``execute``'s admission and the success/failure
handlers.

Usage::

    from infrastructure.circuit_breaker import CircuitBreaker
    from infrastructure.errors import CircuitOpenError

    breaker = CircuitBreaker(failure_threshold=5, reset_timeout_ms=60_000)

    try:
        leads = await breaker.execute(lambda: odoo.search_read("crm.lead", domain))
    except CircuitOpenError as e:
        return f"Odoo unavailable, retry in {e.seconds_until_retry}s"
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from infrastructure.errors import CircuitOpenError
from infrastructure.metrics import record_circuit_rejected, record_circuit_trip

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry hint while another caller holds the HALF_OPEN trial slot.
HALF_OPEN_BUSY_RETRY_SECONDS = 5


def _now_ms() -> float:
    return time.time() * 1000


class CircuitState(str, Enum):
    """Circuit breaker state machine states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Failing fast
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    """Snapshot returned by ``CircuitBreaker.get_metrics()``."""

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None
    last_state_change: float | None
    seconds_until_half_open: int | None  # only while OPEN

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
            "seconds_until_half_open": self.seconds_until_half_open,
        }


class CircuitBreaker:
    """Three-state circuit breaker guarding async upstream calls.

    Args:
        failure_threshold: Consecutive failures while CLOSED that trip the
            breaker (default: 5).
        reset_timeout_ms: How long to stay OPEN, measured from the last
            failure, before letting a trial request through (default: 60s).
        half_open_max_attempts: Trial requests allowed while HALF_OPEN
            (default: 1).

    Example::

        breaker = CircuitBreaker(failure_threshold=3, reset_timeout_ms=30_000)
        result = await breaker.execute(fetch_pipeline)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: float = 60_000,
        half_open_max_attempts: int = 1,
    ) -> None:
        """Initialize the circuit breaker in CLOSED state."""
        self._failure_threshold = failure_threshold
        self._reset_timeout_ms = reset_timeout_ms
        self._half_open_max_attempts = half_open_max_attempts

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._last_state_change: float | None = None
        self._half_open_attempts = 0
        # Bumped on every entry into HALF_OPEN; ties a trial slot to its window.
        self._half_open_epoch = 0

        logger.info(
            "CircuitBreaker initialized (threshold=%d, reset_timeout=%.0fms, half_open_max=%d)",
            failure_threshold,
            reset_timeout_ms,
            half_open_max_attempts,
        )

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    @property
    def reset_timeout_ms(self) -> float:
        return self._reset_timeout_ms

    @property
    def half_open_max_attempts(self) -> int:
        return self._half_open_max_attempts

    @property
    def half_open_attempts(self) -> int:
        """Trial requests admitted since entering HALF_OPEN."""
        return self._half_open_attempts

    def get_state(self) -> CircuitState:
        """Current circuit state. Reading it never triggers a transition."""
        return self._state

    @property
    def state(self) -> CircuitState:
        return self._state

    def get_metrics(self) -> CircuitBreakerMetrics:
        """Return a snapshot for monitoring and health endpoints."""
        return CircuitBreakerMetrics(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            last_state_change=self._last_state_change,
            seconds_until_half_open=(
                self._seconds_until_half_open() if self._state == CircuitState.OPEN else None
            ),
        )

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker.

        Args:
            fn: Zero-argument callable returning an awaitable (the Odoo call).

        Returns:
            Whatever ``fn`` returns.

        Raises:
            CircuitOpenError: If the call was rejected without invoking ``fn``.
            Exception: Any exception raised by ``fn``, unchanged.
        """
        if self._state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition_to(CircuitState.HALF_OPEN)
                self._half_open_attempts = 0
                self._half_open_epoch += 1
            else:
                seconds = self._seconds_until_half_open() or 0
                record_circuit_rejected()
                raise CircuitOpenError(
                    "Odoo service temporarily unavailable. "
                    f"Connection will be retried in {seconds} seconds.",
                    seconds,
                )

        trial_epoch: int | None = None
        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_attempts >= self._half_open_max_attempts:
                record_circuit_rejected()
                raise CircuitOpenError(
                    "Odoo service recovery test in progress. Please wait.",
                    HALF_OPEN_BUSY_RETRY_SECONDS,
                )
            self._half_open_attempts += 1
            trial_epoch = self._half_open_epoch

        try:
            result = await fn()
        except asyncio.CancelledError:
            # Only a call that took a trial slot may give one back.
            if (
                trial_epoch == self._half_open_epoch
                and self._state == CircuitState.HALF_OPEN
                and self._half_open_attempts > 0
            ):
                self._half_open_attempts -= 1
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        """Manually force the circuit CLOSED (admin intervention, tests).

        ``success_count`` is a lifetime counter and is left alone.
        """
        logger.warning("CircuitBreaker: manual reset from %s to CLOSED", self._state.value)
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._half_open_attempts = 0

    def _on_success(self) -> None:
        self._success_count += 1

        if self._state == CircuitState.HALF_OPEN:
            logger.info("CircuitBreaker: recovery successful, closing circuit")
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._half_open_attempts = 0
        elif self._state == CircuitState.CLOSED:
            # Transient failures that never reached the threshold decay away.
            self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = _now_ms()

        if self._state == CircuitState.HALF_OPEN:
            logger.warning("CircuitBreaker: recovery test failed, reopening circuit")
            self._transition_to(CircuitState.OPEN)
            self._half_open_attempts = 0
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self._failure_threshold:
                logger.error(
                    "CircuitBreaker: TRIPPED after %d/%d failures",
                    self._failure_count,
                    self._failure_threshold,
                )
                self._transition_to(CircuitState.OPEN)
                record_circuit_trip()
            else:
                logger.warning(
                    "CircuitBreaker: failure %d/%d",
                    self._failure_count,
                    self._failure_threshold,
                )

    def _should_attempt_reset(self) -> bool:
        """True once ``reset_timeout_ms`` has passed since the last failure."""
        if self._last_failure_time is None:
            return True
        return _now_ms() - self._last_failure_time >= self._reset_timeout_ms

    def _seconds_until_half_open(self) -> int | None:
        if self._last_failure_time is None:
            return None
        remaining = self._reset_timeout_ms - (_now_ms() - self._last_failure_time)
        return math.ceil(remaining / 1000) if remaining > 0 else 0

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        logger.warning("CircuitBreaker: %s → %s", self._state.value, new_state.value)
        self._state = new_state
        self._last_state_change = _now_ms()

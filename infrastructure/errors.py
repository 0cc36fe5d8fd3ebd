"""Typed errors raised by the resilience layer.

Only ``CircuitOpenError`` is meant to reach callers. ``CacheBackendError``
never escapes the public cache API. It lets the stale-while-revalidate
path tell "backend down" apart from "key missing".
"""

from __future__ import annotations


class CircuitOpenError(Exception):
    """Raised when the circuit breaker rejects a call without invoking it.

    This is NOT an upstream error; the breaker short-circuited the call.
    Callers should present a "temporarily unavailable, retry in N seconds"
    message using ``seconds_until_retry``.

    Args:
        message: Human-readable explanation.
        seconds_until_retry: Whole seconds until the breaker will let a
            trial request through again.
    """

    def __init__(self, message: str, seconds_until_retry: int = 0) -> None:
        """Initialize with message and retry hint."""
        self.seconds_until_retry = seconds_until_retry
        super().__init__(message)


class CacheBackendError(Exception):
    """A cache backend could not be reached or returned garbage.

    Args:
        backend: Backend name (``"redis"``).
        reason: Underlying error description.
    """

    def __init__(self, backend: str, reason: str) -> None:
        """Initialize with backend name and failure reason."""
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} cache backend error: {reason}")

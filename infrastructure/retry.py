"""Retry with exponential backoff for transient Odoo failures.

A dropped connection or a 502 from the reverse proxy in front of Odoo should
not surface as a tool error. Errors are classified by message:

    non-retryable  auth / permission / schema problems, retrying won't help
    retryable      connection resets, timeouts, HTTP 5xx, Odoo tracebacks
    anything else  not retried (fail closed)

Non-retryable signatures win when a message matches both lists.

This is orthogonal to the circuit breaker: retry handles one call's transient
hiccups, the breaker handles Odoo being down for everyone. Compose them with
retry on the outside (see ``infrastructure.context``). A ``CircuitOpenError``
is never retried.

Usage::

    from infrastructure.retry import execute_with_retry

    partners = await execute_with_retry(lambda: odoo.read("res.partner", ids), 3, 1000)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from infrastructure.errors import CircuitOpenError
from infrastructure.metrics import record_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

RETRYABLE_PATTERNS: tuple[str, ...] = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "EHOSTUNREACH",
    "socket hang up",
    "ENOTFOUND",
    "500",
    "502",
    "503",
    "504",
    "Traceback",  # Odoo server-side Python crash
)

NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "Invalid credentials",
    "Access Denied",
    "Forbidden",
    "unknown field",
    "does not have attribute",
    "invalid literal",
)


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether ``error`` is a transient failure worth retrying.

    Args:
        error: The exception raised by the wrapped call.

    Returns:
        True only for errors matching a transient signature.
    """
    if isinstance(error, CircuitOpenError):
        return False

    message = str(error)
    if any(pattern in message for pattern in NON_RETRYABLE_PATTERNS):
        return False
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: float = 1000,
) -> T:
    """Call ``fn`` up to ``max_retries`` times with exponential backoff.

    Waits ``base_delay_ms * 2 ** (attempt - 1)`` between attempts
    (1s, 2s, 4s with the defaults).

    Args:
        fn: Zero-argument callable returning an awaitable.
        max_retries: Total attempts including the first (default: 3).
        base_delay_ms: Delay before the second attempt, in milliseconds.

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: The original error, immediately if non-retryable,
            otherwise the last one once attempts are exhausted.
    """
    if max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")

    last_exc: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except Exception as exc:
            last_exc = exc
            if not is_retryable_error(exc):
                record_retry("non_retryable")
                raise
            if attempt == max_retries:
                record_retry("exhausted")
                logger.error("retry: giving up after %d attempts (%s)", max_retries, exc)
                raise

            delay_ms = base_delay_ms * 2 ** (attempt - 1)
            record_retry("retried")
            logger.warning(
                "retry: attempt %d/%d failed (%s), waiting %.0fms",
                attempt,
                max_retries,
                exc,
                delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000)

    # Unreachable: the loop either returns or raises on the last attempt.
    raise RuntimeError("retry loop exited without a result") from last_exc


def with_retry(*, max_retries: int = 3, base_delay_ms: float = 1000) -> Callable[[F], F]:
    """Decorator form of ``execute_with_retry`` for coroutine functions.

    Example::

        @with_retry(max_retries=4, base_delay_ms=500)
        async def fetch_stages() -> list[dict]:
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await execute_with_retry(
                lambda: func(*args, **kwargs), max_retries, base_delay_ms
            )

        return wrapper  # type: ignore[return-value]

    return decorator

"""
Retry executor with exponential backoff and error classification.

This module provides:
- ``retry``: invoke an async callable up to ``max_retries + 1`` times
- ``compute_backoff_ms``: ``min(backoff * multiplier^(n-1), max_backoff)``
- ``is_retryable_error``: transient (network, 429, 5xx) vs terminal errors

Retry-After hints carried by ``RateLimitError`` are honoured: the wait is
never shorter than the server asked for. When retries are exhausted the
last error is wrapped as a non-retryable ``IntegrationError`` so callers
further up do not retry it again.
"""

import asyncio
import logging
import random
import socket
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from core.config import settings
from core.exceptions import IntegrationError, OperationCancelled, RateLimitError
from integrations.cancellation import cancellable_sleep, raise_if_cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error as transient.

    Retryable:
        - IntegrationError with ``retryable=True``
        - httpx transport failures (connect, read, timeout)
        - connection reset/refused, DNS failures, timeouts
        - anything carrying HTTP status 429 or >= 500
    """
    if isinstance(error, IntegrationError):
        return error.retryable

    if isinstance(error, httpx.TransportError):
        return True

    if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror)):
        return True

    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int) and (status == 429 or status >= 500):
        return True

    return False


def compute_backoff_ms(
    attempt: int,
    backoff_ms: float,
    max_backoff_ms: float,
    backoff_multiplier: float = 2.0
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(backoff_ms * (backoff_multiplier ** (attempt - 1)), max_backoff_ms)


async def retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: Optional[int] = None,
    backoff_ms: Optional[float] = None,
    max_backoff_ms: Optional[float] = None,
    backoff_multiplier: float = 2.0,
    jitter: bool = False,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[BaseException, int, float], Any]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    operation: str = "operation"
) -> T:
    """
    Invoke ``fn`` with exponential backoff on retryable failures.

    Args:
        fn: Zero-argument coroutine function to invoke
        max_retries: Retries after the first attempt (default: settings.MAX_RETRIES)
        backoff_ms: Initial delay (default: settings.RETRY_BACKOFF_MS)
        max_backoff_ms: Delay cap (default: settings.RETRY_MAX_BACKOFF_MS)
        backoff_multiplier: Growth factor between retries
        jitter: Scale each delay by a random factor in [0.5, 1.0]
        should_retry: Error classifier
        on_retry: Called as ``on_retry(error, attempt, delay_ms)`` before waiting
        cancel_event: Cancellation signal checked before each attempt and while waiting
        sleep: Sleep coroutine taking seconds (injectable for tests)
        operation: Name used in logs and error context

    Returns:
        The result of the first successful call

    Raises:
        The original error if it is not retryable
        OperationCancelled: If the cancellation signal fires
        IntegrationError: ``retryable=False`` wrapper once retries are exhausted
    """
    max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
    backoff_ms = settings.RETRY_BACKOFF_MS if backoff_ms is None else backoff_ms
    max_backoff_ms = settings.RETRY_MAX_BACKOFF_MS if max_backoff_ms is None else max_backoff_ms

    attempt = 0
    while True:
        raise_if_cancelled(cancel_event, operation)
        try:
            return await fn()
        except OperationCancelled:
            raise
        except Exception as e:
            if not should_retry(e):
                raise

            attempt += 1
            if attempt > max_retries:
                logger.error(f"{operation} failed after {attempt} attempts: {e}")
                raise _exhausted(e, attempt, operation) from e

            delay_ms = compute_backoff_ms(attempt, backoff_ms, max_backoff_ms, backoff_multiplier)
            if jitter:
                delay_ms = delay_ms * (0.5 + random.random() * 0.5)
            if isinstance(e, RateLimitError) and e.retry_after is not None:
                delay_ms = max(delay_ms, e.retry_after * 1000)

            if on_retry is not None:
                on_retry(e, attempt, delay_ms)

            logger.warning(
                f"{operation} failed ({type(e).__name__}: {e}). "
                f"Retrying in {delay_ms / 1000:.2f}s (attempt {attempt}/{max_retries})"
            )

            if sleep is not None:
                await sleep(delay_ms / 1000)
                raise_if_cancelled(cancel_event, operation)
            else:
                await cancellable_sleep(delay_ms / 1000, cancel_event, operation)


def _exhausted(error: Exception, attempts: int, operation: str) -> IntegrationError:
    code = getattr(error, "code", None)
    if not isinstance(code, str) or not code:
        code = "RETRIES_EXHAUSTED"

    message = error.message if isinstance(error, IntegrationError) else str(error)
    return IntegrationError(
        f"{operation} failed after {attempts} attempts: {message}",
        code=code,
        retryable=False,
        context={
            "operation": operation,
            "attempts": attempts,
            "last_error_type": type(error).__name__,
        },
        original_exception=error
    )

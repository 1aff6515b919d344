"""
Unit tests for the retry executor and error classification
"""

import asyncio

import httpx
import pytest

from core.exceptions import (
    AuthError,
    HTTPError,
    IntegrationError,
    NetworkError,
    OperationCancelled,
    RateLimitError,
    ValidationError,
)
from integrations.retry import compute_backoff_ms, is_retryable_error, retry


class TestErrorClassification:
    """Test transient vs terminal classification"""

    def test_integration_errors_use_their_flag(self):
        assert is_retryable_error(NetworkError("reset")) is True
        assert is_retryable_error(RateLimitError("slow down")) is True
        assert is_retryable_error(AuthError("denied")) is False
        assert is_retryable_error(ValidationError("bad")) is False

    def test_http_status_codes(self):
        assert is_retryable_error(HTTPError("boom", status_code=503)) is True
        assert is_retryable_error(HTTPError("missing", status_code=404)) is False

    def test_foreign_errors(self):
        assert is_retryable_error(httpx.ConnectError("refused")) is True
        assert is_retryable_error(ConnectionResetError()) is True
        assert is_retryable_error(TimeoutError()) is True
        assert is_retryable_error(ValueError("nope")) is False

    def test_objects_with_status_code(self):
        class Failure(Exception):
            status_code = 429

        assert is_retryable_error(Failure()) is True


class TestBackoff:
    def test_exponential_with_cap(self):
        assert compute_backoff_ms(1, 1000, 30000) == 1000
        assert compute_backoff_ms(2, 1000, 30000) == 2000
        assert compute_backoff_ms(3, 1000, 30000) == 4000
        assert compute_backoff_ms(10, 1000, 30000) == 30000


class TestRetry:
    """Test the retry loop"""

    @pytest.mark.asyncio
    async def test_returns_first_success(self, instant_sleep):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise NetworkError("reset")
            return "ok"

        result = await retry(flaky, max_retries=3, backoff_ms=10, sleep=instant_sleep)

        assert result == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_delays_and_on_retry(self):
        delays = []
        observed = []

        async def record_sleep(seconds):
            delays.append(seconds)

        async def always_fails():
            raise NetworkError("reset")

        with pytest.raises(IntegrationError):
            await retry(
                always_fails,
                max_retries=3,
                backoff_ms=100,
                max_backoff_ms=250,
                sleep=record_sleep,
                on_retry=lambda e, attempt, delay: observed.append((attempt, delay))
            )

        assert delays == [0.1, 0.2, 0.25]
        assert observed == [(1, 100), (2, 200), (3, 250)]

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_error(self, instant_sleep):
        attempts = []

        async def always_fails():
            attempts.append(1)
            raise HTTPError("server error", status_code=502)

        with pytest.raises(IntegrationError) as exc_info:
            await retry(always_fails, max_retries=2, backoff_ms=1, sleep=instant_sleep)

        error = exc_info.value
        assert len(attempts) == 3
        assert error.retryable is False
        assert error.code == "HTTP_ERROR"
        assert isinstance(error.__cause__, HTTPError)
        assert error.context["attempts"] == 3

    @pytest.mark.asyncio
    async def test_foreign_error_exhaustion_code(self, instant_sleep):
        async def always_fails():
            raise ConnectionResetError("reset")

        with pytest.raises(IntegrationError) as exc_info:
            await retry(always_fails, max_retries=1, backoff_ms=1, sleep=instant_sleep)

        assert exc_info.value.code == "RETRIES_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_unchanged(self, instant_sleep):
        attempts = []

        async def denied():
            attempts.append(1)
            raise AuthError("denied")

        with pytest.raises(AuthError):
            await retry(denied, max_retries=5, sleep=instant_sleep)

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        calls = []

        async def rate_limited():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError("slow down", retry_after=5)
            return "done"

        assert await retry(rate_limited, max_retries=2, backoff_ms=100, sleep=record_sleep) == "done"
        assert delays == [5.0]

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_backoff(self):
        cancel = asyncio.Event()

        async def fails_then_cancels():
            cancel.set()
            raise NetworkError("reset")

        with pytest.raises(OperationCancelled) as exc_info:
            await retry(fails_then_cancels, max_retries=3, backoff_ms=60000, cancel_event=cancel)

        assert exc_info.value.code == "CANCELLED"
        assert exc_info.value.retryable is False

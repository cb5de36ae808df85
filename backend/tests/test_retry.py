"""Tests for retry utilities used by audit storage writes."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from termaudit.core.retry import (
    RetryConfig,
    calculate_backoff_delay,
    is_retryable,
    retry_async,
)


def db_error(cls=OperationalError, invalidated: bool = False):
    return cls("INSERT ...", {}, Exception("boom"), connection_invalidated=invalidated)


class TestCalculateBackoffDelay:
    """Tests for backoff delay calculation."""

    def test_exponential_growth(self):
        """Delay should grow exponentially."""
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, max_delay=10.0, jitter=False)

        assert calculate_backoff_delay(0, config) == 1.0
        assert calculate_backoff_delay(1, config) == 2.0
        assert calculate_backoff_delay(2, config) == 4.0

    def test_max_delay_cap(self):
        """Delay should not exceed max_delay."""
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, max_delay=5.0, jitter=False)

        assert calculate_backoff_delay(10, config) == 5.0

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter=True)

        delays = [calculate_backoff_delay(0, config) for _ in range(50)]

        assert all(0.5 <= d <= 1.5 for d in delays)
        assert len(set(delays)) > 1


class TestIsRetryable:
    def test_operational_error(self):
        assert is_retryable(db_error(), RetryConfig()) is True

    def test_integrity_error_not_retried(self):
        assert is_retryable(db_error(IntegrityError), RetryConfig()) is False

    def test_invalidated_connection(self):
        assert is_retryable(db_error(DBAPIError, invalidated=True), RetryConfig()) is True
        assert is_retryable(db_error(DBAPIError), RetryConfig()) is False

    def test_value_error(self):
        assert is_retryable(ValueError("bad"), RetryConfig()) is False


class TestRetryAsync:
    """Tests for basic retry_async behavior."""

    async def test_returns_on_success(self):
        """Should return result on first success."""
        func = AsyncMock(return_value=42)

        assert await retry_async(func) == 42
        assert func.call_count == 1

    async def test_passes_arguments(self):
        func = AsyncMock(return_value="ok")

        await retry_async(func, 1, "two", config=RetryConfig(), key="value")

        func.assert_awaited_once_with(1, "two", key="value")

    async def test_retries_on_retryable_error(self):
        """Should retry on retryable errors."""
        func = AsyncMock(side_effect=[db_error(), ConnectionError("reset"), "ok"])
        config = RetryConfig(max_retries=3, base_delay=0.001)

        assert await retry_async(func, config=config) == "ok"
        assert func.call_count == 3

    async def test_no_retry_on_non_retryable_error(self):
        """Should not retry on non-retryable errors."""
        func = AsyncMock(side_effect=ValueError("bad"))
        config = RetryConfig(max_retries=3, base_delay=0.001)

        with pytest.raises(ValueError):
            await retry_async(func, config=config)
        assert func.call_count == 1

    async def test_raises_last_error_when_exhausted(self):
        func = AsyncMock(side_effect=db_error())
        config = RetryConfig(max_retries=2, base_delay=0.001)

        with pytest.raises(OperationalError):
            await retry_async(func, config=config)
        assert func.call_count == 3

    async def test_zero_retries_tries_once(self):
        func = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ConnectionError):
            await retry_async(func, config=RetryConfig(max_retries=0))
        assert func.call_count == 1

"""
Tests for retry logic with exponential backoff.
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.errors import ConcurrencyConflictError, RetryableError, ValidationError
from shared.retry import backoff_delay, retry_async, retry_with_backoff


def test_backoff_delay_doubles():
    assert [backoff_delay(2, attempt) for attempt in range(4)] == [2, 4, 8, 16]


@pytest.mark.asyncio
async def test_retry_succeeds_on_first_attempt():
    """Test that function succeeds on first attempt."""
    call_count = 0

    @retry_with_backoff(max_attempts=3, base_delay=0)
    async def successful_function():
        nonlocal call_count
        call_count += 1
        return "success"

    assert await successful_function() == "success"
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_succeeds_after_retries():
    """Test that function succeeds after retries, sleeping with backoff."""
    call_count = 0

    @retry_with_backoff(max_attempts=3, base_delay=1)
    async def flaky():
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise RetryableError("Temporary failure")
        return "success"

    with patch("shared.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        assert await flaky() == "success"
    assert call_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1, 2]


@pytest.mark.asyncio
async def test_retry_fails_after_max_attempts():
    """Test that the last retryable error is raised once attempts run out."""
    call_count = 0

    @retry_with_backoff(max_attempts=3, base_delay=0)
    async def always_fails():
        nonlocal call_count
        call_count += 1
        raise RetryableError("Always fails")

    with pytest.raises(RetryableError, match="Always fails"):
        await always_fails()
    assert call_count == 3


@pytest.mark.asyncio
async def test_non_retryable_error_is_not_retried():
    """Test that non-retryable errors propagate immediately."""
    call_count = 0

    @retry_with_backoff(max_attempts=3, base_delay=0)
    async def invalid():
        nonlocal call_count
        call_count += 1
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        await invalid()
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_async_with_custom_exceptions():
    """Test retrying only the exception types given."""
    attempts = []

    async def conflict_once():
        attempts.append(1)
        if len(attempts) == 1:
            raise ConcurrencyConflictError("lock timeout")
        return "ok"

    result = await retry_async(
        conflict_once,
        max_attempts=2,
        base_delay=0,
        retryable_exceptions=(ConcurrencyConflictError,),
    )
    assert result == "ok"
    assert len(attempts) == 2

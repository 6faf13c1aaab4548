"""
Retry logic with exponential backoff.

Decorator and call helper for retrying coroutines on retryable errors.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

from shared.errors import RetryableError
from shared.logging import get_logger

T = TypeVar("T")
logger = get_logger("retry")


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retry number `attempt` (0-based): base, 2x base, 4x base..."""
    return base_delay * (2 ** attempt)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2,
    retryable_exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    operation: str = "operation"
) -> T:
    """
    Await `func()` until it succeeds, retrying on `retryable_exceptions`.

    A base_delay of 0 retries immediately.

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception unchanged.
    """
    for attempt in range(max_attempts):
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt >= max_attempts - 1:
                logger.error(
                    f"All {max_attempts} attempts failed for {operation}",
                    extra={"error": str(e), "operation": operation}
                )
                raise
            delay = backoff_delay(base_delay, attempt)
            logger.warning(
                f"Retry attempt {attempt + 1}/{max_attempts} for {operation} after {delay}s delay",
                extra={"error": str(e), "attempt": attempt + 1, "operation": operation}
            )
            if delay > 0:
                await asyncio.sleep(delay)
    raise RuntimeError(f"{operation} made no attempts (max_attempts={max_attempts})")


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 2,
    retryable_exceptions: Tuple[Type[Exception], ...] = (RetryableError,)
):
    """
    Decorator for retrying coroutine functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_delay: Base delay in seconds for exponential backoff (default: 2)
        retryable_exceptions: Exception types to retry on (default: RetryableError)

    Example:
        @retry_with_backoff(max_attempts=3, base_delay=2)
        async def upload():
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                base_delay=base_delay,
                retryable_exceptions=retryable_exceptions,
                operation=func.__qualname__
            )
        return wrapper

    return decorator

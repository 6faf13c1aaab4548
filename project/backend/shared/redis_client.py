"""
Redis client.

Async Redis connection shared by the queue substrate and the scheduler.
"""

from typing import Optional

import redis.asyncio as redis

from shared.errors import ConfigError, RetryableError
from shared.logging import get_logger

logger = get_logger("redis_client")


class RedisClient:
    """Thin wrapper over redis.asyncio with a key prefix."""

    def __init__(self, url: str, prefix: str):
        try:
            self.client = redis.from_url(url, decode_responses=True)
        except Exception as e:
            raise ConfigError(f"Failed to initialize Redis client: {str(e)}") from e
        self.prefix = prefix.rstrip(":")

    def key(self, *parts: str) -> str:
        """Build a namespaced key: prefix:part1:part2..."""
        return ":".join((self.prefix,) + tuple(parts))

    async def ping(self) -> bool:
        """Check connectivity."""
        try:
            return bool(await self.client.ping())
        except redis.RedisError as e:
            logger.warning("Redis ping failed", extra={"error": str(e)})
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        await self.client.aclose()

    @staticmethod
    def wrap_error(e: Exception, operation: str) -> RetryableError:
        """Turn a Redis failure into a RetryableError for queue callers."""
        return RetryableError(f"Redis {operation} failed: {str(e)}")

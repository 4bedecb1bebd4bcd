"""
Redis manager for handling Redis connections.

This module provides the RedisManager class, which lazily creates a single
asynchronous Redis connection for the application. The challenge store keeps
its live ceremony challenges here.

Logging:
    - Uses the centralized logging manager.
    - Logs connection attempts, successes, and failures.
"""

from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from secure_key_vault.config import settings
from secure_key_vault.exceptions import StoreUnavailableError
from secure_key_vault.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")


class RedisManager:
    """
    Manages a single Redis connection for the application.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis connection instance.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        Returns:
            An active redis.asyncio.Redis connection.

        Raises:
            StoreUnavailableError: If Redis cannot be reached.
        """
        if self._redis is None:
            try:
                self.logger.info("Attempting async connection to Redis at %s", self.redis_url)
                client = redis_async.from_url(self.redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
                self.logger.info("Successfully connected (async) to Redis")
            except (RedisError, OSError) as conn_exc:
                self.logger.error("Failed to create async Redis connection: %s", conn_exc, exc_info=True)
                raise StoreUnavailableError(
                    "Redis unavailable", context={"component": "redis"}
                ) from conn_exc
        return self._redis

    async def health_check(self) -> bool:
        """Ping Redis, returning False instead of raising."""
        try:
            client = await self.get_redis()
            return bool(await client.ping())
        except (StoreUnavailableError, RedisError, OSError) as e:
            self.logger.warning("Redis health check failed: %s", e)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


redis_manager = RedisManager()

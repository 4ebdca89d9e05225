"""
Redis connection handle shared by the rate limiter, the job store and the
channel tracker.

The handle is built once at startup and passed to each component's
constructor; nothing in this package reaches for a global client.

Usage:
    conn = RedisConnection("redis://localhost:6379/0")
    await conn.connect()
    limiter = RedisRateLimiter(conn.client)
    ...
    await conn.close()
"""
from __future__ import annotations

import functools
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.errors import BackingStoreError

logger = structlog.get_logger()


class RedisConnection:
    def __init__(self, url: str = "redis://localhost:6379/0", max_connections: int = 20):
        self._url = url
        self._max_connections = max_connections
        self._client: Optional[aioredis.Redis] = None

    async def connect(self) -> aioredis.Redis:
        if self._client is not None:
            return self._client
        self._client = aioredis.from_url(
            self._url,
            decode_responses=True,
            max_connections=self._max_connections,
        )
        try:
            await self._client.ping()
        except RedisError as e:
            self._client = None
            raise BackingStoreError("connect", str(e)) from e
        logger.info("redis_connected", url=self._url)
        return self._client

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise BackingStoreError("get_client", "Redis client not initialized. Call connect() first.")
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")


def translate_redis_errors(operation: str):
    """Decorator: re-raise redis-py failures as BackingStoreError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any):
            try:
                return await func(*args, **kwargs)
            except RedisError as e:
                logger.error("backing_store_error", operation=operation, error=str(e))
                raise BackingStoreError(operation, str(e)) from e
        return wrapper
    return decorator

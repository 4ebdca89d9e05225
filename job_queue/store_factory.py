"""
Store Factory — Create the right job store backend from configuration.

Configuration in settings.yaml:
    queue:
      # "memory" — in-process heap (development, tests, single process)
      # "redis"  — shared Redis store (production, multiple workers)
      backend: "redis"
      name: "telegram-queue"       # Redis key prefix

Usage:
    from job_queue.store_factory import create_job_store
    store = create_job_store(settings.queue, redis=conn.client)
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from config.settings import QueueConfig
from job_queue.store_base import JobStore

logger = structlog.get_logger()


def create_job_store(config: QueueConfig = None, redis: Optional[Any] = None) -> JobStore:
    """
    Factory: create the appropriate job store backend.

    Args:
        config: QueueConfig; ``backend`` selects "redis" or "memory" (default)
        redis:  connected redis.asyncio client, required for the redis backend
    """
    config = config or QueueConfig()

    if config.backend == "redis":
        if redis is None:
            raise ValueError("redis backend selected but no Redis client was supplied")
        from job_queue.store_redis import RedisJobStore
        store: JobStore = RedisJobStore(redis, config)
        logger.info("job_store_created", backend="redis", name=config.name)
    else:  # "memory" or default
        from job_queue.store_memory import InMemoryJobStore
        store = InMemoryJobStore(config)
        logger.info("job_store_created", backend="memory")

    return store

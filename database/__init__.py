"""
Database layer — shared Redis connection.

Quick start:
  from database import RedisConnection
  conn = RedisConnection(settings.redis.url)
  redis = await conn.connect()
"""
from database.redis_client import RedisConnection, translate_redis_errors

__all__ = ["RedisConnection", "translate_redis_errors"]

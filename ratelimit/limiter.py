"""
Sliding-window rate limiter — Abstract interface with Redis and in-memory backends.

Window layout (Redis):
  ratelimit:{identifier}   sorted set, member "{ts}-{rand}", score = ts (epoch ms)
                           TTL window_seconds + 1

A check is one atomic MULTI/EXEC:
  1. ZREMRANGEBYSCORE  -inf .. now - window      (lazy trim)
  2. ZCARD                                       (count before add)
  3. ZADD now                                    (always, even when denied)
  4. EXPIRE window + 1

Step 3 runs for denied checks too: a rejected caller still spends window
capacity, so hammering the limit keeps the caller locked out until it backs
off for a full window.
"""
from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from config.settings import RateLimitConfig
from database.redis_client import translate_redis_errors
from models.schemas import RateLimitResult

logger = structlog.get_logger()

Clock = Callable[[], float]

SWEEP_INTERVAL_MS = 60_000


def _now_ms() -> float:
    return time.time() * 1000


def _reset_at(now_ms: float, window_seconds: float) -> datetime:
    return datetime.fromtimestamp((now_ms + window_seconds * 1000) / 1000, tz=timezone.utc)


def _key(identifier: str) -> str:
    return f"ratelimit:{identifier}"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class RateLimiter(ABC):
    """Sliding-window admission control keyed by an arbitrary identifier."""

    def __init__(self, config: RateLimitConfig = None, clock: Clock = None):
        self.config = config or RateLimitConfig()
        self._clock = clock or _now_ms

    @abstractmethod
    async def check(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Record an event and report whether it fits in the window."""
        ...

    @abstractmethod
    async def status(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        """Read-only view of the window; does not consume budget."""
        ...

    @abstractmethod
    async def reset(self, identifier: str) -> None:
        ...

    async def check_click_rate_limit(self, user_id: str) -> RateLimitResult:
        return await self.check(
            f"click:{user_id}",
            self.config.max_clicks_per_second,
            self.config.window_seconds,
        )

    async def click_status(self, user_id: str) -> RateLimitResult:
        """Remaining clicks for UI display."""
        return await self.status(
            f"click:{user_id}",
            self.config.max_clicks_per_second,
            self.config.window_seconds,
        )

    async def check_chat_rate_limit(self, chat_id: str, limit_per_second: int = 30) -> RateLimitResult:
        return await self.check(f"telegram:{chat_id}", limit_per_second, 1)

    @staticmethod
    def _check_result(count: int, max_requests: int, now: float, window_seconds: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=count < max_requests,
            remaining=max(0, max_requests - count - 1),
            reset_at=_reset_at(now, window_seconds),
        )

    @staticmethod
    def _status_result(count: int, max_requests: int, now: float, window_seconds: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=count < max_requests,
            remaining=max(0, max_requests - count),
            reset_at=_reset_at(now, window_seconds),
        )


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisRateLimiter(RateLimiter):
    """Production limiter; windows are shared by every process on the same Redis."""

    def __init__(self, redis, config: RateLimitConfig = None, clock: Clock = None):
        super().__init__(config, clock)
        self._redis = redis

    @translate_redis_errors("rate_limit_check")
    async def check(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        key = _key(identifier)
        now = self._clock()
        window_start = now - window_seconds * 1000

        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", window_start)
        pipe.zcard(key)
        pipe.zadd(key, {f"{int(now)}-{uuid.uuid4().hex[:8]}": now})
        pipe.expire(key, int(window_seconds) + 1)
        results = await pipe.execute()

        count = int(results[1] or 0)
        return self._check_result(count, max_requests, now, window_seconds)

    @translate_redis_errors("rate_limit_status")
    async def status(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        key = _key(identifier)
        now = self._clock()
        window_start = now - window_seconds * 1000

        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", window_start)
        pipe.zcard(key)
        results = await pipe.execute()

        count = int(results[1] or 0)
        return self._status_result(count, max_requests, now, window_seconds)

    @translate_redis_errors("rate_limit_reset")
    async def reset(self, identifier: str) -> None:
        await self._redis.delete(_key(identifier))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryRateLimiter(RateLimiter):
    """
    Development/test limiter. Single-process only.
    No awaits inside a check, so each check is atomic on the event loop.
    Windows expire like the Redis keys do and are swept out periodically.
    """

    def __init__(self, config: RateLimitConfig = None, clock: Clock = None):
        super().__init__(config, clock)
        self._windows: dict[str, list[float]] = {}
        self._expires: dict[str, float] = {}
        self._next_sweep = 0.0

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        for key in [k for k, expires in self._expires.items() if expires <= now]:
            self._windows.pop(key, None)
            del self._expires[key]
        self._next_sweep = now + SWEEP_INTERVAL_MS

    def _trim(self, key: str, now: float, window_seconds: float) -> list[float]:
        self._sweep(now)
        expires = self._expires.get(key)
        if expires is not None and expires <= now:
            self._windows.pop(key, None)
            del self._expires[key]
        window_start = now - window_seconds * 1000
        events = [ts for ts in self._windows.get(key, ()) if ts > window_start]
        if events:
            self._windows[key] = events
        else:
            self._windows.pop(key, None)
        return events

    async def check(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        key = _key(identifier)
        now = self._clock()
        events = self._trim(key, now, window_seconds)
        count = len(events)
        events.append(now)
        self._windows[key] = events
        self._expires[key] = now + (int(window_seconds) + 1) * 1000
        return self._check_result(count, max_requests, now, window_seconds)

    async def status(self, identifier: str, max_requests: int, window_seconds: float) -> RateLimitResult:
        key = _key(identifier)
        now = self._clock()
        count = len(self._trim(key, now, window_seconds))
        return self._status_result(count, max_requests, now, window_seconds)

    async def reset(self, identifier: str) -> None:
        key = _key(identifier)
        self._windows.pop(key, None)
        self._expires.pop(key, None)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_rate_limiter(config: RateLimitConfig = None, redis: Optional[Any] = None) -> RateLimiter:
    """Factory: create the appropriate limiter backend."""
    config = config or RateLimitConfig()
    if config.backend == "redis":
        if redis is None:
            raise ValueError("redis backend selected but no Redis client was supplied")
        limiter: RateLimiter = RedisRateLimiter(redis, config)
    else:
        limiter = InMemoryRateLimiter(config)
    logger.info("rate_limiter_created", backend=config.backend)
    return limiter

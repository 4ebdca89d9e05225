"""
Admission control for inbound updates, run before a handler is allowed to
enqueue anything.

Order of checks:
  1. global   — whole bot, mirrors the platform's ~30 ops/s ceiling
  2. chat     — per chat, 20 ops/s
  3. click    — per user, only for click updates

Each check records its event even when it denies (see ratelimit.limiter).
"""
from __future__ import annotations

import structlog

from config.settings import RateLimitConfig
from core.errors import RateLimitError
from models.schemas import RateLimitResult
from ratelimit.limiter import RateLimiter

logger = structlog.get_logger()

GLOBAL_IDENTIFIER = "global:telegram"


class AdmissionController:
    """Raises RateLimitError when an update must not be processed."""

    def __init__(self, limiter: RateLimiter, config: RateLimitConfig = None, approaching_threshold: int = 10):
        self.limiter = limiter
        self.config = config or limiter.config
        self.approaching_threshold = approaching_threshold

    async def admit(self, chat_id: str, user_id: str = "", is_click: bool = False) -> RateLimitResult:
        """Run every applicable check; returns the global result when admitted."""
        global_limit = self.config.global_limit_per_second
        global_result = await self.limiter.check(GLOBAL_IDENTIFIER, global_limit, 1)
        if not global_result.allowed:
            logger.warning("rate_limit_hit", limit_type="global",
                           remaining=global_result.remaining, max=global_limit)
            raise RateLimitError(global_result.reset_at, limit_type="global")

        chat_result = await self.limiter.check_chat_rate_limit(chat_id, self.config.chat_limit_per_second)
        if not chat_result.allowed:
            logger.warning("rate_limit_hit", limit_type="chat", chat_id=chat_id, user_id=user_id)
            raise RateLimitError(chat_result.reset_at, limit_type="chat")

        if is_click and user_id:
            click_result = await self.limiter.check_click_rate_limit(user_id)
            if not click_result.allowed:
                logger.warning("rate_limit_hit", limit_type="click", user_id=user_id)
                raise RateLimitError(click_result.reset_at, limit_type="click")

        if global_result.remaining < self.approaching_threshold:
            logger.warning("rate_limit_approaching", limit_type="global",
                           remaining=global_result.remaining, max=global_limit)
        return global_result

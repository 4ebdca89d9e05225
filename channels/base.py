"""
Messaging client base — the external API seen by the dispatcher.

Provides:
- SendResult: typed outcome of one platform call (ok / rate_limited / error)
- MessagingClient: abstract client every platform adapter implements
- ThroughputGovernor: sliding-window cap on the pool's call rate
"""
from __future__ import annotations

import abc
import asyncio
import time
from collections import deque
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from core.errors import TelegramApiError, TelegramRateLimitError
from models.schemas import MessageOptions, SendStatus

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  SEND RESULT
# ══════════════════════════════════════════════════════════════

class SendResult(BaseModel):
    status: SendStatus
    message_id: Optional[int] = None
    retry_after: Optional[float] = None
    error_code: Optional[int] = None
    description: str = ""

    @classmethod
    def ok(cls, message_id: Optional[int] = None) -> SendResult:
        return cls(status=SendStatus.OK, message_id=message_id)

    @classmethod
    def rate_limited(cls, retry_after: float, description: str = "Too Many Requests") -> SendResult:
        return cls(status=SendStatus.RATE_LIMITED, retry_after=retry_after,
                   error_code=429, description=description)

    @classmethod
    def error(cls, error_code: int, description: str = "") -> SendResult:
        return cls(status=SendStatus.ERROR, error_code=error_code, description=description)

    @property
    def is_ok(self) -> bool:
        return self.status == SendStatus.OK

    def raise_for_status(self) -> None:
        if self.status == SendStatus.RATE_LIMITED:
            raise TelegramRateLimitError(self.retry_after or 1.0, self.description)
        if self.status == SendStatus.ERROR:
            raise TelegramApiError(self.error_code or 0, self.description)


# ══════════════════════════════════════════════════════════════
#  MESSAGING CLIENT — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingClient(abc.ABC):
    """External messaging API as consumed by the delivery queue."""

    @abc.abstractmethod
    async def send(self, target: str, content: str, options: Optional[MessageOptions] = None) -> SendResult:
        ...

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  THROUGHPUT GOVERNOR
# ══════════════════════════════════════════════════════════════

class ThroughputGovernor:
    """
    Sliding-window limiter for the whole worker pool: at most `rate`
    acquisitions in any trailing `per` seconds, from a cold start too.
    Callers wait for a slot instead of being rejected, so excess jobs stay
    queued in priority order.
    """

    def __init__(self, rate: int = 28, per: float = 1.0):
        self.rate = max(1, rate)
        self.per = per
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                self._trim(now)
                if len(self._calls) < self.rate:
                    self._calls.append(now)
                    return
                await asyncio.sleep(max(self._calls[0] + self.per - now, 0.001))

    def refund(self) -> None:
        """Give back a slot that was acquired but not spent on a call."""
        if self._calls:
            self._calls.pop()

    @property
    def available(self) -> int:
        self._trim(time.monotonic())
        return self.rate - len(self._calls)

    def _trim(self, now: float) -> None:
        while self._calls and self._calls[0] <= now - self.per:
            self._calls.popleft()

    def stats(self) -> dict[str, Any]:
        return {"rate": self.rate, "per": self.per, "available": self.available}

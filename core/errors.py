"""
Error taxonomy for the delivery pipeline.

  BotError
   ├── RateLimitError          admission rejected (retryable by the caller)
   ├── TelegramApiError        platform returned an error for a call
   │    └── TelegramRateLimitError   platform 429, carries retry_after
   ├── EffectMissingError      action/edit effect no longer in this process
   ├── BackingStoreError       Redis (or other store) unavailable — fatal
   └── QueueClosedError        enqueue after shutdown

Superseded jobs are not errors and have no exception type.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone


class BotError(Exception):
    """Base exception for all bot-side failures."""

    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)


class RateLimitError(BotError):
    """A caller exceeded an admission limit. Never silently dropped."""

    retryable = True

    def __init__(self, reset_at: datetime, limit_type: str = ""):
        self.reset_at = reset_at
        self.limit_type = limit_type
        super().__init__(f"Rate limit exceeded ({limit_type or 'generic'}), retry after {reset_at.isoformat()}")

    @property
    def retry_after_seconds(self) -> int:
        wait = (self.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, math.ceil(wait))


class TelegramApiError(BotError):
    def __init__(self, error_code: int, description: str = ""):
        self.error_code = error_code
        self.description = description
        super().__init__(f"Telegram API error {error_code}: {description}")


class TelegramRateLimitError(TelegramApiError):
    """The platform itself throttled us (HTTP 429)."""

    retryable = True

    def __init__(self, retry_after: float = 1.0, description: str = "Too Many Requests"):
        self.retry_after = retry_after
        super().__init__(429, description)


class EffectMissingError(BotError):
    """An action/edit job whose effect is not registered in this process."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Effect for job {job_id} is not available in this process")


class BackingStoreError(BotError):
    """The shared store could not be reached. Must propagate, never mean 'allowed'."""

    def __init__(self, operation: str, cause: str = ""):
        self.operation = operation
        super().__init__(f"Backing store unavailable during {operation}: {cause}")


class QueueClosedError(BotError):
    def __init__(self):
        super().__init__("Delivery queue has been shut down")

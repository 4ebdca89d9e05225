"""
Core data models for the delivery pipeline.
These are the types shared between the rate limiter, the job store,
the dispatcher and the messaging clients.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobKind(str, Enum):
    MESSAGE = "message"
    ACTION = "action"
    EDIT = "edit"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


class JobPriority(IntEnum):
    """Named priority tiers. Higher runs first."""
    BROADCAST = -10
    LEADERBOARD = -2
    NOTIFICATION = -1
    NORMAL = 0
    ERROR = 5
    URGENT = 10


class SendStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


# ──────────────────────────────────────────────────────────────
#  Outbound message
# ──────────────────────────────────────────────────────────────

class MessageOptions(BaseModel):
    """Formatting options passed through to sendMessage."""
    parse_mode: Optional[str] = None               # "HTML" | "Markdown"
    reply_markup: Optional[dict[str, Any]] = None  # inline keyboard / force_reply
    disable_web_page_preview: bool = False

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude_defaults=True)


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    @property
    def pending(self) -> int:
        return self.waiting + self.delayed + self.active


class FailureOutcome(BaseModel):
    """What the store did with a failed attempt."""
    retried: bool
    attempt: int
    delay_ms: int = 0


class StalledJob(BaseModel):
    job_id: str
    state: JobState
    attempt: int

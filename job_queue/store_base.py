"""
Abstract Job Store — Interface for all job storage backends.

Implementations:
  - RedisJobStore     (shared across processes, crash-resilient)
  - InMemoryJobStore  (dict/heap-based, single-process, no persistence)

Job lifecycle:

    enqueue ──▶ waiting ◀──────────── delayed ◀── retry (backoff)
                  │  claim_next          ▲            │
                  ▼                      │            │
    remove ◀── (waiting|delayed)      active ─────────┘
       │                                 │ ╲
       ▼                         completed  failed
    removed                    (incl. superseded)

A claimed job carries a lease: a deadline plus a token unique to that claim.
Reports and lease extensions take the claimed QueueJob and are ignored
unless its token is still the current one, so a worker whose lease ran out
cannot touch a job another worker has since reclaimed. recover_stalled()
puts jobs whose lease ran out back to waiting (or failed, when they are out
of attempts).

For jobs on a replaceable channel, enqueue() writes the channel pointer in
the same atomic step that makes the job claimable.
"""
from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from config.settings import QueueConfig
from job_queue.jobs import QueueJob
from models.schemas import FailureOutcome, QueueStats, StalledJob

Clock = Callable[[], float]


def _now_ms() -> float:
    return time.time() * 1000


def new_lease_token() -> str:
    return uuid.uuid4().hex


class JobStore(ABC):
    """Interface that all job store backends must implement."""

    def __init__(self, config: QueueConfig = None, clock: Clock = None):
        self.config = config or QueueConfig()
        self._clock = clock or _now_ms

    def backoff_ms(self, attempt: int) -> int:
        """Exponential backoff after the `attempt`-th execution failed."""
        return int(self.config.retry_backoff_base_ms * (2 ** max(0, attempt - 1)))

    # ── Jobs ──────────────────────────────────────────────

    @abstractmethod
    async def enqueue(self, job: QueueJob, delay_ms: int = 0, pointer_ttl: Optional[int] = None) -> str:
        """
        Store a new job as waiting (or delayed) and return its id.
        With `pointer_ttl`, a job on a replaceable channel also becomes the
        channel's pointer (expiring after `pointer_ttl` seconds) before any
        worker can see it.
        """
        ...

    @abstractmethod
    async def claim_next(self) -> Optional[QueueJob]:
        """Atomically claim the highest-priority ready job, or None. Issues a fresh lease token."""
        ...

    @abstractmethod
    async def mark_completed(self, job: QueueJob, result: dict[str, Any] = None) -> bool:
        """Record success. False if `job`'s claim is no longer the current one."""
        ...

    @abstractmethod
    async def mark_failed(
        self,
        job: QueueJob,
        error: str,
        retry_delay_ms: Optional[int] = None,
        retryable: bool = True,
    ) -> Optional[FailureOutcome]:
        """Schedule a retry or fail permanently. None if `job`'s claim is no longer the current one."""
        ...

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Remove a job that has not been claimed yet."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def extend_lease(self, job: QueueJob) -> bool:
        ...

    @abstractmethod
    async def recover_stalled(self) -> list[StalledJob]:
        """Return expired-lease jobs to waiting, or fail them when out of attempts."""
        ...

    @abstractmethod
    async def counts(self) -> QueueStats:
        ...

    @abstractmethod
    async def clear(self) -> list[QueueJob]:
        """Remove every waiting and delayed job; returns what was removed."""
        ...

    # ── Processing control ────────────────────────────────

    @abstractmethod
    async def pause(self) -> None:
        ...

    @abstractmethod
    async def resume(self) -> None:
        ...

    @abstractmethod
    async def is_paused(self) -> bool:
        ...

    # ── Channel pointers ──────────────────────────────────

    @abstractmethod
    async def get_pointer(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_pointer(self, key: str, job_id: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete_pointer_if(self, key: str, job_id: str) -> bool:
        """Delete the pointer only while it still names `job_id`."""
        ...

    async def close(self) -> None:
        pass

"""
InMemoryJobStore — Heap/dict-backed store for development and testing.

Features:
  - Zero dependencies (no Redis)
  - Same claim order, retry and lease semantics as RedisJobStore
  - Atomic by construction: no awaits inside any operation, so nothing
    interleaves on the event loop
  - All data lost on process restart

Best for: local development, unit tests, single-process bots.
"""
from __future__ import annotations

import dataclasses
import heapq
import itertools
from collections import deque
from typing import Any, Optional

import structlog

from config.settings import QueueConfig
from job_queue.jobs import QueueJob
from job_queue.store_base import Clock, JobStore, new_lease_token
from models.schemas import FailureOutcome, JobState, QueueStats, StalledJob

logger = structlog.get_logger()


class InMemoryJobStore(JobStore):

    def __init__(self, config: QueueConfig = None, clock: Clock = None):
        super().__init__(config, clock)
        self._jobs: dict[str, QueueJob] = {}
        self._heap: list[tuple[int, int, str]] = []      # (-priority, seq, id); stale entries skipped
        self._waiting: set[str] = set()
        self._delayed: dict[str, float] = {}             # id → ready_at
        self._active: dict[str, float] = {}              # id → lease deadline
        self._finished: deque[tuple[float, str]] = deque()
        self._totals = {"completed": 0, "failed": 0}
        self._pointers: dict[str, tuple[str, float]] = {}  # key → (job id, expires at)
        self._ids = itertools.count(1)
        self._paused = False
        logger.info("inmemory_job_store_initialized")

    # ── Internal helpers ──────────────────────────────────

    def _push_waiting(self, job: QueueJob) -> None:
        job.state = JobState.WAITING.value
        self._waiting.add(job.job_id)
        heapq.heappush(self._heap, (-job.priority, job.seq, job.job_id))

    def _promote_due(self, now: float) -> None:
        due = [job_id for job_id, ready_at in self._delayed.items() if ready_at <= now]
        for job_id in due:
            del self._delayed[job_id]
            self._push_waiting(self._jobs[job_id])

    def _finish(self, job: QueueJob, state: JobState, now: float) -> None:
        job.state = state.value
        job.finished_at = now
        self._finished.append((now, job.job_id))

    def _prune_finished(self, now: float) -> None:
        horizon = now - self.config.completed_retention_seconds * 1000
        while self._finished and self._finished[0][0] <= horizon:
            _, job_id = self._finished.popleft()
            self._jobs.pop(job_id, None)

    def _end_claim(self, job: QueueJob) -> Optional[QueueJob]:
        """Release the active entry if `job` still holds the current lease."""
        stored = self._jobs.get(job.job_id)
        if not job.lease or stored is None or stored.lease != job.lease:
            return None
        if self._active.pop(job.job_id, None) is None:
            return None
        return stored

    # ── Jobs ──────────────────────────────────────────────

    async def enqueue(self, job: QueueJob, delay_ms: int = 0, pointer_ttl: Optional[int] = None) -> str:
        now = self._clock()
        seq = next(self._ids)
        job.job_id = str(seq)
        job.seq = seq
        job.created_at = now
        job.ready_at = now + max(0, delay_ms)
        job.lease = ""
        self._jobs[job.job_id] = job

        if pointer_ttl and job.has_replaceable_channel:
            self._pointers[job.tracking_key] = (job.job_id, now + pointer_ttl * 1000)

        if delay_ms > 0:
            job.state = JobState.DELAYED.value
            self._delayed[job.job_id] = job.ready_at
        else:
            self._push_waiting(job)
        return job.job_id

    async def claim_next(self) -> Optional[QueueJob]:
        if self._paused:
            return None
        now = self._clock()
        self._prune_finished(now)
        self._promote_due(now)

        while self._heap:
            _, _, job_id = heapq.heappop(self._heap)
            if job_id not in self._waiting:
                continue
            self._waiting.discard(job_id)
            job = self._jobs[job_id]
            job.state = JobState.ACTIVE.value
            job.attempt += 1
            job.lease = new_lease_token()
            self._active[job_id] = now + self.config.lease_timeout_ms
            return dataclasses.replace(job)
        return None

    async def mark_completed(self, job: QueueJob, result: dict[str, Any] = None) -> bool:
        stored = self._end_claim(job)
        if stored is None:
            return False
        stored.result = result or {}
        self._finish(stored, JobState.COMPLETED, self._clock())
        self._totals["completed"] += 1
        return True

    async def mark_failed(
        self,
        job: QueueJob,
        error: str,
        retry_delay_ms: Optional[int] = None,
        retryable: bool = True,
    ) -> Optional[FailureOutcome]:
        stored = self._end_claim(job)
        if stored is None:
            return None
        now = self._clock()
        stored.last_error = error

        if retryable and stored.attempt < stored.max_attempts:
            delay = retry_delay_ms if retry_delay_ms is not None else self.backoff_ms(stored.attempt)
            stored.ready_at = now + delay
            stored.state = JobState.DELAYED.value
            self._delayed[stored.job_id] = stored.ready_at
            return FailureOutcome(retried=True, attempt=stored.attempt, delay_ms=delay)

        self._finish(stored, JobState.FAILED, now)
        self._totals["failed"] += 1
        return FailureOutcome(retried=False, attempt=stored.attempt)

    async def remove(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if job_id in self._waiting:
            self._waiting.discard(job_id)
        elif job_id in self._delayed:
            del self._delayed[job_id]
        else:
            return False
        self._finish(job, JobState.REMOVED, self._clock())
        return True

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def extend_lease(self, job: QueueJob) -> bool:
        stored = self._jobs.get(job.job_id)
        if job.job_id not in self._active or not job.lease or stored.lease != job.lease:
            return False
        self._active[job.job_id] = self._clock() + self.config.lease_timeout_ms
        return True

    async def recover_stalled(self) -> list[StalledJob]:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._active.items() if deadline <= now]
        recovered = []
        for job_id in expired:
            del self._active[job_id]
            job = self._jobs[job_id]
            job.lease = ""
            if job.attempt >= job.max_attempts:
                job.last_error = "stalled"
                self._finish(job, JobState.FAILED, now)
                self._totals["failed"] += 1
            else:
                self._push_waiting(job)
            recovered.append(StalledJob(job_id=job_id, state=JobState(job.state), attempt=job.attempt))
        return recovered

    async def counts(self) -> QueueStats:
        return QueueStats(
            waiting=len(self._waiting),
            active=len(self._active),
            completed=self._totals["completed"],
            failed=self._totals["failed"],
            delayed=len(self._delayed),
            paused=self._paused,
        )

    async def clear(self) -> list[QueueJob]:
        now = self._clock()
        removed = []
        for job_id in list(self._waiting) + list(self._delayed):
            job = self._jobs[job_id]
            self._finish(job, JobState.REMOVED, now)
            removed.append(dataclasses.replace(job))
        self._waiting.clear()
        self._delayed.clear()
        self._heap.clear()
        return removed

    # ── Processing control ────────────────────────────────

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def is_paused(self) -> bool:
        return self._paused

    # ── Channel pointers ──────────────────────────────────

    async def get_pointer(self, key: str) -> Optional[str]:
        entry = self._pointers.get(key)
        if entry is None:
            return None
        job_id, expires_at = entry
        if expires_at <= self._clock():
            del self._pointers[key]
            return None
        return job_id

    async def set_pointer(self, key: str, job_id: str, ttl_seconds: int) -> None:
        self._pointers[key] = (job_id, self._clock() + ttl_seconds * 1000)

    async def delete_pointer_if(self, key: str, job_id: str) -> bool:
        if await self.get_pointer(key) == job_id:
            del self._pointers[key]
            return True
        return False

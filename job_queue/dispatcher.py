"""
Queue Dispatcher — Worker pool that claims jobs and delivers them.

Runs as asyncio tasks inside the bot process. For horizontal scaling, run
more processes against the same Redis store; the atomic claim guarantees
each job is executed by one worker at a time.

Topology:
  ┌──────────────┐       ┌─────────────────┐  claim   ┌────────────┐
  │   Handlers   │──enq──▶│ wait (priority) │─────────▶│  Worker(s) │──▶ Telegram
  └──────────────┘       └─────────────────┘  (gov.)  └─────┬──────┘
                                  ▲ promote                  │
                         ┌────────┴────────┐                 │
                         │ delayed (ready_at)◀── retry ──────┤
                         └─────────────────┘                 │
                                                             │
                         ┌─────────────────┐                 │
                         │ failed          │◀── exhausted ───┘
                         └─────────────────┘

A single ThroughputGovernor sits in front of claim_next for the whole pool,
so the bot never issues more than `dispatch_rate_limit` calls per window;
jobs beyond that stay queued in priority order.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

import structlog

from channels.base import MessagingClient, ThroughputGovernor
from config.settings import QueueConfig
from core.errors import EffectMissingError, TelegramRateLimitError
from job_queue.jobs import EffectRegistry, QueueJob
from job_queue.store_base import JobStore
from job_queue.supersession import ChannelTracker
from models.schemas import JobKind, JobState

logger = structlog.get_logger()


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    SUPERSEDED = "superseded"
    RETRYING = "retrying"
    FAILED = "failed"
    LOST = "lost"          # claim no longer current at report time (lease expired)


class QueueDispatcher:
    """
    Bounded worker pool over a JobStore.

    Usage:
        dispatcher = QueueDispatcher(store, client, tracker, effects, config)
        await dispatcher.start()     # spawns workers + maintenance loop
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: JobStore,
        client: MessagingClient,
        tracker: ChannelTracker,
        effects: EffectRegistry,
        config: QueueConfig = None,
        governor: Optional[ThroughputGovernor] = None,
    ):
        self.store = store
        self.client = client
        self.tracker = tracker
        self.effects = effects
        self.config = config or QueueConfig()
        self.governor = governor or ThroughputGovernor(
            self.config.dispatch_rate_limit, self.config.dispatch_rate_window,
        )
        self._workers: list[asyncio.Task] = []
        self._maintenance: Optional[asyncio.Task] = None
        self._running = False
        self._stats = {outcome.value: 0 for outcome in JobOutcome}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"queue-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name="queue-maintenance")
        logger.info("dispatcher_started", concurrency=self.config.concurrency,
                    rate_limit=self.config.dispatch_rate_limit)

    async def stop(self, timeout: float = 10.0) -> None:
        """Let in-flight jobs finish (up to `timeout`), then cancel what is left."""
        self._running = False
        tasks = list(self._workers)
        if self._maintenance:
            self._maintenance.cancel()
            tasks.append(self._maintenance)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
        self._maintenance = None
        logger.info("dispatcher_stopped")

    # ── Worker loop ───────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while self._running:
            try:
                await self.governor.acquire()
                job = await self.store.claim_next()
                if job is None:
                    self.governor.refund()
                    await asyncio.sleep(self.config.poll_interval)
                    continue
                await self.process(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_error", worker=index, error=str(e))
                await asyncio.sleep(1)

    async def process(self, job: QueueJob) -> JobOutcome:
        """Run one claimed job and report its outcome to the store."""
        logger.debug("processing_job", job_id=job.job_id, kind=job.kind,
                     chat_id=job.target, attempt=job.attempt, priority=job.priority)

        if not await self.tracker.is_latest(job):
            await self.store.mark_completed(
                job, {"skipped": True, "reason": "superseded", "chat_id": job.target},
            )
            self.effects.discard(job.effect_ref)
            logger.info("job_superseded_skipped", job_id=job.job_id, chat_id=job.target,
                        channel=job.action_channel.full_name)
            return self._count(JobOutcome.SUPERSEDED)

        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            result = await self._execute(job)
        except TelegramRateLimitError as e:
            logger.warning("job_platform_rate_limited", job_id=job.job_id, retry_after=e.retry_after)
            return await self._report_failure(job, e, retry_delay_ms=int(e.retry_after * 1000))
        except EffectMissingError as e:
            return await self._report_failure(job, e, retryable=False)
        except Exception as e:
            return await self._report_failure(job, e)
        finally:
            heartbeat.cancel()

        if not await self.store.mark_completed(job, result):
            logger.warning("job_report_ignored", job_id=job.job_id, outcome="completed")
            return self._count(JobOutcome.LOST)
        await self.tracker.release(job)
        self.effects.discard(job.effect_ref)
        logger.debug("job_completed", job_id=job.job_id, chat_id=job.target, attempt=job.attempt)
        return self._count(JobOutcome.COMPLETED)

    async def _execute(self, job: QueueJob) -> dict[str, Any]:
        if job.kind == JobKind.MESSAGE.value:
            sent = await self.client.send(job.target, job.text, job.message_options)
            sent.raise_for_status()
            return {"success": True, "chat_id": job.target, "message_id": sent.message_id}

        effect = self.effects.get(job.effect_ref)
        if effect is None:
            raise EffectMissingError(job.job_id)
        await effect()
        logger.debug("effect_executed", job_id=job.job_id, kind=job.kind, description=job.description)
        return {"success": True, "chat_id": job.target}

    async def _report_failure(
        self,
        job: QueueJob,
        error: Exception,
        retry_delay_ms: Optional[int] = None,
        retryable: bool = True,
    ) -> JobOutcome:
        outcome = await self.store.mark_failed(job, str(error), retry_delay_ms, retryable)
        if outcome is None:
            logger.warning("job_report_ignored", job_id=job.job_id, outcome="failed")
            return self._count(JobOutcome.LOST)

        if outcome.retried:
            logger.info("job_retry_scheduled", job_id=job.job_id, chat_id=job.target,
                        attempt=outcome.attempt, delay_ms=outcome.delay_ms, error=str(error))
            return self._count(JobOutcome.RETRYING)

        logger.error("job_failed", job_id=job.job_id, chat_id=job.target, kind=job.kind,
                     attempts=outcome.attempt, error=str(error))
        await self.tracker.release(job)
        self.effects.discard(job.effect_ref)
        return self._count(JobOutcome.FAILED)

    async def _heartbeat(self, job: QueueJob) -> None:
        """Keep the lease alive while a long execution is in flight."""
        interval = max(self.config.lease_timeout_ms / 2000, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.store.extend_lease(job):
                    logger.warning("lease_lost", job_id=job.job_id)
                    return
            except Exception as e:
                logger.warning("lease_extend_failed", job_id=job.job_id, error=str(e))

    def _count(self, outcome: JobOutcome) -> JobOutcome:
        self._stats[outcome.value] += 1
        return outcome

    def stats(self) -> dict[str, Any]:
        return {**self._stats, "workers": len(self._workers), "governor": self.governor.stats()}

    # ── Maintenance ───────────────────────────────────────

    async def run_maintenance(self) -> None:
        """One pass: recover stalled jobs and check queue load."""
        for stalled in await self.store.recover_stalled():
            if stalled.state == JobState.FAILED:
                logger.error("job_stalled_failed", job_id=stalled.job_id, attempts=stalled.attempt)
                job = await self.store.get_job(stalled.job_id)
                if job is not None:
                    await self.tracker.release(job)
                    self.effects.discard(job.effect_ref)
            else:
                logger.warning("job_stalled_requeued", job_id=stalled.job_id, attempt=stalled.attempt)

        counts = await self.store.counts()
        if counts.waiting > self.config.warn_waiting or counts.delayed > self.config.warn_delayed:
            logger.warning("queue_high_load", **counts.model_dump())

    async def _maintenance_loop(self) -> None:
        logger.info("queue_maintenance_started", interval=self.config.maintenance_interval)
        while True:
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_maintenance_error", error=str(e))
            await asyncio.sleep(self.config.maintenance_interval)

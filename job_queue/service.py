"""
MessageQueueService — the enqueue API used by request handlers.

    service = create_message_queue_service(settings, client, redis=conn.client)
    await service.start()
    await service.queue_message(chat_id, "Hello", priority=JobPriority.URGENT)
    await service.queue_edit(chat_id, render_menu, "menu", channel=ActionChannels.UserInterface.navigation)
    ...
    await service.shutdown()

Enqueue is fire-and-forget: the returned job id is for logs and tests,
the caller never waits for delivery.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from channels.base import MessagingClient, ThroughputGovernor
from config.settings import QueueConfig, Settings
from core.errors import QueueClosedError
from job_queue.dispatcher import QueueDispatcher
from job_queue.jobs import Effect, EffectRegistry, QueueJob
from job_queue.store_base import JobStore
from job_queue.store_factory import create_job_store
from job_queue.supersession import ChannelTracker
from models.channel import ActionChannel
from models.schemas import JobKind, JobPriority, MessageOptions, QueueStats

logger = structlog.get_logger()


class MessageQueueService:

    def __init__(
        self,
        store: JobStore,
        client: MessagingClient,
        config: QueueConfig = None,
        governor: Optional[ThroughputGovernor] = None,
    ):
        self.config = config or store.config
        self.store = store
        self.effects = EffectRegistry()
        self.tracker = ChannelTracker(store, self.config.channel_tracking_ttl_seconds, self.effects)
        self.dispatcher = QueueDispatcher(
            store, client, self.tracker, self.effects, self.config, governor,
        )
        self._closed = False

    async def start(self) -> None:
        await self.dispatcher.start()

    # ── Enqueue API ───────────────────────────────────────

    async def queue_message(
        self,
        chat_id: str,
        message: str,
        options: Optional[MessageOptions] = None,
        priority: int = 0,
        channel: Optional[ActionChannel] = None,
    ) -> str:
        job = QueueJob(
            kind=JobKind.MESSAGE,
            target=str(chat_id),
            text=message,
            options=options.model_dump(exclude_none=True) if options else {},
            priority=int(priority),
        )
        return await self._enqueue(job, channel)

    async def queue_action(
        self,
        chat_id: str,
        action: Effect,
        description: str = "",
        priority: int = 0,
        channel: Optional[ActionChannel] = None,
    ) -> str:
        return await self._enqueue_effect(JobKind.ACTION, chat_id, action, description, priority, channel)

    async def queue_edit(
        self,
        chat_id: str,
        edit_action: Effect,
        description: str = "",
        priority: int = 0,
        channel: Optional[ActionChannel] = None,
    ) -> str:
        return await self._enqueue_effect(JobKind.EDIT, chat_id, edit_action, description, priority, channel)

    async def broadcast_message(
        self,
        chat_ids: list[str],
        message: str,
        options: Optional[MessageOptions] = None,
    ) -> int:
        """Fan a message out in paced chunks at the lowest priority. Returns the chunk count."""
        self._ensure_open()
        size = max(1, self.config.broadcast_chunk_size)
        chunks = [chat_ids[i:i + size] for i in range(0, len(chat_ids), size)]
        logger.info("broadcast_queuing", recipients=len(chat_ids), chunks=len(chunks))

        raw_options = options.model_dump(exclude_none=True) if options else {}
        for index, chunk in enumerate(chunks):
            delay_ms = index * self.config.broadcast_chunk_delay_ms
            for chat_id in chunk:
                job = QueueJob(
                    kind=JobKind.MESSAGE,
                    target=str(chat_id),
                    text=message,
                    options=raw_options,
                    priority=JobPriority.BROADCAST,
                    max_attempts=self.config.max_attempts,
                )
                await self.store.enqueue(job, delay_ms=delay_ms)
            logger.debug("broadcast_chunk_queued", chunk=index + 1, total=len(chunks), delay_ms=delay_ms)

        logger.info("broadcast_queued", recipients=len(chat_ids), chunks=len(chunks))
        return len(chunks)

    async def _enqueue_effect(
        self,
        kind: JobKind,
        chat_id: str,
        effect: Effect,
        description: str,
        priority: int,
        channel: Optional[ActionChannel],
    ) -> str:
        self._ensure_open()
        token = self.effects.register(effect)
        job = QueueJob(
            kind=kind,
            target=str(chat_id),
            effect_ref=token,
            description=description,
            priority=int(priority),
        )
        try:
            return await self._enqueue(job, channel)
        except Exception:
            self.effects.discard(token)
            raise

    async def _enqueue(self, job: QueueJob, channel: Optional[ActionChannel]) -> str:
        self._ensure_open()
        job.max_attempts = self.config.max_attempts
        if channel is not None:
            job.channel = channel.to_dict()
            await self.tracker.before_enqueue(job.target, channel)

        job_id = await self.store.enqueue(job, pointer_ttl=self.tracker.pointer_ttl(job))
        logger.debug("job_enqueued", job_id=job_id, kind=job.kind, chat_id=job.target,
                     priority=job.priority, channel=channel.full_name if channel else None)
        return job_id

    def _ensure_open(self) -> None:
        if self._closed:
            raise QueueClosedError()

    # ── Operator API ──────────────────────────────────────

    async def get_queue_stats(self) -> QueueStats:
        return await self.store.counts()

    async def pause(self) -> None:
        await self.store.pause()
        logger.info("queue_paused")

    async def resume(self) -> None:
        await self.store.resume()
        logger.info("queue_resumed")

    async def clear(self) -> int:
        removed = await self.store.clear()
        for job in removed:
            self.effects.discard(job.effect_ref)
        logger.info("queue_cleared", removed=len(removed))
        return len(removed)

    async def shutdown(self, drain: bool = True, timeout: float = 30.0) -> dict[str, Any]:
        """
        Stop accepting work, optionally wait for pending jobs, explicitly
        discard whatever is still queued, then release the worker pool,
        the messaging client and the store.
        """
        self._closed = True
        drained = False
        if drain and self.dispatcher.running:
            drained = await self._wait_for_drain(timeout)

        discarded = 0 if drained else await self.clear()
        await self.dispatcher.stop()
        released = self.effects.clear()
        await self.dispatcher.client.close()
        await self.store.close()

        logger.info("queue_shutdown", drained=drained, discarded=discarded, effects_released=released)
        return {"drained": drained, "discarded": discarded, "effects_released": released}

    async def _wait_for_drain(self, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            stats = await self.store.counts()
            if stats.pending == 0:
                return True
            if stats.paused:
                return False
            await asyncio.sleep(self.config.poll_interval)
        return False


def create_message_queue_service(
    settings: Settings,
    client: MessagingClient,
    redis: Optional[Any] = None,
) -> MessageQueueService:
    """Factory: wire store, tracker and dispatcher from settings."""
    store = create_job_store(settings.queue, redis=redis)
    return MessageQueueService(store, client, settings.queue)

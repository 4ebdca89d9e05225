"""
Channel tracker — "latest wins" for replaceable channels.

For each (channel, chat) the store keeps a pointer to the most recently
enqueued job. The hooks:

  before_enqueue  remove the job the pointer names, if it has not started
  pointer_ttl     passed to JobStore.enqueue, which points at the new job
                  in the same atomic step that makes it claimable
  is_latest       checked right before execution; a job that lost the
                  pointer is skipped and reported as superseded
  release         on a terminal outcome, drop the pointer if it still
                  names this job

Removal in before_enqueue is best-effort; the claim-time check is what
guarantees an old screen never overwrites a newer one. Jobs on
non-replaceable channels are never skipped.
"""
from __future__ import annotations

from typing import Optional

import structlog

from core.errors import BackingStoreError
from job_queue.jobs import EffectRegistry, QueueJob
from job_queue.store_base import JobStore
from models.channel import ActionChannel

logger = structlog.get_logger()


class ChannelTracker:

    def __init__(self, store: JobStore, ttl_seconds: int = 300, effects: Optional[EffectRegistry] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.effects = effects

    async def before_enqueue(self, target: str, channel: ActionChannel) -> Optional[str]:
        """Remove the previous unstarted job on this channel. Returns its id if removed."""
        if not channel.replaceable:
            return None
        key = channel.tracking_key(target)
        previous_id = await self.store.get_pointer(key)
        if not previous_id:
            return None

        try:
            previous = await self.store.get_job(previous_id)
            if previous is None:
                await self.store.delete_pointer_if(key, previous_id)
                return None
            if not await self.store.remove(previous_id):
                return None
        except BackingStoreError as e:
            logger.warning("superseded_job_remove_failed",
                           job_id=previous_id, chat_id=target,
                           channel=channel.full_name, error=str(e))
            return None

        if self.effects is not None:
            self.effects.discard(previous.effect_ref)
        logger.info("superseded_job_removed",
                    job_id=previous_id, chat_id=target, channel=channel.full_name)
        return previous_id

    def pointer_ttl(self, job: QueueJob) -> Optional[int]:
        """TTL for the pointer enqueue should write, or None when the job is not tracked."""
        return self.ttl_seconds if job.has_replaceable_channel else None

    async def is_latest(self, job: QueueJob) -> bool:
        """True unless a newer job on the same replaceable channel has taken the pointer."""
        if not job.has_replaceable_channel:
            return True
        latest_id = await self.store.get_pointer(job.tracking_key)
        return latest_id == job.job_id

    async def release(self, job: QueueJob) -> bool:
        """Drop the pointer after a terminal outcome, unless a newer job owns it."""
        key = job.tracking_key
        if key is None:
            return False
        return await self.store.delete_pointer_if(key, job.job_id)

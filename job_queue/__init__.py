"""
Delivery Queue — Decouples handlers from the Telegram API.

- Handlers ENQUEUE messages, actions and edits (fire-and-forget)
- The dispatcher's worker pool CLAIMS jobs in priority order and delivers
  them under a global throughput cap
- Replaceable channels make only the latest job per (channel, chat) run
- Supports Redis (production, multi-process) and in-memory (dev) stores
"""
from job_queue.jobs import QueueJob, EffectRegistry
from job_queue.store_base import JobStore
from job_queue.store_memory import InMemoryJobStore
from job_queue.store_redis import RedisJobStore
from job_queue.store_factory import create_job_store
from job_queue.supersession import ChannelTracker
from job_queue.dispatcher import QueueDispatcher, JobOutcome
from job_queue.service import MessageQueueService, create_message_queue_service
from job_queue.queued_messages import QueuedMessageService

__all__ = [
    "QueueJob", "EffectRegistry",
    "JobStore", "InMemoryJobStore", "RedisJobStore", "create_job_store",
    "ChannelTracker", "QueueDispatcher", "JobOutcome",
    "MessageQueueService", "create_message_queue_service",
    "QueuedMessageService",
]

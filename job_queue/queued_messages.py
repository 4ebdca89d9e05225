"""
QueuedMessageService — what handlers actually call.

Wraps MessageQueueService with named priority tiers and swallows enqueue
failures for best-effort traffic (notifications, leaderboard pushes) while
logging them. Interactive paths (priority messages, errors, navigation)
log and re-raise so the handler can fall back.
"""
from __future__ import annotations

from typing import Optional

import structlog

from job_queue.jobs import Effect
from job_queue.service import MessageQueueService
from models.channel import ActionChannel, ActionChannels
from models.schemas import JobPriority, MessageOptions, QueueStats

logger = structlog.get_logger()


class QueuedMessageService:

    def __init__(self, queue: MessageQueueService, heavy_load_threshold: Optional[int] = None):
        self.queue = queue
        self.heavy_load_threshold = (
            heavy_load_threshold if heavy_load_threshold is not None
            else queue.config.heavy_load_threshold
        )

    async def send_message(self, chat_id: str, message: str, options: MessageOptions = None) -> Optional[str]:
        try:
            return await self.queue.queue_message(chat_id, message, options)
        except Exception as e:
            logger.error("queue_message_failed", chat_id=chat_id, error=str(e))
            return None

    async def send_priority_message(self, chat_id: str, message: str, options: MessageOptions = None) -> str:
        try:
            return await self.queue.queue_message(chat_id, message, options, JobPriority.URGENT)
        except Exception as e:
            logger.error("queue_priority_message_failed", chat_id=chat_id, error=str(e))
            raise

    async def send_notification(self, chat_id: str, message: str, options: MessageOptions = None) -> Optional[str]:
        try:
            return await self.queue.queue_message(
                chat_id, message, options, JobPriority.NOTIFICATION,
                ActionChannels.System.notification,
            )
        except Exception as e:
            logger.warning("queue_notification_failed", chat_id=chat_id, error=str(e))
            return None

    async def send_leaderboard_update(self, chat_id: str, leaderboard: str, options: MessageOptions = None) -> Optional[str]:
        try:
            return await self.queue.queue_message(
                chat_id, leaderboard, options, JobPriority.LEADERBOARD,
                ActionChannels.Social.leaderboard,
            )
        except Exception as e:
            logger.warning("queue_leaderboard_failed", chat_id=chat_id, error=str(e))
            return None

    async def send_error(self, chat_id: str, error_message: str, options: MessageOptions = None) -> str:
        options = (options or MessageOptions()).model_copy(update={"parse_mode": "HTML"})
        message = f"❌ <b>Error</b>\n\n{error_message}"
        try:
            return await self.queue.queue_message(
                chat_id, message, options, JobPriority.ERROR, ActionChannels.System.error,
            )
        except Exception as e:
            logger.error("queue_error_message_failed", chat_id=chat_id, error=str(e))
            raise

    async def queue_navigation_action(
        self,
        chat_id: str,
        action: Effect,
        description: str = "",
        priority: int = JobPriority.NORMAL,
        channel: ActionChannel = ActionChannels.UserInterface.navigation,
    ) -> str:
        try:
            return await self.queue.queue_action(chat_id, action, description, priority, channel)
        except Exception as e:
            logger.error("queue_action_failed", chat_id=chat_id, description=description, error=str(e))
            raise

    async def queue_message_edit(
        self,
        chat_id: str,
        edit_action: Effect,
        description: str = "",
        priority: int = JobPriority.NORMAL,
        channel: ActionChannel = ActionChannels.UserInterface.navigation,
    ) -> str:
        try:
            return await self.queue.queue_edit(chat_id, edit_action, description, priority, channel)
        except Exception as e:
            logger.error("queue_edit_failed", chat_id=chat_id, description=description, error=str(e))
            raise

    async def broadcast_message(self, chat_ids: list[str], message: str, options: MessageOptions = None) -> int:
        logger.warning("broadcast_requested", recipients=len(chat_ids))
        return await self.queue.broadcast_message(chat_ids, message, options)

    # ── Load shedding ─────────────────────────────────────

    async def get_queue_stats(self) -> QueueStats:
        return await self.queue.get_queue_stats()

    async def is_under_heavy_load(self) -> bool:
        stats = await self.get_queue_stats()
        return stats.waiting > self.heavy_load_threshold

    async def pause_non_critical(self) -> None:
        await self.queue.pause()
        logger.warning("queue_paused_for_load")

    async def resume(self) -> None:
        await self.queue.resume()
        logger.warning("queue_resumed_after_load")

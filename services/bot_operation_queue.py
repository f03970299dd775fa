"""
Bot Operation Queue
Producer for channel-membership commands executed by the Telegram bot worker.

Message group is the operation type, so ordering holds among operations of the
same kind only. The bot worker must treat commands idempotently (inviting a
present member is a no-op).
"""

import logging
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import BotOperationType, RemovalReason
from services.outbound_queue import OutboundQueue

logger = logging.getLogger(__name__)

BOT_OPERATIONS_QUEUE = "bot-operations"


class BotOperationQueue:
    """enqueue_* methods return the queue message id, or None on publish failure"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_retries: Optional[int] = None,
        dedup_window_seconds: Optional[int] = None,
    ):
        self.queue = OutboundQueue(
            session_factory,
            BOT_OPERATIONS_QUEUE,
            max_retries=max_retries,
            dedup_window_seconds=dedup_window_seconds,
        )

    async def enqueue_invite_user(
        self,
        subscription_id: int,
        user_id: int,
        channel_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[int]:
        return await self._enqueue(
            BotOperationType.INVITE_USER,
            {
                "subscriptionId": subscription_id,
                "userId": user_id,
                "channelId": channel_id,
            },
            dedup_key=f"invite-{subscription_id}",
            session=session,
        )

    async def enqueue_remove_user(
        self,
        subscription_id: int,
        user_id: int,
        channel_id: str,
        reason: Union[RemovalReason, str],
        session: Optional[AsyncSession] = None,
    ) -> Optional[int]:
        reason_value = reason.value if isinstance(reason, RemovalReason) else RemovalReason(reason).value
        return await self._enqueue(
            BotOperationType.REMOVE_USER,
            {
                "subscriptionId": subscription_id,
                "userId": user_id,
                "channelId": channel_id,
                "reason": reason_value,
            },
            dedup_key=f"remove-{subscription_id}-{reason_value}",
            session=session,
        )

    async def enqueue_verify_permissions(
        self,
        channel_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[int]:
        return await self._enqueue(
            BotOperationType.VERIFY_PERMISSIONS,
            {"channelId": channel_id},
            dedup_key=f"verify-{channel_id}",
            session=session,
        )

    async def _enqueue(self, operation: BotOperationType, payload, dedup_key: str, session=None) -> Optional[int]:
        message_id = await self.queue.enqueue(
            operation_type=operation.value,
            message_group=operation.value,
            payload={"operationType": operation.value, **payload},
            dedup_key=dedup_key,
            session=session,
        )
        if message_id is None:
            logger.error(f"🚨 BOT_OPERATION_NOT_QUEUED: {operation.value} key={dedup_key} - manual reconciliation required")
        return message_id

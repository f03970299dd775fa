"""
Outbound Queue Service
Database-backed, at-least-once command queue consumed by external automation.

Producers get back a message id, or None when the write failed; a failed
enqueue never raises into the state change that triggered it. Consumers claim
pending messages in id order per message group, then ack or nack them; nack
dead-letters a message once its retry budget is spent. A claimed message that
is neither acked nor nacked within the visibility timeout is redelivered.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import OutboundMessage, OutboundMessageStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)

# A duplicate inside the window is answered with the original message
DEDUP_STATUSES = (
    OutboundMessageStatus.PENDING.value,
    OutboundMessageStatus.IN_FLIGHT.value,
    OutboundMessageStatus.DELIVERED.value,
)


class OutboundQueue:
    """One named queue inside the outbound_messages table"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue_name: str,
        max_retries: Optional[int] = None,
        dedup_window_seconds: Optional[int] = None,
        visibility_timeout_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.queue_name = queue_name
        self.max_retries = Config.QUEUE_MAX_RETRIES if max_retries is None else max_retries
        self.dedup_window_seconds = (
            Config.QUEUE_DEDUP_WINDOW_SECONDS if dedup_window_seconds is None else dedup_window_seconds
        )
        self.visibility_timeout_seconds = (
            Config.QUEUE_VISIBILITY_TIMEOUT_SECONDS
            if visibility_timeout_seconds is None
            else visibility_timeout_seconds
        )

    async def enqueue(
        self,
        operation_type: str,
        message_group: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        session: Optional[AsyncSession] = None,
    ) -> Optional[int]:
        """
        Add a command to the queue.

        TRANSACTIONAL SAFETY: with a caller session the insert runs in a savepoint
        and is only flushed; otherwise an own session is committed.

        Returns:
            Message id (the existing one for a duplicate), or None on failure
        """
        try:
            async with session_scope(self.session_factory, session) as db:
                async with db.begin_nested():
                    if dedup_key:
                        existing = await self._find_duplicate(db, dedup_key)
                        if existing is not None:
                            logger.info(
                                f"🔁 QUEUE_DUPLICATE_PREVENTED: {self.queue_name} key={dedup_key} "
                                f"(existing: {existing.id}, {existing.status})"
                            )
                            return existing.id

                    message = OutboundMessage(
                        queue_name=self.queue_name,
                        message_group=message_group,
                        operation_type=operation_type,
                        dedup_key=dedup_key,
                        payload=payload,
                        status=OutboundMessageStatus.PENDING.value,
                        attempt_count=0,
                        max_retries=self.max_retries if max_retries is None else max_retries,
                        created_at=get_naive_utc_now(),
                    )
                    db.add(message)
                    await db.flush()
                    message_id = message.id

            logger.info(
                f"📤 QUEUE_ENQUEUED: {self.queue_name} {operation_type} id={message_id} "
                f"group={message_group} key={dedup_key}"
            )
            return message_id

        except Exception as e:
            logger.error(
                f"❌ QUEUE_PUBLISH_FAILED: {self.queue_name} {operation_type} key={dedup_key}: {e}",
                exc_info=True,
            )
            return None

    async def _find_duplicate(self, db: AsyncSession, dedup_key: str) -> Optional[OutboundMessage]:
        window_start = get_naive_utc_now() - timedelta(seconds=self.dedup_window_seconds)
        stmt = (
            select(OutboundMessage)
            .where(
                OutboundMessage.queue_name == self.queue_name,
                OutboundMessage.dedup_key == dedup_key,
                OutboundMessage.created_at >= window_start,
                OutboundMessage.status.in_(DEDUP_STATUSES),
            )
            .order_by(OutboundMessage.id.desc())
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------ consumers

    async def claim_pending(self, limit: int = 10, now: Optional[datetime] = None) -> List[OutboundMessage]:
        """
        Move up to `limit` pending messages to in-flight and return them.

        Stale in-flight messages are swept back first. Groups that still have an
        in-flight message are skipped so order is kept within a group.
        """
        now = now or get_naive_utc_now()
        async with session_scope(self.session_factory) as db:
            await self._requeue_stale(db, now)

            busy_groups = select(OutboundMessage.message_group).where(
                OutboundMessage.queue_name == self.queue_name,
                OutboundMessage.status == OutboundMessageStatus.IN_FLIGHT.value,
            )
            stmt = (
                select(OutboundMessage)
                .where(
                    OutboundMessage.queue_name == self.queue_name,
                    OutboundMessage.status == OutboundMessageStatus.PENDING.value,
                    OutboundMessage.message_group.not_in(busy_groups),
                )
                .order_by(OutboundMessage.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            messages = list((await db.execute(stmt)).scalars().all())

            for message in messages:
                message.status = OutboundMessageStatus.IN_FLIGHT.value
                message.attempt_count = (message.attempt_count or 0) + 1
                message.claimed_at = now
            await db.flush()

        if messages:
            logger.debug(f"📥 QUEUE_CLAIMED: {self.queue_name} {[m.id for m in messages]}")
        return messages

    async def requeue_stale_in_flight(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Recover messages whose consumer claimed them and never answered.

        Each stale message goes back to pending, or to the dead-letter set once
        its attempts have reached max_retries.
        """
        async with session_scope(self.session_factory) as db:
            return await self._requeue_stale(db, now or get_naive_utc_now())

    async def _requeue_stale(self, db: AsyncSession, now: datetime) -> Dict[str, int]:
        cutoff = now - timedelta(seconds=self.visibility_timeout_seconds)
        stmt = (
            select(OutboundMessage)
            .where(
                OutboundMessage.queue_name == self.queue_name,
                OutboundMessage.status == OutboundMessageStatus.IN_FLIGHT.value,
                or_(OutboundMessage.claimed_at.is_(None), OutboundMessage.claimed_at < cutoff),
            )
            .order_by(OutboundMessage.id)
            .with_for_update(skip_locked=True)
        )
        stale = list((await db.execute(stmt)).scalars().all())

        result = {"requeued": 0, "dead_lettered": 0}
        for message in stale:
            message.last_error = f"not acknowledged within {self.visibility_timeout_seconds}s"
            if message.attempt_count >= message.max_retries:
                message.status = OutboundMessageStatus.DEAD_LETTER.value
                result["dead_lettered"] += 1
                logger.error(
                    f"💀 QUEUE_DEAD_LETTER: {self.queue_name} id={message.id} "
                    f"unacknowledged after {message.attempt_count} attempts"
                )
            else:
                message.status = OutboundMessageStatus.PENDING.value
                message.claimed_at = None
                result["requeued"] += 1
                logger.warning(
                    f"⏰ QUEUE_VISIBILITY_TIMEOUT: {self.queue_name} id={message.id} "
                    f"redelivering (attempt {message.attempt_count}/{message.max_retries})"
                )
        if stale:
            await db.flush()
        return result

    async def ack(self, message_id: int) -> None:
        async with session_scope(self.session_factory) as db:
            message = await db.get(OutboundMessage, message_id)
            if message is None:
                logger.warning(f"⚠️ QUEUE_ACK_UNKNOWN: {self.queue_name} id={message_id}")
                return
            message.status = OutboundMessageStatus.DELIVERED.value
            message.delivered_at = get_naive_utc_now()
        logger.debug(f"✅ QUEUE_ACKED: {self.queue_name} id={message_id}")

    async def nack(self, message_id: int, error: str) -> Optional[str]:
        """Return the message to pending, or dead-letter it once attempts reach max_retries"""
        async with session_scope(self.session_factory) as db:
            message = await db.get(OutboundMessage, message_id)
            if message is None:
                logger.warning(f"⚠️ QUEUE_NACK_UNKNOWN: {self.queue_name} id={message_id}")
                return None

            message.last_error = error
            if message.attempt_count >= message.max_retries:
                message.status = OutboundMessageStatus.DEAD_LETTER.value
                logger.error(
                    f"💀 QUEUE_DEAD_LETTER: {self.queue_name} id={message_id} "
                    f"after {message.attempt_count} attempts: {error}"
                )
            else:
                message.status = OutboundMessageStatus.PENDING.value
                message.claimed_at = None
                logger.warning(
                    f"🔄 QUEUE_RETRY: {self.queue_name} id={message_id} "
                    f"attempt {message.attempt_count}/{message.max_retries}: {error}"
                )
            return message.status

    async def get_message(self, message_id: int) -> Optional[OutboundMessage]:
        async with self.session_factory() as db:
            return await db.get(OutboundMessage, message_id)

    async def get_dead_letters(self, limit: int = 100) -> List[OutboundMessage]:
        async with self.session_factory() as db:
            stmt = (
                select(OutboundMessage)
                .where(
                    OutboundMessage.queue_name == self.queue_name,
                    OutboundMessage.status == OutboundMessageStatus.DEAD_LETTER.value,
                )
                .order_by(OutboundMessage.id)
                .limit(limit)
            )
            return list((await db.execute(stmt)).scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        async with self.session_factory() as db:
            stmt = (
                select(OutboundMessage.status, func.count(OutboundMessage.id))
                .where(OutboundMessage.queue_name == self.queue_name)
                .group_by(OutboundMessage.status)
            )
            rows = (await db.execute(stmt)).all()
        return {status: count for status, count in rows}

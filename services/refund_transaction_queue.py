"""
Refund Transaction Queue
Persists refund payouts owed to buyers and hands them to the on-chain signer worker.

A RefundTransaction row is the durable record of the payout; the queue message
carries the command. The consumer reports each SendResult back here:
success completes the refund, a retryable failure re-queues it until the retry
budget is spent, anything else dead-letters it for manual intervention.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import RefundTransaction, RefundTransactionStatus
from services.outbound_queue import OutboundQueue
from services.settlement_errors import NotFoundError
from services.transaction_signer import SendResult
from utils.datetime_helpers import get_naive_utc_now
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)

REFUND_TRANSACTIONS_QUEUE = "refund-transactions"
REFUND_OPERATION = "SEND_REFUND"


class RefundTransactionQueue:
    """queue_refund returns the queue message id, or None when the refund could not be queued"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_retries: Optional[int] = None,
        dedup_window_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.queue = OutboundQueue(
            session_factory,
            REFUND_TRANSACTIONS_QUEUE,
            max_retries=max_retries,
            dedup_window_seconds=dedup_window_seconds,
        )

    async def queue_refund(
        self,
        subscription_id: int,
        order_id: int,
        buyer_id: int,
        to_address: str,
        amount: Union[Decimal, str, float],
        currency: str,
        reason: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Optional[int]:
        """Record and enqueue a refund payout"""
        if not to_address or not str(to_address).strip():
            logger.error(f"❌ REFUND_NOT_QUEUED: subscription={subscription_id} missing destination address")
            return None

        amount = Decimal(str(amount))
        if amount <= 0:
            logger.error(f"❌ REFUND_NOT_QUEUED: subscription={subscription_id} non-positive amount {amount}")
            return None

        try:
            async with session_scope(self.session_factory, session) as db:
                async with db.begin_nested():
                    refund = RefundTransaction(
                        subscription_id=subscription_id,
                        order_id=order_id,
                        buyer_id=buyer_id,
                        to_address=to_address.strip(),
                        amount=amount,
                        currency=currency,
                        reason=reason,
                        status=RefundTransactionStatus.QUEUED.value,
                        attempt_count=0,
                        max_retries=self.queue.max_retries,
                    )
                    db.add(refund)
                    await db.flush()

                    message_id = await self.queue.enqueue(
                        operation_type=REFUND_OPERATION,
                        message_group=REFUND_TRANSACTIONS_QUEUE,
                        payload={
                            "refundId": refund.id,
                            "subscriptionId": subscription_id,
                            "orderId": order_id,
                            "buyerId": buyer_id,
                            "toAddress": refund.to_address,
                            "amount": str(amount),
                            "currency": currency,
                            "reason": reason,
                        },
                        dedup_key=f"refund-{refund.id}",
                        session=db,
                    )
                    if message_id is None:
                        raise RuntimeError("refund command publish failed")

                    refund.message_id = message_id
                    await db.flush()

        except Exception as e:
            logger.error(
                f"🚨 REFUND_NOT_QUEUED: subscription={subscription_id} {amount} {currency} to {to_address}: {e} "
                f"- manual reconciliation required"
            )
            return None

        logger.info(
            f"💸 REFUND_QUEUED: refund={refund.id} subscription={subscription_id} "
            f"{amount} {currency} -> {refund.to_address} (message {message_id})"
        )
        return message_id

    # ------------------------------------------------------------ consumers

    async def mark_processing(self, refund_id: int) -> RefundTransaction:
        async with session_scope(self.session_factory) as db:
            refund = await self._require(db, refund_id)
            refund.status = RefundTransactionStatus.PROCESSING.value
            refund.attempt_count = (refund.attempt_count or 0) + 1
            return refund

    async def record_send_result(self, refund_id: int, result: SendResult) -> RefundTransaction:
        """Apply a signer outcome: completed, re-queued, or failed (dead-letter)"""
        async with session_scope(self.session_factory) as db:
            refund = await self._require(db, refund_id)

            if result.success:
                refund.status = RefundTransactionStatus.COMPLETED.value
                refund.transaction_hash = result.transaction_hash
                refund.error_message = None
                refund.processed_at = get_naive_utc_now()
                logger.info(f"✅ REFUND_SENT: refund={refund_id} tx={result.transaction_hash}")
            elif result.retryable and refund.attempt_count < refund.max_retries:
                refund.status = RefundTransactionStatus.QUEUED.value
                refund.error_message = result.error
                logger.warning(
                    f"🔄 REFUND_RETRY: refund={refund_id} attempt {refund.attempt_count}/{refund.max_retries}: "
                    f"{result.error}"
                )
            else:
                refund.status = RefundTransactionStatus.FAILED.value
                refund.error_message = result.error
                refund.processed_at = get_naive_utc_now()
                logger.error(
                    f"💀 REFUND_DEAD_LETTER: refund={refund_id} after {refund.attempt_count} attempts "
                    f"(retryable={result.retryable}): {result.error}"
                )
            return refund

    async def get_refund(self, refund_id: int) -> Optional[RefundTransaction]:
        async with self.session_factory() as db:
            return await db.get(RefundTransaction, refund_id)

    async def get_refunds_by_subscription(self, subscription_id: int) -> List[RefundTransaction]:
        return await self._list(RefundTransaction.subscription_id == subscription_id)

    async def get_refunds_by_order(self, order_id: int) -> List[RefundTransaction]:
        return await self._list(RefundTransaction.order_id == order_id)

    async def get_refunds_by_buyer(self, buyer_id: int) -> List[RefundTransaction]:
        return await self._list(RefundTransaction.buyer_id == buyer_id)

    async def get_refunds_by_status(self, status: RefundTransactionStatus) -> List[RefundTransaction]:
        return await self._list(RefundTransaction.status == status.value)

    async def _list(self, condition) -> List[RefundTransaction]:
        async with self.session_factory() as db:
            stmt = select(RefundTransaction).where(condition).order_by(RefundTransaction.id)
            return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def _require(db: AsyncSession, refund_id: int) -> RefundTransaction:
        refund = await db.get(RefundTransaction, refund_id)
        if refund is None:
            raise NotFoundError("RefundTransaction", refund_id)
        return refund

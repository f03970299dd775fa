"""
Payment Event Queue
Durable hand-off of DETECTED/CONFIRMED transaction events from the blockchain
monitor to the payment processing consumer.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.outbound_queue import OutboundQueue
from services.transaction_events import TransactionEvent, TransactionEventType

logger = logging.getLogger(__name__)

PAYMENT_EVENTS_QUEUE = "payment-events"


class PaymentEventQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_retries: Optional[int] = None,
        dedup_window_seconds: Optional[int] = None,
    ):
        self.queue = OutboundQueue(
            session_factory,
            PAYMENT_EVENTS_QUEUE,
            max_retries=max_retries,
            dedup_window_seconds=dedup_window_seconds,
        )

    async def publish(self, event: TransactionEvent) -> Optional[int]:
        """
        Enqueue a TransactionEvent.

        Grouped per order so a DETECTED event is consumed before the CONFIRMED one.
        A CONFIRMED event is deduplicated on its transaction hash; DETECTED events
        per hash and confirmation count.
        """
        if event.event_type == TransactionEventType.CONFIRMED:
            dedup_key = f"confirmed-{event.transaction_hash}"
        else:
            dedup_key = f"detected-{event.transaction_hash}-{event.confirmations}"

        return await self.queue.enqueue(
            operation_type=event.event_type.value,
            message_group=f"order-{event.order_id}",
            payload=event.to_payload(),
            dedup_key=dedup_key,
        )

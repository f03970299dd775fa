"""
Payment Processing Service
Consumes monitor events and moves orders through
pending_payment -> payment_detected -> payment_confirmed, then hands confirmed
orders to the subscription service.
"""

import logging
from decimal import Decimal
from typing import Dict, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import Order, OrderStatus, Transaction, TransactionStatus
from services.payment_event_queue import PaymentEventQueue
from services.settlement_errors import NotFoundError
from services.subscription_service import SubscriptionService
from services.transaction_events import TransactionEvent, TransactionEventType
from utils.chain_constants import addresses_match, get_required_confirmations, is_amount_within_tolerance
from utils.datetime_helpers import get_naive_utc_now
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)


class PaymentVerification(NamedTuple):
    address_match: bool
    amount_match: bool
    confirmations_sufficient: bool
    required_confirmations: int

    @property
    def is_valid(self) -> bool:
        return self.address_match and self.amount_match and self.confirmations_sufficient


class PaymentOutcome:
    DETECTED = "detected"
    CONFIRMED = "confirmed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


ALREADY_PAID_STATUSES = (
    OrderStatus.PAYMENT_CONFIRMED.value,
    OrderStatus.SUBSCRIPTION_ACTIVE.value,
)
AWAITING_PAYMENT_STATUSES = (
    OrderStatus.PENDING_PAYMENT.value,
    OrderStatus.PAYMENT_DETECTED.value,
)


class PaymentProcessingService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        subscription_service: SubscriptionService,
        monitor=None,
        payment_events: Optional[PaymentEventQueue] = None,
    ):
        self.session_factory = session_factory
        self.subscription_service = subscription_service
        self.monitor = monitor
        self.payment_events = payment_events

    @staticmethod
    def verify_payment(order: Order, to_address: str, amount: Decimal, confirmations: int) -> PaymentVerification:
        required = get_required_confirmations(order.currency)
        return PaymentVerification(
            address_match=addresses_match(order.deposit_address, to_address),
            amount_match=is_amount_within_tolerance(amount, Decimal(str(order.amount))),
            confirmations_sufficient=confirmations >= required,
            required_confirmations=required,
        )

    async def handle_event(self, event: TransactionEvent) -> str:
        if event.event_type == TransactionEventType.CONFIRMED:
            return await self.handle_confirmed(event)
        return await self.handle_detected(event)

    async def handle_detected(self, event: TransactionEvent) -> str:
        async with session_scope(self.session_factory) as db:
            order = await self._lock_order(db, event.order_id)

            if order.status not in AWAITING_PAYMENT_STATUSES:
                logger.info(f"⏭️ DETECTED_SKIPPED: order={order.id} status={order.status} tx={event.transaction_hash}")
                return PaymentOutcome.SKIPPED

            if not addresses_match(order.deposit_address, event.address):
                logger.error(
                    f"❌ DETECTED_ADDRESS_MISMATCH: order={order.id} expected {order.deposit_address} got {event.address}"
                )
                return PaymentOutcome.REJECTED

            if not is_amount_within_tolerance(event.amount, Decimal(str(order.amount))):
                logger.warning(
                    f"⚠️ DETECTED_AMOUNT_MISMATCH: order={order.id} expected {order.amount} got {event.amount}"
                )

            await self._upsert_transaction(db, order, event, TransactionStatus.DETECTED)
            order.status = OrderStatus.PAYMENT_DETECTED.value
            order.confirmations = event.confirmations
            order.transaction_hash = event.transaction_hash

        logger.info(
            f"🔎 PAYMENT_DETECTED: order={order.id} tx={event.transaction_hash} "
            f"{event.confirmations}/{event.required_confirmations} confirmations"
        )
        return PaymentOutcome.DETECTED

    async def handle_confirmed(self, event: TransactionEvent) -> str:
        async with session_scope(self.session_factory) as db:
            order = await self._lock_order(db, event.order_id)

            if order.status in ALREADY_PAID_STATUSES:
                logger.info(f"⏭️ CONFIRMED_SKIPPED: order={order.id} already {order.status}")
                return PaymentOutcome.SKIPPED

            if order.status not in AWAITING_PAYMENT_STATUSES:
                logger.critical(
                    f"🚨 LATE_PAYMENT: order={order.id} is {order.status} but received confirmed "
                    f"{event.amount} {event.currency.value} tx={event.transaction_hash} - manual review required"
                )
                return PaymentOutcome.REJECTED

            verification = self.verify_payment(order, event.address, event.amount, event.confirmations)
            if not verification.is_valid:
                logger.error(
                    f"❌ PAYMENT_VERIFICATION_FAILED: order={order.id} tx={event.transaction_hash} "
                    f"address={verification.address_match} amount={verification.amount_match} "
                    f"confirmations={verification.confirmations_sufficient}"
                )
                return PaymentOutcome.REJECTED

            await self._upsert_transaction(db, order, event, TransactionStatus.CONFIRMED)
            order.status = OrderStatus.PAYMENT_CONFIRMED.value
            order.confirmations = event.confirmations
            order.transaction_hash = event.transaction_hash
            order.paid_at = get_naive_utc_now()

        logger.info(f"✅ PAYMENT_CONFIRMED: order={order.id} tx={event.transaction_hash} {event.amount} {order.currency}")

        if self.monitor is not None:
            await self.monitor.unwatch_address(order.deposit_address)

        try:
            await self.subscription_service.create_subscription_from_order(order.id)
        except Exception as e:
            # Payment stays confirmed; subscription creation is retried from the order state
            logger.error(f"❌ SUBSCRIPTION_CREATE_FAILED: order={order.id}: {e}", exc_info=True)

        return PaymentOutcome.CONFIRMED

    async def process_pending_events(self, limit: int = 50) -> Dict[str, int]:
        """Drain claimed payment-event messages; failures go back to the queue via nack"""
        if self.payment_events is None:
            return {"processed": 0, "failed": 0}

        messages = await self.payment_events.queue.claim_pending(limit)
        processed = 0
        failed = 0
        for message in messages:
            try:
                event = TransactionEvent.from_payload(message.payload)
                await self.handle_event(event)
            except Exception as e:
                failed += 1
                logger.error(f"❌ PAYMENT_EVENT_FAILED: message={message.id}: {e}", exc_info=True)
                await self.payment_events.queue.nack(message.id, str(e))
                continue
            await self.payment_events.queue.ack(message.id)
            processed += 1

        return {"processed": processed, "failed": failed}

    async def retry_unsubscribed_orders(self) -> int:
        """Create subscriptions for confirmed orders whose activation previously failed"""
        async with self.session_factory() as db:
            stmt = select(Order.id).where(Order.status == OrderStatus.PAYMENT_CONFIRMED.value)
            order_ids = list((await db.execute(stmt)).scalars().all())

        created = 0
        for order_id in order_ids:
            try:
                await self.subscription_service.create_subscription_from_order(order_id)
                created += 1
            except Exception as e:
                logger.error(f"❌ SUBSCRIPTION_RETRY_FAILED: order={order_id}: {e}")
        return created

    @staticmethod
    async def _lock_order(db: AsyncSession, order_id: int) -> Order:
        stmt = select(Order).where(Order.id == order_id).with_for_update()
        order = (await db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    @staticmethod
    async def _upsert_transaction(
        db: AsyncSession, order: Order, event: TransactionEvent, status: TransactionStatus
    ) -> Transaction:
        stmt = select(Transaction).where(Transaction.transaction_hash == event.transaction_hash)
        transaction = (await db.execute(stmt)).scalar_one_or_none()

        if transaction is None:
            transaction = Transaction(
                order_id=order.id,
                transaction_hash=event.transaction_hash,
                from_address=event.from_address,
                to_address=event.address,
                amount=event.amount,
                currency=order.currency,
                block_number=event.block_number,
            )
            db.add(transaction)

        transaction.confirmations = event.confirmations
        transaction.status = status.value
        await db.flush()
        return transaction

"""
Dispute Service
Buyer disputes against paid orders and their admin resolution.

An approved resolution refunds the escrow pro-rata, marks subscription and
order refunded (one transaction), then queues the on-chain refund and the
channel removal. A denied resolution only updates the dispute.
"""

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import List, NamedTuple, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import (
    Dispute, DisputeStatus, Order, OrderStatus, RemovalReason, Subscription,
    SubscriptionStatus, User,
)
from services.bot_operation_queue import BotOperationQueue
from services.escrow_ledger import EscrowLedger
from services.refund_transaction_queue import RefundTransactionQueue
from services.settlement_errors import (
    DisputeWindowError, NotFoundError, OwnershipError, ValidationError,
)
from utils.datetime_helpers import days_between, ensure_naive_datetime, get_naive_utc_now
from utils.dispute_state_validator import DisputeStateValidator
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)

DISPUTABLE_ORDER_STATUSES = (
    OrderStatus.PAYMENT_CONFIRMED.value,
    OrderStatus.SUBSCRIPTION_ACTIVE.value,
)
ENDED_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.EXPIRED.value,
    SubscriptionStatus.CANCELLED.value,
)


class DisputeResolutionResult(NamedTuple):
    dispute: Dispute
    refund_approved: bool
    refund_amount: Optional[Decimal] = None
    refund_message_id: Optional[int] = None
    removal_message_id: Optional[int] = None


class DisputeService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        escrow_ledger: EscrowLedger,
        refund_queue: RefundTransactionQueue,
        bot_queue: BotOperationQueue,
        window_days: Optional[int] = None,
        issue_max_length: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.escrow_ledger = escrow_ledger
        self.refund_queue = refund_queue
        self.bot_queue = bot_queue
        self.window_days = Config.DISPUTE_WINDOW_DAYS if window_days is None else window_days
        self.issue_max_length = Config.DISPUTE_ISSUE_MAX_LENGTH if issue_max_length is None else issue_max_length

    async def create_dispute(
        self,
        order_id: int,
        buyer_id: int,
        issue: str,
        now: Optional[datetime] = None,
    ) -> Dispute:
        issue = (issue or "").strip()
        if not issue:
            raise ValidationError("Dispute issue description is required")
        if len(issue) > self.issue_max_length:
            raise ValidationError(f"Dispute issue must be at most {self.issue_max_length} characters")

        async with session_scope(self.session_factory) as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.buyer_id != buyer_id:
                raise OwnershipError("You can only dispute your own orders")
            if order.status not in DISPUTABLE_ORDER_STATUSES:
                raise ValidationError(f"Cannot dispute an order without a confirmed payment (status {order.status})")

            active = await self._find_active_dispute(db, order_id)
            if active is not None:
                raise ValidationError(f"Order {order_id} already has an active dispute ({active.id})")

            await self._check_time_window(db, order_id, now)

            dispute = Dispute(
                buyer_id=buyer_id,
                order_id=order_id,
                issue=issue,
                status=DisputeStatus.OPEN.value,
            )
            db.add(dispute)
            await db.flush()

        logger.info(f"⚖️ DISPUTE_CREATED: dispute={dispute.id} order={order_id} buyer={buyer_id}")
        return dispute

    async def validate_dispute_time_window(self, order_id: int, now: Optional[datetime] = None) -> bool:
        """True if the order's subscription can still be disputed; raises otherwise"""
        async with self.session_factory() as db:
            await self._check_time_window(db, order_id, now)
        return True

    async def _check_time_window(self, db: AsyncSession, order_id: int, now: Optional[datetime]) -> None:
        now = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()
        stmt = select(Subscription).where(Subscription.order_id == order_id)
        subscription = (await db.execute(stmt)).scalar_one_or_none()

        if subscription is None:
            raise ValidationError(f"No subscription found for order {order_id}")

        if subscription.status == SubscriptionStatus.ACTIVE.value:
            return

        if subscription.status in ENDED_SUBSCRIPTION_STATUSES:
            days_since_expiry = math.floor(days_between(subscription.expiry_date, now))
            if days_since_expiry <= self.window_days:
                return
            raise DisputeWindowError(
                f"Disputes must be raised within {self.window_days} days of subscription expiry "
                f"({days_since_expiry} days have passed)"
            )

        raise ValidationError(f"Cannot dispute a {subscription.status} subscription")

    async def update_dispute_status(
        self,
        dispute_id: int,
        new_status: Union[DisputeStatus, str],
        admin_id: Optional[int] = None,
    ) -> Dispute:
        new_status = new_status if isinstance(new_status, DisputeStatus) else DisputeStatus(new_status)

        async with session_scope(self.session_factory) as db:
            dispute = await self._lock_dispute(db, dispute_id)
            DisputeStateValidator.assert_transition(dispute.status, new_status, dispute_id)

            previous = dispute.status
            dispute.status = new_status.value
            if admin_id is not None:
                dispute.admin_id = admin_id
            if DisputeStateValidator.is_terminal(new_status):
                dispute.resolved_at = get_naive_utc_now()

        logger.info(f"⚖️ DISPUTE_STATUS: dispute={dispute_id} {previous} -> {new_status.value}")
        return dispute

    async def resolve_dispute(
        self,
        dispute_id: int,
        resolution: str,
        admin_id: int,
        refund_approved: bool,
        now: Optional[datetime] = None,
    ) -> DisputeResolutionResult:
        resolution = (resolution or "").strip()
        if not resolution:
            raise ValidationError("Resolution text is required")

        refund = None
        subscription = None
        order = None
        buyer = None

        async with session_scope(self.session_factory) as db:
            dispute = await self._lock_dispute(db, dispute_id)
            DisputeStateValidator.assert_transition(dispute.status, DisputeStatus.RESOLVED, dispute_id)

            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = resolution
            dispute.admin_id = admin_id
            dispute.refund_approved = refund_approved
            dispute.resolved_at = get_naive_utc_now()

            if refund_approved:
                order = await db.get(Order, dispute.order_id)
                if order is None:
                    raise NotFoundError("Order", dispute.order_id)
                stmt = select(Subscription).where(Subscription.order_id == order.id).with_for_update()
                subscription = (await db.execute(stmt)).scalar_one_or_none()
                if subscription is None:
                    raise NotFoundError("Subscription for order", order.id)

                refund = await self.escrow_ledger.refund_escrow(subscription.id, session=db, now=now)
                subscription.status = SubscriptionStatus.REFUNDED.value
                order.status = OrderStatus.REFUNDED.value
                buyer = await db.get(User, order.buyer_id)

        if not refund_approved:
            logger.info(f"⚖️ DISPUTE_RESOLVED: dispute={dispute_id} refund denied by admin={admin_id}")
            return DisputeResolutionResult(dispute, False)

        refund_amount = refund.refund.refund_amount
        logger.info(
            f"⚖️ DISPUTE_RESOLVED: dispute={dispute_id} refund approved by admin={admin_id} "
            f"amount={refund_amount} {order.currency}"
        )

        refund_message_id = None
        if refund_amount > 0:
            refund_message_id = await self.refund_queue.queue_refund(
                subscription_id=subscription.id,
                order_id=order.id,
                buyer_id=order.buyer_id,
                to_address=order.deposit_address,
                amount=refund_amount,
                currency=order.currency,
                reason=f"dispute-{dispute_id}",
            )
        else:
            logger.info(f"ℹ️ REFUND_ZERO: dispute={dispute_id} subscription already fully used, no payout queued")

        removal_message_id = None
        if buyer is not None:
            removal_message_id = await self.bot_queue.enqueue_remove_user(
                subscription.id, buyer.telegram_user_id, subscription.channel_id, RemovalReason.REFUND
            )
        else:
            logger.error(f"❌ REMOVAL_NOT_QUEUED: buyer {order.buyer_id} missing for subscription {subscription.id}")

        return DisputeResolutionResult(
            dispute, True, refund_amount, refund_message_id, removal_message_id
        )

    # --------------------------------------------------------------- readers

    async def get_dispute(self, dispute_id: int) -> Optional[Dispute]:
        async with self.session_factory() as db:
            return await db.get(Dispute, dispute_id)

    async def get_disputes_by_buyer(self, buyer_id: int) -> List[Dispute]:
        return await self._list(Dispute.buyer_id == buyer_id)

    async def get_disputes_by_order(self, order_id: int) -> List[Dispute]:
        return await self._list(Dispute.order_id == order_id)

    async def get_disputes_by_status(self, status: DisputeStatus) -> List[Dispute]:
        return await self._list(Dispute.status == status.value)

    async def get_disputes_by_admin(self, admin_id: int) -> List[Dispute]:
        return await self._list(Dispute.admin_id == admin_id)

    async def get_open_disputes(self) -> List[Dispute]:
        return await self.get_disputes_by_status(DisputeStatus.OPEN)

    async def get_disputes_needing_attention(self) -> List[Dispute]:
        """OPEN and IN_PROGRESS, oldest first"""
        return await self._list(
            Dispute.status.in_([s.value for s in DisputeStateValidator.ACTIVE_STATES]),
            oldest_first=True,
        )

    async def count_open_disputes(self) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count(Dispute.id)).where(Dispute.status == DisputeStatus.OPEN.value)
            return (await db.execute(stmt)).scalar() or 0

    async def _list(self, condition, oldest_first: bool = False) -> List[Dispute]:
        order_by = Dispute.created_at.asc() if oldest_first else Dispute.created_at.desc()
        async with self.session_factory() as db:
            stmt = select(Dispute).where(condition).order_by(order_by, Dispute.id)
            return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def _find_active_dispute(db: AsyncSession, order_id: int) -> Optional[Dispute]:
        stmt = select(Dispute).where(
            Dispute.order_id == order_id,
            Dispute.status.in_([s.value for s in DisputeStateValidator.ACTIVE_STATES]),
        ).limit(1)
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _lock_dispute(db: AsyncSession, dispute_id: int) -> Dispute:
        stmt = select(Dispute).where(Dispute.id == dispute_id).with_for_update()
        dispute = (await db.execute(stmt)).scalar_one_or_none()
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

"""
Subscription Service
Turns confirmed orders into channel subscriptions and expires them, releasing
escrow to the merchant when the period ends.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import (
    Listing, Order, OrderStatus, RemovalReason, Subscription, SubscriptionStatus, User,
)
from services.bot_operation_queue import BotOperationQueue
from services.escrow_ledger import EscrowLedger
from services.settlement_errors import InvalidStateError, NotFoundError
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        escrow_ledger: EscrowLedger,
        bot_queue: BotOperationQueue,
    ):
        self.session_factory = session_factory
        self.escrow_ledger = escrow_ledger
        self.bot_queue = bot_queue

    async def create_subscription_from_order(self, order_id: int, now: Optional[datetime] = None) -> Subscription:
        """
        Activate channel access for a payment-confirmed order.

        Opens the escrow entry in the same transaction, then queues the invite.
        Idempotent per order.
        """
        now = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()

        async with session_scope(self.session_factory) as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order", order_id)

            existing = (
                await db.execute(select(Subscription).where(Subscription.order_id == order_id))
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(f"♻️ SUBSCRIPTION_EXISTS: order={order_id} subscription={existing.id}")
                return existing

            if order.status != OrderStatus.PAYMENT_CONFIRMED.value:
                raise InvalidStateError(
                    f"Order {order_id} must be payment_confirmed to start a subscription (is {order.status})"
                )

            listing = await db.get(Listing, order.listing_id)
            if listing is None:
                raise NotFoundError("Listing", order.listing_id)

            subscription = Subscription(
                buyer_id=order.buyer_id,
                listing_id=listing.id,
                order_id=order.id,
                channel_id=listing.channel_id,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=now,
                expiry_date=now + timedelta(days=listing.duration_days),
                duration_days=listing.duration_days,
            )
            db.add(subscription)
            await db.flush()

            await self.escrow_ledger.create_escrow(order.id, subscription.id, session=db)
            await self.escrow_ledger.attach_subscription(order.id, subscription.id, session=db)
            order.status = OrderStatus.SUBSCRIPTION_ACTIVE.value

            buyer = await db.get(User, order.buyer_id)

        logger.info(
            f"🎫 SUBSCRIPTION_ACTIVATED: subscription={subscription.id} order={order_id} "
            f"channel={subscription.channel_id} until {subscription.expiry_date}"
        )

        if buyer is not None:
            await self.bot_queue.enqueue_invite_user(subscription.id, buyer.telegram_user_id, subscription.channel_id)
        else:
            logger.error(f"❌ INVITE_NOT_QUEUED: buyer {order.buyer_id} missing for subscription {subscription.id}")

        return subscription

    async def expire_subscriptions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire active subscriptions past their expiry date.

        Per subscription: status -> expired and escrow released in one
        transaction, then a removal command is queued. Failures are counted and
        left for the next run.
        """
        now = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()

        async with self.session_factory() as db:
            stmt = select(Subscription.id).where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.expiry_date <= now,
            ).order_by(Subscription.expiry_date)
            subscription_ids = list((await db.execute(stmt)).scalars().all())

        expired = 0
        errors = 0
        for subscription_id in subscription_ids:
            try:
                if await self._expire_one(subscription_id):
                    expired += 1
            except Exception as e:
                errors += 1
                logger.error(f"❌ SUBSCRIPTION_EXPIRY_FAILED: subscription={subscription_id}: {e}", exc_info=True)

        if subscription_ids:
            logger.info(f"⌛ SUBSCRIPTIONS_EXPIRED: {expired} expired, {errors} errors")
        return {"expired": expired, "errors": errors}

    async def _expire_one(self, subscription_id: int) -> bool:
        async with session_scope(self.session_factory) as db:
            stmt = select(Subscription).where(Subscription.id == subscription_id).with_for_update()
            subscription = (await db.execute(stmt)).scalar_one_or_none()
            if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
                return False

            subscription.status = SubscriptionStatus.EXPIRED.value
            await db.flush()
            await self.escrow_ledger.release_escrow(subscription_id, session=db)
            buyer = await db.get(User, subscription.buyer_id)

        logger.info(f"⌛ SUBSCRIPTION_EXPIRED: subscription={subscription_id} escrow released")

        if buyer is not None:
            await self.bot_queue.enqueue_remove_user(
                subscription.id, buyer.telegram_user_id, subscription.channel_id, RemovalReason.EXPIRY
            )
        return True

    async def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        async with self.session_factory() as db:
            return await db.get(Subscription, subscription_id)

    async def get_subscription_by_order(self, order_id: int) -> Optional[Subscription]:
        async with self.session_factory() as db:
            stmt = select(Subscription).where(Subscription.order_id == order_id)
            return (await db.execute(stmt)).scalar_one_or_none()

    async def get_active_subscriptions_for_buyer(self, buyer_id: int) -> List[Subscription]:
        async with self.session_factory() as db:
            stmt = select(Subscription).where(
                Subscription.buyer_id == buyer_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            ).order_by(Subscription.expiry_date)
            return list((await db.execute(stmt)).scalars().all())

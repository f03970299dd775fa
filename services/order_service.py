"""
Order Service
Creates orders against per-order deposit addresses and expires unpaid ones.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import Listing, Order, OrderStatus, User
from services.settlement_errors import NotFoundError, ValidationError
from utils.chain_constants import to_currency
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)

# Orders whose deposit address must stay watched
OPEN_ORDER_STATUSES = (
    OrderStatus.PENDING_PAYMENT.value,
    OrderStatus.PAYMENT_DETECTED.value,
)


class OrderService:
    def __init__(self, session_factory: async_sessionmaker, monitor=None, expiry_hours: Optional[int] = None):
        self.session_factory = session_factory
        self.monitor = monitor
        self.expiry_hours = Config.ORDER_EXPIRY_HOURS if expiry_hours is None else expiry_hours

    async def create_order(
        self,
        buyer_id: int,
        listing_id: int,
        deposit_address: str,
        amount: Union[Decimal, str, float, None] = None,
        currency: Optional[str] = None,
    ) -> Order:
        """
        Create a pending order and start watching its deposit address.

        Amount and currency default to the listing's price. The deposit address
        is derived elsewhere and passed in.
        """
        if not deposit_address or not deposit_address.strip():
            raise ValidationError("Deposit address is required")

        async with session_scope(self.session_factory) as db:
            if await db.get(User, buyer_id) is None:
                raise NotFoundError("User", buyer_id)
            listing = await db.get(Listing, listing_id)
            if listing is None:
                raise NotFoundError("Listing", listing_id)
            if not listing.is_active:
                raise ValidationError(f"Listing {listing_id} is not active")

            try:
                order_currency = to_currency(currency or listing.currency)
            except ValueError as e:
                raise ValidationError(f"Unsupported currency: {currency or listing.currency}") from e

            order_amount = Decimal(str(amount if amount is not None else listing.price))
            if order_amount <= 0:
                raise ValidationError(f"Order amount must be positive, got {order_amount}")

            now = get_naive_utc_now()
            order = Order(
                buyer_id=buyer_id,
                listing_id=listing_id,
                deposit_address=deposit_address.strip(),
                amount=order_amount,
                currency=order_currency.value,
                status=OrderStatus.PENDING_PAYMENT.value,
                confirmations=0,
                created_at=now,
                expires_at=now + timedelta(hours=self.expiry_hours),
            )
            db.add(order)
            await db.flush()

        logger.info(
            f"🧾 ORDER_CREATED: order={order.id} buyer={buyer_id} listing={listing_id} "
            f"{order.amount} {order.currency} -> {order.deposit_address} (expires {order.expires_at})"
        )

        if self.monitor is not None:
            await self.monitor.watch_address(order.deposit_address, order.id, order.currency, order.amount)

        return order

    async def expire_unpaid_orders(self, now: Optional[datetime] = None) -> int:
        """Mark pending orders past their expiry as expired and stop watching them"""
        now = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()

        async with session_scope(self.session_factory) as db:
            stmt = select(Order).where(
                Order.status == OrderStatus.PENDING_PAYMENT.value,
                Order.expires_at < now,
            ).with_for_update(skip_locked=True)
            orders = list((await db.execute(stmt)).scalars().all())
            for order in orders:
                order.status = OrderStatus.EXPIRED.value

        for order in orders:
            if self.monitor is not None:
                await self.monitor.unwatch_address(order.deposit_address)
            logger.info(f"⌛ ORDER_EXPIRED: order={order.id} address={order.deposit_address}")

        if orders:
            logger.info(f"⌛ ORDERS_EXPIRED: {len(orders)} unpaid orders")
        return len(orders)

    async def rewatch_open_orders(self) -> int:
        """
        Restore address watches for orders still waiting on the chain.

        The watch registry lives in memory, so this runs at startup before the
        monitor begins polling.
        """
        if self.monitor is None:
            return 0

        async with self.session_factory() as db:
            stmt = (
                select(Order)
                .where(Order.status.in_(OPEN_ORDER_STATUSES))
                .order_by(Order.id)
            )
            orders = list((await db.execute(stmt)).scalars().all())

        for order in orders:
            await self.monitor.watch_address(order.deposit_address, order.id, order.currency, order.amount)

        logger.info(f"👀 ORDERS_REWATCHED: {len(orders)} open orders")
        return len(orders)

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self.session_factory() as db:
            return await db.get(Order, order_id)

    async def get_orders_by_buyer(self, buyer_id: int) -> List[Order]:
        async with self.session_factory() as db:
            stmt = select(Order).where(Order.buyer_id == buyer_id).order_by(Order.created_at.desc())
            return list((await db.execute(stmt)).scalars().all())

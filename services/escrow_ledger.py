"""
Escrow Ledger - Fund custody for paid orders
Holds each order payment logically until it is released to the merchant on
subscription expiry or refunded to the buyer on an approved dispute.

Guarantees:
- One escrow entry per order; create is idempotent
- platform_fee + merchant_amount == amount
- HELD -> RELEASED | REFUNDED, exactly once, enforced by a status-guarded update
- Merchant pending balance moves in the same transaction as the status change
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    EscrowAuditAction, EscrowEntry, EscrowStatus, Listing, Order, Subscription,
)
from services.audit_trail_service import AuditTrailService
from services.merchant_balance_service import MerchantBalanceService
from services.settlement_errors import InvalidStateError, NotFoundError, ValidationError
from utils.datetime_helpers import get_naive_utc_now
from utils.fee_calculator import FeeCalculator
from utils.optimistic_locking import OptimisticLockManager
from utils.refund_calculator import RefundCalculation, calculate_pro_rated_refund
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)


class EscrowRefundResult(NamedTuple):
    escrow: EscrowEntry
    refund: RefundCalculation
    merchant_forfeit: Decimal


class EscrowLedger:
    """Creates, releases and refunds escrow entries"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        audit_trail: AuditTrailService,
        balances: MerchantBalanceService,
        fee_percentage: Union[Decimal, float, str, None] = None,
    ):
        self.session_factory = session_factory
        self.audit_trail = audit_trail
        self.balances = balances
        self._fee_percentage = FeeCalculator.validate_fee_percentage(
            fee_percentage if fee_percentage is not None else FeeCalculator.get_default_fee_percentage()
        )

    # ------------------------------------------------------------------ fees

    def get_platform_fee_percentage(self) -> Decimal:
        return self._fee_percentage

    def set_platform_fee_percentage(self, fee_percentage: Union[Decimal, float, str]) -> Decimal:
        """Applies to escrows created afterwards; existing entries keep their split"""
        try:
            value = FeeCalculator.validate_fee_percentage(fee_percentage)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        logger.info(f"🔧 PLATFORM_FEE_UPDATED: {self._fee_percentage} -> {value}")
        self._fee_percentage = value
        return value

    # ----------------------------------------------------------- transitions

    async def create_escrow(
        self,
        order_id: int,
        subscription_id: Optional[int] = None,
        session: Optional[AsyncSession] = None,
    ) -> EscrowEntry:
        """
        Open a HELD escrow entry for a paid order.

        Idempotent: an existing entry for the order is returned unchanged.
        Credits the merchant's pending balance with the merchant share.
        """
        async with session_scope(self.session_factory, session) as db:
            existing = await self._find_by_order(db, order_id)
            if existing is not None:
                logger.info(f"♻️ ESCROW_EXISTS: order={order_id} escrow={existing.id} status={existing.status}")
                return existing

            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            listing = await db.get(Listing, order.listing_id)
            if listing is None:
                raise NotFoundError("Listing", order.listing_id)

            split = FeeCalculator.calculate_fee_split(order.amount, self._fee_percentage)

            entry = EscrowEntry(
                order_id=order.id,
                subscription_id=subscription_id,
                merchant_id=listing.merchant_id,
                amount=split.amount,
                currency=order.currency,
                status=EscrowStatus.HELD.value,
                platform_fee=split.platform_fee,
                merchant_amount=split.merchant_amount,
                version=1,
            )

            try:
                async with db.begin_nested():
                    db.add(entry)
                    await db.flush()
            except IntegrityError:
                # Concurrent creator won the unique(order_id) race
                existing = await self._find_by_order(db, order_id)
                if existing is None:
                    raise
                logger.info(f"♻️ ESCROW_EXISTS: order={order_id} escrow={existing.id} (concurrent create)")
                return existing

            await self.audit_trail.log_escrow_event(
                db, entry, EscrowAuditAction.CREATED, None, EscrowStatus.HELD.value,
                {"feePercentage": split.fee_percentage},
            )
            await self.balances.increment_pending(db, entry.merchant_id, entry.currency, entry.merchant_amount)

            logger.info(
                f"🔒 ESCROW_CREATED: escrow={entry.id} order={order_id} amount={entry.amount} {entry.currency} "
                f"fee={entry.platform_fee} merchant={entry.merchant_amount}"
            )
            return entry

    async def attach_subscription(
        self, order_id: int, subscription_id: int, session: Optional[AsyncSession] = None
    ) -> EscrowEntry:
        """Link an escrow opened before its subscription existed"""
        async with session_scope(self.session_factory, session) as db:
            entry = await self._find_by_order(db, order_id)
            if entry is None:
                raise NotFoundError("EscrowEntry for order", order_id)
            if entry.subscription_id is None:
                entry.subscription_id = subscription_id
                await db.flush()
            return entry

    async def release_escrow(
        self, subscription_id: int, session: Optional[AsyncSession] = None
    ) -> EscrowEntry:
        """HELD -> RELEASED; merchant share moves from pending to available"""
        async with session_scope(self.session_factory, session) as db:
            entry = await self._require_by_subscription(db, subscription_id)
            self._require_held(entry, "release")

            now = get_naive_utc_now()
            await OptimisticLockManager(db).guarded_update(
                EscrowEntry,
                entry.id,
                {"status": EscrowStatus.RELEASED.value, "released_at": now},
                expected_statuses=[EscrowStatus.HELD.value],
                current_version=entry.version,
            )
            await db.refresh(entry)

            await self.audit_trail.log_escrow_event(
                db, entry, EscrowAuditAction.RELEASED, EscrowStatus.HELD.value, EscrowStatus.RELEASED.value,
                {"releasedAt": now},
            )
            await self.balances.move_pending_to_available(
                db, entry.merchant_id, entry.currency, entry.merchant_amount
            )

            logger.info(
                f"✅ ESCROW_RELEASED: escrow={entry.id} subscription={subscription_id} "
                f"merchant={entry.merchant_id} +{entry.merchant_amount} {entry.currency}"
            )
            return entry

    async def refund_escrow(
        self,
        subscription_id: int,
        session: Optional[AsyncSession] = None,
        now: Optional[datetime] = None,
    ) -> EscrowRefundResult:
        """
        HELD -> REFUNDED with a pro-rated refund amount.

        The merchant's pending balance is reduced by the full merchant_amount,
        not the pro-rated share: the merchant forfeits the whole held amount.
        """
        async with session_scope(self.session_factory, session) as db:
            entry = await self._require_by_subscription(db, subscription_id)
            self._require_held(entry, "refund")

            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError("Subscription", subscription_id)

            refund = calculate_pro_rated_refund(subscription, entry.amount, now=now)
            refunded_at = get_naive_utc_now()

            await OptimisticLockManager(db).guarded_update(
                EscrowEntry,
                entry.id,
                {
                    "status": EscrowStatus.REFUNDED.value,
                    "refund_amount": refund.refund_amount,
                    "refunded_at": refunded_at,
                },
                expected_statuses=[EscrowStatus.HELD.value],
                current_version=entry.version,
            )
            await db.refresh(entry)

            merchant_forfeit = Decimal(str(entry.merchant_amount))
            await self.audit_trail.log_escrow_event(
                db, entry, EscrowAuditAction.REFUNDED, EscrowStatus.HELD.value, EscrowStatus.REFUNDED.value,
                {
                    "refundAmount": refund.refund_amount,
                    "refundPercentage": refund.refund_percentage,
                    "usedDays": refund.used_days,
                    "unusedDays": refund.unused_days,
                    "merchantForfeit": merchant_forfeit,
                    "refundedAt": refunded_at,
                },
            )
            await self.balances.decrement_pending(db, entry.merchant_id, entry.currency, merchant_forfeit)

            logger.info(
                f"↩️ ESCROW_REFUNDED: escrow={entry.id} subscription={subscription_id} "
                f"refund={refund.refund_amount} {entry.currency} ({refund.unused_days}/{refund.duration_days} days unused)"
            )
            logger.warning(
                f"⚠️ MERCHANT_FULL_FORFEIT: merchant={entry.merchant_id} forfeits {merchant_forfeit} {entry.currency} "
                f"on escrow={entry.id} while buyer receives {refund.refund_amount}"
            )
            return EscrowRefundResult(entry, refund, merchant_forfeit)

    # --------------------------------------------------------------- readers

    async def get_escrow_by_order_id(self, order_id: int) -> Optional[EscrowEntry]:
        async with self.session_factory() as db:
            return await self._find_by_order(db, order_id)

    async def get_escrow_by_subscription_id(self, subscription_id: int) -> Optional[EscrowEntry]:
        async with self.session_factory() as db:
            return await self._find_by_subscription(db, subscription_id)

    async def get_held_escrows_for_merchant(self, merchant_id: int) -> List[EscrowEntry]:
        async with self.session_factory() as db:
            stmt = select(EscrowEntry).where(
                EscrowEntry.merchant_id == merchant_id,
                EscrowEntry.status == EscrowStatus.HELD.value,
            ).order_by(EscrowEntry.created_at)
            return list((await db.execute(stmt)).scalars().all())

    async def get_total_held_by_currency(self) -> Dict[str, Decimal]:
        """Total amount currently HELD, per currency"""
        async with self.session_factory() as db:
            stmt = (
                select(EscrowEntry.currency, func.sum(EscrowEntry.amount))
                .where(EscrowEntry.status == EscrowStatus.HELD.value)
                .group_by(EscrowEntry.currency)
            )
            rows = (await db.execute(stmt)).all()
        return {currency: Decimal(str(total or 0)) for currency, total in rows}

    async def get_merchant_held_total(self, merchant_id: int, currency: str) -> Decimal:
        return await self._merchant_total(merchant_id, currency, EscrowStatus.HELD)

    async def get_merchant_released_total(self, merchant_id: int, currency: str) -> Decimal:
        return await self._merchant_total(merchant_id, currency, EscrowStatus.RELEASED)

    async def get_escrow_audit_trail(self, **filters) -> List[Any]:
        """Filter by escrow_id, order_id, subscription_id, action, start_date, end_date"""
        return await self.audit_trail.get_escrow_audit_trail(**filters)

    async def get_merchant_escrow_audit_trail(
        self, merchant_id: int, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> List[Any]:
        return await self.audit_trail.get_merchant_escrow_audit_trail(merchant_id, start_date, end_date)

    async def get_escrow_statistics(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return await self.audit_trail.get_escrow_statistics(start_date, end_date)

    # --------------------------------------------------------------- helpers

    async def _merchant_total(self, merchant_id: int, currency: str, status: EscrowStatus) -> Decimal:
        async with self.session_factory() as db:
            stmt = select(func.sum(EscrowEntry.merchant_amount)).where(
                EscrowEntry.merchant_id == merchant_id,
                EscrowEntry.currency == currency,
                EscrowEntry.status == status.value,
            )
            total = (await db.execute(stmt)).scalar()
        return Decimal(str(total or 0))

    @staticmethod
    async def _find_by_order(db: AsyncSession, order_id: int) -> Optional[EscrowEntry]:
        stmt = select(EscrowEntry).where(EscrowEntry.order_id == order_id)
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _find_by_subscription(db: AsyncSession, subscription_id: int) -> Optional[EscrowEntry]:
        stmt = select(EscrowEntry).where(EscrowEntry.subscription_id == subscription_id)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _require_by_subscription(self, db: AsyncSession, subscription_id: int) -> EscrowEntry:
        entry = await self._find_by_subscription(db, subscription_id)
        if entry is None:
            raise NotFoundError("EscrowEntry for subscription", subscription_id)
        return entry

    @staticmethod
    def _require_held(entry: EscrowEntry, operation: str) -> None:
        if entry.status != EscrowStatus.HELD.value:
            logger.warning(
                f"🚫 ESCROW_INVALID_STATE: cannot {operation} escrow={entry.id} in status {entry.status}"
            )
            raise InvalidStateError(f"Cannot {operation} a {entry.status} escrow")

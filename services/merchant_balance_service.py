"""
Merchant Balance Service
Pending/available balance bookkeeping per merchant and currency.

All mutators take the caller's session and lock the balance row, so they
commit or roll back together with the escrow transition that drives them.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import MerchantBalance
from services.settlement_errors import ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class MerchantBalanceService:
    """Locks and adjusts merchant balance rows, never letting them go negative"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _lock_or_create(self, session: AsyncSession, merchant_id: int, currency: str) -> MerchantBalance:
        stmt = (
            select(MerchantBalance)
            .where(MerchantBalance.merchant_id == merchant_id, MerchantBalance.currency == currency)
            .with_for_update()
        )
        balance = (await session.execute(stmt)).scalar_one_or_none()

        if balance is None:
            balance = MerchantBalance(
                merchant_id=merchant_id,
                currency=currency,
                available_balance=ZERO,
                pending_balance=ZERO,
                total_earned=ZERO,
                total_withdrawn=ZERO,
            )
            session.add(balance)
            await session.flush()
            logger.info(f"🆕 MERCHANT_BALANCE_CREATED: merchant={merchant_id} currency={currency}")

        return balance

    async def increment_pending(
        self, session: AsyncSession, merchant_id: int, currency: str, amount: Decimal
    ) -> MerchantBalance:
        balance = await self._lock_or_create(session, merchant_id, currency)
        balance.pending_balance = Decimal(str(balance.pending_balance)) + Decimal(str(amount))
        await session.flush()
        logger.info(
            f"⏳ PENDING_CREDITED: merchant={merchant_id} +{amount} {currency} "
            f"(pending={balance.pending_balance})"
        )
        return balance

    async def move_pending_to_available(
        self, session: AsyncSession, merchant_id: int, currency: str, amount: Decimal
    ) -> MerchantBalance:
        """Release: pending -> available, counted as earned"""
        amount = Decimal(str(amount))
        balance = await self._lock_or_create(session, merchant_id, currency)
        pending = Decimal(str(balance.pending_balance))

        if pending < amount:
            logger.warning(
                f"⚠️ PENDING_SHORTFALL: merchant={merchant_id} pending={pending} "
                f"release={amount} {currency}, clamping pending at zero"
            )

        balance.pending_balance = max(ZERO, pending - amount)
        balance.available_balance = Decimal(str(balance.available_balance)) + amount
        balance.total_earned = Decimal(str(balance.total_earned)) + amount
        await session.flush()
        logger.info(
            f"💸 PENDING_RELEASED: merchant={merchant_id} {amount} {currency} "
            f"(pending={balance.pending_balance} available={balance.available_balance})"
        )
        return balance

    async def decrement_pending(
        self, session: AsyncSession, merchant_id: int, currency: str, amount: Decimal
    ) -> MerchantBalance:
        """Refund forfeit: pending -= amount, clamped at zero"""
        amount = Decimal(str(amount))
        balance = await self._lock_or_create(session, merchant_id, currency)
        pending = Decimal(str(balance.pending_balance))
        balance.pending_balance = max(ZERO, pending - amount)
        await session.flush()
        logger.info(
            f"↩️ PENDING_DEBITED: merchant={merchant_id} -{amount} {currency} "
            f"(pending {pending} -> {balance.pending_balance})"
        )
        return balance

    async def debit_available(
        self, session: AsyncSession, merchant_id: int, currency: str, amount: Decimal
    ) -> MerchantBalance:
        """Withdrawal: available -= amount, counted as withdrawn. Never overdraws."""
        amount = Decimal(str(amount))
        stmt = (
            select(MerchantBalance)
            .where(MerchantBalance.merchant_id == merchant_id, MerchantBalance.currency == currency)
            .with_for_update()
        )
        balance = (await session.execute(stmt)).scalar_one_or_none()
        available = Decimal(str(balance.available_balance)) if balance is not None else ZERO

        if balance is None or available < amount:
            logger.warning(
                f"🚫 INSUFFICIENT_AVAILABLE: merchant={merchant_id} available={available} "
                f"requested={amount} {currency}"
            )
            raise ValidationError(f"Insufficient balance. Available: {available}, requested: {amount}")

        balance.available_balance = available - amount
        balance.total_withdrawn = Decimal(str(balance.total_withdrawn)) + amount
        await session.flush()
        logger.info(
            f"🏧 AVAILABLE_DEBITED: merchant={merchant_id} -{amount} {currency} "
            f"(available {available} -> {balance.available_balance})"
        )
        return balance

    async def restore_available(
        self, session: AsyncSession, merchant_id: int, currency: str, amount: Decimal
    ) -> MerchantBalance:
        """Failed withdrawal: the debit is reversed and no longer counted as withdrawn"""
        amount = Decimal(str(amount))
        balance = await self._lock_or_create(session, merchant_id, currency)
        balance.available_balance = Decimal(str(balance.available_balance)) + amount
        balance.total_withdrawn = max(ZERO, Decimal(str(balance.total_withdrawn)) - amount)
        await session.flush()
        logger.info(
            f"♻️ AVAILABLE_RESTORED: merchant={merchant_id} +{amount} {currency} "
            f"(available={balance.available_balance})"
        )
        return balance

    async def get_balance(self, merchant_id: int, currency: str) -> Optional[MerchantBalance]:
        async with self.session_factory() as session:
            stmt = select(MerchantBalance).where(
                MerchantBalance.merchant_id == merchant_id,
                MerchantBalance.currency == currency,
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def get_balances(self, merchant_id: int) -> List[MerchantBalance]:
        async with self.session_factory() as session:
            stmt = (
                select(MerchantBalance)
                .where(MerchantBalance.merchant_id == merchant_id)
                .order_by(MerchantBalance.currency)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def get_balance_summary(self, merchant_id: int) -> Dict[str, Dict[str, Decimal]]:
        """{currency: {available, pending, total_earned, total_withdrawn}}"""
        summary = {}
        for balance in await self.get_balances(merchant_id):
            summary[balance.currency] = {
                "available": Decimal(str(balance.available_balance)),
                "pending": Decimal(str(balance.pending_balance)),
                "total_earned": Decimal(str(balance.total_earned)),
                "total_withdrawn": Decimal(str(balance.total_withdrawn)),
            }
        return summary

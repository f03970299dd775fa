"""
Payout Service
Merchant withdrawals of released (available) balance to an external wallet.

Creating a payout debits available balance, records the payout and enqueues a
SEND_PAYOUT command in one transaction. The payout worker hands the command to
a TransactionSigner; a failed send marks the payout failed and restores the
balance.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import Payout, PayoutStatus, User
from services.merchant_balance_service import MerchantBalanceService
from services.outbound_queue import OutboundQueue
from services.settlement_errors import (
    InvalidStateError, NotFoundError, SettlementError, ValidationError,
)
from services.transaction_signer import SendResult, TransactionSigner
from utils.chain_constants import to_currency
from utils.datetime_helpers import get_naive_utc_now
from utils.optimistic_locking import OptimisticLockManager
from utils.session_scope import session_scope

logger = logging.getLogger(__name__)

MERCHANT_PAYOUTS_QUEUE = "merchant-payouts"
PAYOUT_OPERATION = "SEND_PAYOUT"


class PayoutService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        balances: MerchantBalanceService,
        minimum_amount: Union[Decimal, str, None] = None,
        max_retries: Optional[int] = None,
        dedup_window_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.balances = balances
        self.minimum_amount = Decimal(
            str(Config.PAYOUT_MINIMUM_AMOUNT if minimum_amount is None else minimum_amount)
        )
        self.queue = OutboundQueue(
            session_factory,
            MERCHANT_PAYOUTS_QUEUE,
            max_retries=max_retries,
            dedup_window_seconds=dedup_window_seconds,
        )

    async def create_payout(
        self,
        merchant_id: int,
        amount: Union[Decimal, str, float],
        currency: str,
        wallet_address: str,
    ) -> Payout:
        """
        Withdraw `amount` of a merchant's available balance.

        Raises:
            ValidationError: bad amount/address/currency, below minimum, or insufficient balance
            NotFoundError: unknown merchant
            SettlementError: the payout command could not be queued (nothing is debited)
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Payout amount must be greater than zero")
        if not wallet_address or not wallet_address.strip():
            raise ValidationError("Wallet address is required")
        try:
            payout_currency = to_currency(currency).value
        except ValueError as e:
            raise ValidationError(f"Unsupported currency: {currency}") from e
        if amount < self.minimum_amount:
            raise ValidationError(f"Payout amount must be at least {self.minimum_amount} {payout_currency}")

        async with session_scope(self.session_factory) as db:
            if await db.get(User, merchant_id) is None:
                raise NotFoundError("User", merchant_id)

            await self.balances.debit_available(db, merchant_id, payout_currency, amount)

            payout = Payout(
                merchant_id=merchant_id,
                amount=amount,
                currency=payout_currency,
                wallet_address=wallet_address.strip(),
                status=PayoutStatus.PENDING.value,
                version=1,
                created_at=get_naive_utc_now(),
            )
            db.add(payout)
            await db.flush()

            message_id = await self.queue.enqueue(
                operation_type=PAYOUT_OPERATION,
                message_group=f"merchant-{merchant_id}",
                payload={
                    "payoutId": payout.id,
                    "merchantId": merchant_id,
                    "toAddress": payout.wallet_address,
                    "amount": str(amount),
                    "currency": payout_currency,
                },
                dedup_key=f"payout-{payout.id}",
                session=db,
            )
            if message_id is None:
                raise SettlementError(f"Payout for merchant {merchant_id} could not be queued")

            payout.message_id = message_id
            await db.flush()

        logger.info(
            f"🏧 PAYOUT_CREATED: payout={payout.id} merchant={merchant_id} {amount} {payout_currency} "
            f"-> {payout.wallet_address} (message {message_id})"
        )
        return payout

    async def process_payout(self, payout_id: int, signer: TransactionSigner) -> Payout:
        """Send a pending payout through the signer and record the outcome"""
        async with session_scope(self.session_factory) as db:
            payout = await self._require(db, payout_id)
            if payout.status != PayoutStatus.PENDING.value:
                raise InvalidStateError(f"Payout {payout_id} is not pending (status: {payout.status})")
            await OptimisticLockManager(db).guarded_update(
                Payout,
                payout_id,
                {"status": PayoutStatus.PROCESSING.value},
                expected_statuses=[PayoutStatus.PENDING.value],
                current_version=payout.version,
            )
            currency, to_address, amount = payout.currency, payout.wallet_address, Decimal(str(payout.amount))

        try:
            result = await signer.send_transaction(currency, to_address, amount)
        except Exception as e:
            logger.error(f"❌ PAYOUT_SIGNER_ERROR: payout={payout_id}: {e}", exc_info=True)
            result = SendResult(success=False, error=str(e))

        async with session_scope(self.session_factory) as db:
            lock = OptimisticLockManager(db)
            if result.success:
                await lock.guarded_update(
                    Payout,
                    payout_id,
                    {
                        "status": PayoutStatus.COMPLETED.value,
                        "transaction_hash": result.transaction_hash,
                        "processed_at": get_naive_utc_now(),
                    },
                    expected_statuses=[PayoutStatus.PROCESSING.value],
                )
                logger.info(f"✅ PAYOUT_SENT: payout={payout_id} tx={result.transaction_hash}")
            else:
                await self._fail(db, payout_id, result.error or "Transaction failed", [PayoutStatus.PROCESSING.value])
            return await self._require(db, payout_id)

    async def fail_payout(self, payout_id: int, reason: str) -> Payout:
        """Fail a payout that has not completed and restore the merchant's balance"""
        async with session_scope(self.session_factory) as db:
            payout = await self._require(db, payout_id)
            if payout.status in (PayoutStatus.COMPLETED.value, PayoutStatus.FAILED.value):
                raise InvalidStateError(f"Cannot fail a {payout.status} payout")
            await self._fail(
                db,
                payout_id,
                reason,
                [PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value],
                current_version=payout.version,
            )
            await db.refresh(payout)
            return payout

    async def process_queued_payouts(self, signer: TransactionSigner, limit: int = 10) -> Dict[str, int]:
        """Worker loop body: claim SEND_PAYOUT commands and drive them through the signer"""
        messages = await self.queue.claim_pending(limit)
        processed = 0
        failed = 0
        for message in messages:
            payout_id = message.payload.get("payoutId")
            try:
                await self.process_payout(payout_id, signer)
            except (NotFoundError, InvalidStateError) as e:
                # Already handled by an earlier delivery; never resent
                logger.warning(f"⚠️ PAYOUT_SKIPPED: message={message.id} payout={payout_id}: {e}")
            except Exception as e:
                failed += 1
                logger.error(f"❌ PAYOUT_PROCESSING_FAILED: message={message.id}: {e}", exc_info=True)
                await self.queue.nack(message.id, str(e))
                continue
            await self.queue.ack(message.id)
            processed += 1

        return {"processed": processed, "failed": failed}

    async def get_payout(self, payout_id: int) -> Optional[Payout]:
        async with self.session_factory() as db:
            return await db.get(Payout, payout_id)

    async def get_payouts_by_merchant(self, merchant_id: int) -> List[Payout]:
        return await self._list(Payout.merchant_id == merchant_id)

    async def get_payouts_by_status(self, status: PayoutStatus) -> List[Payout]:
        return await self._list(Payout.status == status.value)

    async def get_pending_payouts(self) -> List[Payout]:
        return await self.get_payouts_by_status(PayoutStatus.PENDING)

    async def _fail(
        self,
        db: AsyncSession,
        payout_id: int,
        reason: str,
        expected_statuses: List[str],
        current_version: Optional[int] = None,
    ) -> None:
        await OptimisticLockManager(db).guarded_update(
            Payout,
            payout_id,
            {
                "status": PayoutStatus.FAILED.value,
                "error_message": reason,
                "processed_at": get_naive_utc_now(),
            },
            expected_statuses=expected_statuses,
            current_version=current_version,
        )
        payout = await self._require(db, payout_id)
        await self.balances.restore_available(db, payout.merchant_id, payout.currency, Decimal(str(payout.amount)))
        logger.error(f"💀 PAYOUT_FAILED: payout={payout_id} {payout.amount} {payout.currency} restored: {reason}")

    async def _list(self, condition) -> List[Payout]:
        async with self.session_factory() as db:
            stmt = select(Payout).where(condition).order_by(Payout.id)
            return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def _require(db: AsyncSession, payout_id: int) -> Payout:
        payout = await db.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError("Payout", payout_id)
        return payout

"""
Shared fixtures for the settlement core test suite.

Key Components:
1. In-memory SQLite (aiosqlite + StaticPool) with the full schema per test
2. Service fixtures wired the same way main.py wires them
3. A small data factory for users, listings, orders and paid subscriptions
"""

import logging
from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from database import create_engine_for_url, create_session_factory, create_tables
from models import Listing, Order, OrderStatus, User
from services.audit_trail_service import AuditTrailService
from services.bot_operation_queue import BotOperationQueue
from services.dispute_service import DisputeService
from services.escrow_ledger import EscrowLedger
from services.merchant_balance_service import MerchantBalanceService
from services.order_service import OrderService
from services.payment_event_queue import PaymentEventQueue
from services.payment_processing_service import PaymentProcessingService
from services.payout_service import PayoutService
from services.refund_transaction_queue import RefundTransactionQueue
from services.subscription_service import SubscriptionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

SUBSCRIPTION_START = datetime(2026, 1, 1, 12, 0, 0)


@pytest_asyncio.fixture
async def engine():
    engine = create_engine_for_url("sqlite+aiosqlite://", poolclass=StaticPool)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def audit_trail(session_factory):
    return AuditTrailService(session_factory)


@pytest.fixture
def balances(session_factory):
    return MerchantBalanceService(session_factory)


@pytest.fixture
def escrow_ledger(session_factory, audit_trail, balances):
    return EscrowLedger(session_factory, audit_trail, balances, fee_percentage=Decimal("0.05"))


@pytest.fixture
def bot_queue(session_factory):
    return BotOperationQueue(session_factory, max_retries=3, dedup_window_seconds=300)


@pytest.fixture
def refund_queue(session_factory):
    return RefundTransactionQueue(session_factory, max_retries=3, dedup_window_seconds=300)


@pytest.fixture
def payment_events(session_factory):
    return PaymentEventQueue(session_factory, max_retries=3, dedup_window_seconds=300)


@pytest.fixture
def payout_service(session_factory, balances):
    return PayoutService(
        session_factory, balances, minimum_amount=Decimal("10"), max_retries=3, dedup_window_seconds=300
    )


@pytest.fixture
def subscription_service(session_factory, escrow_ledger, bot_queue):
    return SubscriptionService(session_factory, escrow_ledger, bot_queue)


@pytest.fixture
def order_service(session_factory):
    return OrderService(session_factory, monitor=None, expiry_hours=24)


@pytest.fixture
def payment_processing(session_factory, subscription_service, payment_events):
    return PaymentProcessingService(
        session_factory, subscription_service, monitor=None, payment_events=payment_events
    )


@pytest.fixture
def dispute_service(session_factory, escrow_ledger, refund_queue, bot_queue):
    return DisputeService(
        session_factory, escrow_ledger, refund_queue, bot_queue, window_days=7, issue_max_length=2000
    )


class SettlementDataFactory:
    """Inserts marketplace rows directly; services are exercised by the tests themselves"""

    def __init__(self, session_factory, subscription_service):
        self.session_factory = session_factory
        self.subscription_service = subscription_service
        self._next_telegram_id = 5_000_000_000

    async def create_user(self, username=None) -> User:
        self._next_telegram_id += 1
        async with self.session_factory() as db:
            user = User(telegram_user_id=self._next_telegram_id, username=username)
            db.add(user)
            await db.commit()
            return user

    async def create_listing(
        self,
        merchant: User,
        price=Decimal("100"),
        currency="USDT_BEP20",
        duration_days=30,
        channel_id="-1001234567890",
        is_active=True,
    ) -> Listing:
        async with self.session_factory() as db:
            listing = Listing(
                merchant_id=merchant.id,
                channel_id=channel_id,
                title="Signals VIP",
                price=Decimal(str(price)),
                currency=currency,
                duration_days=duration_days,
                is_active=is_active,
            )
            db.add(listing)
            await db.commit()
            return listing

    async def create_order(
        self,
        buyer: User,
        listing: Listing,
        status=OrderStatus.PENDING_PAYMENT,
        deposit_address="0xDepositAddress0001",
        amount=None,
    ) -> Order:
        async with self.session_factory() as db:
            order = Order(
                buyer_id=buyer.id,
                listing_id=listing.id,
                deposit_address=deposit_address,
                amount=Decimal(str(amount if amount is not None else listing.price)),
                currency=listing.currency,
                status=status.value,
                confirmations=0,
                expires_at=datetime(2030, 1, 1),
            )
            db.add(order)
            await db.commit()
            return order

    async def create_paid_subscription(self, price=Decimal("100"), duration_days=30, start=SUBSCRIPTION_START):
        """Merchant, buyer, listing, confirmed order and an active subscription with HELD escrow"""
        merchant = await self.create_user("merchant")
        buyer = await self.create_user("buyer")
        listing = await self.create_listing(merchant, price=price, duration_days=duration_days)
        order = await self.create_order(buyer, listing, status=OrderStatus.PAYMENT_CONFIRMED)
        subscription = await self.subscription_service.create_subscription_from_order(order.id, now=start)
        return {
            "merchant": merchant,
            "buyer": buyer,
            "listing": listing,
            "order": order,
            "subscription": subscription,
        }


@pytest.fixture
def factory(session_factory, subscription_service):
    return SettlementDataFactory(session_factory, subscription_service)

"""
Payment Processing Tests

DETECTED/CONFIRMED events drive orders to payment_confirmed and on to an
active subscription; mismatches and late payments are rejected.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from models import BlockchainNetwork, CryptoCurrency, OrderStatus, OutboundMessageStatus
from services.payment_processing_service import PaymentOutcome, PaymentProcessingService
from services.transaction_events import TransactionEvent, TransactionEventType

DEPOSIT = "0xAbCdEf0000000000000000000000000000001234"


def make_event(order, event_type=TransactionEventType.CONFIRMED, confirmations=12,
               amount=Decimal("100"), address=DEPOSIT, tx_hash="0xhash01"):
    return TransactionEvent(
        event_type=event_type,
        transaction_hash=tx_hash,
        address=address,
        order_id=order.id,
        currency=CryptoCurrency.USDT_BEP20,
        network=BlockchainNetwork.BNB_CHAIN,
        amount=amount,
        expected_amount=Decimal("100"),
        amount_valid=amount == Decimal("100"),
        confirmations=confirmations,
        required_confirmations=12,
        from_address="0xBuyerWallet",
        block_number=41_000_000,
    )


async def pending_order(factory, status=OrderStatus.PENDING_PAYMENT):
    merchant = await factory.create_user()
    buyer = await factory.create_user()
    listing = await factory.create_listing(merchant)
    return await factory.create_order(buyer, listing, status=status, deposit_address=DEPOSIT)


class TestVerifyPayment:

    def test_checks_address_amount_and_confirmations(self):
        order = SimpleNamespace(deposit_address=DEPOSIT, amount=Decimal("100"), currency="USDT_BEP20")

        ok = PaymentProcessingService.verify_payment(order, DEPOSIT.lower(), Decimal("99.95"), 12)
        assert ok.is_valid
        assert ok.required_confirmations == 12

        assert not PaymentProcessingService.verify_payment(order, "0xother", Decimal("100"), 12).address_match
        assert not PaymentProcessingService.verify_payment(order, DEPOSIT, Decimal("99.8"), 12).amount_match
        assert not PaymentProcessingService.verify_payment(order, DEPOSIT, Decimal("100"), 11).confirmations_sufficient

    def test_zero_expected_amount(self):
        order = SimpleNamespace(deposit_address=DEPOSIT, amount=Decimal("0"), currency="BTC")

        assert PaymentProcessingService.verify_payment(order, DEPOSIT, Decimal("0"), 3).is_valid
        assert not PaymentProcessingService.verify_payment(order, DEPOSIT, Decimal("0.1"), 3).amount_match


class TestPaymentEvents:

    @pytest.mark.asyncio
    async def test_detected_then_confirmed_activates_subscription(
        self, factory, payment_processing, order_service, subscription_service, escrow_ledger
    ):
        order = await pending_order(factory)

        outcome = await payment_processing.handle_event(
            make_event(order, TransactionEventType.DETECTED, confirmations=2)
        )
        assert outcome == PaymentOutcome.DETECTED
        detected = await order_service.get_order(order.id)
        assert detected.status == OrderStatus.PAYMENT_DETECTED.value
        assert detected.confirmations == 2

        outcome = await payment_processing.handle_event(make_event(order, confirmations=12))
        assert outcome == PaymentOutcome.CONFIRMED

        confirmed = await order_service.get_order(order.id)
        assert confirmed.status == OrderStatus.SUBSCRIPTION_ACTIVE.value
        assert confirmed.paid_at is not None
        assert confirmed.transaction_hash == "0xhash01"

        subscription = await subscription_service.get_subscription_by_order(order.id)
        assert subscription is not None
        assert (await escrow_ledger.get_escrow_by_order_id(order.id)).subscription_id == subscription.id

    @pytest.mark.asyncio
    async def test_duplicate_confirmation_is_skipped(self, factory, payment_processing):
        order = await pending_order(factory)
        await payment_processing.handle_event(make_event(order))

        assert await payment_processing.handle_event(make_event(order)) == PaymentOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_confirmed_amount_mismatch_is_rejected(self, factory, payment_processing, order_service):
        order = await pending_order(factory)

        outcome = await payment_processing.handle_event(make_event(order, amount=Decimal("90")))

        assert outcome == PaymentOutcome.REJECTED
        assert (await order_service.get_order(order.id)).status == OrderStatus.PENDING_PAYMENT.value

    @pytest.mark.asyncio
    async def test_detected_amount_mismatch_is_recorded(self, factory, payment_processing, order_service):
        order = await pending_order(factory)

        outcome = await payment_processing.handle_event(
            make_event(order, TransactionEventType.DETECTED, confirmations=1, amount=Decimal("90"))
        )

        assert outcome == PaymentOutcome.DETECTED
        assert (await order_service.get_order(order.id)).status == OrderStatus.PAYMENT_DETECTED.value

    @pytest.mark.asyncio
    async def test_wrong_address_is_rejected(self, factory, payment_processing):
        order = await pending_order(factory)

        outcome = await payment_processing.handle_event(
            make_event(order, TransactionEventType.DETECTED, confirmations=1, address="0xsomeoneelse")
        )

        assert outcome == PaymentOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_late_payment_on_expired_order(self, factory, payment_processing, order_service):
        order = await pending_order(factory, status=OrderStatus.EXPIRED)

        assert await payment_processing.handle_event(make_event(order)) == PaymentOutcome.REJECTED
        assert (await order_service.get_order(order.id)).status == OrderStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_queue_consumer_acks_processed_events(
        self, factory, payment_processing, payment_events, order_service
    ):
        order = await pending_order(factory)
        await payment_events.publish(make_event(order, TransactionEventType.DETECTED, confirmations=4))
        await payment_events.publish(make_event(order, confirmations=12))

        result = await payment_processing.process_pending_events()

        assert result == {"processed": 2, "failed": 0}
        assert (await order_service.get_order(order.id)).status == OrderStatus.SUBSCRIPTION_ACTIVE.value
        assert await payment_events.queue.count_by_status() == {OutboundMessageStatus.DELIVERED.value: 2}

    @pytest.mark.asyncio
    async def test_queue_consumer_nacks_failures(self, payment_processing, payment_events):
        # Order 4242 does not exist
        ghost = SimpleNamespace(id=4242)
        message_id = await payment_events.publish(make_event(ghost))

        result = await payment_processing.process_pending_events()

        assert result == {"processed": 0, "failed": 1}
        message = await payment_events.queue.get_message(message_id)
        assert message.status == OutboundMessageStatus.PENDING.value
        assert message.attempt_count == 1
        assert "Order not found" in message.last_error

    @pytest.mark.asyncio
    async def test_retry_unsubscribed_orders(self, factory, payment_processing, subscription_service):
        order = await pending_order(factory, status=OrderStatus.PAYMENT_CONFIRMED)

        assert await payment_processing.retry_unsubscribed_orders() == 1
        assert await subscription_service.get_subscription_by_order(order.id) is not None
        assert await payment_processing.retry_unsubscribed_orders() == 0

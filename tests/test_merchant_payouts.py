"""
Merchant Payout Tests

Withdrawals of released balance: available is debited and counted as
withdrawn, a SEND_PAYOUT command is queued with the payout record, and a
failed send restores the balance.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from models import OutboundMessageStatus, PayoutStatus
from services.settlement_errors import InvalidStateError, NotFoundError, SettlementError, ValidationError
from services.transaction_signer import SendResult, TransactionSigner

WALLET = "0xMerchantWallet"


class StubSigner(TransactionSigner):
    def __init__(self, result=None, error=None):
        self.result = result or SendResult(success=True, transaction_hash="0xpayouttx")
        self.error = error
        self.sent = []

    async def send_transaction(self, currency, to_address, amount):
        self.sent.append((currency, to_address, amount))
        if self.error is not None:
            raise self.error
        return self.result


async def released_merchant(factory, escrow_ledger):
    """Merchant with 95 USDT_BEP20 available"""
    data = await factory.create_paid_subscription()
    await escrow_ledger.release_escrow(data["subscription"].id)
    return data["merchant"]


async def balance_of(balances, merchant):
    return (await balances.get_balance_summary(merchant.id))["USDT_BEP20"]


@pytest.mark.asyncio
async def test_create_payout_debits_available_and_queues_command(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)

    payout = await payout_service.create_payout(merchant.id, "40", "USDT_BEP20", f" {WALLET} ")

    assert payout.status == PayoutStatus.PENDING.value
    assert payout.wallet_address == WALLET
    assert payout.message_id is not None

    balance = await balance_of(balances, merchant)
    assert balance["available"] == Decimal("55")
    assert balance["total_withdrawn"] == Decimal("40")
    assert balance["total_earned"] == Decimal("95")

    message = await payout_service.queue.get_message(payout.message_id)
    assert message.operation_type == "SEND_PAYOUT"
    assert message.message_group == f"merchant-{merchant.id}"
    assert message.dedup_key == f"payout-{payout.id}"
    assert message.payload["payoutId"] == payout.id
    assert message.payload["amount"] == "40"
    assert message.payload["toAddress"] == WALLET

    assert [p.id for p in await payout_service.get_pending_payouts()] == [payout.id]
    assert [p.id for p in await payout_service.get_payouts_by_merchant(merchant.id)] == [payout.id]


@pytest.mark.asyncio
async def test_create_payout_validation(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)
    no_balance = await factory.create_user("new-merchant")

    for amount, currency, wallet in [
        ("0", "USDT_BEP20", WALLET),
        ("5", "USDT_BEP20", WALLET),
        ("20", "USDT_BEP20", "   "),
        ("20", "DOGE", WALLET),
        ("95.01", "USDT_BEP20", WALLET),
    ]:
        with pytest.raises(ValidationError):
            await payout_service.create_payout(merchant.id, amount, currency, wallet)

    with pytest.raises(ValidationError):
        await payout_service.create_payout(no_balance.id, "20", "USDT_BEP20", WALLET)
    with pytest.raises(NotFoundError):
        await payout_service.create_payout(999999, "20", "USDT_BEP20", WALLET)

    balance = await balance_of(balances, merchant)
    assert balance["available"] == Decimal("95")
    assert balance["total_withdrawn"] == 0
    assert await payout_service.get_payouts_by_merchant(merchant.id) == []
    assert await payout_service.queue.count_by_status() == {}


@pytest.mark.asyncio
async def test_whole_available_balance_can_be_withdrawn(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)

    await payout_service.create_payout(merchant.id, "95", "USDT_BEP20", WALLET)

    balance = await balance_of(balances, merchant)
    assert balance["available"] == 0
    assert balance["total_withdrawn"] == Decimal("95")
    with pytest.raises(ValidationError):
        await payout_service.create_payout(merchant.id, "10", "USDT_BEP20", WALLET)


@pytest.mark.asyncio
async def test_failed_publish_rolls_back_debit(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)
    payout_service.queue.enqueue = AsyncMock(return_value=None)

    with pytest.raises(SettlementError):
        await payout_service.create_payout(merchant.id, "40", "USDT_BEP20", WALLET)

    balance = await balance_of(balances, merchant)
    assert balance["available"] == Decimal("95")
    assert balance["total_withdrawn"] == 0
    assert await payout_service.get_payouts_by_merchant(merchant.id) == []


@pytest.mark.asyncio
async def test_queued_payout_is_sent_and_acknowledged(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)
    payout = await payout_service.create_payout(merchant.id, "40", "USDT_BEP20", WALLET)
    signer = StubSigner()

    assert await payout_service.process_queued_payouts(signer) == {"processed": 1, "failed": 0}

    assert signer.sent == [("USDT_BEP20", WALLET, Decimal("40"))]
    completed = await payout_service.get_payout(payout.id)
    assert completed.status == PayoutStatus.COMPLETED.value
    assert completed.transaction_hash == "0xpayouttx"
    assert completed.processed_at is not None
    message = await payout_service.queue.get_message(payout.message_id)
    assert message.status == OutboundMessageStatus.DELIVERED.value

    balance = await balance_of(balances, merchant)
    assert balance["available"] == Decimal("55")
    assert balance["total_withdrawn"] == Decimal("40")

    with pytest.raises(InvalidStateError):
        await payout_service.process_payout(payout.id, signer)
    assert len(signer.sent) == 1


@pytest.mark.asyncio
async def test_redelivered_command_is_not_sent_twice(factory, escrow_ledger, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)
    payout = await payout_service.create_payout(merchant.id, "40", "USDT_BEP20", WALLET)
    signer = StubSigner()

    await payout_service.process_payout(payout.id, signer)

    assert await payout_service.process_queued_payouts(signer) == {"processed": 1, "failed": 0}
    assert len(signer.sent) == 1
    message = await payout_service.queue.get_message(payout.message_id)
    assert message.status == OutboundMessageStatus.DELIVERED.value


@pytest.mark.asyncio
async def test_failed_send_restores_balance(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)
    rejected = await payout_service.create_payout(merchant.id, "40", "USDT_BEP20", WALLET)
    crashed = await payout_service.create_payout(merchant.id, "30", "USDT_BEP20", WALLET)

    result = await payout_service.process_payout(
        rejected.id, StubSigner(SendResult(success=False, error="insufficient gas"))
    )
    assert result.status == PayoutStatus.FAILED.value
    assert result.error_message == "insufficient gas"

    result = await payout_service.process_payout(crashed.id, StubSigner(error=RuntimeError("rpc timeout")))
    assert result.status == PayoutStatus.FAILED.value
    assert result.error_message == "rpc timeout"

    balance = await balance_of(balances, merchant)
    assert balance["available"] == Decimal("95")
    assert balance["total_withdrawn"] == 0
    assert [p.id for p in await payout_service.get_payouts_by_status(PayoutStatus.FAILED)] == [
        rejected.id,
        crashed.id,
    ]


@pytest.mark.asyncio
async def test_fail_payout(factory, escrow_ledger, balances, payout_service):
    merchant = await released_merchant(factory, escrow_ledger)
    payout = await payout_service.create_payout(merchant.id, "40", "USDT_BEP20", WALLET)

    failed = await payout_service.fail_payout(payout.id, "wallet flagged")

    assert failed.status == PayoutStatus.FAILED.value
    assert failed.error_message == "wallet flagged"
    assert failed.version == 2
    balance = await balance_of(balances, merchant)
    assert balance["available"] == Decimal("95")
    assert balance["total_withdrawn"] == 0

    with pytest.raises(InvalidStateError):
        await payout_service.fail_payout(payout.id, "again")
    with pytest.raises(InvalidStateError):
        await payout_service.process_payout(payout.id, StubSigner())
    with pytest.raises(NotFoundError):
        await payout_service.fail_payout(999999, "missing")

"""
Outbound Queue Tests

Bot operation and refund transaction producers on top of the shared
database-backed queue: deduplication, publish failures, per-group ordering,
retry budget and dead-lettering, and redelivery of claimed messages
that were never acknowledged.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from models import OutboundMessageStatus, RefundTransactionStatus, RemovalReason
from services.outbound_queue import OutboundQueue
from services.transaction_signer import SendResult, TransactionSigner
from utils.datetime_helpers import get_naive_utc_now


def broken_session_factory():
    raise RuntimeError("database unavailable")


class TestOutboundQueue:

    @pytest.mark.asyncio
    async def test_duplicate_within_window_returns_existing_id(self, session_factory):
        queue = OutboundQueue(session_factory, "test-queue", max_retries=3, dedup_window_seconds=300)

        first = await queue.enqueue("PING", "group-a", {"n": 1}, dedup_key="ping-1")
        duplicate = await queue.enqueue("PING", "group-a", {"n": 2}, dedup_key="ping-1")
        other = await queue.enqueue("PING", "group-a", {"n": 3}, dedup_key="ping-2")

        assert first is not None
        assert duplicate == first
        assert other != first
        assert await queue.count_by_status() == {OutboundMessageStatus.PENDING.value: 2}

    @pytest.mark.asyncio
    async def test_publish_failure_returns_none(self):
        queue = OutboundQueue(broken_session_factory, "test-queue")

        assert await queue.enqueue("PING", "group-a", {"n": 1}, dedup_key="ping-1") is None

    @pytest.mark.asyncio
    async def test_group_is_consumed_in_order(self, session_factory):
        queue = OutboundQueue(session_factory, "test-queue")
        first = await queue.enqueue("STEP", "order-1", {"step": 1})
        second = await queue.enqueue("STEP", "order-1", {"step": 2})
        other_group = await queue.enqueue("STEP", "order-2", {"step": 1})

        claimed = await queue.claim_pending(limit=1)
        assert [m.id for m in claimed] == [first]

        # order-1 is busy, only the other group is available
        assert [m.id for m in await queue.claim_pending(limit=10)] == [other_group]

        await queue.ack(first)
        assert [m.id for m in await queue.claim_pending(limit=10)] == [second]

        delivered = await queue.get_message(first)
        assert delivered.status == OutboundMessageStatus.DELIVERED.value
        assert delivered.delivered_at is not None

    @pytest.mark.asyncio
    async def test_nack_dead_letters_after_retry_budget(self, session_factory):
        queue = OutboundQueue(session_factory, "test-queue", max_retries=2)
        message_id = await queue.enqueue("SEND", "g", {"x": 1})

        await queue.claim_pending()
        assert await queue.nack(message_id, "timeout") == OutboundMessageStatus.PENDING.value

        await queue.claim_pending()
        assert await queue.nack(message_id, "timeout again") == OutboundMessageStatus.DEAD_LETTER.value

        dead = await queue.get_dead_letters()
        assert [m.id for m in dead] == [message_id]
        assert dead[0].attempt_count == 2
        assert dead[0].last_error == "timeout again"
        assert await queue.claim_pending() == []

    @pytest.mark.asyncio
    async def test_dead_letter_does_not_block_dedup_key(self, session_factory):
        queue = OutboundQueue(session_factory, "test-queue", max_retries=1)
        first = await queue.enqueue("SEND", "g", {"x": 1}, dedup_key="send-1")
        await queue.claim_pending()
        await queue.nack(first, "boom")

        second = await queue.enqueue("SEND", "g", {"x": 1}, dedup_key="send-1")

        assert second is not None
        assert second != first

    @pytest.mark.asyncio
    async def test_unacknowledged_message_is_redelivered_after_visibility_timeout(self, session_factory):
        queue = OutboundQueue(session_factory, "test-queue", max_retries=3, visibility_timeout_seconds=300)
        first = await queue.enqueue("INVITE_USER", "INVITE_USER", {"n": 1}, dedup_key="invite-1")
        second = await queue.enqueue("INVITE_USER", "INVITE_USER", {"n": 2}, dedup_key="invite-2")

        # Consumer claims and then disappears without ack or nack
        assert [m.id for m in await queue.claim_pending(limit=1)] == [first]
        assert await queue.claim_pending(limit=10) == []
        assert await queue.enqueue("INVITE_USER", "INVITE_USER", {"n": 1}, dedup_key="invite-1") == first

        later = get_naive_utc_now() + timedelta(seconds=301)
        redelivered = await queue.claim_pending(limit=1, now=later)

        assert [m.id for m in redelivered] == [first]
        assert redelivered[0].attempt_count == 2
        assert redelivered[0].claimed_at == later
        assert redelivered[0].last_error == "not acknowledged within 300s"

        await queue.ack(first)
        assert [m.id for m in await queue.claim_pending(limit=10, now=later)] == [second]

    @pytest.mark.asyncio
    async def test_stale_sweep_dead_letters_exhausted_messages(self, session_factory):
        queue = OutboundQueue(session_factory, "test-queue", max_retries=2, visibility_timeout_seconds=60)
        message_id = await queue.enqueue("REMOVE_USER", "REMOVE_USER", {"n": 1})
        start = get_naive_utc_now()

        await queue.claim_pending(now=start)
        assert await queue.requeue_stale_in_flight(now=start + timedelta(seconds=30)) == {
            "requeued": 0,
            "dead_lettered": 0,
        }
        assert await queue.requeue_stale_in_flight(now=start + timedelta(seconds=61)) == {
            "requeued": 1,
            "dead_lettered": 0,
        }
        message = await queue.get_message(message_id)
        assert message.status == OutboundMessageStatus.PENDING.value
        assert message.claimed_at is None

        await queue.claim_pending(now=start + timedelta(seconds=61))
        assert await queue.requeue_stale_in_flight(now=start + timedelta(seconds=200)) == {
            "requeued": 0,
            "dead_lettered": 1,
        }

        dead = await queue.get_dead_letters()
        assert [m.id for m in dead] == [message_id]
        assert dead[0].attempt_count == 2
        assert await queue.claim_pending(now=start + timedelta(seconds=300)) == []


class TestBotOperationQueue:

    @pytest.mark.asyncio
    async def test_operations_and_dedup_keys(self, bot_queue):
        invite = await bot_queue.enqueue_invite_user(7, 5000000001, "-100777")
        remove = await bot_queue.enqueue_remove_user(7, 5000000001, "-100777", RemovalReason.EXPIRY)
        verify = await bot_queue.enqueue_verify_permissions("-100777")

        assert len({invite, remove, verify}) == 3
        assert await bot_queue.enqueue_invite_user(7, 5000000001, "-100777") == invite
        assert await bot_queue.enqueue_remove_user(7, 5000000001, "-100777", "expiry") == remove

        refund_removal = await bot_queue.enqueue_remove_user(7, 5000000001, "-100777", RemovalReason.REFUND)
        assert refund_removal not in (invite, remove, verify)

        message = await bot_queue.queue.get_message(remove)
        assert message.message_group == "REMOVE_USER"
        assert message.dedup_key == "remove-7-expiry"
        assert message.payload == {
            "operationType": "REMOVE_USER",
            "subscriptionId": 7,
            "userId": 5000000001,
            "channelId": "-100777",
            "reason": "expiry",
        }

        verify_message = await bot_queue.queue.get_message(verify)
        assert verify_message.dedup_key == "verify--100777"
        assert verify_message.payload == {"operationType": "VERIFY_PERMISSIONS", "channelId": "-100777"}

    @pytest.mark.asyncio
    async def test_unknown_removal_reason_is_rejected(self, bot_queue):
        with pytest.raises(ValueError):
            await bot_queue.enqueue_remove_user(7, 1, "-100", "banned")


class TestRefundTransactionQueue:

    @pytest.mark.asyncio
    async def test_invalid_requests_are_not_queued(self, refund_queue):
        assert await refund_queue.queue_refund(1, 1, 1, "", Decimal("5"), "BTC") is None
        assert await refund_queue.queue_refund(1, 1, 1, "   ", Decimal("5"), "BTC") is None
        assert await refund_queue.queue_refund(1, 1, 1, "bc1qbuyer", Decimal("0"), "BTC") is None
        assert await refund_queue.queue_refund(1, 1, 1, "bc1qbuyer", Decimal("-2"), "BTC") is None
        assert await refund_queue.get_refunds_by_buyer(1) == []

    @pytest.mark.asyncio
    async def test_queue_refund_persists_record_and_command(self, factory, refund_queue):
        data = await factory.create_paid_subscription()
        sub, order, buyer = data["subscription"], data["order"], data["buyer"]

        message_id = await refund_queue.queue_refund(
            sub.id, order.id, buyer.id, order.deposit_address, Decimal("12.5"), "USDT_BEP20", reason="dispute-1"
        )

        assert message_id is not None
        refunds = await refund_queue.get_refunds_by_order(order.id)
        assert len(refunds) == 1
        refund = refunds[0]
        assert refund.status == RefundTransactionStatus.QUEUED.value
        assert refund.message_id == message_id
        assert (await refund_queue.get_refund(refund.id)).order_id == order.id
        assert await refund_queue.get_refund(999999) is None
        assert Decimal(str(refund.amount)) == Decimal("12.5")

        message = await refund_queue.queue.get_message(message_id)
        assert message.operation_type == "SEND_REFUND"
        assert message.dedup_key == f"refund-{refund.id}"
        assert message.payload["refundId"] == refund.id
        assert message.payload["amount"] == "12.5"
        assert message.payload["toAddress"] == order.deposit_address

    @pytest.mark.asyncio
    async def test_failed_publish_leaves_no_refund_record(self, factory, refund_queue):
        data = await factory.create_paid_subscription()
        refund_queue.queue.enqueue = AsyncMock(return_value=None)

        message_id = await refund_queue.queue_refund(
            data["subscription"].id, data["order"].id, data["buyer"].id, "0xbuyer", Decimal("1"), "USDT_BEP20"
        )

        assert message_id is None
        assert await refund_queue.get_refunds_by_subscription(data["subscription"].id) == []

    @pytest.mark.asyncio
    async def test_send_results(self, factory, refund_queue):
        data = await factory.create_paid_subscription()
        args = (data["subscription"].id, data["order"].id, data["buyer"].id, "0xbuyer")
        await refund_queue.queue_refund(*args, Decimal("3"), "USDT_BEP20")
        await refund_queue.queue_refund(*args, Decimal("4"), "USDT_BEP20")
        retried, succeeded = await refund_queue.get_refunds_by_subscription(data["subscription"].id)

        # Retryable failure under budget goes back to queued
        await refund_queue.mark_processing(retried.id)
        refund = await refund_queue.record_send_result(
            retried.id, SendResult(success=False, error="nonce too low", retryable=True)
        )
        assert refund.status == RefundTransactionStatus.QUEUED.value
        assert refund.attempt_count == 1

        # Budget spent: failed for manual intervention
        await refund_queue.mark_processing(retried.id)
        await refund_queue.mark_processing(retried.id)
        refund = await refund_queue.record_send_result(
            retried.id, SendResult(success=False, error="nonce too low", retryable=True)
        )
        assert refund.status == RefundTransactionStatus.FAILED.value
        assert refund.processed_at is not None

        processing = await refund_queue.mark_processing(succeeded.id)
        assert processing.status == RefundTransactionStatus.PROCESSING.value
        refund = await refund_queue.record_send_result(
            succeeded.id, SendResult(success=True, transaction_hash="0xrefundtx")
        )
        assert refund.status == RefundTransactionStatus.COMPLETED.value
        assert refund.transaction_hash == "0xrefundtx"

        assert [r.id for r in await refund_queue.get_refunds_by_status(RefundTransactionStatus.FAILED)] == [retried.id]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_fails_immediately(self, factory, refund_queue):
        data = await factory.create_paid_subscription()
        await refund_queue.queue_refund(
            data["subscription"].id, data["order"].id, data["buyer"].id, "0xbuyer", Decimal("3"), "USDT_BEP20"
        )
        (refund,) = await refund_queue.get_refunds_by_subscription(data["subscription"].id)
        await refund_queue.mark_processing(refund.id)

        result = await refund_queue.record_send_result(
            refund.id, SendResult(success=False, error="invalid address", retryable=False)
        )

        assert result.status == RefundTransactionStatus.FAILED.value
        assert result.error_message == "invalid address"

    @pytest.mark.asyncio
    async def test_signer_result_completes_refund(self, factory, refund_queue):
        class StubSigner(TransactionSigner):
            def __init__(self):
                self.sent = []

            async def send_transaction(self, currency, to_address, amount):
                self.sent.append((currency, to_address, amount))
                return SendResult(success=True, transaction_hash=f"0xpaid{len(self.sent)}")

        data = await factory.create_paid_subscription()
        await refund_queue.queue_refund(
            data["subscription"].id, data["order"].id, data["buyer"].id, "0xbuyer", Decimal("7.25"), "USDT_BEP20"
        )
        (refund,) = await refund_queue.get_refunds_by_subscription(data["subscription"].id)
        signer = StubSigner()

        refund = await refund_queue.mark_processing(refund.id)
        result = await signer.send_transaction(refund.currency, refund.to_address, Decimal(str(refund.amount)))
        completed = await refund_queue.record_send_result(refund.id, result)

        assert signer.sent == [("USDT_BEP20", "0xbuyer", Decimal("7.25"))]
        assert completed.status == RefundTransactionStatus.COMPLETED.value
        assert completed.transaction_hash == "0xpaid1"

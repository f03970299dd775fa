"""
Dispute Workflow Tests

Covers dispute creation rules (issue text, ownership, payment state, one active
dispute per order, 7-day window after expiry), admin status transitions, and
resolution with and without refund.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import (
    DisputeStatus, EscrowStatus, OrderStatus, RefundTransactionStatus, SubscriptionStatus,
)
from services.settlement_errors import (
    DisputeWindowError, InvalidStateError, NotFoundError, OwnershipError, ValidationError,
)
from utils.dispute_state_validator import DisputeStateValidator, StateTransitionError


class TestDisputeStateValidator:

    def test_valid_transitions(self):
        assert DisputeStateValidator.validate_transition(DisputeStatus.OPEN, DisputeStatus.IN_PROGRESS)[0]
        assert DisputeStateValidator.validate_transition("open", "resolved")[0]
        assert DisputeStateValidator.validate_transition("in_progress", "closed")[0]

    def test_terminal_states_cannot_move(self):
        for terminal in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED):
            for target in DisputeStatus:
                is_valid, reason = DisputeStateValidator.validate_transition(terminal, target)
                assert not is_valid
                assert "terminal" in reason

    def test_same_state_is_invalid(self):
        assert not DisputeStateValidator.validate_transition("open", "open")[0]
        assert not DisputeStateValidator.validate_transition("in_progress", "in_progress")[0]

    def test_backwards_transition_raises(self):
        with pytest.raises(StateTransitionError):
            DisputeStateValidator.assert_transition(DisputeStatus.IN_PROGRESS, DisputeStatus.OPEN, 7)

    def test_state_transition_error_is_invalid_state(self):
        assert issubclass(StateTransitionError, InvalidStateError)


class TestCreateDispute:

    @pytest.mark.asyncio
    async def test_buyer_can_dispute_active_subscription(self, factory, dispute_service):
        data = await factory.create_paid_subscription()

        dispute = await dispute_service.create_dispute(
            data["order"].id, data["buyer"].id, "  Channel has not posted in a week  "
        )

        assert dispute.status == DisputeStatus.OPEN.value
        assert dispute.issue == "Channel has not posted in a week"
        assert dispute.buyer_id == data["buyer"].id
        assert await dispute_service.count_open_disputes() == 1

    @pytest.mark.asyncio
    async def test_issue_text_is_required_and_bounded(self, factory, dispute_service):
        data = await factory.create_paid_subscription()

        with pytest.raises(ValidationError):
            await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "   ")
        with pytest.raises(ValidationError):
            await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "x" * 2001)

        dispute = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "x" * 2000)
        assert len(dispute.issue) == 2000

    @pytest.mark.asyncio
    async def test_unknown_order(self, factory, dispute_service):
        buyer = await factory.create_user()

        with pytest.raises(NotFoundError):
            await dispute_service.create_dispute(31337, buyer.id, "Never got access")

    @pytest.mark.asyncio
    async def test_only_the_buyer_can_dispute(self, factory, dispute_service):
        data = await factory.create_paid_subscription()
        stranger = await factory.create_user("stranger")

        with pytest.raises(OwnershipError):
            await dispute_service.create_dispute(data["order"].id, stranger.id, "Not my order")

    @pytest.mark.asyncio
    async def test_unpaid_order_cannot_be_disputed(self, factory, dispute_service):
        merchant = await factory.create_user()
        buyer = await factory.create_user()
        listing = await factory.create_listing(merchant)
        order = await factory.create_order(buyer, listing)

        with pytest.raises(ValidationError):
            await dispute_service.create_dispute(order.id, buyer.id, "Payment stuck")

    @pytest.mark.asyncio
    async def test_one_active_dispute_per_order(self, factory, dispute_service):
        data = await factory.create_paid_subscription()
        first = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "First complaint")

        with pytest.raises(ValidationError):
            await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Second complaint")

        await dispute_service.update_dispute_status(first.id, DisputeStatus.CLOSED)
        second = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Second complaint")
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_window_after_expiry(self, factory, dispute_service, subscription_service):
        data = await factory.create_paid_subscription()
        expiry = data["subscription"].expiry_date
        await subscription_service.expire_subscriptions(now=expiry + timedelta(hours=1))

        assert await dispute_service.validate_dispute_time_window(
            data["order"].id, now=expiry + timedelta(days=7, hours=12)
        )
        with pytest.raises(DisputeWindowError):
            await dispute_service.create_dispute(
                data["order"].id, data["buyer"].id, "Too late", now=expiry + timedelta(days=8, hours=1)
            )

        dispute = await dispute_service.create_dispute(
            data["order"].id, data["buyer"].id, "Content missing last week", now=expiry + timedelta(days=6)
        )
        assert dispute.status == DisputeStatus.OPEN.value


class TestDisputeStatusUpdates:

    @pytest.mark.asyncio
    async def test_admin_takes_dispute_in_progress(self, factory, dispute_service):
        data = await factory.create_paid_subscription()
        admin = await factory.create_user("admin")
        dispute = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Wrong channel")

        updated = await dispute_service.update_dispute_status(dispute.id, "in_progress", admin_id=admin.id)

        assert updated.status == DisputeStatus.IN_PROGRESS.value
        assert updated.admin_id == admin.id
        assert updated.resolved_at is None
        assert [d.id for d in await dispute_service.get_disputes_needing_attention()] == [dispute.id]
        assert [d.id for d in await dispute_service.get_disputes_by_admin(admin.id)] == [dispute.id]
        assert await dispute_service.count_open_disputes() == 0

        with pytest.raises(StateTransitionError):
            await dispute_service.update_dispute_status(dispute.id, DisputeStatus.OPEN)

    @pytest.mark.asyncio
    async def test_closed_dispute_cannot_be_resolved(self, factory, dispute_service):
        data = await factory.create_paid_subscription()
        admin = await factory.create_user("admin")
        dispute = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Spam")
        closed = await dispute_service.update_dispute_status(dispute.id, DisputeStatus.CLOSED)
        assert closed.resolved_at is not None

        with pytest.raises(StateTransitionError):
            await dispute_service.resolve_dispute(dispute.id, "Refund", admin.id, True)

    @pytest.mark.asyncio
    async def test_unknown_dispute(self, dispute_service):
        with pytest.raises(NotFoundError):
            await dispute_service.update_dispute_status(404, DisputeStatus.CLOSED)


class TestDisputeResolution:

    @pytest.mark.asyncio
    async def test_approved_refund_end_to_end(
        self, factory, dispute_service, escrow_ledger, balances, refund_queue, bot_queue,
        subscription_service, order_service,
    ):
        data = await factory.create_paid_subscription(price=Decimal("100"), duration_days=30)
        admin = await factory.create_user("admin")
        day_ten = data["subscription"].start_date + timedelta(days=10)

        dispute = await dispute_service.create_dispute(
            data["order"].id, data["buyer"].id, "Merchant stopped posting", now=day_ten
        )
        result = await dispute_service.resolve_dispute(
            dispute.id, "Partial refund for unused days", admin.id, True, now=day_ten
        )

        assert result.refund_approved is True
        assert abs(result.refund_amount - Decimal("66.67")) < Decimal("0.01")
        assert result.refund_message_id is not None
        assert result.removal_message_id is not None
        assert result.dispute.status == DisputeStatus.RESOLVED.value
        assert result.dispute.admin_id == admin.id
        assert result.dispute.resolved_at is not None

        escrow = await escrow_ledger.get_escrow_by_order_id(data["order"].id)
        assert escrow.status == EscrowStatus.REFUNDED.value
        assert abs(Decimal(str(escrow.refund_amount)) - Decimal("66.67")) < Decimal("0.01")

        subscription = await subscription_service.get_subscription(data["subscription"].id)
        assert subscription.status == SubscriptionStatus.REFUNDED.value
        order = await order_service.get_order(data["order"].id)
        assert order.status == OrderStatus.REFUNDED.value

        balance = await balances.get_balance(data["merchant"].id, "USDT_BEP20")
        assert Decimal(str(balance.pending_balance)) == 0

        refunds = await refund_queue.get_refunds_by_subscription(data["subscription"].id)
        assert len(refunds) == 1
        assert refunds[0].status == RefundTransactionStatus.QUEUED.value
        assert refunds[0].to_address == data["order"].deposit_address
        assert refunds[0].message_id == result.refund_message_id

        removal = await bot_queue.queue.get_message(result.removal_message_id)
        assert removal.operation_type == "REMOVE_USER"
        assert removal.payload["reason"] == "refund"
        assert removal.payload["userId"] == data["buyer"].telegram_user_id
        assert removal.payload["channelId"] == data["listing"].channel_id

        # Refunded order is no longer disputable
        with pytest.raises(ValidationError):
            await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Again", now=day_ten)

    @pytest.mark.asyncio
    async def test_denied_refund_leaves_escrow_held(
        self, factory, dispute_service, escrow_ledger, refund_queue, subscription_service
    ):
        data = await factory.create_paid_subscription()
        admin = await factory.create_user("admin")
        dispute = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Too few signals")

        result = await dispute_service.resolve_dispute(dispute.id, "Service delivered as listed", admin.id, False)

        assert result.refund_approved is False
        assert result.refund_amount is None
        assert result.dispute.status == DisputeStatus.RESOLVED.value
        assert result.dispute.refund_approved is False

        escrow = await escrow_ledger.get_escrow_by_order_id(data["order"].id)
        assert escrow.status == EscrowStatus.HELD.value
        assert await refund_queue.get_refunds_by_order(data["order"].id) == []
        subscription = await subscription_service.get_subscription(data["subscription"].id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_fully_used_subscription_queues_no_payout(self, factory, dispute_service, refund_queue):
        data = await factory.create_paid_subscription()
        admin = await factory.create_user("admin")
        start = data["subscription"].start_date
        dispute = await dispute_service.create_dispute(
            data["order"].id, data["buyer"].id, "Access ended early", now=start + timedelta(days=29)
        )

        result = await dispute_service.resolve_dispute(
            dispute.id, "Approved", admin.id, True, now=start + timedelta(days=31)
        )

        assert result.refund_amount == 0
        assert result.refund_message_id is None
        assert result.removal_message_id is not None
        assert await refund_queue.get_refunds_by_order(data["order"].id) == []

    @pytest.mark.asyncio
    async def test_refund_after_release_rolls_back_resolution(
        self, factory, dispute_service, subscription_service
    ):
        data = await factory.create_paid_subscription()
        admin = await factory.create_user("admin")
        expiry = data["subscription"].expiry_date
        await subscription_service.expire_subscriptions(now=expiry + timedelta(minutes=5))
        dispute = await dispute_service.create_dispute(
            data["order"].id, data["buyer"].id, "Paid for nothing", now=expiry + timedelta(days=2)
        )

        with pytest.raises(InvalidStateError):
            await dispute_service.resolve_dispute(
                dispute.id, "Refund", admin.id, True, now=expiry + timedelta(days=2)
            )

        reloaded = await dispute_service.get_dispute(dispute.id)
        assert reloaded.status == DisputeStatus.OPEN.value
        assert reloaded.resolution is None

    @pytest.mark.asyncio
    async def test_resolution_text_required(self, factory, dispute_service):
        data = await factory.create_paid_subscription()
        admin = await factory.create_user("admin")
        dispute = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Issue")

        with pytest.raises(ValidationError):
            await dispute_service.resolve_dispute(dispute.id, "  ", admin.id, False)

    @pytest.mark.asyncio
    async def test_read_accessors(self, factory, dispute_service):
        data = await factory.create_paid_subscription()
        dispute = await dispute_service.create_dispute(data["order"].id, data["buyer"].id, "Issue")

        assert [d.id for d in await dispute_service.get_disputes_by_buyer(data["buyer"].id)] == [dispute.id]
        assert [d.id for d in await dispute_service.get_disputes_by_order(data["order"].id)] == [dispute.id]
        assert [d.id for d in await dispute_service.get_open_disputes()] == [dispute.id]
        assert await dispute_service.get_disputes_by_status(DisputeStatus.RESOLVED) == []

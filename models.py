"""
ChannelPass Settlement Core - Database Schema
=============================================

Schema for the payment settlement and fund-custody subsystem of a marketplace
selling time-limited access to private Telegram channels:
- Orders paid to per-order deposit addresses
- Subscriptions granting channel access for a fixed number of days
- Escrow entries holding payments until release or refund
- Merchant balances (pending/available) per currency
- Buyer disputes and their resolution
- Durable outbound command queues (bot operations, refund payouts, payment events)
- Append-only audit trail of escrow transitions
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Crypto amounts need 18 decimal places (BEP20 token precision)
MONEY = Numeric(38, 18)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class CryptoCurrency(Enum):
    """Accepted payment currencies"""
    BNB = "BNB"
    USDT_BEP20 = "USDT_BEP20"
    USDC_BEP20 = "USDC_BEP20"
    BTC = "BTC"
    USDT_TRC20 = "USDT_TRC20"


class BlockchainNetwork(Enum):
    """Networks the monitor keeps connections to"""
    BNB_CHAIN = "bnb_chain"
    BITCOIN = "bitcoin"
    TRON = "tron"


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_DETECTED = "payment_detected"
    PAYMENT_CONFIRMED = "payment_confirmed"
    SUBSCRIPTION_ACTIVE = "subscription_active"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class SubscriptionStatus(Enum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class EscrowStatus(Enum):
    """Escrow entry states - RELEASED and REFUNDED are terminal"""
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class DisputeStatus(Enum):
    """Dispute states - RESOLVED and CLOSED are terminal"""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TransactionStatus(Enum):
    DETECTED = "detected"
    CONFIRMED = "confirmed"


class RefundTransactionStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(Enum):
    """Merchant withdrawal lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BotOperationType(Enum):
    """Commands consumed by the channel membership bot"""
    INVITE_USER = "INVITE_USER"
    REMOVE_USER = "REMOVE_USER"
    VERIFY_PERMISSIONS = "VERIFY_PERMISSIONS"


class RemovalReason(Enum):
    EXPIRY = "expiry"
    REFUND = "refund"
    CANCELLATION = "cancellation"


class OutboundMessageStatus(Enum):
    """Delivery states of a durable outbound queue message"""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DEAD_LETTER = "dead_letter"


class EscrowAuditAction(Enum):
    CREATED = "created"
    RELEASED = "released"
    REFUNDED = "refunded"


# ============================================================================
# MARKETPLACE
# ============================================================================

class User(Base):
    """Marketplace user (buyer or merchant) identified by Telegram account"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_user_id = Column(BigInteger, unique=True, nullable=False, index=True)
    username = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)


class Listing(Base):
    """Channel access product sold by a merchant"""
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    channel_id = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    price = Column(MONEY, nullable=False)
    currency = Column(String(20), nullable=False)
    duration_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("duration_days > 0", name="ck_listing_duration_positive"),
    )


class Order(Base):
    """One purchase attempt, paid to a dedicated deposit address"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    deposit_address = Column(String(128), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(20), nullable=False)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING_PAYMENT.value)
    confirmations = Column(Integer, nullable=False, default=0)
    transaction_hash = Column(String(128), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    __table_args__ = (
        Index("ix_orders_buyer", "buyer_id"),
        Index("ix_orders_status_expires", "status", "expires_at"),
        Index("ix_orders_deposit_address", "deposit_address"),
    )


class Subscription(Base):
    """Time-limited channel access created from a confirmed order"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    channel_id = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default=SubscriptionStatus.PENDING_ACTIVATION.value)
    start_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=False)
    duration_days = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    __table_args__ = (
        Index("ix_subscriptions_buyer", "buyer_id"),
        Index("ix_subscriptions_status_expiry", "status", "expiry_date"),
    )


class Transaction(Base):
    """On-chain payment observed for an order's deposit address"""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    transaction_hash = Column(String(128), nullable=False, unique=True)
    from_address = Column(String(128), nullable=True)
    to_address = Column(String(128), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(20), nullable=False)
    confirmations = Column(Integer, nullable=False, default=0)
    block_number = Column(BigInteger, nullable=True)
    status = Column(String(20), nullable=False, default=TransactionStatus.DETECTED.value)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)


# ============================================================================
# FUND CUSTODY
# ============================================================================

class EscrowEntry(Base):
    """
    Logical holding of an order payment.

    Invariant: merchant_amount + platform_fee == amount. Status moves one way,
    HELD -> RELEASED or HELD -> REFUNDED; `version` guards concurrent transitions.
    """
    __tablename__ = "escrow_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    merchant_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=EscrowStatus.HELD.value)
    platform_fee = Column(MONEY, nullable=False)
    merchant_amount = Column(MONEY, nullable=False)
    refund_amount = Column(MONEY, nullable=True)

    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_escrow_entries_status_currency", "status", "currency"),
        Index("ix_escrow_entries_merchant_status", "merchant_id", "status"),
    )


class MerchantBalance(Base):
    """Per merchant+currency balance; available and pending never go negative"""
    __tablename__ = "merchant_balances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    currency = Column(String(20), nullable=False)
    available_balance = Column(MONEY, nullable=False, default=0)
    pending_balance = Column(MONEY, nullable=False, default=0)
    total_earned = Column(MONEY, nullable=False, default=0)
    total_withdrawn = Column(MONEY, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    __table_args__ = (
        UniqueConstraint("merchant_id", "currency", name="uq_merchant_balance_currency"),
        CheckConstraint("available_balance >= 0", name="ck_merchant_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_merchant_pending_non_negative"),
    )


class Dispute(Base):
    """Buyer dispute against a paid order"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    issue = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=DisputeStatus.OPEN.value)
    resolution = Column(Text, nullable=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    refund_approved = Column(Boolean, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    __table_args__ = (
        Index("ix_disputes_order", "order_id"),
        Index("ix_disputes_buyer", "buyer_id"),
        Index("ix_disputes_status", "status"),
    )


# ============================================================================
# OUTBOUND QUEUES
# ============================================================================

class OutboundMessage(Base):
    """
    Durable at-least-once outbound command.

    Consumers claim pending rows per queue, ordered by id within a message group.
    attempt_count/max_retries form the consumer's retry budget.
    """
    __tablename__ = "outbound_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(64), nullable=False)
    message_group = Column(String(64), nullable=False)
    operation_type = Column(String(64), nullable=False)
    dedup_key = Column(String(255), nullable=True)
    payload = Column(JSONType, nullable=False)
    status = Column(String(20), nullable=False, default=OutboundMessageStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    claimed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_outbound_queue_status", "queue_name", "status"),
        Index("ix_outbound_dedup", "queue_name", "dedup_key", "created_at"),
    )


class RefundTransaction(Base):
    """On-chain refund payout owed to a buyer"""
    __tablename__ = "refund_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    to_address = Column(String(128), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=RefundTransactionStatus.QUEUED.value)
    transaction_hash = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    message_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_refund_transactions_status", "status"),
    )


class Payout(Base):
    """Merchant withdrawal of available balance to an external wallet"""
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(20), nullable=False)
    wallet_address = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    transaction_hash = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)
    message_id = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payouts_status", "status"),
        CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
    )


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(Base):
    """Append-only audit trail for escrow transitions"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Event details
    event_type = Column(String(50), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)

    # Denormalized lookup keys for trail queries
    order_id = Column(Integer, nullable=True)
    subscription_id = Column(Integer, nullable=True)
    merchant_id = Column(Integer, nullable=True)

    # Change tracking
    previous_state = Column(String(32), nullable=True)
    new_state = Column(String(32), nullable=True)
    changes = Column(JSONType, nullable=True)

    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        Index("ix_audit_entity_id", "entity_type", "entity_id"),
        Index("ix_audit_order", "order_id"),
        Index("ix_audit_subscription", "subscription_id"),
        Index("ix_audit_merchant_created", "merchant_id", "created_at"),
        Index("ix_audit_created", "created_at"),
    )

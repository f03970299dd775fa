"""
Audit Trail Service - Append-only escrow transition log
Every escrow create/release/refund is recorded for reconciliation and statistics.
Writes never abort the money-moving operation they describe.
"""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import AuditLog, EscrowAuditAction, EscrowEntry
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now

logger = logging.getLogger(__name__)


def _json_safe(value: Any) -> Any:
    """Decimals and datetimes as strings so payloads survive JSON columns"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


class AuditTrailService:
    """Service for escrow audit trail writes and queries"""

    ENTITY_ESCROW = "escrow"

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def log_escrow_event(
        self,
        session: AsyncSession,
        escrow: EscrowEntry,
        action: EscrowAuditAction,
        old_status: Optional[str],
        new_status: str,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Append an audit record inside the caller's transaction.

        The insert runs in a SAVEPOINT: if it fails only the savepoint is rolled
        back and the caller's escrow transition still commits.
        Returns: {'logged': bool, 'audit_id': int, 'error': str}
        """
        payload = {
            "escrowId": escrow.id,
            "orderId": escrow.order_id,
            "subscriptionId": escrow.subscription_id,
            "oldStatus": old_status,
            "newStatus": new_status,
            "amount": escrow.amount,
            "platformFee": escrow.platform_fee,
            "merchantAmount": escrow.merchant_amount,
            "currency": escrow.currency,
        }
        if changes:
            payload.update(changes)

        try:
            async with session.begin_nested():
                audit_log = AuditLog(
                    event_type=f"escrow_{action.value}",
                    action=action.value,
                    entity_type=self.ENTITY_ESCROW,
                    entity_id=str(escrow.id),
                    order_id=escrow.order_id,
                    subscription_id=escrow.subscription_id,
                    merchant_id=escrow.merchant_id,
                    previous_state=old_status,
                    new_state=new_status,
                    changes=_json_safe(payload),
                    description=f"Escrow {escrow.id} {old_status or 'none'} -> {new_status}",
                    created_at=get_naive_utc_now(),
                )
                session.add(audit_log)
                await session.flush()

            logger.info(f"📝 AUDIT_LOGGED: escrow_{action.value} escrow={escrow.id} audit_id={audit_log.id}")
            return {"logged": True, "audit_id": audit_log.id}

        except Exception as e:
            logger.error(f"❌ AUDIT_WRITE_FAILED: escrow_{action.value} escrow={escrow.id}: {e}")
            return {"logged": False, "error": str(e)}

    async def get_escrow_audit_trail(
        self,
        escrow_id: Optional[int] = None,
        order_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
        action: Optional[EscrowAuditAction] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Filterable escrow audit trail, newest first"""
        stmt = select(AuditLog).where(AuditLog.entity_type == self.ENTITY_ESCROW)

        if escrow_id is not None:
            stmt = stmt.where(AuditLog.entity_id == str(escrow_id))
        if order_id is not None:
            stmt = stmt.where(AuditLog.order_id == order_id)
        if subscription_id is not None:
            stmt = stmt.where(AuditLog.subscription_id == subscription_id)
        if action is not None:
            stmt = stmt.where(AuditLog.action == action.value)
        if start_date is not None:
            stmt = stmt.where(AuditLog.created_at >= ensure_naive_datetime(start_date))
        if end_date is not None:
            stmt = stmt.where(AuditLog.created_at <= ensure_naive_datetime(end_date))

        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_merchant_escrow_audit_trail(
        self,
        merchant_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        stmt = select(AuditLog).where(
            AuditLog.entity_type == self.ENTITY_ESCROW,
            AuditLog.merchant_id == merchant_id,
        )
        if start_date is not None:
            stmt = stmt.where(AuditLog.created_at >= ensure_naive_datetime(start_date))
        if end_date is not None:
            stmt = stmt.where(AuditLog.created_at <= ensure_naive_datetime(end_date))
        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_escrow_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate escrow activity from the audit trail.

        Returns counts per action plus per-currency totals: amounts held on
        creation, merchant amounts released, and refund amounts paid back.
        """
        stmt = select(AuditLog).where(AuditLog.entity_type == self.ENTITY_ESCROW)
        if start_date is not None:
            stmt = stmt.where(AuditLog.created_at >= ensure_naive_datetime(start_date))
        if end_date is not None:
            stmt = stmt.where(AuditLog.created_at <= ensure_naive_datetime(end_date))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            logs = result.scalars().all()

        counts = {action.value: 0 for action in EscrowAuditAction}
        held_by_currency: Dict[str, Decimal] = defaultdict(Decimal)
        released_by_currency: Dict[str, Decimal] = defaultdict(Decimal)
        refunded_by_currency: Dict[str, Decimal] = defaultdict(Decimal)
        fees_by_currency: Dict[str, Decimal] = defaultdict(Decimal)

        for log in logs:
            counts[log.action] = counts.get(log.action, 0) + 1
            changes = log.changes or {}
            currency = changes.get("currency", "UNKNOWN")

            if log.action == EscrowAuditAction.CREATED.value:
                held_by_currency[currency] += Decimal(str(changes.get("amount", "0")))
                fees_by_currency[currency] += Decimal(str(changes.get("platformFee", "0")))
            elif log.action == EscrowAuditAction.RELEASED.value:
                released_by_currency[currency] += Decimal(str(changes.get("merchantAmount", "0")))
            elif log.action == EscrowAuditAction.REFUNDED.value:
                refunded_by_currency[currency] += Decimal(str(changes.get("refundAmount", "0")))

        return {
            "total_created": counts[EscrowAuditAction.CREATED.value],
            "total_released": counts[EscrowAuditAction.RELEASED.value],
            "total_refunded": counts[EscrowAuditAction.REFUNDED.value],
            "held_by_currency": dict(held_by_currency),
            "released_by_currency": dict(released_by_currency),
            "refunded_by_currency": dict(refunded_by_currency),
            "platform_fees_by_currency": dict(fees_by_currency),
        }

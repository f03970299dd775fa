"""Typed transaction events passed from the blockchain monitor to its consumers"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from models import BlockchainNetwork, CryptoCurrency
from utils.datetime_helpers import get_naive_utc_now


class TransactionEventType(Enum):
    DETECTED = "detected"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class TransactionEvent:
    event_type: TransactionEventType
    transaction_hash: str
    address: str
    order_id: int
    currency: CryptoCurrency
    network: BlockchainNetwork
    amount: Decimal
    expected_amount: Decimal
    amount_valid: bool
    confirmations: int
    required_confirmations: int
    from_address: Optional[str] = None
    block_number: Optional[int] = None
    observed_at: datetime = field(default_factory=get_naive_utc_now)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "transactionHash": self.transaction_hash,
            "address": self.address,
            "orderId": self.order_id,
            "currency": self.currency.value,
            "network": self.network.value,
            "amount": str(self.amount),
            "expectedAmount": str(self.expected_amount),
            "amountValid": self.amount_valid,
            "confirmations": self.confirmations,
            "requiredConfirmations": self.required_confirmations,
            "fromAddress": self.from_address,
            "blockNumber": self.block_number,
            "observedAt": self.observed_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TransactionEvent":
        return cls(
            event_type=TransactionEventType(payload["eventType"]),
            transaction_hash=payload["transactionHash"],
            address=payload["address"],
            order_id=int(payload["orderId"]),
            currency=CryptoCurrency(payload["currency"]),
            network=BlockchainNetwork(payload["network"]),
            amount=Decimal(payload["amount"]),
            expected_amount=Decimal(payload["expectedAmount"]),
            amount_valid=bool(payload["amountValid"]),
            confirmations=int(payload["confirmations"]),
            required_confirmations=int(payload["requiredConfirmations"]),
            from_address=payload.get("fromAddress"),
            block_number=payload.get("blockNumber"),
            observed_at=datetime.fromisoformat(payload["observedAt"]),
        )

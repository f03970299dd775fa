"""
On-chain transaction signer interface.

Key management and signing live outside the settlement core; the refund queue
consumer drives an implementation of this contract and records its results.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class SendResult:
    """Outcome of a payout; `retryable` tells the consumer whether to try again"""

    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class TransactionSigner(ABC):
    @abstractmethod
    async def send_transaction(self, currency: str, to_address: str, amount: Decimal) -> SendResult:
        """Sign and broadcast a transfer of `amount` to `to_address`"""

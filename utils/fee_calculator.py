"""Platform fee split calculations for escrow entries"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple, Union

from config import Config

logger = logging.getLogger(__name__)


class FeeSplit(NamedTuple):
    """platform_fee + merchant_amount == amount, always"""
    amount: Decimal
    platform_fee: Decimal
    merchant_amount: Decimal
    fee_percentage: Decimal


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    # 18 decimal places, matching the Numeric(38, 18) money columns
    CRYPTO_PRECISION = Decimal("0.000000000000000001")

    @classmethod
    def get_default_fee_percentage(cls) -> Decimal:
        """Default platform fee as a fraction (0.05 == 5%)"""
        return Decimal(str(Config.PLATFORM_FEE_PERCENTAGE))

    @classmethod
    def validate_fee_percentage(cls, fee_percentage: Union[Decimal, float, str]) -> Decimal:
        """Coerce to Decimal and require 0 <= fee <= 1; raises ValueError otherwise"""
        try:
            value = Decimal(str(fee_percentage))
        except (ArithmeticError, ValueError) as e:
            raise ValueError(f"Invalid fee percentage: {fee_percentage}") from e

        if not value.is_finite() or value < 0 or value > 1:
            raise ValueError(f"Fee percentage must be between 0 and 1, got {fee_percentage}")
        return value

    @classmethod
    def calculate_fee_split(
        cls,
        amount: Union[Decimal, float, str],
        fee_percentage: Union[Decimal, float, str, None] = None,
    ) -> FeeSplit:
        """
        Split a payment into platform fee and merchant share.

        The merchant share is derived by subtraction so the two parts always
        sum back to the original amount.
        """
        amount = Decimal(str(amount))
        if amount < 0:
            raise ValueError(f"Amount cannot be negative: {amount}")

        if fee_percentage is None:
            fee_percentage = cls.get_default_fee_percentage()
        fee_percentage = cls.validate_fee_percentage(fee_percentage)

        platform_fee = (amount * fee_percentage).quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)
        merchant_amount = amount - platform_fee

        logger.debug(
            f"💰 FEE_SPLIT: amount={amount} fee%={fee_percentage} "
            f"platform_fee={platform_fee} merchant_amount={merchant_amount}"
        )
        return FeeSplit(amount, platform_fee, merchant_amount, fee_percentage)

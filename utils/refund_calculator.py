"""
Pro-rated refund calculation.

Pure functions: the caller supplies the subscription window and the clock, nothing
here touches the database.
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple, Optional, Union

from utils.datetime_helpers import days_between, ensure_naive_datetime, get_naive_utc_now


class RefundCalculation(NamedTuple):
    refund_amount: Decimal
    refund_percentage: Decimal
    used_days: int
    unused_days: int
    duration_days: int


def calculate_pro_rated_refund(
    subscription,
    payment_amount: Union[Decimal, float, str],
    now: Optional[datetime] = None,
) -> RefundCalculation:
    """
    Refund scaled by the fraction of the subscription period still unused.

        used_days   = max(0, floor(now - start_date in days))
        unused_days = max(0, ceil(expiry_date - now in days))
        refund      = payment_amount * unused_days / duration_days

    Args:
        subscription: anything with start_date, expiry_date and duration_days
        payment_amount: amount originally paid
        now: evaluation time (defaults to current UTC)
    """
    now = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()
    payment_amount = Decimal(str(payment_amount))
    duration_days = int(subscription.duration_days)

    if duration_days <= 0:
        raise ValueError(f"Subscription duration must be positive, got {duration_days}")

    used_days = max(0, math.floor(days_between(subscription.start_date, now)))
    unused_days = max(0, math.ceil(days_between(now, subscription.expiry_date)))
    # Requests before start_date refund the full amount, never more
    unused_days = min(unused_days, duration_days)

    refund_percentage = Decimal(unused_days) / Decimal(duration_days)
    refund_amount = payment_amount * refund_percentage

    return RefundCalculation(
        refund_amount=refund_amount,
        refund_percentage=refund_percentage,
        used_days=used_days,
        unused_days=unused_days,
        duration_days=duration_days,
    )

"""
Per-minute metering.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

BillingRounding = Literal["ceil", "fractional"]

_CENTS = Decimal("0.01")


def billable_minutes(duration_seconds: int, rounding: BillingRounding = "ceil") -> Decimal:
    """Convert a call duration into billable minutes.

    ``ceil`` bills every started minute; ``fractional`` bills seconds / 60
    rounded half-up to two decimals.
    """
    seconds = max(int(duration_seconds), 0)
    if rounding == "ceil":
        return Decimal(math.ceil(seconds / 60))
    return (Decimal(seconds) / Decimal(60)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def call_cost(minutes: Decimal, rate: Decimal) -> Decimal:
    return (minutes * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)


def elapsed_minutes(elapsed_seconds: float) -> int:
    """Whole minutes started so far, used to project the balance of a live call."""
    return math.ceil(max(elapsed_seconds, 0) / 60)

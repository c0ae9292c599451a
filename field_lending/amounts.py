"""
Amount Helpers

Decimal rounding to the minor unit. Monetary values are NEVER floats.
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Any, List

getcontext().prec = 28

MINOR_UNIT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_amount(value: Any) -> Decimal:
    """Convert a number or numeric string to a Decimal rounded to the minor unit"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def split_evenly(total: Decimal, parts: int) -> List[Decimal]:
    """
    Split total into parts installments at minor-unit precision.

    Every installment is total/parts truncated to the minor unit except the
    last one, which takes the remainder so the installments sum to total
    exactly and the last installment is never smaller than the others.
    """
    if parts <= 0:
        raise ValueError("parts must be positive")
    total = to_amount(total)
    share = (total / Decimal(parts)).quantize(MINOR_UNIT, rounding=ROUND_DOWN)
    installments = [share] * (parts - 1)
    installments.append(total - share * (parts - 1))
    return installments


def within_tolerance(left: Decimal, right: Decimal, tolerance: Decimal = MINOR_UNIT) -> bool:
    return abs(to_amount(left) - to_amount(right)) <= tolerance

"""Referral commission math: rate resolution, amount and the available/locked split"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from emi_autopay.domain.exceptions import CommissionCalculationError
from emi_autopay.domain.models import CommissionSplit

DEFAULT_COMMISSION_PERCENTAGE = 25.0


def resolve_commission_rate(
    order_percentage: Optional[float],
    product_percentage: Optional[float],
    default: float = DEFAULT_COMMISSION_PERCENTAGE,
) -> float:
    """Order-level override, then product-level override, then the default.

    A zero or missing override falls through to the next level.
    """
    if order_percentage:
        return float(order_percentage)
    if product_percentage:
        return float(product_percentage)
    return float(default)


def calculate_commission(amount_cents: int, percentage: float) -> int:
    """Commission on a payment, rounded half-up to the cent"""
    if percentage < 0 or percentage > 100:
        raise CommissionCalculationError(
            "Commission percentage must be between 0 and 100",
            {"percentage": percentage},
        )
    commission = Decimal(amount_cents) * Decimal(str(percentage)) / Decimal(100)
    return int(commission.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_commission(total_cents: int, locked_percentage: int = 10) -> CommissionSplit:
    """
    Split a commission between the withdrawable and the locked pool.

    Rounding rule: locked = floor(total * locked%) in cents, available takes the
    remainder, so available + locked == total exactly.

    Example: 2500 -> available 2250, locked 250
             1999 -> available 1800, locked 199
    """
    if total_cents < 0:
        raise CommissionCalculationError("Commission cannot be negative", {"total_cents": total_cents})
    locked = total_cents * locked_percentage // 100
    return CommissionSplit(total_cents=total_cents, available_cents=total_cents - locked, locked_cents=locked)

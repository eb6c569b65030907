"""Daily installment schedule generation and plan validation"""

import hashlib
import secrets
from datetime import date, datetime, timedelta
from typing import List, Optional

from emi_autopay.domain.exceptions import ValidationError
from emi_autopay.domain.models import Installment
from emi_autopay.utils.date_utils import utc_now

CENTS_PER_UNIT = 100


def max_allowed_days(price_cents: int) -> int:
    """
    Longest plan allowed for a price band.

    - up to 10,000 units  -> 100 days
    - up to 50,000 units  -> 180 days
    - above               -> 365 days
    """
    if price_cents <= 10_000 * CENTS_PER_UNIT:
        return 100
    elif price_cents <= 50_000 * CENTS_PER_UNIT:
        return 180
    else:
        return 365


def calculate_daily_amount(price_cents: int, total_days: int) -> int:
    """Price divided by days, rounded up to a whole currency unit"""
    if total_days <= 0:
        raise ValidationError("Total days must be greater than 0", {"total_days": total_days})
    per_day = -(-price_cents // total_days)
    return -(-per_day // CENTS_PER_UNIT) * CENTS_PER_UNIT


def validate_plan(
    price_cents: int,
    total_days: int,
    daily_amount_cents: int,
    min_days: int = 5,
    min_daily_cents: int = 5_000,
) -> None:
    """Reject plans that cannot produce a well-formed schedule"""
    if price_cents <= 0:
        raise ValidationError("Product price must be positive", {"price_cents": price_cents})

    max_days = max_allowed_days(price_cents)
    if total_days < min_days:
        raise ValidationError(
            f"Minimum installment duration is {min_days} days",
            {"total_days": total_days, "min": min_days, "max": max_days},
        )
    if total_days > max_days:
        raise ValidationError(
            f"Maximum installment duration for this product is {max_days} days",
            {"total_days": total_days, "min": min_days, "max": max_days},
        )
    if daily_amount_cents < min_daily_cents:
        raise ValidationError(
            f"Daily payment amount must be at least {min_daily_cents // CENTS_PER_UNIT}",
            {"daily_amount_cents": daily_amount_cents},
        )
    if daily_amount_cents * total_days < price_cents:
        raise ValidationError(
            "Daily amount does not cover the product price in the chosen number of days",
            {"daily_amount_cents": daily_amount_cents, "total_days": total_days, "price_cents": price_cents},
        )
    if price_cents - daily_amount_cents * (total_days - 1) <= 0:
        raise ValidationError(
            "Too many days for this daily amount; the plan would be paid off early",
            {"daily_amount_cents": daily_amount_cents, "total_days": total_days, "price_cents": price_cents},
        )


def generate_payment_schedule(
    price_cents: int,
    total_days: int,
    daily_amount_cents: int,
    start_date: Optional[date] = None,
) -> List[Installment]:
    """
    Generate one installment per calendar day starting on ``start_date``.

    Every installment is ``daily_amount_cents`` except the last, which absorbs
    the remainder so the schedule sums exactly to the price.

    Example:
        price 1000.00, 10 days at 100.00 -> ten installments of 100.00
        price 1000.00, 7 days at 150.00  -> six of 150.00 and a last of 100.00
    """
    if start_date is None:
        start_date = date.today()

    installments = []
    for i in range(total_days):
        is_last = i == total_days - 1
        amount = price_cents - daily_amount_cents * (total_days - 1) if is_last else daily_amount_cents
        installments.append(
            Installment(
                installment_number=i + 1,
                due_date=start_date + timedelta(days=i),
                amount_cents=amount,
            )
        )

    return installments


def generate_order_number(now: Optional[datetime] = None) -> str:
    """ORD-YYYYMMDD-XXXXXXXX"""
    return _reference("ORD", now)


def generate_payment_number(now: Optional[datetime] = None) -> str:
    """PAY-YYYYMMDD-XXXXXXXX"""
    return _reference("PAY", now)


def _reference(prefix: str, now: Optional[datetime]) -> str:
    now = now or utc_now()
    return f"{prefix}-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def idempotency_key(order_id: str, user_id: str, installment_number: int) -> str:
    """Stable key for one installment of one order; unique across payment records"""
    data = f"{order_id}-{user_id}-{installment_number}"
    return hashlib.sha256(data.encode()).hexdigest()

"""Wallet balance projection against upcoming autopay charges"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from emi_autopay.domain.models import ForecastDay
from emi_autopay.utils.date_utils import generate_date_range, add_days


@dataclass
class ScheduledCharge:
    """A PENDING installment of an autopay-enabled order, not on a skip date"""

    order_id: str
    due_date: date
    amount_cents: int


def charges_by_date(charges: Iterable[ScheduledCharge]) -> Dict[date, List[ScheduledCharge]]:
    grouped: Dict[date, List[ScheduledCharge]] = defaultdict(list)
    for charge in charges:
        grouped[charge.due_date].append(charge)
    return grouped


def project_balance(
    balance_cents: int,
    minimum_lock_cents: int,
    charges: Iterable[ScheduledCharge],
    start: date,
    days: int,
) -> List[ForecastDay]:
    """
    Day-by-day projection of the wallet.

    A day's charges are deducted only when the balance above the minimum lock
    covers all of them; otherwise the day is flagged with its shortfall and
    the balance carries forward untouched.
    """
    grouped = charges_by_date(charges)
    running = balance_cents
    forecast = []

    for i, day in enumerate(generate_date_range(start, add_days(start, days - 1))):
        todays = grouped.get(day, [])
        due = sum(c.amount_cents for c in todays)
        available = max(0, running - minimum_lock_cents)
        can_pay = available >= due
        start_balance = running

        if can_pay and due > 0:
            running -= due

        forecast.append(
            ForecastDay(
                date=day,
                day_number=i + 1,
                start_balance_cents=start_balance,
                deduction_cents=due if can_pay else 0,
                end_balance_cents=running,
                order_ids=[c.order_id for c in todays],
                insufficient_funds=not can_pay and due > 0,
                shortfall_cents=0 if can_pay else due - available,
            )
        )

    return forecast


def days_until_insufficient(forecast: List[ForecastDay]) -> Optional[int]:
    for day in forecast:
        if day.insufficient_funds:
            return day.day_number
    return None


def suggested_top_up(balance_cents: int, minimum_lock_cents: int, daily_total_cents: int, target_days: int = 7) -> int:
    """Amount to add so the wallet covers ``target_days`` of autopay above the minimum lock"""
    if daily_total_cents <= 0:
        return 0
    target = daily_total_cents * target_days + minimum_lock_cents
    return max(0, target - balance_cents)


def low_balance_shortfall(
    balance_cents: int,
    minimum_lock_cents: int,
    threshold_cents: int,
    due_cents: int,
) -> Optional[Tuple[int, int, int]]:
    """
    Check one day's due total against the wallet.

    Returns ``(balance, required, shortfall)`` for the alert, or None when the
    wallet covers the charges and stays at or above the threshold.
    """
    if due_cents <= 0:
        return None

    available = max(0, balance_cents - minimum_lock_cents)
    if available < due_cents:
        return available, due_cents, due_cents - available

    after_payment = available - due_cents
    if after_payment < threshold_cents:
        return after_payment, threshold_cents, threshold_cents - after_payment

    return None

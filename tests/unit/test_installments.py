"""Unit tests for daily schedule generation and plan validation"""

import pytest
from datetime import date, timedelta
from emi_autopay.domain.exceptions import ValidationError
from emi_autopay.domain.installments import (
    calculate_daily_amount,
    generate_order_number,
    generate_payment_number,
    generate_payment_schedule,
    idempotency_key,
    max_allowed_days,
    validate_plan,
)


def test_schedule_equal_split():
    """Test 10 days at 100.00 for a 1000.00 product"""
    installments = generate_payment_schedule(100_000, 10, 10_000, date(2025, 1, 1))

    assert len(installments) == 10
    assert all(inst.amount_cents == 10_000 for inst in installments)
    assert sum(inst.amount_cents for inst in installments) == 100_000


def test_schedule_last_installment_absorbs_remainder():
    """Test last day takes whatever is left of the price"""
    installments = generate_payment_schedule(100_000, 7, 15_000, date(2025, 1, 1))

    assert [inst.amount_cents for inst in installments[:6]] == [15_000] * 6
    assert installments[-1].amount_cents == 10_000
    assert sum(inst.amount_cents for inst in installments) == 100_000


def test_schedule_consecutive_days_from_start():
    start = date(2025, 1, 30)
    installments = generate_payment_schedule(50_000, 5, 10_000, start)

    assert [inst.installment_number for inst in installments] == [1, 2, 3, 4, 5]
    assert installments[0].due_date == start
    assert installments[2].due_date == date(2025, 2, 1)
    assert all(
        b.due_date - a.due_date == timedelta(days=1)
        for a, b in zip(installments, installments[1:])
    )


def test_daily_amount_rounds_up_to_whole_unit():
    assert calculate_daily_amount(100_000, 10) == 10_000
    # 1000.00 / 7 = 142.857... -> 143.00
    assert calculate_daily_amount(100_000, 7) == 14_300
    # 999.01 / 5 = 199.802 -> 200.00
    assert calculate_daily_amount(99_901, 5) == 20_000


def test_daily_amount_rejects_zero_days():
    with pytest.raises(ValidationError):
        calculate_daily_amount(100_000, 0)


@pytest.mark.parametrize(
    "price_cents,expected",
    [
        (1_000_000, 100),  # 10,000 units
        (1_000_001, 180),
        (5_000_000, 180),
        (5_000_001, 365),
    ],
)
def test_max_allowed_days_by_price_band(price_cents, expected):
    assert max_allowed_days(price_cents) == expected


def test_validate_plan_accepts_minimal_plan():
    validate_plan(25_000, 5, 5_000)


@pytest.mark.parametrize(
    "price,days,daily,message",
    [
        (100_000, 4, 25_000, "Minimum installment duration"),
        (100_000, 101, 5_000, "Maximum installment duration"),
        (100_000, 10, 4_900, "at least 50"),
        (100_000, 10, 9_000, "does not cover"),
        (100_000, 12, 10_000, "paid off early"),
        (0, 5, 5_000, "must be positive"),
    ],
)
def test_validate_plan_rejections(price, days, daily, message):
    with pytest.raises(ValidationError) as exc:
        validate_plan(price, days, daily)
    assert message in exc.value.message


def test_reference_numbers_format():
    order_number = generate_order_number()
    payment_number = generate_payment_number()

    assert order_number.startswith("ORD-")
    assert payment_number.startswith("PAY-")
    prefix, day, suffix = order_number.split("-")
    assert len(day) == 8 and day.isdigit()
    assert len(suffix) == 8


def test_idempotency_key_is_stable_per_installment():
    key = idempotency_key("order-1", "user-1", 3)

    assert key == idempotency_key("order-1", "user-1", 3)
    assert key != idempotency_key("order-1", "user-1", 4)
    assert len(key) == 64

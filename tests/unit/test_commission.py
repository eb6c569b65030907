"""Unit tests for commission rate resolution, rounding and the pool split"""

import pytest
from emi_autopay.domain.commission import calculate_commission, resolve_commission_rate, split_commission
from emi_autopay.domain.exceptions import CommissionCalculationError


def test_rate_resolution_order():
    assert resolve_commission_rate(30.0, 20.0) == 30.0
    assert resolve_commission_rate(None, 20.0) == 20.0
    assert resolve_commission_rate(None, None) == 25.0


def test_zero_override_falls_through():
    assert resolve_commission_rate(0, 15.0) == 15.0
    assert resolve_commission_rate(0, 0, default=25.0) == 25.0


def test_default_commission_on_100_units():
    """25% of 100.00 is 25.00"""
    assert calculate_commission(10_000, 25.0) == 2_500


def test_commission_rounds_half_up_to_cent():
    # 12.5% of 1.01 = 0.12625 -> 0.13
    assert calculate_commission(101, 12.5) == 13
    # 25% of 0.02 = 0.005 -> 0.01
    assert calculate_commission(2, 25.0) == 1
    # 10% of 0.04 = 0.004 -> 0.00
    assert calculate_commission(4, 10.0) == 0


def test_commission_percentage_out_of_range():
    with pytest.raises(CommissionCalculationError):
        calculate_commission(10_000, 101)
    with pytest.raises(CommissionCalculationError):
        calculate_commission(10_000, -1)


def test_split_is_90_10():
    split = split_commission(2_500)

    assert split.available_cents == 2_250
    assert split.locked_cents == 250


@pytest.mark.parametrize("total", [0, 1, 9, 10, 11, 1_999, 2_501, 123_457])
def test_split_pools_sum_to_total(total):
    split = split_commission(total)

    assert split.available_cents + split.locked_cents == total
    assert split.locked_cents == total * 10 // 100


def test_split_rejects_negative_total():
    with pytest.raises(CommissionCalculationError):
        split_commission(-1)

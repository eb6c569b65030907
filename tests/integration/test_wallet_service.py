"""Wallet ledger tests against the database"""

import pytest
from sqlalchemy.orm import Session
from emi_autopay.domain.exceptions import InsufficientBalanceError, UserNotFoundError, ValidationError
from emi_autopay.domain.models import TransactionType
from emi_autopay.infrastructure.database.models import WalletTransaction
from emi_autopay.services.container import Services


def test_get_balance(services: Services, make_user):
    make_user("u1", balance_cents=12_345, hold_balance_cents=100, referral_bonus_cents=1_000)

    balance = services.wallet.get_balance("u1")

    assert balance == {
        "available_cents": 12_345,
        "locked_cents": 100,
        "total_cents": 12_445,
        "referral_bonus_cents": 1_000,
    }


def test_get_balance_unknown_user(services: Services):
    with pytest.raises(UserNotFoundError):
        services.wallet.get_balance("ghost")


def test_deduct_appends_transaction(db: Session, services: Services, make_user):
    make_user("u1", balance_cents=50_000)

    txn = services.wallet.deduct("u1", 10_000, description="Installment 2/10")
    db.commit()

    assert txn.amount_cents == -10_000
    assert txn.balance_after_cents == 40_000
    assert txn.type == TransactionType.INSTALLMENT_PAYMENT.value
    assert services.wallet.get_balance("u1")["available_cents"] == 40_000


def test_over_deduction_changes_nothing(db: Session, services: Services, make_user):
    make_user("u1", balance_cents=5_000)

    with pytest.raises(InsufficientBalanceError) as exc:
        services.wallet.deduct("u1", 10_000, description="Installment")
    db.rollback()

    assert exc.value.required == 10_000
    assert exc.value.available == 5_000
    assert exc.value.details["shortfall_cents"] == 5_000
    assert services.wallet.get_balance("u1")["available_cents"] == 5_000
    assert db.query(WalletTransaction).count() == 0


def test_deduct_keeps_reserve(services: Services, make_user):
    make_user("u1", balance_cents=15_000)

    with pytest.raises(InsufficientBalanceError) as exc:
        services.wallet.deduct("u1", 10_000, description="Installment", reserve_cents=6_000)

    assert exc.value.available == 9_000


def test_deduct_rejects_non_positive_amount(services: Services, make_user):
    make_user("u1", balance_cents=15_000)

    with pytest.raises(ValidationError):
        services.wallet.deduct("u1", 0, description="Installment")


def test_credit_commission_splits_pools(db: Session, services: Services, make_user):
    make_user("ref", balance_cents=1_000)

    split, entries = services.wallet.credit_commission("ref", 2_500, meta={"order_id": "o1"})
    db.commit()

    assert (split.available_cents, split.locked_cents) == (2_250, 250)
    assert [e.type for e in entries] == ["COMMISSION", "COMMISSION_LOCKED"]
    assert [e.pool for e in entries] == ["AVAILABLE", "LOCKED"]
    assert services.wallet.get_balance("ref") == {
        "available_cents": 3_250,
        "locked_cents": 250,
        "total_cents": 3_500,
        "referral_bonus_cents": 2_500,
    }


def test_commission_summary(db: Session, services: Services, make_user):
    make_user("ref")
    services.wallet.credit_commission("ref", 2_500)
    services.wallet.credit_commission("ref", 1_001)
    db.commit()

    summary = services.wallet.commission_summary("ref")

    assert summary["total_commission_cents"] == 3_501
    assert summary["available_commission_cents"] == 2_250 + 901
    assert summary["locked_commission_cents"] == 250 + 100
    assert summary["commission_count"] == 2


def test_add_money_and_transaction_listing(db: Session, services: Services, make_user):
    make_user("u1")

    services.wallet.add_money("u1", 20_000)
    services.wallet.add_money("u1", 500, source=TransactionType.BONUS, description="Welcome bonus")
    db.commit()

    items, total = services.wallet.list_transactions("u1")
    bonuses, bonus_total = services.wallet.list_transactions("u1", type="BONUS")

    assert total == 2
    assert {t.type for t in items} == {"DEPOSIT", "BONUS"}
    assert bonus_total == 1
    assert bonuses[0].description == "Welcome bonus"
    assert services.wallet.get_balance("u1")["available_cents"] == 20_500


def test_add_money_rejects_debit_sources(services: Services, make_user):
    make_user("u1")

    with pytest.raises(ValidationError):
        services.wallet.add_money("u1", 100, source=TransactionType.INSTALLMENT_PAYMENT)
    with pytest.raises(ValidationError):
        services.wallet.add_money("u1", -100)

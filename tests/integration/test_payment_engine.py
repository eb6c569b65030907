"""Payment engine tests: installment units of work, idempotence and referral commission"""

import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy.orm import Session
from emi_autopay.domain.exceptions import DuplicatePaymentError, InsufficientBalanceError, InvalidOrderStateError
from emi_autopay.domain.models import AutopayOutcome, PaymentMethod, PaymentProof, ReferralAssignment
from emi_autopay.infrastructure.database.models import PaymentRecord, WalletTransaction
from emi_autopay.infrastructure.database.repositories import AutopayAttemptRepository, PaymentRepository
from emi_autopay.services.container import Services
from tests.constants import ADDRESS, TODAY

YESTERDAY = TODAY - timedelta(days=1)


def _payments(db: Session, order_id):
    return PaymentRepository(db).list_for_order(order_id)


def _attempts(db: Session, order_id):
    return AutopayAttemptRepository(db).list_for_order(order_id)


class TestManualPayments:
    def test_pays_next_installment(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY)

        outcome = services.payments.pay_installment(order.id, "buyer", TODAY)

        assert outcome.status == AutopayOutcome.SUCCESS
        assert outcome.installment_number == 2
        assert outcome.amount_cents == 10_000
        assert outcome.new_balance_cents == 40_000
        assert outcome.commission.reason == "NO_REFERRER"

        order = services.orders.get_order(order.id)
        assert order.paid_installments == 2
        assert order.remaining_cents == 80_000
        assert order.schedule[1].status == "PAID"
        assert order.schedule[1].paid_date == TODAY

        payment = _payments(db, order.id)[1]
        assert payment.method == "WALLET"
        assert payment.is_autopay is False
        assert payment.status == "COMPLETED"
        assert payment.wallet_transaction_id is not None

    def test_second_payment_same_day_rejected(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY)
        services.payments.pay_installment(order.id, "buyer", TODAY)

        with pytest.raises(DuplicatePaymentError):
            services.payments.pay_installment(order.id, "buyer", TODAY)

        assert len(_payments(db, order.id)) == 2
        assert services.wallet.get_balance("buyer")["available_cents"] == 40_000

    def test_insufficient_balance_changes_nothing(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=4_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY)

        with pytest.raises(InsufficientBalanceError) as exc:
            services.payments.pay_installment(order.id, "buyer", TODAY)

        assert exc.value.required == 10_000
        assert services.orders.get_order(order.id).paid_installments == 1
        assert services.wallet.get_balance("buyer")["available_cents"] == 4_000
        assert db.query(WalletTransaction).count() == 0

    def test_manual_payment_ignores_minimum_balance_lock(self, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=12_000, minimum_balance_lock_cents=10_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY)

        outcome = services.payments.pay_installment(order.id, "buyer", TODAY)

        assert outcome.new_balance_cents == 2_000

    def test_pending_order_cannot_be_paid(self, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", activate=False)

        with pytest.raises(InvalidOrderStateError):
            services.payments.pay_installment(order.id, "buyer", TODAY)

    def test_last_installment_completes_order(self, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=100_000)
        make_product("earbuds", price_cents=50_000)
        start = TODAY - timedelta(days=4)
        order = make_order("buyer", product_id="earbuds", total_days=5, today=start)

        outcomes = [
            services.payments.pay_installment(order.id, "buyer", start + timedelta(days=n))
            for n in range(1, 5)
        ]

        assert [o.installment_number for o in outcomes] == [2, 3, 4, 5]
        assert outcomes[-1].order_completed
        order = services.orders.get_order(order.id)
        assert order.status == "COMPLETED"
        assert order.completed_at is not None
        assert order.remaining_cents == 0
        assert order.total_paid_cents == order.product_price_cents

        with pytest.raises(InvalidOrderStateError):
            services.payments.pay_installment(order.id, "buyer", TODAY + timedelta(days=1))


class TestAutopayAttempts:
    def test_success_is_recorded(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY, autopay=True)

        outcome = services.payments.process_installment_payment(order.id, "buyer", today=TODAY)

        assert outcome.success
        order = services.orders.get_order(order.id)
        assert order.autopay_success_count == 1
        assert order.autopay_last_attempt_status == "SUCCESS"
        attempts = _attempts(db, order.id)
        assert [(a.status, a.amount_cents) for a in attempts] == [("SUCCESS", 10_000)]
        assert attempts[0].payment_id == order.schedule[1].payment_id
        assert _payments(db, order.id)[1].is_autopay is True

    def test_repeat_run_same_day_is_a_noop(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY, autopay=True)

        first = services.payments.process_installment_payment(order.id, "buyer", today=TODAY)
        second = services.payments.process_installment_payment(order.id, "buyer", today=TODAY)

        assert first.status == AutopayOutcome.SUCCESS
        assert second.status == AutopayOutcome.SKIPPED
        assert second.reason == "ALREADY_PAID_TODAY"
        assert len(_payments(db, order.id)) == 2
        assert len(_attempts(db, order.id)) == 1
        assert services.wallet.get_balance("buyer")["available_cents"] == 40_000

    def test_insufficient_balance_outcome(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=15_000, minimum_balance_lock_cents=10_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY, autopay=True)

        outcome = services.payments.process_installment_payment(order.id, "buyer", today=TODAY)

        assert outcome.status == AutopayOutcome.INSUFFICIENT_BALANCE
        assert outcome.amount_cents == 10_000
        order = services.orders.get_order(order.id)
        assert order.autopay_failed_count == 1
        assert order.autopay_last_attempt_status == "INSUFFICIENT_BALANCE"
        assert [a.status for a in _attempts(db, order.id)] == ["INSUFFICIENT_BALANCE"]
        assert services.wallet.get_balance("buyer")["available_cents"] == 15_000

    def test_paused_order_is_skipped_and_recorded(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY, autopay=True)
        services.autopay.pause_autopay(order.id, "buyer", TODAY + timedelta(days=2), today=YESTERDAY)
        db.commit()

        outcome = services.payments.process_installment_payment(order.id, "buyer", today=TODAY)

        assert outcome.status == AutopayOutcome.SKIPPED
        assert outcome.reason == "PAUSED"
        assert [a.status for a in _attempts(db, order.id)] == ["SKIPPED"]
        assert services.orders.get_order(order.id).autopay_failed_count == 0
        assert len(_payments(db, order.id)) == 1


class TestPaymentNumbers:
    def test_colliding_payment_number_is_redrawn(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        first = make_order("buyer", today=YESTERDAY, autopay=True)
        second = make_order("buyer", today=YESTERDAY, autopay=True)

        drawn = ["PAY-20250110-0000AAAA", "PAY-20250110-0000AAAA", "PAY-20250110-0000BBBB"]
        with patch("emi_autopay.infrastructure.database.repositories.generate_payment_number", side_effect=drawn):
            one = services.payments.process_installment_payment(first.id, "buyer", today=TODAY)
            two = services.payments.process_installment_payment(second.id, "buyer", today=TODAY)

        assert one.status == AutopayOutcome.SUCCESS
        assert two.status == AutopayOutcome.SUCCESS
        numbers = [_payments(db, o.id)[1].payment_number for o in (first, second)]
        assert numbers == ["PAY-20250110-0000AAAA", "PAY-20250110-0000BBBB"]
        assert services.wallet.get_balance("buyer")["available_cents"] == 30_000

    def test_unrelated_integrity_error_is_a_failure_not_a_skip(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY, autopay=True)
        taken = _payments(db, order.id)[0].payment_number

        with patch("emi_autopay.infrastructure.database.repositories.unique_reference", return_value=taken):
            outcome = services.payments.process_installment_payment(order.id, "buyer", today=TODAY)

        assert outcome.status == AutopayOutcome.FAILED
        assert services.wallet.get_balance("buyer")["available_cents"] == 50_000
        assert len(_payments(db, order.id)) == 1
        assert [a.status for a in _attempts(db, order.id)] == ["FAILED"]
        assert services.orders.get_order(order.id).autopay_failed_count == 1


class TestCommission:
    def test_default_rate_split_between_pools(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("ref")
        make_user("buyer", balance_cents=50_000, referred_by_id="ref")
        make_product()
        order = make_order("buyer", today=YESTERDAY)

        # installment 1 already earned 2,500 for the referrer
        outcome = services.payments.pay_installment(order.id, "buyer", TODAY)

        assert outcome.commission.calculated
        assert outcome.commission.amount_cents == 2_500
        assert outcome.commission.percentage == 25.0
        assert (outcome.commission.available_cents, outcome.commission.locked_cents) == (2_250, 250)
        assert services.wallet.get_balance("ref") == {
            "available_cents": 4_500,
            "locked_cents": 500,
            "total_cents": 5_000,
            "referral_bonus_cents": 5_000,
        }

        payment = _payments(db, order.id)[1]
        assert payment.commission_calculated
        assert payment.commission_credited_to_referrer
        assert payment.commission_amount_cents == 2_500
        assert payment.commission_transaction_id is not None
        assert services.orders.get_order(order.id).total_commission_cents == 5_000

    def test_product_and_order_overrides(self, db: Session, services: Services, make_user, make_product):
        make_user("ref")
        make_user("buyer", balance_cents=50_000)
        make_product(referral_commission_percentage=15.0)

        def place(referral):
            order = services.orders.create_order(
                user_id="buyer",
                product=services.orders.resolve_product("phone"),
                total_days=10,
                payment_method="WALLET",
                delivery_address=ADDRESS,
                referral=referral,
                today=TODAY,
            )
            db.commit()
            return services.payments.pay_first_installment(order.id, "buyer", PaymentProof(method=PaymentMethod.WALLET), TODAY)

        by_product = place(ReferralAssignment(referrer_id="ref"))
        by_order = place(ReferralAssignment(referrer_id="ref", commission_percentage=10.0))

        assert (by_product.commission.percentage, by_product.commission.amount_cents) == (15.0, 1_500)
        assert (by_order.commission.percentage, by_order.commission.amount_cents) == (10.0, 1_000)

    def test_commission_credited_at_most_once(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("ref")
        make_user("buyer", referred_by_id="ref")
        make_product()
        order = make_order("buyer")

        payment = db.get(PaymentRecord, order.first_payment_id)
        again = services.payments.calculate_and_credit_commission(order, payment)

        assert not again.calculated
        assert again.reason == "ALREADY_CALCULATED"
        assert again.amount_cents == 2_500
        assert services.wallet.get_balance("ref")["referral_bonus_cents"] == 2_500

    def test_no_referrer_no_commission(self, services: Services, make_user, make_product, make_order):
        make_user("buyer", balance_cents=50_000)
        make_product()
        order = make_order("buyer", today=YESTERDAY)

        outcome = services.payments.pay_installment(order.id, "buyer", TODAY)

        assert not outcome.commission.calculated
        assert outcome.commission.reason == "NO_REFERRER"

    def test_commission_failure_keeps_payment_then_reconciles(self, db: Session, services: Services, make_user, make_product, make_order):
        make_user("ref")
        make_user("buyer", balance_cents=50_000, referred_by_id="ref")
        make_product()
        order = make_order("buyer", today=YESTERDAY)

        with patch.object(services.wallet, "credit_commission", side_effect=RuntimeError("ledger unavailable")):
            outcome = services.payments.pay_installment(order.id, "buyer", TODAY)

        assert outcome.success
        assert outcome.commission.reason.startswith("FAILED")
        assert services.orders.get_order(order.id).paid_installments == 2
        assert services.wallet.get_balance("buyer")["available_cents"] == 40_000
        assert not _payments(db, order.id)[1].commission_calculated
        assert services.wallet.get_balance("ref")["referral_bonus_cents"] == 2_500

        summary = services.payments.reconcile_commissions()

        assert summary == {"checked": 1, "credited": 1, "skipped": 0, "failed": 0, "total_credited_cents": 2_500}
        assert services.wallet.get_balance("ref")["referral_bonus_cents"] == 5_000
        assert services.payments.reconcile_commissions()["checked"] == 0

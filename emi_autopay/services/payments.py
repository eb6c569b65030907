"""Payment & commission transaction engine.

The engine owns transaction boundaries. Each installment is one unit of work:
lock the order, re-check eligibility and the idempotency guard under the
lock, deduct from the wallet, mark the schedule item PAID, write the payment
record, complete the order if nothing is left, commit. Commission crediting
runs afterwards in its own transaction and never undoes a committed payment.
"""

import logging
import uuid
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from emi_autopay.config import settings
from emi_autopay.domain.commission import calculate_commission, resolve_commission_rate
from emi_autopay.domain.exceptions import (
    DomainException,
    DuplicatePaymentError,
    InsufficientBalanceError,
    InvalidOrderStateError,
    UserNotFoundError,
)
from emi_autopay.domain.installments import idempotency_key
from emi_autopay.domain.models import (
    AutopayOutcome,
    CommissionResult,
    OrderStatus,
    PaymentMethod,
    PaymentOutcome,
    PaymentProof,
)
from emi_autopay.infrastructure.database.models import InstallmentOrder, PaymentRecord
from emi_autopay.infrastructure.database.repositories import (
    AutopayAttemptRepository,
    OrderRepository,
    PaymentRepository,
    UserRepository,
)
from emi_autopay.infrastructure.observability.logging import log_payment_outcome
from emi_autopay.infrastructure.observability.metrics import (
    commission_failure_counter,
    record_commission,
    record_payment,
)
from emi_autopay.services.orders import OrderService
from emi_autopay.services.wallet import WalletService
from emi_autopay.utils.date_utils import local_today

logger = logging.getLogger(__name__)

# Autopay block reasons the user asked for; these land in the history as SKIPPED
USER_SKIP_REASONS = {"PAUSED", "SKIP_DATE"}

# Constraints that only a second payment of the same installment can violate
DUPLICATE_PAYMENT_CONSTRAINTS = (
    "idempotency_key",
    "uq_schedule_installment",
    "payment_schedule_items.installment_number",
)


class PaymentEngine:
    def __init__(self, db: Session, orders: OrderService, wallet: WalletService):
        self.db = db
        self.orders = orders
        self.wallet = wallet
        self.users = UserRepository(db)
        self.order_repo = OrderRepository(db)
        self.payments = PaymentRepository(db)
        self.attempts = AutopayAttemptRepository(db)

    # ------------------------------------------------------------------
    # Installments
    # ------------------------------------------------------------------

    def pay_installment(self, order_id: uuid.UUID, user_id: str, today: Optional[date] = None) -> PaymentOutcome:
        """Manual payment of the next installment; raises typed errors on failure"""
        today = today or local_today()
        try:
            outcome = self._charge_next_installment(order_id, user_id, autopay=False, today=today)
        except DomainException as e:
            self.db.rollback()
            record_payment("manual", _failure_status(e).value)
            log_payment_outcome(str(order_id), user_id, "manual", _failure_status(e).value, 0, reason=e.code)
            raise

        record_payment("manual", outcome.status.value, outcome.amount_cents)
        outcome.commission = self._credit_commission_best_effort(uuid.UUID(outcome.payment_id))
        return outcome

    def process_installment_payment(
        self,
        order_id: uuid.UUID,
        user_id: str,
        autopay: bool = True,
        today: Optional[date] = None,
    ) -> PaymentOutcome:
        """
        Attempt the next installment and report the outcome instead of raising.

        Returns SUCCESS, INSUFFICIENT_BALANCE, SKIPPED (order not eligible
        today or already paid) or FAILED. Autopay attempts are written to
        the order's autopay history.
        """
        today = today or local_today()
        channel = "autopay" if autopay else "manual"

        try:
            outcome = self._charge_next_installment(order_id, user_id, autopay=autopay, today=today)
        except InsufficientBalanceError as e:
            self.db.rollback()
            outcome = PaymentOutcome(
                status=AutopayOutcome.INSUFFICIENT_BALANCE,
                order_id=str(order_id),
                amount_cents=e.required,
                reason=e.message,
            )
        except DuplicatePaymentError as e:
            self.db.rollback()
            outcome = PaymentOutcome(status=AutopayOutcome.SKIPPED, order_id=str(order_id), reason=e.message)
        except DomainException as e:
            self.db.rollback()
            outcome = PaymentOutcome(status=AutopayOutcome.FAILED, order_id=str(order_id), reason=e.message)
        except Exception as e:
            self.db.rollback()
            logger.exception("Installment payment failed", extra={"order_id": str(order_id), "user_id": user_id})
            outcome = PaymentOutcome(status=AutopayOutcome.FAILED, order_id=str(order_id), reason=str(e))

        if autopay and outcome.status != AutopayOutcome.SUCCESS:
            self._record_failed_attempt(order_id, user_id, today, outcome)

        record_payment(channel, outcome.status.value, outcome.amount_cents)
        if not outcome.success:
            log_payment_outcome(str(order_id), user_id, channel, outcome.status.value, outcome.amount_cents, reason=outcome.reason)

        if outcome.success:
            outcome.commission = self._credit_commission_best_effort(uuid.UUID(outcome.payment_id))
        return outcome

    def _charge_next_installment(
        self,
        order_id: uuid.UUID,
        user_id: str,
        autopay: bool,
        today: date,
    ) -> PaymentOutcome:
        """One atomic installment payment. Commits on success, leaves rollback to the caller."""
        order = self.orders.lock_order(order_id, user_id)

        if autopay:
            reason = order.autopay_block_reason(today)
            if reason is not None:
                self.db.rollback()
                return PaymentOutcome(status=AutopayOutcome.SKIPPED, order_id=str(order_id), reason=reason)
        elif not order.can_accept_payment():
            raise InvalidOrderStateError(order.id, order.status, OrderStatus.ACTIVE.value)

        if order.has_paid_on(today):
            raise DuplicatePaymentError(order.id, reason="An installment has already been paid today")

        item = order.next_pending_installment()
        if item is None:
            raise DuplicatePaymentError(order.id, reason="No pending installment left on this order")

        reserve = 0
        if autopay:
            user = self.users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            reserve = user.minimum_balance_lock_cents

        txn = self.wallet.deduct(
            user_id,
            item.amount_cents,
            description=f"Installment {item.installment_number}/{order.total_days} for {order.order_number}",
            meta={"order_id": str(order.id), "installment_number": item.installment_number, "autopay": autopay},
            reserve_cents=reserve,
        )

        payment = self.payments.create_payment(
            order=order,
            amount_cents=item.amount_cents,
            installment_number=item.installment_number,
            method=PaymentMethod.WALLET.value,
            is_autopay=autopay,
            idempotency_key=idempotency_key(str(order.id), user_id, item.installment_number),
            wallet_transaction_id=txn.id,
        )
        order.apply_payment(item, payment, today)
        self._flush_payment(order.id, item.installment_number)

        if autopay:
            order.autopay_last_attempt_date = today
            order.autopay_last_attempt_status = AutopayOutcome.SUCCESS.value
            order.autopay_last_attempt_error = None
            order.autopay_success_count += 1
            self.attempts.record(
                order.id, user_id, today, AutopayOutcome.SUCCESS.value,
                amount_cents=item.amount_cents, payment_id=payment.id,
            )

        completed = order.remaining_cents == 0
        if completed:
            order.mark_completed()

        outcome = PaymentOutcome(
            status=AutopayOutcome.SUCCESS,
            order_id=str(order.id),
            amount_cents=item.amount_cents,
            installment_number=item.installment_number,
            payment_id=str(payment.id),
            order_completed=completed,
        )
        self._commit_payment(order.id, item.installment_number)

        outcome.new_balance_cents = self.wallet.get_balance(user_id)["available_cents"]
        log_payment_outcome(
            outcome.order_id, user_id, "autopay" if autopay else "manual",
            outcome.status.value, outcome.amount_cents, outcome.installment_number,
        )
        return outcome

    def _flush_payment(self, order_id: uuid.UUID, installment_number: int) -> None:
        """An idempotency violation here means the installment was paid concurrently"""
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            if is_duplicate_payment(e):
                raise DuplicatePaymentError(order_id, installment_number)
            raise

    def _commit_payment(self, order_id: uuid.UUID, installment_number: int) -> None:
        self._flush_payment(order_id, installment_number)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if is_duplicate_payment(e):
                raise DuplicatePaymentError(order_id, installment_number)
            raise

    def _record_failed_attempt(self, order_id: uuid.UUID, user_id: str, today: date, outcome: PaymentOutcome) -> None:
        """History entry for a non-successful autopay attempt, in its own transaction"""
        if outcome.status == AutopayOutcome.SKIPPED and outcome.reason not in USER_SKIP_REASONS:
            return

        try:
            order = self.order_repo.get(order_id)
            if order is None:
                return
            order.autopay_last_attempt_date = today
            order.autopay_last_attempt_status = outcome.status.value
            order.autopay_last_attempt_error = outcome.reason
            if outcome.status in (AutopayOutcome.INSUFFICIENT_BALANCE, AutopayOutcome.FAILED):
                order.autopay_failed_count += 1
            self.attempts.record(
                order.id, user_id, today, outcome.status.value,
                amount_cents=outcome.amount_cents, error_message=outcome.reason,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Could not record autopay attempt", extra={"order_id": str(order_id)})

    # ------------------------------------------------------------------
    # First installment
    # ------------------------------------------------------------------

    def pay_first_installment(
        self,
        order_id: uuid.UUID,
        user_id: str,
        proof: PaymentProof,
        today: Optional[date] = None,
    ) -> PaymentOutcome:
        """
        Confirm installment 1 by wallet deduction or an already verified gateway reference.

        On any failure the unit of work is rolled back and the order stays PENDING.
        """
        today = today or local_today()
        try:
            order = self.orders.lock_order(order_id, user_id)
            if order.status != OrderStatus.PENDING.value:
                raise InvalidOrderStateError(order.id, order.status, OrderStatus.PENDING.value)

            wallet_txn_id = None
            if PaymentMethod(proof.method) == PaymentMethod.WALLET:
                item = order.next_pending_installment()
                txn = self.wallet.deduct(
                    user_id,
                    item.amount_cents,
                    description=f"First installment for {order.order_number}",
                    meta={"order_id": str(order.id), "installment_number": item.installment_number},
                )
                wallet_txn_id = txn.id

            payment = self.orders.confirm_first_payment(order_id, user_id, proof, today, wallet_txn_id)
            outcome = PaymentOutcome(
                status=AutopayOutcome.SUCCESS,
                order_id=str(order_id),
                amount_cents=payment.amount_cents,
                installment_number=payment.installment_number,
                payment_id=str(payment.id),
                order_completed=order.status == OrderStatus.COMPLETED.value,
            )
            self._commit_payment(order_id, 1)
        except IntegrityError as e:
            self.db.rollback()
            if not is_duplicate_payment(e):
                record_payment("first", AutopayOutcome.FAILED.value)
                raise
            record_payment("first", AutopayOutcome.SKIPPED.value)
            raise DuplicatePaymentError(order_id, 1)
        except DomainException as e:
            self.db.rollback()
            e.details.setdefault("order_id", str(order_id))
            record_payment("first", _failure_status(e).value)
            raise

        record_payment("first", outcome.status.value, outcome.amount_cents)
        outcome.new_balance_cents = self.wallet.get_balance(user_id)["available_cents"]
        log_payment_outcome(outcome.order_id, user_id, "first", outcome.status.value, outcome.amount_cents, 1)
        outcome.commission = self._credit_commission_best_effort(uuid.UUID(outcome.payment_id))
        return outcome

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    def calculate_and_credit_commission(self, order: InstallmentOrder, payment: PaymentRecord) -> CommissionResult:
        """
        Credit the referrer for one payment, at most once.

        Rate: order override, then product override, then the default.
        Does not commit.
        """
        if payment.commission_calculated:
            return CommissionResult(
                calculated=False,
                amount_cents=payment.commission_amount_cents,
                percentage=payment.commission_percentage or 0.0,
                reason="ALREADY_CALCULATED",
            )
        if not order.referrer_id:
            return CommissionResult(calculated=False, reason="NO_REFERRER")
        if payment.amount_cents <= 0:
            return CommissionResult(calculated=False, reason="NON_POSITIVE_AMOUNT")

        percentage = resolve_commission_rate(
            order.commission_percentage,
            order.product_commission_percentage,
            settings.default_commission_percentage,
        )
        amount = calculate_commission(payment.amount_cents, percentage)
        if amount <= 0:
            return CommissionResult(calculated=False, percentage=percentage, reason="NON_POSITIVE_COMMISSION")

        split, entries = self.wallet.credit_commission(
            order.referrer_id,
            amount,
            meta={
                "order_id": str(order.id),
                "payment_id": str(payment.id),
                "buyer_id": order.user_id,
                "percentage": percentage,
            },
        )

        payment.commission_calculated = True
        payment.commission_amount_cents = amount
        payment.commission_percentage = percentage
        payment.commission_credited_to_referrer = True
        payment.commission_transaction_id = entries[0].id
        order.total_commission_cents += amount

        return CommissionResult(
            calculated=True,
            amount_cents=amount,
            percentage=percentage,
            available_cents=split.available_cents,
            locked_cents=split.locked_cents,
        )

    def _credit_commission_best_effort(self, payment_id: uuid.UUID) -> CommissionResult:
        """Commission in its own transaction; failures are logged for reconciliation"""
        try:
            payment = self.payments.get_for_update(payment_id)
            order = self.order_repo.get_for_update(payment.order_id)
            result = self.calculate_and_credit_commission(order, payment)
            if result.calculated:
                self.db.commit()
                record_commission(result.available_cents, result.locked_cents)
            else:
                self.db.rollback()
            return result
        except Exception as e:
            self.db.rollback()
            commission_failure_counter.inc()
            logger.exception("Commission credit failed", extra={"payment_id": str(payment_id)})
            return CommissionResult(calculated=False, reason=f"FAILED: {e}")

    def reconcile_commissions(self, limit: int = 100) -> Dict[str, Any]:
        """Retry commission for completed payments on referred orders that never got one"""
        payment_ids = self.payments.list_missing_commission(limit)
        credited = 0
        skipped = 0
        failed = 0
        total_cents = 0

        for payment_id in payment_ids:
            result = self._credit_commission_best_effort(payment_id)
            if result.calculated:
                credited += 1
                total_cents += result.amount_cents
            elif result.reason and result.reason.startswith("FAILED"):
                failed += 1
            else:
                skipped += 1

        logger.info(
            "Commission reconciliation completed",
            extra={"checked": len(payment_ids), "credited": credited, "skipped": skipped, "failed": failed},
        )
        return {
            "checked": len(payment_ids),
            "credited": credited,
            "skipped": skipped,
            "failed": failed,
            "total_credited_cents": total_cents,
        }


def _failure_status(error: DomainException) -> AutopayOutcome:
    if isinstance(error, InsufficientBalanceError):
        return AutopayOutcome.INSUFFICIENT_BALANCE
    if isinstance(error, DuplicatePaymentError):
        return AutopayOutcome.SKIPPED
    return AutopayOutcome.FAILED


def is_duplicate_payment(error: IntegrityError) -> bool:
    """True when the violated constraint guards against paying an installment twice"""
    message = str(error.orig)
    return any(name in message for name in DUPLICATE_PAYMENT_CONSTRAINTS)

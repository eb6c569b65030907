"""Order & schedule manager"""

import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from emi_autopay.config import settings
from emi_autopay.domain.exceptions import (
    InvalidOrderStateError,
    OrderNotFoundError,
    ProductNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from emi_autopay.domain.installments import (
    calculate_daily_amount,
    generate_payment_schedule,
    idempotency_key,
    validate_plan,
)
from emi_autopay.domain.models import (
    DeliveryAddress,
    OrderStatus,
    PaymentMethod,
    PaymentProof,
    ProductSnapshot,
    ReferralAssignment,
    ScheduleStatus,
)
from emi_autopay.infrastructure.database.models import InstallmentOrder, PaymentRecord, PaymentScheduleItem
from emi_autopay.infrastructure.database.repositories import (
    OrderRepository,
    PaymentRepository,
    ProductRepository,
    UserRepository,
)
from emi_autopay.utils.date_utils import local_today, utc_now


class OrderService:
    """Creates orders, confirms the first installment and owns order lifecycle transitions.

    Mutations flush but never commit; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.products = ProductRepository(db)
        self.orders = OrderRepository(db)
        self.payments = PaymentRepository(db)

    def resolve_product(self, product_id: str) -> ProductSnapshot:
        """Snapshot of a catalog product that can currently be ordered"""
        product = self.products.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if not product.is_available:
            raise ValidationError("Product is not available", {"product_id": product_id})
        return ProductSnapshot(
            product_id=product.id,
            name=product.name,
            price_cents=product.price_cents,
            commission_percentage=product.referral_commission_percentage,
        )

    def resolve_referral(self, user_id: str) -> Optional[ReferralAssignment]:
        """Default referral lookup: whoever referred the buyer, no order-level override"""
        user = self.users.get(user_id)
        if user is None or not user.referred_by_id or user.referred_by_id == user_id:
            return None
        return ReferralAssignment(referrer_id=user.referred_by_id)

    def create_order(
        self,
        user_id: str,
        product: ProductSnapshot,
        total_days: int,
        payment_method: str,
        delivery_address: DeliveryAddress,
        daily_amount_cents: Optional[int] = None,
        referral: Optional[ReferralAssignment] = None,
        coupon_code: Optional[str] = None,
        variant_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> InstallmentOrder:
        """
        Create a PENDING order with one schedule item per day from ``today``.

        When ``daily_amount_cents`` is omitted it is the price divided by
        the days, rounded up to a whole currency unit.
        """
        if self.users.get(user_id) is None:
            raise UserNotFoundError(user_id)

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(
                "Payment method must be GATEWAY or WALLET",
                {"payment_method": payment_method},
            )

        if daily_amount_cents is None:
            daily_amount_cents = calculate_daily_amount(product.price_cents, total_days)

        validate_plan(
            product.price_cents,
            total_days,
            daily_amount_cents,
            min_days=settings.min_total_days,
            min_daily_cents=settings.min_daily_amount_cents,
        )

        if referral is not None and referral.referrer_id == user_id:
            referral = None

        today = today or local_today()
        installments = generate_payment_schedule(product.price_cents, total_days, daily_amount_cents, today)

        return self.orders.create_order(
            user_id=user_id,
            product=product,
            total_days=total_days,
            daily_payment_cents=daily_amount_cents,
            payment_method=method.value,
            delivery_address=delivery_address,
            installments=installments,
            referral=referral,
            coupon_code=coupon_code,
            variant_id=variant_id,
        )

    def get_order(self, order_id: uuid.UUID, user_id: Optional[str] = None) -> InstallmentOrder:
        order = self.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(order_id)
        return order

    def lock_order(self, order_id: uuid.UUID, user_id: Optional[str] = None) -> InstallmentOrder:
        """Row-lock the order for the current transaction"""
        order = self.orders.get_for_update(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(order_id)
        return order

    def confirm_first_payment(
        self,
        order_id: uuid.UUID,
        user_id: str,
        proof: PaymentProof,
        today: Optional[date] = None,
        wallet_transaction_id: Optional[uuid.UUID] = None,
    ) -> PaymentRecord:
        """
        Mark installment 1 PAID and move the order PENDING -> ACTIVE.

        The only way out of PENDING. Commission is left to the payment
        engine once this unit of work has committed.
        """
        today = today or local_today()
        order = self.lock_order(order_id, user_id)
        if order.status != OrderStatus.PENDING.value:
            raise InvalidOrderStateError(order.id, order.status, OrderStatus.PENDING.value)

        method = PaymentMethod(proof.method)
        if method == PaymentMethod.GATEWAY and not proof.gateway_reference:
            raise ValidationError("Gateway payments require a gateway reference", {"order_id": str(order.id)})
        if method == PaymentMethod.WALLET and wallet_transaction_id is None:
            raise ValidationError("Wallet payments require a wallet deduction", {"order_id": str(order.id)})

        item = order.next_pending_installment()
        if item is None or item.installment_number != 1:
            raise InvalidOrderStateError(order.id, order.status, "first installment pending")

        payment = self.payments.create_payment(
            order=order,
            amount_cents=item.amount_cents,
            installment_number=item.installment_number,
            method=method.value,
            is_autopay=False,
            idempotency_key=idempotency_key(str(order.id), order.user_id, item.installment_number),
            gateway_reference=proof.gateway_reference,
            wallet_transaction_id=wallet_transaction_id,
        )

        order.apply_payment(item, payment, today)
        order.status = OrderStatus.ACTIVE.value
        order.first_payment_id = payment.id
        if order.remaining_cents == 0:
            order.mark_completed()

        self.db.flush()
        return payment

    def cancel_order(
        self,
        order_id: uuid.UUID,
        user_id: str,
        reason: str,
        cancelled_by: Optional[str] = None,
    ) -> InstallmentOrder:
        """ACTIVE|PENDING -> CANCELLED; remaining schedule items are voided"""
        order = self.lock_order(order_id, user_id)
        if order.status not in (OrderStatus.ACTIVE.value, OrderStatus.PENDING.value):
            raise InvalidOrderStateError(order.id, order.status, "ACTIVE or PENDING")

        for item in order.schedule:
            if item.status == ScheduleStatus.PENDING.value:
                item.status = ScheduleStatus.SKIPPED.value

        order.status = OrderStatus.CANCELLED.value
        order.cancelled_at = utc_now()
        order.cancelled_by = cancelled_by or user_id
        order.cancellation_reason = reason
        order.autopay_enabled = False
        self.db.flush()
        return order

    def list_user_orders(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[InstallmentOrder], int]:
        if status is not None and status not in {s.value for s in OrderStatus}:
            raise ValidationError("Unknown order status", {"status": status})
        return self.orders.list_for_user(user_id, status=status, limit=limit, offset=offset)

    def payment_schedule(self, order_id: uuid.UUID, user_id: str) -> List[PaymentScheduleItem]:
        return list(self.get_order(order_id, user_id).schedule)

    def order_summary(self, order: InstallmentOrder) -> Dict[str, Any]:
        next_item = order.next_pending_installment()
        remaining_installments = sum(1 for i in order.schedule if i.status == ScheduleStatus.PENDING.value)
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "status": order.status,
            "product_name": order.product_name,
            "product_price_cents": order.product_price_cents,
            "daily_payment_cents": order.daily_payment_cents,
            "total_days": order.total_days,
            "paid_installments": order.paid_installments,
            "remaining_installments": remaining_installments,
            "total_paid_cents": order.total_paid_cents,
            "remaining_cents": order.remaining_cents,
            "progress_percent": order.progress_percent(),
            "next_due_date": next_item.due_date if next_item else None,
            "next_amount_cents": next_item.amount_cents if next_item else None,
            "can_make_payment": order.can_accept_payment(),
            "autopay_enabled": order.autopay_enabled,
            "autopay_priority": order.autopay_priority,
        }

"""/v1/orders - installment order lifecycle and manual payments"""

import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from emi_autopay.api.dependencies import get_request_id, get_services, get_today, parse_order_id
from emi_autopay.api.v1.schemas import (
    CancelOrderRequest,
    CommissionSchema,
    ConfirmPaymentRequest,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderListResponse,
    OrderResponse,
    OrderSummaryResponse,
    PaymentResponse,
    ScheduleItemSchema,
    ScheduleResponse,
    UserActionRequest,
)
from emi_autopay.domain.exceptions import DomainException, ValidationError
from emi_autopay.domain.models import DeliveryAddress, PaymentMethod, PaymentOutcome, PaymentProof
from emi_autopay.infrastructure.database.models import InstallmentOrder, PaymentScheduleItem
from emi_autopay.services.container import Services

router = APIRouter()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def order_to_response(order: InstallmentOrder) -> OrderResponse:
    return OrderResponse(
        order_id=str(order.id),
        order_number=order.order_number,
        user_id=order.user_id,
        product_id=order.product_id,
        product_name=order.product_name,
        product_price_cents=order.product_price_cents,
        total_days=order.total_days,
        daily_payment_cents=order.daily_payment_cents,
        paid_installments=order.paid_installments,
        total_paid_cents=order.total_paid_cents,
        remaining_cents=order.remaining_cents,
        progress_percent=order.progress_percent(),
        status=order.status,
        payment_method=order.payment_method,
        delivery_address=order.delivery_address or {},
        referrer_id=order.referrer_id,
        total_commission_cents=order.total_commission_cents,
        autopay_enabled=order.autopay_enabled,
        autopay_priority=order.autopay_priority,
        autopay_paused_until=order.autopay_paused_until,
        skip_dates=[entry.skip_date for entry in order.skip_dates],
        coupon_code=order.coupon_code,
        variant_id=order.variant_id,
        created_at=order.created_at.isoformat(),
        completed_at=_iso(order.completed_at),
        cancelled_at=_iso(order.cancelled_at),
        cancellation_reason=order.cancellation_reason,
    )


def schedule_item_to_schema(item: PaymentScheduleItem) -> ScheduleItemSchema:
    return ScheduleItemSchema(
        installment_number=item.installment_number,
        due_date=item.due_date,
        amount_cents=item.amount_cents,
        status=item.status,
        paid_date=item.paid_date,
        payment_id=str(item.payment_id) if item.payment_id else None,
    )


def outcome_to_response(outcome: PaymentOutcome) -> PaymentResponse:
    commission = None
    if outcome.commission is not None:
        c = outcome.commission
        commission = CommissionSchema(
            calculated=c.calculated,
            amount_cents=c.amount_cents,
            percentage=c.percentage,
            available_cents=c.available_cents,
            locked_cents=c.locked_cents,
            reason=c.reason,
        )
    return PaymentResponse(
        status=outcome.status.value,
        order_id=outcome.order_id,
        amount_cents=outcome.amount_cents,
        installment_number=outcome.installment_number,
        payment_id=outcome.payment_id,
        new_balance_cents=outcome.new_balance_cents,
        order_completed=outcome.order_completed,
        reason=outcome.reason,
        commission=commission,
    )


@router.post("/orders", response_model=CreateOrderResponse, status_code=201)
def create_order(
    body: CreateOrderRequest,
    request: Request,
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    """
    Create an installment order.

    Flow:
    1. Snapshot the product and resolve the buyer's referrer
    2. Validate the plan and persist a PENDING order with its schedule
    3. WALLET orders: charge installment 1 from the wallet right away;
       on failure the order stays PENDING and the error is returned alongside it
    """
    request_id = get_request_id(request)
    db = services.db

    try:
        product = services.orders.resolve_product(body.product_id)
        order = services.orders.create_order(
            user_id=body.user_id,
            product=product,
            total_days=body.total_days,
            payment_method=body.payment_method,
            delivery_address=DeliveryAddress(**body.delivery_address.model_dump()),
            daily_amount_cents=body.daily_amount_cents,
            referral=services.orders.resolve_referral(body.user_id),
            coupon_code=body.coupon_code,
            variant_id=body.variant_id,
            today=today,
        )
        order_id = order.id
        db.commit()
    except DomainException:
        db.rollback()
        raise

    logging.info(
        "Order created",
        extra={"request_id": request_id, "order_id": str(order_id), "user_id": body.user_id},
    )

    first_payment = None
    first_payment_error = None
    if body.payment_method == PaymentMethod.WALLET.value:
        try:
            outcome = services.payments.pay_first_installment(
                order_id, body.user_id, PaymentProof(method=PaymentMethod.WALLET), today
            )
            first_payment = outcome_to_response(outcome)
        except DomainException as e:
            logging.warning(f"First wallet payment failed: {e.message}", extra={"request_id": request_id})
            first_payment_error = e.to_dict()

    order = services.orders.get_order(order_id)
    return CreateOrderResponse(
        order=order_to_response(order),
        first_payment=first_payment,
        first_payment_error=first_payment_error,
    )


@router.get("/orders", response_model=OrderListResponse)
def list_orders(
    user_id: str = Query(..., min_length=1),
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    orders, total = services.orders.list_user_orders(user_id, status=status, limit=limit, offset=offset)
    return OrderListResponse(
        orders=[order_to_response(o) for o in orders],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/orders/{order_id}", response_model=OrderSummaryResponse)
def get_order(
    order_id: uuid.UUID = Depends(parse_order_id),
    user_id: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
):
    """Order details with progress summary"""
    order = services.orders.get_order(order_id, user_id)
    summary = services.orders.order_summary(order)
    return OrderSummaryResponse(
        order=order_to_response(order),
        remaining_installments=summary["remaining_installments"],
        next_due_date=summary["next_due_date"],
        next_amount_cents=summary["next_amount_cents"],
        can_make_payment=summary["can_make_payment"],
    )


@router.get("/orders/{order_id}/schedule", response_model=ScheduleResponse)
def get_schedule(
    order_id: uuid.UUID = Depends(parse_order_id),
    user_id: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
):
    items = services.orders.payment_schedule(order_id, user_id)
    return ScheduleResponse(order_id=str(order_id), installments=[schedule_item_to_schema(i) for i in items])


@router.post("/orders/{order_id}/confirm-payment", response_model=PaymentResponse)
def confirm_payment(
    body: ConfirmPaymentRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    """Confirm installment 1 from a verified gateway reference or the wallet"""
    try:
        method = PaymentMethod(body.method)
    except ValueError:
        raise ValidationError("Payment method must be GATEWAY or WALLET", {"method": body.method})

    proof = PaymentProof(method=method, gateway_reference=body.gateway_reference)
    outcome = services.payments.pay_first_installment(order_id, body.user_id, proof, today)
    return outcome_to_response(outcome)


@router.post("/orders/{order_id}/pay", response_model=PaymentResponse)
def pay_installment(
    body: UserActionRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    """Pay the next pending installment from the wallet"""
    outcome = services.payments.pay_installment(order_id, body.user_id, today)
    return outcome_to_response(outcome)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(
    body: CancelOrderRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
):
    db = services.db
    try:
        order = services.orders.cancel_order(order_id, body.user_id, body.reason)
        db.commit()
    except DomainException:
        db.rollback()
        raise
    return order_to_response(order)

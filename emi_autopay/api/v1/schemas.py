"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------


class DeliveryAddressSchema(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=5)
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=3)


class CreateOrderRequest(BaseModel):
    """Request body for POST /v1/orders"""

    user_id: str = Field(..., min_length=1, description="User identifier")
    product_id: str = Field(..., min_length=1)
    total_days: int = Field(..., ge=1, description="Number of daily installments")
    daily_amount_cents: Optional[int] = Field(None, gt=0, description="Omit to derive from price and days")
    payment_method: str = Field(..., description="GATEWAY or WALLET")
    delivery_address: DeliveryAddressSchema
    coupon_code: Optional[str] = None
    variant_id: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    """Request body for POST /v1/orders/{order_id}/confirm-payment"""

    user_id: str = Field(..., min_length=1)
    method: str = Field(..., description="GATEWAY or WALLET")
    gateway_reference: Optional[str] = None


class UserActionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class CancelOrderRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)


class ScheduleItemSchema(BaseModel):
    """Single day in a payment schedule"""

    model_config = ConfigDict(from_attributes=True)

    installment_number: int
    due_date: date
    amount_cents: int
    status: str
    paid_date: Optional[date] = None
    payment_id: Optional[str] = None


class OrderResponse(BaseModel):
    order_id: str
    order_number: str
    user_id: str
    product_id: str
    product_name: str
    product_price_cents: int
    total_days: int
    daily_payment_cents: int
    paid_installments: int
    total_paid_cents: int
    remaining_cents: int
    progress_percent: float
    status: str
    payment_method: str
    delivery_address: Dict[str, Any]
    referrer_id: Optional[str] = None
    total_commission_cents: int
    autopay_enabled: bool
    autopay_priority: int
    autopay_paused_until: Optional[date] = None
    skip_dates: List[date] = []
    coupon_code: Optional[str] = None
    variant_id: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    limit: int
    offset: int


class OrderSummaryResponse(BaseModel):
    order: OrderResponse
    remaining_installments: int
    next_due_date: Optional[date] = None
    next_amount_cents: Optional[int] = None
    can_make_payment: bool


class ScheduleResponse(BaseModel):
    order_id: str
    installments: List[ScheduleItemSchema]


class CommissionSchema(BaseModel):
    calculated: bool
    amount_cents: int
    percentage: float
    available_cents: int
    locked_cents: int
    reason: Optional[str] = None


class PaymentResponse(BaseModel):
    status: str
    order_id: str
    amount_cents: int
    installment_number: Optional[int] = None
    payment_id: Optional[str] = None
    new_balance_cents: Optional[int] = None
    order_completed: bool = False
    reason: Optional[str] = None
    commission: Optional[CommissionSchema] = None


class CreateOrderResponse(BaseModel):
    """Response for POST /v1/orders; WALLET orders carry the first payment attempt"""

    order: OrderResponse
    first_payment: Optional[PaymentResponse] = None
    first_payment_error: Optional[Dict[str, Any]] = None


# ----------------------------------------------------------------------
# Autopay
# ----------------------------------------------------------------------


class EnableAutopayRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    priority: Optional[int] = Field(None, ge=1, le=100)


class PriorityRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    priority: int = Field(..., ge=1, le=100)


class PauseRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    pause_until: date


class SkipDatesRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    dates: List[date] = Field(..., min_length=1, max_length=10)


class SkipDatesResponse(BaseModel):
    order_id: str
    skip_dates: List[date]


class AutopayOrderResponse(BaseModel):
    order_id: str
    autopay_enabled: bool
    autopay_priority: int
    autopay_paused_until: Optional[date] = None


class BulkAutopayResponse(BaseModel):
    user_id: str
    enabled: bool
    orders_updated: int


class AutopaySettingsSchema(BaseModel):
    enabled: bool
    time_preference: str
    minimum_balance_lock_cents: int
    low_balance_threshold_cents: int
    send_daily_reminder: bool
    reminder_hours_before: int
    notify_autopay_success: bool
    notify_autopay_failed: bool
    notify_low_balance: bool
    notify_daily_reminder: bool


class UpdateSettingsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    enabled: Optional[bool] = None
    time_preference: Optional[str] = None
    minimum_balance_lock_cents: Optional[int] = None
    low_balance_threshold_cents: Optional[int] = None
    send_daily_reminder: Optional[bool] = None
    reminder_hours_before: Optional[int] = None
    notify_autopay_success: Optional[bool] = None
    notify_autopay_failed: Optional[bool] = None
    notify_low_balance: Optional[bool] = None
    notify_daily_reminder: Optional[bool] = None


class ForecastDaySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    day_number: int
    start_balance_cents: int
    deduction_cents: int
    end_balance_cents: int
    order_ids: List[str]
    insufficient_funds: bool
    shortfall_cents: int


class ForecastResponse(BaseModel):
    user_id: str
    days: int
    current_balance_cents: int
    minimum_balance_lock_cents: int
    total_due_cents: int
    days_until_insufficient: Optional[int] = None
    insufficient_days: int
    forecast: List[ForecastDaySchema]


class AutopayAttemptSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    attempt_date: date
    status: str
    amount_cents: int
    error_message: Optional[str] = None
    payment_id: Optional[str] = None


class HistoryResponse(BaseModel):
    """Response for GET /v1/autopay/history"""

    user_id: str
    items: List[AutopayAttemptSchema]
    page: int
    limit: int
    total: int
    pages: int


class MilestoneSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    days: int = Field(..., ge=1)
    reward_cents: int = Field(..., ge=0)
    badge: str = Field(..., min_length=1)
    description: str = ""
    is_active: bool = True


class StreakResponse(BaseModel):
    current: int
    longest: int
    last_paid_date: Optional[date] = None
    is_active: bool
    total_rewards_cents: int
    next_milestone: Optional[MilestoneSchema] = None
    days_to_next_milestone: Optional[int] = None
    milestones_achieved: List[Dict[str, Any]]


# ----------------------------------------------------------------------
# Wallet
# ----------------------------------------------------------------------


class BalanceResponse(BaseModel):
    user_id: str
    available_cents: int
    locked_cents: int
    total_cents: int
    referral_bonus_cents: int


class AddMoneyRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)
    source: str = "DEPOSIT"
    description: Optional[str] = None


class WalletTransactionSchema(BaseModel):
    id: str
    type: str
    pool: str
    amount_cents: int
    balance_after_cents: int
    description: str
    meta: Optional[Dict[str, Any]] = None
    created_at: str


class TransactionListResponse(BaseModel):
    user_id: str
    transactions: List[WalletTransactionSchema]
    total: int
    limit: int
    offset: int


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


class StreakConfigRequest(BaseModel):
    admin_id: Optional[str] = None
    enabled: bool = False
    milestones: List[MilestoneSchema] = []


class StreakConfigUpdateRequest(BaseModel):
    admin_id: Optional[str] = None
    enabled: Optional[bool] = None
    milestones: Optional[List[MilestoneSchema]] = None


class StreakEnabledRequest(BaseModel):
    admin_id: Optional[str] = None
    enabled: bool


class MilestoneRequest(MilestoneSchema):
    admin_id: Optional[str] = None


class MilestoneUpdateRequest(BaseModel):
    admin_id: Optional[str] = None
    reward_cents: Optional[int] = Field(None, ge=0)
    badge: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class StreakConfigResponse(BaseModel):
    enabled: bool
    milestones: List[MilestoneSchema]
    updated_by: Optional[str] = None
    updated_at: Optional[str] = None


class TriggerRequest(BaseModel):
    run_date: Optional[date] = None


class BatchRunResponse(BaseModel):
    slot_id: str
    run_date: date
    duration_ms: float
    users: int
    total_processed: int
    total_success: int
    total_failed: int
    total_skipped: int
    total_insufficient_balance: int


class SlotStatusSchema(BaseModel):
    slot_id: str
    cron: str
    kind: str
    active: bool
    target_slot: Optional[str] = None
    description: str
    scheduled: bool
    next_run_time: Optional[str] = None

"""SQLAlchemy ORM models for orders, schedules, wallets, payments and streaks"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from emi_autopay.domain.models import OrderStatus, ScheduleStatus
from emi_autopay.utils.date_utils import utc_now

Base = declarative_base()


class User(Base):
    """Customer account: wallet balances, autopay preferences and streak state"""

    __tablename__ = "users"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=True)
    referred_by_id = Column(Text, ForeignKey("users.id"), nullable=True)

    # Wallet
    balance_cents = Column(BigInteger, nullable=False, default=0)
    hold_balance_cents = Column(BigInteger, nullable=False, default=0)
    referral_bonus_cents = Column(BigInteger, nullable=False, default=0)

    # Autopay settings
    autopay_enabled = Column(Boolean, nullable=False, default=False, index=True)
    autopay_time_preference = Column(Text, nullable=False, default="MORNING_6AM")
    minimum_balance_lock_cents = Column(BigInteger, nullable=False, default=0)
    low_balance_threshold_cents = Column(BigInteger, nullable=False, default=50_000)
    send_daily_reminder = Column(Boolean, nullable=False, default=True)
    reminder_hours_before = Column(Integer, nullable=False, default=1)

    # Notification preferences
    notify_autopay_success = Column(Boolean, nullable=False, default=True)
    notify_autopay_failed = Column(Boolean, nullable=False, default=True)
    notify_low_balance = Column(Boolean, nullable=False, default=True)
    notify_daily_reminder = Column(Boolean, nullable=False, default=True)

    # Payment streak
    streak_current = Column(Integer, nullable=False, default=0)
    streak_longest = Column(Integer, nullable=False, default=0)
    streak_last_paid_date = Column(Date, nullable=True)
    streak_total_rewards_cents = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    achievements = relationship("StreakAchievement", back_populates="user", cascade="all, delete-orphan")


class Product(Base):
    """Read-only view of the external product catalog"""

    __tablename__ = "products"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    referral_commission_percentage = Column(Float, nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)


class InstallmentOrder(Base):
    """Order paid through a daily installment schedule"""

    __tablename__ = "installment_orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_number = Column(Text, nullable=False, unique=True)
    user_id = Column(Text, ForeignKey("users.id"), nullable=False, index=True)

    # Product snapshot
    product_id = Column(Text, nullable=False, index=True)
    product_name = Column(Text, nullable=False)
    product_price_cents = Column(BigInteger, nullable=False)
    variant_id = Column(Text, nullable=True)
    coupon_code = Column(Text, nullable=True)

    # Plan
    total_days = Column(Integer, nullable=False)
    daily_payment_cents = Column(BigInteger, nullable=False)
    paid_installments = Column(Integer, nullable=False, default=0)
    total_paid_cents = Column(BigInteger, nullable=False, default=0)
    remaining_cents = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_method = Column(Text, nullable=False)
    first_payment_id = Column(UUID(as_uuid=True), nullable=True)
    last_payment_date = Column(Date, nullable=True)

    # Delivery
    delivery_address = Column(JSON, nullable=False, default=dict)

    # Referral commission
    referrer_id = Column(Text, ForeignKey("users.id"), nullable=True, index=True)
    commission_percentage = Column(Float, nullable=True)
    product_commission_percentage = Column(Float, nullable=True)
    total_commission_cents = Column(BigInteger, nullable=False, default=0)

    # Autopay
    autopay_enabled = Column(Boolean, nullable=False, default=False, index=True)
    autopay_priority = Column(Integer, nullable=False, default=1)
    autopay_paused_until = Column(Date, nullable=True)
    autopay_enabled_at = Column(DateTime(timezone=True), nullable=True)
    autopay_last_attempt_date = Column(Date, nullable=True)
    autopay_last_attempt_status = Column(Text, nullable=True)
    autopay_last_attempt_error = Column(Text, nullable=True)
    autopay_success_count = Column(Integer, nullable=False, default=0)
    autopay_failed_count = Column(Integer, nullable=False, default=0)

    # Lifecycle
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    schedule = relationship(
        "PaymentScheduleItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PaymentScheduleItem.installment_number",
    )
    skip_dates = relationship(
        "OrderSkipDate",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderSkipDate.skip_date",
    )
    payments = relationship("PaymentRecord", back_populates="order", cascade="all, delete-orphan")

    def is_fully_paid(self) -> bool:
        return self.total_paid_cents >= self.product_price_cents

    def recompute_remaining(self) -> None:
        self.remaining_cents = max(0, self.product_price_cents - self.total_paid_cents)

    def progress_percent(self) -> float:
        if self.product_price_cents == 0:
            return 0.0
        return round(self.total_paid_cents * 100 / self.product_price_cents, 2)

    def next_pending_installment(self) -> Optional["PaymentScheduleItem"]:
        for item in self.schedule:
            if item.status == ScheduleStatus.PENDING.value:
                return item
        return None

    def can_accept_payment(self) -> bool:
        return self.status == OrderStatus.ACTIVE.value and self.remaining_cents > 0

    def has_paid_on(self, day: date) -> bool:
        return self.last_payment_date is not None and self.last_payment_date >= day

    def is_skip_date(self, day: date) -> bool:
        return any(s.skip_date == day for s in self.skip_dates)

    def autopay_block_reason(self, today: date) -> Optional[str]:
        """First reason autopay cannot charge this order today, or None"""
        if not self.can_accept_payment():
            return "ORDER_NOT_PAYABLE"
        if not self.autopay_enabled:
            return "AUTOPAY_DISABLED"
        if self.autopay_paused_until is not None and self.autopay_paused_until >= today:
            return "PAUSED"
        if self.is_skip_date(today):
            return "SKIP_DATE"
        if self.has_paid_on(today):
            return "ALREADY_PAID_TODAY"
        return None

    def can_process_autopay(self, today: date) -> bool:
        return self.autopay_block_reason(today) is None

    def apply_payment(self, item: "PaymentScheduleItem", payment: "PaymentRecord", paid_on: date) -> None:
        """Mark one schedule item PAID and roll the order totals forward"""
        item.status = ScheduleStatus.PAID.value
        item.paid_date = paid_on
        item.payment_id = payment.id
        self.paid_installments += 1
        self.total_paid_cents += item.amount_cents
        self.last_payment_date = paid_on
        self.recompute_remaining()

    def mark_completed(self, now: Optional[datetime] = None) -> None:
        self.status = OrderStatus.COMPLETED.value
        self.completed_at = now or utc_now()


class PaymentScheduleItem(Base):
    """One calendar day of an order's schedule"""

    __tablename__ = "payment_schedule_items"
    __table_args__ = (
        UniqueConstraint("order_id", "installment_number", name="uq_schedule_installment"),
        UniqueConstraint("order_id", "due_date", name="uq_schedule_due_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("installment_orders.id", ondelete="CASCADE"), nullable=False)
    installment_number = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default=ScheduleStatus.PENDING.value)
    paid_date = Column(Date, nullable=True)
    payment_id = Column(UUID(as_uuid=True), nullable=True)

    order = relationship("InstallmentOrder", back_populates="schedule")


class OrderSkipDate(Base):
    __tablename__ = "order_skip_dates"
    __table_args__ = (UniqueConstraint("order_id", "skip_date", name="uq_order_skip_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("installment_orders.id", ondelete="CASCADE"), nullable=False)
    skip_date = Column(Date, nullable=False)

    order = relationship("InstallmentOrder", back_populates="skip_dates")


class PaymentRecord(Base):
    """Immutable log of one installment charge; commission fields are attached once"""

    __tablename__ = "payment_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_number = Column(Text, nullable=False, unique=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("installment_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Text, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    installment_number = Column(Integer, nullable=False)
    method = Column(Text, nullable=False)
    status = Column(Text, nullable=False, index=True)
    is_autopay = Column(Boolean, nullable=False, default=False)
    idempotency_key = Column(Text, nullable=True, unique=True)
    gateway_reference = Column(Text, nullable=True)
    wallet_transaction_id = Column(UUID(as_uuid=True), nullable=True)

    commission_calculated = Column(Boolean, nullable=False, default=False)
    commission_amount_cents = Column(BigInteger, nullable=False, default=0)
    commission_percentage = Column(Float, nullable=True)
    commission_credited_to_referrer = Column(Boolean, nullable=False, default=False)
    commission_transaction_id = Column(UUID(as_uuid=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True, index=True)

    order = relationship("InstallmentOrder", back_populates="payments")


class WalletTransaction(Base):
    """Append-only wallet ledger entry"""

    __tablename__ = "wallet_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Text, nullable=False, index=True)
    pool = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)  # negative for deductions
    balance_after_cents = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=False, default="")
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)


class AutopayAttempt(Base):
    """Autopay history entry; one per order, day and outcome"""

    __tablename__ = "autopay_attempts"
    __table_args__ = (UniqueConstraint("order_id", "attempt_date", "status", name="uq_autopay_attempt"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("installment_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Text, nullable=False, index=True)
    attempt_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    payment_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class StreakConfig(Base):
    """Singleton admin configuration for streak rewards"""

    __tablename__ = "streak_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_key = Column(Text, nullable=False, unique=True, default="STREAK_CONFIG")
    enabled = Column(Boolean, nullable=False, default=False)
    updated_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    milestones = relationship(
        "StreakMilestoneConfig",
        back_populates="config",
        cascade="all, delete-orphan",
        order_by="StreakMilestoneConfig.days",
    )


class StreakMilestoneConfig(Base):
    __tablename__ = "streak_milestones"
    __table_args__ = (UniqueConstraint("config_id", "days", name="uq_streak_milestone_days"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_id = Column(Integer, ForeignKey("streak_config.id", ondelete="CASCADE"), nullable=False)
    days = Column(Integer, nullable=False)
    reward_cents = Column(BigInteger, nullable=False)
    badge = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)

    config = relationship("StreakConfig", back_populates="milestones")


class StreakAchievement(Base):
    """Milestone reward granted to a user; at most one per user and milestone"""

    __tablename__ = "streak_achievements"
    __table_args__ = (UniqueConstraint("user_id", "days", name="uq_streak_achievement"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    days = Column(Integer, nullable=False)
    reward_cents = Column(BigInteger, nullable=False)
    achieved_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    user = relationship("User", back_populates="achievements")


class OutboundNotification(Base):
    """Notification delivery log with retry tracking"""

    __tablename__ = "outbound_notification"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    target_url = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

"""Data access layer for users, orders, payments, wallet ledger and streaks"""

import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from emi_autopay.domain.forecast import ScheduledCharge
from emi_autopay.domain.installments import generate_order_number, generate_payment_number
from emi_autopay.domain.models import (
    DeliveryAddress,
    Installment,
    OrderStatus,
    PaymentStatus,
    ProductSnapshot,
    ReferralAssignment,
    ScheduleStatus,
    TransactionType,
    WalletPool,
)
from emi_autopay.infrastructure.database.models import (
    AutopayAttempt,
    InstallmentOrder,
    OrderSkipDate,
    OutboundNotification,
    PaymentRecord,
    PaymentScheduleItem,
    Product,
    StreakAchievement,
    StreakConfig,
    StreakMilestoneConfig,
    User,
    WalletTransaction,
)
from emi_autopay.utils.date_utils import utc_now


class UserRepository:
    """Repository for user accounts and their wallet rows"""

    def __init__(self, db: Session):
        self.db = db

    def create_user(self, user_id: str, name: Optional[str] = None, referred_by_id: Optional[str] = None, **fields: Any) -> User:
        user = User(id=user_id, name=name, referred_by_id=referred_by_id, **fields)
        self.db.add(user)
        self.db.flush()
        return user

    def get(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_for_update(self, user_id: str) -> Optional[User]:
        """Lock the user row and re-read balances from the database"""
        return (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def list_autopay_user_ids(self) -> List[str]:
        rows = self.db.query(User.id).filter(User.autopay_enabled.is_(True)).order_by(User.id).all()
        return [row[0] for row in rows]

    def list_reminder_user_ids(self) -> List[str]:
        rows = (
            self.db.query(User.id)
            .filter(
                User.autopay_enabled.is_(True),
                User.send_daily_reminder.is_(True),
            )
            .order_by(User.id)
            .all()
        )
        return [row[0] for row in rows]


class ProductRepository:
    """Read access to the product catalog"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id: str) -> Optional[Product]:
        return self.db.query(Product).filter(Product.id == product_id).first()

    def create_product(
        self,
        product_id: str,
        name: str,
        price_cents: int,
        referral_commission_percentage: Optional[float] = None,
        is_available: bool = True,
    ) -> Product:
        product = Product(
            id=product_id,
            name=name,
            price_cents=price_cents,
            referral_commission_percentage=referral_commission_percentage,
            is_available=is_available,
        )
        self.db.add(product)
        self.db.flush()
        return product


class OrderRepository:
    """Repository for installment orders and their schedules"""

    def __init__(self, db: Session):
        self.db = db

    def create_order(
        self,
        user_id: str,
        product: ProductSnapshot,
        total_days: int,
        daily_payment_cents: int,
        payment_method: str,
        delivery_address: DeliveryAddress,
        installments: List[Installment],
        referral: Optional[ReferralAssignment] = None,
        coupon_code: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> InstallmentOrder:
        """Persist a PENDING order together with its full schedule"""
        order = InstallmentOrder(
            id=uuid.uuid4(),
            order_number=unique_reference(self.db, InstallmentOrder.order_number, generate_order_number),
            user_id=user_id,
            product_id=product.product_id,
            product_name=product.name,
            product_price_cents=product.price_cents,
            variant_id=variant_id,
            coupon_code=coupon_code,
            total_days=total_days,
            daily_payment_cents=daily_payment_cents,
            paid_installments=0,
            total_paid_cents=0,
            remaining_cents=product.price_cents,
            status=OrderStatus.PENDING.value,
            payment_method=payment_method,
            delivery_address=_address_to_dict(delivery_address),
            referrer_id=referral.referrer_id if referral else None,
            commission_percentage=referral.commission_percentage if referral else None,
            product_commission_percentage=product.commission_percentage,
            total_commission_cents=0,
            created_at=utc_now(),
        )
        self.db.add(order)

        for inst in installments:
            order.schedule.append(
                PaymentScheduleItem(
                    installment_number=inst.installment_number,
                    due_date=inst.due_date,
                    amount_cents=inst.amount_cents,
                    status=ScheduleStatus.PENDING.value,
                )
            )

        self.db.flush()
        return order

    def get(self, order_id: uuid.UUID) -> Optional[InstallmentOrder]:
        return self.db.query(InstallmentOrder).filter(InstallmentOrder.id == order_id).first()

    def get_for_update(self, order_id: uuid.UUID) -> Optional[InstallmentOrder]:
        """
        Lock the order row for the rest of the transaction.

        Scalar columns are overwritten from the locked read; the schedule and
        skip-date collections are expired so they reload after the lock.
        """
        order = (
            self.db.query(InstallmentOrder)
            .filter(InstallmentOrder.id == order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if order is not None:
            self.db.expire(order, ["schedule", "skip_dates"])
        return order

    def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[InstallmentOrder], int]:
        query = self.db.query(InstallmentOrder).filter(InstallmentOrder.user_id == user_id)
        if status:
            query = query.filter(InstallmentOrder.status == status)
        total = query.count()
        orders = (
            query.order_by(InstallmentOrder.created_at.desc(), InstallmentOrder.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return orders, total

    def list_payable(self, user_id: str) -> List[InstallmentOrder]:
        """ACTIVE orders with money still owed"""
        return (
            self.db.query(InstallmentOrder)
            .filter(
                InstallmentOrder.user_id == user_id,
                InstallmentOrder.status == OrderStatus.ACTIVE.value,
                InstallmentOrder.remaining_cents > 0,
            )
            .order_by(InstallmentOrder.created_at, InstallmentOrder.id)
            .all()
        )

    def list_autopay_orders(self, user_id: str) -> List[InstallmentOrder]:
        """ACTIVE autopay orders, by priority then creation order"""
        return (
            self.db.query(InstallmentOrder)
            .filter(
                InstallmentOrder.user_id == user_id,
                InstallmentOrder.status == OrderStatus.ACTIVE.value,
                InstallmentOrder.autopay_enabled.is_(True),
            )
            .order_by(
                InstallmentOrder.autopay_priority,
                InstallmentOrder.created_at,
                InstallmentOrder.id,
            )
            .all()
        )

    def pending_autopay_charges(self, user_id: str, start: date, end: date) -> List[ScheduledCharge]:
        """PENDING installments of autopay orders due in [start, end], skip dates excluded"""
        rows = (
            self.db.query(PaymentScheduleItem, InstallmentOrder)
            .join(InstallmentOrder, PaymentScheduleItem.order_id == InstallmentOrder.id)
            .filter(
                InstallmentOrder.user_id == user_id,
                InstallmentOrder.status == OrderStatus.ACTIVE.value,
                InstallmentOrder.autopay_enabled.is_(True),
                PaymentScheduleItem.status == ScheduleStatus.PENDING.value,
                PaymentScheduleItem.due_date >= start,
                PaymentScheduleItem.due_date <= end,
            )
            .order_by(PaymentScheduleItem.due_date, InstallmentOrder.autopay_priority)
            .all()
        )

        charges = []
        for item, order in rows:
            if order.is_skip_date(item.due_date):
                continue
            if order.autopay_paused_until is not None and order.autopay_paused_until >= item.due_date:
                continue
            charges.append(ScheduledCharge(order_id=str(order.id), due_date=item.due_date, amount_cents=item.amount_cents))
        return charges

    def paid_between(self, user_id: str, start: date, end: date) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(PaymentScheduleItem.amount_cents), 0))
            .select_from(PaymentScheduleItem)
            .join(InstallmentOrder, PaymentScheduleItem.order_id == InstallmentOrder.id)
            .filter(
                InstallmentOrder.user_id == user_id,
                PaymentScheduleItem.status == ScheduleStatus.PAID.value,
                PaymentScheduleItem.paid_date >= start,
                PaymentScheduleItem.paid_date <= end,
            )
            .scalar()
        )
        return int(total or 0)

    def add_skip_date(self, order: InstallmentOrder, skip_date: date) -> None:
        order.skip_dates.append(OrderSkipDate(skip_date=skip_date))

    def remove_skip_dates(self, order: InstallmentOrder, dates: List[date]) -> None:
        for entry in list(order.skip_dates):
            if entry.skip_date in dates:
                order.skip_dates.remove(entry)


class PaymentRepository:
    """Repository for installment payment records"""

    def __init__(self, db: Session):
        self.db = db

    def create_payment(
        self,
        order: InstallmentOrder,
        amount_cents: int,
        installment_number: int,
        method: str,
        is_autopay: bool,
        idempotency_key: str,
        gateway_reference: Optional[str] = None,
        wallet_transaction_id: Optional[uuid.UUID] = None,
    ) -> PaymentRecord:
        now = utc_now()
        payment = PaymentRecord(
            id=uuid.uuid4(),
            payment_number=unique_reference(self.db, PaymentRecord.payment_number, lambda: generate_payment_number(now)),
            order_id=order.id,
            user_id=order.user_id,
            amount_cents=amount_cents,
            installment_number=installment_number,
            method=method,
            status=PaymentStatus.COMPLETED.value,
            is_autopay=is_autopay,
            idempotency_key=idempotency_key,
            gateway_reference=gateway_reference,
            wallet_transaction_id=wallet_transaction_id,
            created_at=now,
            completed_at=now,
        )
        self.db.add(payment)
        return payment

    def get(self, payment_id: uuid.UUID) -> Optional[PaymentRecord]:
        return self.db.query(PaymentRecord).filter(PaymentRecord.id == payment_id).first()

    def get_for_update(self, payment_id: uuid.UUID) -> Optional[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.id == payment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def list_for_order(self, order_id: uuid.UUID) -> List[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.installment_number)
            .all()
        )

    def list_missing_commission(self, limit: int = 100) -> List[uuid.UUID]:
        """Completed payments on referred orders whose commission was never recorded"""
        rows = (
            self.db.query(PaymentRecord.id)
            .select_from(PaymentRecord)
            .join(InstallmentOrder, PaymentRecord.order_id == InstallmentOrder.id)
            .filter(
                PaymentRecord.status == PaymentStatus.COMPLETED.value,
                PaymentRecord.commission_calculated.is_(False),
                PaymentRecord.amount_cents > 0,
                InstallmentOrder.referrer_id.isnot(None),
            )
            .order_by(PaymentRecord.created_at)
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]


class WalletTransactionRepository:
    """Append-only wallet ledger"""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        user_id: str,
        type: TransactionType,
        pool: WalletPool,
        amount_cents: int,
        balance_after_cents: int,
        description: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> WalletTransaction:
        txn = WalletTransaction(
            id=uuid.uuid4(),
            user_id=user_id,
            type=type.value,
            pool=pool.value,
            amount_cents=amount_cents,
            balance_after_cents=balance_after_cents,
            description=description,
            meta=meta,
            created_at=utc_now(),
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    def list_for_user(
        self,
        user_id: str,
        type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[WalletTransaction], int]:
        query = self.db.query(WalletTransaction).filter(WalletTransaction.user_id == user_id)
        if type:
            query = query.filter(WalletTransaction.type == type)
        total = query.count()
        items = (
            query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total

    def totals_by_type(self, user_id: str, types: List[str]) -> Dict[str, Tuple[int, int]]:
        """``{type: (sum_cents, count)}`` for the given transaction types"""
        rows = (
            self.db.query(
                WalletTransaction.type,
                func.coalesce(func.sum(WalletTransaction.amount_cents), 0),
                func.count(WalletTransaction.id),
            )
            .filter(WalletTransaction.user_id == user_id, WalletTransaction.type.in_(types))
            .group_by(WalletTransaction.type)
            .all()
        )
        return {row[0]: (int(row[1]), int(row[2])) for row in rows}


class AutopayAttemptRepository:
    """Per-order autopay history"""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        order_id: uuid.UUID,
        user_id: str,
        attempt_date: date,
        status: str,
        amount_cents: int = 0,
        error_message: Optional[str] = None,
        payment_id: Optional[uuid.UUID] = None,
    ) -> AutopayAttempt:
        """Add an attempt unless one with the same order, day and status exists"""
        existing = (
            self.db.query(AutopayAttempt)
            .filter(
                AutopayAttempt.order_id == order_id,
                AutopayAttempt.attempt_date == attempt_date,
                AutopayAttempt.status == status,
            )
            .first()
        )
        if existing is not None:
            return existing

        attempt = AutopayAttempt(
            order_id=order_id,
            user_id=user_id,
            attempt_date=attempt_date,
            status=status,
            amount_cents=amount_cents,
            error_message=error_message,
            payment_id=payment_id,
            created_at=utc_now(),
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def list_for_user(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[AutopayAttempt], int]:
        query = self.db.query(AutopayAttempt).filter(AutopayAttempt.user_id == user_id)
        total = query.count()
        items = (
            query.order_by(AutopayAttempt.attempt_date.desc(), AutopayAttempt.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total

    def list_for_order(self, order_id: uuid.UUID) -> List[AutopayAttempt]:
        return (
            self.db.query(AutopayAttempt)
            .filter(AutopayAttempt.order_id == order_id)
            .order_by(AutopayAttempt.attempt_date, AutopayAttempt.id)
            .all()
        )


class StreakConfigRepository:
    """The single streak configuration row and its milestones"""

    CONFIG_KEY = "STREAK_CONFIG"

    def __init__(self, db: Session):
        self.db = db

    def get(self) -> Optional[StreakConfig]:
        return self.db.query(StreakConfig).filter(StreakConfig.config_key == self.CONFIG_KEY).first()

    def create_config(self, enabled: bool, updated_by: Optional[str]) -> StreakConfig:
        config = StreakConfig(config_key=self.CONFIG_KEY, enabled=enabled, updated_by=updated_by)
        self.db.add(config)
        self.db.flush()
        return config

    def add_milestone(self, config: StreakConfig, days: int, reward_cents: int, badge: str, description: str = "", is_active: bool = True) -> StreakMilestoneConfig:
        milestone = StreakMilestoneConfig(
            days=days,
            reward_cents=reward_cents,
            badge=badge,
            description=description,
            is_active=is_active,
        )
        config.milestones.append(milestone)
        self.db.flush()
        return milestone

    def delete_config(self, config: StreakConfig) -> None:
        self.db.delete(config)
        self.db.flush()


class StreakAchievementRepository:
    def __init__(self, db: Session):
        self.db = db

    def achieved_days(self, user_id: str) -> List[int]:
        rows = self.db.query(StreakAchievement.days).filter(StreakAchievement.user_id == user_id).all()
        return [row[0] for row in rows]

    def list_for_user(self, user_id: str) -> List[StreakAchievement]:
        return (
            self.db.query(StreakAchievement)
            .filter(StreakAchievement.user_id == user_id)
            .order_by(StreakAchievement.days)
            .all()
        )

    def add(self, user_id: str, days: int, reward_cents: int) -> StreakAchievement:
        achievement = StreakAchievement(user_id=user_id, days=days, reward_cents=reward_cents, achieved_at=utc_now())
        self.db.add(achievement)
        self.db.flush()
        return achievement


class NotificationRepository:
    """Delivery log for outbound notification events"""

    def __init__(self, db: Session):
        self.db = db

    def create_notification(self, user_id: str, event_type: str, payload: Dict[str, Any], target_url: str) -> OutboundNotification:
        notification = OutboundNotification(
            id=uuid.uuid4(),
            user_id=user_id,
            event_type=event_type,
            payload=payload,
            target_url=target_url,
            status="pending",
            attempts=0,
            created_at=utc_now(),
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def mark_attempted(self, notification: OutboundNotification, status: str, attempts: int, at: Optional[datetime] = None) -> None:
        notification.status = status
        notification.attempts = attempts
        notification.last_attempt_at = at or utc_now()
        self.db.flush()

    def list_for_user(self, user_id: str, event_type: Optional[str] = None) -> List[OutboundNotification]:
        query = self.db.query(OutboundNotification).filter(OutboundNotification.user_id == user_id)
        if event_type:
            query = query.filter(OutboundNotification.event_type == event_type)
        return query.order_by(OutboundNotification.created_at).all()


def _address_to_dict(address: DeliveryAddress) -> Dict[str, Any]:
    return {
        "name": address.name,
        "phone": address.phone,
        "line1": address.line1,
        "line2": address.line2,
        "city": address.city,
        "state": address.state,
        "pincode": address.pincode,
    }


REFERENCE_ATTEMPTS = 5


def unique_reference(db: Session, column, generate: Callable[[], str]) -> str:
    """Draw reference numbers until one is not yet stored in ``column``"""
    for _ in range(REFERENCE_ATTEMPTS):
        reference = generate()
        if db.query(column).filter(column == reference).first() is None:
            return reference
    raise RuntimeError(f"Could not allocate a unique {column.key}")

"""Autopay management: per-order toggles, pause/skip, user settings and read models"""

import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from emi_autopay.config import settings
from emi_autopay.domain import forecast
from emi_autopay.domain.exceptions import InvalidOrderStateError, UserNotFoundError, ValidationError
from emi_autopay.domain.models import OrderStatus
from emi_autopay.infrastructure.database.models import InstallmentOrder, User
from emi_autopay.infrastructure.database.repositories import (
    AutopayAttemptRepository,
    OrderRepository,
    UserRepository,
)
from emi_autopay.services.orders import OrderService
from emi_autopay.services.streaks import StreakService
from emi_autopay.services.wallet import WalletService
from emi_autopay.utils.date_utils import add_days, local_today, month_start, utc_now

SETTINGS_FIELDS = {
    "enabled": "autopay_enabled",
    "time_preference": "autopay_time_preference",
    "minimum_balance_lock_cents": "minimum_balance_lock_cents",
    "low_balance_threshold_cents": "low_balance_threshold_cents",
    "send_daily_reminder": "send_daily_reminder",
    "reminder_hours_before": "reminder_hours_before",
    "notify_autopay_success": "notify_autopay_success",
    "notify_autopay_failed": "notify_autopay_failed",
    "notify_low_balance": "notify_low_balance",
    "notify_daily_reminder": "notify_daily_reminder",
}


def autopay_slot_ids() -> List[str]:
    return [slot.slot_id for slot in settings.autopay_slots if slot.kind == "AUTOPAY"]


class AutopayService:
    """Flushes but never commits; the caller owns the transaction"""

    def __init__(self, db: Session, orders: OrderService, wallet: WalletService, streaks: StreakService):
        self.db = db
        self.orders = orders
        self.wallet = wallet
        self.streaks = streaks
        self.users = UserRepository(db)
        self.order_repo = OrderRepository(db)
        self.attempts = AutopayAttemptRepository(db)

    def _user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    # ------------------------------------------------------------------
    # Per-order controls
    # ------------------------------------------------------------------

    def enable_autopay(self, order_id: uuid.UUID, user_id: str, priority: Optional[int] = None) -> InstallmentOrder:
        order = self.orders.lock_order(order_id, user_id)
        if not order.can_accept_payment():
            raise InvalidOrderStateError(order.id, order.status, "ACTIVE with a remaining balance")
        if priority is not None:
            _check_priority(priority)
            order.autopay_priority = priority

        if not order.autopay_enabled:
            order.autopay_enabled = True
            order.autopay_enabled_at = utc_now()
        self.db.flush()
        return order

    def disable_autopay(self, order_id: uuid.UUID, user_id: str) -> InstallmentOrder:
        order = self.orders.lock_order(order_id, user_id)
        order.autopay_enabled = False
        self.db.flush()
        return order

    def enable_autopay_for_all(self, user_id: str) -> int:
        """Enable autopay on every payable order and switch the user-level flag on"""
        user = self._user(user_id)
        user.autopay_enabled = True

        count = 0
        now = utc_now()
        for order in self.order_repo.list_payable(user_id):
            if not order.autopay_enabled:
                order.autopay_enabled = True
                order.autopay_enabled_at = now
            count += 1
        self.db.flush()
        return count

    def disable_autopay_for_all(self, user_id: str) -> int:
        user = self._user(user_id)
        user.autopay_enabled = False

        orders, _ = self.order_repo.list_for_user(user_id, status=OrderStatus.ACTIVE.value, limit=1_000)
        count = 0
        for order in orders:
            if order.autopay_enabled:
                order.autopay_enabled = False
                count += 1
        self.db.flush()
        return count

    def pause_autopay(self, order_id: uuid.UUID, user_id: str, pause_until: date, today: Optional[date] = None) -> InstallmentOrder:
        """Pause through ``pause_until`` inclusive; must be in the future and within the pause limit"""
        today = today or local_today()
        if pause_until <= today:
            raise ValidationError("Pause date must be in the future", {"pause_until": pause_until.isoformat()})
        if pause_until > add_days(today, settings.max_pause_days):
            raise ValidationError(
                f"Cannot pause for more than {settings.max_pause_days} days",
                {"pause_until": pause_until.isoformat(), "max_pause_days": settings.max_pause_days},
            )

        order = self.orders.lock_order(order_id, user_id)
        if not order.can_accept_payment():
            raise InvalidOrderStateError(order.id, order.status, OrderStatus.ACTIVE.value)
        order.autopay_paused_until = pause_until
        self.db.flush()
        return order

    def resume_autopay(self, order_id: uuid.UUID, user_id: str) -> InstallmentOrder:
        order = self.orders.lock_order(order_id, user_id)
        order.autopay_paused_until = None
        self.db.flush()
        return order

    def add_skip_dates(self, order_id: uuid.UUID, user_id: str, dates: List[date], today: Optional[date] = None) -> List[date]:
        """
        Add skip dates to an order.

        Only future dates are kept; past dates already stored are pruned.
        Returns the stored skip dates, sorted.
        """
        today = today or local_today()
        if not dates or len(dates) > settings.max_skip_dates:
            raise ValidationError(
                f"Provide between 1 and {settings.max_skip_dates} dates",
                {"count": len(dates or [])},
            )

        order = self.orders.lock_order(order_id, user_id)
        if not order.can_accept_payment():
            raise InvalidOrderStateError(order.id, order.status, OrderStatus.ACTIVE.value)

        stored = {entry.skip_date for entry in order.skip_dates}
        expired = [d for d in stored if d <= today]
        if expired:
            self.order_repo.remove_skip_dates(order, expired)

        kept = {d for d in stored if d > today}
        new = sorted({d for d in dates if d > today} - kept)
        if len(kept) + len(new) > settings.max_skip_dates:
            raise ValidationError(
                f"An order can have at most {settings.max_skip_dates} skip dates",
                {"existing": len(kept), "requested": len(new)},
            )

        for day in new:
            self.order_repo.add_skip_date(order, day)
        self.db.flush()
        return sorted(kept | set(new))

    def remove_skip_dates(self, order_id: uuid.UUID, user_id: str, dates: List[date]) -> List[date]:
        if not dates or len(dates) > settings.max_skip_dates:
            raise ValidationError(
                f"Provide between 1 and {settings.max_skip_dates} dates",
                {"count": len(dates or [])},
            )
        order = self.orders.lock_order(order_id, user_id)
        self.order_repo.remove_skip_dates(order, list(dates))
        self.db.flush()
        return sorted(entry.skip_date for entry in order.skip_dates)

    def set_priority(self, order_id: uuid.UUID, user_id: str, priority: int) -> InstallmentOrder:
        _check_priority(priority)
        order = self.orders.lock_order(order_id, user_id)
        order.autopay_priority = priority
        self.db.flush()
        return order

    # ------------------------------------------------------------------
    # User settings
    # ------------------------------------------------------------------

    def get_settings(self, user_id: str) -> Dict[str, Any]:
        user = self._user(user_id)
        return {key: getattr(user, column) for key, column in SETTINGS_FIELDS.items()}

    def update_settings(self, user_id: str, **changes: Any) -> Dict[str, Any]:
        unknown = set(changes) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValidationError("Unknown autopay settings", {"fields": sorted(unknown)})

        for key in ("minimum_balance_lock_cents", "low_balance_threshold_cents"):
            if key in changes and changes[key] is not None and changes[key] < 0:
                raise ValidationError(f"{key} cannot be negative", {key: changes[key]})
        if "time_preference" in changes and changes["time_preference"] not in autopay_slot_ids():
            raise ValidationError(
                "Invalid time preference",
                {"time_preference": changes["time_preference"], "allowed": autopay_slot_ids()},
            )
        if "reminder_hours_before" in changes and not 1 <= changes["reminder_hours_before"] <= 12:
            raise ValidationError(
                "Reminder hours must be between 1 and 12",
                {"reminder_hours_before": changes["reminder_hours_before"]},
            )

        user = self._user(user_id)
        for key, value in changes.items():
            if value is not None:
                setattr(user, SETTINGS_FIELDS[key], value)
        self.db.flush()
        return self.get_settings(user_id)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def autopay_status(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or local_today()
        user = self._user(user_id)
        orders = self.order_repo.list_autopay_orders(user_id)

        order_views = []
        for order in orders:
            next_item = order.next_pending_installment()
            order_views.append({
                "order_id": str(order.id),
                "order_number": order.order_number,
                "product_name": order.product_name,
                "priority": order.autopay_priority,
                "next_amount_cents": next_item.amount_cents if next_item else 0,
                "next_due_date": next_item.due_date if next_item else None,
                "paused_until": order.autopay_paused_until,
                "skip_dates": [entry.skip_date for entry in order.skip_dates],
                "can_process_today": order.can_process_autopay(today),
                "blocked_reason": order.autopay_block_reason(today),
                "last_attempt_date": order.autopay_last_attempt_date,
                "last_attempt_status": order.autopay_last_attempt_status,
                "success_count": order.autopay_success_count,
                "failed_count": order.autopay_failed_count,
            })

        due_today = sum(v["next_amount_cents"] for v in order_views if v["can_process_today"])
        return {
            "user_id": user_id,
            "enabled": user.autopay_enabled,
            "time_preference": user.autopay_time_preference,
            "orders": order_views,
            "autopay_orders": len(order_views),
            "due_today_cents": due_today,
            "balance_cents": user.balance_cents,
            "minimum_balance_lock_cents": user.minimum_balance_lock_cents,
        }

    def balance_forecast(self, user_id: str, days: Optional[int] = None, today: Optional[date] = None) -> Dict[str, Any]:
        """Day-by-day wallet projection; ``days`` defaults to 30 and is capped at 90"""
        today = today or local_today()
        days = days or settings.forecast_default_days
        if days < 1:
            raise ValidationError("Forecast days must be positive", {"days": days})
        days = min(days, settings.forecast_max_days)

        user = self._user(user_id)
        charges = self.order_repo.pending_autopay_charges(user_id, today, add_days(today, days - 1))
        projection = forecast.project_balance(
            user.balance_cents, user.minimum_balance_lock_cents, charges, today, days
        )
        first_short = forecast.days_until_insufficient(projection)
        return {
            "user_id": user_id,
            "days": days,
            "current_balance_cents": user.balance_cents,
            "minimum_balance_lock_cents": user.minimum_balance_lock_cents,
            "total_due_cents": sum(c.amount_cents for c in charges),
            "days_until_insufficient": first_short,
            "insufficient_days": sum(1 for d in projection if d.insufficient_funds),
            "forecast": projection,
        }

    def suggested_top_up(self, user_id: str, today: Optional[date] = None, days: Optional[int] = None) -> Dict[str, Any]:
        today = today or local_today()
        days = days or settings.suggested_topup_days
        user = self._user(user_id)
        daily_total = self._daily_autopay_total(user_id)
        return {
            "user_id": user_id,
            "days": days,
            "daily_autopay_cents": daily_total,
            "current_balance_cents": user.balance_cents,
            "suggested_amount_cents": forecast.suggested_top_up(
                user.balance_cents, user.minimum_balance_lock_cents, daily_total, days
            ),
        }

    def dashboard(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or local_today()
        user = self._user(user_id)
        orders = self.order_repo.list_autopay_orders(user_id)
        daily_total = self._daily_autopay_total(user_id)

        available = max(0, user.balance_cents - user.minimum_balance_lock_cents)
        days_covered = available // daily_total if daily_total > 0 else None

        return {
            "user_id": user_id,
            "wallet": self.wallet.get_balance(user_id),
            "autopay_enabled": user.autopay_enabled,
            "active_autopay_orders": len(orders),
            "daily_autopay_cents": daily_total,
            "weekly_autopay_cents": daily_total * 7,
            "monthly_autopay_cents": daily_total * 30,
            "days_balance_lasts": days_covered,
            "paid_this_month_cents": self.order_repo.paid_between(user_id, month_start(today), today),
            "suggested_top_up_cents": forecast.suggested_top_up(
                user.balance_cents, user.minimum_balance_lock_cents, daily_total, settings.suggested_topup_days
            ),
            "streak": self.streaks.streak_info(user_id, today),
        }

    def history(self, user_id: str, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        """Autopay attempts, newest first"""
        self._user(user_id)
        limit = limit or settings.history_page_size
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive", {"page": page, "limit": limit})

        items, total = self.attempts.list_for_user(user_id, limit=limit, offset=(page - 1) * limit)
        return {
            "items": items,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": -(-total // limit),
        }

    def _daily_autopay_total(self, user_id: str) -> int:
        """What one autopay day takes when every eligible order is charged"""
        total = 0
        for order in self.order_repo.list_autopay_orders(user_id):
            item = order.next_pending_installment()
            if item is not None:
                total += item.amount_cents
        return total


def _check_priority(priority: int) -> None:
    if not 1 <= priority <= settings.max_priority:
        raise ValidationError(
            f"Priority must be between 1 and {settings.max_priority}",
            {"priority": priority},
        )

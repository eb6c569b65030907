"""User-facing notification events gated by per-user preferences"""

import logging
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from emi_autopay.domain.models import UserRunResult
from emi_autopay.infrastructure.clients.notifications import NotificationClient
from emi_autopay.infrastructure.database.models import User
from emi_autopay.infrastructure.database.repositories import NotificationRepository, UserRepository
from emi_autopay.infrastructure.observability.metrics import notification_failure_counter
from emi_autopay.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Delivers notification events through the webhook client.

    Every send is logged in ``outbound_notification`` and committed on its
    own. Delivery errors are logged and reported as ``False``; they never
    propagate to the caller.
    """

    def __init__(self, db: Session, client: Optional[NotificationClient] = None):
        self.db = db
        self.client = client
        self.users = UserRepository(db)
        self.log = NotificationRepository(db)

    def autopay_success(self, user_id: str, result: UserRunResult, run_date: date) -> bool:
        return self._send(
            user_id,
            "notify_autopay_success",
            "AUTOPAY_SUCCESS",
            {
                "run_date": run_date.isoformat(),
                "orders_paid": result.success,
                "total_paid_cents": result.total_amount_paid_cents,
                "new_balance_cents": result.new_balance_cents,
            },
        )

    def autopay_failed(self, user_id: str, result: UserRunResult, run_date: date) -> bool:
        reasons = [o.reason for o in result.outcomes if not o.success and o.reason]
        return self._send(
            user_id,
            "notify_autopay_failed",
            "AUTOPAY_FAILED",
            {
                "run_date": run_date.isoformat(),
                "failed": result.failed,
                "insufficient_balance": result.insufficient_balance,
                "reasons": reasons,
                "balance_cents": result.new_balance_cents,
            },
        )

    def low_balance(self, user_id: str, due_date: date, balance_cents: int, required_cents: int, shortfall_cents: int) -> bool:
        return self._send(
            user_id,
            "notify_low_balance",
            "LOW_BALANCE",
            {
                "due_date": due_date.isoformat(),
                "balance_cents": balance_cents,
                "required_cents": required_cents,
                "shortfall_cents": shortfall_cents,
            },
        )

    def daily_reminder(self, user_id: str, slot_id: str, run_date: date, orders: int, total_due_cents: int) -> bool:
        return self._send(
            user_id,
            "notify_daily_reminder",
            "DAILY_REMINDER",
            {
                "slot_id": slot_id,
                "run_date": run_date.isoformat(),
                "orders": orders,
                "total_due_cents": total_due_cents,
            },
        )

    def streak_milestone(self, user_id: str, days: int, badge: str, reward_cents: int) -> bool:
        return self._send(
            user_id,
            None,
            "STREAK_MILESTONE",
            {"days": days, "badge": badge, "reward_cents": reward_cents},
        )

    def _send(self, user_id: str, preference: Optional[str], event_type: str, data: Dict[str, Any]) -> bool:
        user = self.users.get(user_id)
        if user is None or not _wants(user, preference):
            return False
        if self.client is None:
            logger.info("Notification client not configured", extra={"user_id": user_id, "event_type": event_type})
            return False

        payload = {"event": event_type, "user_id": user_id, "sent_at": utc_now().isoformat(), "data": data}
        try:
            record = self.log.create_notification(user_id, event_type, payload, self.client.webhook_url)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Could not log notification", extra={"user_id": user_id, "event_type": event_type})
            record = None

        try:
            attempts = self.client.send_event(payload)
        except Exception as e:
            notification_failure_counter.labels(event_type=event_type).inc()
            logger.error(
                f"Notification delivery failed: {e}",
                extra={"user_id": user_id, "event_type": event_type},
            )
            self._mark(record, "failed", getattr(e, "details", {}).get("attempts", 0))
            return False

        self._mark(record, "delivered", attempts)
        return True

    def _mark(self, record, status: str, attempts: int) -> None:
        if record is None:
            return
        try:
            self.log.mark_attempted(record, status, attempts)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Could not update notification log", extra={"notification_id": str(record.id)})


def _wants(user: User, preference: Optional[str]) -> bool:
    return preference is None or bool(getattr(user, preference))

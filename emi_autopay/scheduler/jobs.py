"""Autopay batch scheduler and its companion jobs.

One BackgroundScheduler job per active slot of the configured slot table.
Each run walks users sequentially, one session per user, so a failure for
one user is logged and counted without touching anyone else's run.
"""

import logging
import time
from datetime import date
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from emi_autopay.config import ScheduleSlot, settings
from emi_autopay.domain.exceptions import ValidationError
from emi_autopay.domain.forecast import low_balance_shortfall
from emi_autopay.domain.models import AutopayOutcome, BatchRunResult, PaymentOutcome, UserRunResult
from emi_autopay.infrastructure.clients.notifications import NotificationClient
from emi_autopay.infrastructure.database.repositories import OrderRepository, UserRepository
from emi_autopay.infrastructure.observability.logging import log_batch_summary
from emi_autopay.infrastructure.observability.metrics import (
    batch_duration_histogram,
    batch_run_counter,
    batch_user_failure_counter,
)
from emi_autopay.services.container import Services, build_services
from emi_autopay.utils.date_utils import add_days, local_today

logger = logging.getLogger(__name__)


class AutopayScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Optional[NotificationClient] = None,
        slots: Optional[List[ScheduleSlot]] = None,
        services_factory: Callable[[Session, Optional[NotificationClient]], Services] = build_services,
        clock: Callable[[], date] = local_today,
        timezone: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.slots = {slot.slot_id: slot for slot in (slots if slots is not None else settings.autopay_slots)}
        self.services_factory = services_factory
        self.clock = clock
        self.timezone = timezone or settings.timezone
        self._scheduler: Optional[BackgroundScheduler] = None

    # ------------------------------------------------------------------
    # Autopay
    # ------------------------------------------------------------------

    def run_autopay_slot(self, slot_id: str, today: Optional[date] = None) -> BatchRunResult:
        """Charge the next installment of every autopay order of every autopay user"""
        today = today or self.clock()
        start_time = time.time()
        batch = BatchRunResult(slot_id=slot_id, run_date=today)

        with self.session_factory() as db:
            user_ids = UserRepository(db).list_autopay_user_ids()

        logger.info("Autopay batch started", extra={"slot_id": slot_id, "run_date": today.isoformat(), "users": len(user_ids)})

        for user_id in user_ids:
            try:
                result = self._process_user(user_id, today)
            except Exception:
                batch_user_failure_counter.inc()
                logger.exception("Autopay failed for user", extra={"slot_id": slot_id, "user_id": user_id})
                result = UserRunResult(user_id=user_id, failed=1)
            batch.add(result)

        batch.duration_ms = (time.time() - start_time) * 1000
        batch_run_counter.labels(slot_id=slot_id).inc()
        batch_duration_histogram.labels(slot_id=slot_id).observe(batch.duration_ms / 1000)
        log_batch_summary(
            slot_id, today.isoformat(), batch.users, batch.total_processed, batch.total_success,
            batch.total_failed, batch.total_skipped, batch.total_insufficient_balance, batch.duration_ms,
        )
        return batch

    def _process_user(self, user_id: str, today: date) -> UserRunResult:
        result = UserRunResult(user_id=user_id)

        with self.session_factory() as db:
            services = self.services_factory(db, self.notifier)
            order_ids = [order.id for order in OrderRepository(db).list_autopay_orders(user_id)]

            for order_id in order_ids:
                outcome = self._process_order(services, order_id, user_id, today)
                result.processed += 1
                result.outcomes.append(outcome)

                if outcome.status == AutopayOutcome.SUCCESS:
                    result.success += 1
                    result.total_amount_paid_cents += outcome.amount_cents
                elif outcome.status == AutopayOutcome.INSUFFICIENT_BALANCE:
                    # Lower-priority orders are not attempted once the wallet runs short
                    result.insufficient_balance += 1
                    break
                elif outcome.status == AutopayOutcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.failed += 1

            result.new_balance_cents = services.wallet.get_balance(user_id)["available_cents"]

            if result.success:
                self._update_streak(services, user_id, today)
                services.notifications.autopay_success(user_id, result, today)
            if result.failed or result.insufficient_balance:
                services.notifications.autopay_failed(user_id, result, today)

        return result

    def _process_order(self, services: Services, order_id, user_id: str, today: date) -> PaymentOutcome:
        """One order's attempt; an unexpected error fails that order only"""
        try:
            return services.payments.process_installment_payment(order_id, user_id, autopay=True, today=today)
        except Exception as e:
            services.db.rollback()
            logger.exception("Autopay failed for order", extra={"user_id": user_id, "order_id": str(order_id)})
            return PaymentOutcome(status=AutopayOutcome.FAILED, order_id=str(order_id), reason=str(e))

    def _update_streak(self, services: Services, user_id: str, today: date) -> None:
        try:
            streak = services.streaks.update_payment_streak(user_id, today)
            services.db.commit()
        except Exception:
            services.db.rollback()
            logger.exception("Streak update failed", extra={"user_id": user_id})
            return

        milestone = streak["milestone"]
        if milestone is not None:
            services.notifications.streak_milestone(user_id, milestone.days, milestone.badge, milestone.reward_cents)

    # ------------------------------------------------------------------
    # Companion jobs
    # ------------------------------------------------------------------

    def send_daily_reminders(self, slot_id: str, today: Optional[date] = None) -> Dict[str, int]:
        """Remind users about today's autopay ahead of the run"""
        today = today or self.clock()
        sent = 0
        checked = 0

        with self.session_factory() as db:
            user_ids = UserRepository(db).list_reminder_user_ids()

        for user_id in user_ids:
            try:
                with self.session_factory() as db:
                    services = self.services_factory(db, self.notifier)
                    due = [
                        order for order in OrderRepository(db).list_autopay_orders(user_id)
                        if order.can_process_autopay(today)
                    ]
                    checked += 1
                    if not due:
                        continue
                    total = sum(order.next_pending_installment().amount_cents for order in due)
                    if services.notifications.daily_reminder(user_id, slot_id, today, len(due), total):
                        sent += 1
            except Exception:
                logger.exception("Reminder failed for user", extra={"slot_id": slot_id, "user_id": user_id})

        batch_run_counter.labels(slot_id=slot_id).inc()
        logger.info("Daily reminders sent", extra={"slot_id": slot_id, "checked": checked, "sent": sent})
        return {"checked": checked, "sent": sent}

    def check_low_balance_alerts(self, today: Optional[date] = None) -> Dict[str, int]:
        """
        Project tomorrow's autopay total against each wallet.

        Alerts when the balance above the minimum lock cannot cover it, or
        when paying it would leave less than the user's threshold.
        """
        today = today or self.clock()
        tomorrow = add_days(today, 1)
        checked = 0
        alerted = 0

        with self.session_factory() as db:
            user_ids = UserRepository(db).list_autopay_user_ids()

        for user_id in user_ids:
            try:
                with self.session_factory() as db:
                    services = self.services_factory(db, self.notifier)
                    user = UserRepository(db).get(user_id)
                    charges = OrderRepository(db).pending_autopay_charges(user_id, tomorrow, tomorrow)
                    checked += 1
                    shortfall = low_balance_shortfall(
                        user.balance_cents,
                        user.minimum_balance_lock_cents,
                        user.low_balance_threshold_cents,
                        sum(c.amount_cents for c in charges),
                    )
                    if shortfall is None:
                        continue
                    balance, required, missing = shortfall
                    if services.notifications.low_balance(user_id, tomorrow, balance, required, missing):
                        alerted += 1
            except Exception:
                logger.exception("Low balance check failed for user", extra={"user_id": user_id})

        batch_run_counter.labels(slot_id="LOW_BALANCE_CHECK").inc()
        logger.info("Low balance check completed", extra={"checked": checked, "alerted": alerted})
        return {"checked": checked, "alerted": alerted}

    def reconcile_commissions(self, limit: int = 100) -> Dict[str, Any]:
        with self.session_factory() as db:
            services = self.services_factory(db, self.notifier)
            result = services.payments.reconcile_commissions(limit)
        batch_run_counter.labels(slot_id="COMMISSION_RECONCILIATION").inc()
        return result

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def manual_trigger(self, slot_id: str, today: Optional[date] = None) -> BatchRunResult:
        """Run an autopay slot now. Safe to repeat: already-paid orders are skipped."""
        slot = self.slots.get(slot_id)
        if slot is None or slot.kind != "AUTOPAY":
            raise ValidationError(
                "Unknown autopay slot",
                {"slot_id": slot_id, "allowed": [s.slot_id for s in self.slots.values() if s.kind == "AUTOPAY"]},
            )
        logger.info("Manual autopay trigger", extra={"slot_id": slot_id})
        return self.run_autopay_slot(slot_id, today)

    def status(self) -> List[Dict[str, Any]]:
        """Read-only view of the slot table and, once started, each job's next run"""
        jobs = {}
        if self._scheduler is not None:
            jobs = {job.id: job for job in self._scheduler.get_jobs()}

        view = []
        for slot in self.slots.values():
            job = jobs.get(slot.slot_id)
            next_run = getattr(job, "next_run_time", None) if job else None
            view.append({
                "slot_id": slot.slot_id,
                "cron": slot.cron,
                "kind": slot.kind,
                "active": slot.active,
                "target_slot": slot.target_slot,
                "description": slot.description,
                "scheduled": job is not None,
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return view

    def start(self) -> None:
        if self._scheduler is not None:
            return

        self._scheduler = BackgroundScheduler(timezone=self.timezone)
        for slot in self.slots.values():
            if not slot.active:
                continue
            self._scheduler.add_job(
                partial(self._run_slot, slot.slot_id),
                CronTrigger.from_crontab(slot.cron, timezone=self.timezone),
                id=slot.slot_id,
                name=slot.description or slot.slot_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self._scheduler.start()
        logger.info("Scheduler started", extra={"jobs": [job.id for job in self._scheduler.get_jobs()]})

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Scheduler stopped")

    def _run_slot(self, slot_id: str) -> None:
        slot = self.slots[slot_id]
        try:
            if slot.kind == "AUTOPAY":
                self.run_autopay_slot(slot_id)
            elif slot.kind == "REMINDER":
                self.send_daily_reminders(slot_id)
            elif slot.kind == "LOW_BALANCE":
                self.check_low_balance_alerts()
            elif slot.kind == "RECONCILIATION":
                self.reconcile_commissions()
            else:
                logger.warning("Unknown slot kind", extra={"slot_id": slot_id, "kind": slot.kind})
        except Exception:
            logger.exception("Scheduled job failed", extra={"slot_id": slot_id})

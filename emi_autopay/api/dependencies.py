"""Dependency injection for FastAPI endpoints"""

import uuid
from datetime import date

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from emi_autopay.domain.exceptions import ValidationError
from emi_autopay.infrastructure.clients.notifications import NotificationClient
from emi_autopay.infrastructure.database.session import SessionLocal, get_db
from emi_autopay.scheduler.jobs import AutopayScheduler
from emi_autopay.services.container import Services, build_services
from emi_autopay.utils.date_utils import local_today


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_notification_client() -> NotificationClient:
    """Provide notification webhook client instance"""
    return NotificationClient()


def get_services(
    db: Session = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
) -> Services:
    return build_services(db, notifier)


def get_today() -> date:
    """Business date in the service timezone"""
    return local_today()


def get_scheduler(request: Request) -> AutopayScheduler:
    """The app's scheduler if one was started, otherwise an unscheduled runner"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        scheduler = AutopayScheduler(SessionLocal, NotificationClient())
    return scheduler


def parse_order_id(order_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(order_id)
    except ValueError:
        raise ValidationError("Invalid order ID format", {"order_id": order_id})

"""Structured JSON logging for payment and batch observability"""

import logging
import sys
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from emi_autopay.config import settings
from emi_autopay.utils.date_utils import utc_now


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utc_now().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_payment_outcome(
    order_id: str,
    user_id: str,
    channel: str,
    status: str,
    amount_cents: int,
    installment_number: Optional[int] = None,
    reason: Optional[str] = None,
) -> None:
    """One line per installment attempt, whatever the outcome"""
    logging.info(
        "Installment payment attempted",
        extra={
            "order_id": order_id,
            "user_id": user_id,
            "step": "installment_payment",
            "channel": channel,
            "outcome": status,
            "amount_cents": amount_cents,
            "installment_number": installment_number,
            "reason": reason,
        },
    )


def log_batch_summary(
    slot_id: str,
    run_date: str,
    users: int,
    processed: int,
    success: int,
    failed: int,
    skipped: int,
    insufficient_balance: int,
    duration_ms: float,
) -> None:
    """Summary line for one scheduler run"""
    logging.info(
        "Autopay batch completed",
        extra={
            "slot_id": slot_id,
            "run_date": run_date,
            "step": "batch_complete",
            "users": users,
            "processed": processed,
            "success": success,
            "failed": failed,
            "skipped": skipped,
            "insufficient_balance": insufficient_balance,
            "duration_ms": duration_ms,
        },
    )

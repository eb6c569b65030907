"""Date manipulation utilities"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from emi_autopay.config import settings


def generate_date_range(start: date, end: date) -> List[date]:
    """Generate list of dates from start to end (inclusive)"""
    days = (end - start).days + 1
    return [start + timedelta(days=i) for i in range(days)]


def add_days(from_date: date, days: int) -> date:
    return from_date + timedelta(days=days)


def local_today(tz_name: Optional[str] = None) -> date:
    """Calendar date in the service timezone"""
    return datetime.now(ZoneInfo(tz_name or settings.timezone)).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_start(day: date) -> date:
    return day.replace(day=1)

"""Time utilities (UTC now, business-timezone conversion, duration labels)."""
from __future__ import annotations
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from app.config import BUSINESS_TIMEZONE


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes (e.g. read back from SQLite) are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def business_tz() -> ZoneInfo:
    return ZoneInfo(BUSINESS_TIMEZONE)


def to_business_time(value: datetime) -> datetime:
    return ensure_utc(value).astimezone(business_tz())


def business_date(value: datetime) -> date:
    return to_business_time(value).date()


def duration_label(minutes: int) -> str:
    hours, rest = divmod(max(minutes, 0), 60)
    return f"{hours}h {rest}m"


__all__ = [
    "utc_now",
    "ensure_utc",
    "business_tz",
    "to_business_time",
    "business_date",
    "duration_label",
]

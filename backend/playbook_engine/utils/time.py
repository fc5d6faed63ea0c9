"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (Mongo returns naive values)"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(value: Union[str, datetime]) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        value: ISO formatted datetime string (datetimes pass through)

    Returns:
        Datetime object in UTC
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(date_parser.isoparse(value))


def add_minutes(dt: datetime, minutes: float) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def add_seconds(dt: datetime, seconds: float) -> datetime:
    """Add seconds to datetime"""
    return dt + timedelta(seconds=seconds)


def seconds_between(start: datetime, end: Optional[datetime] = None) -> float:
    """Elapsed seconds from start to end (default: now)"""
    end = end or utc_now()
    return (ensure_utc(end) - ensure_utc(start)).total_seconds()


def is_past(dt: Optional[datetime]) -> bool:
    """
    Check if datetime has passed

    Returns:
        True if dt is set and earlier than now
    """
    if dt is None:
        return False
    return utc_now() >= ensure_utc(dt)

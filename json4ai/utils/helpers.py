from datetime import datetime, timedelta, timezone
from typing import Optional, Any
import logging

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_datetime(timestamp: Any) -> Optional[datetime]:
    """
    Convert the timestamp formats providers send into a UTC datetime.

    Accepts datetimes, unix seconds (int/float or numeric strings) and
    ISO-8601 strings. Returns None for anything else.
    """
    if timestamp is None or timestamp == '':
        return None
    try:
        if isinstance(timestamp, datetime):
            return ensure_utc(timestamp)
        if isinstance(timestamp, bool):
            return None
        if isinstance(timestamp, (int, float)):
            return datetime.fromtimestamp(timestamp, tz=timezone.utc)
        if isinstance(timestamp, str):
            text = timestamp.strip()
            if text.lstrip('-').replace('.', '', 1).isdigit():
                return datetime.fromtimestamp(float(text), tz=timezone.utc)
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            return ensure_utc(datetime.fromisoformat(text))
        logger.warning(f"Invalid timestamp format: {timestamp}")
        return None
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Error converting timestamp {timestamp!r}: {str(e)}")
        return None


def start_of_next_day(now: datetime) -> datetime:
    now = ensure_utc(now)
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_next_month(now: datetime) -> datetime:
    now = ensure_utc(now)
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def format_date(value: Optional[datetime]) -> str:
    """Format a date for user-facing messages."""
    if not value:
        return ''
    return ensure_utc(value).strftime('%Y-%m-%d')

"""
Timestamp helpers.

All timestamps are stored as UTC text 'YYYY-MM-DD HH:MM:SS' so that string
comparison in SQL orders them correctly on both backends.
"""

from datetime import date, datetime, timezone
from typing import Optional, Union

DB_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    """Current UTC time, naive, truncated to seconds."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_db(value: Union[datetime, date, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime(DB_FORMAT)
    return datetime(value.year, value.month, value.day).strftime(DB_FORMAT)


def from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(str(value)[:19], DB_FORMAT)

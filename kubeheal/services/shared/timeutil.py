"""
UTC helpers. Every stored timestamp is timezone-aware UTC.

SQLite hands back naive datetimes even for DateTime(timezone=True) columns,
so anything read from the store goes through as_utc() before comparison.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

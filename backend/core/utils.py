"""
Utility functions for the approval workflow engine.

Includes:
- UTC clock helpers (naive UTC, matching the DB columns)
- Duration helpers
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current UTC time as a **naive** datetime.

    Timestamp columns are ``TIMESTAMP WITHOUT TIME ZONE``, so every
    comparison against them must be naive UTC as well.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_minutes(moment: datetime, minutes: Optional[int]) -> Optional[datetime]:
    """Return ``moment + minutes`` or None when no duration is configured."""
    if minutes is None:
        return None
    return moment + timedelta(minutes=minutes)


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole minutes elapsed between two timestamps (floored)."""
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() // 60)


def isoformat(moment: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp for JSON history/error entries."""
    return moment.isoformat() if moment else None

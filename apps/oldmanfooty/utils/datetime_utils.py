"""
Datetime utility functions.

All "now" lookups go through ``utcnow()`` so tests can pin the clock with
``set_time_source``.
"""

from datetime import datetime, date
from typing import Callable, Optional
import pytz

_time_source: Optional[Callable[[], datetime]] = None


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information (or the
        injected time source's value)
    """
    if _time_source is not None:
        return ensure_utc(_time_source())
    return datetime.now(pytz.UTC)


def today() -> date:
    """Current UTC calendar date."""
    return utcnow().date()


def set_time_source(source: Callable[[], datetime]) -> None:
    """Replace the clock used by ``utcnow()``."""
    global _time_source
    _time_source = source


def reset_time_source() -> None:
    global _time_source
    _time_source = None


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite hands back timezone-aware columns as naive values; everything we
    store is UTC, so a naive value is UTC by construction.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def isoformat_or_none(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value.isoformat()

"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All persisted timestamps are naive UTC (DateTime(timezone=False)); SQLite and
PostgreSQL then compare them the same way in cooldown and expiry checks.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_since(dt: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    if dt is None:
        return None
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    return (now - ensure_naive_datetime(dt)).total_seconds()


def whole_days_since(dt: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole days elapsed since dt (0 when unknown)"""
    elapsed = seconds_since(dt, now)
    if elapsed is None or elapsed < 0:
        return 0
    return int(elapsed // 86400)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat() + "Z"

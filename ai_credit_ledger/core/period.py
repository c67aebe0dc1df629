"""
Billing period boundaries.

Every component asks this module for period bounds so that they all agree
on exactly the same instants.
"""

from datetime import datetime, timezone
from typing import Tuple


def utc_now() -> datetime:
    """Default clock: the current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(instant: datetime) -> datetime:
    """Normalize an instant to aware UTC. Naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def current_period(now: datetime) -> Tuple[datetime, datetime]:
    """Return the UTC calendar month containing ``now`` as ``[start, end)``.

    Args:
        now: Any instant. Naive datetimes are interpreted as UTC.

    Returns:
        Tuple of (first instant of the month, first instant of next month)
    """
    now = as_utc(now)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end

"""
Billing window calculation.

A billing period is the UTC calendar month containing a moment in time.
"""

import math
from datetime import datetime, timezone
from typing import Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def billing_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return the (start, end) of the billing month containing ``now``.

    Start is inclusive and end exclusive. Naive datetimes are taken to be UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def days_elapsed(start: datetime, now: datetime) -> int:
    """Whole days since the period started."""
    return max(0, (now - start).days)


def days_total(start: datetime, end: datetime) -> int:
    return (end - start).days


def days_remaining(end: datetime, now: datetime) -> int:
    """Days left in the period, counting a partial day as a full one."""
    seconds = (end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))

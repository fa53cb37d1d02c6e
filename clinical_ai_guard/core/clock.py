"""
Time windows for counters.

Quota and metric counters are bucketed by UTC minute, hour and day; the
bucket id is embedded in the store key so a new window starts at zero.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], float]

MINUTE_FORMAT = "%Y-%m-%d %H:%M"
HOUR_FORMAT = "%Y-%m-%d %H:00"
DAY_FORMAT = "%Y-%m-%d"

PERIOD_FORMATS = {
    "minute": MINUTE_FORMAT,
    "hour": HOUR_FORMAT,
    "day": DAY_FORMAT,
}

# How long a bucket's counters live; twice the bucket span
PERIOD_TTLS = {
    "minute": 120,
    "hour": 7200,
    "day": 172800,
}


def utc_now(clock: Clock) -> datetime:
    return datetime.fromtimestamp(clock(), tz=timezone.utc)


def window_id(now: datetime, period: str) -> str:
    """Bucket id for a period ("minute", "hour" or "day")."""
    return now.strftime(PERIOD_FORMATS[period])


def next_minute(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0) + timedelta(minutes=1)


def next_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)


def seconds_until(now: datetime, boundary: datetime) -> int:
    """Whole seconds from now to boundary, never less than 1."""
    return max(1, math.ceil((boundary - now).total_seconds()))

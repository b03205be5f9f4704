from __future__ import annotations

import calendar
import time
from datetime import datetime, timedelta, timezone
from typing import Union

DAY = 86400.0

TimeLike = Union[int, float, str, datetime]


def iso(ts: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(float(ts)))


def to_epoch(value: TimeLike) -> float:
    """Accepts epoch seconds (number or numeric string), ISO8601 UTC strings (``2026-01-01T00:00:00Z`` or date only) and datetimes."""
    if isinstance(value, bool):
        raise TypeError("bool is not a timestamp")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    s = str(value).strip()
    try:
        return float(s)
    except ValueError:
        pass
    for fmt in ("%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"):
        try:
            return float(calendar.timegm(time.strptime(s, fmt)))
        except ValueError:
            continue
    return datetime.fromisoformat(s.replace("Z", "+00:00")).timestamp()


def days(n: float) -> float:
    return float(n) * DAY


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


# ---- calendar buckets (UTC) ----
def day_start(ts: float) -> float:
    d = _utc(ts)
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp()


def week_start(ts: float) -> float:
    d = _utc(day_start(ts))
    return (d - timedelta(days=d.weekday())).timestamp()


def month_start(ts: float) -> float:
    d = _utc(ts)
    return datetime(d.year, d.month, 1, tzinfo=timezone.utc).timestamp()


def next_month_start(ts: float) -> float:
    d = _utc(month_start(ts))
    if d.month == 12:
        return datetime(d.year + 1, 1, 1, tzinfo=timezone.utc).timestamp()
    return datetime(d.year, d.month + 1, 1, tzinfo=timezone.utc).timestamp()

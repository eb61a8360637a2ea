from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

WEEK = timedelta(days=7)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end), or closed when inclusive_end is set."""
    start: datetime
    end: datetime
    inclusive_end: bool = False

    def contains(self, ts: datetime) -> bool:
        ts = _aware(ts)
        if ts < _aware(self.start):
            return False
        if self.inclusive_end:
            return ts <= _aware(self.end)
        return ts < _aware(self.end)


def trailing_week(now: Optional[datetime] = None) -> TimeWindow:
    """The last 7 days up to and including now."""
    now = _aware(now or utc_now())
    return TimeWindow(start=now - WEEK, end=now, inclusive_end=True)


def prior_week(now: Optional[datetime] = None) -> TimeWindow:
    """The 7 days immediately before the trailing week."""
    now = _aware(now or utc_now())
    return TimeWindow(start=now - 2 * WEEK, end=now - WEEK)


def week_id(now: Optional[datetime] = None) -> str:
    """
    ISO week label used to name weekly reports.
    Example: 2026-10-19 -> '2026-W43'
    """
    year, week, _ = _aware(now or utc_now()).isocalendar()
    return f"{year}-W{week:02d}"

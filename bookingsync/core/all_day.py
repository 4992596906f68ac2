"""
Booking Sync — All-day windows.

All-day events are stored with a canonical local time window (by default
05:00 on the first day to 22:00 on the last day) so that buffer arithmetic
treats them like any other interval. Imported, created and rescheduled
all-day events all pass through canonical_window().
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def parse_hhmm(value: str) -> time:
    """'22:00' -> time(22, 0). '24:00' wraps to midnight."""
    hour, minute = (int(part) for part in value.split(":"))
    return time(hour % 24, minute)


def covered_days(start: datetime, end: datetime, tz: ZoneInfo) -> tuple[date, date]:
    """First and last local day an interval touches.

    An end at exactly local midnight is exclusive, so a midnight-to-midnight
    interval covers one day.
    """
    first = start.astimezone(tz).date()
    end_local = end.astimezone(tz)
    last = end_local.date()
    if end_local.time() == time(0, 0) and last > first:
        last -= timedelta(days=1)
    return first, max(first, last)


def canonical_window(
    first_day: date,
    last_day: date,
    tz: ZoneInfo,
    window_start: time,
    window_end: time,
) -> tuple[datetime, datetime]:
    """UTC start/end of an all-day event covering first_day..last_day."""
    start = datetime.combine(first_day, window_start, tzinfo=tz)
    end = datetime.combine(last_day, window_end, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def normalise_all_day(
    start: datetime,
    end: datetime,
    tz: ZoneInfo,
    window_start: time,
    window_end: time,
) -> tuple[datetime, datetime]:
    """Snap a locally entered all-day interval onto the canonical window."""
    first, last = covered_days(start, end, tz)
    return canonical_window(first, last, tz, window_start, window_end)

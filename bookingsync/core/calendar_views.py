"""
Booking Sync — Read views over the local store.

Bookings of a day and the month overview (blocked days, booking counts).
Like availability, these answer from committed local state only.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from bookingsync.core.all_day import covered_days
from bookingsync.core.availability import DEFAULT_BLOCKER_TITLE, InvalidQueryError
from bookingsync.data.db import EventStore
from bookingsync.data.models import CalendarEvent, EventType

MIN_YEAR = 2020
MAX_YEAR = 2100


def _local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def get_booking(store: EventStore, event_id: int) -> CalendarEvent | None:
    """A single booking by id; None for other event types and tombstones."""
    event = store.get_event(event_id)
    if event is None or event.deleted or event.event_type != EventType.BOOKING:
        return None
    return event


def bookings_on_day(store: EventStore, day: date, tz: ZoneInfo) -> list[CalendarEvent]:
    """Bookings starting on the local day, cancelled ones included."""
    day_start = _local_midnight(day, tz)
    day_end = _local_midnight(day + timedelta(days=1), tz)
    events = store.list_in_range(
        day_start, day_end, include_cancelled=True, event_types=[EventType.BOOKING],
    )
    return [ev for ev in events if day_start <= ev.start < day_end]


@dataclass
class DayOverview:
    date: str
    available: bool = True
    blocked: bool = False
    booking_count: int = 0
    blocker_title: str | None = None

    def to_dict(self) -> dict:
        data = {
            "date": self.date,
            "available": self.available,
            "blocked": self.blocked,
            "booking_count": self.booking_count,
        }
        if self.blocker_title:
            data["blocker_title"] = self.blocker_title
        return data


@dataclass
class MonthOverview:
    year: int
    month: int
    days: list[DayOverview] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "days_in_month": len(self.days),
            "days": [d.to_dict() for d in self.days],
            "summary": {
                "total_days": len(self.days),
                "blocked_days": sum(1 for d in self.days if d.blocked),
                "days_with_bookings": sum(1 for d in self.days if d.booking_count > 0),
                "total_bookings": sum(d.booking_count for d in self.days),
            },
        }


def validate_month_query(
    year: str | int | None, month: str | int | None, today: date,
) -> tuple[int, int]:
    """Parse year/month, defaulting to the current month."""
    try:
        y = today.year if year in (None, "") else int(year)
        m = today.month if month in (None, "") else int(month)
    except (TypeError, ValueError):
        raise InvalidQueryError("Year and month must be numbers") from None
    if not MIN_YEAR <= y <= MAX_YEAR:
        raise InvalidQueryError("Invalid year")
    if not 1 <= m <= 12:
        raise InvalidQueryError("Invalid month (1-12)")
    return y, m


def month_overview(store: EventStore, year: int, month: int, tz: ZoneInfo) -> MonthOverview:
    """Blocked days and booking counts for every day of a month.

    An all-day blocker marks every day it covers. Bookings and unclassified
    events count on the local day they start.
    """
    days_in_month = calendar.monthrange(year, month)[1]
    first = date(year, month, 1)
    last = date(year, month, days_in_month)
    overview = MonthOverview(year=year, month=month)
    by_date: dict[date, DayOverview] = {}
    for offset in range(days_in_month):
        day = first + timedelta(days=offset)
        by_date[day] = DayOverview(date=day.isoformat())
        overview.days.append(by_date[day])

    events = store.list_in_range(
        _local_midnight(first, tz), _local_midnight(last + timedelta(days=1), tz),
        event_types=[EventType.BOOKING, EventType.BLOCKER, None],
    )
    for ev in events:
        if ev.event_type == EventType.BLOCKER:
            if not ev.is_all_day:
                continue
            ev_first, ev_last = covered_days(ev.start, ev.end, tz)
            day = max(ev_first, first)
            while day <= min(ev_last, last):
                entry = by_date[day]
                entry.blocked = True
                entry.available = False
                entry.blocker_title = (
                    entry.blocker_title or ev.title or ev.customer_first_name
                    or DEFAULT_BLOCKER_TITLE
                )
                day += timedelta(days=1)
        else:
            entry = by_date.get(ev.start.astimezone(tz).date())
            if entry is not None:
                entry.booking_count += 1
    return overview

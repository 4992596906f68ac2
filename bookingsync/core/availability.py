"""
Booking Sync — Availability Engine.

Derives bookable start times for one calendar day from the local store.
Never talks to the provider: it answers from whatever is committed locally,
so sync trouble makes answers stale, never unavailable.

Rules:
- an all-day blocker closes the whole day;
- every booking (and every unclassified event) is busy until BUFFER_MINUTES
  after its end; blockers are busy exactly for their own interval;
- candidates start every SLOT_INTERVAL_MINUTES from opening time;
- a candidate fits only if start + duration + buffer does not pass closing
  time (no rounding), and it is free if [start, start + duration) overlaps
  no busy interval.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from bookingsync.core.all_day import covered_days, parse_hhmm
from bookingsync.data.db import EventStore
from bookingsync.data.models import CalendarEvent, EventType

logger = logging.getLogger(__name__)

DAY_BLOCKED = "day_blocked"
DEFAULT_BLOCKER_TITLE = "Nicht verfügbar"

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)


class InvalidQueryError(ValueError):
    """Malformed availability input (client error)."""


@dataclass(frozen=True)
class AvailabilityRules:
    open_time: time
    close_time: time
    slot_interval: int = 15
    buffer_minutes: int = 15
    timezone: str = "Europe/Berlin"
    allowed_durations: tuple[int, ...] = (30, 60, 120, 180)

    @classmethod
    def from_settings(cls) -> AvailabilityRules:
        from bookingsync.config import settings

        return cls(
            open_time=parse_hhmm(settings.BUSINESS_HOURS_START),
            close_time=parse_hhmm(settings.BUSINESS_HOURS_END),
            slot_interval=settings.SLOT_INTERVAL_MINUTES,
            buffer_minutes=settings.BUFFER_MINUTES,
            timezone=settings.TIMEZONE,
            allowed_durations=tuple(settings.ALLOWED_DURATIONS),
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """Opening and closing instants of `day` in the business timezone."""
        opening = datetime.combine(day, self.open_time, tzinfo=self.tz)
        if self.close_time == time(0, 0):
            closing = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=self.tz)
        else:
            closing = datetime.combine(day, self.close_time, tzinfo=self.tz)
        return opening, closing


@dataclass
class SlotInfo:
    time: str
    available: bool


@dataclass
class AvailabilityResult:
    date: str
    duration_minutes: int
    available: bool
    slots: list[str] = field(default_factory=list)
    all_slots: list[SlotInfo] = field(default_factory=list)
    reason: str | None = None
    blocker_title: str | None = None
    buffer_minutes: int = 15
    timezone: str = "Europe/Berlin"
    opening_hours: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "date": self.date,
            "duration": self.duration_minutes,
            "available": self.available,
            "slots": list(self.slots),
            "all_slots": [{"time": s.time, "available": s.available} for s in self.all_slots],
            "buffer_minutes": self.buffer_minutes,
            "timezone": self.timezone,
            "opening_hours": dict(self.opening_hours),
        }
        if self.reason:
            data["reason"] = self.reason
            data["blocker_title"] = self.blocker_title
        return data


def _busy_intervals(
    events: list[CalendarEvent], buffer: timedelta,
) -> list[tuple[datetime, datetime]]:
    busy = []
    for ev in events:
        if ev.is_cancelled or ev.deleted:
            continue
        if ev.event_type == EventType.ASSIGNMENT:
            continue
        if ev.event_type == EventType.BLOCKER:
            busy.append((ev.start, ev.end))
        else:
            busy.append((ev.start, ev.end + buffer))
    return sorted(busy)


def _overlaps_any(
    start: datetime, end: datetime, busy: list[tuple[datetime, datetime]],
) -> bool:
    for busy_start, busy_end in busy:
        if start < busy_end and end > busy_start:
            return True
    return False


def _covers_day(event: CalendarEvent, day: date, tz: ZoneInfo) -> bool:
    first, last = covered_days(event.start, event.end, tz)
    return first <= day <= last


def compute_availability(
    day: date,
    duration_minutes: int,
    events: list[CalendarEvent],
    rules: AvailabilityRules,
) -> AvailabilityResult:
    """Slots for `day` given a snapshot of that day's events. Pure."""
    tz = rules.tz
    opening, closing = rules.day_bounds(day)
    result = AvailabilityResult(
        date=day.isoformat(),
        duration_minutes=duration_minutes,
        available=False,
        buffer_minutes=rules.buffer_minutes,
        timezone=rules.timezone,
        opening_hours={
            "start": rules.open_time.strftime("%H:%M"),
            "end": rules.close_time.strftime("%H:%M"),
        },
    )

    for ev in events:
        if (
            ev.event_type == EventType.BLOCKER
            and ev.is_all_day
            and not ev.is_cancelled
            and not ev.deleted
            and _covers_day(ev, day, tz)
        ):
            result.reason = DAY_BLOCKED
            result.blocker_title = ev.title or ev.customer_first_name or DEFAULT_BLOCKER_TITLE
            return result

    buffer = timedelta(minutes=rules.buffer_minutes)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=rules.slot_interval)
    busy = _busy_intervals(events, buffer)

    # Grid arithmetic in wall-clock time, overlap checks on absolute instants.
    candidate = opening.replace(tzinfo=None)
    close_wall = closing.replace(tzinfo=None)
    while candidate < close_wall:
        start = candidate.replace(tzinfo=tz)
        label = candidate.strftime("%H:%M")
        candidate += step
        if start + duration + buffer > closing:
            continue
        free = not _overlaps_any(start, start + duration, busy)
        result.all_slots.append(SlotInfo(time=label, available=free))
        if free:
            result.slots.append(label)

    result.available = bool(result.slots)
    return result


def parse_query_date(date_str: str | None) -> date:
    """Strict YYYY-MM-DD; raises InvalidQueryError otherwise."""
    if not date_str:
        raise InvalidQueryError("Missing date parameter (format: YYYY-MM-DD)")
    if not _DATE_RE.fullmatch(date_str):
        raise InvalidQueryError("Invalid date format. Use YYYY-MM-DD")
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").date()
    except ValueError:
        raise InvalidQueryError("Invalid date format. Use YYYY-MM-DD") from None


def validate_availability_query(
    date_str: str | None,
    duration: str | int | None,
    rules: AvailabilityRules,
) -> tuple[date, int]:
    """Parse query parameters; raises InvalidQueryError on bad input."""
    day = parse_query_date(date_str)

    if duration is None or duration == "":
        minutes = 60
    else:
        try:
            minutes = int(duration)
        except (TypeError, ValueError):
            raise InvalidQueryError(f"Invalid duration: {duration!r}") from None
    if minutes not in rules.allowed_durations:
        allowed = ", ".join(str(d) for d in rules.allowed_durations)
        raise InvalidQueryError(f"Invalid duration. Valid values: {allowed}")
    return day, minutes


def available_slots(
    store: EventStore,
    day: date,
    duration_minutes: int,
    rules: AvailabilityRules | None = None,
) -> AvailabilityResult:
    """Read the day's events once and compute availability over them."""
    rules = rules or AvailabilityRules.from_settings()
    tz = rules.tz
    day_start = datetime.combine(day, time(0, 0), tzinfo=tz)
    day_end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    events = store.list_in_range(
        day_start, day_end,
        event_types=[EventType.BOOKING, EventType.BLOCKER, None],
    )
    logger.debug(
        "Availability for %s (%d min): %d event(s) in snapshot",
        day.isoformat(), duration_minutes, len(events),
    )
    return compute_availability(day, duration_minutes, events, rules)


def find_conflicts(
    store: EventStore,
    start: datetime,
    end: datetime,
    rules: AvailabilityRules | None = None,
    exclude_id: int | None = None,
) -> list[CalendarEvent]:
    """Committed events that make [start, end) unbookable.

    Same rules as the slot grid: buffered bookings and raw events, blockers
    as they are, and all-day blockers closing every day they cover.
    """
    rules = rules or AvailabilityRules.from_settings()
    tz = rules.tz
    buffer = timedelta(minutes=rules.buffer_minutes)
    first_day, last_day = covered_days(start, end, tz)
    range_start = datetime.combine(first_day, time(0, 0), tzinfo=tz) - buffer
    range_end = max(end, datetime.combine(last_day + timedelta(days=1), time(0, 0), tzinfo=tz))
    events = store.list_in_range(
        range_start, range_end,
        event_types=[EventType.BOOKING, EventType.BLOCKER, None],
    )

    conflicts = []
    for ev in events:
        if ev.id == exclude_id:
            continue
        if ev.event_type == EventType.BLOCKER and ev.is_all_day:
            ev_first, ev_last = covered_days(ev.start, ev.end, tz)
            if ev_first <= last_day and first_day <= ev_last:
                conflicts.append(ev)
            continue
        if _overlaps_any(start, end, _busy_intervals([ev], buffer)):
            conflicts.append(ev)
    return conflicts

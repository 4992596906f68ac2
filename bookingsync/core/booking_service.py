"""
Booking Sync — Local event lifecycle.

Create, cancel, reschedule, edit and delete events from inside the portal.
Each operation commits locally first (the row becomes pending export) and
then makes one best-effort attempt to export it right away. If that attempt
fails the row stays pending/error and the next reconciliation retries it, so
callers never see a provider failure as a failed operation.
"""

from __future__ import annotations

import logging
from datetime import datetime

from bookingsync.core.all_day import normalise_all_day, parse_hhmm
from bookingsync.core.availability import AvailabilityRules, find_conflicts
from bookingsync.core.exporter import EventExporter, ExportOutcome
from bookingsync.data.db import EventStore
from bookingsync.data.models import CalendarEvent, EventStatus, EventType
from bookingsync.ports.calendar_port import CalendarError

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = frozenset({
    "customer_first_name", "customer_last_name", "customer_email",
    "customer_phone", "attendee_count", "remarks",
})


class SlotTakenError(ValueError):
    """The requested booking interval collides with a committed event."""


class BookingService:
    """Local mutations followed by an immediate export attempt."""

    def __init__(
        self,
        store: EventStore,
        exporter: EventExporter,
        rules: AvailabilityRules | None = None,
        all_day_window: tuple[str, str] | None = None,
    ) -> None:
        from bookingsync.config import settings

        self._store = store
        self._exporter = exporter
        self._locks = exporter.locks
        self._rules = rules or AvailabilityRules.from_settings()
        window = all_day_window or (settings.ALL_DAY_WINDOW_START, settings.ALL_DAY_WINDOW_END)
        self._window_start = parse_hhmm(window[0])
        self._window_end = parse_hhmm(window[1])

    def _resolve_times(
        self, start: datetime, end: datetime, is_all_day: bool,
    ) -> tuple[datetime, datetime]:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("start and end must be timezone-aware")
        if end <= start:
            raise ValueError(f"end ({end.isoformat()}) must be after start ({start.isoformat()})")
        if not is_all_day:
            return start, end
        return normalise_all_day(
            start, end, self._rules.tz, self._window_start, self._window_end,
        )

    def _check_slot(
        self, start: datetime, end: datetime, exclude_id: int | None = None,
    ) -> None:
        conflicts = find_conflicts(self._store, start, end, self._rules, exclude_id)
        if conflicts:
            raise SlotTakenError(
                f"Slot no longer available (conflicts with event #{conflicts[0].id})"
            )

    async def _try_export(self, event_id: int) -> ExportOutcome | None:
        try:
            return await self._exporter.export(event_id)
        except CalendarError as exc:
            logger.warning(
                "Immediate export of event #%d failed, left for the next sync: %s",
                event_id, exc,
            )
            return None

    async def create_event(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType = EventType.BOOKING,
        **fields,
    ) -> CalendarEvent:
        """Insert a new event and export it.

        All-day events are snapped to the canonical window. Bookings are
        checked against committed events first and raise SlotTakenError
        when the slot is gone.
        """
        fields.setdefault("status", EventStatus.CONFIRMED)
        start, end = self._resolve_times(start, end, fields.get("is_all_day", False))
        if event_type == EventType.BOOKING:
            self._check_slot(start, end)
        event = self._store.add_event(start, end, event_type=event_type, **fields)
        await self._try_export(event.id)
        return self._store.require_event(event.id)

    async def cancel_event(
        self, event_id: int, reason: str | None = None, actor: str | None = None,
    ) -> CalendarEvent:
        """Cancel an event. Cancelling twice is a no-op."""
        async with self._locks.hold(event_id):
            current = self._store.require_event(event_id)
            if current.is_cancelled:
                return current
            self._store.cancel(event_id, reason=reason, actor=actor)
        await self._try_export(event_id)
        return self._store.require_event(event_id)

    async def reschedule_event(
        self, event_id: int, start: datetime, end: datetime,
    ) -> CalendarEvent:
        """Move an event.

        Raises ValueError for cancelled events or bad intervals, and
        SlotTakenError when a booking would land on a taken slot.
        """
        async with self._locks.hold(event_id):
            current = self._store.require_event(event_id)
            if current.is_cancelled:
                raise ValueError(f"Event {event_id} is cancelled and cannot be rescheduled")
            if current.deleted:
                raise ValueError(f"Event {event_id} is being deleted")
            start, end = self._resolve_times(start, end, current.is_all_day)
            if current.event_type == EventType.BOOKING:
                self._check_slot(start, end, exclude_id=event_id)
            self._store.update_local(event_id, start=start, end=end)
        logger.info("Event #%d rescheduled to %s", event_id, start.isoformat())
        await self._try_export(event_id)
        return self._store.require_event(event_id)

    async def update_customer(self, event_id: int, **fields) -> CalendarEvent:
        unknown = set(fields) - CUSTOMER_FIELDS
        if unknown:
            raise ValueError(f"Not customer fields: {sorted(unknown)}")
        async with self._locks.hold(event_id):
            self._store.require_event(event_id)
            self._store.update_local(event_id, **fields)
        await self._try_export(event_id)
        return self._store.require_event(event_id)

    async def delete_event(self, event_id: int) -> bool:
        """Delete an event at the provider and then locally.

        Returns True when the row is gone. False means the provider call
        failed and the row remains as a tombstone for the next sync.
        """
        async with self._locks.hold(event_id):
            self._store.require_event(event_id)
            self._store.mark_deleted(event_id)
        outcome = await self._try_export(event_id)
        return outcome is ExportOutcome.DELETED

"""Shared test fixtures and configuration.

Sets up fake environment variables so bookingsync.config doesn't sys.exit(),
and provides temp stores plus an in-memory provider.
"""

import os

# Patch env vars BEFORE any bookingsync imports
os.environ.setdefault("GOOGLE_CALENDAR_ID", "test-calendar@group.calendar.google.com")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Europe/Berlin")
os.environ.setdefault("SYNC_INTERVAL_MINUTES", "0")
os.environ.setdefault("GOOGLE_SERVICE_ACCOUNT_FILE", "/nonexistent/service_account.json")
os.environ.setdefault("GOOGLE_TOKEN_PATH", "/nonexistent/token.json")

import dataclasses
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from bookingsync.core.description_parser import format_description
from bookingsync.data.models import CalendarEvent, EventStatus
from bookingsync.ports.calendar_port import (
    CursorExpiredError,
    ProviderChanges,
    ProviderConflictError,
    ProviderEvent,
    ProviderNotFoundError,
    TransientProviderError,
)

BERLIN = ZoneInfo("Europe/Berlin")


def berlin(year, month, day, hour=0, minute=0):
    """Aware datetime in the business timezone."""
    return datetime(year, month, day, hour, minute, tzinfo=BERLIN)


class FakeProvider:
    """In-memory calendar with a version-counter change feed.

    Every write bumps a global version; a cursor is the version at the time
    it was issued, and list_changes(cursor) returns events written since.
    """

    def __init__(self):
        self.events: dict[str, ProviderEvent] = {}
        self.version = 0
        self._changed_at: dict[str, int] = {}
        self._next_id = 0
        self.calls: list[tuple[str, str]] = []
        self.fail_for: set[int] = set()          # local event ids whose push fails
        self.fail_with = TransientProviderError
        self.list_error: Exception | None = None
        self.expired_cursors: set[str] = set()
        self.list_calls: list[str | None] = []
        self.list_windows: list[tuple[datetime | None, datetime | None]] = []
        self.lose_create_responses = False  # store the event, then fail the call

    # -- test helpers ------------------------------------------------------

    def _touch(self, pe: ProviderEvent) -> None:
        self.version += 1
        pe.etag = f'"{self.version}"'
        pe.updated = datetime.now(timezone.utc).isoformat()
        self._changed_at[pe.id] = self.version
        self.events[pe.id] = pe

    def add_remote(self, **kwargs) -> ProviderEvent:
        """Simulate an event created directly in the calendar."""
        self._next_id += 1
        kwargs.setdefault("id", f"ext{self._next_id}")
        pe = ProviderEvent(**kwargs)
        self._touch(pe)
        return dataclasses.replace(pe)

    def modify_remote(self, provider_id: str, **changes) -> None:
        pe = dataclasses.replace(self.events[provider_id], **changes)
        self._touch(pe)

    def cancel_remote(self, provider_id: str) -> None:
        self.modify_remote(provider_id, status="cancelled")

    def live(self) -> list[ProviderEvent]:
        return [e for e in self.events.values() if not e.is_cancelled]

    # -- CalendarProvider --------------------------------------------------

    async def list_changes(self, cursor, time_min=None, time_max=None):
        self.list_calls.append(cursor)
        self.list_windows.append((time_min, time_max))
        if self.list_error is not None:
            raise self.list_error
        if cursor in self.expired_cursors:
            raise CursorExpiredError(f"cursor {cursor} expired")
        since = int(cursor) if cursor else 0
        events = [
            dataclasses.replace(e)
            for pid, e in self.events.items()
            if self._changed_at[pid] > since and (cursor or not e.is_cancelled)
        ]
        return ProviderChanges(events=events, next_cursor=str(self.version), full=not cursor)

    def _check_failure(self, event: CalendarEvent) -> None:
        if event.id in self.fail_for:
            raise self.fail_with(f"injected failure for event {event.id}")

    def _from_local(self, pid: str, event: CalendarEvent) -> ProviderEvent:
        return ProviderEvent(
            id=pid,
            status="tentative" if event.status == EventStatus.PENDING else "confirmed",
            summary=event.title or "Booking",
            description=format_description(event),
            location=event.location,
            start=event.start,
            end=event.end,
        )

    async def create_event(self, event):
        self.calls.append(("create", str(event.id)))
        self._check_failure(event)
        if event.export_key:
            pid = event.export_key
        else:
            self._next_id += 1
            pid = f"gen{self._next_id}"
        if pid in self.events:
            raise ProviderConflictError(f"event {pid} already exists")
        pe = self._from_local(pid, event)
        self._touch(pe)
        if self.lose_create_responses:
            raise TransientProviderError(f"response for {pid} lost")
        return dataclasses.replace(pe)

    async def update_event(self, provider_id, event):
        self.calls.append(("update", provider_id))
        self._check_failure(event)
        existing = self.events.get(provider_id)
        if existing is None or existing.is_cancelled:
            raise ProviderNotFoundError(f"event {provider_id} not found")
        pe = self._from_local(provider_id, event)
        self._touch(pe)
        return dataclasses.replace(pe)

    async def delete_event(self, provider_id):
        self.calls.append(("delete", provider_id))
        existing = self.events.get(provider_id)
        if existing is None or existing.is_cancelled:
            raise ProviderNotFoundError(f"event {provider_id} not found")
        self.cancel_remote(provider_id)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_bookings.db")


@pytest.fixture
def event_store(tmp_db_path):
    """Return an EventStore backed by a temp file."""
    from bookingsync.data.db import EventStore
    return EventStore(db_path=tmp_db_path)


@pytest.fixture
def state_store(tmp_db_path):
    """Return a SyncStateStore sharing the temp DB file."""
    from bookingsync.data.db import SyncStateStore
    return SyncStateStore(db_path=tmp_db_path)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def locks():
    from bookingsync.core.row_locks import EventLocks
    return EventLocks()


@pytest.fixture
def exporter(event_store, provider, locks):
    from bookingsync.core.exporter import EventExporter
    return EventExporter(event_store, provider, locks)


@pytest.fixture
def reconciler(event_store, state_store, provider, locks, exporter):
    from bookingsync.core.reconciler import Reconciler
    return Reconciler(
        event_store, state_store, provider, "test-calendar",
        locks=locks, exporter=exporter,
        lookback_days=30, lookahead_days=90, max_workers=3, batch_size=50,
        timezone_name="Europe/Berlin", all_day_window=("05:00", "22:00"),
    )

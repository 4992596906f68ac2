"""Calendar port — abstract interface for the calendar provider.

Core modules depend on this protocol, never on a specific provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Protocol

from bookingsync.data.models import CalendarEvent


class CalendarError(Exception):
    """Raised when any calendar provider operation fails."""


class TransientProviderError(CalendarError):
    """Network failure, timeout, rate limit or 5xx. Retried next cycle."""


class PermanentProviderError(CalendarError):
    """The provider rejected the request (validation, permissions)."""


class ProviderAuthError(CalendarError):
    """Credentials are missing, expired or rejected."""


class ProviderNotFoundError(CalendarError):
    """The referenced provider event does not exist (any more)."""


class ProviderConflictError(CalendarError):
    """An event with the requested provider id already exists."""


class CursorExpiredError(CalendarError):
    """The incremental-sync cursor was rejected; a full pull is required."""


@dataclass
class ProviderEvent:
    """An event as reported by the provider, normalised.

    For timed events start/end are aware datetimes. For all-day events
    start_date/end_date carry the provider's dates (end exclusive) and
    start/end are None.
    """

    id: str
    status: str = "confirmed"            # "confirmed" | "tentative" | "cancelled"
    summary: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    start_date: date | None = None
    end_date: date | None = None
    etag: str | None = None
    updated: str | None = None

    @property
    def is_all_day(self) -> bool:
        return self.start is None and self.start_date is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"


@dataclass
class ProviderChanges:
    """One page-complete answer from the provider's change feed."""

    events: list[ProviderEvent] = field(default_factory=list)
    next_cursor: str | None = None
    full: bool = False


class CalendarProvider(Protocol):
    """Event CRUD plus incremental change feed on one shared calendar."""

    async def list_changes(
        self,
        cursor: str | None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> ProviderChanges: ...

    async def create_event(self, event: CalendarEvent) -> ProviderEvent: ...

    async def update_event(
        self, provider_id: str, event: CalendarEvent
    ) -> ProviderEvent: ...

    async def delete_event(self, provider_id: str) -> None: ...

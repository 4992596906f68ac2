"""
Booking Sync — Data Models.

The local canonical record of the shared calendar. Every row is one calendar
event plus the metadata needed to keep it in step with the provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    BOOKING = "booking"
    BLOCKER = "blocker"
    ASSIGNMENT = "assignment"


class EventStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class SyncStatus(str, Enum):
    """Whether the local row agrees with the provider.

    PENDING: a local mutation has not reached the provider yet.
    SYNCED:  local and remote agreed at the last reconciliation.
    ERROR:   the last push failed; retried on the next cycle.
    """

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class CalendarEvent:
    """One event on the shared calendar.

    start/end are timezone-aware UTC datetimes. event_type None marks a raw
    event created directly in the provider that has not been classified.
    """

    id: int
    start: datetime
    end: datetime
    title: str = ""
    description: str = ""
    location: str = ""
    event_type: EventType | None = None
    is_all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED

    # Sync metadata
    provider_id: str | None = None
    provider_etag: str | None = None
    provider_updated: str | None = None
    export_key: str | None = None     # client-chosen provider id for idempotent creates
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None
    last_synced_at: datetime | None = None
    deleted: bool = False

    # Customer attributes (internal entry or parsed from the description)
    customer_first_name: str | None = None
    customer_last_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    attendee_count: int | None = None
    remarks: str | None = None

    # Staff assignments
    assignee_name: str | None = None
    assignee_number: str | None = None

    # Cancellation (terminal)
    cancel_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass
class SyncRun:
    """One row of the reconciliation audit trail."""

    id: int | None
    started_at: datetime
    completed_at: datetime | None
    status: str                       # "success" | "partial" | "failed"
    sync_type: str                    # "incremental" | "full"
    imported: int = 0
    exported: int = 0
    updated: int = 0
    deleted: int = 0
    error_count: int = 0
    error_message: str | None = None
    checkpoint: str | None = None


@dataclass
class SyncErrorEntry:
    """A per-event failure recorded during one cycle."""

    event_id: str
    message: str


@dataclass
class SyncResult:
    """Outcome of a single reconciliation cycle."""

    imported: int = 0
    exported: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[SyncErrorEntry] = field(default_factory=list)
    checkpoint: str | None = None
    sync_type: str = "incremental"
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "imported": self.imported,
            "exported": self.exported,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": [{"event_id": e.event_id, "message": e.message} for e in self.errors],
            "checkpoint": self.checkpoint,
            "sync_type": self.sync_type,
        }

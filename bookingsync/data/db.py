"""
Booking Sync — Event Store.

SQLite-backed canonical record of the shared calendar plus the sync
checkpoint and the audit trail of reconciliation cycles.

All instants are stored as ISO-8601 UTC strings so that an imported event
reads back to exactly the same instant it was written with.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from bookingsync.data.models import (
    CalendarEvent,
    EventStatus,
    EventType,
    SyncRun,
    SyncStatus,
)

logger = logging.getLogger(__name__)

# Columns a caller may write through _update(); id and created_at are fixed.
_EVENT_COLUMNS = {
    "start_time", "end_time", "title", "description", "location",
    "event_type", "is_all_day", "status",
    "provider_id", "provider_etag", "provider_updated", "export_key",
    "sync_status", "sync_error", "last_synced_at", "deleted",
    "customer_first_name", "customer_last_name", "customer_email",
    "customer_phone", "attendee_count", "remarks",
    "assignee_name", "assignee_number",
    "cancel_reason", "cancelled_by", "cancelled_at",
    "updated_at",
}

# Attribute names on CalendarEvent that map 1:1 to columns.
_PLAIN_FIELDS = {
    "title", "description", "location", "customer_first_name",
    "customer_last_name", "customer_email", "customer_phone",
    "attendee_count", "remarks", "assignee_name", "assignee_number",
}


class EventNotFoundError(LookupError):
    """Raised when a local event id does not exist."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """Serialize an aware datetime as a UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError(f"Naive datetime not allowed: {value!r}")
    return value.astimezone(timezone.utc).isoformat()


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def _check_interval(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise ValueError("start and end must be timezone-aware")
    if end <= start:
        raise ValueError(f"end ({end.isoformat()}) must be after start ({start.isoformat()})")


def fields_to_columns(fields: dict) -> dict:
    """Translate CalendarEvent attribute names/values to column values."""
    columns: dict = {}
    for key, value in fields.items():
        if key == "start":
            columns["start_time"] = to_db_time(value)
        elif key == "end":
            columns["end_time"] = to_db_time(value)
        elif key in ("last_synced_at", "cancelled_at", "updated_at"):
            columns[key] = to_db_time(value)
        elif key in ("event_type", "status", "sync_status"):
            columns[key] = value.value if value is not None else None
        elif key in ("is_all_day", "deleted"):
            columns[key] = int(bool(value))
        elif key in _PLAIN_FIELDS or key in _EVENT_COLUMNS:
            columns[key] = value
        else:
            raise KeyError(f"Unknown event field: {key}")
    return columns


class EventStore:
    """SQLite-backed storage for calendar events."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from bookingsync.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the events table if it doesn't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                    start_time           TEXT    NOT NULL,
                    end_time             TEXT    NOT NULL,
                    title                TEXT    NOT NULL DEFAULT '',
                    description          TEXT    NOT NULL DEFAULT '',
                    location             TEXT    NOT NULL DEFAULT '',
                    event_type           TEXT,
                    is_all_day           INTEGER NOT NULL DEFAULT 0,
                    status               TEXT    NOT NULL DEFAULT 'confirmed',
                    provider_id          TEXT    UNIQUE,
                    provider_etag        TEXT,
                    provider_updated     TEXT,
                    export_key           TEXT,
                    sync_status          TEXT    NOT NULL DEFAULT 'pending',
                    sync_error           TEXT,
                    last_synced_at       TEXT,
                    deleted              INTEGER NOT NULL DEFAULT 0,
                    customer_first_name  TEXT,
                    customer_last_name   TEXT,
                    customer_email       TEXT,
                    customer_phone       TEXT,
                    attendee_count       INTEGER,
                    remarks              TEXT,
                    cancel_reason        TEXT,
                    cancelled_by         TEXT,
                    cancelled_at         TEXT,
                    created_at           TEXT    NOT NULL,
                    updated_at           TEXT    NOT NULL
                )
            """)
            # Migrate existing DBs: add new columns if missing
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(calendar_events)").fetchall()
            }
            if "assignee_name" not in existing_cols:
                conn.execute("ALTER TABLE calendar_events ADD COLUMN assignee_name TEXT")
            if "assignee_number" not in existing_cols:
                conn.execute("ALTER TABLE calendar_events ADD COLUMN assignee_number TEXT")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_start ON calendar_events (start_time)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_sync ON calendar_events (sync_status)"
            )
        logger.debug("Events table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
        return CalendarEvent(
            id=row["id"],
            start=from_db_time(row["start_time"]),
            end=from_db_time(row["end_time"]),
            title=row["title"],
            description=row["description"],
            location=row["location"],
            event_type=EventType(row["event_type"]) if row["event_type"] else None,
            is_all_day=bool(row["is_all_day"]),
            status=EventStatus(row["status"]),
            provider_id=row["provider_id"],
            provider_etag=row["provider_etag"],
            provider_updated=row["provider_updated"],
            export_key=row["export_key"],
            sync_status=SyncStatus(row["sync_status"]),
            sync_error=row["sync_error"],
            last_synced_at=from_db_time(row["last_synced_at"]),
            deleted=bool(row["deleted"]),
            customer_first_name=row["customer_first_name"],
            customer_last_name=row["customer_last_name"],
            customer_email=row["customer_email"],
            customer_phone=row["customer_phone"],
            attendee_count=row["attendee_count"],
            remarks=row["remarks"],
            assignee_name=row["assignee_name"],
            assignee_number=row["assignee_number"],
            cancel_reason=row["cancel_reason"],
            cancelled_by=row["cancelled_by"],
            cancelled_at=from_db_time(row["cancelled_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def _insert(self, columns: dict) -> CalendarEvent:
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO calendar_events ({names}) VALUES ({placeholders})",
                list(columns.values()),
            )
            event_id = cursor.lastrowid
        return self.get_event(event_id)

    def add_event(self, start: datetime, end: datetime, **fields) -> CalendarEvent:
        """Insert a locally created event. It starts out pending export."""
        _check_interval(start, end)
        now = utcnow()
        columns = fields_to_columns({"start": start, "end": end, **fields})
        columns.update(
            sync_status=SyncStatus.PENDING.value,
            created_at=to_db_time(now),
            updated_at=to_db_time(now),
        )
        event = self._insert(columns)
        logger.info(
            "Event added: #%d %s %s–%s",
            event.id, event.event_type.value if event.event_type else "raw",
            event.start.isoformat(), event.end.isoformat(),
        )
        return event

    def import_event(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        etag: str | None = None,
        provider_updated: str | None = None,
        **fields,
    ) -> CalendarEvent:
        """Insert an event discovered at the provider. It is synced on arrival."""
        _check_interval(start, end)
        now = utcnow()
        columns = fields_to_columns({"start": start, "end": end, **fields})
        columns.update(
            provider_id=provider_id,
            provider_etag=etag,
            provider_updated=provider_updated,
            sync_status=SyncStatus.SYNCED.value,
            last_synced_at=to_db_time(now),
            created_at=to_db_time(now),
            updated_at=to_db_time(now),
        )
        event = self._insert(columns)
        logger.info("Event imported: #%d from provider %s", event.id, provider_id)
        return event

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_event(self, event_id: int) -> CalendarEvent | None:
        """Fetch a single event by local ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def require_event(self, event_id: int) -> CalendarEvent:
        event = self.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    def get_by_provider_id(self, provider_id: str) -> CalendarEvent | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM calendar_events WHERE provider_id = ?", (provider_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def get_by_export_key(self, export_key: str) -> CalendarEvent | None:
        """Find a row whose create was sent with this provider id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM calendar_events WHERE export_key = ?", (export_key,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_pending(self, limit: int | None = None) -> list[CalendarEvent]:
        """Rows whose local state has not reached the provider (pending or error)."""
        query = (
            "SELECT * FROM calendar_events WHERE sync_status IN (?, ?) "
            "ORDER BY updated_at, id"
        )
        params: list = [SyncStatus.PENDING.value, SyncStatus.ERROR.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_errors(self) -> list[CalendarEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM calendar_events WHERE sync_status = ? ORDER BY updated_at",
                (SyncStatus.ERROR.value,),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_in_range(
        self,
        range_start: datetime,
        range_end: datetime,
        include_cancelled: bool = False,
        event_types: list[EventType | None] | None = None,
    ) -> list[CalendarEvent]:
        """Events overlapping [range_start, range_end), excluding deletion tombstones.

        event_types may contain None to include unclassified (raw) events.
        """
        conditions = ["start_time < ?", "end_time > ?", "deleted = 0"]
        params: list = [to_db_time(range_end), to_db_time(range_start)]
        if not include_cancelled:
            conditions.append("status != ?")
            params.append(EventStatus.CANCELLED.value)
        if event_types is not None:
            type_conditions = []
            named = [t.value for t in event_types if t is not None]
            if named:
                type_conditions.append(
                    "event_type IN (" + ", ".join("?" for _ in named) + ")"
                )
                params.extend(named)
            if None in event_types:
                type_conditions.append("event_type IS NULL")
            conditions.append("(" + " OR ".join(type_conditions or ["0"]) + ")")

        query = (
            "SELECT * FROM calendar_events WHERE "
            + " AND ".join(conditions)
            + " ORDER BY start_time"
        )
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _update(self, event_id: int, columns: dict) -> CalendarEvent:
        unknown = set(columns) - _EVENT_COLUMNS
        if unknown:
            raise KeyError(f"Unknown event columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE calendar_events SET {assignments} WHERE id = ?",
                [*columns.values(), event_id],
            )
        if cursor.rowcount == 0:
            raise EventNotFoundError(f"Event {event_id} not found")
        return self.get_event(event_id)

    def update_local(self, event_id: int, **fields) -> CalendarEvent:
        """Apply a local mutation; the row becomes pending export."""
        current = self.require_event(event_id)
        start = fields.get("start", current.start)
        end = fields.get("end", current.end)
        _check_interval(start, end)
        columns = fields_to_columns(fields)
        columns.update(
            sync_status=SyncStatus.PENDING.value,
            updated_at=to_db_time(utcnow()),
        )
        return self._update(event_id, columns)

    def apply_remote(
        self,
        event_id: int,
        fields: dict,
        etag: str | None,
        provider_updated: str | None,
    ) -> CalendarEvent:
        """Write provider-originated changes to a row.

        A row that was in agreement stays synced. A row that still carries an
        unexported local mutation keeps its pending/error state so the next
        push phase exports the merged result.
        """
        current = self.require_event(event_id)
        start = fields.get("start", current.start)
        end = fields.get("end", current.end)
        _check_interval(start, end)
        now = utcnow()
        columns = fields_to_columns(fields)
        columns.update(provider_etag=etag, provider_updated=provider_updated)
        if current.sync_status == SyncStatus.SYNCED:
            columns.update(
                updated_at=to_db_time(now),
                last_synced_at=to_db_time(now),
            )
        return self._update(event_id, columns)

    def record_provider_version(
        self, event_id: int, etag: str | None, provider_updated: str | None,
    ) -> None:
        """Remember the provider's version without touching event data."""
        self._update(event_id, {"provider_etag": etag, "provider_updated": provider_updated})

    def set_export_key(self, event_id: int, export_key: str) -> CalendarEvent:
        """Persist the provider id a create will use, before the create is sent."""
        return self._update(event_id, {"export_key": export_key})

    def set_customer_fields(self, event_id: int, **fields) -> CalendarEvent:
        """Backfill customer attributes parsed from provider text.

        The values originate from the provider, so the row's sync state is
        left alone.
        """
        return self._update(event_id, fields_to_columns(fields))

    def mark_synced(
        self,
        event_id: int,
        provider_id: str | None,
        etag: str | None = None,
        provider_updated: str | None = None,
    ) -> CalendarEvent:
        """Record a successful push. provider_id None clears the link."""
        return self._update(event_id, {
            "provider_id": provider_id,
            "provider_etag": etag,
            "provider_updated": provider_updated,
            "sync_status": SyncStatus.SYNCED.value,
            "sync_error": None,
            "last_synced_at": to_db_time(utcnow()),
        })

    def mark_error(self, event_id: int, message: str) -> None:
        self._update(event_id, {
            "sync_status": SyncStatus.ERROR.value,
            "sync_error": message,
        })
        logger.warning("Event #%d marked as sync error: %s", event_id, message)

    def cancel(
        self, event_id: int, reason: str | None, actor: str | None, pending_export: bool = True,
    ) -> CalendarEvent:
        """Move an event to the terminal cancelled state.

        Cancelling an already cancelled event returns it unchanged.
        pending_export=False is used when the cancellation came from the
        provider and therefore needs no export.
        """
        current = self.require_event(event_id)
        if current.is_cancelled:
            return current
        now = utcnow()
        columns = {
            "status": EventStatus.CANCELLED.value,
            "cancel_reason": reason,
            "cancelled_by": actor,
            "cancelled_at": to_db_time(now),
            "updated_at": to_db_time(now),
        }
        if pending_export:
            columns["sync_status"] = SyncStatus.PENDING.value
        elif current.sync_status == SyncStatus.SYNCED:
            columns["last_synced_at"] = to_db_time(now)
        event = self._update(event_id, columns)
        logger.info("Event #%d cancelled by %s: %s", event_id, actor, reason)
        return event

    def mark_deleted(self, event_id: int) -> CalendarEvent:
        """Tombstone a row whose provider deletion is still outstanding."""
        return self._update(event_id, {
            "deleted": 1,
            "sync_status": SyncStatus.PENDING.value,
            "updated_at": to_db_time(utcnow()),
        })

    def purge(self, event_id: int) -> bool:
        """Permanently remove a row. Only called once the provider is clean."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM calendar_events WHERE id = ?", (event_id,),
            )
        removed = cursor.rowcount > 0
        if removed:
            logger.info("Event #%d removed from the store", event_id)
        return removed


class SyncStateStore:
    """SQLite-backed storage for the sync cursor and the cycle audit trail."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from bookingsync.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    calendar_id  TEXT PRIMARY KEY,
                    cursor       TEXT,
                    updated_at   TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_runs (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at     TEXT    NOT NULL,
                    completed_at   TEXT,
                    status         TEXT    NOT NULL,
                    sync_type      TEXT    NOT NULL,
                    imported       INTEGER NOT NULL DEFAULT 0,
                    exported       INTEGER NOT NULL DEFAULT 0,
                    updated        INTEGER NOT NULL DEFAULT 0,
                    deleted        INTEGER NOT NULL DEFAULT 0,
                    error_count    INTEGER NOT NULL DEFAULT 0,
                    error_message  TEXT,
                    checkpoint     TEXT
                )
            """)
        logger.debug("Sync state tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            status=row["status"],
            sync_type=row["sync_type"],
            imported=row["imported"],
            exported=row["exported"],
            updated=row["updated"],
            deleted=row["deleted"],
            error_count=row["error_count"],
            error_message=row["error_message"],
            checkpoint=row["checkpoint"],
        )

    def get_checkpoint(self, calendar_id: str) -> str | None:
        """Return the stored cursor verbatim, or None before the first cycle."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT cursor FROM sync_state WHERE calendar_id = ?", (calendar_id,)
            ).fetchone()
        return row["cursor"] if row else None

    def save_checkpoint(self, calendar_id: str, cursor: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (calendar_id, cursor, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(calendar_id) DO UPDATE SET
                    cursor = excluded.cursor,
                    updated_at = excluded.updated_at
                """,
                (calendar_id, cursor, to_db_time(utcnow())),
            )
        logger.debug("Checkpoint saved for %s", calendar_id)

    def record_run(self, run: SyncRun) -> SyncRun:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs
                    (started_at, completed_at, status, sync_type,
                     imported, exported, updated, deleted,
                     error_count, error_message, checkpoint)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    to_db_time(run.started_at), to_db_time(run.completed_at),
                    run.status, run.sync_type,
                    run.imported, run.exported, run.updated, run.deleted,
                    run.error_count, run.error_message, run.checkpoint,
                ),
            )
            run.id = cursor.lastrowid
        logger.info(
            "Sync run #%d recorded: %s (%d imported, %d exported, %d updated, %d deleted, %d errors)",
            run.id, run.status, run.imported, run.exported, run.updated,
            run.deleted, run.error_count,
        )
        return run

    def latest_run(self) -> SyncRun | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_runs ORDER BY started_at DESC, id DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    def list_runs(self, limit: int = 20) -> list[SyncRun]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_runs ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

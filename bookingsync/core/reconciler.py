"""
Booking Sync — Reconciliation Engine.

One cycle brings the local store and the provider calendar into agreement:

1. Pull the provider events changed since the stored cursor (or the whole
   lookback/lookahead window when there is no usable cursor).
2. Match each one to a local row by provider id and import, cascade-cancel
   or merge it.
3. Push local rows still pending export, except those the pull just wrote.
4. Persist the new cursor and an audit row.

Per-event failures are collected in the result and never stop the cycle.
A failed pull aborts the cycle before anything is written.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from bookingsync.core.all_day import canonical_window, parse_hhmm
from bookingsync.core.description_parser import parse_description, parse_summary
from bookingsync.core.exporter import EventExporter, ExportDataError, ExportOutcome
from bookingsync.core.merge_policy import merge_remote_fields
from bookingsync.core.row_locks import EventLocks
from bookingsync.data.db import EventStore, SyncStateStore, utcnow
from bookingsync.data.models import (
    EventStatus,
    EventType,
    SyncErrorEntry,
    SyncResult,
    SyncRun,
)
from bookingsync.ports.calendar_port import (
    CalendarError,
    CalendarProvider,
    CursorExpiredError,
    ProviderChanges,
    ProviderEvent,
)

logger = logging.getLogger(__name__)

CANCELLED_BY_PROVIDER = "provider"
CANCELLED_IN_CALENDAR = "Cancelled in calendar"


class SyncAbortedError(Exception):
    """A cycle failed before writing anything; the checkpoint is unchanged."""


def resolve_times(
    pe: ProviderEvent, tz: ZoneInfo, window_start: time, window_end: time,
) -> tuple[datetime, datetime]:
    """UTC start/end for a provider event.

    All-day events get a canonical local window from window_start on the
    first day to window_end on the last day. The provider's end date is
    exclusive. Raises ValueError for events without usable times.
    """
    if pe.is_all_day:
        first_day: date = pe.start_date
        last_day = (pe.end_date - timedelta(days=1)) if pe.end_date else first_day
        if last_day < first_day:
            last_day = first_day
        start, end = canonical_window(first_day, last_day, tz, window_start, window_end)
    else:
        if pe.start is None or pe.end is None:
            raise ValueError(f"Provider event {pe.id} has no start/end time")
        start = pe.start.astimezone(timezone.utc)
        end = pe.end.astimezone(timezone.utc)
    if end <= start:
        raise ValueError(f"Provider event {pe.id} ends before it starts")
    return start, end


def incoming_fields(
    pe: ProviderEvent, tz: ZoneInfo, window_start: time, window_end: time,
) -> dict[str, Any]:
    """Translate a provider event into CalendarEvent field values."""
    start, end = resolve_times(pe, tz, window_start, window_end)
    parsed = parse_description(pe.description)
    summary = parse_summary(pe.summary)

    event_type = parsed.event_type
    if event_type is None and summary.event_type == EventType.ASSIGNMENT:
        event_type = EventType.ASSIGNMENT

    fields: dict[str, Any] = {
        "start": start,
        "end": end,
        "is_all_day": pe.is_all_day,
        "status": EventStatus.PENDING if pe.status == "tentative" else EventStatus.CONFIRMED,
        "title": pe.summary,
        "description": pe.description,
        "location": pe.location,
        "event_type": event_type,
    }

    if event_type == EventType.ASSIGNMENT:
        fields["assignee_name"] = summary.assignee_name
        fields["assignee_number"] = summary.assignee_number
    elif event_type != EventType.BLOCKER:
        if parsed.first_name or parsed.last_name:
            first, last = parsed.first_name, parsed.last_name
        else:
            first, last = summary.first_name, summary.last_name
        fields.update(
            customer_first_name=first,
            customer_last_name=last,
            customer_phone=parsed.phone,
            customer_email=parsed.email,
            attendee_count=parsed.attendee_count,
            remarks=parsed.remarks,
        )
    return fields


class Reconciler:
    """Runs reconciliation cycles for one calendar."""

    def __init__(
        self,
        store: EventStore,
        state: SyncStateStore,
        provider: CalendarProvider,
        calendar_id: str,
        locks: EventLocks | None = None,
        exporter: EventExporter | None = None,
        lookback_days: int | None = None,
        lookahead_days: int | None = None,
        max_workers: int | None = None,
        batch_size: int | None = None,
        timezone_name: str | None = None,
        all_day_window: tuple[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        from bookingsync.config import settings

        self._store = store
        self._state = state
        self._provider = provider
        self._calendar_id = calendar_id
        self._locks = locks or (exporter.locks if exporter else EventLocks())
        self._exporter = exporter or EventExporter(store, provider, self._locks)
        self._lookback = timedelta(
            days=settings.SYNC_LOOKBACK_DAYS if lookback_days is None else lookback_days
        )
        self._lookahead = timedelta(
            days=settings.SYNC_LOOKAHEAD_DAYS if lookahead_days is None else lookahead_days
        )
        self._max_workers = max_workers or settings.SYNC_MAX_WORKERS
        self._batch_size = batch_size or settings.EXPORT_BATCH_SIZE
        self._tz = ZoneInfo(timezone_name or settings.TIMEZONE)
        window = all_day_window or (settings.ALL_DAY_WINDOW_START, settings.ALL_DAY_WINDOW_END)
        self._window_start = parse_hhmm(window[0])
        self._window_end = parse_hhmm(window[1])
        self._clock = clock

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    async def run_cycle(self) -> SyncResult:
        """Read the stored checkpoint and run one cycle from it."""
        started = self._clock()
        try:
            checkpoint = self._state.get_checkpoint(self._calendar_id)
        except sqlite3.Error as exc:
            self._record_failure(started, "incremental", f"Cannot read checkpoint: {exc}", None)
            raise SyncAbortedError(f"Cannot read checkpoint: {exc}") from exc
        return await self.sync(checkpoint)

    async def sync(self, checkpoint: str | None) -> SyncResult:
        result = SyncResult(started_at=self._clock())
        changes = await self._pull(checkpoint, result)
        result.sync_type = "full" if changes.full else "incremental"

        touched = await self._apply_changes(changes.events, result)
        await self._push(touched, result)

        if changes.next_cursor:
            result.checkpoint = changes.next_cursor
        else:
            result.checkpoint = None if changes.full else checkpoint
        self._state.save_checkpoint(self._calendar_id, result.checkpoint)

        result.completed_at = self._clock()
        self._state.record_run(SyncRun(
            id=None,
            started_at=result.started_at,
            completed_at=result.completed_at,
            status="success" if result.success else "partial",
            sync_type=result.sync_type,
            imported=result.imported,
            exported=result.exported,
            updated=result.updated,
            deleted=result.deleted,
            error_count=len(result.errors),
            error_message="; ".join(e.message for e in result.errors[:5]) or None,
            checkpoint=result.checkpoint,
        ))
        logger.info(
            "Sync cycle done (%s): %d imported, %d exported, %d updated, %d deleted, %d error(s)",
            result.sync_type, result.imported, result.exported, result.updated,
            result.deleted, len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _pull(self, checkpoint: str | None, result: SyncResult) -> ProviderChanges:
        try:
            if checkpoint:
                try:
                    return await self._provider.list_changes(checkpoint)
                except CursorExpiredError:
                    logger.warning("Sync cursor expired, falling back to a full pull")
            now = self._clock()
            return await self._provider.list_changes(
                None, time_min=now - self._lookback, time_max=now + self._lookahead,
            )
        except CalendarError as exc:
            sync_type = "incremental" if checkpoint else "full"
            self._record_failure(result.started_at, sync_type, str(exc), checkpoint)
            logger.error("Sync aborted, provider unreachable: %s", exc)
            raise SyncAbortedError(str(exc)) from exc

    def _record_failure(
        self, started: datetime, sync_type: str, message: str, checkpoint: str | None,
    ) -> None:
        try:
            self._state.record_run(SyncRun(
                id=None,
                started_at=started,
                completed_at=self._clock(),
                status="failed",
                sync_type=sync_type,
                error_count=1,
                error_message=message,
                checkpoint=checkpoint,
            ))
        except sqlite3.Error as exc:
            logger.error("Could not record failed sync run: %s", exc)

    # ------------------------------------------------------------------
    # Match
    # ------------------------------------------------------------------

    async def _apply_changes(
        self, events: list[ProviderEvent], result: SyncResult,
    ) -> set[int]:
        touched: set[int] = set()
        for pe in events:
            try:
                event_id = await self._apply_one(pe, result)
            except ValueError as exc:
                logger.warning("Skipping provider event %s: %s", pe.id, exc)
                continue
            except sqlite3.Error as exc:
                logger.error("Failed to store provider event %s: %s", pe.id, exc)
                result.errors.append(SyncErrorEntry(pe.id, str(exc)))
                continue
            if event_id is not None:
                touched.add(event_id)
        return touched

    async def _apply_one(self, pe: ProviderEvent, result: SyncResult) -> int | None:
        """Apply one provider event; returns the id of a row it wrote to."""
        local = self._store.get_by_provider_id(pe.id)
        if local is None:
            pending_create = self._store.get_by_export_key(pe.id)
            if pending_create is not None:
                # Our own create whose response never arrived; the push
                # phase links it.
                return None
            if pe.is_cancelled:
                return None
            fields = incoming_fields(pe, self._tz, self._window_start, self._window_end)
            start, end = fields.pop("start"), fields.pop("end")
            event = self._store.import_event(
                pe.id, start, end, etag=pe.etag, provider_updated=pe.updated, **fields,
            )
            result.imported += 1
            return event.id

        async with self._locks.hold(local.id):
            local = self._store.get_event(local.id)
            if local is None or local.deleted:
                if local is not None and pe.is_cancelled:
                    self._store.purge(local.id)
                    result.deleted += 1
                return None

            if pe.is_cancelled:
                if local.is_cancelled:
                    return None
                self._store.cancel(
                    local.id, reason=CANCELLED_IN_CALENDAR, actor=CANCELLED_BY_PROVIDER,
                    pending_export=False,
                )
                self._store.mark_synced(local.id, provider_id=None)
                result.updated += 1
                return local.id

            if pe.etag is not None and pe.etag == local.provider_etag:
                return None

            fields = incoming_fields(pe, self._tz, self._window_start, self._window_end)
            changes = merge_remote_fields(local, fields)
            if not changes:
                self._store.record_provider_version(local.id, pe.etag, pe.updated)
                return None
            self._store.apply_remote(local.id, changes, pe.etag, pe.updated)
            result.updated += 1
            return local.id

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _push(self, touched: set[int], result: SyncResult) -> None:
        pending = [
            event for event in self._store.list_pending(limit=self._batch_size)
            if event.id not in touched
        ]
        if not pending:
            return

        semaphore = asyncio.Semaphore(self._max_workers)

        async def push_one(event_id: int) -> None:
            async with semaphore:
                try:
                    outcome = await self._exporter.export(event_id)
                except CalendarError as exc:
                    result.errors.append(SyncErrorEntry(str(event_id), str(exc)))
                    return
                except ExportDataError as exc:
                    logger.warning("Skipping export of event #%d: %s", event_id, exc)
                    return
                except sqlite3.Error as exc:
                    logger.error("Failed to record export of event #%d: %s", event_id, exc)
                    result.errors.append(SyncErrorEntry(str(event_id), str(exc)))
                    return
            if outcome in (ExportOutcome.CREATED, ExportOutcome.UPDATED, ExportOutcome.CANCELLED):
                result.exported += 1
            elif outcome is ExportOutcome.DELETED:
                result.deleted += 1
            elif outcome is ExportOutcome.REMOTE_GONE:
                result.updated += 1

        await asyncio.gather(*(push_one(event.id) for event in pending))
        logger.info("Push phase processed %d pending event(s)", len(pending))


"""
Booking Sync — Event exporter.

Pushes one local row to the provider: create, update, cancel or delete,
depending on the row's state. Used by the reconciler's push phase and by the
local lifecycle operations for their immediate export attempt. Every export
runs under the row's lock and re-reads the row once the lock is held.
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum

from bookingsync.core.row_locks import EventLocks
from bookingsync.data.db import EventStore
from bookingsync.data.models import CalendarEvent, SyncStatus
from bookingsync.ports.calendar_port import (
    CalendarError,
    CalendarProvider,
    PermanentProviderError,
    ProviderAuthError,
    ProviderConflictError,
    ProviderNotFoundError,
)

logger = logging.getLogger(__name__)


class ExportOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    DELETED = "deleted"
    REMOTE_GONE = "remote_gone"   # provider no longer has it; cancelled locally
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"           # row vanished or was synced meanwhile


class ExportDataError(ValueError):
    """A local row is malformed and cannot be exported."""


def _check_exportable(event: CalendarEvent) -> None:
    if event.start is None or event.end is None:
        raise ExportDataError(f"Event {event.id} has no start/end time")
    if event.end <= event.start:
        raise ExportDataError(f"Event {event.id} ends before it starts")


class EventExporter:
    """Single-row push to the provider."""

    def __init__(
        self,
        store: EventStore,
        provider: CalendarProvider,
        locks: EventLocks | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._locks = locks or EventLocks()

    @property
    def locks(self) -> EventLocks:
        return self._locks

    async def export(self, event_id: int) -> ExportOutcome:
        """Export a row if it still needs it.

        Raises CalendarError after recording the failure on the row
        (sync_status = error), and ExportDataError for malformed rows, which
        are left untouched.
        """
        async with self._locks.hold(event_id):
            event = self._store.get_event(event_id)
            if event is None or event.sync_status == SyncStatus.SYNCED:
                return ExportOutcome.SKIPPED
            try:
                return await self._export_locked(event)
            except CalendarError as exc:
                self._store.mark_error(event.id, str(exc))
                if isinstance(exc, (PermanentProviderError, ProviderAuthError)):
                    logger.error(
                        "Event #%d rejected by the provider, needs attention: %s",
                        event.id, exc,
                    )
                raise

    async def _delete_remote(self, provider_id: str) -> None:
        try:
            await self._provider.delete_event(provider_id)
        except ProviderNotFoundError:
            logger.info("Provider event %s already gone", provider_id)

    async def _export_locked(self, event: CalendarEvent) -> ExportOutcome:
        # A create whose response was lost left an event under export_key.
        remote_id = event.provider_id or event.export_key

        if event.deleted:
            if remote_id:
                await self._delete_remote(remote_id)
            self._store.purge(event.id)
            return ExportOutcome.DELETED

        if event.is_cancelled:
            if remote_id:
                await self._delete_remote(remote_id)
            self._store.mark_synced(event.id, provider_id=None)
            return ExportOutcome.CANCELLED

        _check_exportable(event)

        if not event.provider_id:
            return await self._create(event)

        if event.last_synced_at is None or (
            event.updated_at is not None and event.updated_at > event.last_synced_at
        ):
            try:
                remote = await self._provider.update_event(event.provider_id, event)
            except ProviderNotFoundError:
                self._store.cancel(
                    event.id, reason="Deleted in calendar", actor="provider",
                    pending_export=False,
                )
                self._store.mark_synced(event.id, provider_id=None)
                return ExportOutcome.REMOTE_GONE
            self._store.mark_synced(event.id, event.provider_id, remote.etag, remote.updated)
            return ExportOutcome.UPDATED

        self._store.mark_synced(
            event.id, event.provider_id, event.provider_etag, event.provider_updated,
        )
        return ExportOutcome.UNCHANGED

    async def _create(self, event: CalendarEvent) -> ExportOutcome:
        # The provider id is chosen and stored before the call, so a create
        # whose response was lost is recognised instead of duplicated.
        if not event.export_key:
            event = self._store.set_export_key(event.id, uuid.uuid4().hex)
        try:
            remote = await self._provider.create_event(event)
        except ProviderConflictError:
            logger.info(
                "Event #%d already exists at provider as %s, updating instead",
                event.id, event.export_key,
            )
            remote = await self._provider.update_event(event.export_key, event)
        self._store.mark_synced(event.id, remote.id, remote.etag, remote.updated)
        return ExportOutcome.CREATED

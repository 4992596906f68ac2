"""
Booking Sync — HTTP API.

Sync trigger and status for the external scheduler and operators, the
availability query, booking lookups and month overview for the booking
front end, and the local event lifecycle operations. create_app() wires
everything from settings unless a prepared Services bundle is passed in.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from bookingsync.core.availability import (
    AvailabilityRules,
    InvalidQueryError,
    available_slots,
    parse_query_date,
    validate_availability_query,
)
from bookingsync.core.backfill import backfill_customer_fields
from bookingsync.core.booking_service import BookingService, SlotTakenError
from bookingsync.core.calendar_views import (
    bookings_on_day,
    get_booking,
    month_overview,
    validate_month_query,
)
from bookingsync.core.exporter import EventExporter
from bookingsync.core.reconciler import Reconciler, SyncAbortedError
from bookingsync.core.row_locks import EventLocks
from bookingsync.core.sync_trigger import SyncInProgressError, SyncTrigger
from bookingsync.data.db import EventNotFoundError, EventStore, SyncStateStore, utcnow
from bookingsync.data.models import CalendarEvent, EventType, SyncRun

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: EventStore
    state: SyncStateStore
    trigger: SyncTrigger
    bookings: BookingService
    locks: EventLocks
    rules: AvailabilityRules
    sync_interval_minutes: int = 0


def build_services() -> Services:
    """Wire the production object graph from settings."""
    from bookingsync.adapters.calendar_factory import create_calendar_provider
    from bookingsync.adapters.local_lock import InProcessSyncLock
    from bookingsync.config import settings

    store = EventStore()
    state = SyncStateStore()
    provider = create_calendar_provider()
    locks = EventLocks()
    exporter = EventExporter(store, provider, locks)
    rules = AvailabilityRules.from_settings()
    reconciler = Reconciler(
        store, state, provider, settings.GOOGLE_CALENDAR_ID,
        locks=locks, exporter=exporter,
    )
    return Services(
        store=store,
        state=state,
        trigger=SyncTrigger(reconciler, InProcessSyncLock()),
        bookings=BookingService(store, exporter, rules=rules),
        locks=locks,
        rules=rules,
        sync_interval_minutes=settings.SYNC_INTERVAL_MINUTES,
    )


# ---------------------------------------------------------------------------
# Request bodies and serialisation
# ---------------------------------------------------------------------------


class CreateEventRequest(BaseModel):
    start: datetime
    end: datetime
    event_type: EventType = EventType.BOOKING
    title: str = ""
    location: str = ""
    is_all_day: bool = False
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    attendee_count: Optional[int] = None
    remarks: Optional[str] = None
    assignee_name: Optional[str] = None
    assignee_number: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None


class RescheduleRequest(BaseModel):
    start: datetime
    end: datetime


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def event_to_dict(event: CalendarEvent) -> dict:
    return {
        "id": event.id,
        "start": _iso(event.start),
        "end": _iso(event.end),
        "title": event.title,
        "event_type": event.event_type.value if event.event_type else None,
        "is_all_day": event.is_all_day,
        "status": event.status.value,
        "provider_id": event.provider_id,
        "sync_status": event.sync_status.value,
        "sync_error": event.sync_error,
        "customer_first_name": event.customer_first_name,
        "customer_last_name": event.customer_last_name,
        "customer_email": event.customer_email,
        "customer_phone": event.customer_phone,
        "attendee_count": event.attendee_count,
        "remarks": event.remarks,
        "assignee_name": event.assignee_name,
        "assignee_number": event.assignee_number,
        "cancel_reason": event.cancel_reason,
        "cancelled_by": event.cancelled_by,
        "cancelled_at": _iso(event.cancelled_at),
        "updated_at": _iso(event.updated_at),
        "last_synced_at": _iso(event.last_synced_at),
    }


def run_to_dict(run: SyncRun) -> dict:
    return {
        "id": run.id,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "status": run.status,
        "sync_type": run.sync_type,
        "imported": run.imported,
        "exported": run.exported,
        "updated": run.updated,
        "deleted": run.deleted,
        "error_count": run.error_count,
        "error_message": run.error_message,
    }


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(services: Services | None = None, start_periodic: bool = True) -> FastAPI:
    services = services or build_services()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if start_periodic and services.sync_interval_minutes > 0:
            task = asyncio.create_task(
                services.trigger.run_periodically(services.sync_interval_minutes)
            )
        yield
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="Booking Sync", lifespan=lifespan)
    app.state.services = services

    # -- Sync --------------------------------------------------------------

    @app.post("/sync/trigger")
    async def trigger_sync():
        try:
            result, duration_ms = await services.trigger.run()
        except SyncInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except SyncAbortedError as exc:
            raise HTTPException(status_code=502, detail=f"Sync aborted: {exc}")
        return {**result.to_dict(), "duration_ms": duration_ms}

    @app.get("/sync/status")
    async def sync_status():
        run = services.state.latest_run()
        return {"last_run": run_to_dict(run) if run else None}

    @app.get("/sync/errors")
    async def sync_errors():
        return [event_to_dict(e) for e in services.store.list_errors()]

    # -- Availability ------------------------------------------------------

    @app.get("/availability")
    async def availability(
        date: Optional[str] = Query(None),
        duration: Optional[str] = Query(None),
    ):
        try:
            day, minutes = validate_availability_query(date, duration, services.rules)
        except InvalidQueryError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return available_slots(services.store, day, minutes, services.rules).to_dict()

    @app.get("/bookings")
    async def bookings(
        id: Optional[int] = Query(None),
        date: Optional[str] = Query(None),
    ):
        if id is not None:
            event = get_booking(services.store, id)
            if event is None:
                raise HTTPException(status_code=404, detail="Booking not found")
            return {"booking": event_to_dict(event)}
        if date is None:
            raise HTTPException(status_code=400, detail="Missing id or date parameter")
        try:
            day = parse_query_date(date)
        except InvalidQueryError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        events = bookings_on_day(services.store, day, services.rules.tz)
        return {
            "date": day.isoformat(),
            "count": len(events),
            "bookings": [event_to_dict(e) for e in events],
        }

    @app.get("/calendar/month")
    async def calendar_month(
        year: Optional[str] = Query(None),
        month: Optional[str] = Query(None),
    ):
        tz = services.rules.tz
        try:
            y, m = validate_month_query(year, month, utcnow().astimezone(tz).date())
        except InvalidQueryError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return month_overview(services.store, y, m, tz).to_dict()

    # -- Lifecycle ---------------------------------------------------------

    @app.post("/events", status_code=201)
    async def create_event(body: CreateEventRequest):
        fields = body.model_dump(exclude={"start", "end", "event_type"})
        try:
            event = await services.bookings.create_event(
                body.start, body.end, event_type=body.event_type, **fields,
            )
        except SlotTakenError as exc:
            raise HTTPException(
                status_code=409, detail={"code": "SLOT_TAKEN", "message": str(exc)},
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return event_to_dict(event)

    @app.post("/events/{event_id}/cancel")
    async def cancel_event(event_id: int, body: CancelRequest):
        try:
            event = await services.bookings.cancel_event(
                event_id, reason=body.reason, actor=body.cancelled_by,
            )
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return event_to_dict(event)

    @app.post("/events/{event_id}/reschedule")
    async def reschedule_event(event_id: int, body: RescheduleRequest):
        try:
            event = await services.bookings.reschedule_event(event_id, body.start, body.end)
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except SlotTakenError as exc:
            raise HTTPException(
                status_code=409, detail={"code": "SLOT_TAKEN", "message": str(exc)},
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return event_to_dict(event)

    @app.delete("/events/{event_id}")
    async def delete_event(event_id: int):
        try:
            removed = await services.bookings.delete_event(event_id)
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return {"id": event_id, "deleted": removed, "pending": not removed}

    @app.post("/admin/backfill")
    async def backfill():
        report = await backfill_customer_fields(
            services.store, utcnow(), locks=services.locks,
        )
        return report.to_dict()

    return app

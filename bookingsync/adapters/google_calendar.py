"""Google Calendar adapter — implements CalendarProvider for the Google Calendar API.

All Google-specific logic lives here. Core modules never import this directly;
they depend on the CalendarProvider protocol.

The google-api-python-client is blocking and its httplib2 transport is not
thread-safe, so each call runs in a worker thread with its own authorized
transport. Transient failures (429, 5xx, connection errors) are retried by
the client itself with exponential backoff (`num_retries`).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import httplib2
from google.auth.exceptions import RefreshError
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.errors import HttpError

from bookingsync.config import settings
from bookingsync.core.all_day import covered_days
from bookingsync.core.description_parser import format_description
from bookingsync.data.models import CalendarEvent, EventStatus, EventType
from bookingsync.ports.calendar_port import (
    CalendarError,
    CursorExpiredError,
    PermanentProviderError,
    ProviderAuthError,
    ProviderChanges,
    ProviderConflictError,
    ProviderEvent,
    ProviderNotFoundError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

_PAGE_SIZE = 250
_COLOR_FOR_TYPE = {EventType.ASSIGNMENT: "5", EventType.BLOCKER: "11"}
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def _parse_google_datetime(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_provider_event(item: dict) -> ProviderEvent:
    """Normalise a Google Calendar API event resource."""
    start = item.get("start") or {}
    end = item.get("end") or {}
    event = ProviderEvent(
        id=item["id"],
        status=item.get("status", "confirmed"),
        summary=item.get("summary", "") or "",
        description=item.get("description", "") or "",
        location=item.get("location", "") or "",
        etag=item.get("etag"),
        updated=item.get("updated"),
    )
    if start.get("dateTime"):
        event.start = _parse_google_datetime(start["dateTime"])
    elif start.get("date"):
        event.start_date = date.fromisoformat(start["date"])
    if end.get("dateTime"):
        event.end = _parse_google_datetime(end["dateTime"])
    elif end.get("date"):
        event.end_date = date.fromisoformat(end["date"])
    return event


def _summary_for(event: CalendarEvent) -> str:
    if event.title:
        return event.title
    if event.event_type == EventType.BLOCKER:
        return event.customer_first_name or "Blocker"
    if event.event_type == EventType.ASSIGNMENT:
        number = f" ({event.assignee_number})" if event.assignee_number else ""
        return f"Staff: {event.assignee_name or 'Unknown'}{number}"
    name = " ".join(
        part for part in (event.customer_first_name, event.customer_last_name) if part
    )
    return name or "Booking"


def _build_event_body(event: CalendarEvent, tz: ZoneInfo) -> dict:
    """Construct a Google Calendar API event body from a local event."""
    body: dict = {
        "summary": _summary_for(event),
        "description": format_description(event),
        "status": "tentative" if event.status == EventStatus.PENDING else "confirmed",
    }
    location = event.location or settings.DEFAULT_LOCATION
    if location:
        body["location"] = location

    if event.is_all_day:
        first_day, last_day = covered_days(event.start, event.end, tz)
        body["start"] = {"date": first_day.isoformat()}
        body["end"] = {"date": (last_day + timedelta(days=1)).isoformat()}
    else:
        body["start"] = {
            "dateTime": event.start.astimezone(tz).isoformat(),
            "timeZone": tz.key,
        }
        body["end"] = {
            "dateTime": event.end.astimezone(tz).isoformat(),
            "timeZone": tz.key,
        }

    color = _COLOR_FOR_TYPE.get(event.event_type)
    if color:
        body["colorId"] = color
    return body


def _error_reasons(exc: HttpError) -> set[str]:
    details = getattr(exc, "error_details", None)
    if not isinstance(details, list):
        return set()
    return {d.get("reason", "") for d in details if isinstance(d, dict)}


def _translate_http_error(exc: HttpError, action: str, listing: bool = False) -> CalendarError:
    status = int(exc.resp.status)
    message = f"Failed to {action}: HTTP {status} {exc}"
    if status == 401:
        return ProviderAuthError(message)
    if status == 410 and listing:
        return CursorExpiredError(message)
    if status in (404, 410):
        return ProviderNotFoundError(message)
    if status == 409:
        return ProviderConflictError(message)
    if status == 429 or status >= 500:
        return TransientProviderError(message)
    if status == 403 and _error_reasons(exc) & _RATE_LIMIT_REASONS:
        return TransientProviderError(message)
    return PermanentProviderError(message)


class GoogleCalendarAdapter:
    """Google Calendar implementation of CalendarProvider."""

    def __init__(
        self,
        calendar_id: str | None = None,
        credentials=None,
        service=None,
        num_retries: int | None = None,
        timeout: int | None = None,
    ) -> None:
        self._calendar_id = calendar_id or settings.GOOGLE_CALENDAR_ID
        self._credentials = credentials
        self._service = service
        self._num_retries = (
            settings.PROVIDER_NUM_RETRIES if num_retries is None else num_retries
        )
        self._timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._tz = ZoneInfo(settings.TIMEZONE)

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    def _get_service(self):
        if self._service is None:
            from bookingsync.integrations.google_auth import (
                build_calendar_service,
                load_credentials,
            )

            if self._credentials is None:
                self._credentials = load_credentials()
            self._service = build_calendar_service(self._credentials)
        return self._service

    def _http(self):
        """A fresh transport per call: httplib2.Http must not be shared across threads."""
        if self._credentials is None:
            return None
        return AuthorizedHttp(self._credentials, http=httplib2.Http(timeout=self._timeout))

    async def _execute(self, request, action: str, listing: bool = False) -> dict:
        try:
            return await asyncio.to_thread(
                request.execute, http=self._http(), num_retries=self._num_retries
            )
        except HttpError as exc:
            raise _translate_http_error(exc, action, listing=listing) from exc
        except RefreshError as exc:
            raise ProviderAuthError(f"Failed to {action}: {exc}") from exc
        except (TimeoutError, OSError, httplib2.HttpLib2Error) as exc:
            raise TransientProviderError(f"Failed to {action}: {exc}") from exc

    async def list_changes(
        self,
        cursor: str | None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> ProviderChanges:
        service = self._get_service()
        params: dict = {
            "calendarId": self._calendar_id,
            "maxResults": _PAGE_SIZE,
            "singleEvents": True,
            "showDeleted": True,
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            if time_min is not None:
                params["timeMin"] = time_min.astimezone(timezone.utc).isoformat()
            if time_max is not None:
                params["timeMax"] = time_max.astimezone(timezone.utc).isoformat()

        items: list[dict] = []
        next_cursor: str | None = None
        page_token: str | None = None
        pages = 0
        while True:
            if page_token:
                params["pageToken"] = page_token
            response = await self._execute(
                service.events().list(**params), "list events", listing=True
            )
            items.extend(response.get("items", []))
            pages += 1
            page_token = response.get("nextPageToken")
            next_cursor = response.get("nextSyncToken") or next_cursor
            if not page_token:
                break

        logger.info(
            "Fetched %d event(s) across %d page(s) (%s)",
            len(items), pages, "incremental" if cursor else "full",
        )
        return ProviderChanges(
            events=[parse_provider_event(item) for item in items],
            next_cursor=next_cursor,
            full=not cursor,
        )

    async def create_event(self, event: CalendarEvent) -> ProviderEvent:
        body = _build_event_body(event, self._tz)
        if event.export_key:
            body["id"] = event.export_key
        service = self._get_service()
        created = await self._execute(
            service.events().insert(calendarId=self._calendar_id, body=body),
            "create event",
        )
        logger.info("Event #%d created at provider as %s", event.id, created.get("id"))
        return parse_provider_event(created)

    async def update_event(self, provider_id: str, event: CalendarEvent) -> ProviderEvent:
        body = _build_event_body(event, self._tz)
        service = self._get_service()
        updated = await self._execute(
            service.events().update(
                calendarId=self._calendar_id, eventId=provider_id, body=body
            ),
            "update event",
        )
        logger.info("Event #%d updated at provider (%s)", event.id, provider_id)
        return parse_provider_event(updated)

    async def delete_event(self, provider_id: str) -> None:
        service = self._get_service()
        await self._execute(
            service.events().delete(calendarId=self._calendar_id, eventId=provider_id),
            "delete event",
        )
        logger.info("Provider event %s deleted", provider_id)

"""Calendar adapter factory — creates the provider adapter based on config."""

from __future__ import annotations

from bookingsync.config import settings
from bookingsync.ports.calendar_port import CalendarProvider


def create_calendar_provider(calendar_id: str | None = None) -> CalendarProvider:
    """Return the provider adapter matching the CALENDAR_PROVIDER setting.

    Args:
        calendar_id: Override for GOOGLE_CALENDAR_ID.
    """
    provider = settings.CALENDAR_PROVIDER.lower()

    if provider == "google":
        from bookingsync.adapters.google_calendar import GoogleCalendarAdapter

        return GoogleCalendarAdapter(calendar_id=calendar_id)

    raise ValueError(f"Unknown CALENDAR_PROVIDER: {provider!r}")

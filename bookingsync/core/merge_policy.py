"""
Booking Sync — Field merge policy.

When the provider reports a change to an event we also hold locally, each
field is merged according to one rule from FIELD_POLICY. The provider is the
calendar of record for what external people can edit there (time, status,
title). Customer contact data is only ever solicited by this system, so a
value already present locally is never replaced by one parsed from text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from bookingsync.data.models import CalendarEvent, EventStatus


class MergeRule(Enum):
    PROVIDER_WINS = "provider_wins"
    FILL_EMPTY = "fill_empty"


FIELD_POLICY: dict[str, MergeRule] = {
    # Temporal and status fields: provider is authoritative
    "start": MergeRule.PROVIDER_WINS,
    "end": MergeRule.PROVIDER_WINS,
    "is_all_day": MergeRule.PROVIDER_WINS,
    "status": MergeRule.PROVIDER_WINS,
    "title": MergeRule.PROVIDER_WINS,
    "description": MergeRule.PROVIDER_WINS,
    "location": MergeRule.PROVIDER_WINS,
    "assignee_name": MergeRule.PROVIDER_WINS,
    "assignee_number": MergeRule.PROVIDER_WINS,
    # Classification is kept once known
    "event_type": MergeRule.FILL_EMPTY,
    # Customer contact fields: local wins, parsed values only fill gaps
    "customer_first_name": MergeRule.FILL_EMPTY,
    "customer_last_name": MergeRule.FILL_EMPTY,
    "customer_email": MergeRule.FILL_EMPTY,
    "customer_phone": MergeRule.FILL_EMPTY,
    "attendee_count": MergeRule.FILL_EMPTY,
    "remarks": MergeRule.FILL_EMPTY,
}


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def fill_empty(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Return the incoming values that would land in currently empty fields."""
    return {
        name: value
        for name, value in incoming.items()
        if not is_empty(value) and is_empty(current.get(name))
    }


def merge_remote_fields(local: CalendarEvent, incoming: dict[str, Any]) -> dict[str, Any]:
    """Compute the field changes to apply to `local` for a provider update.

    Returns only fields whose value actually changes. A cancelled event never
    leaves the cancelled state, whatever the provider reports.
    """
    changes: dict[str, Any] = {}
    for name, value in incoming.items():
        rule = FIELD_POLICY.get(name)
        if rule is None:
            raise KeyError(f"No merge rule for field {name!r}")

        current = getattr(local, name)
        if rule is MergeRule.PROVIDER_WINS:
            if name == "status" and local.status == EventStatus.CANCELLED:
                continue
            if value is None and name not in ("assignee_name", "assignee_number"):
                continue
            if current != value:
                changes[name] = value
        elif rule is MergeRule.FILL_EMPTY:
            if not is_empty(value) and is_empty(current):
                changes[name] = value
    return changes

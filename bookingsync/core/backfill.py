"""
Booking Sync — Customer field backfill.

Re-parses the descriptions of externally created bookings with the current
matcher lists and fills customer fields that are still empty. Run after a
new description format has been taught to the parser. Internal events
(description carries an EVENT_TYPE marker) are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from bookingsync.core.description_parser import parse_description
from bookingsync.core.merge_policy import fill_empty
from bookingsync.core.row_locks import EventLocks
from bookingsync.data.db import EventStore
from bookingsync.data.models import EventType

logger = logging.getLogger(__name__)

_MARKER = "EVENT_TYPE:"


@dataclass
class BackfillReport:
    total: int = 0
    updated: int = 0
    skipped: int = 0
    skipped_internal: int = 0
    details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.updated,
            "skipped": self.skipped,
            "skipped_internal": self.skipped_internal,
            "details": list(self.details),
        }


async def backfill_customer_fields(
    store: EventStore,
    now: datetime,
    lookback_days: int = 30,
    lookahead_days: int = 90,
    locks: EventLocks | None = None,
) -> BackfillReport:
    """Fill empty customer fields of bookings starting in the window around `now`."""
    locks = locks or EventLocks()
    events = store.list_in_range(
        now - timedelta(days=lookback_days),
        now + timedelta(days=lookahead_days),
        event_types=[EventType.BOOKING, None],
    )
    report = BackfillReport(total=len(events))

    for ev in events:
        if _MARKER in (ev.description or ""):
            report.skipped_internal += 1
            continue
        if not ev.description:
            report.skipped += 1
            continue

        parsed = parse_description(ev.description)
        async with locks.hold(ev.id):
            current = store.get_event(ev.id)
            if current is None:
                continue
            updates = fill_empty(
                {
                    "customer_first_name": current.customer_first_name,
                    "customer_last_name": current.customer_last_name,
                    "customer_phone": current.customer_phone,
                    "customer_email": current.customer_email,
                },
                {
                    "customer_first_name": parsed.first_name,
                    "customer_last_name": parsed.last_name,
                    "customer_phone": parsed.phone,
                    "customer_email": parsed.email,
                },
            )
            if not updates:
                report.skipped += 1
                continue
            store.set_customer_fields(ev.id, **updates)

        report.updated += 1
        changes = ", ".join(f"{k}={v}" for k, v in updates.items())
        report.details.append(f"{ev.title or 'Unbenannt'}: {changes}")
        logger.info("Backfilled event #%d: %s", ev.id, changes)

    logger.info(
        "Backfill complete: %d updated, %d internal skipped, %d without data",
        report.updated, report.skipped_internal, report.skipped,
    )
    return report

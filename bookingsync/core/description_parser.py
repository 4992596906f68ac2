"""
Booking Sync — Description Parser.

Extracts customer details from the free-text body of calendar events.
Events reach the calendar from several places over the years: this system's
own exports, external booking systems that write an HTML body, and staff
typing directly into the calendar. Each format is handled by a small matcher;
matchers for a field are tried in order and the first hit wins, so a new
format is added by appending a matcher without touching the old ones.

Parsing is total: unrecognised text yields an empty result, never an error.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable

from bookingsync.data.models import CalendarEvent, EventType

logger = logging.getLogger(__name__)


@dataclass
class ParsedDescription:
    """Fields recovered from an event description. Unknown fields are None."""

    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    attendee_count: int | None = None
    remarks: str | None = None
    event_type: EventType | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.first_name, self.last_name, self.phone, self.email,
                self.attendee_count, self.remarks, self.event_type,
            )
        )


@dataclass
class ParsedSummary:
    """Fields recovered from an event title."""

    event_type: EventType | None = None
    first_name: str | None = None
    last_name: str | None = None
    assignee_name: str | None = None
    assignee_number: str | None = None


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def _normalise(text: str) -> str:
    """Turn HTML line breaks into newlines and drop any remaining tags."""
    text = _BR_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    return text.replace("\r\n", "\n").strip()


def _split_name(full_name: str) -> tuple[str | None, str | None]:
    """Last word is the last name, everything before it the first name."""
    parts = full_name.split()
    if len(parts) >= 2:
        return " ".join(parts[:-1]), parts[-1]
    if len(parts) == 1:
        return None, parts[0]
    return None, None


# ---------------------------------------------------------------------------
# Matchers: each takes normalised text and returns a value or None
# ---------------------------------------------------------------------------

_EVENT_TYPE_RE = re.compile(
    r"^EVENT_TYPE:\s*(BLOCKER|FI_ASSIGNMENT|ASSIGNMENT|BOOKING)\b", re.IGNORECASE
)
_EVENT_TYPE_MAP = {
    "BLOCKER": EventType.BLOCKER,
    "FI_ASSIGNMENT": EventType.ASSIGNMENT,
    "ASSIGNMENT": EventType.ASSIGNMENT,
    "BOOKING": EventType.BOOKING,
}


def _match_event_type_marker(text: str) -> EventType | None:
    m = _EVENT_TYPE_RE.match(text)
    if m:
        return _EVENT_TYPE_MAP[m.group(1).upper()]
    return None


_CUSTOMER_LINE_RE = re.compile(r"^\s*(?:Customer|Kunde):[ \t]*(.+)$", re.IGNORECASE | re.MULTILINE)


def _match_customer_line(text: str) -> tuple[str | None, str | None] | None:
    """"Customer: Vorname Nachname" written by external booking systems."""
    m = _CUSTOMER_LINE_RE.search(text)
    if m:
        first, last = _split_name(m.group(1).strip())
        if first or last:
            return first, last
    return None


_LABEL_LINE_RE = re.compile(r"^[\w\s-]+:", re.UNICODE)


def _match_leading_name(text: str) -> tuple[str | None, str | None] | None:
    """A name on the first line, e.g. "Stefanie Willemsen<br>..."."""
    first_line = text.split("\n", 1)[0].strip()
    if not first_line:
        return None
    if first_line.startswith("✈") or re.match(r"^[0-9+]", first_line):
        return None
    if _LABEL_LINE_RE.match(first_line) or "@" in first_line:
        return None
    parts = first_line.split()
    if len(parts) < 2 or len(parts) > 4:
        return None
    if not all(re.fullmatch(r"[^\W\d_][\w.'-]*", p, re.UNICODE) for p in parts):
        return None
    return " ".join(parts[:-1]), parts[-1]


_PHONE_LABEL_RE = re.compile(r"^\s*(?:Telefon|Phone|Tel\.?):[ \t]*(.+)$", re.IGNORECASE | re.MULTILINE)
# 01777771722, +4917712345678, +41795498801, 0171 234 5678
_BARE_PHONE_RE = re.compile(r"(?:^|\s)((?:\+[1-9][0-9]{0,3}|0)[1-9][0-9 ]{7,14})(?=\s|$)", re.MULTILINE)


def _match_phone_label(text: str) -> str | None:
    m = _PHONE_LABEL_RE.search(text)
    if m:
        return m.group(1).strip() or None
    return None


def _match_bare_phone(text: str) -> str | None:
    m = _BARE_PHONE_RE.search(text)
    if m:
        return re.sub(r"\s+", "", m.group(1))
    return None


_EMAIL_LABEL_RE = re.compile(r"^\s*(?:E-Mail|Email):[ \t]*(\S+)", re.IGNORECASE | re.MULTILINE)
_BARE_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def _match_email_label(text: str) -> str | None:
    m = _EMAIL_LABEL_RE.search(text)
    return m.group(1).strip() if m else None


def _match_bare_email(text: str) -> str | None:
    m = _BARE_EMAIL_RE.search(text)
    return m.group(0) if m else None


_ATTENDEES_RE = re.compile(r"(?:Anzahl Teilnehmer|Attendees):\s*(\d+)", re.IGNORECASE)


def _match_attendees(text: str) -> int | None:
    m = _ATTENDEES_RE.search(text)
    return int(m.group(1)) if m else None


_REMARKS_RE = re.compile(r"(?:Bemerkungen|Remarks):[ \t]*\n(.+)", re.IGNORECASE | re.DOTALL)


def _match_remarks(text: str) -> str | None:
    m = _REMARKS_RE.search(text)
    if m:
        return m.group(1).strip() or None
    return None


NameMatcher = Callable[[str], "tuple[str | None, str | None] | None"]

NAME_MATCHERS: list[NameMatcher] = [_match_customer_line, _match_leading_name]
PHONE_MATCHERS: list[Callable[[str], str | None]] = [_match_phone_label, _match_bare_phone]
EMAIL_MATCHERS: list[Callable[[str], str | None]] = [_match_email_label, _match_bare_email]


def _first_hit(matchers: list, text: str):
    for matcher in matchers:
        value = matcher(text)
        if value:
            return value
    return None


def parse_description(text: str | None) -> ParsedDescription:
    """Extract structured fields from an event description.

    Never raises: a value that is not a string, or text in no known format,
    produces an empty ParsedDescription.
    """
    result = ParsedDescription()
    if not isinstance(text, str) or not text.strip():
        return result

    try:
        normalised = _normalise(text)
        result.event_type = _match_event_type_marker(normalised)

        # Internal exports have no name line; the marker must not be read as one.
        name = _first_hit(NAME_MATCHERS, normalised)
        if name:
            result.first_name, result.last_name = name

        result.phone = _first_hit(PHONE_MATCHERS, normalised)
        result.email = _first_hit(EMAIL_MATCHERS, normalised)
        result.attendee_count = _match_attendees(normalised)
        result.remarks = _match_remarks(normalised)
    except Exception as exc:
        logger.warning("Description parsing failed, treating as empty: %s", exc)
        return ParsedDescription()

    return result


# ---------------------------------------------------------------------------
# Summary (event title) parsing
# ---------------------------------------------------------------------------

# "FI: Max Mustermann (123)" or "Staff: Max Mustermann", optionally followed
# by a work window such as "10:00-14:00".
_ASSIGNMENT_RE = re.compile(
    r"^(?:FI|Staff):\s*(.+?)(?:\s*\((\d+)\))?(?:\s+\d{1,2}:\d{2}\s*-\s*\d{1,2}:\d{2})?\s*$",
    re.IGNORECASE,
)


def parse_summary(summary: str | None) -> ParsedSummary:
    """Classify staff-assignment titles and split other titles into a name."""
    result = ParsedSummary()
    if not isinstance(summary, str) or not summary.strip():
        return result

    summary = summary.strip()
    m = _ASSIGNMENT_RE.match(summary)
    if m:
        result.event_type = EventType.ASSIGNMENT
        result.assignee_name = m.group(1).strip() or None
        result.assignee_number = m.group(2)
        return result

    first, last = _split_name(summary)
    if first is None:
        # A single word title is a first name, not a surname, in a booking title.
        first, last = last, None
    result.first_name, result.last_name = first, last
    return result


# ---------------------------------------------------------------------------
# Export format
# ---------------------------------------------------------------------------

_MARKER_FOR_TYPE = {
    EventType.BOOKING: "EVENT_TYPE:BOOKING",
    EventType.BLOCKER: "EVENT_TYPE:BLOCKER",
    EventType.ASSIGNMENT: "EVENT_TYPE:ASSIGNMENT",
}


def format_description(event: CalendarEvent) -> str:
    """Render the description written to the provider for a local event.

    The first line is the type marker so the next import classifies the
    event without guessing. Raw events keep the text they arrived with.
    """
    if event.event_type is None:
        return event.description or ""

    parts = [_MARKER_FOR_TYPE[event.event_type], ""]
    if event.customer_phone:
        parts.append(f"Phone: {event.customer_phone}")
    if event.customer_email:
        parts.append(f"Email: {event.customer_email}")
    if event.attendee_count:
        parts.append(f"Attendees: {event.attendee_count}")
    if event.remarks:
        parts.append(f"\nRemarks:\n{event.remarks}")
    return "\n".join(parts).rstrip()

"""Tests for bookingsync.core.description_parser — free-text customer extraction."""

import pytest

from bookingsync.core.description_parser import (
    NAME_MATCHERS,
    PHONE_MATCHERS,
    format_description,
    parse_description,
    parse_summary,
)
from bookingsync.data.models import CalendarEvent, EventType
from conftest import berlin


def _event(**kwargs):
    return CalendarEvent(id=1, start=berlin(2025, 3, 10, 14), end=berlin(2025, 3, 10, 15), **kwargs)


class TestExternalBookingFormat:
    def test_html_name_phone_email(self):
        result = parse_description(
            "Stefanie Willemsen<br>+4917712345678<br>stefanie@example.com"
        )
        assert result.first_name == "Stefanie"
        assert result.last_name == "Willemsen"
        assert result.phone == "+4917712345678"
        assert result.email == "stefanie@example.com"
        assert result.event_type is None

    def test_phone_with_spaces_is_compacted(self):
        result = parse_description("Max Mustermann\n0171 234 5678")
        assert result.phone == "01712345678"

    def test_swiss_number(self):
        assert parse_description("Jana Keller<br/>+41795498801").phone == "+41795498801"

    def test_tags_are_stripped(self):
        result = parse_description("<b>Jane Doe</b><br>jane@x.org")
        assert (result.first_name, result.last_name) == ("Jane", "Doe")
        assert result.email == "jane@x.org"

    def test_multi_word_first_name(self):
        result = parse_description("Anna Maria Schmidt<br>0176 99999999")
        assert result.first_name == "Anna Maria"
        assert result.last_name == "Schmidt"


class TestLabelledFormat:
    def test_customer_and_german_labels(self):
        text = (
            "Kunde: Max Mustermann\n"
            "Telefon: 0176 9999999\n"
            "E-Mail: max@example.de\n"
            "Anzahl Teilnehmer: 12\n"
            "Bemerkungen:\nKindergeburtstag"
        )
        result = parse_description(text)
        assert result.first_name == "Max"
        assert result.last_name == "Mustermann"
        assert result.phone == "0176 9999999"
        assert result.email == "max@example.de"
        assert result.attendee_count == 12
        assert result.remarks == "Kindergeburtstag"

    def test_label_beats_bare_value(self):
        result = parse_description("Note: call 0171 1111111\nPhone: 0172 2222222")
        assert result.phone == "0172 2222222"


class TestInternalFormat:
    def test_marker_classifies(self):
        assert parse_description("EVENT_TYPE:BLOCKER").event_type == EventType.BLOCKER
        assert parse_description("EVENT_TYPE:FI_ASSIGNMENT").event_type == EventType.ASSIGNMENT
        assert parse_description("EVENT_TYPE:BOOKING\n").event_type == EventType.BOOKING

    def test_marker_is_not_a_name(self):
        result = parse_description("EVENT_TYPE:BOOKING\n\nPhone: 0171 1234567")
        assert result.first_name is None
        assert result.last_name is None
        assert result.phone == "0171 1234567"

    def test_exported_description_parses_back(self):
        ev = _event(
            event_type=EventType.BOOKING,
            customer_phone="0171 1234567",
            customer_email="a@b.de",
            attendee_count=4,
            remarks="Bring cake",
        )
        result = parse_description(format_description(ev))
        assert result.event_type == EventType.BOOKING
        assert result.phone == "0171 1234567"
        assert result.email == "a@b.de"
        assert result.attendee_count == 4
        assert result.remarks == "Bring cake"


class TestTotality:
    @pytest.mark.parametrize("text", [None, "", "   ", 42, ["a"]])
    def test_non_text_is_empty(self, text):
        assert parse_description(text).is_empty()

    @pytest.mark.parametrize("text", [
        "Call back later!!",
        "✈ Flight LH123 arrives",
        "Hello",
        "<p></p>",
    ])
    def test_unrecognised_text_is_empty(self, text):
        assert parse_description(text).is_empty()

    def test_matcher_lists_are_ordered(self):
        assert NAME_MATCHERS[0].__name__ == "_match_customer_line"
        assert PHONE_MATCHERS[0].__name__ == "_match_phone_label"


class TestParseSummary:
    def test_fi_assignment(self):
        result = parse_summary("FI: Max Mustermann (123)")
        assert result.event_type == EventType.ASSIGNMENT
        assert result.assignee_name == "Max Mustermann"
        assert result.assignee_number == "123"

    def test_staff_assignment_with_work_window(self):
        result = parse_summary("Staff: Anna 10:00-14:00")
        assert result.event_type == EventType.ASSIGNMENT
        assert result.assignee_name == "Anna"
        assert result.assignee_number is None

    def test_plain_title_is_customer_name(self):
        result = parse_summary("Maria Schmidt")
        assert result.event_type is None
        assert (result.first_name, result.last_name) == ("Maria", "Schmidt")

    def test_single_word_is_first_name(self):
        result = parse_summary("Hans")
        assert (result.first_name, result.last_name) == ("Hans", None)

    def test_empty(self):
        result = parse_summary("")
        assert result.event_type is None
        assert result.first_name is None


class TestFormatDescription:
    def test_raw_event_keeps_its_text(self):
        ev = _event(description="Stefanie Willemsen<br>+4917712345678")
        assert format_description(ev) == "Stefanie Willemsen<br>+4917712345678"

    def test_blocker_marker(self):
        assert format_description(_event(event_type=EventType.BLOCKER)) == "EVENT_TYPE:BLOCKER"

    def test_booking_lines(self):
        ev = _event(event_type=EventType.BOOKING, customer_phone="0171", remarks="Late")
        text = format_description(ev)
        assert text.startswith("EVENT_TYPE:BOOKING\n")
        assert "Phone: 0171" in text
        assert "Remarks:\nLate" in text
        assert "Email:" not in text

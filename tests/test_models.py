from datetime import datetime, timezone

import pytest

from event_checkin.models import (
    AttendeeRecord,
    CheckInStatus,
    PushDelta,
    SourceKind,
    format_timestamp,
    parse_timestamp,
)


def test_status_from_value():
    assert CheckInStatus.from_value("checked-in") is CheckInStatus.CHECKED_IN
    assert CheckInStatus.from_value("CHECKED_IN") is CheckInStatus.CHECKED_IN
    assert CheckInStatus.from_value(None) is CheckInStatus.PENDING
    assert CheckInStatus.from_value("whatever") is CheckInStatus.PENDING


def test_source_kind_aliases():
    assert SourceKind.from_value("supabase") is SourceKind.DATABASE
    assert SourceKind.from_value("Spreadsheet") is SourceKind.SPREADSHEET
    assert SourceKind.SPREADSHEET.id_prefix == "gsheet"
    assert SourceKind.DATABASE.id_prefix is None
    with pytest.raises(ValueError):
        SourceKind.from_value("mongodb")


def test_timestamps():
    parsed = parse_timestamp("2026-01-23T10:00:00Z")

    assert parsed == datetime(2026, 1, 23, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2026-01-23T10:00:00").tzinfo is timezone.utc
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("") is None
    assert format_timestamp(parsed) == "2026-01-23T10:00:00Z"


def test_record_requires_consistent_check_in():
    with pytest.raises(ValueError):
        AttendeeRecord(id="1", status=CheckInStatus.CHECKED_IN)
    with pytest.raises(ValueError):
        AttendeeRecord(id="1", checked_in_at=datetime.now(timezone.utc))


def test_with_status():
    record = AttendeeRecord(id="1", attendee_name="Ann")
    at = datetime(2026, 1, 23, 10, 0, tzinfo=timezone.utc)

    checked_in = record.with_status(CheckInStatus.CHECKED_IN, at)
    undone = checked_in.with_status(CheckInStatus.PENDING)

    assert checked_in.checked_in_at == at
    assert checked_in.with_status(CheckInStatus.CHECKED_IN) is checked_in
    assert undone == record


def test_record_dict_form():
    data = {
        "id": "7", "tableNumber": "T1", "groupName": "A", "attendeeName": "Ann",
        "ticketType": "VIP", "email": "", "additionalInfo": "",
        "status": "checked-in", "checkedInAt": "2026-01-23T10:00:00Z", "rowIndex": 9,
    }

    assert AttendeeRecord.from_dict(data).to_dict() == data


def test_push_delta_from_payload():
    delta = PushDelta.from_payload({"eventType": "UPDATE", "new": {"id": 7}, "old": None})

    assert delta.is_update
    assert delta.new == {"id": 7}
    assert delta.old == {}
    assert not PushDelta.from_payload({"eventType": "DELETE"}).is_update


def test_push_delta_drops_non_object_rows():
    delta = PushDelta.from_payload({"eventType": "UPDATE", "new": ["junk"], "old": "x"})

    assert delta.is_update
    assert delta.new == {}
    assert delta.old == {}
    with pytest.raises(ValueError):
        PushDelta.from_payload(["junk"])

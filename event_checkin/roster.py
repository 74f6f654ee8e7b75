"""
Roster queries and statistics

Pure functions over a roster snapshot backing the searchable, sortable
attendee list and the live check-in counters.
"""

import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from .models import AttendeeRecord, CheckInStatus

SEARCH_FIELDS = ("attendee_name", "group_name", "table_number", "ticket_type", "email")

SORT_KEYS = {
    "attendeeName": "attendee_name",
    "tableNumber": "table_number",
    "groupName": "group_name",
    "ticketType": "ticket_type",
    "status": "status",
    "checkedInAt": "checked_in_at",
}

_DIGITS = re.compile(r"(\d+)")


@dataclass(frozen=True)
class RosterStats:
    """Check-in counters for one roster snapshot"""
    total: int
    checked_in: int
    pending: int
    percentage: float

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["checkedIn"] = data.pop("checked_in")
        return data


def compute_stats(roster: Sequence[AttendeeRecord]) -> RosterStats:
    """
    Count checked-in and pending attendees

    Returns:
        RosterStats with the percentage rounded to one decimal
    """
    total = len(roster)
    checked_in = sum(1 for record in roster if record.is_checked_in)
    percentage = round(checked_in / total * 100, 1) if total else 0.0
    return RosterStats(total, checked_in, total - checked_in, percentage)


def search_roster(roster: Sequence[AttendeeRecord], query: str) -> List[AttendeeRecord]:
    """
    Case-insensitive substring search over name, group, table, ticket and email

    An empty query returns the whole roster.
    """
    needle = (query or "").strip().lower()
    if not needle:
        return list(roster)
    return [
        record for record in roster
        if any(needle in getattr(record, name).lower() for name in SEARCH_FIELDS)
    ]


def filter_by_status(roster: Sequence[AttendeeRecord],
                     status: Optional[CheckInStatus]) -> List[AttendeeRecord]:
    """Keep records in ``status``; None keeps everything"""
    if status is None:
        return list(roster)
    return [record for record in roster if record.status is status]


def _natural_key(text: str):
    # "Table 10" sorts after "Table 9"
    return [int(part) if part.isdecimal() else part.lower() for part in _DIGITS.split(text)]


def sort_roster(roster: Sequence[AttendeeRecord], sort_by: str = "attendeeName",
                descending: bool = False) -> List[AttendeeRecord]:
    """
    Sort a roster by one of the SORT_KEYS

    Text columns sort naturally, so embedded numbers compare as numbers.
    Records never checked in sort after checked-in ones by check-in time.

    Raises:
        ValueError: If ``sort_by`` is not a known key
    """
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {sort_by}")
    attribute = SORT_KEYS[sort_by]

    if attribute == "checked_in_at":
        def key(record):
            stamp = record.checked_in_at
            return (stamp is None, stamp.timestamp() if stamp else 0.0)
    elif attribute == "status":
        def key(record):
            return (record.status is CheckInStatus.CHECKED_IN, _natural_key(record.attendee_name))
    else:
        def key(record):
            return _natural_key(getattr(record, attribute))

    return sorted(roster, key=key, reverse=descending)

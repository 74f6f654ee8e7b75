"""
Data Models for Event Check-in

This module contains the data model classes shared by every data source:
the canonical attendee record, the check-in status and source kind
enumerations, and the push delta delivered by real-time backends.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class CheckInStatus(Enum):
    """Enumeration for attendee check-in status"""
    PENDING = "pending"
    CHECKED_IN = "checked-in"

    @classmethod
    def from_value(cls, value: Any) -> 'CheckInStatus':
        """
        Parse a status from raw input, defaulting to pending

        Args:
            value: Raw status value (string, enum or None)

        Returns:
            CheckInStatus instance
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", "-")
        if text in ("checked-in", "checkedin", "checked in"):
            return cls.CHECKED_IN
        return cls.PENDING


class SourceKind(Enum):
    """Enumeration for the supported data source backends"""
    CSV = "csv"
    SPREADSHEET = "googlesheets"
    DATABASE = "supabase"

    @classmethod
    def from_value(cls, value: Any) -> 'SourceKind':
        """
        Resolve a source kind from its wire name or a common alias

        Raises:
            ValueError: If the value names no known source
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        aliases = {
            "csv": cls.CSV,
            "googlesheets": cls.SPREADSHEET,
            "gsheet": cls.SPREADSHEET,
            "spreadsheet": cls.SPREADSHEET,
            "supabase": cls.DATABASE,
            "database": cls.DATABASE,
            "postgres": cls.DATABASE,
        }
        if text not in aliases:
            raise ValueError(f"Unsupported data source type: {value}")
        return aliases[text]

    @property
    def id_prefix(self) -> Optional[str]:
        """Prefix for synthesized ids, or None when rows carry a natural key"""
        return {
            SourceKind.CSV: "csv",
            SourceKind.SPREADSHEET: "gsheet",
            SourceKind.DATABASE: None,
        }[self]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as sent by the backends

    Args:
        value: datetime, ISO string (``Z`` suffix allowed) or None

    Returns:
        Aware datetime, or None for empty or unparseable input
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 with a ``Z`` suffix for UTC"""
    if value is None:
        return None
    text = value.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


@dataclass(frozen=True)
class AttendeeRecord:
    """
    Canonical attendee record

    Produced by the normalizer for every admitted row. Records are value
    objects: a status change produces a new record via ``with_status``.
    A record is checked in exactly when ``checked_in_at`` is set.
    """
    id: str
    table_number: str = ""
    group_name: str = ""
    attendee_name: str = ""
    ticket_type: str = ""
    email: str = ""
    additional_info: str = ""
    status: CheckInStatus = CheckInStatus.PENDING
    checked_in_at: Optional[datetime] = None
    row_index: Optional[int] = None

    def __post_init__(self):
        checked_in = self.status is CheckInStatus.CHECKED_IN
        if checked_in != (self.checked_in_at is not None):
            raise ValueError(
                f"Attendee '{self.id}': status {self.status.value} "
                f"inconsistent with checked_in_at={self.checked_in_at!r}"
            )

    @property
    def is_checked_in(self) -> bool:
        return self.status is CheckInStatus.CHECKED_IN

    def with_status(self, status: CheckInStatus,
                    at: Optional[datetime] = None) -> 'AttendeeRecord':
        """
        Return a copy of this record moved to ``status``

        Checking in stamps ``at`` (default: now); moving back to pending
        clears the timestamp. A record already in ``status`` is returned
        unchanged.

        Args:
            status: Target status
            at: Optional check-in time

        Returns:
            AttendeeRecord in the requested status
        """
        if status is self.status:
            return self
        if status is CheckInStatus.CHECKED_IN:
            return replace(self, status=status, checked_in_at=at or utc_now())
        return replace(self, status=status, checked_in_at=None)

    @classmethod
    def from_dict(cls, data: Dict) -> 'AttendeeRecord':
        """
        Create AttendeeRecord from its camelCase dictionary form

        Args:
            data: Dictionary as produced by ``to_dict``

        Returns:
            AttendeeRecord instance
        """
        return cls(
            id=str(data['id']),
            table_number=data.get('tableNumber', ''),
            group_name=data.get('groupName', ''),
            attendee_name=data.get('attendeeName', ''),
            ticket_type=data.get('ticketType', ''),
            email=data.get('email', ''),
            additional_info=data.get('additionalInfo', ''),
            status=CheckInStatus.from_value(data.get('status')),
            checked_in_at=parse_timestamp(data.get('checkedInAt')),
            row_index=data.get('rowIndex'),
        )

    def to_dict(self) -> Dict:
        """
        Convert record to the camelCase dictionary used on the wire

        Returns:
            Dictionary representation of the record
        """
        return {
            'id': self.id,
            'tableNumber': self.table_number,
            'groupName': self.group_name,
            'attendeeName': self.attendee_name,
            'ticketType': self.ticket_type,
            'email': self.email,
            'additionalInfo': self.additional_info,
            'status': self.status.value,
            'checkedInAt': format_timestamp(self.checked_in_at),
            'rowIndex': self.row_index,
        }


@dataclass(frozen=True)
class PushDelta:
    """
    Change notification from a real-time backend

    Mirrors the ``{eventType, new, old}`` payload shape; ``event_type``
    is normalized to lowercase (``insert``, ``update``, ``delete``).
    """
    event_type: str
    new: Dict = field(default_factory=dict)
    old: Dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict) -> 'PushDelta':
        """
        Create PushDelta from a raw notification payload

        Row images that are not objects are replaced by an empty dict,
        so such a delta matches no attendee.

        Args:
            payload: Dictionary with ``eventType``, ``new`` and ``old`` keys

        Returns:
            PushDelta instance

        Raises:
            ValueError: If the payload itself is not a mapping
        """
        if not isinstance(payload, Mapping):
            raise ValueError(f"Push payload must be an object, got {type(payload).__name__}")
        event_type = payload.get('eventType') or payload.get('event_type') or ''
        new, old = payload.get('new'), payload.get('old')
        return cls(
            event_type=str(event_type).lower(),
            new=dict(new) if isinstance(new, Mapping) else {},
            old=dict(old) if isinstance(old, Mapping) else {},
        )

    @property
    def is_update(self) -> bool:
        return self.event_type == "update"

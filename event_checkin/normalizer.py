"""
Attendee row normalization

Converts the heterogeneous rows produced by the backends (positional
spreadsheet rows, camelCase JSON rows, snake_case database rows) into
AttendeeRecord instances.

Positional rows follow a fixed column order shared with existing
spreadsheets and CSV uploads:

    0 table number, 1 group, 2 attendee name, 3 ticket type,
    4 email, 5 additional info
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .models import (
    AttendeeRecord,
    CheckInStatus,
    SourceKind,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

COLUMN_ORDER = (
    "table_number",
    "group_name",
    "attendee_name",
    "ticket_type",
    "email",
    "additional_info",
)

DEFAULT_TABLE = "General"

# First matching key wins
FIELD_ALIASES = {
    "table_number": ("tableNumber", "table_number"),
    "group_name": ("groupName", "group_name"),
    "attendee_name": ("attendeeName", "attendee_name", "fullName", "full_name"),
    "ticket_type": ("ticketType", "ticket_type"),
    "email": ("email",),
    "additional_info": ("additionalInfo", "additional_info", "mealChoice", "meal_choice"),
}
STATUS_KEYS = ("status",)
CHECKED_IN_AT_KEYS = ("checkedInAt", "checked_in_at")
ROW_INDEX_KEYS = ("rowIndex", "row_index")

# Header row plus 1-based numbering
ROW_INDEX_OFFSET = 2


@dataclass
class NormalizationResult:
    """Records admitted from one snapshot and the number of rows dropped"""
    records: List[AttendeeRecord] = field(default_factory=list)
    dropped: int = 0


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _lookup(raw: Mapping, keys: Sequence[str]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def extract_fields(raw) -> Dict[str, str]:
    """
    Pull the six attendee text fields out of a raw row

    Args:
        raw: Mapping keyed by camelCase or snake_case names, or a
            positional sequence in COLUMN_ORDER

    Returns:
        Dictionary of trimmed strings keyed by COLUMN_ORDER names
    """
    if isinstance(raw, Mapping):
        return {name: _text(_lookup(raw, FIELD_ALIASES[name])) for name in COLUMN_ORDER}

    values = list(raw or [])
    return {
        name: _text(values[position]) if position < len(values) else ""
        for position, name in enumerate(COLUMN_ORDER)
    }


def synthesize_id(origin_kind: SourceKind, attendee_name: str, index: int) -> str:
    """
    Build a deterministic id for rows without a natural key

    The same name at the same position always yields the same id, so
    reloading an unchanged sheet keeps ids stable.
    """
    prefix = origin_kind.id_prefix or origin_kind.value
    slug = "_".join(attendee_name.lower().split())
    if slug:
        return f"{prefix}_{slug}_{index}"
    return f"{prefix}_{index}"


def coerce_check_in(status: CheckInStatus, checked_in_at, attendee_id: str = ""):
    """
    Reconcile a status with its timestamp

    A checked-in status without a timestamp cannot be represented and is
    downgraded to pending; a pending status drops any stale timestamp.

    Returns:
        Tuple of (status, checked_in_at)
    """
    if status is CheckInStatus.CHECKED_IN and checked_in_at is None:
        logger.warning("Attendee %s marked checked-in without a timestamp; treating as pending",
                       attendee_id)
        return CheckInStatus.PENDING, None
    if status is CheckInStatus.PENDING:
        return status, None
    return status, checked_in_at


def normalize(raw, index: int, origin_kind: SourceKind,
              email_validator=None) -> Optional[AttendeeRecord]:
    """
    Normalize one raw row into an AttendeeRecord

    Args:
        raw: Positional row or mapping row
        index: Zero-based position of the row among the data rows
        origin_kind: Source the row came from
        email_validator: Optional object with ``validate(raw)`` returning
            a result with ``valid``, ``sanitized`` and ``error``

    Returns:
        AttendeeRecord, or None when the row carries no table, group
        or attendee name
    """
    fields = extract_fields(raw)

    if not (fields["table_number"] or fields["group_name"] or fields["attendee_name"]):
        logger.debug("Dropping %s row %d: no table, group or name", origin_kind.value, index)
        return None

    if not fields["group_name"] and fields["ticket_type"]:
        fields["group_name"] = fields["ticket_type"]
    if not fields["table_number"]:
        fields["table_number"] = DEFAULT_TABLE

    if fields["email"] and email_validator is not None:
        result = email_validator.validate(fields["email"])
        if result.valid:
            fields["email"] = result.sanitized
        else:
            logger.warning("Invalid email for %s: %s - %s",
                           fields["attendee_name"] or f"row {index}", fields["email"], result.error)
            fields["email"] = ""

    is_mapping = isinstance(raw, Mapping)
    natural_key = _lookup(raw, ("id",)) if is_mapping else None
    if natural_key is not None and _text(natural_key):
        attendee_id = _text(natural_key)
    else:
        attendee_id = synthesize_id(origin_kind, fields["attendee_name"], index)

    status = CheckInStatus.PENDING
    checked_in_at = None
    row_index = index + ROW_INDEX_OFFSET
    if is_mapping:
        status = CheckInStatus.from_value(_lookup(raw, STATUS_KEYS))
        checked_in_at = parse_timestamp(_lookup(raw, CHECKED_IN_AT_KEYS))
        status, checked_in_at = coerce_check_in(status, checked_in_at, attendee_id)
        raw_row_index = _lookup(raw, ROW_INDEX_KEYS)
        if raw_row_index is not None:
            try:
                row_index = int(raw_row_index)
            except (TypeError, ValueError):
                pass

    return AttendeeRecord(
        id=attendee_id,
        status=status,
        checked_in_at=checked_in_at,
        row_index=row_index,
        **fields,
    )


def normalize_rows(rows: Iterable, origin_kind: SourceKind,
                   email_validator=None) -> NormalizationResult:
    """
    Normalize a full snapshot

    Rows that fail the admission rule are dropped and counted. Later
    rows whose id collides with an earlier one are dropped as well so
    ids stay unique within the snapshot.
    """
    result = NormalizationResult()
    seen = set()
    for index, raw in enumerate(rows):
        record = normalize(raw, index, origin_kind, email_validator)
        if record is None:
            result.dropped += 1
            continue
        if record.id in seen:
            logger.warning("Duplicate attendee id %s in %s snapshot; keeping first",
                           record.id, origin_kind.value)
            result.dropped += 1
            continue
        seen.add(record.id)
        result.records.append(record)

    if result.dropped:
        logger.info("Dropped %d of %d %s rows", result.dropped,
                    result.dropped + len(result.records), origin_kind.value)
    return result


def record_to_row(record: AttendeeRecord) -> Dict[str, Any]:
    """Snake_case row form of a record, as stored in the database table"""
    return {
        "id": record.id,
        "table_number": record.table_number,
        "group_name": record.group_name,
        "attendee_name": record.attendee_name,
        "ticket_type": record.ticket_type,
        "email": record.email,
        "additional_info": record.additional_info,
        "status": record.status.value,
        "checked_in_at": format_timestamp(record.checked_in_at),
        "row_index": record.row_index,
    }


def apply_row_changes(record: AttendeeRecord, changes: Mapping, origin_kind: SourceKind,
                      email_validator=None) -> AttendeeRecord:
    """
    Patch a record with the columns present in a partial row

    Used for push deltas, which may carry only the changed columns.
    Columns absent from ``changes`` keep the record's current values.
    """
    row = record_to_row(record)
    for name, aliases in list(FIELD_ALIASES.items()) + [
        ("status", STATUS_KEYS),
        ("checked_in_at", CHECKED_IN_AT_KEYS),
        ("row_index", ROW_INDEX_KEYS),
    ]:
        for key in aliases:
            if key in changes:
                row[name] = changes[key]
                break

    patched = normalize(row, 0, origin_kind, email_validator)
    if patched is None:
        return record
    return patched

"""
Inbound editing API for whatever surface edits the agenda.

Edits to tracked fields stamp ``Edited in Sheet`` so the next push knows
the row changed; archive requests only set the flag and leave the move to
the archive drain.
"""

from datetime import datetime

from agenda_sync.dates import parse_cell_date
from agenda_sync.models import Record
from agenda_sync.schema import FIELD_HEADERS
from agenda_sync.schema import TRACKED_FIELDS
from agenda_sync.schema import decode_field
from agenda_sync.schema import encode_field
from agenda_sync.sync.utils import load_schema
from agenda_sync.sync.utils import utcnow


def _field_name(name: str) -> str:
    """Accept either a field name ("start") or its header ("Start")."""
    if name in FIELD_HEADERS:
        return name
    for field_name, header in FIELD_HEADERS.items():
        if header.casefold() == name.casefold():
            return field_name
    return name


def _check_row(table, row_number: int):
    if row_number < 2:
        raise ValueError(f"row {row_number} is the header; data starts at row 2")


def mark_edited(table, row_number: int, timestamp: datetime):
    """Record that a tracked field of the row was edited at timestamp."""
    _check_row(table, row_number)
    schema = load_schema(table)
    table.set_cell(row_number, schema.columns["edited_at"], encode_field("edited_at", timestamp))


def request_archive(table, row_number: int):
    _check_row(table, row_number)
    schema = load_schema(table)
    table.set_cell(row_number, schema.columns["archive"], encode_field("archive", True))


def set_field(table, row_number: int, name: str, value, clock=utcnow):
    """Write one field of a row.

    Known fields are parsed and stored in their cell form; any other name
    must be a header of the sheet and is stored as given.
    """
    _check_row(table, row_number)
    schema = load_schema(table)
    field_name = _field_name(name)

    if field_name == "archive":
        if decode_field("archive", value):
            request_archive(table, row_number)
        else:
            table.set_cell(row_number, schema.columns["archive"], encode_field("archive", False))
        return

    if field_name in schema.columns:
        if field_name in ("start", "end") and value not in (None, "") and parse_cell_date(value) is None:
            raise ValueError(f"not a date: {value!r}")
        cell = encode_field(field_name, decode_field(field_name, value))
        table.set_cell(row_number, schema.columns[field_name], cell)
        if field_name in TRACKED_FIELDS:
            mark_edited(table, row_number, clock())
        return

    column = schema.index_of(name)
    if column is None:
        raise KeyError(f"Unknown column: {name}")
    table.set_cell(row_number, column, value)


def add_record(table, title: str, start, end=None, **extra) -> int:
    """Append an untracked row; returns its row number."""
    schema = load_schema(table)
    record = Record(
        title=title,
        start=parse_cell_date(start),
        end=parse_cell_date(end),
    )
    if record.start is None:
        raise ValueError(f"not a date: {start!r}")
    for key, value in extra.items():
        field_name = _field_name(key)
        if field_name in schema.columns and field_name not in ("title", "start", "end"):
            setattr(record, field_name, decode_field(field_name, value))
        elif schema.index_of(key) is not None:
            record.extra[key] = value
        else:
            raise KeyError(f"Unknown column: {key}")
    table.append([schema.encode(record)])
    return len(table.rows()) + 1

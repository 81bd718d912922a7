"""
Sheet schema: maps logical record fields onto header columns.

The header row is resolved once per phase into a ``Schema``; a missing
required column raises ``SchemaError`` instead of silently skipping data.
"""

from datetime import datetime
from datetime import timezone

from agenda_sync.dates import format_cell_date
from agenda_sync.dates import parse_cell_date
from agenda_sync.models import Record
from agenda_sync.models import SchemaError

FIELD_HEADERS: dict[str, str] = {
    "title": "Title",
    "description": "Description",
    "location": "Location",
    "start": "Start",
    "end": "End",
    "guests": "Guests",
    "color": "Color",
    "external_id": "ID",
    "registered_at": "Modified in Calendar",
    "synced_at": "Registered in Calendar",
    "edited_at": "Edited in Sheet",
    "gantt": "Gantt",
    "archive": "Archive",
}

REQUIRED_FIELDS = (
    "title",
    "description",
    "location",
    "start",
    "end",
    "guests",
    "color",
    "external_id",
    "registered_at",
    "synced_at",
    "edited_at",
    "archive",
)

# Fields whose edits must reach the calendar (they stamp edited_at).
TRACKED_FIELDS = frozenset(
    {"title", "description", "location", "start", "end", "guests", "color"}
)

PASSTHROUGH_HEADERS = [
    "Project",
    "Stage",
    "Status",
    "Requester",
    "Contacts",
    "Recommended Actions",
    "Priority",
    "Actions Taken",
    "Notes",
]

AGENDA_HEADER = [
    FIELD_HEADERS["archive"],
    FIELD_HEADERS["title"],
    FIELD_HEADERS["description"],
    FIELD_HEADERS["start"],
    FIELD_HEADERS["end"],
    FIELD_HEADERS["location"],
    FIELD_HEADERS["guests"],
    FIELD_HEADERS["color"],
    *PASSTHROUGH_HEADERS,
    FIELD_HEADERS["external_id"],
    FIELD_HEADERS["registered_at"],
    FIELD_HEADERS["synced_at"],
    FIELD_HEADERS["edited_at"],
    FIELD_HEADERS["gantt"],
]

# Column order of the archive log.  External readers depend on it.
ARCHIVE_COLUMNS = [
    FIELD_HEADERS["title"],
    FIELD_HEADERS["description"],
    FIELD_HEADERS["start"],
    FIELD_HEADERS["end"],
    FIELD_HEADERS["location"],
    FIELD_HEADERS["guests"],
    FIELD_HEADERS["color"],
    *PASSTHROUGH_HEADERS,
    FIELD_HEADERS["external_id"],
    FIELD_HEADERS["registered_at"],
    FIELD_HEADERS["synced_at"],
    FIELD_HEADERS["edited_at"],
    FIELD_HEADERS["gantt"],
    FIELD_HEADERS["archive"],
]


# ---------------------------------------------------------------------------
# Cell codecs
# ---------------------------------------------------------------------------


def parse_timestamp(value) -> datetime | None:
    """Parse a stored timestamp; naive values are taken as UTC."""
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
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.astimezone(timezone.utc).isoformat()


def parse_flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().upper() == "TRUE"
    return value is True


def parse_color(value) -> int | None:
    """Return the color id when it is a valid palette entry (1–11)."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        color = int(str(value).strip())
    except ValueError:
        return None
    return color if 1 <= color <= 11 else None


def parse_guests(value) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(g.strip() for g in str(value).split(",") if g.strip())


def format_guests(guests) -> str:
    return ",".join(guests)


def _text(value) -> str:
    if value is None:
        return ""
    return str(value)


_DECODERS = {
    "title": _text,
    "description": _text,
    "location": _text,
    "start": parse_cell_date,
    "end": parse_cell_date,
    "guests": parse_guests,
    "color": parse_color,
    "external_id": lambda v: _text(v).strip(),
    "registered_at": parse_timestamp,
    "synced_at": parse_timestamp,
    "edited_at": parse_timestamp,
    "gantt": parse_flag,
    "archive": parse_flag,
}

_ENCODERS = {
    "title": _text,
    "description": _text,
    "location": _text,
    "start": format_cell_date,
    "end": format_cell_date,
    "guests": format_guests,
    "color": lambda v: "" if v is None else v,
    "external_id": _text,
    "registered_at": format_timestamp,
    "synced_at": format_timestamp,
    "edited_at": format_timestamp,
    "gantt": lambda v: bool(v),
    "archive": lambda v: bool(v),
}


def encode_field(field_name: str, value):
    """Return the cell value for a record field."""
    return _ENCODERS[field_name](value)


def decode_field(field_name: str, value):
    return _DECODERS[field_name](value)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class Schema:
    """Column positions of the record fields within one sheet header."""

    def __init__(self, header: list[str], columns: dict[str, int]):
        self.header = list(header)
        self.columns = columns
        used = set(columns.values())
        self.extra_columns = {
            i: name for i, name in enumerate(self.header) if name and i not in used
        }

    @classmethod
    def from_header(cls, header: list[str], required=REQUIRED_FIELDS) -> "Schema":
        positions = {}
        for i, name in enumerate(header):
            name = _text(name).strip()
            if name and name not in positions:
                positions[name] = i

        columns = {}
        for field_name, header_name in FIELD_HEADERS.items():
            if header_name in positions:
                columns[field_name] = positions[header_name]

        missing = [FIELD_HEADERS[f] for f in required if f not in columns]
        if missing:
            raise SchemaError(f"Missing required column(s): {', '.join(missing)}")
        return cls(header, columns)

    @property
    def width(self) -> int:
        return len(self.header)

    def index_of(self, header_name: str) -> int | None:
        try:
            return self.header.index(header_name)
        except ValueError:
            return None

    def pad(self, row: list) -> list:
        """Return a copy of row sized to the header width."""
        row = list(row[: self.width])
        row.extend([""] * (self.width - len(row)))
        return row

    def decode(self, row: list, row_number: int | None = None) -> Record:
        row = self.pad(row)
        values = {
            field_name: _DECODERS[field_name](row[col]) for field_name, col in self.columns.items()
        }
        extra = {name: row[i] for i, name in self.extra_columns.items()}
        return Record(row_number=row_number, extra=extra, **values)

    def encode(self, record: Record, base: list | None = None) -> list:
        """Return the sheet row for record, keeping unknown cells from base."""
        row = self.pad(base or [])
        for field_name, col in self.columns.items():
            row[col] = _ENCODERS[field_name](getattr(record, field_name))
        for i, name in self.extra_columns.items():
            if name in record.extra:
                row[i] = record.extra[name]
        return row

    def to_archive_row(self, row: list) -> list:
        """Reorder an agenda row into the archive log column order."""
        row = self.pad(row)
        positions = {}
        for i, name in enumerate(self.header):
            positions.setdefault(name, i)
        return [row[positions[name]] if name in positions else "" for name in ARCHIVE_COLUMNS]

"""
Pure data models: no EDS or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Any

DEFAULT_WORKBOOK = Path.home() / ".local/share/agenda-sync.db"
DEFAULT_CONFIG = Path.home() / ".config/agenda-sync.conf"

AGENDA_SHEET = "Agenda"
ARCHIVE_SHEET = "Archive"

# Title prefix marking a row whose calendar event disappeared.
NO_SYNC_MARKER = "NOSYNC"

# Rows created by the day-sequence generator are titled "- Monday" etc.
DAY_MARKER_PREFIX = "- "

# Color value that removes an event's color on update.
NO_COLOR = 0

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AgendaSyncError(Exception):
    """Base exception for agenda sync errors."""

    pass


class SchemaError(AgendaSyncError):
    """A required column is missing from a sheet header."""

    pass


class NotFoundError(AgendaSyncError):
    """The configured calendar or a sheet does not exist."""

    pass


class ServiceError(AgendaSyncError):
    """A calendar service call failed."""

    retryable = False


class RateLimitError(ServiceError):
    """The calendar service rejected a call as over quota."""

    retryable = True


class TransientServiceError(ServiceError):
    """A failure that is harmless where the operation is idempotent
    (e.g. deleting an event that is already gone)."""

    pass


class LockTimeoutError(AgendaSyncError):
    """The archive drain lock could not be acquired in time."""

    pass


@dataclass
class ValidationIssue:
    """One row whose end date precedes its start date."""

    row_number: int
    title: str
    start: datetime
    end: datetime

    def describe(self) -> str:
        title = self.title.strip() or "(untitled)"
        return (
            f"Row {self.row_number}: {title}: "
            f"end {_short_date(self.end)} < start {_short_date(self.start)}"
        )


def _short_date(value: datetime) -> str:
    if value.hour or value.minute or value.second:
        return value.strftime("%d/%m/%y %H:%M")
    return value.strftime("%d/%m/%y")


class ValidationError(AgendaSyncError):
    """Rows with an end before their start; raised before any mutation."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        lines = "\n".join(issue.describe() for issue in issues)
        super().__init__(
            f"{len(issues)} row(s) have an end date before their start date:\n{lines}"
        )


@dataclass
class Record:
    """One agenda row, decoded through the sheet schema."""

    row_number: int | None = None
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    guests: tuple[str, ...] = ()
    color: int | None = None
    external_id: str = ""
    registered_at: datetime | None = None  # event LAST-MODIFIED at last sync
    synced_at: datetime | None = None  # when the row was imported/created
    edited_at: datetime | None = None  # last user edit of a tracked field
    gantt: bool = False
    archive: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_linked(self) -> bool:
        return bool(self.external_id)


@dataclass
class ExternalEvent:
    """One event as seen in the calendar service.

    All-day events carry midnight datetimes and an exclusive end.
    """

    id: str
    title: str = ""
    description: str = ""
    location: str = ""
    guests: tuple[str, ...] = ()
    color: int | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    last_modified: datetime = EPOCH


@dataclass
class SyncConfig:
    """Configuration for one sync cycle."""

    calendar_id: str
    workbook_path: Path
    dry_run: bool = False
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting
    window_start: datetime = datetime(2020, 1, 1)
    window_end: datetime = datetime(2030, 1, 1)
    default_duration: timedelta = timedelta(minutes=60)
    create_batch_size: int = 125
    create_batch_cooldown: float = 15.0  # seconds
    retry_cooldown: float = 15.0  # seconds
    lock_timeout: float = 30.0  # seconds
    group_column: str = "Project"

    @property
    def lock_path(self) -> Path:
        return self.workbook_path.with_name(self.workbook_path.name + ".lock")


@dataclass
class SyncStats:
    """Statistics for one sync cycle."""

    imported: int = 0  # calendar → agenda inserts
    refreshed: int = 0  # calendar → agenda updates
    removed: int = 0  # rows whose event vanished
    created: int = 0  # agenda → calendar creates
    modified: int = 0  # agenda → calendar updates
    relabeled: int = 0  # rows marked NOSYNC
    archived: int = 0
    retired: int = 0  # archived events deleted from the calendar
    errors: int = 0
    failures: list[str] = field(default_factory=list)

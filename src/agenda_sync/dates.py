"""
Date normalization between agenda cells and calendar event windows.

The agenda stores an inclusive last day for multi-day all-day events and
leaves ``end`` blank for single-day ones; the calendar stores all-day
events with an exclusive end boundary.
"""

import enum
import re
from dataclasses import dataclass
from datetime import date
from datetime import datetime
from datetime import timedelta

from agenda_sync.models import ExternalEvent
from agenda_sync.models import ValidationError
from agenda_sync.models import ValidationIssue

DEFAULT_TIMED_DURATION = timedelta(minutes=60)

ONE_DAY = timedelta(days=1)

# dd/mm/yy[yy] with an optional HH:MM[:SS] part.
_DMY_RE = re.compile(
    r"^\s*(\d{1,2})/(\d{1,2})/(\d{2,4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?\s*$"
)


class EventShape(enum.Enum):
    ALL_DAY_SINGLE = "all-day"
    ALL_DAY_MULTI = "multi-day"
    TIMED = "timed"

    @property
    def all_day(self) -> bool:
        return self is not EventShape.TIMED


@dataclass(frozen=True)
class EventWindow:
    """Calendar-side boundaries of an event (all-day end is exclusive)."""

    shape: EventShape
    start: datetime
    end: datetime


def is_date_only(value: datetime) -> bool:
    return (
        value.hour == 0 and value.minute == 0 and value.second == 0 and value.microsecond == 0
    )


def normalize_date_only(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day)


def parse_cell_date(value) -> datetime | None:
    """Parse an agenda date cell into a naive datetime, or None.

    Accepts datetime/date objects, ISO strings and the ``dd/mm/yy HH:MM``
    form users type into the sheet.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone().replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
        return parsed

    m = _DMY_RE.match(text)
    if not m:
        return None
    day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
    if year < 100:
        year += 2000
    hour = int(m.group(4) or 0)
    minute = int(m.group(5) or 0)
    second = int(m.group(6) or 0)
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def format_cell_date(value: datetime | None) -> str:
    if value is None:
        return ""
    if is_date_only(value):
        return value.date().isoformat()
    return value.isoformat(sep=" ", timespec="seconds")


def classify(
    start: datetime | None,
    end: datetime | None,
    default_duration: timedelta = DEFAULT_TIMED_DURATION,
) -> EventWindow:
    """Map an agenda (start, end) pair onto the calendar window it publishes as."""
    if start is None:
        raise ValueError("cannot classify a record without a start date")
    if end is not None and end < start:
        raise ValidationError([ValidationIssue(0, "", start, end)])

    start_only = is_date_only(start)
    end_only = end is None or is_date_only(end)

    if start_only and (end is None or end == start):
        day = normalize_date_only(start)
        return EventWindow(EventShape.ALL_DAY_SINGLE, day, day + ONE_DAY)

    if start_only and end_only:
        return EventWindow(
            EventShape.ALL_DAY_MULTI,
            normalize_date_only(start),
            normalize_date_only(end) + ONE_DAY,
        )

    effective_end = end if end is not None else start + default_duration
    return EventWindow(EventShape.TIMED, start, effective_end)


def window_of(event: ExternalEvent) -> EventWindow:
    """Return the live window of a calendar event."""
    if event.all_day:
        start = normalize_date_only(event.start)
        end = normalize_date_only(event.end) if event.end else start + ONE_DAY
        if (end - start).days <= 1:
            return EventWindow(EventShape.ALL_DAY_SINGLE, start, start + ONE_DAY)
        return EventWindow(EventShape.ALL_DAY_MULTI, start, end)
    return EventWindow(EventShape.TIMED, event.start, event.end)


def to_table_dates(event: ExternalEvent) -> tuple[datetime, datetime | None]:
    """Return the agenda (start, end) cells for an imported event."""
    if event.all_day:
        window = window_of(event)
        if window.shape is EventShape.ALL_DAY_SINGLE:
            return window.start, None
        return window.start, window.end - ONE_DAY
    return event.start, event.end


@dataclass(frozen=True)
class EventDraft:
    """What the push sends when it creates an event."""

    title: str
    window: EventWindow
    description: str = ""
    location: str = ""
    color: int | None = None

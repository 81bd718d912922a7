"""
Stateless helpers shared by the sync phases: row compaction, sorting,
retry and timestamps.
"""

import logging
from datetime import datetime
from datetime import timezone

from agenda_sync.dates import parse_cell_date
from agenda_sync.models import EPOCH
from agenda_sync.models import NO_SYNC_MARKER
from agenda_sync.models import ServiceError
from agenda_sync.schema import FIELD_HEADERS
from agenda_sync.schema import Schema

_logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def or_epoch(value: datetime | None) -> datetime:
    """Missing timestamps compare as the epoch."""
    return value if value is not None else EPOCH


def load_schema(table) -> Schema:
    return Schema.from_header(table.header())


def has_pending_edit(record, event) -> bool:
    """True when the user edit postdates both the last sync and the event's own change."""
    if record.edited_at is None:
        return False
    return record.edited_at > or_epoch(record.registered_at) and record.edited_at > event.last_modified


def no_sync_title(title: str) -> str:
    if title.startswith(NO_SYNC_MARKER):
        return title
    return f"{NO_SYNC_MARKER} {title}"


def compact_rows(table, row_numbers) -> list[tuple[int, int]]:
    """Delete the given sheet rows with as few range deletes as possible.

    Indices are processed bottom-up so that rows not yet deleted keep
    their numbers.  Returns the (start, count) pairs that were issued.
    """
    ordered = sorted(set(row_numbers), reverse=True)
    if not ordered:
        return []

    runs = []
    run_top = ordered[0]
    count = 1
    for prev, cur in zip(ordered, ordered[1:]):
        if cur == prev - 1:
            count += 1
            continue
        runs.append((run_top - count + 1, count))
        run_top = cur
        count = 1
    runs.append((run_top - count + 1, count))

    for start, length in runs:
        table.delete_rows(start, length)
    _logger.debug("Deleted %d row(s) in %d range(s)", len(ordered), len(runs))
    return runs


def _text_key(value):
    text = "" if value is None else str(value).strip()
    return (text == "", text.casefold())


def sort_agenda(table, group_column: str = "Project") -> bool:
    """Sort the dated prefix of the agenda by (start, group, title).

    Only rows 2..last-row-with-a-date take part; rows below stay where
    they are.  Returns True when the order changed.
    """
    header = table.header()
    try:
        i_start = header.index(FIELD_HEADERS["start"])
        i_title = header.index(FIELD_HEADERS["title"])
    except ValueError:
        return False
    i_group = header.index(group_column) if group_column in header else None

    rows = table.rows()
    last_dated = -1
    for i in range(len(rows) - 1, -1, -1):
        cells = rows[i]
        if i_start < len(cells) and parse_cell_date(cells[i_start]) is not None:
            last_dated = i
            break
    if last_dated < 1:
        return False

    def cell(cells, idx):
        return cells[idx] if idx is not None and idx < len(cells) else ""

    def key(cells):
        start = parse_cell_date(cell(cells, i_start))
        return (
            start is None,
            start or datetime.min,
            _text_key(cell(cells, i_group)),
            _text_key(cell(cells, i_title)),
        )

    block = rows[: last_dated + 1]
    ordered = sorted(block, key=key)
    if ordered == block:
        return False
    table.overwrite(2, ordered)
    return True


def is_retryable(error: BaseException) -> bool:
    """True for failures the service asks us to retry later (rate limits)."""
    return isinstance(error, ServiceError) and error.retryable


def call_with_retry(logger, cooldown: float, sleep, func, *args, **kwargs):
    """Call func; a retryable failure is retried exactly once after cooldown."""
    try:
        return func(*args, **kwargs)
    except ServiceError as e:
        if not is_retryable(e):
            raise
        logger.warning(f"Calendar rate limit hit ({e}); retrying in {cooldown:g}s")
        sleep(cooldown)
    return func(*args, **kwargs)

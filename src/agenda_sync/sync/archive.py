"""
Archive drain: move agenda rows into the append-only archive log.
"""

import time
from datetime import date
from datetime import datetime

from agenda_sync.models import DAY_MARKER_PREFIX
from agenda_sync.models import Record
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.models import TransientServiceError
from agenda_sync.schema import Schema
from agenda_sync.sync.utils import call_with_retry
from agenda_sync.sync.utils import compact_rows
from agenda_sync.sync.utils import load_schema


def is_flagged(record: Record) -> bool:
    """Rows the user asked to archive."""
    return record.archive


def is_orphaned(record: Record) -> bool:
    """Rows that were linked once but lost their event id."""
    return bool(record.title.strip()) and record.synced_at is not None and not record.external_id


def in_date_range(start: date, end: date, day_markers_only: bool = False):
    """Build a selector for rows whose start date lies in [start, end]."""

    def select(record: Record) -> bool:
        if record.start is None:
            return False
        if day_markers_only and not record.title.startswith(DAY_MARKER_PREFIX):
            return False
        return start <= record.start.date() <= end

    return select


def archive_row(schema: Schema, cells: list) -> list:
    """Return the archive-log copy of an agenda row, archive flag cleared."""
    cells = schema.pad(cells)
    cells[schema.columns["archive"]] = ""
    return schema.to_archive_row(cells)


def archived_ids(archive) -> set[str]:
    """Event ids still recorded in the archive log."""
    header = archive.header()
    schema = Schema.from_header(header, required=("external_id",))
    i_id = schema.columns["external_id"]
    ids = set()
    for cells in archive.rows():
        cells = schema.pad(cells)
        value = str(cells[i_id] or "").strip()
        if value:
            ids.add(value)
    return ids


def drain_archive(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    table,
    archive,
    lock,
    select=is_flagged,
    reason: str = "flagged",
) -> int:
    """Archive every selected row, rescanning until a pass finds none.

    Runs under ``lock``; rows flagged by another actor while a batch is
    being written are picked up by the next pass.  Returns the number of
    archived rows.
    """
    if config.dry_run:
        schema = load_schema(table)
        pending = [
            offset + 2
            for offset, cells in enumerate(table.rows())
            if select(schema.decode(cells, offset + 2))
        ]
        if pending:
            logger.info(f"[DRY RUN] Would ARCHIVE {len(pending)} {reason} row(s): {pending}")
        return 0

    total = 0
    with lock:
        while True:
            schema = load_schema(table)
            rows = table.rows()

            batch = []
            to_delete = []
            # Bottom-up, so the deletions coalesce into contiguous ranges.
            for offset in range(len(rows) - 1, -1, -1):
                row_number = offset + 2
                if not select(schema.decode(rows[offset], row_number)):
                    continue
                batch.insert(0, archive_row(schema, rows[offset]))
                to_delete.append(row_number)

            if not to_delete:
                break

            archive.append(batch)
            compact_rows(table, to_delete)
            total += len(to_delete)
            logger.debug(f"Archived {len(to_delete)} {reason} row(s): {sorted(to_delete)}")

    if total:
        logger.info(f"Archived {total} {reason} row(s)")
    stats.archived += total
    return total


def archive_range(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    table,
    archive,
    lock,
    start: date,
    end: date,
    day_markers_only: bool = False,
) -> int:
    """Archive every row whose start date falls within [start, end]."""
    if isinstance(start, datetime):
        start = start.date()
    if isinstance(end, datetime):
        end = end.date()
    if end < start:
        raise ValueError("the end of the range must not precede its start")
    return drain_archive(
        config,
        stats,
        logger,
        table,
        archive,
        lock,
        select=in_date_range(start, end, day_markers_only),
        reason="in-range",
    )


def retire_archived_events(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    service,
    archive,
    sleep=time.sleep,
) -> int:
    """Delete the calendar events of archived rows and clear their ids."""
    header = archive.header()
    schema = Schema.from_header(header, required=("external_id",))
    i_id = schema.columns["external_id"]
    rows = [schema.pad(cells) for cells in archive.rows()]

    retired = 0
    for cells in rows:
        event_id = str(cells[i_id] or "").strip()
        if not event_id:
            continue
        if config.dry_run:
            logger.info(f"[DRY RUN] Would DELETE archived event {event_id}")
            continue
        try:
            call_with_retry(logger, config.retry_cooldown, sleep, service.delete_event, event_id)
        except TransientServiceError as e:
            logger.debug(f"Archived event {event_id} already gone: {e}")
        cells[i_id] = ""
        retired += 1

    if retired:
        archive.overwrite(2, rows)
        logger.info(f"Removed {retired} archived event(s) from the calendar")
    stats.retired += retired
    return retired

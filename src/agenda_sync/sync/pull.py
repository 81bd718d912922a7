"""
Pull phase: calendar → agenda.

Imports new events, refreshes rows whose event changed since the last
sync, and removes rows whose event is gone.  Never writes to the calendar.
"""

import dataclasses

from agenda_sync.dates import to_table_dates
from agenda_sync.models import ExternalEvent
from agenda_sync.models import Record
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.sync.archive import archive_row
from agenda_sync.sync.archive import archived_ids
from agenda_sync.sync.utils import compact_rows
from agenda_sync.sync.utils import has_pending_edit
from agenda_sync.sync.utils import load_schema
from agenda_sync.sync.utils import no_sync_title
from agenda_sync.sync.utils import or_epoch
from agenda_sync.sync.utils import utcnow


def apply_event(record: Record, event: ExternalEvent):
    """Copy the syncable fields of event onto record."""
    record.title = event.title
    record.description = event.description
    record.location = event.location
    record.start, record.end = to_table_dates(event)
    record.guests = tuple(event.guests)
    record.color = event.color


def record_from_event(event: ExternalEvent, now) -> Record:
    record = Record(external_id=event.id, registered_at=event.last_modified, synced_at=now)
    apply_event(record, event)
    return record


def _in_window(config: SyncConfig, record: Record) -> bool:
    return record.start is not None and config.window_start <= record.start < config.window_end


def run_pull(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    service,
    table,
    archive,
    *,
    clock=utcnow,
) -> bool:
    """Apply calendar-side changes to the agenda.

    Returns True when rows were inserted or deleted.
    """
    schema = load_schema(table)
    rows = [schema.pad(cells) for cells in table.rows()]
    records = [schema.decode(cells, offset + 2) for offset, cells in enumerate(rows)]
    retired = archived_ids(archive)

    events = service.get_events(config.window_start, config.window_end)
    live = {event.id: event for event in events}
    now = clock()
    logger.info(f"Pulled {len(live)} event(s) from the calendar")

    changed = False

    # Identity: first holder of an id keeps it, later ones become orphans.
    by_id: dict[str, Record] = {}
    for record in records:
        if not record.external_id:
            continue
        if record.external_id in by_id:
            logger.warning(
                f"Row {record.row_number} duplicates event {record.external_id} "
                f"(also on row {by_id[record.external_id].row_number}); relabeling"
            )
            record.title = no_sync_title(record.title)
            record.external_id = ""
            rows[record.row_number - 2] = schema.encode(record, rows[record.row_number - 2])
            stats.relabeled += 1
            changed = True
            continue
        by_id[record.external_id] = record

    # Removals
    removed = []
    for event_id, record in by_id.items():
        if event_id in live:
            continue
        if not _in_window(config, record) and service.get_event(event_id) is not None:
            continue
        removed.append(record)

    # Imports and refreshes
    new_records = []
    for event in events:
        if event.id in retired:
            logger.debug(f"Skipping archived event {event.id}")
            continue
        record = by_id.get(event.id)
        if record is None:
            new_records.append(record_from_event(event, now))
            continue
        if event.last_modified <= or_epoch(record.registered_at):
            continue
        if has_pending_edit(record, event):
            logger.debug(f"Row {record.row_number} holds a newer edit; leaving it for the push")
            continue

        if config.dry_run:
            logger.info(f"[DRY RUN] Would REFRESH row {record.row_number}: {event.title}")
            stats.refreshed += 1
            continue
        apply_event(record, event)
        record.registered_at = event.last_modified
        record.synced_at = now
        rows[record.row_number - 2] = schema.encode(record, rows[record.row_number - 2])
        stats.refreshed += 1
        changed = True
        logger.debug(f"Refreshed row {record.row_number} from event {event.id}")

    if config.dry_run:
        for record in removed:
            logger.info(f"[DRY RUN] Would REMOVE row {record.row_number}: {record.title}")
        for record in new_records:
            logger.info(f"[DRY RUN] Would IMPORT: {record.title} ({record.external_id})")
        stats.removed += len(removed)
        stats.imported += len(new_records)
        return False

    if changed:
        table.overwrite(2, rows)

    if removed:
        batch = []
        for record in removed:
            gone = dataclasses.replace(record, external_id="")
            batch.append(archive_row(schema, schema.encode(gone, rows[record.row_number - 2])))
        archive.append(batch)
        compact_rows(table, [record.row_number for record in removed])
        stats.removed += len(removed)
        logger.info(f"Removed {len(removed)} row(s) whose event is gone")

    if new_records:
        table.append([schema.encode(record) for record in new_records])
        stats.imported += len(new_records)
        logger.info(f"Imported {len(new_records)} new event(s)")

    return bool(removed or new_records)

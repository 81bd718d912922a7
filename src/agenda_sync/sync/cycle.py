"""
One full sync cycle over an agenda sheet, its archive log and a calendar.
"""

import time

from agenda_sync.models import LockTimeoutError
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.schema import Schema
from agenda_sync.sync.archive import drain_archive
from agenda_sync.sync.archive import is_flagged
from agenda_sync.sync.archive import is_orphaned
from agenda_sync.sync.archive import retire_archived_events
from agenda_sync.sync.pull import run_pull
from agenda_sync.sync.push import run_push
from agenda_sync.sync.utils import load_schema
from agenda_sync.sync.utils import sort_agenda
from agenda_sync.sync.utils import utcnow
from agenda_sync.sync.validate import clear_untitled_rows
from agenda_sync.sync.validate import validate_agenda


def _drain(config, stats, logger, table, archive, lock, select, reason):
    try:
        drain_archive(config, stats, logger, table, archive, lock, select=select, reason=reason)
    except LockTimeoutError as e:
        logger.error(f"Skipping archive drain: {e}")
        stats.errors += 1
        stats.failures.append(str(e))


def run_cycle(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    service,
    table,
    archive,
    lock,
    *,
    clock=utcnow,
    sleep=time.sleep,
) -> SyncStats:
    """Run every phase in order; validation failures abort before any write."""
    load_schema(table)
    Schema.from_header(archive.header(), required=("external_id",))
    validate_agenda(table)

    clear_untitled_rows(config, logger, table)
    _drain(config, stats, logger, table, archive, lock, is_flagged, "flagged")
    retire_archived_events(config, stats, logger, service, archive, sleep=sleep)

    run_pull(config, stats, logger, service, table, archive, clock=clock)
    run_push(config, stats, logger, service, table, archive, clock=clock, sleep=sleep)

    _drain(config, stats, logger, table, archive, lock, is_orphaned, "orphaned")

    if not config.dry_run and sort_agenda(table, config.group_column):
        logger.debug("Agenda re-sorted")
    return stats

"""
Tests for the archive drain, range archiving and retirement of archived
events.
"""

from datetime import date
from datetime import datetime
from datetime import timezone

import pytest

from agenda_sync.db import DrainLock
from agenda_sync.models import LockTimeoutError
from agenda_sync.models import Record
from agenda_sync.schema import ARCHIVE_COLUMNS
from agenda_sync.sync.archive import archive_range
from agenda_sync.sync.archive import drain_archive
from agenda_sync.sync.archive import is_orphaned
from agenda_sync.sync.archive import retire_archived_events
from tests.conftest import ARCHIVE_SCHEMA
from tests.conftest import agenda_row
from tests.conftest import read_archive
from tests.conftest import read_records

SYNCED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _titles(table) -> list[str]:
    return [r.title for r in read_records(table)]


def _archived_titles(archive) -> list[str]:
    return [r.title for r in read_archive(archive)]


# ---------------------------------------------------------------------------
# drain_archive
# ---------------------------------------------------------------------------


def test_drain_moves_every_flagged_row(sync_config, sync_stats, sync_logger, table, archive, lock):
    table.add(
        agenda_row("A", "2025-03-10", archive=True, extra={"Project": "Apollo"}),
        agenda_row("B", "2025-03-11"),
        agenda_row("C", "2025-03-12", archive=True),
        agenda_row("D", "2025-03-13", archive=True, external_id="evt-4"),
    )

    assert drain_archive(sync_config, sync_stats, sync_logger, table, archive, lock) == 3

    assert _titles(table) == ["B"]
    assert not any(r.archive for r in read_records(table))
    entries = read_archive(archive)
    assert [e.title for e in entries] == ["A", "C", "D"]
    assert not any(e.archive for e in entries)
    assert entries[0].extra["Project"] == "Apollo"
    assert entries[2].external_id == "evt-4"
    assert table.deletes == [(4, 2), (2, 1)]
    assert sync_stats.archived == 3


def test_archive_entries_follow_the_archive_column_order(
    sync_config, sync_stats, sync_logger, table, archive, lock
):
    table.add(agenda_row("A", "2025-03-10", archive=True, location="HQ"))

    drain_archive(sync_config, sync_stats, sync_logger, table, archive, lock)

    (cells,) = archive.rows()
    assert len(cells) == len(ARCHIVE_COLUMNS)
    assert cells[ARCHIVE_COLUMNS.index("Title")] == "A"
    assert cells[ARCHIVE_COLUMNS.index("Location")] == "HQ"


def test_rows_flagged_during_a_drain_are_picked_up(
    sync_config, sync_stats, sync_logger, table, archive, lock
):
    table.add(
        agenda_row("A", "2025-03-10", archive=True),
        agenda_row("B", "2025-03-11"),
        agenda_row("C", "2025-03-12"),
    )
    flag_column = table.header().index("Archive")

    def flag_b(t):
        # After A is deleted, B sits on row 2.
        t.set_cell(2, flag_column, True)

    table.on_delete = flag_b

    assert drain_archive(sync_config, sync_stats, sync_logger, table, archive, lock) == 2
    assert _titles(table) == ["C"]
    assert _archived_titles(archive) == ["A", "B"]


def test_drain_with_nothing_flagged_writes_nothing(
    sync_config, sync_stats, sync_logger, table, archive, lock
):
    table.add(agenda_row("A", "2025-03-10"))

    assert drain_archive(sync_config, sync_stats, sync_logger, table, archive, lock) == 0
    assert archive.appends == []
    assert table.deletes == []


def test_drain_dry_run_leaves_both_sheets_alone(
    sync_config, sync_stats, sync_logger, table, archive, lock
):
    sync_config.dry_run = True
    table.add(agenda_row("A", "2025-03-10", archive=True))

    assert drain_archive(sync_config, sync_stats, sync_logger, table, archive, lock) == 0
    assert _titles(table) == ["A"]
    assert archive.rows() == []


def test_drain_times_out_when_another_process_holds_the_lock(
    sync_config, sync_stats, sync_logger, table, archive
):
    table.add(agenda_row("A", "2025-03-10", archive=True))
    holder = DrainLock(sync_config.lock_path, timeout=0.1)
    waiter = DrainLock(sync_config.lock_path, timeout=0.1)

    with holder:
        with pytest.raises(LockTimeoutError):
            drain_archive(sync_config, sync_stats, sync_logger, table, archive, waiter)

    assert _titles(table) == ["A"]
    assert archive.rows() == []

    # Once released, the drain goes ahead.
    assert drain_archive(sync_config, sync_stats, sync_logger, table, archive, waiter) == 1


def test_orphan_selector():
    assert is_orphaned(Record(title="Lost", synced_at=SYNCED))
    assert not is_orphaned(Record(title="Linked", synced_at=SYNCED, external_id="evt-1"))
    assert not is_orphaned(Record(title="Never synced"))
    assert not is_orphaned(Record(title="  ", synced_at=SYNCED))


def test_drain_with_orphan_selector(sync_config, sync_stats, sync_logger, table, archive, lock):
    table.add(
        agenda_row("NOSYNC Lost", "2025-03-10", synced_at=SYNCED),
        agenda_row("Linked", "2025-03-11", synced_at=SYNCED, external_id="evt-2"),
        agenda_row("Draft", "2025-03-12"),
    )

    drain_archive(
        sync_config, sync_stats, sync_logger, table, archive, lock, select=is_orphaned, reason="orphaned"
    )

    assert _titles(table) == ["Linked", "Draft"]
    assert _archived_titles(archive) == ["NOSYNC Lost"]


# ---------------------------------------------------------------------------
# archive_range
# ---------------------------------------------------------------------------


def _week(table):
    table.add(
        agenda_row("- Monday", "2025-03-10"),
        agenda_row("Planning", "2025-03-10 10:00"),
        agenda_row("- Tuesday", "2025-03-11"),
        agenda_row("- Friday", "2025-03-21"),
        agenda_row("Undated"),
    )


def test_archive_range_is_inclusive(sync_config, sync_stats, sync_logger, table, archive, lock):
    _week(table)

    count = archive_range(
        sync_config, sync_stats, sync_logger, table, archive, lock, date(2025, 3, 10), date(2025, 3, 11)
    )

    assert count == 3
    assert _titles(table) == ["- Friday", "Undated"]


def test_archive_range_day_markers_only(sync_config, sync_stats, sync_logger, table, archive, lock):
    _week(table)

    archive_range(
        sync_config,
        sync_stats,
        sync_logger,
        table,
        archive,
        lock,
        datetime(2025, 3, 1),
        datetime(2025, 3, 31),
        day_markers_only=True,
    )

    assert _titles(table) == ["Planning", "Undated"]
    assert _archived_titles(archive) == ["- Monday", "- Tuesday", "- Friday"]


def test_archive_range_rejects_reversed_bounds(
    sync_config, sync_stats, sync_logger, table, archive, lock
):
    with pytest.raises(ValueError):
        archive_range(
            sync_config, sync_stats, sync_logger, table, archive, lock, date(2025, 3, 11), date(2025, 3, 10)
        )


# ---------------------------------------------------------------------------
# retire_archived_events
# ---------------------------------------------------------------------------


def test_archived_events_are_deleted_and_ids_cleared(
    sync_config, sync_stats, sync_logger, service, archive, sleeps
):
    live = service.add_event("Done", datetime(2025, 3, 10), datetime(2025, 3, 11), all_day=True)
    archive.add(
        ARCHIVE_SCHEMA.encode(Record(title="Done", external_id=live.id)),
        ARCHIVE_SCHEMA.encode(Record(title="Already gone", external_id="evt-missing")),
        ARCHIVE_SCHEMA.encode(Record(title="Never linked")),
    )

    retired = retire_archived_events(sync_config, sync_stats, sync_logger, service, archive, sleep=sleeps)

    assert retired == 2
    assert service.deletes == [live.id]
    assert service.event_count == 0
    assert [e.external_id for e in read_archive(archive)] == ["", "", ""]
    assert _archived_titles(archive) == ["Done", "Already gone", "Never linked"]
    assert sync_stats.retired == 2


def test_retire_dry_run_keeps_events_and_ids(
    sync_config, sync_stats, sync_logger, service, archive, sleeps
):
    sync_config.dry_run = True
    live = service.add_event("Done", datetime(2025, 3, 10), datetime(2025, 3, 11), all_day=True)
    archive.add(ARCHIVE_SCHEMA.encode(Record(title="Done", external_id=live.id)))

    assert retire_archived_events(sync_config, sync_stats, sync_logger, service, archive, sleep=sleeps) == 0
    assert service.event_count == 1
    assert read_archive(archive)[0].external_id == live.id

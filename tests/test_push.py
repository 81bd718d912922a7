"""
Tests for the push phase (agenda → calendar).

Covers creation of untracked rows, the three-timestamp edit conflict rule,
shape changes, orphan relabeling, batch pacing and the retry policy.
"""

from datetime import datetime

import pytest

from agenda_sync.dates import EventShape
from agenda_sync.models import NO_COLOR
from agenda_sync.models import RateLimitError
from agenda_sync.models import Record
from agenda_sync.models import ServiceError
from agenda_sync.sync.archive import is_orphaned
from agenda_sync.sync.push import run_push
from tests.conftest import ARCHIVE_SCHEMA
from tests.conftest import agenda_row
from tests.conftest import read_records


def _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleep=None):
    kwargs = {"clock": clock}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return run_push(sync_config, sync_stats, sync_logger, service, table, archive, **kwargs)


def _tracked_row(service, clock, title="Kickoff", start="2025-03-10", end=None, **fields):
    """Create a calendar event and the agenda row already linked to it."""
    event = service.add_event("Kickoff", datetime(2025, 3, 10), datetime(2025, 3, 11), all_day=True)
    return event, agenda_row(
        title,
        start,
        end,
        external_id=event.id,
        registered_at=event.last_modified,
        synced_at=event.last_modified,
        **fields,
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_kickoff_row_creates_single_all_day_event(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    table.add(agenda_row("Kickoff", "2025-03-10", description="Agenda TBD", location="HQ", color=3))

    assert _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps) is True

    (draft,) = service.creates
    assert draft.title == "Kickoff"
    assert draft.window.shape is EventShape.ALL_DAY_SINGLE
    assert draft.window.start == datetime(2025, 3, 10)
    assert draft.window.end == datetime(2025, 3, 11)
    assert draft.description == "Agenda TBD"
    assert draft.location == "HQ"
    assert draft.color == 3

    (record,) = read_records(table)
    assert record.external_id == "evt-1"
    assert record.end is None
    assert record.registered_at is not None
    assert record.registered_at == record.synced_at
    assert record.registered_at > service.event("evt-1").last_modified
    assert sync_stats.created == 1


def test_offsite_row_creates_event_with_exclusive_end(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    table.add(agenda_row("Offsite", "2025-03-10", "2025-03-12"))

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    (draft,) = service.creates
    assert draft.window.shape is EventShape.ALL_DAY_MULTI
    assert draft.window.end == datetime(2025, 3, 13)
    assert read_records(table)[0].end == datetime(2025, 3, 12)


def test_rows_that_cannot_be_published_are_skipped(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    table.add(
        agenda_row("No date yet"),
        agenda_row("", "2025-03-10"),
        agenda_row("NOSYNC Lost event", "2025-03-10"),
    )

    assert _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps) is False
    assert service.creates == []
    assert table.overwrites == 0


def test_row_linked_to_archived_event_is_left_alone(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, edited_at=None)
    archive.add(ARCHIVE_SCHEMA.encode(Record(title="Kickoff", external_id=event.id)))
    service.remove_event(event.id)
    table.add(row)

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert read_records(table)[0].external_id == event.id
    assert sync_stats.relabeled == 0


def test_creation_pauses_after_each_batch(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    sync_config.create_batch_size = 2
    sync_config.create_batch_cooldown = 7.0
    table.add(*[agenda_row(f"Event {n}", f"2025-03-{n + 10:02d}") for n in range(5)])

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert len(service.creates) == 5
    assert sleeps.calls == [7.0, 7.0]


def test_dry_run_reports_creations_without_calling_the_service(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    sync_config.dry_run = True
    table.add(agenda_row("Kickoff", "2025-03-10"))
    before = table.rows()

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert service.creates == []
    assert table.rows() == before
    assert sync_stats.created == 1


# ---------------------------------------------------------------------------
# Conflict resolution
# ---------------------------------------------------------------------------


def test_edit_newer_than_sync_and_event_is_pushed(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, title="Kickoff (renamed)", location="Room 4")
    table.add(row)
    # T1 = registered_at < T3 = edited_at; the event has not changed since (T2 = T1).
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    live = service.event(event.id)
    assert live.title == "Kickoff (renamed)"
    assert live.location == "Room 4"
    assert sync_stats.modified == 1
    record = read_records(table)[0]
    assert record.registered_at > live.last_modified
    assert record.registered_at > record.edited_at


def test_event_change_newer_than_edit_suppresses_push(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, title="Local title")
    table.add(row)
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())
    service.edit_event(event.id, title="Remote title")

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert service.event(event.id).title == "Remote title"
    assert service.updates == []
    assert sync_stats.modified == 0


def test_unedited_row_is_not_pushed(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, title="Different locally")
    table.add(row)

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert service.updates == []
    assert service.event(event.id).title == "Kickoff"


def test_date_change_within_shape_updates_the_window(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, start="2025-03-11")
    table.add(row)
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    ((event_id, fields),) = service.updates
    assert event_id == event.id
    assert fields["window"].start == datetime(2025, 3, 11)
    assert "title" not in fields
    assert service.event(event.id).start == datetime(2025, 3, 11)


def test_shape_change_replaces_the_event(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, start="2025-03-10 09:00", end="2025-03-10 10:30")
    table.add(row)
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    record = read_records(table)[0]
    assert record.external_id != event.id
    assert service.deletes == [event.id]
    replacement = service.event(record.external_id)
    assert replacement.all_day is False
    assert replacement.start == datetime(2025, 3, 10, 9)
    assert replacement.end == datetime(2025, 3, 10, 10, 30)
    assert sync_stats.created == 1


def test_shape_change_keeps_the_link_when_the_old_event_cannot_be_deleted(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, start="2025-03-10 09:00")
    table.add(row)
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())
    service.fail("delete_event", ServiceError("backend error"))

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    (record,) = read_records(table)
    assert record.external_id == event.id
    assert service.creates == []
    assert service.event_count == 1
    assert sync_stats.errors == 1

    # The edit is still pending and goes through once the backend recovers.
    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    (record,) = read_records(table)
    assert service.deletes == [event.id]
    assert service.event_count == 1
    assert service.event(record.external_id).start == datetime(2025, 3, 10, 9)


def test_shape_change_leaves_an_untracked_row_when_the_replacement_fails(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock, start="2025-03-10 09:00")
    table.add(row)
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())
    service.fail("create_event", ServiceError("invalid event"))

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    (record,) = read_records(table)
    assert service.deletes == [event.id]
    assert record.external_id == ""
    assert not is_orphaned(record)
    assert sync_stats.errors == 1

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    (record,) = read_records(table)
    assert record.external_id == "evt-2"
    assert service.event_count == 1
    assert service.event("evt-2").all_day is False


def test_cleared_color_is_removed_from_the_event(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event = service.add_event(
        "Kickoff", datetime(2025, 3, 10), datetime(2025, 3, 11), all_day=True, color=3
    )
    table.add(
        agenda_row(
            "Kickoff",
            "2025-03-10",
            external_id=event.id,
            registered_at=event.last_modified,
            synced_at=event.last_modified,
            edited_at=clock(),
        )
    )

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert service.event(event.id).color is None
    ((_, fields),) = service.updates
    assert fields == {"color": NO_COLOR}


def test_edit_matching_the_event_is_stamped_without_an_update(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock)
    table.add(row)
    table.set_cell(2, table.header().index("Edited in Sheet"), clock().isoformat())

    assert _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert service.updates == []
    (record,) = read_records(table)
    assert record.registered_at > record.edited_at

    # Nothing is left pending for the next pass.
    assert not _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


def test_row_whose_event_vanished_is_relabeled_not_recreated(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    event, row = _tracked_row(service, clock)
    table.add(row)
    service.remove_event(event.id)

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    (record,) = read_records(table)
    assert record.title == "NOSYNC Kickoff"
    assert record.external_id == ""
    assert service.creates == []
    assert sync_stats.relabeled == 1

    # A later cycle still does not resurrect it.
    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)
    assert service.creates == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_rate_limited_create_is_retried_once(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    sync_config.retry_cooldown = 3.0
    service.fail("create_event", RateLimitError("quota exceeded"))
    table.add(agenda_row("Kickoff", "2025-03-10"))

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    assert sleeps.calls == [3.0]
    assert read_records(table)[0].external_id == "evt-1"
    assert sync_stats.errors == 0


def test_repeated_rate_limit_keeps_ids_already_created(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    service.fail_after(
        "create_event", 1, RateLimitError("quota"), RateLimitError("still over quota")
    )
    table.add(agenda_row("Kickoff", "2025-03-10"), agenda_row("Review", "2025-03-11"))

    with pytest.raises(RateLimitError):
        _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    kickoff, review = read_records(table)
    assert kickoff.external_id == "evt-1"
    assert kickoff.synced_at is not None
    assert review.external_id == ""
    assert table.overwrites == 1

    # The next pass only creates the row that was left behind.
    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)
    assert [d.title for d in service.creates] == ["Kickoff", "Review"]
    assert service.event_count == 2


def test_failed_row_does_not_stop_the_others(
    sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps
):
    service.fail("create_event", ServiceError("invalid event"))
    table.add(agenda_row("Broken", "2025-03-10"), agenda_row("Fine", "2025-03-11"))

    _push(sync_config, sync_stats, sync_logger, service, table, archive, clock, sleeps)

    broken, fine = read_records(table)
    assert broken.external_id == ""
    assert fine.external_id == "evt-1"
    assert sync_stats.errors == 1
    assert sync_stats.failures == ["Row 2: Broken: invalid event"]

"""
Push phase: agenda → calendar.

Creates events for untracked rows, applies user edits that are newer than
both the last sync and the event's own last change, and relabels rows
whose event has disappeared.
"""

import dataclasses
import time

from agenda_sync.dates import EventDraft
from agenda_sync.dates import EventWindow
from agenda_sync.dates import classify
from agenda_sync.dates import window_of
from agenda_sync.models import NO_COLOR
from agenda_sync.models import NO_SYNC_MARKER
from agenda_sync.models import ExternalEvent
from agenda_sync.models import Record
from agenda_sync.models import ServiceError
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.models import TransientServiceError
from agenda_sync.sync.archive import archived_ids
from agenda_sync.sync.utils import call_with_retry
from agenda_sync.sync.utils import has_pending_edit
from agenda_sync.sync.utils import load_schema
from agenda_sync.sync.utils import no_sync_title
from agenda_sync.sync.utils import utcnow


class CreateBudget:
    """Counts creations in one cycle and pauses after every batch."""

    def __init__(self, config: SyncConfig, logger, sleep=time.sleep):
        self.config = config
        self.logger = logger
        self.sleep = sleep
        self.count = 0

    def create(self, service, draft: EventDraft) -> str:
        if self.count and self.count % self.config.create_batch_size == 0:
            self.logger.info(
                f"Created {self.count} event(s); pausing {self.config.create_batch_cooldown:g}s"
            )
            self.sleep(self.config.create_batch_cooldown)
        event_id = call_with_retry(
            self.logger, self.config.retry_cooldown, self.sleep, service.create_event, draft
        )
        self.count += 1
        return event_id


def draft_of(record: Record, window: EventWindow) -> EventDraft:
    return EventDraft(
        title=record.title,
        window=window,
        description=record.description,
        location=record.location,
        color=record.color,
    )


def _create(config, stats, logger, service, budget, record: Record, clock):
    window = classify(record.start, record.end, config.default_duration)
    if config.dry_run:
        logger.info(f"[DRY RUN] Would CREATE ({window.shape.value}): {record.title}")
        stats.created += 1
        return

    record.external_id = budget.create(service, draft_of(record, window))
    now = clock()
    record.registered_at = now
    record.synced_at = now
    stats.created += 1
    logger.debug(f"Created event {record.external_id} for row {record.row_number}")


def _reconcile_fields(record: Record, event: ExternalEvent) -> dict:
    fields = {}
    if record.title != event.title:
        fields["title"] = record.title
    if record.description != event.description:
        fields["description"] = record.description
    if record.location != event.location:
        fields["location"] = record.location
    if record.color != event.color:
        fields["color"] = NO_COLOR if record.color is None else record.color
    return fields


def _recreate(
    config, stats, logger, service, budget, record: Record, event: ExternalEvent, window, clock
):
    if config.dry_run:
        logger.info(f"[DRY RUN] Would RECREATE {event.id} as {window.shape.value}: {record.title}")
        stats.created += 1
        return

    try:
        call_with_retry(logger, config.retry_cooldown, budget.sleep, service.delete_event, event.id)
    except TransientServiceError as e:
        logger.debug(f"Replaced event {event.id} already gone: {e}")

    # Until the replacement exists the row is a plain untracked row.
    record.external_id = ""
    record.registered_at = None
    record.synced_at = None
    _create(config, stats, logger, service, budget, record, clock)
    logger.debug(f"Recreated row {record.row_number} as {window.shape.value} ({record.external_id})")


def _update(config, stats, logger, service, budget, record: Record, event: ExternalEvent, clock):
    desired = classify(record.start, record.end, config.default_duration)
    current = window_of(event)

    if desired.shape is not current.shape:
        # Shapes cannot always be changed in place: replace the event.
        _recreate(config, stats, logger, service, budget, record, event, desired, clock)
        return

    fields = _reconcile_fields(record, event)
    if desired != current:
        fields["window"] = desired
    if not fields:
        if not config.dry_run:
            record.registered_at = clock()
        return

    if config.dry_run:
        logger.info(f"[DRY RUN] Would UPDATE {event.id} ({', '.join(sorted(fields))}): {record.title}")
        stats.modified += 1
        return
    call_with_retry(
        logger, config.retry_cooldown, budget.sleep, service.update_event, event.id, **fields
    )
    record.registered_at = clock()
    stats.modified += 1
    logger.debug(f"Updated event {event.id}: {', '.join(sorted(fields))}")


def _relabel_orphan(config, stats, logger, record: Record):
    if config.dry_run:
        logger.info(f"[DRY RUN] Would RELABEL row {record.row_number}: {record.title}")
        stats.relabeled += 1
        return
    logger.warning(
        f"Row {record.row_number} ({record.title}): event {record.external_id} no longer exists"
    )
    record.title = no_sync_title(record.title)
    record.external_id = ""
    stats.relabeled += 1


def _lookup(config, service, live, record: Record) -> ExternalEvent | None:
    event = live.get(record.external_id)
    if event is not None:
        return event
    if record.start is not None and config.window_start <= record.start < config.window_end:
        return None
    return service.get_event(record.external_id)


def run_push(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    service,
    table,
    archive,
    *,
    clock=utcnow,
    sleep=time.sleep,
) -> bool:
    """Publish agenda changes to the calendar.

    Returns True when any row was written back.
    """
    schema = load_schema(table)
    rows = [schema.pad(cells) for cells in table.rows()]
    records = [schema.decode(cells, offset + 2) for offset, cells in enumerate(rows)]
    retired = archived_ids(archive)
    live = {event.id: event for event in service.get_events(config.window_start, config.window_end)}
    budget = CreateBudget(config, logger, sleep)

    changed = False
    try:
        for record in records:
            if record.start is None or not record.title.strip():
                continue
            if record.external_id and record.external_id in retired:
                logger.debug(
                    f"Row {record.row_number} refers to archived event {record.external_id}"
                )
                continue
            if not record.external_id and record.title.startswith(NO_SYNC_MARKER):
                continue

            before = dataclasses.replace(record)
            try:
                if not record.external_id:
                    _create(config, stats, logger, service, budget, record, clock)
                else:
                    event = _lookup(config, service, live, record)
                    if event is None:
                        _relabel_orphan(config, stats, logger, record)
                    elif has_pending_edit(record, event):
                        _update(config, stats, logger, service, budget, record, event, clock)
            except ServiceError as e:
                if e.retryable:
                    raise
                logger.error(f"Failed to push row {record.row_number} ({record.title}): {e}")
                stats.errors += 1
                stats.failures.append(f"Row {record.row_number}: {record.title}: {e}")
            finally:
                if record != before:
                    rows[record.row_number - 2] = schema.encode(record, rows[record.row_number - 2])
                    changed = True
    finally:
        # Ids of events already created must reach the table even when the pass aborts.
        if changed and not config.dry_run:
            table.overwrite(2, rows)
    return changed

"""
Shared pytest fixtures and agenda-row helpers.
"""

import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from agenda_sync.dates import parse_cell_date
from agenda_sync.db import DrainLock
from agenda_sync.models import Record
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.schema import AGENDA_HEADER
from agenda_sync.schema import ARCHIVE_COLUMNS
from agenda_sync.schema import Schema
from tests.fake_service import FakeCalendarService
from tests.fake_table import FakeTable

CALENDAR_ID = "agenda-calendar-test"

AGENDA_SCHEMA = Schema.from_header(AGENDA_HEADER)
ARCHIVE_SCHEMA = Schema.from_header(ARCHIVE_COLUMNS)


class FakeClock:
    """Deterministic UTC clock; every reading is one second after the last."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def agenda_row(title: str = "", start=None, end=None, **fields) -> list:
    """Return agenda cells for a row; passthrough columns go in ``extra``."""
    record = Record(
        title=title,
        start=parse_cell_date(start),
        end=parse_cell_date(end),
        **fields,
    )
    return AGENDA_SCHEMA.encode(record)


def read_records(table) -> list[Record]:
    schema = Schema.from_header(table.header())
    return [schema.decode(cells, offset + 2) for offset, cells in enumerate(table.rows())]


def read_archive(archive) -> list[Record]:
    schema = Schema.from_header(archive.header())
    return [schema.decode(cells, offset + 2) for offset, cells in enumerate(archive.rows())]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return FakeCalendarService(clock)


@pytest.fixture
def table():
    return FakeTable(AGENDA_HEADER)


@pytest.fixture
def archive():
    return FakeTable(ARCHIVE_COLUMNS)


@pytest.fixture
def sync_config(tmp_path):
    return SyncConfig(
        calendar_id=CALENDAR_ID,
        workbook_path=tmp_path / "agenda.db",
        dry_run=False,
        verbose=False,
        create_batch_size=125,
        create_batch_cooldown=15.0,
        retry_cooldown=15.0,
        lock_timeout=0.2,
    )


@pytest.fixture
def lock(sync_config):
    return DrainLock(sync_config.lock_path, sync_config.lock_timeout)


@pytest.fixture
def sleeps():
    """A fake sleep that records the requested delays."""
    calls: list[float] = []

    def sleep(seconds: float):
        calls.append(seconds)

    sleep.calls = calls
    return sleep


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_stats():
    return SyncStats()

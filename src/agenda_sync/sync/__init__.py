"""
AgendaSynchronizer: thin orchestrator that wires the workbook and the
calendar into one sync cycle.
"""

import logging

from agenda_sync.db import DrainLock
from agenda_sync.db import WorkbookDatabase
from agenda_sync.models import AGENDA_SHEET
from agenda_sync.models import ARCHIVE_SHEET
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.sync.cycle import run_cycle


class AgendaSynchronizer:
    """Main synchronization engine."""

    def __init__(self, config: SyncConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.stats = SyncStats()

    def run(self) -> SyncStats:
        """Execute the synchronization process."""
        import gi

        gi.require_version("EDataServer", "1.2")
        from gi.repository import EDataServer

        from agenda_sync.eds_client import EDSCalendarService

        self.logger.info("Connecting to Evolution Data Server...")
        registry = EDataServer.SourceRegistry.new_sync(None)
        service = EDSCalendarService(registry, self.config.calendar_id)
        service.connect()

        with WorkbookDatabase(self.config.workbook_path, self.config.lock_timeout) as db:
            table = db.sheet(AGENDA_SHEET)
            archive = db.sheet(ARCHIVE_SHEET)
            lock = DrainLock(self.config.lock_path, self.config.lock_timeout)
            run_cycle(self.config, self.stats, self.logger, service, table, archive, lock)

        return self.stats

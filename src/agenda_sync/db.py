"""
SQLite workbook: the agenda and archive sheets, plus the drain lock.
"""

import json
import logging
import sqlite3
from pathlib import Path

from agenda_sync.models import AGENDA_SHEET
from agenda_sync.models import ARCHIVE_SHEET
from agenda_sync.models import AgendaSyncError
from agenda_sync.models import LockTimeoutError
from agenda_sync.models import NotFoundError
from agenda_sync.schema import AGENDA_HEADER
from agenda_sync.schema import ARCHIVE_COLUMNS

logger = logging.getLogger(__name__)

DEFAULT_SHEETS = {
    AGENDA_SHEET: AGENDA_HEADER,
    ARCHIVE_SHEET: ARCHIVE_COLUMNS,
}


class WorkbookDatabase:
    """Manages the SQLite file that stores the sheets."""

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the workbook, creating the default sheets when it is empty."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS sheets (
                name TEXT PRIMARY KEY,
                header TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS sheet_rows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sheet TEXT NOT NULL,
                row_number INTEGER NOT NULL,
                cells TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sheet_rows_position
                ON sheet_rows (sheet, row_number);
        """)
        existing = {row["name"] for row in self.conn.execute("SELECT name FROM sheets")}
        if not existing:
            logger.info("Initialising empty workbook %s", self.db_path)
            for name, header in DEFAULT_SHEETS.items():
                self.conn.execute(
                    "INSERT INTO sheets (name, header) VALUES (?, ?)",
                    (name, json.dumps(header)),
                )
        self.conn.commit()

    def sheet_names(self) -> list[str]:
        return [row["name"] for row in self.conn.execute("SELECT name FROM sheets ORDER BY name")]

    def sheet(self, name: str) -> "SheetTable":
        """Return the named sheet, raising NotFoundError when it is absent."""
        if not self.conn:
            raise AgendaSyncError("Workbook not connected")
        row = self.conn.execute("SELECT name FROM sheets WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise NotFoundError(f"Sheet '{name}' not found in {self.db_path}")
        return SheetTable(self.conn, name)

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


class SheetTable:
    """One sheet: a header row (row 1) and data rows numbered from 2.

    Every write commits immediately so that other processes see it.
    """

    def __init__(self, conn: sqlite3.Connection, name: str):
        self.conn = conn
        self.name = name

    def header(self) -> list[str]:
        row = self.conn.execute("SELECT header FROM sheets WHERE name = ?", (self.name,)).fetchone()
        if row is None:
            raise NotFoundError(f"Sheet '{self.name}' not found")
        return json.loads(row["header"])

    def rows(self) -> list[list]:
        cursor = self.conn.execute(
            "SELECT cells FROM sheet_rows WHERE sheet = ? ORDER BY row_number",
            (self.name,),
        )
        return [json.loads(row["cells"]) for row in cursor.fetchall()]

    def last_row(self) -> int:
        row = self.conn.execute(
            "SELECT MAX(row_number) AS last FROM sheet_rows WHERE sheet = ?", (self.name,)
        ).fetchone()
        return row["last"] or 1

    def overwrite(self, first_row: int, rows: list[list]):
        """Overwrite a rectangular block starting at first_row."""
        if first_row < 2:
            raise ValueError("data rows start at row 2")
        last = self.last_row()
        for offset, cells in enumerate(rows):
            row_number = first_row + offset
            payload = json.dumps(cells)
            if row_number <= last:
                self.conn.execute(
                    "UPDATE sheet_rows SET cells = ? WHERE sheet = ? AND row_number = ?",
                    (payload, self.name, row_number),
                )
            else:
                self.conn.execute(
                    "INSERT INTO sheet_rows (sheet, row_number, cells) VALUES (?, ?, ?)",
                    (self.name, row_number, payload),
                )
        self.conn.commit()

    def append(self, rows: list[list]):
        """Append rows after the last data row."""
        if not rows:
            return
        next_row = self.last_row() + 1
        self.conn.executemany(
            "INSERT INTO sheet_rows (sheet, row_number, cells) VALUES (?, ?, ?)",
            [(self.name, next_row + i, json.dumps(cells)) for i, cells in enumerate(rows)],
        )
        self.conn.commit()

    def delete_rows(self, start: int, count: int):
        """Delete count rows starting at start; later rows shift up."""
        if start < 2 or count < 1:
            raise ValueError(f"invalid row range: start={start} count={count}")
        self.conn.execute(
            "DELETE FROM sheet_rows WHERE sheet = ? AND row_number BETWEEN ? AND ?",
            (self.name, start, start + count - 1),
        )
        self.conn.execute(
            "UPDATE sheet_rows SET row_number = row_number - ? WHERE sheet = ? AND row_number >= ?",
            (count, self.name, start + count),
        )
        self.conn.commit()

    def set_cell(self, row_number: int, column: int, value):
        """Write one cell (column is a 0-based header index)."""
        row = self.conn.execute(
            "SELECT cells FROM sheet_rows WHERE sheet = ? AND row_number = ?",
            (self.name, row_number),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Row {row_number} not found in sheet '{self.name}'")
        cells = json.loads(row["cells"])
        if column >= len(cells):
            cells.extend([""] * (column + 1 - len(cells)))
        cells[column] = value
        self.conn.execute(
            "UPDATE sheet_rows SET cells = ? WHERE sheet = ? AND row_number = ?",
            (json.dumps(cells), self.name, row_number),
        )
        self.conn.commit()


class DrainLock:
    """Cross-process mutual exclusion for the archive drain.

    Holds an exclusive SQLite transaction on a dedicated lock file; the
    connection's busy timeout is the bounded wait.
    """

    def __init__(self, path: Path, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def acquire(self):
        if self.conn is not None:
            raise LockTimeoutError(f"Archive lock {self.path} is already held by this process")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        try:
            conn.execute("BEGIN EXCLUSIVE")
        except sqlite3.OperationalError as e:
            conn.close()
            raise LockTimeoutError(
                f"Could not acquire archive lock {self.path} within {self.timeout:g}s"
            ) from e
        self.conn = conn
        logger.debug("Acquired archive lock %s", self.path)

    def release(self):
        if self.conn:
            self.conn.execute("ROLLBACK")
            self.conn.close()
            self.conn = None
            logger.debug("Released archive lock %s", self.path)

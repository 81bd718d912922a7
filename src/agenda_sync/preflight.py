"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import json
import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from agenda_sync.models import AGENDA_SHEET
from agenda_sync.models import ARCHIVE_SHEET
from agenda_sync.models import SchemaError
from agenda_sync.models import SyncConfig
from agenda_sync.schema import Schema

logger = logging.getLogger(__name__)

_OFFLINE_KEYWORDS = frozenset(
    {
        "offline",
        "network",
        "transport",
        "unreachable",
        "not connected",
        "no route",
        "authentication failed",
        "connection refused",
        "temporary failure",
    }
)

Issue = tuple[str, str, str]  # (label, detail, hint)


def run_preflight_checks(cfg: SyncConfig, console: Console) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    issues: list[Issue] = []

    # 1. EDS registry reachable
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error("EDS registry unreachable: %s", e)
        issues.append(("EDS registry", str(e), "Is evolution-data-server running?"))
        _print_issues(issues, console)
        return False

    # 2 & 3. Calendar UID exists + connectable
    source = registry.ref_source(cfg.calendar_id)
    if source is None:
        logger.error("Calendar UID not found in EDS: %s", cfg.calendar_id)
        issues.append(
            (
                "Calendar",
                f"UID not found: {cfg.calendar_id}",
                "Run: agenda-sync calendars",
            )
        )
    else:
        try:
            ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
        except GLib.Error as e:
            msg = e.message or str(e)
            logger.error("Cannot connect to calendar (%s): %s", cfg.calendar_id, msg)
            if any(kw in msg.lower() for kw in _OFFLINE_KEYWORDS):
                account_name = _get_parent_display_name(registry, source)
                if account_name:
                    hint = f"Account '{account_name}' appears offline: check GNOME Online Accounts"
                else:
                    hint = "Calendar appears offline: check GNOME Online Accounts"
            else:
                hint = msg
            issues.append(("Calendar", f"Connection failed: {msg}", hint))

    # 4. Workbook writable and its sheets usable
    issues.extend(check_workbook(cfg.workbook_path))

    if issues:
        _print_issues(issues, console)
        return False

    return True


def check_workbook(db_path: Path) -> list[Issue]:
    """Check that the workbook directory and file are writable and its headers resolve."""
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create workbook directory %s: %s", db_path.parent, e)
        return [("Workbook", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")]

    if not db_path.exists():
        return []

    issues: list[Issue] = []
    try:
        conn = sqlite3.connect(db_path)
        try:
            # BEGIN IMMEDIATE needs a journal file next to the DB, so it
            # catches read-only parent directories.
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("ROLLBACK")
            headers = dict(conn.execute("SELECT name, header FROM sheets").fetchall())
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error("Workbook not readable/writable (%s): %s", db_path, e)
        return [
            (
                "Workbook",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent} "
                f"(journal files must be creatable alongside the DB)",
            )
        ]

    for sheet, required in ((AGENDA_SHEET, None), (ARCHIVE_SHEET, ("external_id",))):
        if sheet not in headers:
            issues.append((f"Sheet '{sheet}'", "missing from the workbook", f"Recreate {db_path}"))
            continue
        try:
            header = json.loads(headers[sheet])
            if required is None:
                Schema.from_header(header)
            else:
                Schema.from_header(header, required=required)
        except SchemaError as e:
            issues.append((f"Sheet '{sheet}'", str(e), "Restore the missing header(s)"))
    return issues


def _get_parent_display_name(registry, source) -> str:
    """Return the display name of the source's parent account, or empty string."""
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


def _print_issues(issues: list[Issue], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))

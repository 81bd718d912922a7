"""
Command-line interface for Agenda Sync.
"""

import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agenda_sync.dates import format_cell_date
from agenda_sync.dates import parse_cell_date
from agenda_sync.db import DrainLock
from agenda_sync.db import WorkbookDatabase
from agenda_sync.editing import add_record
from agenda_sync.editing import request_archive
from agenda_sync.editing import set_field
from agenda_sync.models import AGENDA_SHEET
from agenda_sync.models import ARCHIVE_SHEET
from agenda_sync.models import DEFAULT_CONFIG
from agenda_sync.models import DEFAULT_WORKBOOK
from agenda_sync.models import NO_SYNC_MARKER
from agenda_sync.models import AgendaSyncError
from agenda_sync.models import SyncConfig
from agenda_sync.models import SyncStats
from agenda_sync.models import ValidationError
from agenda_sync.sync.archive import archive_range as _archive_range
from agenda_sync.sync.archive import drain_archive
from agenda_sync.sync.utils import load_schema
from agenda_sync.sync.validate import find_date_issues

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Two-way sync between an agenda workbook and an EDS calendar.",
)

console = Console()

_CONFIG_SECTION = "agenda-sync"


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    workbook: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    workbook: Annotated[
        Path | None,
        typer.Option("--workbook", help=f"Workbook path (default: {DEFAULT_WORKBOOK})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.workbook = workbook
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if _CONFIG_SECTION not in parser:
        return {}
    return dict(parser[_CONFIG_SECTION])


def _positive_int(raw: str) -> int | None:
    value = int(raw)
    return value if value >= 1 else None


def _config_value(config_file: dict[str, str], key: str, convert, default):
    raw = config_file.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = convert(raw.strip())
    except ValueError:
        value = None
    if value is None:
        console.print(f"[bold red]Error:[/] Invalid value for [cyan]{key}[/] in config: {raw!r}")
        raise typer.Exit(1)
    return value


def _build_config(
    calendar: str | None,
    dry_run: bool = False,
    yes: bool = False,
    require_calendar: bool = True,
) -> SyncConfig:
    config_file = _load_config_file(state.config_path)
    calendar_id = calendar or config_file.get("calendar_id")

    if require_calendar and not calendar_id:
        console.print(
            "[bold red]Error:[/] A calendar ID must be provided via "
            "[cyan]--calendar[/] or as [cyan]calendar_id[/] in the config file."
        )
        raise typer.Exit(1)

    workbook = state.workbook or _config_value(
        config_file, "workbook", lambda v: Path(v).expanduser(), DEFAULT_WORKBOOK
    )
    defaults = SyncConfig(calendar_id="", workbook_path=workbook)

    return SyncConfig(
        calendar_id=calendar_id or "",
        workbook_path=workbook,
        dry_run=dry_run,
        verbose=state.verbose,
        yes=yes,
        window_start=_config_value(
            config_file, "window_start", parse_cell_date, defaults.window_start
        ),
        window_end=_config_value(config_file, "window_end", parse_cell_date, defaults.window_end),
        default_duration=_config_value(
            config_file,
            "default_duration_minutes",
            lambda v: timedelta(minutes=int(v)),
            defaults.default_duration,
        ),
        create_batch_size=_config_value(
            config_file, "create_batch_size", _positive_int, defaults.create_batch_size
        ),
        create_batch_cooldown=_config_value(
            config_file, "create_batch_cooldown", float, defaults.create_batch_cooldown
        ),
        retry_cooldown=_config_value(
            config_file, "retry_cooldown", float, defaults.retry_cooldown
        ),
        lock_timeout=_config_value(config_file, "lock_timeout", float, defaults.lock_timeout),
        group_column=config_file.get("group_column") or defaults.group_column,
    )


def _print_validation_error(error: ValidationError) -> None:
    body = Text()
    body.append(
        "Every End must be equal to or later than its Start.\n\n", style="bold"
    )
    for issue in error.issues:
        body.append(f"  ✗  {issue.describe()}\n", style="red")
    body.append("\nFix these rows and run again.", style="yellow")
    console.print(Panel(body, title="[bold red]Invalid dates found[/bold red]"))


def _fail(error: AgendaSyncError) -> typer.Exit:
    if isinstance(error, ValidationError):
        _print_validation_error(error)
    else:
        console.print(f"[bold red]Failed:[/] {error}")
    return typer.Exit(1)


def _print_results(stats: SyncStats) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Imported", str(stats.imported))
    results.add_row("Refreshed", str(stats.refreshed))
    results.add_row("Removed", str(stats.removed))
    results.add_row("Created", str(stats.created))
    results.add_row("Modified", str(stats.modified))
    results.add_row("Relabeled", str(stats.relabeled))
    results.add_row("Archived", str(stats.archived))
    results.add_row("Retired", str(stats.retired))
    error_val = Text(str(stats.errors))
    if stats.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    for failure in stats.failures:
        console.print(f"  [red]✗[/] {failure}")


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_CALENDAR_OPT = Annotated[
    str | None,
    typer.Option("--calendar", "-C", help="Calendar EDS UID (overrides config)"),
]
_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    calendar: _CALENDAR_OPT = None,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Run one full sync cycle between the agenda and the calendar."""
    from agenda_sync.eds_client import get_calendar_display_info
    from agenda_sync.preflight import run_preflight_checks
    from agenda_sync.sync import AgendaSynchronizer

    cfg = _build_config(calendar, dry_run=dry_run, yes=yes)

    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    cal_name, cal_account, cal_uid = get_calendar_display_info(cfg.calendar_id)
    cal_display = cal_name + (f" ({cal_account})" if cal_account else "")

    info = Text()
    info.append("  Calendar:  ", style="bold")
    info.append(f"{cal_display}\n")
    info.append(f"             {cal_uid}\n", style="dim")
    info.append("  Workbook:  ", style="bold")
    info.append(f"{cfg.workbook_path}\n")
    info.append("  Window:    ", style="bold")
    info.append(f"{format_cell_date(cfg.window_start)} → {format_cell_date(cfg.window_end)}")
    if cfg.dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")

    console.print(Panel(info, title="[bold]Agenda Sync[/bold]"))

    if not cfg.yes and not cfg.dry_run:
        typer.confirm("Proceed?", abort=True)

    try:
        stats = AgendaSynchronizer(cfg).run()
    except AgendaSyncError as e:
        raise _fail(e) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    _print_results(stats)

    if stats.errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: validate
# ---------------------------------------------------------------------------


@app.command()
def validate() -> None:
    """Check every agenda row for an End before its Start."""
    cfg = _build_config(None, require_calendar=False)
    try:
        with WorkbookDatabase(cfg.workbook_path, cfg.lock_timeout) as db:
            issues = find_date_issues(db.sheet(AGENDA_SHEET))
    except AgendaSyncError as e:
        raise _fail(e) from None

    if issues:
        raise _fail(ValidationError(issues))
    console.print("[green]✓[/] All agenda dates are valid.")


# ---------------------------------------------------------------------------
# Subcommands: archive / archive-range
# ---------------------------------------------------------------------------


@app.command()
def archive(
    rows: Annotated[
        list[int] | None,
        typer.Argument(help="Rows to flag before draining (default: drain flagged rows only)"),
    ] = None,
    dry_run: _DRY_RUN = False,
) -> None:
    """Move flagged agenda rows into the Archive sheet.

    Their calendar events are removed on the next [cyan]sync[/].
    """
    cfg = _build_config(None, dry_run=dry_run, require_calendar=False)
    stats = SyncStats()
    logger = logging.getLogger(__name__)
    try:
        with WorkbookDatabase(cfg.workbook_path, cfg.lock_timeout) as db:
            table = db.sheet(AGENDA_SHEET)
            if not dry_run:
                for row_number in rows or []:
                    request_archive(table, row_number)
            drain_archive(
                cfg,
                stats,
                logger,
                table,
                db.sheet(ARCHIVE_SHEET),
                DrainLock(cfg.lock_path, cfg.lock_timeout),
            )
    except AgendaSyncError as e:
        raise _fail(e) from None

    if not dry_run:
        console.print(f"Archived [bold]{stats.archived}[/bold] row(s).")


@app.command("archive-range")
def archive_range(
    start: Annotated[str, typer.Argument(help="First day (dd/mm/yyyy or YYYY-MM-DD)")],
    end: Annotated[str, typer.Argument(help="Last day, inclusive")],
    day_markers: Annotated[
        bool,
        typer.Option("--day-markers", help="Only rows whose title starts with '- '"),
    ] = False,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Archive every agenda row whose Start falls between START and END."""
    first = parse_cell_date(start)
    last = parse_cell_date(end)
    if first is None or last is None:
        console.print("[bold red]Error:[/] Invalid date.")
        raise typer.Exit(1)
    if last < first:
        console.print("[bold red]Error:[/] The end date must not precede the start date.")
        raise typer.Exit(1)

    if not yes and not dry_run:
        what = "day-marker rows" if day_markers else "rows"
        typer.confirm(
            f"Archive all {what} from {format_cell_date(first)} to {format_cell_date(last)}?",
            abort=True,
        )

    cfg = _build_config(None, dry_run=dry_run, require_calendar=False)
    stats = SyncStats()
    try:
        with WorkbookDatabase(cfg.workbook_path, cfg.lock_timeout) as db:
            _archive_range(
                cfg,
                stats,
                logging.getLogger(__name__),
                db.sheet(AGENDA_SHEET),
                db.sheet(ARCHIVE_SHEET),
                DrainLock(cfg.lock_path, cfg.lock_timeout),
                first.date(),
                last.date(),
                day_markers_only=day_markers,
            )
    except AgendaSyncError as e:
        raise _fail(e) from None

    if not dry_run:
        if stats.archived:
            console.print(f"Moved [bold]{stats.archived}[/bold] row(s) to the Archive sheet.")
        else:
            console.print("[yellow]No rows found in this range.[/]")


# ---------------------------------------------------------------------------
# Subcommands: add / edit / show
# ---------------------------------------------------------------------------


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Event title")],
    start: Annotated[str, typer.Argument(help="Start (date for all-day, date and time for timed)")],
    end: Annotated[str | None, typer.Argument(help="End (inclusive last day for all-day)")] = None,
    description: Annotated[str, typer.Option("--description", "-d")] = "",
    location: Annotated[str, typer.Option("--location", "-l")] = "",
    project: Annotated[str, typer.Option("--project", "-p")] = "",
    color: Annotated[int | None, typer.Option("--color", min=1, max=11)] = None,
) -> None:
    """Append a new agenda row; the next [cyan]sync[/] creates its event."""
    cfg = _build_config(None, require_calendar=False)
    extra = {"description": description, "location": location}
    if project:
        extra["Project"] = project
    if color is not None:
        extra["color"] = color
    try:
        with WorkbookDatabase(cfg.workbook_path, cfg.lock_timeout) as db:
            row_number = add_record(db.sheet(AGENDA_SHEET), title, start, end, **extra)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    except AgendaSyncError as e:
        raise _fail(e) from None
    console.print(f"Added row [bold]{row_number}[/bold]: {title}")


@app.command()
def edit(
    row: Annotated[int, typer.Argument(help="Row number (data starts at 2)")],
    column: Annotated[str, typer.Argument(help="Column header or field name")],
    value: Annotated[str, typer.Argument(help="New value ('' to clear)")],
) -> None:
    """Edit one cell; tracked fields are stamped for the next push."""
    cfg = _build_config(None, require_calendar=False)
    try:
        with WorkbookDatabase(cfg.workbook_path, cfg.lock_timeout) as db:
            set_field(db.sheet(AGENDA_SHEET), row, column, value)
    except (KeyError, ValueError) as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    except AgendaSyncError as e:
        raise _fail(e) from None
    console.print(f"Row [bold]{row}[/bold]: {column} updated.")


def _status_of(record) -> Text:
    if record.archive:
        return Text("archive", style="magenta")
    if record.title.startswith(NO_SYNC_MARKER):
        return Text("no sync", style="bold red")
    if record.external_id:
        if record.edited_at and (
            record.registered_at is None or record.edited_at > record.registered_at
        ):
            return Text("edited", style="yellow")
        return Text("linked", style="green")
    return Text("new", style="cyan")


@app.command()
def show(
    archived: Annotated[
        bool, typer.Option("--archived", help="Show the Archive sheet instead")
    ] = False,
) -> None:
    """Show the agenda rows."""
    cfg = _build_config(None, require_calendar=False)
    sheet_name = ARCHIVE_SHEET if archived else AGENDA_SHEET
    try:
        with WorkbookDatabase(cfg.workbook_path, cfg.lock_timeout) as db:
            table = db.sheet(sheet_name)
            schema = load_schema(table) if not archived else None
            rows = table.rows()
            header = table.header()
    except AgendaSyncError as e:
        raise _fail(e) from None

    if not rows:
        console.print(f"[yellow]The {sheet_name} sheet is empty.[/]")
        return

    view = Table(show_header=True, header_style="bold cyan", title=sheet_name)
    if schema is None:
        for name in header:
            view.add_column(name, overflow="fold")
        for cells in rows:
            view.add_row(*("" if c is None else str(c) for c in cells))
        console.print(view)
        return

    view.add_column("Row", justify="right", style="bold")
    view.add_column("Start")
    view.add_column("End")
    view.add_column("Title")
    view.add_column(cfg.group_column)
    view.add_column("Status")
    for offset, cells in enumerate(rows):
        record = schema.decode(cells, offset + 2)
        view.add_row(
            str(record.row_number),
            format_cell_date(record.start),
            format_cell_date(record.end),
            record.title,
            str(record.extra.get(cfg.group_column) or ""),
            _status_of(record),
        )
    console.print(view)


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List all configured EDS calendars."""
    import gi

    gi.require_version("EDataServer", "1.2")
    from gi.repository import EDataServer

    from agenda_sync.eds_client import list_calendars as _list_calendars

    registry = EDataServer.SourceRegistry.new_sync(None)
    _list_calendars(registry, console)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()

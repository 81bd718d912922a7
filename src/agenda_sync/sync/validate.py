"""
Pre-sync checks and row preparation.
"""

from agenda_sync.dates import parse_cell_date
from agenda_sync.models import ValidationError
from agenda_sync.models import ValidationIssue
from agenda_sync.schema import FIELD_HEADERS
from agenda_sync.sync.utils import load_schema

# Cleared when a row loses its title: the record is unlinked.
_LINK_FIELDS = ("external_id", "registered_at", "synced_at", "edited_at")


def find_date_issues(table) -> list[ValidationIssue]:
    """List every row whose end date is before its start date."""
    schema = load_schema(table)
    i_title = schema.columns["title"]
    i_start = schema.columns["start"]
    i_end = schema.columns["end"]

    issues = []
    for offset, cells in enumerate(table.rows()):
        cells = schema.pad(cells)
        start = parse_cell_date(cells[i_start])
        end = parse_cell_date(cells[i_end])
        if start is not None and end is not None and end < start:
            title = "" if cells[i_title] is None else str(cells[i_title])
            issues.append(ValidationIssue(offset + 2, title, start, end))
    return issues


def validate_agenda(table):
    """Raise ValidationError listing every offending row, if any."""
    issues = find_date_issues(table)
    if issues:
        raise ValidationError(issues)


def clear_untitled_rows(config, logger, table) -> int:
    """Unlink rows whose title was blanked; returns how many changed."""
    schema = load_schema(table)
    i_title = schema.columns["title"]
    rows = [schema.pad(cells) for cells in table.rows()]

    changed = 0
    for cells in rows:
        if str(cells[i_title] or "").strip():
            continue
        if not any(cells[schema.columns[f]] for f in _LINK_FIELDS):
            continue
        for f in _LINK_FIELDS:
            cells[schema.columns[f]] = ""
        changed += 1

    if changed:
        logger.info(f"Unlinking {changed} row(s) without a {FIELD_HEADERS['title']}")
        if not config.dry_run:
            table.overwrite(2, rows)
    return changed

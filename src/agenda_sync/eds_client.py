"""
Evolution Data Server calendar connectivity wrapper.

Every GLib.Error leaving EDS is classified here, once, into the
``AgendaSyncError`` taxonomy; nothing above this layer matches on messages.
"""

import logging
from datetime import datetime
from datetime import timezone

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
gi.require_version("GLib", "2.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib
from rich.console import Console
from rich.table import Table
from rich.text import Text

from agenda_sync.dates import EventDraft
from agenda_sync.dates import EventWindow
from agenda_sync.ical import apply_changes
from agenda_sync.ical import component_to_event
from agenda_sync.ical import draft_to_component
from agenda_sync.ical import is_recurrence_exception
from agenda_sync.ical import parse_component
from agenda_sync.models import AgendaSyncError
from agenda_sync.models import ExternalEvent
from agenda_sync.models import NotFoundError
from agenda_sync.models import RateLimitError
from agenda_sync.models import ServiceError
from agenda_sync.models import TransientServiceError
from agenda_sync.sync.utils import utcnow

_logger = logging.getLogger(__name__)

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CAL_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# E_CLIENT_ERROR_BUSY = 1  (from e-client-error-quark)
_EDS_BUSY_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-client-error-quark"

# The M365 backend (e-m365-error-quark) embeds the Exchange EWS error name in the
# message string rather than mapping it to a fixed quark code.
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"

# Backends without a dedicated code report quota failures only in the message.
_RATE_LIMIT_KEYWORDS = frozenset(
    {
        "rate limit",
        "quota",
        "too many",
        "throttl",
        "errorserverbusy",
        "try again",
        "temporar",
    }
)


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CAL_CLIENT_ERROR_DOMAIN in domain:
            return True
        if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
            return True
    return "object not found" in str(e).lower()


def is_rate_limit_error(e: Exception) -> bool:
    """Return True when the backend rejected the call as over quota."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_BUSY_CODE and _EDS_CLIENT_ERROR_DOMAIN == domain:
            return True
    message = str(e).lower()
    return any(keyword in message for keyword in _RATE_LIMIT_KEYWORDS)


def classify_service_error(e: Exception, action: str) -> AgendaSyncError:
    """Map a backend failure onto the sync error taxonomy."""
    message = getattr(e, "message", None) or str(e)
    if is_not_found_error(e):
        return TransientServiceError(f"{action}: object not found ({message})")
    if is_rate_limit_error(e):
        return RateLimitError(f"{action}: {message}")
    return ServiceError(f"{action}: {message}")


def get_calendar_display_info(calendar_uid: str) -> tuple[str, str, str]:
    """
    Get human-readable information about a calendar.

    Returns:
        Tuple of (display_name, account_name, uid)
    """
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
        source = registry.ref_source(calendar_uid)

        if not source:
            return ("Unknown Calendar", "", calendar_uid)

        display_name = source.get_display_name() or "Unnamed Calendar"

        account_name = ""
        parent_uid = source.get_parent()
        if parent_uid:
            parent_source = registry.ref_source(parent_uid)
            if parent_source:
                account_name = parent_source.get_display_name() or ""

        return (display_name, account_name, calendar_uid)
    except GLib.Error as e:
        return (f"Error: {e.message}", "", calendar_uid)


def list_calendars(registry, console: Console) -> None:
    """Render all configured EDS calendars as a Rich table."""
    sources = registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name", style="bold")
    table.add_column("Account")
    table.add_column("Mode")
    table.add_column("UID", style="dim")

    for source in sources:
        name = source.get_display_name() or "(unnamed)"
        uid = source.get_uid() or ""
        parent = source.get_parent()
        account = ""
        if parent:
            parent_source = registry.ref_source(parent)
            if parent_source:
                account = parent_source.get_display_name() or ""
        try:
            client = ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
            mode = "Read-write" if not client.is_readonly() else "Read-only"
            mode_style = "green" if not client.is_readonly() else "yellow"
        except GLib.Error:
            mode = "Unknown"
            mode_style = "red"

        table.add_row(name, account, Text(mode, style=mode_style), uid)

    console.print(table)


def _time_range_query(start: datetime, end: datetime) -> str:
    """EDS s-expression matching events that occur within [start, end)."""
    fmt = "%Y%m%dT%H%M%SZ"
    start_utc = start.astimezone(timezone.utc).strftime(fmt)
    end_utc = end.astimezone(timezone.utc).strftime(fmt)
    return f'(occur-in-time-range? (make-time "{start_utc}") (make-time "{end_utc}"))'


class EDSCalendarService:
    """One EDS calendar, seen as a set of agenda events."""

    def __init__(self, registry: EDataServer.SourceRegistry, calendar_uid: str, clock=utcnow):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.clock = clock
        self.client: ECal.Client | None = None

    def connect(self, timeout: int = 10):
        """Connect to the specified calendar in EDS."""
        source = self.registry.ref_source(self.calendar_uid)
        if not source:
            raise NotFoundError(f"Calendar with UID '{self.calendar_uid}' not found in EDS")

        try:
            self.client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, timeout, None
            )
        except GLib.Error as e:
            raise classify_service_error(
                e, f"Failed to connect to calendar {self.calendar_uid}"
            ) from e

    def _require_client(self) -> ECal.Client:
        if not self.client:
            raise AgendaSyncError("Client not connected")
        return self.client

    def _fetch_component(self, uid: str) -> ICalGLib.Component | None:
        client = self._require_client()
        try:
            success, icalcomp = client.get_object_sync(uid, None, None)
        except GLib.Error as e:
            if is_not_found_error(e):
                return None
            raise classify_service_error(e, f"Failed to fetch event {uid}") from e
        if not success or not icalcomp:
            return None
        return parse_component(icalcomp)

    def get_events(self, start: datetime, end: datetime) -> list[ExternalEvent]:
        """Return every event occurring within [start, end)."""
        client = self._require_client()
        try:
            _, objects = client.get_object_list_sync(_time_range_query(start, end), None)
        except GLib.Error as e:
            raise classify_service_error(e, "Failed to fetch events") from e

        events = []
        for obj in objects:
            comp = parse_component(obj)
            if comp is None or is_recurrence_exception(comp):
                continue
            events.append(component_to_event(comp))
        _logger.debug("Fetched %d event(s) from %s", len(events), self.calendar_uid)
        return events

    def get_event(self, event_id: str) -> ExternalEvent | None:
        comp = self._fetch_component(event_id)
        return component_to_event(comp) if comp is not None else None

    def create_event(self, draft: EventDraft) -> str:
        """Create an event and return the id the server assigned."""
        client = self._require_client()
        comp = draft_to_component(draft, self.clock())
        try:
            success, out_uid = client.create_object_sync(comp, ECal.OperationFlags.NONE, None)
        except GLib.Error as e:
            raise classify_service_error(e, f"Failed to create event '{draft.title}'") from e
        if not success:
            raise ServiceError(f"Failed to create event '{draft.title}'")
        return out_uid or comp.get_uid()

    def update_event(
        self,
        event_id: str,
        window: EventWindow | None = None,
        title: str | None = None,
        description: str | None = None,
        location: str | None = None,
        color: int | None = None,
    ):
        """Change the given fields of an existing event."""
        client = self._require_client()
        comp = self._fetch_component(event_id)
        if comp is None:
            raise TransientServiceError(f"Failed to update event {event_id}: object not found")
        apply_changes(
            comp,
            self.clock(),
            window=window,
            title=title,
            description=description,
            location=location,
            color=color,
        )
        try:
            success = client.modify_object_sync(
                comp, ECal.ObjModType.THIS, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise classify_service_error(e, f"Failed to update event {event_id}") from e
        if not success:
            raise ServiceError(f"Failed to update event {event_id}")

    def delete_event(self, event_id: str):
        """Remove an event; an already-missing event raises TransientServiceError."""
        client = self._require_client()
        try:
            success = client.remove_object_sync(
                event_id,
                None,  # rid (recurrence-id)
                ECal.ObjModType.ALL,
                ECal.OperationFlags.NONE,
                None,  # cancellable
            )
        except GLib.Error as e:
            raise classify_service_error(e, f"Failed to remove event {event_id}") from e
        if not success:
            raise ServiceError(f"Failed to remove event {event_id}")

"""
Conversion between iCalendar VEVENTs and agenda events.

All-day events use ``VALUE=DATE`` boundaries with an exclusive DTEND; timed
events are written in UTC and read back as naive local time.  Colors travel
as the RFC 7986 ``COLOR`` property, named after the 11-entry palette.
"""

import re
import uuid
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import gi

gi.require_version("ICalGLib", "3.0")
from gi.repository import ICalGLib

from agenda_sync.dates import EventDraft
from agenda_sync.dates import EventWindow
from agenda_sync.models import EPOCH
from agenda_sync.models import ExternalEvent

# Palette index (1–11) → CSS3 color name used in COLOR.
COLOR_NAMES = {
    1: "lavender",
    2: "darkseagreen",
    3: "mediumpurple",
    4: "lightcoral",
    5: "khaki",
    6: "darkorange",
    7: "darkturquoise",
    8: "gray",
    9: "royalblue",
    10: "seagreen",
    11: "tomato",
}
COLOR_IDS = {name: color for color, name in COLOR_NAMES.items()}

# Evolution prefixes its builtin zones with the libical tzid namespace.
_TZID_PREFIX_RE = re.compile(r"^/[^/]+/[^/]+/")

_MAILTO_RE = re.compile(r"^mailto:", re.IGNORECASE)


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS, unwrapping VCALENDAR."""
    comp = ICalGLib.Component.new_from_string(obj) if isinstance(obj, str) else obj
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        return comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    return comp


def is_recurrence_exception(comp: ICalGLib.Component) -> bool:
    """Exception VEVENTs share the master's UID and are not agenda rows."""
    return comp.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY) is not None


# ---------------------------------------------------------------------------
# Time conversion
# ---------------------------------------------------------------------------


def _utc_stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def window_times(window: EventWindow) -> tuple[str, str]:
    """Return the DTSTART/DTEND values for a window."""
    if window.shape.all_day:
        return window.start.strftime("%Y%m%d"), window.end.strftime("%Y%m%d")
    # Naive agenda times are local wall-clock times.
    return _utc_stamp(window.start), _utc_stamp(window.end)


def _zone(tzid: str | None):
    if not tzid:
        return None
    try:
        return ZoneInfo(_TZID_PREFIX_RE.sub("", tzid))
    except (ZoneInfoNotFoundError, ValueError):
        return None


def time_to_datetime(t: ICalGLib.Time, tzid: str | None = None) -> datetime:
    """Convert an ICalGLib.Time to a naive local datetime."""
    if t.is_date():
        return datetime(t.get_year(), t.get_month(), t.get_day())
    naive = datetime(
        t.get_year(), t.get_month(), t.get_day(), t.get_hour(), t.get_minute(), t.get_second()
    )
    if t.is_utc():
        return naive.replace(tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    zone = _zone(tzid)
    if zone is not None:
        return naive.replace(tzinfo=zone).astimezone().replace(tzinfo=None)
    return naive


def time_to_utc(t: ICalGLib.Time) -> datetime:
    """LAST-MODIFIED and friends are UTC by definition."""
    return datetime(
        t.get_year(),
        t.get_month(),
        t.get_day(),
        t.get_hour(),
        t.get_minute(),
        t.get_second(),
        tzinfo=timezone.utc,
    )


def _tzid_of(prop) -> str | None:
    param = prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER)
    return param.get_tzid() if param else None


# ---------------------------------------------------------------------------
# Property helpers
# ---------------------------------------------------------------------------


def _remove_all_properties(comp: ICalGLib.Component, kind: ICalGLib.PropertyKind):
    prop = comp.get_first_property(kind)
    while prop:
        comp.remove_property(prop)
        prop = comp.get_first_property(kind)


def _find_named_property(comp: ICalGLib.Component, name: str):
    prop = comp.get_first_property(ICalGLib.PropertyKind.ANY_PROPERTY)
    while prop:
        if (prop.get_property_name() or "").upper() == name:
            return prop
        prop = comp.get_next_property(ICalGLib.PropertyKind.ANY_PROPERTY)
    return None


_TEXT_PROPERTIES = {
    "title": (
        ICalGLib.PropertyKind.SUMMARY_PROPERTY,
        ICalGLib.Property.new_summary,
        ICalGLib.Property.get_summary,
    ),
    "description": (
        ICalGLib.PropertyKind.DESCRIPTION_PROPERTY,
        ICalGLib.Property.new_description,
        ICalGLib.Property.get_description,
    ),
    "location": (
        ICalGLib.PropertyKind.LOCATION_PROPERTY,
        ICalGLib.Property.new_location,
        ICalGLib.Property.get_location,
    ),
}


def _get_text(comp: ICalGLib.Component, field_name: str) -> str:
    kind, _, getter = _TEXT_PROPERTIES[field_name]
    prop = comp.get_first_property(kind)
    return (getter(prop) or "") if prop else ""


def _set_text(comp: ICalGLib.Component, field_name: str, value: str):
    kind, new, _ = _TEXT_PROPERTIES[field_name]
    _remove_all_properties(comp, kind)
    if value:
        comp.add_property(new(value))


def _set_color(comp: ICalGLib.Component, color: int | None):
    prop = _find_named_property(comp, "COLOR")
    while prop:
        comp.remove_property(prop)
        prop = _find_named_property(comp, "COLOR")
    if color in COLOR_NAMES:
        comp.add_property(ICalGLib.Property.new_from_string(f"COLOR:{COLOR_NAMES[color]}"))


def _set_window(comp: ICalGLib.Component, window: EventWindow):
    start, end = window_times(window)
    _remove_all_properties(comp, ICalGLib.PropertyKind.DTSTART_PROPERTY)
    _remove_all_properties(comp, ICalGLib.PropertyKind.DTEND_PROPERTY)
    _remove_all_properties(comp, ICalGLib.PropertyKind.DURATION_PROPERTY)
    if window.shape.all_day:
        comp.add_property(ICalGLib.Property.new_from_string(f"DTSTART;VALUE=DATE:{start}"))
        comp.add_property(ICalGLib.Property.new_from_string(f"DTEND;VALUE=DATE:{end}"))
    else:
        comp.add_property(ICalGLib.Property.new_from_string(f"DTSTART:{start}"))
        comp.add_property(ICalGLib.Property.new_from_string(f"DTEND:{end}"))


def stamp_last_modified(comp: ICalGLib.Component, now: datetime):
    _remove_all_properties(comp, ICalGLib.PropertyKind.LASTMODIFIED_PROPERTY)
    comp.add_property(ICalGLib.Property.new_from_string(f"LAST-MODIFIED:{_utc_stamp(now)}"))


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def draft_to_component(
    draft: EventDraft, now: datetime, uid: str | None = None
) -> ICalGLib.Component:
    """Build a new VEVENT for a draft."""
    uid = uid or str(uuid.uuid4())
    comp = ICalGLib.Component.new_from_string(
        "BEGIN:VEVENT\r\n"
        f"UID:{uid}\r\n"
        f"DTSTAMP:{_utc_stamp(now)}\r\n"
        f"CREATED:{_utc_stamp(now)}\r\n"
        "END:VEVENT\r\n"
    )
    _set_window(comp, draft.window)
    _set_text(comp, "title", draft.title)
    _set_text(comp, "description", draft.description)
    _set_text(comp, "location", draft.location)
    _set_color(comp, draft.color)
    stamp_last_modified(comp, now)
    return comp


def apply_changes(
    comp: ICalGLib.Component,
    now: datetime,
    window: EventWindow | None = None,
    title: str | None = None,
    description: str | None = None,
    location: str | None = None,
    color: int | None = None,
) -> ICalGLib.Component:
    """Apply the given field changes to an existing VEVENT in place.

    Fields left as None are not touched; color=NO_COLOR removes COLOR.
    """
    if window is not None:
        _set_window(comp, window)
    if title is not None:
        _set_text(comp, "title", title)
    if description is not None:
        _set_text(comp, "description", description)
    if location is not None:
        _set_text(comp, "location", location)
    if color is not None:
        _set_color(comp, color)
    stamp_last_modified(comp, now)
    return comp


def component_to_event(obj) -> ExternalEvent:
    """Read the agenda-relevant fields of a VEVENT."""
    comp = parse_component(obj)

    dts_prop = comp.get_first_property(ICalGLib.PropertyKind.DTSTART_PROPERTY)
    dtstart = comp.get_dtstart()
    all_day = dtstart.is_date()
    start = time_to_datetime(dtstart, _tzid_of(dts_prop) if dts_prop else None)

    dte_prop = comp.get_first_property(ICalGLib.PropertyKind.DTEND_PROPERTY)
    dtend = comp.get_dtend()
    if dtend is not None and not dtend.is_null_time():
        end = time_to_datetime(dtend, _tzid_of(dte_prop) if dte_prop else None)
    elif all_day:
        end = start + timedelta(days=1)
    else:
        end = start

    guests = []
    prop = comp.get_first_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY)
    while prop:
        address = _MAILTO_RE.sub("", prop.get_attendee() or "").strip()
        if address:
            guests.append(address)
        prop = comp.get_next_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY)

    color_prop = _find_named_property(comp, "COLOR")
    color_name = (color_prop.get_value_as_string() or "").strip().lower() if color_prop else ""

    last_modified = EPOCH
    lm_prop = comp.get_first_property(ICalGLib.PropertyKind.LASTMODIFIED_PROPERTY)
    created_prop = comp.get_first_property(ICalGLib.PropertyKind.CREATED_PROPERTY)
    if lm_prop:
        last_modified = time_to_utc(lm_prop.get_lastmodified())
    elif created_prop:
        last_modified = time_to_utc(created_prop.get_created())

    return ExternalEvent(
        id=comp.get_uid() or "",
        title=_get_text(comp, "title"),
        description=_get_text(comp, "description"),
        location=_get_text(comp, "location"),
        guests=tuple(guests),
        color=COLOR_IDS.get(color_name),
        start=start,
        end=end,
        all_day=all_day,
        last_modified=last_modified,
    )

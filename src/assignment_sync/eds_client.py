"""
Evolution Data Server calendar gateway.

Events carry their assignment metadata twice: as native X-CANVAS-*
properties, and as a ``Metadata:`` line in DESCRIPTION for backends
(Microsoft 365) that strip X-properties on the way to the server.
"""

import logging
import uuid
from datetime import datetime
from datetime import timezone
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
gi.require_version("GLib", "2.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from assignment_sync.metadata import append_metadata
from assignment_sync.metadata import extract_metadata
from assignment_sync.metadata import matches_metadata
from assignment_sync.metadata import strip_metadata
from assignment_sync.models import META_ASSIGNMENT_ID
from assignment_sync.models import META_COURSE_ID
from assignment_sync.models import META_SOURCE
from assignment_sync.models import AssignmentSyncError
from assignment_sync.models import Calendar
from assignment_sync.models import CalendarEvent
from assignment_sync.models import CalendarNotFoundError
from assignment_sync.models import EventNotFoundError
from assignment_sync.models import PermissionStatus

logger = logging.getLogger(__name__)

X_PROPERTY_NAMES = {
    META_ASSIGNMENT_ID: "X-CANVAS-ASSIGNMENT-ID",
    META_COURSE_ID: "X-CANVAS-COURSE-ID",
    META_SOURCE: "X-CANVAS-SOURCE",
}
_METADATA_KEYS = {name: key for key, name in X_PROPERTY_NAMES.items()}

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# The M365 backend embeds the Exchange EWS error name in the message string
# rather than mapping it to a fixed quark code.
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"

_ICAL_UTC_FORMAT = "%Y%m%dT%H%M%SZ"


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
        if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
            return True
    return "object not found" in str(e).lower()


def escape_text(value: str) -> str:
    """Escape a TEXT value per RFC 5545 §3.3.11."""
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).strftime(_ICAL_UTC_FORMAT)


def parse_ical_datetime(value: str, tzid: str | None = None) -> tuple[datetime, bool]:
    """Parse a DTSTART/DTEND value. Returns (aware datetime, is_all_day)."""
    if len(value) == 8:
        return datetime.strptime(value, "%Y%m%d").replace(tzinfo=timezone.utc), True
    if value.endswith("Z"):
        return datetime.strptime(value, _ICAL_UTC_FORMAT).replace(tzinfo=timezone.utc), False
    naive = datetime.strptime(value, "%Y%m%dT%H%M%S")
    if tzid:
        try:
            return naive.replace(tzinfo=ZoneInfo(tzid)), False
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug(f"Unknown TZID {tzid!r}; treating time as local")
    return naive.astimezone(), False


def _time_property(vevent: ICalGLib.Component, kind) -> tuple[datetime, bool] | None:
    prop = vevent.get_first_property(kind)
    if prop is None:
        return None
    value = prop.get_value_as_string() or ""
    tz_param = prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER)
    tzid = tz_param.get_tzid() if tz_param else None
    return parse_ical_datetime(value, tzid)


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS API."""
    if isinstance(obj, str):
        return ICalGLib.Component.new_from_string(obj)
    return obj


def _vevent(comp: ICalGLib.Component) -> ICalGLib.Component | None:
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        return comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    if comp.isa() == ICalGLib.ComponentKind.VEVENT_COMPONENT:
        return comp
    return None


def component_to_event(obj) -> CalendarEvent | None:
    """Map a VEVENT to a CalendarEvent; None for non-events or missing times."""
    vevent = _vevent(parse_component(obj))
    if vevent is None:
        return None

    start = _time_property(vevent, ICalGLib.PropertyKind.DTSTART_PROPERTY)
    if start is None:
        return None
    end = _time_property(vevent, ICalGLib.PropertyKind.DTEND_PROPERTY) or start

    metadata: dict[str, str] = {}
    x_prop = vevent.get_first_property(ICalGLib.PropertyKind.X_PROPERTY)
    while x_prop:
        key = _METADATA_KEYS.get((x_prop.get_x_name() or "").upper())
        if key:
            metadata[key] = x_prop.get_x() or x_prop.get_value_as_string() or ""
        x_prop = vevent.get_next_property(ICalGLib.PropertyKind.X_PROPERTY)

    description = vevent.get_description() or ""
    # Fall back to the description block when the server dropped X-properties.
    for key, value in extract_metadata(description).items():
        metadata.setdefault(key, value)

    return CalendarEvent(
        title=vevent.get_summary() or "",
        description=strip_metadata(description),
        start_time=start[0],
        end_time=end[0],
        is_all_day=start[1],
        metadata=metadata,
        id=vevent.get_uid(),
    )


def event_to_component(event: CalendarEvent, uid: str) -> ICalGLib.Component:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{format_utc(datetime.now(timezone.utc))}",
        f"DTSTART:{format_utc(event.start_time)}",
        f"DTEND:{format_utc(event.end_time)}",
        f"SUMMARY:{escape_text(event.title)}",
        f"DESCRIPTION:{escape_text(append_metadata(event.description, event.metadata))}",
    ]
    for key, value in event.metadata.items():
        name = X_PROPERTY_NAMES.get(key)
        if name:
            lines.append(f"{name}:{escape_text(value)}")
    lines.append("END:VEVENT")
    return ICalGLib.Component.new_from_string("\r\n".join(lines) + "\r\n")


class EDSCalendarGateway:
    """Calendar gateway over Evolution Data Server calendars."""

    def __init__(self, registry: EDataServer.SourceRegistry | None = None, timeout: int = 10):
        self._registry = registry
        self.timeout = timeout
        self._clients: dict[str, ECal.Client] = {}

    @property
    def registry(self) -> EDataServer.SourceRegistry:
        if self._registry is None:
            try:
                self._registry = EDataServer.SourceRegistry.new_sync(None)
            except GLib.Error as e:
                raise AssignmentSyncError(f"EDS registry unreachable: {e.message}") from e
        return self._registry

    # -- Permissions ---------------------------------------------------------

    def check_permissions(self) -> PermissionStatus:
        """EDS has no permission prompt; a reachable registry means access."""
        try:
            self.registry
        except AssignmentSyncError as e:
            logger.warning(f"Cannot reach EDS: {e}")
            return PermissionStatus.UNKNOWN
        return PermissionStatus.GRANTED

    def request_permissions(self) -> PermissionStatus:
        return self.check_permissions()

    # -- Calendars -----------------------------------------------------------

    def _client(self, calendar_id: str) -> ECal.Client:
        client = self._clients.get(calendar_id)
        if client is not None:
            return client
        source = self.registry.ref_source(calendar_id)
        if not source:
            raise CalendarNotFoundError(f"Calendar with UID '{calendar_id}' not found in EDS")
        try:
            client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, self.timeout, None
            )
        except GLib.Error as e:
            raise AssignmentSyncError(
                f"Failed to connect to calendar {calendar_id}: {e.message}"
            ) from e
        self._clients[calendar_id] = client
        return client

    def _describe(self, source, is_default: bool = False) -> Calendar:
        uid = source.get_uid() or ""
        try:
            read_only = self._client(uid).is_readonly()
        except AssignmentSyncError as e:
            logger.debug(f"Calendar {uid} not connectable ({e}); treating as read-only")
            read_only = True
        return Calendar(
            id=uid,
            name=source.get_display_name() or "(unnamed)",
            is_default=is_default,
            is_read_only=read_only,
        )

    def list_calendars(self) -> list[Calendar]:
        default = self.registry.ref_default_calendar()
        default_uid = default.get_uid() if default else None
        return [
            self._describe(source, source.get_uid() == default_uid)
            for source in self.registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR)
            if source.get_enabled()
        ]

    def get_default_calendar(self) -> Calendar | None:
        source = self.registry.ref_default_calendar()
        if not source:
            return None
        return self._describe(source, is_default=True)

    # -- Events --------------------------------------------------------------

    def find_events_by_metadata(
        self, calendar_id: str, metadata: dict[str, str]
    ) -> list[CalendarEvent]:
        client = self._client(calendar_id)
        try:
            # "#t" (boolean true) is the sexp for "all events".
            _, objects = client.get_object_list_sync("#t", None)
        except GLib.Error as e:
            raise AssignmentSyncError(f"Failed to fetch events: {e.message}") from e

        events = []
        for obj in objects:
            event = component_to_event(obj)
            if event is not None and matches_metadata(event, metadata):
                events.append(event)
        return events

    def create_event(self, calendar_id: str, event: CalendarEvent) -> str:
        client = self._client(calendar_id)
        uid = str(uuid.uuid4())
        try:
            success, out_uid = client.create_object_sync(
                event_to_component(event, uid), ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise AssignmentSyncError(f"Failed to create event: {e.message}") from e
        if not success:
            raise AssignmentSyncError("Failed to create event")
        # Microsoft 365 rewrites the UID, so use what the server returned
        return out_uid or uid

    def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        client = self._client(calendar_id)
        try:
            success = client.modify_object_sync(
                event_to_component(event, event_id),
                ECal.ObjModType.THIS,
                ECal.OperationFlags.NONE,
                None,
            )
        except GLib.Error as e:
            if is_not_found_error(e):
                raise EventNotFoundError(f"Event {event_id} not found") from e
            raise AssignmentSyncError(f"Failed to modify event {event_id}: {e.message}") from e
        if not success:
            raise AssignmentSyncError(f"Failed to modify event {event_id}")

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        client = self._client(calendar_id)
        try:
            success = client.remove_object_sync(
                event_id,
                None,  # rid (recurrence-id)
                ECal.ObjModType.THIS,
                ECal.OperationFlags.NONE,
                None,  # cancellable
            )
        except GLib.Error as e:
            if is_not_found_error(e):
                raise EventNotFoundError(f"Event {event_id} not found") from e
            raise AssignmentSyncError(f"Failed to remove event {event_id}: {e.message}") from e
        if not success:
            raise AssignmentSyncError(f"Failed to remove event {event_id}")

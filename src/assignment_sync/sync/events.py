"""
Assignment → calendar event reconciliation.

EventReconciler owns the assignment↔event mapping for one gateway: it
creates, updates and deletes tagged events idempotently and keeps a small
dedup cache that ``sync_all`` primes once per pass.
"""

import logging
import re
import time
from collections.abc import Callable
from collections.abc import Iterable
from datetime import datetime
from datetime import timedelta

from assignment_sync.gateways import CalendarGateway
from assignment_sync.gateways import require_permission
from assignment_sync.metadata import compute_event_hash
from assignment_sync.models import DEFAULT_REMINDER_OFFSET
from assignment_sync.models import EVENT_SOURCE_TAG
from assignment_sync.models import META_ASSIGNMENT_ID
from assignment_sync.models import META_COURSE_ID
from assignment_sync.models import META_SOURCE
from assignment_sync.models import Assignment
from assignment_sync.models import AssignmentSyncError
from assignment_sync.models import CalendarEvent
from assignment_sync.models import CalendarNotFoundError
from assignment_sync.models import DuplicateEventError
from assignment_sync.models import EventNotFoundError
from assignment_sync.models import NoDueDateError
from assignment_sync.models import SyncResult
from assignment_sync.models import utc_now

_HTML_TAG_RE = re.compile(r"<[^>]*>")


def _always() -> bool:
    return True


def strip_html(text: str | None) -> str:
    if not text:
        return ""
    return _HTML_TAG_RE.sub("", text).strip()


def _format_points(points: float) -> str:
    return f"{points:g}"


def build_event_description(assignment: Assignment) -> str:
    """Human-readable event body. Written to the calendar only, never logged."""
    lines = [f"Canvas Assignment: {assignment.name}"]

    clean = strip_html(assignment.description)
    if clean:
        lines += ["", "Description:", clean]

    lines.append("")
    if assignment.due_at is not None:
        lines.append(f"Due: {assignment.due_at.astimezone().strftime('%Y-%m-%d %H:%M %Z')}")
    if assignment.points_possible is not None:
        lines.append(f"Points: {_format_points(assignment.points_possible)}")
    lines.append(f"Submission: {assignment.submission_types_display}")

    lines += ["", f"Course ID: {assignment.course_id}", f"Assignment ID: {assignment.id}"]
    # iCalendar TEXT has no CR; calendars hand bodies back with bare LF.
    return "\n".join(lines).replace("\r\n", "\n").replace("\r", "\n")


def event_metadata(assignment: Assignment) -> dict[str, str]:
    return {
        META_ASSIGNMENT_ID: str(assignment.id),
        META_COURSE_ID: str(assignment.course_id),
        META_SOURCE: EVENT_SOURCE_TAG,
    }


def build_event(assignment: Assignment, offset: timedelta = DEFAULT_REMINDER_OFFSET) -> CalendarEvent:
    """Build the tagged event spanning ``[due_at - offset, due_at]``."""
    if assignment.due_at is None:
        raise NoDueDateError(f"Assignment {assignment.id} has no due date")
    return CalendarEvent(
        title=f"Assignment Due: {assignment.name}",
        description=build_event_description(assignment),
        start_time=assignment.due_at - offset,
        end_time=assignment.due_at,
        is_all_day=False,
        metadata=event_metadata(assignment),
    )


class EventReconciler:
    """Creates, updates and deletes the calendar event tracked for each assignment."""

    def __init__(self, gateway: CalendarGateway, clock: Callable[[], datetime] = utc_now):
        self.gateway = gateway
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        # (calendar_id, assignment_id) -> event_id
        self._event_map: dict[tuple[str, int], str] = {}
        # Calendar whose tagged events were fully listed this pass; a cache
        # miss there is authoritative and needs no gateway lookup.
        self._authoritative_calendar: str | None = None

    # ------------------------------------------------------------------ #
    # Calendar and mapping lookup                                         #
    # ------------------------------------------------------------------ #

    def ensure_permission(self, operation: str) -> None:
        require_permission(self.gateway, operation)

    def resolve_calendar(self, calendar_id: str | None = None) -> str:
        """Pick the target calendar: explicit id, system default, then first writable."""
        if calendar_id:
            return calendar_id

        default = self.gateway.get_default_calendar()
        if default is not None and not default.is_read_only:
            return default.id

        for calendar in self.gateway.list_calendars():
            if not calendar.is_read_only:
                self.logger.debug(f"No writable default calendar; using {calendar.id}")
                return calendar.id

        raise CalendarNotFoundError("No writable calendar available")

    def _tracked_events(self, calendar_id: str, assignment_id: int) -> list[CalendarEvent]:
        events = self.gateway.find_events_by_metadata(
            calendar_id, {META_ASSIGNMENT_ID: str(assignment_id)}
        )
        return [e for e in events if e.metadata.get(META_SOURCE) == EVENT_SOURCE_TAG]

    def _lookup_event_id(self, calendar_id: str, assignment_id: int) -> str | None:
        """Cache first, then a metadata query on the gateway."""
        key = (calendar_id, assignment_id)
        if key in self._event_map:
            return self._event_map[key]
        if self._authoritative_calendar == calendar_id:
            return None

        events = self._tracked_events(calendar_id, assignment_id)
        if not events or events[0].id is None:
            return None
        self._event_map[key] = events[0].id
        return events[0].id

    def has_event(self, assignment_id: int, calendar_id: str | None = None) -> bool:
        calendar_id = self.resolve_calendar(calendar_id)
        return self._lookup_event_id(calendar_id, assignment_id) is not None

    def get_event(self, assignment_id: int, calendar_id: str | None = None) -> CalendarEvent | None:
        calendar_id = self.resolve_calendar(calendar_id)
        events = self._tracked_events(calendar_id, assignment_id)
        if not events:
            self._event_map.pop((calendar_id, assignment_id), None)
            return None
        if events[0].id is not None:
            self._event_map[(calendar_id, assignment_id)] = events[0].id
        return events[0]

    def list_tracked_events(self, calendar_id: str | None = None) -> list[CalendarEvent]:
        """Every event in the calendar carrying our source tag."""
        calendar_id = self.resolve_calendar(calendar_id)
        return self.gateway.find_events_by_metadata(calendar_id, {META_SOURCE: EVENT_SOURCE_TAG})

    # ------------------------------------------------------------------ #
    # Single-assignment operations                                        #
    # ------------------------------------------------------------------ #

    def create(
        self,
        assignment: Assignment,
        calendar_id: str | None = None,
        offset: timedelta = DEFAULT_REMINDER_OFFSET,
    ) -> str:
        """Create the tracked event. Raises DuplicateEventError if one exists."""
        if assignment.due_at is None:
            raise NoDueDateError(f"Assignment {assignment.id} has no due date")
        self.ensure_permission("create event")
        calendar_id = self.resolve_calendar(calendar_id)
        return self._create(calendar_id, assignment, offset)

    def update(
        self,
        assignment: Assignment,
        calendar_id: str | None = None,
        offset: timedelta = DEFAULT_REMINDER_OFFSET,
    ) -> str:
        """Rebuild and push the tracked event. Raises EventNotFoundError if untracked."""
        if assignment.due_at is None:
            raise NoDueDateError(f"Assignment {assignment.id} has no due date")
        self.ensure_permission("update event")
        calendar_id = self.resolve_calendar(calendar_id)
        return self._update(calendar_id, assignment, offset)

    def delete(self, assignment_id: int, calendar_id: str | None = None) -> bool:
        """
        Delete the tracked event.

        Idempotent: returns False when nothing was tracked, True when an event
        was removed (or had already vanished from the calendar).
        """
        self.ensure_permission("delete event")
        calendar_id = self.resolve_calendar(calendar_id)
        event_id = self._lookup_event_id(calendar_id, assignment_id)
        if event_id is None:
            self.logger.debug(f"No event tracked for assignment {assignment_id}; nothing to delete")
            return False
        self._delete(calendar_id, assignment_id, event_id)
        return True

    def _create(self, calendar_id: str, assignment: Assignment, offset: timedelta) -> str:
        if self._lookup_event_id(calendar_id, assignment.id) is not None:
            raise DuplicateEventError(f"Event already exists for assignment {assignment.id}")
        event = build_event(assignment, offset)
        event_id = self.gateway.create_event(calendar_id, event)
        self._event_map[(calendar_id, assignment.id)] = event_id
        self.logger.debug(f"Created event {event_id} for assignment {assignment.id}")
        return event_id

    def _update(
        self,
        calendar_id: str,
        assignment: Assignment,
        offset: timedelta,
        event_id: str | None = None,
    ) -> str:
        if event_id is None:
            event_id = self._lookup_event_id(calendar_id, assignment.id)
        if event_id is None:
            raise EventNotFoundError(f"No event found for assignment {assignment.id}")
        event = build_event(assignment, offset)
        try:
            self.gateway.update_event(calendar_id, event_id, event)
        except EventNotFoundError:
            self._event_map.pop((calendar_id, assignment.id), None)
            raise
        self._event_map[(calendar_id, assignment.id)] = event_id
        self.logger.debug(f"Updated event {event_id} for assignment {assignment.id}")
        return event_id

    def _delete(self, calendar_id: str, assignment_id: int, event_id: str) -> None:
        try:
            self.gateway.delete_event(calendar_id, event_id)
        except EventNotFoundError:
            self.logger.debug(f"Event {event_id} already gone (assignment {assignment_id})")
        self._event_map.pop((calendar_id, assignment_id), None)
        self.logger.debug(f"Deleted event {event_id} for assignment {assignment_id}")

    # ------------------------------------------------------------------ #
    # Batch reconciliation                                                #
    # ------------------------------------------------------------------ #

    def _index_tracked(self, calendar_id: str) -> dict[int, list[CalendarEvent]]:
        index: dict[int, list[CalendarEvent]] = {}
        for event in self.gateway.find_events_by_metadata(
            calendar_id, {META_SOURCE: EVENT_SOURCE_TAG}
        ):
            aid = event.assignment_id
            if aid is None or event.id is None:
                continue
            index.setdefault(aid, []).append(event)
        return index

    def sync_all(
        self,
        assignments: Iterable[Assignment],
        calendar_id: str | None = None,
        offset: timedelta = DEFAULT_REMINDER_OFFSET,
        delete_orphans: bool = True,
        should_continue: Callable[[], bool] = _always,
    ) -> SyncResult:
        """
        Reconcile the calendar against ``assignments``.

        Tagged events are listed once; each assignment with a due date is then
        updated (if tracked and changed), left alone (if unchanged) or created.
        Orphans, tracked events whose assignment is gone or lost its due date,
        are deleted when ``delete_orphans`` is set. Per-item failures are
        recorded in the result and never abort the loop.
        """
        started = time.monotonic()
        result = SyncResult(sync_time=self.clock())

        self.ensure_permission("sync events")
        calendar_id = self.resolve_calendar(calendar_id)

        index = self._index_tracked(calendar_id)
        self.logger.info(f"Found {len(index)} tracked event(s) in calendar {calendar_id}")

        # Extra copies break the one-event-per-assignment rule; keep the first.
        for aid in sorted(index):
            events = index[aid]
            for extra in events[1:]:
                try:
                    self._delete(calendar_id, aid, extra.id)
                    result.events_deleted += 1
                    self.logger.warning(f"Removed duplicate event {extra.id} for assignment {aid}")
                except Exception as e:
                    self._record_failure(result, aid, e)
            index[aid] = events[:1]

        for aid, events in index.items():
            self._event_map[(calendar_id, aid)] = events[0].id
        self._authoritative_calendar = calendar_id

        try:
            due_ids: set[int] = set()
            for assignment in assignments:
                if assignment.due_at is None:
                    continue
                due_ids.add(assignment.id)
                if not should_continue():
                    self.logger.info("Sync cancelled; stopping before remaining assignments")
                    break
                self._reconcile_one(calendar_id, assignment, offset, index, result)

            if delete_orphans and should_continue():
                for aid in sorted(set(index) - due_ids):
                    if not should_continue():
                        break
                    try:
                        self._delete(calendar_id, aid, index[aid][0].id)
                        result.events_deleted += 1
                    except Exception as e:
                        self._record_failure(result, aid, e)
        finally:
            self._authoritative_calendar = None

        result.sync_duration = timedelta(seconds=time.monotonic() - started)
        self.logger.info(
            f"Event sync: {result.events_created} created, {result.events_updated} updated, "
            f"{result.events_deleted} deleted, {result.errors_encountered} error(s)"
        )
        return result

    def _reconcile_one(
        self,
        calendar_id: str,
        assignment: Assignment,
        offset: timedelta,
        index: dict[int, list[CalendarEvent]],
        result: SyncResult,
    ) -> None:
        try:
            existing = index.get(assignment.id)
            if existing:
                desired = build_event(assignment, offset)
                if compute_event_hash(existing[0]) == compute_event_hash(desired):
                    result.events_unchanged += 1
                    return
                self._update(calendar_id, assignment, offset, existing[0].id)
                result.events_updated += 1
            else:
                self._create(calendar_id, assignment, offset)
                result.events_created += 1
        except Exception as e:
            self._record_failure(result, assignment.id, e)

    def _record_failure(self, result: SyncResult, assignment_id: int, error: Exception) -> None:
        result.record_error(f"Assignment {assignment_id}", error)
        if isinstance(error, AssignmentSyncError):
            self.logger.error(f"Assignment {assignment_id}: [{error.code}] {error}")
        else:
            self.logger.exception(f"Assignment {assignment_id}: unexpected error")

    def clear_all_events(self, calendar_id: str | None = None) -> SyncResult:
        """Delete every tagged event, continuing past failures."""
        started = time.monotonic()
        result = SyncResult(sync_time=self.clock())
        self.ensure_permission("clear events")
        calendar_id = self.resolve_calendar(calendar_id)

        for event in self.list_tracked_events(calendar_id):
            aid = event.assignment_id
            if event.id is None:
                continue
            try:
                self._delete(calendar_id, aid if aid is not None else -1, event.id)
                result.events_deleted += 1
            except Exception as e:
                self._record_failure(result, aid if aid is not None else -1, e)

        self.clear_cache()
        result.sync_duration = timedelta(seconds=time.monotonic() - started)
        self.logger.info(f"Cleared {result.events_deleted} tracked event(s)")
        return result

    def clear_cache(self) -> None:
        self._event_map.clear()

    def cache_stats(self) -> dict[str, int]:
        calendars = {calendar_id for calendar_id, _ in self._event_map}
        return {"cached_mappings": len(self._event_map), "calendars": len(calendars)}

"""
EventReconciler tests against the in-memory calendar gateway.
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from assignment_sync.metadata import compute_event_hash
from assignment_sync.models import META_ASSIGNMENT_ID
from assignment_sync.models import META_COURSE_ID
from assignment_sync.models import META_SOURCE
from assignment_sync.models import Calendar
from assignment_sync.models import CalendarEvent
from assignment_sync.models import CalendarNotFoundError
from assignment_sync.models import DuplicateEventError
from assignment_sync.models import EventNotFoundError
from assignment_sync.models import NoDueDateError
from assignment_sync.models import PermissionDeniedError
from assignment_sync.models import PermissionStatus
from assignment_sync.sync.events import EventReconciler
from assignment_sync.sync.events import build_event
from assignment_sync.sync.events import build_event_description
from tests.conftest import CAL_ID
from tests.conftest import NOW
from tests.conftest import make_assignment
from tests.fake_client import FakeCalendarGateway

OFFSET = timedelta(hours=1)


class TestBuildEvent:
    def test_span_ends_at_due_time(self):
        a = make_assignment(1, due_in=timedelta(days=1))
        event = build_event(a, OFFSET)
        assert event.end_time == a.due_at
        assert event.start_time == a.due_at - OFFSET
        assert event.title == "Assignment Due: Assignment 1"
        assert event.is_all_day is False

    def test_metadata_tags(self):
        event = build_event(make_assignment(5, course_id=77), OFFSET)
        assert event.metadata == {
            META_ASSIGNMENT_ID: "5",
            META_COURSE_ID: "77",
            META_SOURCE: "app_canvas",
        }

    def test_no_due_date(self):
        with pytest.raises(NoDueDateError):
            build_event(make_assignment(1, due_in=None), OFFSET)

    def test_description_strips_html_and_lists_details(self):
        a = make_assignment(
            3,
            description="<p>Read <b>chapter 4</b></p>",
            points_possible=10.0,
            submission_types=("online_upload",),
        )
        text = build_event_description(a)
        assert text.startswith("Canvas Assignment: Assignment 3")
        assert "Read chapter 4" in text
        assert "<p>" not in text
        assert "Points: 10" in text
        assert "Assignment ID: 3" in text
        assert "Course ID: 101" in text

    def test_description_line_endings_are_normalized(self):
        a = make_assignment(3, description="<p>Part one</p>\r\nPart two\rPart three")
        event = build_event(a, OFFSET)

        assert "\r" not in event.description
        assert "Part one\nPart two\nPart three" in event.description
        read_back = replace(event, description=event.description.replace("\r\n", "\n"))
        assert compute_event_hash(read_back) == compute_event_hash(event)


class TestResolveCalendar:
    def test_explicit_id_wins(self, reconciler):
        assert reconciler.resolve_calendar("other") == "other"

    def test_read_only_default_falls_through_to_first_writable(self, clock):
        gateway = FakeCalendarGateway(
            [
                Calendar(id="ro", name="Holidays", is_default=True, is_read_only=True),
                Calendar(id="rw", name="Personal"),
            ]
        )
        assert EventReconciler(gateway, clock).resolve_calendar() == "rw"

    def test_no_writable_calendar(self, clock):
        gateway = FakeCalendarGateway([Calendar(id="ro", name="Holidays", is_read_only=True)])
        with pytest.raises(CalendarNotFoundError):
            EventReconciler(gateway, clock).resolve_calendar()


class TestSingleOperations:
    def test_create_then_has_event(self, reconciler, gateway):
        event_id = reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        assert gateway.creates == [event_id]
        assert reconciler.has_event(1, CAL_ID)

    def test_create_twice_is_duplicate(self, reconciler):
        reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        with pytest.raises(DuplicateEventError):
            reconciler.create(make_assignment(1), CAL_ID, OFFSET)

    def test_duplicate_detected_from_gateway_after_cache_clear(self, reconciler):
        reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        reconciler.clear_cache()
        with pytest.raises(DuplicateEventError):
            reconciler.create(make_assignment(1), CAL_ID, OFFSET)

    def test_update_moves_event(self, reconciler, gateway):
        reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        moved = make_assignment(1, due_in=timedelta(days=5))
        reconciler.update(moved, CAL_ID, OFFSET)

        (event,) = gateway.events_for(1)
        assert event.end_time == moved.due_at

    def test_update_untracked_raises(self, reconciler):
        with pytest.raises(EventNotFoundError):
            reconciler.update(make_assignment(9), CAL_ID, OFFSET)

    def test_update_vanished_event_drops_cache(self, reconciler, gateway):
        event_id = reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        gateway.remove_behind_our_back(CAL_ID, event_id)

        with pytest.raises(EventNotFoundError):
            reconciler.update(make_assignment(1), CAL_ID, OFFSET)
        assert reconciler.cache_stats()["cached_mappings"] == 0

    def test_delete_is_idempotent(self, reconciler, gateway):
        reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        assert reconciler.delete(1, CAL_ID) is True
        assert reconciler.delete(1, CAL_ID) is False
        assert gateway.event_count() == 0

    def test_delete_absorbs_already_gone_event(self, reconciler, gateway):
        event_id = reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        gateway.remove_behind_our_back(CAL_ID, event_id)
        assert reconciler.delete(1, CAL_ID) is True
        assert not reconciler.has_event(1, CAL_ID)

    def test_get_event_reads_gateway(self, reconciler):
        reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        event = reconciler.get_event(1, CAL_ID)
        assert event is not None
        assert event.assignment_id == 1
        assert reconciler.get_event(2, CAL_ID) is None

    def test_permission_denied_blocks_writes(self, clock):
        gateway = FakeCalendarGateway(permission=PermissionStatus.DENIED)
        reconciler = EventReconciler(gateway, clock)
        with pytest.raises(PermissionDeniedError, match="Current status: denied"):
            reconciler.create(make_assignment(1), CAL_ID, OFFSET)
        assert gateway.creates == []

    def test_create_without_due_date(self, reconciler):
        with pytest.raises(NoDueDateError):
            reconciler.create(make_assignment(1, due_in=None), CAL_ID, OFFSET)


class TestSyncAll:
    def test_first_pass_creates_every_due_assignment(self, reconciler, gateway):
        assignments = [make_assignment(1), make_assignment(2), make_assignment(3, due_in=None)]
        result = reconciler.sync_all(assignments, CAL_ID, OFFSET)

        assert result.events_created == 2
        assert result.errors_encountered == 0
        assert {e.assignment_id for e in gateway.events()} == {1, 2}

    def test_second_pass_is_a_noop(self, reconciler, gateway):
        assignments = [make_assignment(1), make_assignment(2)]
        reconciler.sync_all(assignments, CAL_ID, OFFSET)
        gateway.reset_counters()

        result = reconciler.sync_all(assignments, CAL_ID, OFFSET)
        assert result.events_unchanged == 2
        assert not result.has_changes
        assert gateway.creates == gateway.updates == gateway.deletes == []

    def test_changed_assignment_is_updated(self, reconciler, gateway):
        reconciler.sync_all([make_assignment(1)], CAL_ID, OFFSET)
        result = reconciler.sync_all(
            [make_assignment(1, name="Renamed")], CAL_ID, OFFSET
        )
        assert result.events_updated == 1
        assert gateway.events_for(1)[0].title == "Assignment Due: Renamed"

    def test_orphans_are_deleted(self, reconciler, gateway):
        reconciler.sync_all([make_assignment(i) for i in (1, 2, 3)], CAL_ID, OFFSET)
        result = reconciler.sync_all(
            [make_assignment(1), make_assignment(2, due_in=None)], CAL_ID, OFFSET
        )
        assert result.events_deleted == 2
        assert [e.assignment_id for e in gateway.events()] == [1]

    def test_orphans_kept_when_disabled(self, reconciler, gateway):
        reconciler.sync_all([make_assignment(1), make_assignment(2)], CAL_ID, OFFSET)
        result = reconciler.sync_all([make_assignment(1)], CAL_ID, OFFSET, delete_orphans=False)
        assert result.events_deleted == 0
        assert gateway.event_count() == 2

    def test_duplicates_collapse_to_one(self, reconciler, gateway):
        template = build_event(make_assignment(1), OFFSET)
        gateway.add_event(CAL_ID, template)
        gateway.add_event(CAL_ID, CalendarEvent(**{**template.__dict__, "id": None}))

        result = reconciler.sync_all([make_assignment(1)], CAL_ID, OFFSET)
        assert result.events_deleted == 1
        assert len(gateway.events_for(1)) == 1

    def test_untagged_events_are_left_alone(self, reconciler, gateway):
        gateway.add_event(
            CAL_ID,
            CalendarEvent(
                title="Dentist",
                description="",
                start_time=NOW,
                end_time=NOW + timedelta(hours=1),
            ),
        )
        reconciler.sync_all([], CAL_ID, OFFSET)
        assert gateway.event_count() == 1

    def test_one_failure_does_not_abort_the_batch(self, reconciler, gateway):
        gateway.fail_create = {2}
        result = reconciler.sync_all([make_assignment(i) for i in (1, 2, 3)], CAL_ID, OFFSET)

        assert result.events_created == 2
        assert result.errors_encountered == 1
        assert result.error_messages[0].startswith("Assignment 2:")

    def test_cache_avoids_per_item_queries(self, reconciler, gateway):
        reconciler.sync_all([make_assignment(i) for i in range(1, 6)], CAL_ID, OFFSET)
        assert gateway.queries == 1

    def test_cancellation_stops_the_loop(self, reconciler, gateway):
        calls = iter([True, False])
        result = reconciler.sync_all(
            [make_assignment(1), make_assignment(2)],
            CAL_ID,
            OFFSET,
            should_continue=lambda: next(calls, False),
        )
        assert result.events_created == 1

    def test_clear_all_events(self, reconciler, gateway):
        reconciler.sync_all([make_assignment(1), make_assignment(2)], CAL_ID, OFFSET)
        result = reconciler.clear_all_events(CAL_ID)
        assert result.events_deleted == 2
        assert gateway.event_count() == 0
        assert reconciler.cache_stats()["cached_mappings"] == 0

"""
End-to-end pass tests: SyncEngine over fake gateways and a real SQLite state DB.
"""

import logging
from datetime import timedelta

import pytest

from assignment_sync.models import NetworkFailureError
from assignment_sync.models import PermissionDeniedError
from assignment_sync.models import PermissionStatus
from assignment_sync.models import SyncDisabledError
from assignment_sync.models import SyncInProgressError
from assignment_sync.models import SyncSettings
from assignment_sync.models import SyncStatus
from assignment_sync.sync import SyncEngine
from assignment_sync.sync.orchestrator import filter_for_sync
from tests.conftest import CAL_ID
from tests.conftest import NOW
from tests.conftest import make_assignment
from tests.fake_client import FakeAssignmentSource


def test_filter_for_sync():
    settings = SyncSettings(enabled_course_ids=frozenset({101}))
    assignments = [
        make_assignment(1, course_id=101),
        make_assignment(2, course_id=202),
        make_assignment(3, course_id=101, due_in=None),
    ]
    assert [a.id for a in filter_for_sync(assignments, settings)] == [1]


class TestFullSync:
    def test_creates_events_and_reminders(self, engine, source, gateway, scheduler):
        source.assignments = [make_assignment(1), make_assignment(2), make_assignment(3, None)]

        result = engine.perform_full_sync()

        assert result.events_created == 2
        assert result.reminders.scheduled == 2
        assert {e.assignment_id for e in gateway.events(CAL_ID)} == {1, 2}
        assert set(scheduler.pending) == {"assignment_reminder_1", "assignment_reminder_2"}
        assert engine.status is SyncStatus.COMPLETED
        assert engine.orchestrator.last_sync_time == NOW

    def test_payload_carries_course_name(self, engine, source, scheduler):
        source.assignments = [make_assignment(1, course_id=202)]
        engine.perform_full_sync()
        _, payload = scheduler.pending["assignment_reminder_1"]
        assert payload["course_name"] == "Databases"

    def test_success_is_recorded_in_history(self, engine, source):
        source.assignments = [make_assignment(1)]
        engine.perform_full_sync()

        (record,) = engine.frequency.history()
        assert record.success is True
        assert record.error is None
        assert engine.get_sync_statistics().total_syncs == 1

    def test_second_run_is_a_noop(self, engine, source, gateway, scheduler):
        source.assignments = [make_assignment(1), make_assignment(2)]
        engine.perform_full_sync()
        gateway.reset_counters()
        scheduler.reset_counters()

        result = engine.perform_full_sync()
        assert result.events_unchanged == 2
        assert not result.has_changes
        assert result.reminders.total_changes == 0
        assert gateway.creates == gateway.updates == gateway.deletes == []

    def test_removed_assignments_lose_event_and_reminder(self, engine, source, gateway, scheduler):
        source.assignments = [make_assignment(1), make_assignment(2), make_assignment(3)]
        engine.perform_full_sync()

        source.assignments = [make_assignment(1)]
        result = engine.perform_full_sync()

        assert result.events_deleted == 2
        assert result.reminders.removed == 2
        assert set(scheduler.pending) == {"assignment_reminder_1"}

    def test_enabled_courses_are_passed_to_source(self, engine, source, settings_store):
        settings_store.update(enabled_course_ids=frozenset({202, 101}))
        engine.perform_full_sync()
        assert source.calls == [[101, 202]]

    def test_item_errors_keep_the_pass_successful(self, engine, source, gateway):
        gateway.fail_create = {2}
        source.assignments = [make_assignment(1), make_assignment(2)]

        result = engine.perform_full_sync()

        assert result.errors_encountered == 1
        assert engine.status is SyncStatus.COMPLETED
        (record,) = engine.frequency.history()
        assert record.success is True
        assert record.error == "1 item error(s)"

    def test_errors_trigger_conflict_resolution(self, engine, source, gateway):
        a = make_assignment(1, due_in=timedelta(hours=26))
        b = make_assignment(3, due_in=timedelta(hours=26, minutes=20))
        source.assignments = [a, b]
        engine.perform_full_sync()

        gateway.fail_create = {2}
        source.assignments = [a, make_assignment(2), b]
        result = engine.perform_full_sync()

        assert result.errors_encountered == 1
        assert result.events_updated == 1
        assert gateway.events_for(1)[0].start_time == a.due_at - timedelta(hours=1)
        moved = gateway.events_for(3)[0]
        assert moved.start_time == b.due_at - timedelta(hours=1) + timedelta(minutes=15)

    def test_conflicts_left_alone_without_errors(self, engine, source, gateway):
        source.assignments = [
            make_assignment(1, due_in=timedelta(hours=26)),
            make_assignment(3, due_in=timedelta(hours=26, minutes=20)),
        ]
        result = engine.perform_full_sync()
        assert result.events_updated == 0

    def test_reminders_can_be_skipped(self, engine, source, scheduler):
        source.assignments = [make_assignment(1)]
        result = engine.perform_full_sync(sync_reminders=False)
        assert result.reminders is None
        assert scheduler.scheduled == []


class TestFailures:
    def test_disabled(self, engine, settings_store):
        settings_store.update(is_enabled=False)
        with pytest.raises(SyncDisabledError):
            engine.perform_full_sync()
        assert engine.status is SyncStatus.FAILED
        assert engine.frequency.history()[0].error == "SYNC_DISABLED"

    def test_permission_denied(self, engine, gateway, source):
        gateway.permission = PermissionStatus.DENIED
        with pytest.raises(PermissionDeniedError):
            engine.perform_full_sync()
        assert source.calls == []
        assert "PERMISSION_DENIED" in engine.orchestrator.last_error

    def test_network_failure(self, engine, source):
        source.error = ConnectionError("no route to host")
        with pytest.raises(NetworkFailureError):
            engine.perform_full_sync()
        record = engine.frequency.history()[0]
        assert record.success is False
        assert record.error == "NETWORK_FAILURE"

    def test_failed_pass_keeps_last_sync_time(self, engine, source):
        engine.perform_full_sync()
        source.error = ConnectionError("offline")
        with pytest.raises(NetworkFailureError):
            engine.perform_full_sync()
        assert engine.orchestrator.last_sync_time == NOW

    def test_concurrent_pass_is_rejected(self, engine, gateway, clock):
        seen = []

        class ReentrantSource(FakeAssignmentSource):
            def list_assignments(self, course_ids=None):
                try:
                    engine.perform_full_sync()
                except SyncInProgressError as e:
                    seen.append(e)
                return []

        engine.orchestrator.source = ReentrantSource()
        engine.perform_full_sync()
        assert len(seen) == 1
        assert engine.status is SyncStatus.COMPLETED

    def test_cancel_mid_pass(self, engine, gateway):
        class CancellingSource(FakeAssignmentSource):
            def list_assignments(self, course_ids=None):
                assert engine.cancel_sync() is True
                return [make_assignment(1), make_assignment(2)]

        engine.orchestrator.source = CancellingSource()
        result = engine.perform_full_sync()

        assert result.events_created == 0
        assert result.reminders is None
        assert engine.status is SyncStatus.CANCELLED
        assert engine.orchestrator.last_sync_time is None
        assert engine.frequency.history()[0].error == "CANCELLED"

    def test_cancel_when_idle(self, engine):
        assert engine.cancel_sync() is False


class TestIncrementalSync:
    def test_only_recent_changes_are_processed(self, engine, source, gateway):
        source.assignments = [
            make_assignment(1, updated_at=NOW - timedelta(days=10)),
            make_assignment(2, updated_at=NOW - timedelta(hours=1)),
        ]
        result = engine.perform_incremental_sync(since=NOW - timedelta(days=1))

        assert result.events_created == 1
        assert [e.assignment_id for e in gateway.events()] == [2]

    def test_default_window_is_a_week(self, engine, source, gateway):
        source.assignments = [
            make_assignment(1, updated_at=NOW - timedelta(days=8)),
            make_assignment(2, updated_at=NOW - timedelta(days=6)),
        ]
        result = engine.perform_incremental_sync()
        assert result.events_created == 1

    def test_update_and_delete_branches(self, engine, source, gateway, scheduler, clock):
        source.assignments = [make_assignment(1), make_assignment(2)]
        engine.perform_full_sync()
        clock.advance(timedelta(minutes=30))

        source.assignments = [
            make_assignment(1, due_in=timedelta(days=4), updated_at=clock.now),
            make_assignment(2, due_in=None, updated_at=clock.now),
        ]
        result = engine.perform_incremental_sync()

        assert result.events_updated == 1
        assert result.events_deleted == 1
        assert gateway.events_for(1)[0].end_time == NOW + timedelta(days=4)
        assert result.reminders.updated == 1
        assert result.reminders.removed == 1
        assert set(scheduler.pending) == {"assignment_reminder_1"}

    def test_watermark_defaults_to_last_success(self, engine, source, clock):
        source.assignments = [make_assignment(1, updated_at=NOW - timedelta(minutes=5))]
        engine.perform_full_sync()
        clock.advance(timedelta(minutes=30))

        result = engine.perform_incremental_sync()
        assert result.total_processed == 0

    def test_fresh_engine_resumes_after_failed_pass(
        self, engine, source, gateway, scheduler, state_db, settings_store, conditions, clock
    ):
        source.assignments = [make_assignment(1)]
        engine.perform_full_sync()

        clock.advance(timedelta(minutes=30))
        source.assignments = [make_assignment(1, name="Renamed", updated_at=clock.now)]
        clock.advance(timedelta(minutes=30))
        source.error = NetworkFailureError("offline")
        with pytest.raises(NetworkFailureError):
            engine.perform_full_sync()
        source.error = None

        restarted = SyncEngine(
            calendar=gateway,
            source=source,
            notifier=scheduler,
            state_db=state_db,
            settings_store=settings_store,
            conditions=conditions,
            clock=clock,
        )
        assert restarted.frequency.last_successful_sync_time() == NOW

        result = restarted.perform_incremental_sync()
        assert result.events_updated == 1
        assert gateway.events_for(1)[0].title == "Assignment Due: Renamed"


class TestStatusAndLifecycle:
    def test_init_requests_missing_permission(self, engine, gateway):
        gateway.permission = PermissionStatus.UNKNOWN
        gateway.grant_on_request = True
        assert engine.init() is PermissionStatus.GRANTED

    def test_is_sync_needed(self, engine, clock, settings_store):
        assert engine.orchestrator.is_sync_needed()
        engine.perform_full_sync()
        assert not engine.orchestrator.is_sync_needed()
        clock.advance(timedelta(hours=1))
        assert engine.orchestrator.is_sync_needed()
        settings_store.update(auto_sync=False)
        assert not engine.orchestrator.is_sync_needed()

    def test_sync_status_dict(self, engine, source):
        source.assignments = [make_assignment(1)]
        engine.perform_full_sync()

        status = engine.sync_status()
        assert status["current_status"] == "completed"
        assert status["last_sync_result"]["events_created"] == 1
        assert status["sync_settings"]["reminder_offset_minutes"] == 60

    def test_finished_state_holds_until_next_pass(self, engine, source, caplog):
        source.error = NetworkFailureError("offline")
        with pytest.raises(NetworkFailureError):
            engine.perform_full_sync()
        assert engine.status is SyncStatus.FAILED

        source.error = None
        with caplog.at_level(logging.DEBUG, logger="assignment_sync.sync.orchestrator"):
            engine.perform_full_sync()

        transitions = [
            r.getMessage() for r in caplog.records if r.getMessage().startswith("Sync status:")
        ]
        assert transitions == [
            "Sync status: failed -> idle",
            "Sync status: idle -> syncing",
            "Sync status: syncing -> completed",
        ]
        assert engine.status is SyncStatus.COMPLETED

    def test_reset(self, engine, source):
        source.assignments = [make_assignment(1)]
        engine.perform_full_sync()
        engine.reset()

        assert engine.status is SyncStatus.IDLE
        assert engine.orchestrator.last_sync_time is None
        assert engine.frequency.history() == []
        assert engine.reconciler.cache_stats()["cached_mappings"] == 0

    def test_single_reminder_entry_points(self, engine, scheduler):
        reminder = engine.schedule_assignment_reminder(make_assignment(1))
        assert reminder.notification_id in scheduler.pending
        assert engine.cancel_assignment_reminder(1) is True
        assert scheduler.pending == {}

    def test_adapted_interval(self, engine):
        assert engine.get_adapted_sync_interval() == timedelta(hours=1)
        assert engine.should_sync_now()

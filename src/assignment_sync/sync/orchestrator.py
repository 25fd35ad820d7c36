"""
Sync pass state machine.

Idle → Syncing → {Completed, Failed, Cancelled}. A request while a pass is
running fails fast with SyncInProgressError; nothing is queued.
"""

import logging
import threading
import time
from collections.abc import Callable
from collections.abc import Iterable
from datetime import datetime
from datetime import timedelta
from typing import Any

from assignment_sync.gateways import AssignmentSource
from assignment_sync.gateways import SettingsStore
from assignment_sync.models import Assignment
from assignment_sync.models import AssignmentSyncError
from assignment_sync.models import NetworkFailureError
from assignment_sync.models import SyncDisabledError
from assignment_sync.models import SyncInProgressError
from assignment_sync.models import SyncResult
from assignment_sync.models import SyncSettings
from assignment_sync.models import SyncStatus
from assignment_sync.models import error_code
from assignment_sync.models import utc_now
from assignment_sync.sync.conflicts import ConflictResolver
from assignment_sync.sync.events import EventReconciler
from assignment_sync.sync.frequency import AdaptiveFrequencyManager
from assignment_sync.sync.reminders import ReminderCoordinator

DEFAULT_INCREMENTAL_WINDOW = timedelta(days=7)


def filter_for_sync(assignments: Iterable[Assignment], settings: SyncSettings) -> list[Assignment]:
    """Assignments with a due date in an enabled course (no courses = all)."""
    return [a for a in assignments if a.due_at is not None and settings.is_course_synced(a.course_id)]


class SyncOrchestrator:
    """Drives full and incremental passes over the reconciler and reminder coordinator."""

    def __init__(
        self,
        source: AssignmentSource,
        reconciler: EventReconciler,
        settings_provider: SettingsStore,
        reminders: ReminderCoordinator | None = None,
        frequency: AdaptiveFrequencyManager | None = None,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.source = source
        self.reconciler = reconciler
        self.settings_provider = settings_provider
        self.reminders = reminders
        self.frequency = frequency
        self.resolver = resolver if resolver is not None else ConflictResolver(reconciler)
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self.status = SyncStatus.IDLE
        self.last_sync_time: datetime | None = None
        self.last_sync_result: SyncResult | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------ #
    # Pass lifecycle                                                      #
    # ------------------------------------------------------------------ #

    def _set_status(self, status: SyncStatus) -> None:
        if status is not self.status:
            self.logger.debug(f"Sync status: {self.status.value} -> {status.value}")
        self.status = status

    def _should_continue(self) -> bool:
        return self.status is SyncStatus.SYNCING

    def _run_pass(
        self, operation: str, body: Callable[[SyncSettings], SyncResult]
    ) -> SyncResult:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("Sync already in progress")
        try:
            # Completed, Failed and Cancelled hold until the next pass begins.
            self._set_status(SyncStatus.IDLE)
            self._set_status(SyncStatus.SYNCING)
            sync_start = self.clock()
            started = time.monotonic()
            try:
                self.reconciler.ensure_permission(operation)
                settings = self.settings_provider.load()
                if not settings.is_enabled:
                    raise SyncDisabledError("Calendar sync is disabled")
                result = body(settings)
            except Exception as e:
                duration = timedelta(seconds=time.monotonic() - started)
                self._set_status(SyncStatus.FAILED)
                self.last_error = f"[{error_code(e)}] {e}"
                self._record(False, sync_start, duration, error_code(e))
                self.logger.error(f"{operation.capitalize()} failed: {self.last_error}")
                if isinstance(e, AssignmentSyncError):
                    raise
                raise AssignmentSyncError(f"{operation.capitalize()} failed: {e}") from e

            result.sync_time = sync_start
            result.sync_duration = timedelta(seconds=time.monotonic() - started)
            self.last_sync_result = result

            if self.status is SyncStatus.CANCELLED:
                self._record(False, sync_start, result.sync_duration, "CANCELLED")
                self.logger.warning(f"{operation.capitalize()} cancelled")
            else:
                self._set_status(SyncStatus.COMPLETED)
                self.last_sync_time = sync_start
                self.last_error = None
                item_errors = result.errors_encountered + (
                    result.reminders.failed if result.reminders else 0
                )
                self._record(
                    True,
                    sync_start,
                    result.sync_duration,
                    f"{item_errors} item error(s)" if item_errors else None,
                )
            return result
        finally:
            self._lock.release()

    def _record(
        self, success: bool, started_at: datetime, duration: timedelta, error: str | None
    ) -> None:
        if self.frequency is not None:
            self.frequency.record_sync(success, duration, error, started_at=started_at)

    def _watermark(self) -> datetime | None:
        if self.last_sync_time is not None:
            return self.last_sync_time
        if self.frequency is not None:
            return self.frequency.last_successful_sync_time()
        return None

    def _fetch(self, settings: SyncSettings) -> list[Assignment]:
        self.logger.info("Fetching assignments...")
        course_ids = sorted(settings.enabled_course_ids) or None
        try:
            return self.source.list_assignments(course_ids)
        except AssignmentSyncError:
            raise
        except Exception as e:
            raise NetworkFailureError(f"Cannot fetch assignments: {e}") from e

    def _course_names(self) -> dict[int, str]:
        try:
            return self.source.course_names()
        except AssignmentSyncError as e:
            self.logger.warning(f"Course names unavailable [{e.code}]; reminders use ids only")
            return {}

    # ------------------------------------------------------------------ #
    # Passes                                                              #
    # ------------------------------------------------------------------ #

    def perform_full_sync(
        self,
        calendar_id: str | None = None,
        resolve_conflicts: bool = True,
        delete_orphans: bool = True,
        sync_reminders: bool = True,
    ) -> SyncResult:
        """Reconcile the calendar (and reminders) against every current assignment."""

        def body(settings: SyncSettings) -> SyncResult:
            calendar = self.reconciler.resolve_calendar(calendar_id or settings.calendar_id)
            assignments = self._fetch(settings)
            to_sync = filter_for_sync(assignments, settings)
            self.logger.info(f"Processing {len(to_sync)} assignment(s)...")

            result = self.reconciler.sync_all(
                to_sync,
                calendar,
                settings.reminder_offset,
                delete_orphans=delete_orphans,
                should_continue=self._should_continue,
            )

            if resolve_conflicts and result.errors_encountered > 0 and self._should_continue():
                self.logger.info("Errors during event sync; checking for time conflicts...")
                result = result.merge(
                    self.resolver.resolve(to_sync, calendar, settings.reminder_offset)
                )

            if sync_reminders and self.reminders is not None and self._should_continue():
                result.reminders = self.reminders.sync_all(assignments, self._course_names())
            return result

        return self._run_pass("full sync", body)

    def perform_incremental_sync(
        self,
        since: datetime | None = None,
        calendar_id: str | None = None,
        sync_reminders: bool = True,
    ) -> SyncResult:
        """Reconcile only assignments updated after the watermark."""

        def body(settings: SyncSettings) -> SyncResult:
            window = since or self._watermark() or self.clock() - DEFAULT_INCREMENTAL_WINDOW
            calendar = self.reconciler.resolve_calendar(calendar_id or settings.calendar_id)
            assignments = self._fetch(settings)
            changed = [
                a
                for a in assignments
                if a.updated_at is not None
                and a.updated_at > window
                and settings.is_course_synced(a.course_id)
            ]
            self.logger.info(
                f"Processing {len(changed)} assignment(s) updated since {window.isoformat()}..."
            )

            result = SyncResult()
            offset = settings.reminder_offset
            for assignment in changed:
                if not self._should_continue():
                    self.logger.info("Sync cancelled; stopping before remaining assignments")
                    break
                try:
                    tracked = self.reconciler.has_event(assignment.id, calendar)
                    if assignment.due_at is None:
                        if tracked:
                            self.reconciler.delete(assignment.id, calendar)
                            result.events_deleted += 1
                    elif tracked:
                        self.reconciler.update(assignment, calendar, offset)
                        result.events_updated += 1
                    else:
                        self.reconciler.create(assignment, calendar, offset)
                        result.events_created += 1
                except Exception as e:
                    result.record_error(f"Assignment {assignment.id}", e)
                    self.logger.error(f"Assignment {assignment.id}: [{error_code(e)}] {e}")

            if sync_reminders and self.reminders is not None and self._should_continue():
                result.reminders = self.reminders.apply_changes(
                    changed, course_names=self._course_names()
                )
            return result

        return self._run_pass("incremental sync", body)

    def cancel_sync(self) -> bool:
        """Flip a running pass to Cancelled. In-flight gateway calls still complete."""
        if self.status is SyncStatus.SYNCING:
            self._set_status(SyncStatus.CANCELLED)
            self.logger.info("Sync cancellation requested")
            return True
        return False

    # ------------------------------------------------------------------ #
    # Status                                                              #
    # ------------------------------------------------------------------ #

    def is_sync_needed(self) -> bool:
        settings = self.settings_provider.load()
        if not settings.is_enabled or not settings.auto_sync:
            return False
        if self.last_sync_time is None:
            return True
        return self.clock() - self.last_sync_time >= settings.auto_sync_interval

    def get_sync_statistics(self) -> dict[str, Any]:
        settings = self.settings_provider.load()
        result = self.last_sync_result
        return {
            "current_status": self.status.value,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "last_sync_result": result.to_dict() if result else None,
            "last_error": self.last_error,
            "sync_settings": {
                "is_enabled": settings.is_enabled,
                "enabled_courses_count": len(settings.enabled_course_ids),
                "reminder_offset_minutes": int(settings.reminder_offset.total_seconds() // 60),
                "auto_sync": settings.auto_sync,
                "auto_sync_interval_minutes": int(
                    settings.auto_sync_interval.total_seconds() // 60
                ),
            },
        }

    def reset(self) -> None:
        """Return to Idle and forget the last pass."""
        if self._lock.locked():
            raise SyncInProgressError("Cannot reset while a sync is running")
        self._set_status(SyncStatus.IDLE)
        self.last_sync_time = None
        self.last_sync_result = None
        self.last_error = None

"""
Assignment → local reminder coordination.

ReminderCoordinator owns the reminder mapping stored in ``reminder_state``.
Notification ids are deterministic so cancel and replace stay idempotent:
``assignment_reminder_{id}`` for the primary reminder and
``assignment_reminder_{id}_{n}`` for the multi-reminder variants.
"""

import logging
from collections.abc import Callable
from collections.abc import Iterable
from datetime import datetime
from datetime import timedelta
from typing import Any

from assignment_sync.db import StateDatabase
from assignment_sync.gateways import NotificationScheduler
from assignment_sync.gateways import SettingsStore
from assignment_sync.models import Assignment
from assignment_sync.models import NoDueDateError
from assignment_sync.models import NotificationNotFoundError
from assignment_sync.models import ReminderBatchResult
from assignment_sync.models import ReminderSyncResult
from assignment_sync.models import ScheduledReminder
from assignment_sync.models import SyncSettings
from assignment_sync.models import error_code
from assignment_sync.models import utc_now

REMINDER_PREFIX = "assignment_reminder_"
NEW_ASSIGNMENT_PREFIX = "new_assignment_"
UPDATE_ASSIGNMENT_PREFIX = "update_assignment_"


def reminder_id(assignment_id: int, index: int | None = None) -> str:
    if index is None:
        return f"{REMINDER_PREFIX}{assignment_id}"
    return f"{REMINDER_PREFIX}{assignment_id}_{index}"


def has_significant_change(old: Assignment, new: Assignment) -> bool:
    """Exact inequality on the fields a student would want to hear about."""
    return (
        old.name != new.name
        or old.description != new.description
        or old.due_at != new.due_at
        or old.points_possible != new.points_possible
    )


def describe_changes(old: Assignment, new: Assignment) -> str:
    changes = []
    if old.name != new.name:
        changes.append("title changed")
    if old.due_at != new.due_at:
        changes.append("due date changed")
    if old.points_possible != new.points_possible:
        changes.append("points changed")
    if old.description != new.description:
        changes.append("description updated")
    return ", ".join(changes) if changes else "Assignment details updated"


def humanize_delta(delta: timedelta) -> str:
    minutes = int(delta.total_seconds() // 60)
    if minutes >= 24 * 60 and minutes % (24 * 60) == 0:
        days = minutes // (24 * 60)
        return f"in {days} day{'s' if days != 1 else ''}"
    if minutes >= 60 and minutes % 60 == 0:
        hours = minutes // 60
        return f"in {hours} hour{'s' if hours != 1 else ''}"
    return f"in {minutes} minute{'s' if minutes != 1 else ''}"


def _course_suffix(course_name: str | None) -> str:
    return f" in {course_name}" if course_name else ""


def reminder_payload(
    assignment: Assignment, fire_at: datetime, course_name: str | None = None
) -> dict[str, Any]:
    return {
        "type": "assignment_reminder",
        "title": "Assignment Due Soon",
        "body": (
            f"{assignment.name} is due {humanize_delta(assignment.due_at - fire_at)}"
            f"{_course_suffix(course_name)}"
        ),
        "assignment_id": assignment.id,
        "course_id": assignment.course_id,
        "course_name": course_name,
        "due_at": assignment.due_at.isoformat(),
    }


class ReminderCoordinator:
    """Schedules, reschedules and cancels the local reminder for each assignment."""

    def __init__(
        self,
        scheduler: NotificationScheduler,
        state_db: StateDatabase,
        settings_provider: SettingsStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.scheduler = scheduler
        self.state_db = state_db
        self.settings_provider = settings_provider
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ #
    # Single-assignment operations                                        #
    # ------------------------------------------------------------------ #

    def schedule(
        self,
        assignment: Assignment,
        offset: timedelta | None = None,
        course_name: str | None = None,
    ) -> ScheduledReminder | None:
        """
        Schedule the primary reminder at ``due_at - offset``.

        Raises NoDueDateError without a due date. Returns None (success, no
        gateway call) when reminders are disabled globally or for the course,
        or when the reminder time has already passed.
        """
        if assignment.due_at is None:
            raise NoDueDateError(f"Assignment {assignment.id} has no due date")
        return self._schedule(assignment, offset, course_name, self.settings_provider.load())

    def _schedule(
        self,
        assignment: Assignment,
        offset: timedelta | None,
        course_name: str | None,
        settings: SyncSettings,
    ) -> ScheduledReminder | None:
        if not settings.reminders_active:
            self.logger.debug(f"Reminders disabled; skipping assignment {assignment.id}")
            return None
        if not settings.is_course_notified(assignment.course_id):
            self.logger.debug(
                f"Notifications disabled for course {assignment.course_id}; "
                f"skipping assignment {assignment.id}"
            )
            return None

        fire_at = assignment.due_at - (offset if offset is not None else settings.reminder_offset)
        if fire_at < self.clock():
            self.logger.debug(f"Reminder time for assignment {assignment.id} already passed")
            return None

        notification_id = reminder_id(assignment.id)
        self.scheduler.schedule(
            notification_id, fire_at, reminder_payload(assignment, fire_at, course_name)
        )
        reminder = ScheduledReminder(
            assignment_id=assignment.id,
            notification_id=notification_id,
            scheduled_at=fire_at,
            due_at=assignment.due_at,
            course_id=assignment.course_id,
        )
        self.state_db.upsert_reminder(reminder)
        self.state_db.commit()
        self.logger.debug(f"Scheduled {notification_id} at {fire_at.isoformat()}")
        return reminder

    def update(
        self,
        assignment: Assignment,
        offset: timedelta | None = None,
        course_name: str | None = None,
    ) -> ScheduledReminder | None:
        """Cancel then reschedule; no reminder is active between the two calls."""
        self.cancel(assignment.id)
        return self.schedule(assignment, offset, course_name)

    def cancel(self, assignment_id: int) -> bool:
        """
        Cancel every reminder for the assignment.

        Idempotent: an id the scheduler does not know counts as cancelled.
        Returns True if a tracked reminder was removed.
        """
        ids = {reminder_id(assignment_id)}
        ids.update(r.notification_id for r in self.state_db.get_reminders_for(assignment_id))
        for notification_id in sorted(ids):
            self._cancel_notification(notification_id)
        removed = self.state_db.delete_reminders(assignment_id)
        self.state_db.commit()
        return removed > 0

    def _cancel_notification(self, notification_id: str) -> None:
        try:
            self.scheduler.cancel(notification_id)
        except NotificationNotFoundError:
            self.logger.debug(f"Notification {notification_id} not scheduled; nothing to cancel")

    def schedule_custom(
        self,
        assignment: Assignment,
        offsets: Iterable[timedelta],
        course_name: str | None = None,
    ) -> list[ScheduledReminder]:
        """Schedule one indexed variant per offset still in the future."""
        if assignment.due_at is None:
            raise NoDueDateError(f"Assignment {assignment.id} has no due date")
        settings = self.settings_provider.load()
        if not settings.reminders_active or not settings.is_course_notified(assignment.course_id):
            return []

        now = self.clock()
        scheduled = []
        for index, offset in enumerate(offsets):
            fire_at = assignment.due_at - offset
            if fire_at < now:
                continue
            notification_id = reminder_id(assignment.id, index)
            self.scheduler.schedule(
                notification_id, fire_at, reminder_payload(assignment, fire_at, course_name)
            )
            reminder = ScheduledReminder(
                assignment_id=assignment.id,
                notification_id=notification_id,
                scheduled_at=fire_at,
                due_at=assignment.due_at,
                course_id=assignment.course_id,
                is_primary=False,
            )
            self.state_db.upsert_reminder(reminder)
            scheduled.append(reminder)
        self.state_db.commit()
        return scheduled

    # ------------------------------------------------------------------ #
    # Batch operations                                                    #
    # ------------------------------------------------------------------ #

    def schedule_many(
        self,
        assignments: Iterable[Assignment],
        offset: timedelta | None = None,
        course_names: dict[int, str] | None = None,
    ) -> ReminderBatchResult:
        """Schedule reminders for many assignments; one failure never aborts the batch."""
        course_names = course_names or {}
        settings = self.settings_provider.load()
        result = ReminderBatchResult()
        for assignment in assignments:
            if assignment.due_at is None:
                result.skipped += 1
                continue
            try:
                reminder = self._schedule(
                    assignment, offset, course_names.get(assignment.course_id), settings
                )
            except Exception as e:
                result.failed += 1
                result.errors.append(f"Assignment {assignment.id}: [{error_code(e)}] {e}")
                self.logger.error(f"Assignment {assignment.id}: reminder failed [{error_code(e)}]")
                continue
            if reminder is None:
                result.skipped += 1
            else:
                result.scheduled += 1
        return result

    def cancel_many(self, assignment_ids: Iterable[int]) -> int:
        """Cancel reminders for each id, continuing past failures. Returns ids cancelled."""
        cancelled = 0
        for assignment_id in assignment_ids:
            try:
                self.cancel(assignment_id)
                cancelled += 1
            except Exception as e:
                self.logger.warning(
                    f"Assignment {assignment_id}: cancel failed [{error_code(e)}]"
                )
        return cancelled

    def sync_all(
        self,
        assignments: Iterable[Assignment],
        course_names: dict[int, str] | None = None,
        offset: timedelta | None = None,
    ) -> ReminderSyncResult:
        """
        Reconcile reminders against the full assignment set.

        New due-dated ids are scheduled, tracked ids whose due date moved are
        rescheduled, and tracked ids no longer present (or without a due date)
        are cancelled.
        """
        course_names = course_names or {}
        settings = self.settings_provider.load()
        result = ReminderSyncResult()

        current = {a.id: a for a in assignments if a.due_at is not None}
        existing = {r.assignment_id: r for r in self.state_db.all_reminders() if r.is_primary}

        for aid in sorted(current.keys() - existing.keys()):
            assignment = current[aid]
            try:
                if self._schedule(
                    assignment, offset, course_names.get(assignment.course_id), settings
                ):
                    result.scheduled += 1
            except Exception as e:
                self._record(result, f"Failed to schedule reminder for assignment {aid}", e)

        for aid in sorted(current.keys() & existing.keys()):
            assignment = current[aid]
            if existing[aid].due_at == assignment.due_at:
                continue
            try:
                self.cancel(aid)
                self._schedule(assignment, offset, course_names.get(assignment.course_id), settings)
                result.updated += 1
            except Exception as e:
                self._record(result, f"Failed to update reminder for assignment {aid}", e)

        for aid in sorted(existing.keys() - current.keys()):
            try:
                self.cancel(aid)
                result.removed += 1
            except Exception as e:
                self._record(result, f"Failed to remove reminder for assignment {aid}", e)

        self.logger.info(
            f"Reminder sync: {result.scheduled} scheduled, {result.updated} updated, "
            f"{result.removed} removed, {result.failed} error(s)"
        )
        return result

    def apply_changes(
        self,
        changed: Iterable[Assignment],
        removed_ids: Iterable[int] = (),
        course_names: dict[int, str] | None = None,
        offset: timedelta | None = None,
    ) -> ReminderSyncResult:
        """Reconcile reminders for a subset of assignments (incremental passes)."""
        course_names = course_names or {}
        settings = self.settings_provider.load()
        result = ReminderSyncResult()

        for assignment in changed:
            aid = assignment.id
            try:
                tracked = self.state_db.get_reminder(aid)
                if assignment.due_at is None:
                    if tracked is not None:
                        self.cancel(aid)
                        result.removed += 1
                elif tracked is not None:
                    if tracked.due_at != assignment.due_at:
                        self.cancel(aid)
                        self._schedule(
                            assignment, offset, course_names.get(assignment.course_id), settings
                        )
                        result.updated += 1
                elif self._schedule(
                    assignment, offset, course_names.get(assignment.course_id), settings
                ):
                    result.scheduled += 1
            except Exception as e:
                self._record(result, f"Reminder for assignment {aid}", e)

        for aid in removed_ids:
            try:
                if self.cancel(aid):
                    result.removed += 1
            except Exception as e:
                self._record(result, f"Failed to remove reminder for assignment {aid}", e)
        return result

    def _record(self, result: ReminderSyncResult, label: str, error: Exception) -> None:
        result.errors.append(f"{label}: [{error_code(error)}] {error}")
        self.logger.error(f"{label} [{error_code(error)}]")

    def reschedule_all(
        self,
        assignments: Iterable[Assignment],
        course_names: dict[int, str] | None = None,
    ) -> ReminderBatchResult:
        """Cancel every tracked reminder, then schedule afresh with current settings."""
        self.cancel_many(sorted({r.assignment_id for r in self.state_db.all_reminders()}))
        return self.schedule_many(assignments, course_names=course_names)

    def cancel_all(self) -> int:
        return self.cancel_many(sorted({r.assignment_id for r in self.state_db.all_reminders()}))

    def cleanup_expired(self) -> int:
        """Drop mapping rows whose fire time has passed. Returns rows removed."""
        now = self.clock()
        cleaned = 0
        for reminder in self.state_db.all_reminders():
            if reminder.scheduled_at < now:
                self._cancel_notification(reminder.notification_id)
                self.state_db.delete_reminder(reminder.notification_id)
                cleaned += 1
        self.state_db.commit()
        if cleaned:
            self.logger.info(f"Cleaned up {cleaned} expired reminder(s)")
        return cleaned

    # ------------------------------------------------------------------ #
    # Queries                                                             #
    # ------------------------------------------------------------------ #

    def reminder_statistics(self) -> dict[str, Any]:
        now = self.clock()
        reminders = self.state_db.all_reminders()
        by_course: dict[int, int] = {}
        for reminder in reminders:
            if reminder.course_id is not None:
                by_course[reminder.course_id] = by_course.get(reminder.course_id, 0) + 1
        return {
            "total_reminders": len(reminders),
            "pending_reminders": sum(1 for r in reminders if r.scheduled_at >= now),
            "expired_reminders": sum(1 for r in reminders if r.scheduled_at < now),
            "reminders_by_course": by_course,
        }

    def has_reminder(self, assignment_id: int) -> bool:
        return self.next_reminder_time(assignment_id) is not None

    def next_reminder_time(self, assignment_id: int) -> datetime | None:
        now = self.clock()
        pending = [
            r.scheduled_at
            for r in self.state_db.get_reminders_for(assignment_id)
            if r.scheduled_at >= now
        ]
        return min(pending) if pending else None

    # ------------------------------------------------------------------ #
    # Change-driven triggers                                              #
    # ------------------------------------------------------------------ #

    def handle_new_assignment(
        self, assignment: Assignment, course_name: str | None = None
    ) -> ScheduledReminder | None:
        """Show a new-assignment alert (if enabled) and schedule its reminder."""
        settings = self.settings_provider.load()
        if (
            settings.notifications_enabled
            and settings.new_assignment_notifications
            and settings.is_course_notified(assignment.course_id)
        ):
            self.scheduler.schedule(
                f"{NEW_ASSIGNMENT_PREFIX}{assignment.id}",
                self.clock(),
                {
                    "type": "new_assignment",
                    "title": "New Assignment",
                    "body": f"{assignment.name} has been posted{_course_suffix(course_name)}",
                    "assignment_id": assignment.id,
                    "course_id": assignment.course_id,
                },
            )
            self.logger.debug(f"Queued new-assignment alert for assignment {assignment.id}")

        if assignment.due_at is None:
            return None
        return self._schedule(assignment, None, course_name, settings)

    def handle_assignment_update(
        self, old: Assignment, new: Assignment, course_name: str | None = None
    ) -> bool:
        """
        React to a changed assignment.

        Shows an update alert when the change is significant and keeps the
        reminder in step with the due date. Returns True if an alert was queued.
        """
        settings = self.settings_provider.load()
        notified = False
        if (
            settings.notifications_enabled
            and settings.assignment_update_notifications
            and settings.is_course_notified(new.course_id)
            and has_significant_change(old, new)
        ):
            self.scheduler.schedule(
                f"{UPDATE_ASSIGNMENT_PREFIX}{new.id}",
                self.clock(),
                {
                    "type": "assignment_update",
                    "title": "Assignment Updated",
                    "body": f"{new.name}: {describe_changes(old, new)}{_course_suffix(course_name)}",
                    "assignment_id": new.id,
                    "course_id": new.course_id,
                    "changes": describe_changes(old, new),
                },
            )
            notified = True

        if old.due_at != new.due_at:
            self.cancel(new.id)
            if new.due_at is not None:
                self._schedule(new, None, course_name, settings)
        return notified

    def handle_assignment_removal(self, assignment_id: int) -> None:
        """Cancel the reminder and any queued alerts for a removed assignment."""
        self.cancel(assignment_id)
        self._cancel_notification(f"{NEW_ASSIGNMENT_PREFIX}{assignment_id}")
        self._cancel_notification(f"{UPDATE_ASSIGNMENT_PREFIX}{assignment_id}")

"""
SyncEngine: the explicitly constructed owner of the sync components.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from typing import Any

from assignment_sync.db import StateDatabase
from assignment_sync.gateways import AssignmentSource
from assignment_sync.gateways import CalendarGateway
from assignment_sync.gateways import DeviceConditionsProvider
from assignment_sync.gateways import NotificationScheduler
from assignment_sync.gateways import SettingsStore
from assignment_sync.models import Assignment
from assignment_sync.models import PermissionStatus
from assignment_sync.models import ScheduledReminder
from assignment_sync.models import SyncResult
from assignment_sync.models import SyncStatistics
from assignment_sync.models import SyncStatus
from assignment_sync.models import utc_now
from assignment_sync.sync.conflicts import ConflictResolver
from assignment_sync.sync.events import EventReconciler
from assignment_sync.sync.frequency import AdaptationPolicy
from assignment_sync.sync.frequency import AdaptiveFrequencyManager
from assignment_sync.sync.frequency import RecommendationPolicy
from assignment_sync.sync.orchestrator import SyncOrchestrator
from assignment_sync.sync.reminders import ReminderCoordinator


class SyncEngine:
    """Wires the reconciler, reminders, frequency manager and orchestrator together."""

    def __init__(
        self,
        calendar: CalendarGateway,
        source: AssignmentSource,
        notifier: NotificationScheduler,
        state_db: StateDatabase,
        settings_store: SettingsStore,
        conditions: DeviceConditionsProvider,
        clock: Callable[[], datetime] = utc_now,
        adaptation_policy: AdaptationPolicy | None = None,
        recommendation_policy: RecommendationPolicy | None = None,
    ):
        self.calendar = calendar
        self.settings_store = settings_store
        self.logger = logging.getLogger(__name__)

        self.reconciler = EventReconciler(calendar, clock)
        self.resolver = ConflictResolver(self.reconciler)
        self.reminders = ReminderCoordinator(notifier, state_db, settings_store, clock)
        self.frequency = AdaptiveFrequencyManager.from_settings(
            settings_store.load(),
            state_db,
            conditions,
            clock=clock,
            adaptation_policy=adaptation_policy,
            recommendation_policy=recommendation_policy,
        )
        self.orchestrator = SyncOrchestrator(
            source,
            self.reconciler,
            settings_store,
            reminders=self.reminders,
            frequency=self.frequency,
            resolver=self.resolver,
            clock=clock,
        )

    # -- Lifecycle -----------------------------------------------------------

    def init(self) -> PermissionStatus:
        """Make sure calendar access is granted, asking once if it is not."""
        status = self.calendar.check_permissions()
        if status is not PermissionStatus.GRANTED:
            self.logger.info(f"Calendar permission {status.value}; requesting access")
            status = self.calendar.request_permissions()
        self.logger.debug(f"Calendar permission: {status.value}")
        return status

    def reset(self) -> None:
        """Forget pass state, the event cache and the sync history."""
        self.orchestrator.reset()
        self.reconciler.clear_cache()
        self.frequency.clear_history()

    @property
    def status(self) -> SyncStatus:
        return self.orchestrator.status

    # -- Entry points --------------------------------------------------------

    def perform_full_sync(self, **kwargs) -> SyncResult:
        return self.orchestrator.perform_full_sync(**kwargs)

    def perform_incremental_sync(self, since: datetime | None = None, **kwargs) -> SyncResult:
        return self.orchestrator.perform_incremental_sync(since=since, **kwargs)

    def cancel_sync(self) -> bool:
        return self.orchestrator.cancel_sync()

    def schedule_assignment_reminder(
        self,
        assignment: Assignment,
        offset: timedelta | None = None,
        course_name: str | None = None,
    ) -> ScheduledReminder | None:
        return self.reminders.schedule(assignment, offset, course_name)

    def cancel_assignment_reminder(self, assignment_id: int) -> bool:
        return self.reminders.cancel(assignment_id)

    def get_adapted_sync_interval(self) -> timedelta:
        return self.frequency.get_adapted_interval()

    def should_sync_now(self) -> bool:
        return self.frequency.should_sync_now()

    def get_sync_statistics(self) -> SyncStatistics:
        return self.frequency.statistics()

    def sync_status(self) -> dict[str, Any]:
        return self.orchestrator.get_sync_statistics()

"""
Structural contracts for the collaborators the engine talks to.

Concrete implementations live in eds_client (calendar), canvas_client
(assignments), notifier (local alerts) and device (battery/network); tests
use the in-memory fakes in tests/fake_client.py.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from typing import Protocol

from assignment_sync.models import Assignment
from assignment_sync.models import Calendar
from assignment_sync.models import CalendarEvent
from assignment_sync.models import DeviceConditions
from assignment_sync.models import PermissionDeniedError
from assignment_sync.models import PermissionStatus
from assignment_sync.models import SyncSettings

logger = logging.getLogger(__name__)


class AssignmentSource(Protocol):
    def list_assignments(self, course_ids: Iterable[int] | None = None) -> list[Assignment]:
        """Fetch current assignments; raises NetworkFailureError on transport failure."""
        ...

    def course_names(self) -> dict[int, str]: ...


class CalendarGateway(Protocol):
    def check_permissions(self) -> PermissionStatus: ...

    def request_permissions(self) -> PermissionStatus: ...

    def get_default_calendar(self) -> Calendar | None: ...

    def list_calendars(self) -> list[Calendar]: ...

    def find_events_by_metadata(
        self, calendar_id: str, metadata: dict[str, str]
    ) -> list[CalendarEvent]: ...

    def create_event(self, calendar_id: str, event: CalendarEvent) -> str: ...

    def update_event(self, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        """Replace an event; raises EventNotFoundError if it no longer exists."""
        ...

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Remove an event; raises EventNotFoundError if it no longer exists."""
        ...


class NotificationScheduler(Protocol):
    def schedule(self, notification_id: str, fire_at: datetime, payload: dict[str, Any]) -> None:
        """Schedule (or replace) the alert with this id."""
        ...

    def cancel(self, notification_id: str) -> None:
        """Cancel an alert; raises NotificationNotFoundError for unknown ids."""
        ...


class DeviceConditionsProvider(Protocol):
    def current(self) -> DeviceConditions: ...


class SettingsStore(Protocol):
    def load(self) -> SyncSettings: ...


def require_permission(gateway: CalendarGateway, operation: str) -> None:
    """Raise PermissionDeniedError unless calendar access is currently granted."""
    status = gateway.check_permissions()
    if status is not PermissionStatus.GRANTED:
        logger.warning(f"Calendar permission {status.value}; refusing {operation}")
        raise PermissionDeniedError(
            f"Calendar permission required for {operation}. Current status: {status.value}"
        )

"""
Shared pytest fixtures and assignment helpers.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from assignment_sync.config import StaticSettingsStore
from assignment_sync.db import StateDatabase
from assignment_sync.models import Assignment
from assignment_sync.models import SyncSettings
from assignment_sync.sync import SyncEngine
from assignment_sync.sync.events import EventReconciler
from assignment_sync.sync.reminders import ReminderCoordinator
from tests.fake_client import FakeAssignmentSource
from tests.fake_client import FakeCalendarGateway
from tests.fake_client import FakeDeviceConditions
from tests.fake_client import FakeNotificationScheduler

CAL_ID = "cal-1"
NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_assignment(
    assignment_id: int,
    due_in: timedelta | None = timedelta(days=2),
    course_id: int = 101,
    name: str | None = None,
    updated_at: datetime | None = None,
    **kwargs,
) -> Assignment:
    """Assignment due ``due_in`` after NOW (no due date when ``due_in`` is None)."""
    return Assignment(
        id=assignment_id,
        course_id=course_id,
        name=name or f"Assignment {assignment_id}",
        due_at=NOW + due_in if due_in is not None else None,
        updated_at=updated_at or NOW - timedelta(hours=1),
        **kwargs,
    )


class Clock:
    """Settable clock; call it to read the time."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def gateway():
    return FakeCalendarGateway()


@pytest.fixture
def scheduler():
    return FakeNotificationScheduler()


@pytest.fixture
def source():
    return FakeAssignmentSource(names={101: "Algorithms", 202: "Databases"})


@pytest.fixture
def conditions():
    return FakeDeviceConditions()


@pytest.fixture
def settings_store():
    return StaticSettingsStore(SyncSettings(is_enabled=True))


@pytest.fixture
def reconciler(gateway, clock):
    return EventReconciler(gateway, clock)


@pytest.fixture
def reminders(scheduler, state_db, settings_store, clock):
    return ReminderCoordinator(scheduler, state_db, settings_store, clock)


@pytest.fixture
def engine(gateway, source, scheduler, state_db, settings_store, conditions, clock):
    return SyncEngine(
        calendar=gateway,
        source=source,
        notifier=scheduler,
        state_db=state_db,
        settings_store=settings_store,
        conditions=conditions,
        clock=clock,
    )

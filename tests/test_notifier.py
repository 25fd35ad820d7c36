"""
Tests for the state-DB backed notification queue.
"""

from datetime import timedelta

import pytest

from assignment_sync.models import NotificationNotFoundError
from assignment_sync.notifier import QueuedNotificationScheduler
from assignment_sync.sync.reminders import ReminderCoordinator
from tests.conftest import NOW
from tests.conftest import make_assignment


@pytest.fixture
def notifier(state_db):
    return QueuedNotificationScheduler(state_db)


def test_schedule_and_cancel(notifier):
    notifier.schedule("n1", NOW, {"title": "Hi"})
    assert [i["notification_id"] for i in notifier.pending()] == ["n1"]

    notifier.cancel("n1")
    assert notifier.pending() == []


def test_cancel_unknown_raises(notifier):
    with pytest.raises(NotificationNotFoundError):
        notifier.cancel("missing")


def test_deliver_due_dequeues_only_due_items(notifier):
    notifier.schedule("past", NOW - timedelta(minutes=5), {"body": "a"})
    notifier.schedule("future", NOW + timedelta(hours=1), {"body": "b"})

    delivered = []
    assert notifier.deliver_due(NOW, delivered.append) == 1
    assert [i["payload"]["body"] for i in delivered] == ["a"]
    assert [i["notification_id"] for i in notifier.pending()] == ["future"]


def test_works_as_reminder_scheduler(notifier, state_db, settings_store, clock):
    coordinator = ReminderCoordinator(notifier, state_db, settings_store, clock)
    coordinator.schedule(make_assignment(1))
    assert [i["notification_id"] for i in notifier.pending()] == ["assignment_reminder_1"]

    assert coordinator.cancel(1) is True
    assert notifier.pending() == []
    # a second cancel reaches the queue and is absorbed
    assert coordinator.cancel(1) is False

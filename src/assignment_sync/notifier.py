"""
Local notification scheduler backed by the state database queue.

Alerts are persisted with their fire time; ``deliver_due`` hands the ones
whose time has come to a callback (the CLI prints them) and drops them.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from assignment_sync.db import StateDatabase
from assignment_sync.models import NotificationNotFoundError

logger = logging.getLogger(__name__)


class QueuedNotificationScheduler:
    def __init__(self, state_db: StateDatabase):
        self.state_db = state_db

    def schedule(self, notification_id: str, fire_at: datetime, payload: dict[str, Any]) -> None:
        self.state_db.enqueue_notification(notification_id, fire_at, payload)
        logger.debug(f"Queued notification {notification_id} for {fire_at.isoformat()}")

    def cancel(self, notification_id: str) -> None:
        if not self.state_db.remove_notification(notification_id):
            raise NotificationNotFoundError(f"Notification {notification_id} is not queued")
        logger.debug(f"Cancelled notification {notification_id}")

    def pending(self) -> list[dict[str, Any]]:
        return self.state_db.queued_notifications()

    def due(self, now: datetime) -> list[dict[str, Any]]:
        return self.state_db.queued_notifications(due_before=now)

    def deliver_due(self, now: datetime, deliver: Callable[[dict[str, Any]], None]) -> int:
        """Deliver and dequeue every alert due at ``now``. Returns the number delivered."""
        delivered = 0
        for item in self.due(now):
            deliver(item)
            self.state_db.remove_notification(item["notification_id"])
            delivered += 1
        if delivered:
            self.state_db.commit()
            logger.info(f"Delivered {delivered} notification(s)")
        return delivered

"""
SQLite state persistence for reminders, sync history and queued alerts.
"""

import json
import logging
import sqlite3
import time
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Any

from assignment_sync.models import AssignmentSyncError
from assignment_sync.models import ScheduledReminder
from assignment_sync.models import SyncRecord

DEFAULT_HISTORY_RETENTION = 100


def _to_epoch(value: datetime | None) -> float | None:
    return None if value is None else value.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    return None if value is None else datetime.fromtimestamp(value, timezone.utc)


class StateDatabase:
    """Manages the SQLite state database shared by the sync components."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self.logger = logging.getLogger(__name__)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise AssignmentSyncError(f"Cannot open state database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create tables and indexes if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS reminder_state (
                notification_id TEXT PRIMARY KEY,
                assignment_id INTEGER NOT NULL,
                is_primary INTEGER NOT NULL DEFAULT 1,
                scheduled_at REAL NOT NULL,
                due_at REAL,
                course_id INTEGER,
                created_at INTEGER NOT NULL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS reminder_state_primary
                ON reminder_state(assignment_id) WHERE is_primary = 1;

            CREATE TABLE IF NOT EXISTS sync_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                success INTEGER NOT NULL,
                duration_ms INTEGER,
                error TEXT
            );

            CREATE TABLE IF NOT EXISTS notification_queue (
                notification_id TEXT PRIMARY KEY,
                fire_at REAL NOT NULL,
                payload TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
        """)
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Reminder mapping                                                    #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> ScheduledReminder:
        return ScheduledReminder(
            assignment_id=row["assignment_id"],
            notification_id=row["notification_id"],
            scheduled_at=_from_epoch(row["scheduled_at"]),
            due_at=_from_epoch(row["due_at"]),
            course_id=row["course_id"],
            is_primary=bool(row["is_primary"]),
        )

    def get_reminder(self, assignment_id: int) -> ScheduledReminder | None:
        """Return the primary reminder for an assignment, if tracked."""
        cursor = self.conn.execute(
            "SELECT * FROM reminder_state WHERE assignment_id = ? AND is_primary = 1 LIMIT 1",
            (assignment_id,),
        )
        row = cursor.fetchone()
        return self._row_to_reminder(row) if row else None

    def get_reminders_for(self, assignment_id: int) -> list[ScheduledReminder]:
        """Return every reminder (primary and variants) for an assignment."""
        cursor = self.conn.execute(
            "SELECT * FROM reminder_state WHERE assignment_id = ? "
            "ORDER BY is_primary DESC, notification_id",
            (assignment_id,),
        )
        return [self._row_to_reminder(row) for row in cursor.fetchall()]

    def all_reminders(self) -> list[ScheduledReminder]:
        cursor = self.conn.execute(
            "SELECT * FROM reminder_state ORDER BY assignment_id, is_primary DESC, notification_id"
        )
        return [self._row_to_reminder(row) for row in cursor.fetchall()]

    def upsert_reminder(self, reminder: ScheduledReminder):
        """Insert or replace a reminder row keyed by notification id."""
        if reminder.is_primary:
            # A re-keyed primary replaces whatever primary the assignment had.
            self.conn.execute(
                "DELETE FROM reminder_state WHERE assignment_id = ? AND is_primary = 1 "
                "AND notification_id != ?",
                (reminder.assignment_id, reminder.notification_id),
            )
        self.conn.execute(
            "INSERT OR REPLACE INTO reminder_state "
            "(notification_id, assignment_id, is_primary, scheduled_at, due_at, course_id, "
            " created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                reminder.notification_id,
                reminder.assignment_id,
                1 if reminder.is_primary else 0,
                _to_epoch(reminder.scheduled_at),
                _to_epoch(reminder.due_at),
                reminder.course_id,
                int(time.time()),
            ),
        )

    def delete_reminder(self, notification_id: str):
        self.conn.execute(
            "DELETE FROM reminder_state WHERE notification_id = ?", (notification_id,)
        )

    def delete_reminders(self, assignment_id: int) -> int:
        """Drop every reminder row for an assignment. Returns rows removed."""
        cursor = self.conn.execute(
            "DELETE FROM reminder_state WHERE assignment_id = ?", (assignment_id,)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Sync history                                                        #
    # ------------------------------------------------------------------ #

    def append_sync_record(self, record: SyncRecord, retention: int = DEFAULT_HISTORY_RETENTION):
        """Append a history record and trim to the newest ``retention`` rows."""
        duration_ms = (
            None if record.duration is None else int(record.duration.total_seconds() * 1000)
        )
        self.conn.execute(
            "INSERT INTO sync_history (timestamp, success, duration_ms, error) "
            "VALUES (?, ?, ?, ?)",
            (_to_epoch(record.timestamp), 1 if record.success else 0, duration_ms, record.error),
        )
        self.conn.execute(
            "DELETE FROM sync_history WHERE id NOT IN "
            "(SELECT id FROM sync_history ORDER BY timestamp DESC, id DESC LIMIT ?)",
            (retention,),
        )

    def sync_history(self) -> list[SyncRecord]:
        """All retained history records, oldest first."""
        cursor = self.conn.execute(
            "SELECT timestamp, success, duration_ms, error FROM sync_history "
            "ORDER BY timestamp, id"
        )
        return [
            SyncRecord(
                timestamp=_from_epoch(row["timestamp"]),
                success=bool(row["success"]),
                duration=(
                    None
                    if row["duration_ms"] is None
                    else timedelta(milliseconds=row["duration_ms"])
                ),
                error=row["error"],
            )
            for row in cursor.fetchall()
        ]

    def clear_sync_history(self):
        self.conn.execute("DELETE FROM sync_history")

    # ------------------------------------------------------------------ #
    # Notification queue                                                  #
    # ------------------------------------------------------------------ #

    def enqueue_notification(self, notification_id: str, fire_at: datetime, payload: dict[str, Any]):
        self.conn.execute(
            "INSERT OR REPLACE INTO notification_queue "
            "(notification_id, fire_at, payload, created_at) VALUES (?, ?, ?, ?)",
            (notification_id, _to_epoch(fire_at), json.dumps(payload), int(time.time())),
        )

    def remove_notification(self, notification_id: str) -> bool:
        """Delete a queued alert. Returns False if the id was unknown."""
        cursor = self.conn.execute(
            "DELETE FROM notification_queue WHERE notification_id = ?", (notification_id,)
        )
        return cursor.rowcount > 0

    def queued_notifications(self, due_before: datetime | None = None) -> list[dict[str, Any]]:
        """Queued alerts ordered by fire time, optionally only those due before a cutoff."""
        if due_before is None:
            cursor = self.conn.execute(
                "SELECT * FROM notification_queue ORDER BY fire_at, notification_id"
            )
        else:
            cursor = self.conn.execute(
                "SELECT * FROM notification_queue WHERE fire_at <= ? "
                "ORDER BY fire_at, notification_id",
                (_to_epoch(due_before),),
            )
        return [
            {
                "notification_id": row["notification_id"],
                "fire_at": _from_epoch(row["fire_at"]),
                "payload": json.loads(row["payload"]),
            }
            for row in cursor.fetchall()
        ]

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.commit()
            self.conn.close()
            self.conn = None


def query_status(db_path: Path) -> dict[str, Any] | None:
    """
    Return aggregate counts for the status command.

    Returns None when the DB file does not exist; never creates one.
    """
    if not db_path.exists():
        return None
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        status: dict[str, Any] = {
            "reminders": 0,
            "syncs": 0,
            "successful_syncs": 0,
            "last_sync_at": None,
            "queued_notifications": 0,
        }
        if "reminder_state" in tables:
            status["reminders"] = conn.execute(
                "SELECT COUNT(*) FROM reminder_state WHERE is_primary = 1"
            ).fetchone()[0]
        if "sync_history" in tables:
            row = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS ok, "
                "MAX(timestamp) AS last FROM sync_history"
            ).fetchone()
            status["syncs"] = row["total"]
            status["successful_syncs"] = row["ok"]
            status["last_sync_at"] = _from_epoch(row["last"])
        if "notification_queue" in tables:
            status["queued_notifications"] = conn.execute(
                "SELECT COUNT(*) FROM notification_queue"
            ).fetchone()[0]
        return status
    finally:
        conn.close()

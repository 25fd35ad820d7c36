"""
Pure data models. No gateway, sqlite or network imports.
"""

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from enum import Enum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/assignment-sync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/assignment-sync.conf"

# Metadata keys stamped on every calendar event we create.
META_ASSIGNMENT_ID = "canvas_assignment_id"
META_COURSE_ID = "canvas_course_id"
META_SOURCE = "source"
EVENT_SOURCE_TAG = "app_canvas"

AVAILABLE_INTERVALS: tuple[timedelta, ...] = (
    timedelta(minutes=15),
    timedelta(minutes=30),
    timedelta(hours=1),
    timedelta(hours=6),
    timedelta(hours=24),
)

DEFAULT_REMINDER_OFFSET = timedelta(hours=1)
DEFAULT_SYNC_INTERVAL = timedelta(hours=1)


def utc_now() -> datetime:
    """Default clock used throughout the engine."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AssignmentSyncError(Exception):
    """Base exception for assignment sync errors."""

    code = "UNKNOWN"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class NoDueDateError(AssignmentSyncError):
    code = "NO_DUE_DATE"


class DuplicateEventError(AssignmentSyncError):
    code = "DUPLICATE_EVENT"


class EventNotFoundError(AssignmentSyncError):
    code = "EVENT_NOT_FOUND"


class PermissionDeniedError(AssignmentSyncError):
    code = "PERMISSION_DENIED"


class CalendarNotFoundError(AssignmentSyncError):
    code = "CALENDAR_NOT_FOUND"


class SyncInProgressError(AssignmentSyncError):
    code = "SYNC_IN_PROGRESS"


class SyncDisabledError(AssignmentSyncError):
    code = "SYNC_DISABLED"


class NetworkFailureError(AssignmentSyncError):
    code = "NETWORK_FAILURE"


class NotificationNotFoundError(AssignmentSyncError):
    """Raised by a notification scheduler when cancelling an unknown id."""

    code = "NOTIFICATION_NOT_FOUND"


def error_code(error: BaseException) -> str:
    return getattr(error, "code", AssignmentSyncError.code)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    RESTRICTED = "restricted"
    PERMANENTLY_DENIED = "permanently_denied"
    UNKNOWN = "unknown"


class NetworkType(str, Enum):
    WIFI = "wifi"
    MOBILE = "mobile"
    WIRED = "wired"
    VPN = "vpn"
    NONE = "none"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Remote and calendar records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Assignment:
    """Remote assignment snapshot. Superseded, never mutated, by a re-fetch."""

    id: int
    course_id: int
    name: str
    description: str | None = None
    due_at: datetime | None = None
    updated_at: datetime | None = None
    points_possible: float | None = None
    submission_types: tuple[str, ...] = ()

    def with_due_at(self, due_at: datetime | None) -> "Assignment":
        return replace(self, due_at=due_at)

    @property
    def submission_types_display(self) -> str:
        if not self.submission_types:
            return "No submission required"
        return ", ".join(self.submission_types)


@dataclass(frozen=True)
class Calendar:
    id: str
    name: str
    is_default: bool = False
    is_read_only: bool = False


@dataclass
class CalendarEvent:
    """Calendar event as seen through a calendar gateway."""

    title: str
    description: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    id: str | None = None

    @property
    def assignment_id(self) -> int | None:
        raw = self.metadata.get(META_ASSIGNMENT_ID)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None


@dataclass(frozen=True)
class ScheduledReminder:
    """One row of the assignment → reminder mapping."""

    assignment_id: int
    notification_id: str
    scheduled_at: datetime
    due_at: datetime | None
    course_id: int | None = None
    is_primary: bool = True


@dataclass(frozen=True)
class DeviceConditions:
    battery_level: int | None = None
    is_charging: bool | None = None
    network: NetworkType = NetworkType.UNKNOWN

    @property
    def is_online(self) -> bool:
        return self.network is not NetworkType.NONE


# ---------------------------------------------------------------------------
# Settings and configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncSettings:
    """Read-only snapshot of user settings, taken once per pass."""

    is_enabled: bool = False
    enabled_course_ids: frozenset[int] = frozenset()
    reminder_offset: timedelta = DEFAULT_REMINDER_OFFSET
    auto_sync: bool = True
    auto_sync_interval: timedelta = DEFAULT_SYNC_INTERVAL
    wifi_only_sync_enabled: bool = False
    battery_optimized_sync_enabled: bool = True
    adaptive_frequency_enabled: bool = True
    calendar_id: str | None = None
    notifications_enabled: bool = True
    assignment_reminders_enabled: bool = True
    new_assignment_notifications: bool = True
    assignment_update_notifications: bool = True
    notification_course_ids: frozenset[int] = frozenset()

    def is_course_synced(self, course_id: int) -> bool:
        return not self.enabled_course_ids or course_id in self.enabled_course_ids

    def is_course_notified(self, course_id: int) -> bool:
        return not self.notification_course_ids or course_id in self.notification_course_ids

    @property
    def reminders_active(self) -> bool:
        return self.notifications_enabled and self.assignment_reminders_enabled


@dataclass
class SyncConfig:
    """Configuration for a command-line sync run."""

    config_path: Path
    state_db_path: Path
    calendar_id: str | None = None
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting


# ---------------------------------------------------------------------------
# Results and history
# ---------------------------------------------------------------------------


@dataclass
class ReminderSyncResult:
    """Outcome of reconciling reminders against an assignment set."""

    scheduled: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def total_changes(self) -> int:
        return self.scheduled + self.updated + self.removed

    @property
    def is_successful(self) -> bool:
        return not self.errors


@dataclass
class ReminderBatchResult:
    """Outcome of scheduling reminders for many assignments."""

    scheduled: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.scheduled + self.skipped + self.failed

    @property
    def has_errors(self) -> bool:
        return self.failed > 0


@dataclass
class SyncResult:
    """Statistics for a reconciliation pass."""

    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_unchanged: int = 0
    errors_encountered: int = 0
    error_messages: list[str] = field(default_factory=list)
    sync_time: datetime | None = None
    sync_duration: timedelta = timedelta(0)
    reminders: ReminderSyncResult | None = None

    @property
    def has_changes(self) -> bool:
        return bool(self.events_created or self.events_updated or self.events_deleted)

    @property
    def total_processed(self) -> int:
        return (
            self.events_created
            + self.events_updated
            + self.events_deleted
            + self.events_unchanged
            + self.errors_encountered
        )

    def record_error(self, label: str, error: BaseException) -> None:
        self.errors_encountered += 1
        self.error_messages.append(f"{label}: [{error_code(error)}] {error}")

    def merge(self, other: "SyncResult") -> "SyncResult":
        """Combine two passes; timing is taken from the first."""
        return SyncResult(
            events_created=self.events_created + other.events_created,
            events_updated=self.events_updated + other.events_updated,
            events_deleted=self.events_deleted + other.events_deleted,
            events_unchanged=self.events_unchanged,
            errors_encountered=self.errors_encountered + other.errors_encountered,
            error_messages=[*self.error_messages, *other.error_messages],
            sync_time=self.sync_time,
            sync_duration=self.sync_duration + other.sync_duration,
            reminders=self.reminders or other.reminders,
        )

    def to_dict(self) -> dict:
        return {
            "events_created": self.events_created,
            "events_updated": self.events_updated,
            "events_deleted": self.events_deleted,
            "events_unchanged": self.events_unchanged,
            "errors_encountered": self.errors_encountered,
            "sync_duration_ms": int(self.sync_duration.total_seconds() * 1000),
            "has_changes": self.has_changes,
        }


@dataclass(frozen=True)
class SyncRecord:
    """One entry in the append-only sync history."""

    timestamp: datetime
    success: bool
    duration: timedelta | None = None
    error: str | None = None


@dataclass(frozen=True)
class SyncStatistics:
    total_syncs: int
    successful_syncs: int
    success_rate: float
    last_24_hours_success_rate: float
    average_duration: timedelta
    last_sync_time: datetime | None
    syncs_last_24_hours: int
    syncs_last_7_days: int
    overdue_ratio: float = 0.0


@dataclass(frozen=True)
class FrequencyRecommendation:
    recommended_interval: timedelta
    current_interval: timedelta
    reason: str
    success_rate: float
    battery_level: int | None = None
    network: NetworkType = NetworkType.UNKNOWN

    @property
    def should_change(self) -> bool:
        return self.recommended_interval != self.current_interval

"""
Time-collision detection between tracked calendar events.
"""

import logging
import time
from collections.abc import Iterable
from datetime import datetime
from datetime import timedelta

from assignment_sync.models import DEFAULT_REMINDER_OFFSET
from assignment_sync.models import Assignment
from assignment_sync.models import SyncResult
from assignment_sync.sync.events import EventReconciler

CONFLICT_WINDOW = timedelta(minutes=30)
SEARCH_STEP = timedelta(minutes=15)
MAX_ATTEMPTS = 10

logger = logging.getLogger(__name__)


def collides(candidate: datetime, starts: Iterable[datetime], window: timedelta = CONFLICT_WINDOW) -> bool:
    return any(abs(start - candidate) <= window for start in starts)


def candidate_times(
    original: datetime, step: timedelta = SEARCH_STEP, max_attempts: int = MAX_ATTEMPTS
) -> list[datetime]:
    """Original, then alternating earlier/later by growing multiples of ``step``."""
    candidates = [original]
    distance = 1
    while len(candidates) < max_attempts:
        candidates.append(original - step * distance)
        if len(candidates) < max_attempts:
            candidates.append(original + step * distance)
        distance += 1
    return candidates


def find_non_conflicting_time(
    original: datetime,
    existing_starts: Iterable[datetime],
    window: timedelta = CONFLICT_WINDOW,
    step: timedelta = SEARCH_STEP,
    max_attempts: int = MAX_ATTEMPTS,
) -> datetime:
    """
    First candidate with no existing start within ``window``.

    When every attempt collides the original time is returned and the
    collision stands.
    """
    starts = list(existing_starts)
    for candidate in candidate_times(original, step, max_attempts):
        if not collides(candidate, starts, window):
            return candidate
    return original


class ConflictResolver:
    """Moves tracked events whose start falls too close to another tracked event."""

    def __init__(self, reconciler: EventReconciler, window: timedelta = CONFLICT_WINDOW):
        self.reconciler = reconciler
        self.window = window
        self.logger = logging.getLogger(__name__)

    def resolve(
        self,
        assignments: Iterable[Assignment],
        calendar_id: str | None = None,
        offset: timedelta = DEFAULT_REMINDER_OFFSET,
    ) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(sync_time=self.reconciler.clock())

        calendar_id = self.reconciler.resolve_calendar(calendar_id)
        tracked: dict[int, datetime] = {}
        for event in self.reconciler.list_tracked_events(calendar_id):
            if event.assignment_id is not None:
                tracked.setdefault(event.assignment_id, event.start_time)

        pending = [a for a in assignments if a.due_at is not None and a.id in tracked]
        pending_ids = {a.id for a in pending}
        # Events outside this pass are fixed; the rest settle in processing order.
        settled = {aid: start for aid, start in tracked.items() if aid not in pending_ids}

        for assignment in pending:
            event_time = assignment.due_at - offset
            settled[assignment.id] = tracked[assignment.id]
            try:
                others = [s for aid, s in settled.items() if aid != assignment.id]
                if not collides(event_time, others, self.window):
                    continue

                adjusted = find_non_conflicting_time(event_time, others, self.window)
                if adjusted == event_time:
                    self.logger.warning(
                        f"Assignment {assignment.id}: no free slot within {MAX_ATTEMPTS} "
                        "attempts; keeping original time"
                    )
                    continue

                self.reconciler.update(
                    assignment.with_due_at(adjusted + offset), calendar_id, offset
                )
                settled[assignment.id] = adjusted
                result.events_updated += 1
                self.logger.info(
                    f"Assignment {assignment.id}: moved event by "
                    f"{int((adjusted - event_time).total_seconds() // 60)} min to avoid overlap"
                )
            except Exception as e:
                result.record_error(f"Conflict resolution for assignment {assignment.id}", e)
                self.logger.error(f"Conflict resolution failed for assignment {assignment.id}: {e}")

        result.sync_duration = timedelta(seconds=time.monotonic() - started)
        return result

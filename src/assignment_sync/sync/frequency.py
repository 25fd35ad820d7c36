"""
Adaptive sync frequency.

The engine never owns a timer. AdaptiveFrequencyManager keeps the sync
history and answers two questions for whatever external trigger wakes the
process: how long the next interval should be, and whether a sync is due.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta

from assignment_sync.db import DEFAULT_HISTORY_RETENTION
from assignment_sync.db import StateDatabase
from assignment_sync.gateways import DeviceConditionsProvider
from assignment_sync.models import AVAILABLE_INTERVALS
from assignment_sync.models import DEFAULT_SYNC_INTERVAL
from assignment_sync.models import DeviceConditions
from assignment_sync.models import FrequencyRecommendation
from assignment_sync.models import NetworkType
from assignment_sync.models import SyncRecord
from assignment_sync.models import SyncSettings
from assignment_sync.models import SyncStatistics
from assignment_sync.models import utc_now

# Links a Wi-Fi-only user is happy to sync over.
UNMETERED_NETWORKS = frozenset({NetworkType.WIFI, NetworkType.WIRED})


@dataclass(frozen=True)
class AdaptationPolicy:
    """Condition-driven scaling applied by get_adapted_interval()."""

    low_battery_level: int = 20
    low_battery_factor: float = 2.0
    charging_battery_level: int = 50
    charging_divisor: float = 1.5
    mobile_factor: float = 1.5
    critical_battery_level: int = 10


@dataclass(frozen=True)
class RecommendationPolicy:
    """Thresholds for recommend(); a tunable heuristic."""

    min_samples: int = 5
    low_success_rate: float = 0.7
    low_success_factor: float = 1.5
    high_success_rate: float = 0.95
    fast_sync_duration: timedelta = timedelta(seconds=30)
    high_success_divisor: float = 1.2
    overdue_ratio: float = 0.5
    overdue_gap_factor: float = 2.0
    low_battery_level: int = 30
    low_battery_factor: float = 1.3
    mobile_factor: float = 1.2


def snap_interval(value: timedelta, round_up: bool) -> timedelta:
    """Clamp an arbitrary duration onto the enumerated intervals."""
    if round_up:
        for interval in AVAILABLE_INTERVALS:
            if interval >= value:
                return interval
        return AVAILABLE_INTERVALS[-1]
    for interval in reversed(AVAILABLE_INTERVALS):
        if interval <= value:
            return interval
    return AVAILABLE_INTERVALS[0]


def widen(interval: timedelta, factor: float) -> timedelta:
    return snap_interval(interval * factor, round_up=True)


def narrow(interval: timedelta, divisor: float, floor: timedelta | None = None) -> timedelta:
    narrowed = snap_interval(interval / divisor, round_up=False)
    if floor is not None and narrowed < floor:
        return floor
    return narrowed


def step_down(interval: timedelta) -> timedelta:
    """Next shorter enumerated interval (or the shortest)."""
    shorter = [i for i in AVAILABLE_INTERVALS if i < interval]
    return shorter[-1] if shorter else AVAILABLE_INTERVALS[0]


def format_interval(interval: timedelta) -> str:
    minutes = int(interval.total_seconds() // 60)
    if minutes % (24 * 60) == 0:
        return f"{minutes // (24 * 60)}d"
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}m"


def parse_interval(text: str) -> timedelta:
    """Parse ``15m``/``1h``/``24h``/``1d`` into one of the enumerated intervals."""
    text = text.strip().lower()
    units = {"m": 1, "h": 60, "d": 24 * 60}
    if not text or text[-1] not in units or not text[:-1].isdigit():
        raise ValueError(f"Invalid interval: {text!r}")
    interval = timedelta(minutes=int(text[:-1]) * units[text[-1]])
    if interval not in AVAILABLE_INTERVALS:
        allowed = ", ".join(format_interval(i) for i in AVAILABLE_INTERVALS)
        raise ValueError(f"Unsupported interval {text!r} (allowed: {allowed})")
    return interval


class AdaptiveFrequencyManager:
    """Owns the sync history and computes adapted/recommended intervals."""

    def __init__(
        self,
        state_db: StateDatabase,
        conditions: DeviceConditionsProvider,
        current_interval: timedelta = DEFAULT_SYNC_INTERVAL,
        adaptive: bool = True,
        battery_optimized: bool = True,
        wifi_only: bool = False,
        clock: Callable[[], datetime] = utc_now,
        adaptation_policy: AdaptationPolicy | None = None,
        recommendation_policy: RecommendationPolicy | None = None,
        retention: int = DEFAULT_HISTORY_RETENTION,
    ):
        if current_interval not in AVAILABLE_INTERVALS:
            raise ValueError(f"Unsupported sync interval: {current_interval}")
        self.state_db = state_db
        self.conditions = conditions
        self.current_interval = current_interval
        self.is_adaptive_enabled = adaptive
        self.is_battery_optimized = battery_optimized
        self.is_wifi_only = wifi_only
        self.clock = clock
        self.adaptation_policy = adaptation_policy or AdaptationPolicy()
        self.recommendation_policy = recommendation_policy or RecommendationPolicy()
        self.retention = retention
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        state_db: StateDatabase,
        conditions: DeviceConditionsProvider,
        **kwargs,
    ) -> "AdaptiveFrequencyManager":
        return cls(
            state_db,
            conditions,
            current_interval=settings.auto_sync_interval,
            adaptive=settings.adaptive_frequency_enabled,
            battery_optimized=settings.battery_optimized_sync_enabled,
            wifi_only=settings.wifi_only_sync_enabled,
            **kwargs,
        )

    # ------------------------------------------------------------------ #
    # Interval computation                                                #
    # ------------------------------------------------------------------ #

    def get_adapted_interval(self, conditions: DeviceConditions | None = None) -> timedelta:
        """
        Current interval scaled for battery and link conditions.

        Widening rounds up to the next enumerated interval, narrowing rounds
        down but never below ``current_interval``.
        """
        interval = self.current_interval
        if not self.is_adaptive_enabled:
            return interval

        policy = self.adaptation_policy
        cond = conditions or self.conditions.current()
        level = cond.battery_level
        charging = bool(cond.is_charging)

        if self.is_battery_optimized and level is not None:
            if level < policy.low_battery_level and not charging:
                interval = widen(interval, policy.low_battery_factor)
                self.logger.debug(
                    f"Sync interval increased due to low battery: {format_interval(interval)}"
                )
            if charging and level > policy.charging_battery_level:
                interval = narrow(interval, policy.charging_divisor, floor=self.current_interval)
                self.logger.debug(
                    f"Sync interval decreased due to charging: {format_interval(interval)}"
                )

        if cond.network is NetworkType.MOBILE and not self.is_wifi_only:
            interval = widen(interval, policy.mobile_factor)
            self.logger.debug(
                f"Sync interval increased due to mobile data: {format_interval(interval)}"
            )

        return interval

    def can_sync(self, conditions: DeviceConditions | None = None) -> bool:
        """Hard preconditions: connectivity, Wi-Fi-only policy, critical battery."""
        cond = conditions or self.conditions.current()
        if not cond.is_online:
            return False
        if self.is_wifi_only and cond.network not in UNMETERED_NETWORKS:
            return False
        if (
            self.is_battery_optimized
            and cond.battery_level is not None
            and cond.battery_level < self.adaptation_policy.critical_battery_level
            and not cond.is_charging
        ):
            return False
        return True

    def should_sync_now(self) -> bool:
        cond = self.conditions.current()
        if not self.can_sync(cond):
            self.logger.debug("Sync preconditions not met (network/battery)")
            return False
        last = self.last_sync_time()
        if last is None:
            return True
        return self.clock() >= last + self.get_adapted_interval(cond)

    def next_sync_time(self) -> datetime:
        last = self.last_sync_time()
        if last is None:
            return self.clock()
        return last + self.get_adapted_interval()

    def set_interval(self, interval: timedelta) -> None:
        if interval not in AVAILABLE_INTERVALS:
            allowed = ", ".join(format_interval(i) for i in AVAILABLE_INTERVALS)
            raise ValueError(f"Unsupported sync interval {interval} (allowed: {allowed})")
        self.current_interval = interval
        self.logger.info(f"Sync interval set to: {format_interval(interval)}")

    # ------------------------------------------------------------------ #
    # History and statistics                                              #
    # ------------------------------------------------------------------ #

    def record_sync(
        self,
        success: bool,
        duration: timedelta | None = None,
        error: str | None = None,
        started_at: datetime | None = None,
    ) -> SyncRecord:
        """Append a history record stamped with the pass start (now if not given)."""
        record = SyncRecord(
            timestamp=started_at or self.clock(), success=success, duration=duration, error=error
        )
        self.state_db.append_sync_record(record, self.retention)
        self.state_db.commit()
        self.logger.debug(f"Sync recorded: success={success}, error={error}")
        return record

    def history(self) -> list[SyncRecord]:
        return self.state_db.sync_history()

    def last_sync_time(self) -> datetime | None:
        history = self.history()
        return history[-1].timestamp if history else None

    def last_successful_sync_time(self) -> datetime | None:
        """Start of the newest successful pass: the incremental watermark."""
        successes = [r.timestamp for r in self.history() if r.success]
        return successes[-1] if successes else None

    def statistics(self) -> SyncStatistics:
        history = self.history()
        now = self.clock()

        last_24h = [r for r in history if now - r.timestamp <= timedelta(hours=24)]
        last_7d = [r for r in history if now - r.timestamp <= timedelta(days=7)]

        total = len(history)
        successful = sum(1 for r in history if r.success)
        durations = [r.duration for r in history if r.duration is not None]
        average = sum(durations, timedelta(0)) / len(durations) if durations else timedelta(0)

        return SyncStatistics(
            total_syncs=total,
            successful_syncs=successful,
            success_rate=successful / total if total else 0.0,
            last_24_hours_success_rate=(
                sum(1 for r in last_24h if r.success) / len(last_24h) if last_24h else 0.0
            ),
            average_duration=average,
            last_sync_time=history[-1].timestamp if history else None,
            syncs_last_24_hours=len(last_24h),
            syncs_last_7_days=len(last_7d),
            overdue_ratio=self._overdue_ratio(history),
        )

    def _overdue_ratio(self, history: list[SyncRecord]) -> float:
        """Share of gaps between syncs that overran the interval badly."""
        if len(history) < 2:
            return 0.0
        limit = self.current_interval * self.recommendation_policy.overdue_gap_factor
        gaps = [b.timestamp - a.timestamp for a, b in zip(history, history[1:])]
        return sum(1 for gap in gaps if gap > limit) / len(gaps)

    def recommend(self) -> FrequencyRecommendation:
        policy = self.recommendation_policy
        stats = self.statistics()
        cond = self.conditions.current()

        recommended = self.current_interval
        reason = "Current setting"

        if stats.total_syncs < policy.min_samples:
            return FrequencyRecommendation(
                recommended_interval=recommended,
                current_interval=self.current_interval,
                reason="Not enough sync history",
                success_rate=stats.success_rate,
                battery_level=cond.battery_level,
                network=cond.network,
            )

        if stats.success_rate < policy.low_success_rate:
            recommended = widen(recommended, policy.low_success_factor)
            reason = "Low success rate detected"
        elif (
            stats.success_rate > policy.high_success_rate
            and stats.average_duration < policy.fast_sync_duration
        ):
            recommended = narrow(recommended, policy.high_success_divisor)
            reason = "High success rate with fast syncs"
        elif stats.overdue_ratio > policy.overdue_ratio:
            recommended = step_down(recommended)
            reason = "Syncs are frequently overdue"

        if cond.battery_level is not None and cond.battery_level < policy.low_battery_level:
            recommended = widen(recommended, policy.low_battery_factor)
            reason = "Low battery level"

        if cond.network is NetworkType.MOBILE:
            recommended = widen(recommended, policy.mobile_factor)
            reason = "Mobile data connection"

        return FrequencyRecommendation(
            recommended_interval=recommended,
            current_interval=self.current_interval,
            reason=reason,
            success_rate=stats.success_rate,
            battery_level=cond.battery_level,
            network=cond.network,
        )

    def clear_history(self) -> None:
        self.state_db.clear_sync_history()
        self.state_db.commit()
        self.logger.info("Sync history cleared")

    def reset_to_defaults(self) -> None:
        self.current_interval = DEFAULT_SYNC_INTERVAL
        self.is_adaptive_enabled = True
        self.is_battery_optimized = True
        self.is_wifi_only = False
        self.clear_history()

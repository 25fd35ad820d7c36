"""
INI-file backed settings store.

The file has a single ``[assignment-sync]`` section; every key is optional
and falls back to the SyncSettings defaults.
"""

import logging
from configparser import ConfigParser
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

from assignment_sync.models import AVAILABLE_INTERVALS
from assignment_sync.models import SyncSettings

SECTION = "assignment-sync"

logger = logging.getLogger(__name__)


def _read_section(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if SECTION not in parser:
        return {}
    return dict(parser[SECTION])


def _parse_bool(raw: dict[str, str], key: str, default: bool) -> bool:
    value = raw.get(key)
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in ConfigParser.BOOLEAN_STATES:
        return ConfigParser.BOOLEAN_STATES[lowered]
    raise ValueError(f"Invalid boolean for '{key}': {value!r}")


def _parse_int(raw: dict[str, str], key: str, default: int) -> int:
    value = raw.get(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"Invalid integer for '{key}': {value!r}") from None


def _parse_ids(raw: dict[str, str], key: str) -> frozenset[int]:
    value = raw.get(key, "")
    ids = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            raise ValueError(f"Invalid course id in '{key}': {part!r}") from None
    return frozenset(ids)


def parse_interval_minutes(minutes: int, key: str = "auto_sync_interval_minutes") -> timedelta:
    """Convert minutes to one of the enumerated sync intervals."""
    interval = timedelta(minutes=minutes)
    if interval not in AVAILABLE_INTERVALS:
        allowed = ", ".join(str(int(i.total_seconds() // 60)) for i in AVAILABLE_INTERVALS)
        raise ValueError(f"Invalid value for '{key}': {minutes} (allowed: {allowed})")
    return interval


def load_settings(config_path: Path) -> SyncSettings:
    """Read the settings snapshot; a missing file yields defaults."""
    raw = _read_section(config_path)
    defaults = SyncSettings()

    offset_minutes = _parse_int(
        raw, "reminder_offset_minutes", int(defaults.reminder_offset.total_seconds() // 60)
    )
    if offset_minutes < 0:
        raise ValueError(f"Invalid value for 'reminder_offset_minutes': {offset_minutes}")

    interval_minutes = _parse_int(
        raw, "auto_sync_interval_minutes", int(defaults.auto_sync_interval.total_seconds() // 60)
    )

    return SyncSettings(
        is_enabled=_parse_bool(raw, "enabled", defaults.is_enabled),
        enabled_course_ids=_parse_ids(raw, "course_ids"),
        reminder_offset=timedelta(minutes=offset_minutes),
        auto_sync=_parse_bool(raw, "auto_sync", defaults.auto_sync),
        auto_sync_interval=parse_interval_minutes(interval_minutes),
        wifi_only_sync_enabled=_parse_bool(raw, "wifi_only", defaults.wifi_only_sync_enabled),
        battery_optimized_sync_enabled=_parse_bool(
            raw, "battery_optimized", defaults.battery_optimized_sync_enabled
        ),
        adaptive_frequency_enabled=_parse_bool(
            raw, "adaptive_frequency", defaults.adaptive_frequency_enabled
        ),
        calendar_id=raw.get("calendar_id") or None,
        notifications_enabled=_parse_bool(
            raw, "notifications_enabled", defaults.notifications_enabled
        ),
        assignment_reminders_enabled=_parse_bool(
            raw, "assignment_reminders", defaults.assignment_reminders_enabled
        ),
        new_assignment_notifications=_parse_bool(
            raw, "new_assignment_notifications", defaults.new_assignment_notifications
        ),
        assignment_update_notifications=_parse_bool(
            raw, "assignment_update_notifications", defaults.assignment_update_notifications
        ),
        notification_course_ids=_parse_ids(raw, "notification_course_ids"),
    )


def load_canvas_credentials(config_path: Path) -> tuple[str | None, str | None]:
    """Return (base_url, token) for the Canvas source, if configured."""
    raw = _read_section(config_path)
    return raw.get("canvas_base_url") or None, raw.get("canvas_token") or None


def save_sync_interval(config_path: Path, interval: timedelta) -> None:
    """Persist a new auto-sync interval, preserving the rest of the file."""
    if interval not in AVAILABLE_INTERVALS:
        raise ValueError(f"Unsupported sync interval: {interval}")
    parser = ConfigParser()
    if config_path.exists():
        parser.read(config_path)
    if SECTION not in parser:
        parser[SECTION] = {}
    parser[SECTION]["auto_sync_interval_minutes"] = str(int(interval.total_seconds() // 60))
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as fh:
        parser.write(fh)
    logger.debug(f"Saved auto_sync_interval_minutes to {config_path}")


class ConfigFileSettingsStore:
    """Settings store that re-reads the INI file on every load."""

    def __init__(self, config_path: Path):
        self.config_path = config_path

    def load(self) -> SyncSettings:
        return load_settings(self.config_path)


class StaticSettingsStore:
    """In-memory settings store, for embedding and tests."""

    def __init__(self, settings: SyncSettings | None = None):
        self.settings = settings or SyncSettings()

    def load(self) -> SyncSettings:
        return self.settings

    def update(self, **changes) -> SyncSettings:
        self.settings = replace(self.settings, **changes)
        return self.settings

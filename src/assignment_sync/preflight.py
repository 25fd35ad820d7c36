"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from assignment_sync.gateways import CalendarGateway
from assignment_sync.models import AssignmentSyncError
from assignment_sync.models import PermissionStatus

logger = logging.getLogger(__name__)


def check_calendar(gateway: CalendarGateway, calendar_id: str | None) -> list[tuple[str, str, str]]:
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Calendar access
    try:
        status = gateway.check_permissions()
    except AssignmentSyncError as e:
        logger.error(f"Calendar backend unreachable: {e}")
        return [("Calendar access", str(e), "Is evolution-data-server running?")]
    if status is not PermissionStatus.GRANTED:
        logger.error(f"Calendar permission {status.value}")
        return [
            (
                "Calendar access",
                f"Permission {status.value}",
                "Grant calendar access and run the command again",
            )
        ]

    # 2. A writable target calendar
    try:
        calendars = gateway.list_calendars()
    except AssignmentSyncError as e:
        logger.error(f"Cannot list calendars: {e}")
        return [("Calendars", str(e), "Check the calendar backend")]

    if calendar_id:
        match = next((c for c in calendars if c.id == calendar_id), None)
        if match is None:
            issues.append(
                (
                    "Target calendar",
                    f"UID not found: {calendar_id}",
                    "Run: assignment-sync calendars",
                )
            )
        elif match.is_read_only:
            issues.append(
                (
                    "Target calendar",
                    f"{match.name} is read-only",
                    "Choose a writable calendar in the config file",
                )
            )
    elif not any(not c.is_read_only for c in calendars):
        issues.append(
            (
                "Target calendar",
                "No writable calendar found",
                "Create a local calendar or set calendar_id in the config file",
            )
        )
    return issues


def check_state_db(db_path: Path) -> list[tuple[str, str, str]]:
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create state DB directory {db_path.parent}: {e}")
        return [("State database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")]

    if db_path.exists():
        try:
            conn = sqlite3.connect(db_path)
            try:
                conn.execute("SELECT 1")
                # BEGIN IMMEDIATE needs a journal file next to the DB
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"State DB not readable/writable ({db_path}): {e}")
            return [
                (
                    "State database",
                    f"{db_path}: {e}",
                    f"Check permissions on {db_path.parent} "
                    f"(journal files must be creatable alongside the DB)",
                )
            ]
    return []


def run_preflight_checks(
    gateway: CalendarGateway,
    calendar_id: str | None,
    db_path: Path,
    console: Console,
    canvas_configured: bool = True,
) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues = check_calendar(gateway, calendar_id)
    if not canvas_configured:
        issues.append(
            (
                "Canvas",
                "canvas_base_url or canvas_token missing",
                "Add both keys to the [assignment-sync] section of the config file",
            )
        )
    issues.extend(check_state_db(db_path))

    if issues:
        _print_issues(issues, console)
        return False
    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))

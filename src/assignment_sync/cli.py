"""
Command-line interface for Assignment Sync.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from assignment_sync.config import ConfigFileSettingsStore
from assignment_sync.config import load_canvas_credentials
from assignment_sync.config import load_settings
from assignment_sync.config import save_sync_interval
from assignment_sync.db import StateDatabase
from assignment_sync.db import query_status
from assignment_sync.gateways import AssignmentSource
from assignment_sync.gateways import CalendarGateway
from assignment_sync.gateways import DeviceConditionsProvider
from assignment_sync.models import DEFAULT_CONFIG
from assignment_sync.models import DEFAULT_STATE_DB
from assignment_sync.models import AssignmentSyncError
from assignment_sync.models import SyncConfig
from assignment_sync.models import SyncResult
from assignment_sync.notifier import QueuedNotificationScheduler
from assignment_sync.sync import SyncEngine
from assignment_sync.sync.frequency import format_interval
from assignment_sync.sync.frequency import parse_interval
from assignment_sync.sync.reminders import ReminderCoordinator

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Sync Canvas assignment due dates into an EDS calendar, with local reminders.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


@dataclass
class Gateways:
    calendar: CalendarGateway
    source: AssignmentSource | None
    conditions: DeviceConditionsProvider


def build_gateways(config_path: Path) -> Gateways:
    """Construct the production collaborators from the config file."""
    from assignment_sync.canvas_client import CanvasAssignmentSource
    from assignment_sync.device import PsutilDeviceConditions
    from assignment_sync.eds_client import EDSCalendarGateway

    base_url, token = load_canvas_credentials(config_path)
    source = CanvasAssignmentSource(base_url, token) if base_url and token else None
    return Gateways(
        calendar=EDSCalendarGateway(),
        source=source,
        conditions=PsutilDeviceConditions(),
    )


class _MissingSource:
    """Placeholder for commands that never fetch assignments."""

    def list_assignments(self, course_ids=None):
        raise AssignmentSyncError("Canvas is not configured", code="NOT_CONFIGURED")

    def course_names(self):
        return {}


@contextmanager
def _engine(gateways: Gateways | None = None) -> Iterator[SyncEngine]:
    gateways = gateways or build_gateways(state.config_path)
    try:
        with StateDatabase(state.state_db) as db:
            yield SyncEngine(
                calendar=gateways.calendar,
                source=gateways.source or _MissingSource(),
                notifier=QueuedNotificationScheduler(db),
                state_db=db,
                settings_store=ConfigFileSettingsStore(state.config_path),
                conditions=gateways.conditions,
            )
    finally:
        close = getattr(gateways.source, "close", None)
        if close is not None:
            close()


def _fail(message: str) -> typer.Exit:
    console.print(f"[bold red]Error:[/] {message}")
    return typer.Exit(1)


def _check_settings() -> None:
    try:
        load_settings(state.config_path)
    except ValueError as e:
        raise _fail(f"Invalid config {state.config_path}: {e}") from None


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "—"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_results(result: SyncResult) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.events_created))
    results.add_row("Updated", str(result.events_updated))
    results.add_row("Deleted", str(result.events_deleted))
    results.add_row("Unchanged", str(result.events_unchanged))
    if result.reminders is not None:
        reminders = result.reminders
        results.add_row(
            "Reminders",
            f"+{reminders.scheduled} ~{reminders.updated} -{reminders.removed}",
        )
    errors = result.errors_encountered + (result.reminders.failed if result.reminders else 0)
    error_val = Text(str(errors))
    if errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))
    for message in result.error_messages:
        console.print(f"  [red]•[/] {message}")
    if result.reminders is not None:
        for message in result.reminders.errors:
            console.print(f"  [red]•[/] {message}")


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_CALENDAR_OPT = Annotated[
    str | None,
    typer.Option("--calendar", help="Target calendar EDS UID (overrides config)"),
]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


def _run_sync(
    cfg: SyncConfig,
    incremental: bool,
    since: datetime | None,
    reminders: bool,
    keep_orphans: bool = False,
) -> None:
    from assignment_sync.preflight import run_preflight_checks

    _check_settings()
    gateways = build_gateways(cfg.config_path)
    settings = load_settings(cfg.config_path)
    calendar_id = cfg.calendar_id or settings.calendar_id

    if not run_preflight_checks(
        gateways.calendar,
        calendar_id,
        cfg.state_db_path,
        console,
        canvas_configured=gateways.source is not None,
    ):
        raise typer.Exit(1)

    info = Text()
    info.append("  Calendar:  ", style="bold")
    info.append(calendar_id or "(default writable calendar)")
    info.append("\n  Courses:   ", style="bold")
    info.append(
        ", ".join(str(c) for c in sorted(settings.enabled_course_ids)) or "all active courses"
    )
    info.append("\n  Operation: ")
    if incremental:
        info.append("INCREMENTAL", style="bold cyan")
    else:
        info.append("FULL SYNC", style="bold green")
    info.append("\n  Reminders: ")
    info.append(
        "on" if reminders and settings.reminders_active else "off",
        style="green" if reminders and settings.reminders_active else "yellow",
    )
    console.print(Panel(info, title="[bold]Assignment Sync[/bold]"))

    if not cfg.yes:
        typer.confirm("Proceed?", abort=True)

    try:
        with _engine(gateways) as engine:
            if incremental:
                watermark = since or engine.frequency.last_successful_sync_time()
                result = engine.perform_incremental_sync(
                    watermark, calendar_id=calendar_id, sync_reminders=reminders
                )
            else:
                result = engine.perform_full_sync(
                    calendar_id=calendar_id,
                    delete_orphans=not keep_orphans,
                    sync_reminders=reminders,
                )
    except AssignmentSyncError as e:
        console.print(f"[bold red]Sync failed:[/] [{e.code}] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    _print_results(result)
    if result.errors_encountered or (result.reminders and result.reminders.failed):
        raise typer.Exit(1)


@app.command()
def sync(
    calendar: _CALENDAR_OPT = None,
    incremental: Annotated[
        bool,
        typer.Option("--incremental", "-i", help="Only process assignments updated recently"),
    ] = False,
    since: Annotated[
        datetime | None,
        typer.Option(
            "--since",
            formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"],
            help="Incremental watermark (default: last recorded sync)",
        ),
    ] = None,
    no_reminders: Annotated[
        bool, typer.Option("--no-reminders", help="Leave local reminders untouched")
    ] = False,
    keep_orphans: Annotated[
        bool,
        typer.Option("--keep-orphans", help="Keep events whose assignment is gone or undated"),
    ] = False,
    yes: _YES = False,
) -> None:
    """Reconcile calendar events with the current Canvas assignments."""
    if since is not None and since.tzinfo is None:
        since = since.astimezone(timezone.utc)
    _run_sync(
        SyncConfig(
            config_path=state.config_path,
            state_db_path=state.state_db,
            calendar_id=calendar,
            verbose=state.verbose,
            yes=yes,
        ),
        incremental=incremental or since is not None,
        since=since,
        reminders=not no_reminders,
        keep_orphans=keep_orphans,
    )


# ---------------------------------------------------------------------------
# Subcommand: clear
# ---------------------------------------------------------------------------


@app.command()
def clear(calendar: _CALENDAR_OPT = None, yes: _YES = False) -> None:
    """Remove every synced assignment event and cancel all reminders."""
    _check_settings()
    calendar_id = calendar or load_settings(state.config_path).calendar_id
    if not yes:
        typer.confirm("Remove all synced assignment events and reminders?", abort=True)

    try:
        with _engine() as engine:
            result = engine.reconciler.clear_all_events(calendar_id)
            cancelled = engine.reminders.cancel_all()
    except AssignmentSyncError as e:
        console.print(f"[bold red]Clear failed:[/] [{e.code}] {e}")
        raise typer.Exit(1) from None

    console.print(
        f"Removed [bold]{result.events_deleted}[/] event(s) and "
        f"cancelled [bold]{cancelled}[/] reminder(s)"
    )
    _print_results(result)
    if result.errors_encountered:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: reminders
# ---------------------------------------------------------------------------


@app.command()
def reminders(
    deliver: Annotated[
        bool, typer.Option("--deliver", help="Print and dequeue alerts that are due now")
    ] = False,
    cleanup: Annotated[
        bool, typer.Option("--cleanup", help="Drop reminders whose fire time has passed")
    ] = False,
) -> None:
    """List queued reminders and alerts."""
    now = datetime.now(timezone.utc)
    try:
        with StateDatabase(state.state_db) as db:
            notifier = QueuedNotificationScheduler(db)
            if deliver:
                count = notifier.deliver_due(now, _print_alert)
                console.print(f"Delivered [bold]{count}[/] alert(s)")
            if cleanup:
                coordinator = ReminderCoordinator(
                    notifier, db, ConfigFileSettingsStore(state.config_path)
                )
                removed = coordinator.cleanup_expired()
                console.print(f"Removed [bold]{removed}[/] expired reminder(s)")
            pending = notifier.pending()
    except AssignmentSyncError as e:
        raise _fail(str(e)) from None

    if not pending:
        console.print("[yellow]No reminders queued.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Fires at")
    table.add_column("Title")
    table.add_column("Message")
    for item in pending:
        payload = item["payload"]
        style = "dim" if item["fire_at"] < now else None
        table.add_row(
            _format_time(item["fire_at"]),
            payload.get("title", ""),
            payload.get("body", ""),
            style=style,
        )
    console.print(Panel(table, title="[bold]Queued reminders[/bold]", expand=False))


def _print_alert(item: dict) -> None:
    payload = item["payload"]
    console.print(
        Panel(
            payload.get("body", ""),
            title=f"[bold]{payload.get('title', 'Reminder')}[/bold]",
            expand=False,
        )
    )


# ---------------------------------------------------------------------------
# Subcommand: frequency
# ---------------------------------------------------------------------------


@app.command()
def frequency(
    set_interval: Annotated[
        str | None,
        typer.Option("--set", help="Save a new sync interval (15m, 30m, 1h, 6h, 24h)"),
    ] = None,
    apply: Annotated[
        bool, typer.Option("--apply", help="Save the recommended interval")
    ] = False,
) -> None:
    """Show the adapted sync interval and a recommendation from history."""
    _check_settings()
    if set_interval is not None:
        try:
            interval = parse_interval(set_interval)
        except ValueError as e:
            raise _fail(str(e)) from None
        save_sync_interval(state.config_path, interval)
        console.print(f"Sync interval set to [bold]{format_interval(interval)}[/]")
        return

    try:
        with _engine() as engine:
            manager = engine.frequency
            adapted = manager.get_adapted_interval()
            stats = manager.statistics()
            recommendation = manager.recommend()
            due = manager.should_sync_now()
            next_sync = manager.next_sync_time()
    except AssignmentSyncError as e:
        raise _fail(str(e)) from None

    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column()
    grid.add_row("Configured", format_interval(manager.current_interval))
    grid.add_row("Adapted", format_interval(adapted))
    grid.add_row("Sync due", Text("yes", style="green") if due else Text("no"))
    grid.add_row("Next sync", _format_time(next_sync))
    grid.add_row("Syncs", f"{stats.successful_syncs}/{stats.total_syncs} successful")
    grid.add_row("Last 24h", f"{stats.syncs_last_24_hours} ({stats.last_24_hours_success_rate:.0%})")
    grid.add_row("Avg duration", f"{stats.average_duration.total_seconds():.1f}s")
    grid.add_row(
        "Recommended",
        f"{format_interval(recommendation.recommended_interval)} ({recommendation.reason})",
    )
    console.print(Panel(grid, title="[bold]Sync frequency[/bold]", expand=False))

    if apply and recommendation.should_change:
        save_sync_interval(state.config_path, recommendation.recommended_interval)
        console.print(
            f"Sync interval set to [bold]{format_interval(recommendation.recommended_interval)}[/]"
        )


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and state database summary."""
    config_exists = state.config_path.exists()
    db_exists = state.state_db.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")

    try:
        settings = load_settings(state.config_path)
    except ValueError as e:
        cfg_info.append("\n  Settings: ", style="bold")
        cfg_info.append(str(e), style="red")
    else:
        cfg_info.append("\n  Enabled:  ", style="bold")
        cfg_info.append(
            "yes" if settings.is_enabled else "no",
            style="green" if settings.is_enabled else "yellow",
        )
        cfg_info.append("\n  Interval: ", style="bold")
        cfg_info.append(format_interval(settings.auto_sync_interval))
        if settings.calendar_id:
            cfg_info.append("\n  Calendar: ", style="bold")
            cfg_info.append(settings.calendar_id, style="dim")

    console.print(Panel(cfg_info, title="[bold]Assignment Sync — Status[/bold]"))

    summary = query_status(state.state_db)
    if summary is None:
        console.print(
            "[yellow]No state database yet — run[/] "
            "[cyan]assignment-sync sync[/] "
            "[yellow]to create it.[/]"
        )
        return

    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column(justify="right")
    table.add_row("Reminders", str(summary["reminders"]))
    table.add_row("Queued alerts", str(summary["queued_notifications"]))
    table.add_row("Syncs", f"{summary['successful_syncs']}/{summary['syncs']} successful")
    table.add_row("Last sync", _format_time(summary["last_sync_at"]))
    console.print(Panel(table, title="[bold]State[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List the calendars events can be written to."""
    gateways = build_gateways(state.config_path)
    try:
        entries = gateways.calendar.list_calendars()
    except AssignmentSyncError as e:
        raise _fail(str(e)) from None

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name / UID", min_width=36, overflow="fold")
    table.add_column("Mode")
    for entry in entries:
        name_cell = Text()
        name_cell.append(entry.name, style="bold")
        if entry.is_default:
            name_cell.append("  (default)", style="green")
        name_cell.append("\n")
        name_cell.append(entry.id, style="dim")
        mode = Text("Read-only", style="yellow") if entry.is_read_only else Text(
            "Read-write", style="green"
        )
        table.add_row(name_cell, mode)
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()

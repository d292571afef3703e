"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import pytz
import structlog

from . import __version__
from .config import Settings, create_example_config, load_settings
from .database import DatabaseManager
from .models import CalendarEvent, ColorName, SyncDirection, SyncOperation, SyncReport
from .services import AuthenticationError, CalendarServiceError, TokenManager
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, log_format: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level), format=log_format)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _open_db(settings: Settings) -> DatabaseManager:
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    return db_manager


def _parse_time(value: Optional[str]) -> Optional[int]:
    """Parse HH:MM into minutes since midnight."""
    if value is None:
        return None
    try:
        parsed = datetime.strptime(value, "%H:%M")
    except ValueError:
        raise click.BadParameter(f"Expected HH:MM, got '{value}'")
    return parsed.hour * 60 + parsed.minute


def _format_time(minutes: Optional[int]) -> str:
    if minutes is None:
        return ""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _event_sort_key(event: CalendarEvent):
    return (event.date, event.start_time or 0, event.title, event.id)


def find_next_event(local_events: List[CalendarEvent], now: datetime) -> Optional[CalendarEvent]:
    """Earliest event starting at or after ``now``, else one in progress today.

    All-day events start at midnight and last until the end of the day; timed
    events without an end time last for an instant.
    """
    today = now.date().isoformat()
    minutes = now.hour * 60 + now.minute

    upcoming = [
        e for e in local_events
        if e.date > today or (e.date == today and (e.start_time or 0) >= minutes)
    ]
    if upcoming:
        return min(upcoming, key=_event_sort_key)

    def end_of(event: CalendarEvent) -> int:
        if event.start_time is None:
            return 24 * 60
        return event.end_time if event.end_time is not None else event.start_time

    ongoing = [
        e for e in local_events
        if e.date == today and (e.start_time or 0) <= minutes <= end_of(e)
    ]
    return min(ongoing, key=_event_sort_key) if ongoing else None


def _require_settings(settings: Settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]calmirror config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calmirror - keep a local calendar in sync with Google Calendar.

    Pulls remote changes incrementally with sync tokens, pushes local edits,
    resolves conflicts by last write and propagates deletions.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.log_format, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def connect(ctx):
    """Authorize access to Google Calendar in the browser."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    token_manager = TokenManager(settings)
    try:
        tokens = token_manager.connect()
    except AuthenticationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        asyncio.run(token_manager.close())

    if not tokens.refresh_token:
        console.print("[yellow]⚠️  Google did not return a refresh token; you may need to reconnect later[/yellow]")
    console.print("[green]✓ Connected to Google Calendar[/green]")


@cli.command()
@click.confirmation_option(prompt='Forget the stored Google credentials?')
@click.pass_context
def disconnect(ctx):
    """Forget the stored Google tokens."""
    token_manager = TokenManager(ctx.obj['settings'])
    token_manager.disconnect()
    asyncio.run(token_manager.close())
    console.print("[green]✓ Disconnected from Google Calendar[/green]")


@cli.command()
@click.option('--full', 'force_full', is_flag=True,
              help='Ignore stored sync tokens and pull the whole sync window')
@async_command
async def sync(ctx, force_full):
    """Synchronize the local store with Google Calendar."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with SyncEngine.from_settings(settings) as sync_engine:
            console.print("🚀 Synchronizing calendars...")
            try:
                sync_report = await sync_engine.run(force_full=force_full)
            except CalendarServiceError:
                if sync_engine.last_report is not None:
                    _display_sync_results(sync_engine.last_report)
                raise
        console.print("✅ Sync completed")
        logger.info(
            "sync_completed",
            calendars=len(sync_report.calendars),
            operations=sync_report.total_operations,
            force_full=force_full,
        )
        _display_sync_results(sync_report)

    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except AuthenticationError as e:
        console.print(f"[red]Authentication failed: {e}[/red]")
        console.print("Run [bold]calmirror connect[/bold] to authorize access.")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show connection, calendar and recent sync status."""
    settings = ctx.obj['settings']
    db_manager = _open_db(settings)
    token_manager = TokenManager(settings)

    connected = token_manager.is_connected
    asyncio.run(token_manager.close())
    console.print(
        "[green]● Connected to Google[/green]" if connected
        else "[red]● Not connected[/red] (run [bold]calmirror connect[/bold])"
    )

    with db_manager.session_scope() as session:
        calendar_records = db_manager.list_calendars(session)
        pending = db_manager.get_deletions(session)
        sessions = db_manager.get_recent_sync_sessions(session, limit=5)
        recent = [
            (s.started_at, s.status, s.calendars_synced,
             s.local_created + s.local_updated + s.local_deleted,
             s.remote_created + s.remote_updated + s.remote_deleted,
             s.error_message)
            for s in sessions
        ]

    table = Table(show_header=True, header_style="bold blue", title="Calendars")
    table.add_column("Name", style="cyan")
    table.add_column("Color")
    table.add_column("Enabled", justify="center")
    table.add_column("Writable", justify="center")
    table.add_column("Last sync", style="dim")
    table.add_column("Cursor", justify="center")
    for record in calendar_records:
        table.add_row(
            record.name,
            record.color.value,
            "✓" if record.enabled else "",
            "✓" if record.can_write else "",
            record.last_sync_at.strftime('%Y-%m-%d %H:%M:%S') if record.last_sync_at else "never",
            "✓" if record.sync_cursor else "",
        )
    console.print(table)

    if pending:
        console.print(f"[yellow]{len(pending)} deletion(s) waiting to reach Google[/yellow]")

    if recent:
        history = Table(show_header=True, header_style="bold magenta", title="Recent Syncs")
        history.add_column("Started", style="dim")
        history.add_column("Status")
        history.add_column("Calendars", justify="center")
        history.add_column("Pulled", justify="center")
        history.add_column("Pushed", justify="center")
        history.add_column("Error", style="red")
        for started_at, state, synced, pulled, pushed, error in recent:
            history.add_row(
                started_at.strftime('%Y-%m-%d %H:%M:%S'), state,
                str(synced or 0), str(pulled or 0), str(pushed or 0), error or "",
            )
        console.print(history)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run calmirror continuously as a daemon."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    if interval:
        settings.sync_config.sync_interval_minutes = interval

    sync_interval = settings.sync_config.sync_interval_minutes
    console.print(f"[green]Starting calmirror daemon[/green] - interval: {sync_interval} minutes")

    runs = 0
    try:
        async with SyncEngine.from_settings(settings) as sync_engine:
            while True:
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

                try:
                    sync_report = await sync_engine.run()
                    _display_sync_results(sync_report, compact=True)
                except AuthenticationError as e:
                    console.print(f"[red]Authentication failed, stopping daemon: {e}[/red]")
                    sys.exit(1)
                except CalendarServiceError as e:
                    console.print(f"[red]Sync run failed: {e}[/red]")
                    if settings.debug:
                        console.print_exception()
                runs += 1

                if max_runs and runs >= max_runs:
                    break

                console.print(f"[dim]Next sync in {sync_interval} minutes...[/dim]")
                await asyncio.sleep(sync_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.group()
def calendars():
    """Calendar management commands."""
    pass


@calendars.command('list')
@click.pass_context
def list_calendars(ctx):
    """List calendars known locally."""
    settings = ctx.obj['settings']
    db_manager = _open_db(settings)
    with db_manager.session_scope() as session:
        records = db_manager.list_calendars(session)

    if not records:
        console.print("[yellow]No calendars yet, run [bold]calmirror calendars refresh[/bold][/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Color")
    table.add_column("Enabled", justify="center")
    table.add_column("Access", justify="center")
    for record in records:
        table.add_row(
            record.name,
            record.remote_calendar_id,
            record.color.value,
            "✓" if record.enabled else "",
            "read/write" if record.can_write else "read-only",
        )
    console.print(table)


@calendars.command('refresh')
@async_command
async def refresh_calendars(ctx):
    """Fetch the Google calendar list into the local registry."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine.from_settings(settings) as sync_engine:
            records = await sync_engine.directory.refresh()
    except CalendarServiceError as e:
        console.print(f"[red]Failed to refresh calendars: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ {len(records)} calendars known[/green]")


def _set_enabled(ctx, calendar_id: str, enabled: bool) -> None:
    settings = ctx.obj['settings']
    db_manager = _open_db(settings)
    with db_manager.session_scope() as session:
        record = db_manager.get_calendar(session, calendar_id)
        if record is not None and enabled and not record.can_write:
            console.print("[yellow]Calendar is read-only; it will only be pulled from[/yellow]")
        changed = db_manager.set_calendar_enabled(session, calendar_id, enabled)
    if not changed:
        console.print(f"[red]Unknown calendar: {calendar_id}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Calendar {'enabled' if enabled else 'disabled'}[/green]")


@calendars.command('enable')
@click.argument('calendar_id')
@click.pass_context
def enable_calendar(ctx, calendar_id):
    """Enable syncing of a calendar."""
    _set_enabled(ctx, calendar_id, True)


@calendars.command('disable')
@click.argument('calendar_id')
@click.pass_context
def disable_calendar(ctx, calendar_id):
    """Disable syncing of a calendar."""
    _set_enabled(ctx, calendar_id, False)


@cli.group()
def events():
    """Local event commands."""
    pass


@events.command('add')
@click.option('--date', 'event_date', required=True, help='Day of the event (YYYY-MM-DD)')
@click.option('--title', '-t', required=True, help='Event title')
@click.option('--start', help='Start time (HH:MM); omit for an all-day event')
@click.option('--end', help='End time (HH:MM)')
@click.option('--color', type=click.Choice([c.value for c in ColorName]), default=ColorName.GRAY.value,
              help='Color, which selects the calendar it syncs to')
@click.pass_context
def add_event(ctx, event_date, title, start, end, color):
    """Create a local event; the next sync pushes it to Google."""
    settings = ctx.obj['settings']
    try:
        date.fromisoformat(event_date)
        event = CalendarEvent(
            id=uuid4().hex,
            date=event_date,
            title=title,
            start_time=_parse_time(start),
            end_time=_parse_time(end),
            color=ColorName(color),
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    db_manager = _open_db(settings)
    with db_manager.session_scope() as session:
        db_manager.insert_event(session, event)
    console.print(f"[green]✓ Created event {event.id}[/green]")


@events.command('list')
@click.option('--from', 'date_from', help='First day (YYYY-MM-DD)')
@click.option('--to', 'date_to', help='Last day (YYYY-MM-DD)')
@click.pass_context
def list_events(ctx, date_from, date_to):
    """List local events."""
    settings = ctx.obj['settings']
    db_manager = _open_db(settings)
    with db_manager.session_scope() as session:
        local_events = db_manager.list_events(session, date_from, date_to)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Date")
    table.add_column("Time")
    table.add_column("Title", style="cyan")
    table.add_column("Color")
    table.add_column("Synced", justify="center")
    table.add_column("ID", style="dim")
    for event in local_events:
        time_range = _format_time(event.start_time)
        if event.end_time is not None:
            time_range += f"-{_format_time(event.end_time)}"
        table.add_row(
            event.date,
            time_range or "all day",
            event.title,
            event.color.value,
            "✓" if event.is_remote_linked else "",
            event.id,
        )
    console.print(table)
    console.print(f"[dim]{len(local_events)} events[/dim]")


@events.command('next')
@click.pass_context
def next_event(ctx):
    """Show the next upcoming or ongoing event."""
    settings = ctx.obj['settings']
    db_manager = _open_db(settings)
    now = datetime.now(pytz.timezone(settings.sync_config.timezone))
    with db_manager.session_scope() as session:
        local_events = db_manager.list_events(session)

    if not local_events:
        console.print("No events.")
        return

    event = find_next_event(local_events, now)
    if event is None:
        console.print("No upcoming events.")
        return

    time_range = _format_time(event.start_time)
    if event.end_time is not None:
        time_range += f"-{_format_time(event.end_time)}"
    console.print(f"{event.date} {time_range or 'all day'}  [cyan]{event.title}[/cyan]")


@events.command('delete')
@click.argument('event_id')
@click.pass_context
def delete_event(ctx, event_id):
    """Delete a local event; the deletion reaches Google on the next sync."""
    settings = ctx.obj['settings']
    db_manager = _open_db(settings)
    with db_manager.session_scope() as session:
        deleted = db_manager.delete_event(session, event_id, track_remote=True)
    if not deleted:
        console.print(f"[red]Unknown event: {event_id}[/red]")
        sys.exit(1)
    console.print("[green]✓ Event deleted[/green]")


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your Google OAuth client ID.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to reset all local data?')
@click.pass_context
def reset(ctx):
    """Drop all local events, calendars and sync state."""
    settings = ctx.obj['settings']

    try:
        db_manager = DatabaseManager(settings)
        db_manager.drop_all()
        db_manager.init_db()

        console.print("[green]✓ All local data has been reset[/green]")
        console.print("[yellow]⚠️  Next sync will pull the whole sync window again[/yellow]")

    except Exception as e:
        console.print(f"[red]Failed to reset local data: {e}[/red]")
        sys.exit(1)


def _display_sync_results(sync_report: SyncReport, compact: bool = False) -> None:
    """Display sync results."""
    if compact:
        # Compact display for daemon mode
        console.print(
            f"[green]✓ {sync_report.total_operations} operations, "
            f"{len(sync_report.errors)} errors[/green]"
        )
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Direction", style="cyan")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")

    for label, direction in (("Google → local", SyncDirection.LOCAL), ("local → Google", SyncDirection.REMOTE)):
        table.add_row(
            label,
            str(sync_report.count(SyncOperation.CREATE, direction)),
            str(sync_report.count(SyncOperation.UPDATE, direction)),
            str(sync_report.count(SyncOperation.DELETE, direction)),
        )

    console.print(table)

    if sync_report.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in sync_report.errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))

    if sync_report.completed_at:
        duration = sync_report.completed_at - sync_report.started_at
        console.print(f"[dim]Completed in {duration.total_seconds():.1f} seconds[/dim]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()

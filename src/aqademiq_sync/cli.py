"""Command-line interface with Rich formatting."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import UUID

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.markup import escape
from rich.prompt import Confirm
from sqlalchemy.exc import SQLAlchemyError
import structlog

from .config import load_settings, create_example_config
from .database import DatabaseManager
from .exceptions import SyncError
from .models import ConflictStatus, ResolutionStrategy, SyncReport
from .services.base import CalendarServiceError
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: Optional[str] = None) -> None:
    """Set up structured logging on top of the stdlib handlers."""
    logging.basicConfig(format=log_format, level=getattr(logging, level.upper(), logging.INFO))
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


def _fail(settings, message: str) -> None:
    console.print(f"[red]{message}[/red]")
    if settings.debug:
        console.print_exception()
    sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """Aqademiq Sync - two-way sync between the academic planner and Google Calendar.

    Assignments, exams and class schedule blocks are kept in step with the
    student's Google Calendar. Edits made on both sides since the last sync are
    kept as conflicts for the student to resolve.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
    except ValueError as e:
        console.print(f"[red]Error loading configuration: {escape(str(e))}[/red]")
        sys.exit(1)

    if debug:
        settings.debug = True
    if verbose:
        settings.log_level = 'DEBUG'

    ctx.obj['settings'] = settings
    setup_logging(settings.log_level, settings.debug, settings.log_format)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run HTTP server with background sync loop (container friendly)."""
    import uvicorn
    from .server import create_app

    settings = ctx.obj['settings']
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


@cli.command()
@click.argument('user_id')
@click.option('--full', is_flag=True, help='Ignore the sync token and re-import the whole window')
@async_command
async def sync(ctx, user_id, full):
    """Synchronize one user's planner with their Google Calendar."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nUse [bold]aqademiq-sync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)

    try:
        async with SyncEngine(settings) as sync_engine:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task(f"Syncing {user_id}...", total=None)
                if full:
                    report = await sync_engine.full_sync(user_id)
                else:
                    report = await sync_engine.incremental_sync(user_id)
    except (SyncError, CalendarServiceError, SQLAlchemyError) as e:
        _fail(settings, f"Sync failed: {escape(str(e))}")
        return

    _display_sync_report(report)
    if report.failed:
        sys.exit(1)


def _display_sync_report(report: SyncReport) -> None:
    table = Table(title=f"Sync Results ({report.sync_type.value})")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right", style="magenta")

    table.add_row("Created locally", str(report.created_local))
    table.add_row("Updated locally", str(report.updated_local))
    table.add_row("Pushed to Google", str(report.pushed_remote))
    table.add_row("Conflicts", str(report.conflicts))
    table.add_row("Unchanged", str(report.unchanged))
    table.add_row("Skipped", str(report.skipped))
    table.add_row("Failed", str(report.failed))
    console.print(table)

    if report.cancelled:
        console.print("[yellow]Sync was cancelled before all items were processed[/yellow]")
    if report.conflicts:
        console.print(
            f"[yellow]{report.conflicts} conflict(s) need attention; "
            f"see [bold]aqademiq-sync conflicts list {report.user_id}[/bold][/yellow]"
        )
    for error in report.errors:
        console.print(f"[red]• {escape(error)}[/red]")


@cli.command()
@click.argument('user_id')
@async_command
async def status(ctx, user_id):
    """Show sync status and recent failures for a user."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            sync_status = sync_engine.get_sync_status(user_id)
    except (SyncError, SQLAlchemyError) as e:
        _fail(settings, f"Failed to get status: {escape(str(e))}")
        return

    table = Table(title=f"Sync Status for {user_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Calendar", sync_status['calendar_id'])
    table.add_row("Event mappings", str(sync_status['total_event_mappings']))
    table.add_row("Pending conflicts", str(sync_status['pending_conflicts']))
    table.add_row("Last sync", sync_status['last_sync_at'] or "never")
    table.add_row("Incremental token", "yes" if sync_status['has_sync_token'] else "no")
    stats = sync_status['statistics']
    table.add_row(
        f"Operations ({stats['period_days']}d)",
        f"{stats['successful_operations']} ok / {stats['failed_operations']} failed / "
        f"{stats['conflict_operations']} conflicts"
    )
    console.print(table)

    if sync_status['recent_failures']:
        failures = Table(title="Recent Failures")
        failures.add_column("When", style="dim")
        failures.add_column("Operation")
        failures.add_column("Entity")
        failures.add_column("Error", style="red")
        for failure in sync_status['recent_failures']:
            failures.add_row(
                failure['created_at'],
                failure['operation_type'],
                f"{failure['entity_type'] or ''} {failure['entity_id'] or ''}".strip(),
                failure['error_message'] or ''
            )
        console.print(failures)


@cli.group()
def conflicts():
    """Conflict inspection and resolution."""
    pass


@conflicts.command('list')
@click.argument('user_id')
@click.option('--all', 'show_all', is_flag=True, help='Include resolved conflicts')
@async_command
async def list_conflicts(ctx, user_id, show_all):
    """List conflicts for a user."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        records = sync_engine.list_conflicts(user_id, None if show_all else ConflictStatus.PENDING)

    if not records:
        console.print("[green]No conflicts[/green]")
        return

    table = Table(title=f"Conflicts for {user_id}")
    table.add_column("ID", style="dim")
    table.add_column("Entity", style="cyan")
    table.add_column("Local title")
    table.add_column("Google title")
    table.add_column("Status")
    table.add_column("Detected", style="dim")

    for conflict in records:
        table.add_row(
            str(conflict.id),
            f"{conflict.entity_type} {conflict.entity_id}",
            conflict.local_snapshot.get('title') or '',
            conflict.remote_snapshot.get('summary') or '',
            conflict.status if not conflict.resolution else f"{conflict.status} ({conflict.resolution})",
            conflict.created_at.isoformat() if conflict.created_at else ''
        )
    console.print(table)


@conflicts.command('resolve')
@click.argument('conflict_id')
@click.option('--strategy', '-s', required=True,
              type=click.Choice([s.value for s in ResolutionStrategy]),
              help='Keep the planner version, the Google version, or a merge')
@click.option('--payload', '-p', help='JSON object of field values for the merge strategy')
@click.option('--suggested', is_flag=True, help='Merge using the suggested combination of both sides')
@async_command
async def resolve_conflict(ctx, conflict_id, strategy, payload, suggested):
    """Resolve a pending conflict."""
    settings = ctx.obj['settings']

    try:
        conflict_uuid = UUID(conflict_id)
    except ValueError:
        console.print(f"[red]Invalid conflict id: {conflict_id}[/red]")
        sys.exit(1)

    strategy = ResolutionStrategy(strategy)
    merged_payload: Optional[Dict[str, Any]] = None
    if payload:
        try:
            merged_payload = json.loads(payload)
        except json.JSONDecodeError as e:
            console.print(f"[red]--payload is not valid JSON: {escape(str(e))}[/red]")
            sys.exit(1)

    try:
        async with SyncEngine(settings) as sync_engine:
            if strategy == ResolutionStrategy.MERGE and merged_payload is None and suggested:
                merged_payload = sync_engine.suggest_merge(conflict_uuid)
            resolved = await sync_engine.resolve_conflict(conflict_uuid, strategy, merged_payload)
    except (SyncError, CalendarServiceError, SQLAlchemyError) as e:
        _fail(settings, f"Failed to resolve conflict: {escape(str(e))}")
        return

    if resolved.status == ConflictStatus.OBSOLETE.value:
        console.print(f"[yellow]Conflict {resolved.id} no longer has a linked item; closed as obsolete[/yellow]")
    else:
        console.print(f"[green]✓ Conflict {resolved.id} resolved with {resolved.resolution}[/green]")


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
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"[green]Configuration file created at {path}[/green]")
    console.print("Please edit the file with your actual credentials.")


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


@cli.group()
def db():
    """Database management commands."""
    pass


@db.command('init')
@click.pass_context
def init_db(ctx):
    """Create the database tables."""
    settings = ctx.obj['settings']
    try:
        DatabaseManager(settings).init_db()
    except SQLAlchemyError as e:
        _fail(settings, f"Failed to initialize database: {escape(str(e))}")
        return
    console.print(f"[green]✓ Database ready at {settings.database_url}[/green]")


@cli.group()
def google():
    """Google Calendar account and push notification commands."""
    pass


@google.command('connect')
@click.argument('user_id')
@click.pass_context
def google_connect(ctx, user_id):
    """Authorize Google Calendar access for a user in the browser."""
    from .services.google import run_oauth_flow

    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    run_oauth_flow(settings, db_manager, user_id)
    console.print(f"[green]✓ Google Calendar connected for {user_id}[/green]")


@google.command('watch')
@click.argument('user_id')
@async_command
async def google_watch(ctx, user_id):
    """Register a push notification channel for a user's calendar."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            channel = await sync_engine.setup_webhook(user_id)
    except (SyncError, CalendarServiceError, SQLAlchemyError) as e:
        _fail(settings, f"Failed to register channel: {escape(str(e))}")
        return

    console.print(Panel(
        f"Channel: {channel.channel_id}\n"
        f"Resource: {channel.resource_id}\n"
        f"Expires: {channel.expiration.isoformat() if channel.expiration else 'unknown'}",
        title="Google push channel registered",
        border_style="green"
    ))


@google.command('unwatch')
@click.argument('user_id')
@async_command
async def google_unwatch(ctx, user_id):
    """Stop every push notification channel of a user."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            stopped = await sync_engine.stop_webhooks(user_id)
    except (SyncError, CalendarServiceError, SQLAlchemyError) as e:
        _fail(settings, f"Failed to stop channels: {escape(str(e))}")
        return
    console.print(f"[green]Stopped {stopped} channel(s)[/green]")


@cli.group()
def operations():
    """Sync operation audit log commands."""
    pass


@operations.command('prune')
@click.option('--days', type=int, help='Retention window (defaults to SYNC_CONFIG__OPERATION_RETENTION_DAYS)')
@async_command
async def prune_operations(ctx, days):
    """Delete successful operations older than the retention window."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        deleted = sync_engine.prune_operations(days)
    console.print(f"[green]Pruned {deleted} operation(s)[/green]")


if __name__ == '__main__':
    cli()

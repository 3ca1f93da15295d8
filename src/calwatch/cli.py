"""Command-line interface for watching Google calendars."""

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import click
import pytz
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm
import structlog

from . import __version__
from .config import load_settings, create_example_config
from .exceptions import CalendarServiceError, ChannelExpiredError, StopError, SubscriptionError
from .pagination import SyncToken
from .runtime import ChannelRuntime

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, log_format: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level.upper()), format=log_format)
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


def _format_expiration(expiration: Optional[datetime]) -> str:
    if expiration is None:
        return "[dim]never[/dim]"
    remaining = expiration - datetime.now(pytz.UTC)
    if remaining.total_seconds() <= 0:
        return f"[red]{expiration:%Y-%m-%d %H:%M} UTC (expired)[/red]"
    hours = int(remaining.total_seconds() // 3600)
    return f"{expiration:%Y-%m-%d %H:%M} UTC ({hours}h left)"


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calwatch - Google Calendar push channels and incremental event pulls.

    Register webhook channels on calendars, keep them renewed, and turn
    each notification into created/updated/deleted events.
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
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run the webhook receiver with background channel renewal."""
    try:
        import uvicorn
        uvicorn.run("calwatch.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--show-deleted', is_flag=True, help='Include calendars removed from the calendar list')
@async_command
async def calendars(ctx, show_deleted):
    """List calendars visible to the authorized account."""
    settings = ctx.obj['settings']
    try:
        async with ChannelRuntime(settings) as runtime:
            items = await runtime.service.calendars(show_deleted=show_deleted).collect()
    except CalendarServiceError as e:
        console.print(f"[red]Failed to list calendars: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    table = Table(title="Google Calendars")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Time zone")
    table.add_column("Access")
    for calendar in items:
        name = calendar.summary or ''
        if calendar.is_primary:
            name += " [bold](primary)[/bold]"
        if calendar.deleted:
            name += " [red](deleted)[/red]"
        table.add_row(calendar.id, name, calendar.time_zone or '', calendar.access_role or '')
    console.print(table)


@cli.command()
@click.argument('calendar')
@click.option('--sync-token', '-s', help='Only list changes since this sync token')
@async_command
async def events(ctx, calendar, sync_token):
    """List events of CALENDAR and print the sync token for the next pull."""
    settings = ctx.obj['settings']
    cursor = SyncToken(sync_token) if sync_token else None
    try:
        async with ChannelRuntime(settings) as runtime:
            stream = runtime.service.events(calendar, cursor)
            items = await stream.collect()
            next_sync_token = stream.next_sync_token
    except CalendarServiceError as e:
        console.print(f"[red]Failed to list events: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    table = Table(title=f"Events in {calendar}")
    table.add_column("ID", style="cyan")
    table.add_column("Summary", style="green")
    table.add_column("Start")
    table.add_column("Status")
    table.add_column("Updated")
    for event in items:
        start = ''
        if event.start is not None:
            start = event.start.strftime('%Y-%m-%d') if event.all_day else event.start.isoformat()
        status = event.status.value if event.status else ''
        updated = event.updated.isoformat() if event.updated else ''
        table.add_row(event.id, event.summary or '', start, status, updated)
    console.print(table)
    console.print(f"{len(items)} events across {stream.pages_fetched} pages")
    if next_sync_token:
        console.print(f"Next sync token: [bold]{next_sync_token}[/bold]")
    else:
        console.print("[yellow]Google returned no sync token for this listing[/yellow]")


@cli.group()
def google():
    """Google push channel management."""
    pass


@google.command('watch')
@click.option('--calendar', '-c', required=True, help='Google calendar ID (or name from calendars list)')
@click.option('--address', '-a', help='Public HTTPS webhook URL (defaults to WEBHOOK_ADDRESS)')
@click.option('--ttl', type=int, help='Requested channel lifetime in seconds')
@async_command
async def google_watch(ctx, calendar, address, ttl):
    """Register a Google push notification channel for a calendar."""
    settings = ctx.obj['settings']
    address = address or settings.webhook_address
    if not address:
        console.print("[red]No webhook address; pass --address or set WEBHOOK_ADDRESS[/red]")
        sys.exit(1)
    if not address.startswith('https://'):
        console.print("[red]Google only delivers notifications to https:// addresses[/red]")
        sys.exit(1)

    try:
        async with ChannelRuntime(settings) as runtime:
            # Resolve calendar ID if a friendly name was provided
            cal_id = calendar
            async for cal in runtime.service.calendars():
                if cal.id == calendar or (cal.summary and cal.summary.lower() == calendar.lower()):
                    cal_id = cal.id
                    break

            if ttl:
                expiration = datetime.now(pytz.UTC) + timedelta(seconds=ttl)
            else:
                expiration = runtime.requested_expiration()
            channel = await runtime.manager.subscribe(cal_id, address, expiration)
    except (SubscriptionError, CalendarServiceError) as e:
        console.print(f"[red]Failed to register watch: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    console.print(Panel(
        f"Calendar: {channel.collection}\n"
        f"Channel: {channel.id}\n"
        f"Resource: {channel.resource_id}\n"
        f"Expires: {_format_expiration(channel.expiration)}",
        title="[green]✓ Watch registered[/green]",
    ))


@google.command('channels')
@click.pass_context
def google_channels(ctx):
    """Show stored push channels."""
    settings = ctx.obj['settings']
    runtime = ChannelRuntime(settings)
    runtime.db_manager.init_db()
    runtime.manager.load()

    channels = runtime.manager.channels
    if not channels:
        console.print("[yellow]No stored channels. Run 'google watch' first.[/yellow]")
        return

    table = Table(title="Push Channels")
    table.add_column("Channel", style="cyan")
    table.add_column("Calendar", style="green")
    table.add_column("Expires")
    table.add_column("Synced", justify="center")
    for channel in sorted(channels, key=lambda c: c.created_at):
        synced = "✓" if runtime.manager.get_sync_token(channel.id) else "-"
        table.add_row(channel.id, channel.collection, _format_expiration(channel.expiration), synced)
    console.print(table)


@google.command('renew')
@click.option('--renew-before-mins', type=int, help='Renew channels expiring within this many minutes')
@click.option('--force', is_flag=True, help='Force renew all stored channels regardless of expiration')
@async_command
async def google_renew(ctx, renew_before_mins, force):
    """Renew stored Google push channels that expire soon."""
    settings = ctx.obj['settings']
    window = timedelta(minutes=renew_before_mins) if renew_before_mins is not None else None

    async with ChannelRuntime(settings) as runtime:
        if not runtime.manager.channels:
            console.print("[yellow]No stored channels found\nRun 'google watch' first.[/yellow]")
            return
        before = {channel.id for channel in runtime.manager.channels}
        renewed = await runtime.renew_due_channels(window, force=force)

    for channel in renewed:
        console.print(
            f"[green]✓ Renewed watch[/green] for {channel.collection} → {channel.id} "
            f"(expires {_format_expiration(channel.expiration)})"
        )
    if not renewed:
        console.print(f"[dim]Nothing to renew among {len(before)} channels[/dim]")


@google.command('unwatch')
@click.argument('channel_id', required=False)
@click.option('--calendar', '-c', help='Stop every channel on this calendar')
@click.option('--all', 'stop_all', is_flag=True, help='Stop every stored channel')
@async_command
async def google_unwatch(ctx, channel_id, calendar, stop_all):
    """Stop channels and remove them from storage."""
    settings = ctx.obj['settings']
    if not (channel_id or calendar or stop_all):
        console.print("[red]Give a CHANNEL_ID, --calendar or --all[/red]")
        sys.exit(1)

    async with ChannelRuntime(settings) as runtime:
        manager = runtime.manager
        if channel_id:
            targets = [channel_id]
        elif calendar:
            targets = [channel.id for channel in manager.channels_for(calendar)]
        else:
            targets = [channel.id for channel in manager.channels]

        for target in targets:
            try:
                stopped = await manager.stop(target)
            except ChannelExpiredError as e:
                console.print(f"[yellow]{e}; removed from storage[/yellow]")
                continue
            except StopError as e:
                console.print(f"[red]Could not stop channel {target}: {e}[/red]")
                continue
            if stopped:
                console.print(f"[green]✓ Stopped channel[/green] {target}")
            else:
                console.print(f"[dim]Channel {target} is not stored[/dim]")


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
        console.print("Please edit the file with your webhook address and token file.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration: {e}[/red]")
        sys.exit(1)


if __name__ == '__main__':
    cli()

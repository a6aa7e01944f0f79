#!/usr/bin/env python3
"""
Maggrab - Feed Grabber Daemon
=============================

Main application entry point with CLI interface for running and managing
the daemon.

Usage:
    python main.py --help                     # Show all commands
    python main.py check-config               # Validate configuration
    python main.py run                        # Start the daemon
    python main.py status                     # Stats, feeds and schedule
    python main.py add-feed NAME URL          # Register a feed
    python main.py cleanup --days 60          # Remove old activity data
    python main.py test-connection            # Check MyJDownloader access
"""

import sys
import asyncio
import signal
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from maggrab.app import build_application
from maggrab.config.settings import DownloaderCredentials, get_settings
from maggrab.utils.logging import configure_application_logging, get_logger_for_component
from maggrab.utils.exceptions import MaggrabError, get_user_friendly_message
from maggrab.utils.timeutils import to_datetime

console = Console()


def _setup_logging(settings, debug: bool = False) -> None:
    configure_application_logging(
        settings.logging,
        level="DEBUG" if debug else settings.get_effective_log_level(),
    )


def _format_ms(value) -> str:
    if not value:
        return "Never"
    return to_datetime(value).strftime("%Y-%m-%d %H:%M:%S UTC")


@click.group(invoke_without_command=True)
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, debug):
    """Maggrab - feed grabber daemon for MyJDownloader."""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
def check_config():
    """Validate configuration and environment variables."""
    console.print("[bold blue]🔧 Checking Maggrab Configuration[/bold blue]")

    try:
        settings = get_settings()

        table = Table(title="Configuration Status")
        table.add_column("Component", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Details")

        checks = [
            ("Storage", _check_storage_config),
            ("Logging", _check_logging_config),
            ("Scheduler", _check_scheduler_config),
            ("Processing", _check_processing_config),
            ("MyJDownloader", _check_downloader_config),
        ]

        all_passed = True
        for name, check_func in checks:
            try:
                status, details = check_func(settings)
                table.add_row(name, "✅ Valid" if status else "❌ Invalid", details)
                if not status:
                    all_passed = False
            except Exception as e:
                table.add_row(name, "❌ Error", str(e))
                all_passed = False

        console.print(table)

        if all_passed:
            console.print("[bold green]✅ All configuration checks passed![/bold green]")
            sys.exit(0)
        else:
            console.print("[bold red]❌ Configuration validation failed[/bold red]")
            sys.exit(1)

    except MaggrabError as e:
        console.print(f"[bold red]❌ Configuration error: {e}[/bold red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def run(ctx):
    """Start the daemon and keep it running until interrupted."""
    settings = get_settings()
    _setup_logging(settings, ctx.obj.get('debug'))
    logger = get_logger_for_component('main')

    async def run_daemon():
        app = build_application(settings)
        stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows loops: Ctrl+C still raises KeyboardInterrupt
                logger.debug(f"Signal handler for {sig.name} unavailable")

        await app.daemon.start()
        console.print(f"[bold green]🚀 Maggrab running, data in {settings.storage.data_dir}[/bold green]")

        await stop_event.wait()

        console.print("[yellow]Stopping daemon, waiting for running feeds...[/yellow]")
        await app.daemon.stop()
        await app.daemon.wait_for_runs()
        await app.connection.reset()

    try:
        asyncio.run(run_daemon())
    except MaggrabError as e:
        logger.error(f"Daemon failed: {e}")
        console.print(f"[bold red]❌ {get_user_friendly_message(e)}: {e}[/bold red]")
        sys.exit(1)


@cli.command()
@click.option('--logs', default=10, help='Number of recent activity entries to show')
def status(logs):
    """Show stats, feeds, schedule and recent activity."""
    console.print("[bold blue]📊 Maggrab Status[/bold blue]")

    async def show_status():
        app = build_application()
        repository = app.repository
        await repository.initialize()

        stats = await repository.get_stats()
        feeds = await repository.get_feeds()
        schedule = {entry.feed_id: entry for entry in await repository.get_schedule()}
        entries = await repository.get_logs(limit=logs)

        stats_table = Table(title="Stats")
        stats_table.add_column("Counter", style="cyan")
        stats_table.add_column("Value", style="green")
        stats_table.add_row("Items scraped", str(stats.total_scraped))
        stats_table.add_row("Links found", str(stats.links_found))
        stats_table.add_row("Submitted", str(stats.submitted))
        console.print(stats_table)

        feeds_table = Table(title=f"Feeds ({len(feeds)})")
        feeds_table.add_column("ID", style="dim")
        feeds_table.add_column("Name", style="cyan")
        feeds_table.add_column("Interval")
        feeds_table.add_column("Status")
        feeds_table.add_column("Found", style="green")
        feeds_table.add_column("Last checked")
        feeds_table.add_column("Next run")

        status_styles = {"idle": "green", "running": "yellow", "error": "red"}
        for feed in feeds:
            entry = schedule.get(feed.id)
            style = status_styles.get(feed.status.value, "white")
            feeds_table.add_row(
                feed.id[:8],
                feed.name,
                f"{feed.interval} min",
                f"[{style}]{feed.status.value}[/{style}]",
                str(feed.total_found),
                _format_ms(feed.last_checked),
                _format_ms(entry.next_run) if entry else "Not scheduled",
            )
        console.print(feeds_table)

        connection = app.connection.get_connection_status()
        console.print(
            f"MyJDownloader: {'configured' if connection['configured'] else 'not configured'}"
            + (f" as {connection['masked_email']}" if connection['masked_email'] else "")
        )

        if entries:
            log_table = Table(title="Recent Activity")
            log_table.add_column("Time", style="dim")
            log_table.add_column("Level")
            log_table.add_column("Source", style="cyan")
            log_table.add_column("Message")
            for entry in entries:
                log_table.add_row(
                    _format_ms(entry.timestamp), entry.level.value, entry.source.value, entry.message
                )
            console.print(log_table)

    try:
        asyncio.run(show_status())
    except MaggrabError as e:
        console.print(f"[bold red]❌ Error reading status: {e}[/bold red]")
        sys.exit(1)


@cli.command()
@click.argument('name')
@click.argument('url')
@click.option('--interval', type=int, help='Poll interval in minutes (default: stored check interval)')
@click.option('--title-filter', help='Only grab items whose title contains this text')
def add_feed(name, url, interval, title_filter):
    """Register a feed. A running daemon picks it up on its next start."""

    async def create():
        app = build_application()
        await app.repository.initialize()
        return await app.repository.create_feed(name, url, interval=interval, title_filter=title_filter)

    try:
        feed = asyncio.run(create())
        console.print(f"[bold green]✅ Added feed {feed.name} ({feed.id}) every {feed.interval} min[/bold green]")
    except (MaggrabError, ValueError) as e:
        console.print(f"[bold red]❌ Could not add feed: {e}[/bold red]")
        sys.exit(1)


@cli.command()
@click.argument('feed_id')
def remove_feed(feed_id):
    """Delete a feed and its schedule entry."""

    async def delete():
        app = build_application()
        await app.repository.initialize()
        return await app.repository.delete_feed(feed_id)

    if asyncio.run(delete()):
        console.print(f"[bold green]✅ Removed feed {feed_id}[/bold green]")
    else:
        console.print(f"[bold red]❌ Feed {feed_id} not found[/bold red]")
        sys.exit(1)


@cli.command()
@click.option('--days', type=int, help='Remove entries older than this many days')
def cleanup(days):
    """Remove old logs, items and processed urls."""
    console.print("[bold blue]🧹 Maggrab Data Cleanup[/bold blue]")

    async def run_cleanup():
        app = build_application()
        await app.repository.initialize()
        return await app.daemon.run_maintenance(days)

    try:
        result = asyncio.run(run_cleanup())
    except MaggrabError as e:
        console.print(f"[bold red]❌ Cleanup error: {e}[/bold red]")
        sys.exit(1)

    table = Table(title="Removed Entries")
    table.add_column("Collection", style="cyan")
    table.add_column("Removed", style="green")
    table.add_row("Logs", str(result.logs))
    table.add_row("Extracted items", str(result.extracted))
    table.add_row("Grabbed items", str(result.grabbed))
    table.add_row("Processed urls", str(result.processed))
    console.print(table)
    console.print(f"[bold green]✅ Cleanup complete, {result.total} entries removed[/bold green]")


@cli.command()
@click.confirmation_option(prompt='Clear logs, stats, processed urls and items?')
def clear_entries():
    """Clear activity data while keeping feeds and settings."""

    async def clear():
        app = build_application()
        await app.repository.initialize()
        await app.daemon.clear_entries()

    asyncio.run(clear())
    console.print("[bold green]✅ Entries cleared[/bold green]")


@cli.command()
@click.confirmation_option(prompt='Wipe ALL data including feeds?')
def reset():
    """Reset every collection to its defaults."""

    async def wipe():
        app = build_application()
        await app.repository.initialize()
        await app.daemon.reset()

    asyncio.run(wipe())
    console.print("[bold green]✅ All data reset[/bold green]")


@cli.command()
def test_connection():
    """Connect to MyJDownloader and report the device and package count."""
    console.print("[bold blue]🔌 Testing MyJDownloader Connection[/bold blue]")

    async def probe():
        app = build_application()
        await app.repository.initialize()
        try:
            return await app.daemon.test_connection()
        finally:
            await app.connection.reset()

    result = asyncio.run(probe())
    if result["success"]:
        console.print(
            f"[bold green]✅ Connected to {result['device_name']} "
            f"({result['package_count']} packages)[/bold green]"
        )
    else:
        console.print(f"[bold red]❌ {result['error']}[/bold red]")
        sys.exit(1)


# Helper functions for configuration checks
def _check_storage_config(settings) -> tuple[bool, str]:
    """Check the data directory can be created."""
    try:
        data_dir = Path(settings.storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        return True, f"Path: {data_dir}, retention: {settings.storage.retention_days} days"
    except OSError as e:
        return False, str(e)


def _check_logging_config(settings) -> tuple[bool, str]:
    """Check logging configuration."""
    try:
        if settings.logging.file_path:
            log_path = Path(settings.logging.file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
        return True, f"Level: {settings.logging.level.value}, Console: {settings.logging.console_logging}"
    except OSError as e:
        return False, str(e)


def _check_scheduler_config(settings) -> tuple[bool, str]:
    scheduler = settings.scheduler
    return True, (
        f"Tick: {scheduler.tick_seconds:g}s, max concurrent runs: {scheduler.max_concurrent_runs}"
    )


def _check_processing_config(settings) -> tuple[bool, str]:
    processing = settings.processing
    return True, (
        f"Max items per run: {processing.max_items_per_run}, "
        f"preferred hosts: {', '.join(processing.preferred_hosts)}"
    )


def _check_downloader_config(settings) -> tuple[bool, str]:
    """Check MyJDownloader credentials are present."""
    credentials = DownloaderCredentials()
    if not credentials.configured:
        return False, "MYJD_EMAIL and MYJD_PASSWORD not set"
    device = credentials.device or "first available"
    return True, f"Account: {credentials.masked_email()}, device: {device}"


if __name__ == "__main__":
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 Maggrab interrupted by user[/yellow]")
        sys.exit(130)

"""Command-line interface for the race results platform."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .database.config import DatabaseConfig
from .database.session import dispose_engines
from .errors import SyncError
from .ingestion.client import TimingAPIClient
from .ingestion.config import PlatformConfig, load_platform_config
from .models.domain import Event
from .pipeline.live_poller import LivePollingScheduler, LiveState, is_live
from .pipeline.normalizer import unique_divisions
from .pipeline.orchestrator import SyncOrchestrator, SyncResult
from .pipeline.storage_adapter import CacheStore

app = typer.Typer(
    name="race-results",
    help="Race results sync - timing API to results cache",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Platform config YAML (default: environment)")
DatabaseOption = typer.Option(None, "--database-url", help="SQLAlchemy URL (default: environment)")


def _load_configs(config: Optional[str], database_url: Optional[str]) -> tuple[PlatformConfig, DatabaseConfig]:
    try:
        platform_config = load_platform_config(config)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    db_config = DatabaseConfig.from_env()
    if database_url:
        db_config.url = database_url
    return platform_config, db_config


@asynccontextmanager
async def _orchestrator(platform_config: PlatformConfig, db_config: DatabaseConfig):
    store = CacheStore.from_config(db_config, platform_config.sync)
    await store.create_tables()
    async with TimingAPIClient(platform_config.api) as client:
        try:
            yield SyncOrchestrator(client, store, platform_config.sync)
        finally:
            dispose_engines()


def _format_epoch(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M")


@app.command("init-db")
def init_db(database_url: Optional[str] = DatabaseOption):
    """Create the cache tables."""
    db_config = DatabaseConfig.from_env()
    if database_url:
        db_config.url = database_url

    async def run():
        store = CacheStore.from_config(db_config)
        await store.create_tables()
        dispose_engines()

    asyncio.run(run())
    console.print(f"[green]✓ Cache tables ready[/green] ({db_config!r})")


@app.command()
def events(
    config: Optional[str] = ConfigOption,
    database_url: Optional[str] = DatabaseOption,
    refresh: bool = typer.Option(True, "--import/--cached", help="Import from the timing API first"),
):
    """Import events from the timing API and list them."""
    platform_config, db_config = _load_configs(config, database_url)

    async def run() -> list[Event]:
        async with _orchestrator(platform_config, db_config) as orchestrator:
            if refresh:
                await orchestrator.import_events()
            return await orchestrator.store.list_events()

    try:
        event_list = asyncio.run(run())
    except SyncError as e:
        console.print(f"[red]Import failed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Events ({len(event_list)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Races", justify="right")
    table.add_column("Live")

    for event in event_list:
        state = is_live(event)
        table.add_row(
            event.event_id,
            event.name,
            _format_epoch(event.start_time),
            _format_epoch(event.end_time),
            str(len(event.races)),
            f"[green]{state.value}[/green]" if state.is_live else state.value,
        )

    console.print(table)


@app.command()
def sync(
    event_id: str = typer.Argument(..., help="Event ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Fetch fresh even on a cache hit"),
    limit: int = typer.Option(20, "--limit", "-n", help="Rows to display (0 for none)"),
    config: Optional[str] = ConfigOption,
    database_url: Optional[str] = DatabaseOption,
):
    """Run one sync pass for an event and show the results."""
    platform_config, db_config = _load_configs(config, database_url)

    async def run() -> SyncResult:
        async with _orchestrator(platform_config, db_config) as orchestrator:
            orchestrator.select_event(event_id)
            return await orchestrator.sync_event(event_id, force=force)

    result = asyncio.run(run())
    _display_sync_result(result, limit)

    if result.error is not None and not result.results:
        raise typer.Exit(1)


@app.command()
def refresh(
    event_id: str = typer.Argument(..., help="Event ID"),
    config: Optional[str] = ConfigOption,
    database_url: Optional[str] = DatabaseOption,
):
    """Bump an event's sync version so the next pass fetches fresh."""
    platform_config, db_config = _load_configs(config, database_url)

    async def run() -> int:
        store = CacheStore.from_config(db_config, platform_config.sync)
        await store.create_tables()
        try:
            return await store.bump_sync_version(event_id)
        finally:
            dispose_engines()

    try:
        version = asyncio.run(run())
    except SyncError as e:
        console.print(f"[red]Refresh request failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Event {event_id} sync version is now {version}[/green]")


@app.command("live-status")
def live_status(
    event_id: str = typer.Argument(..., help="Event ID"),
    config: Optional[str] = ConfigOption,
    database_url: Optional[str] = DatabaseOption,
):
    """Show whether an imported event is live and how often it would be polled."""
    platform_config, db_config = _load_configs(config, database_url)

    async def run() -> Optional[Event]:
        store = CacheStore.from_config(db_config, platform_config.sync)
        await store.create_tables()
        try:
            return await store.load_event(event_id)
        finally:
            dispose_engines()

    event = asyncio.run(run())
    if event is None:
        console.print(f"[red]Event {event_id} has not been imported (run `race-results events`)[/red]")
        raise typer.Exit(1)

    state = is_live(event)
    if state is LiveState.ACTIVE_WINDOW:
        interval = platform_config.sync.active_poll_interval
    elif state is LiveState.RACE_DAY_FALLBACK:
        interval = platform_config.sync.race_day_poll_interval
    else:
        interval = None

    lines = [
        f"[bold]{event.name}[/bold] ({event.event_id})",
        f"Start: {_format_epoch(event.start_time)}   End: {_format_epoch(event.end_time)}",
        f"Live state: [cyan]{state.value}[/cyan]",
        f"Poll interval: {f'{interval}s' if interval else 'no polling'}",
    ]
    if not platform_config.sync.auto_fetch_enabled(event_id):
        lines.append("[yellow]Auto-fetch disabled for this event[/yellow]")

    console.print(Panel("\n".join(lines), title="Live status"))


@app.command()
def watch(
    event_id: str = typer.Argument(..., help="Event ID"),
    config: Optional[str] = ConfigOption,
    database_url: Optional[str] = DatabaseOption,
):
    """Poll an event while it is live, syncing on every tick."""
    platform_config, db_config = _load_configs(config, database_url)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    async def run():
        async with _orchestrator(platform_config, db_config) as orchestrator:
            event = await orchestrator.store.load_event(event_id)
            if event is None:
                await orchestrator.import_events(with_races=False)
                event = await orchestrator.store.load_event(event_id)
            if event is None:
                console.print(f"[red]Event {event_id} not found[/red]")
                return

            async with LivePollingScheduler(orchestrator) as scheduler:
                state = await scheduler.watch(event)
                console.print(f"Event {event_id}: [cyan]{state.value}[/cyan]")
                await scheduler.wait()
                console.print(f"[green]✓ Polling finished after {scheduler.stats.ticks} ticks[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
    except SyncError as e:
        console.print(f"[red]Watch failed: {e}[/red]")
        raise typer.Exit(1)


def _display_sync_result(result: SyncResult, limit: int = 20):
    """Display a sync pass and the top of its results."""
    console.print("\n[bold]Sync Result[/bold]")

    summary = Table(show_header=False, box=None)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")

    summary.add_row("Event", result.event_id)
    summary.add_row("Source", result.source.value if result.source else "-")
    summary.add_row("Results", str(len(result.results)))
    summary.add_row("Divisions", str(len(unique_divisions(result.results))))
    summary.add_row("Duration", f"{result.duration_seconds:.1f}s")
    if result.warnings:
        summary.add_row("Warnings", f"[yellow]{len(result.warnings)}[/yellow]")
    if result.error is not None:
        summary.add_row("Error", f"[red]{result.error}[/red]")

    console.print(summary)

    if limit and result.results:
        table = Table(title=f"Results (first {min(limit, len(result.results))})")
        table.add_column("Place", justify="right")
        table.add_column("Bib")
        table.add_column("Name")
        table.add_column("Chip", justify="right")
        table.add_column("Gender", justify="right")
        table.add_column("Division")

        ordered = sorted(result.results, key=lambda r: (r.place is None, r.place or 0))
        for r in ordered[:limit]:
            division = f"{r.division_name or '-'} ({r.division_place})" if r.division_place else (r.division_name or "-")
            table.add_row(
                str(r.place or "-"),
                r.bib or "-",
                r.full_name,
                r.chip_time or "-",
                f"{r.gender or ''} {r.gender_place or '-'}".strip(),
                division,
            )
        console.print(table)

    if result.warnings:
        console.print("\n[bold yellow]Warnings:[/bold yellow]")
        for warning in result.warnings[:10]:
            console.print(f"  [yellow]•[/yellow] {warning}")
        if len(result.warnings) > 10:
            console.print(f"  ... and {len(result.warnings) - 10} more warnings")


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(f"[bold]Race Results Platform[/bold] version: [green]{__version__}[/green]")


if __name__ == "__main__":
    app()

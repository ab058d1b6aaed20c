"""Main entry point for the WatchSync engine."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from watchsync import __version__
from watchsync.core.config import Settings
from watchsync.core.logging_setup import configure_logging
from watchsync.models.catalog import CatalogItem, CatalogState
from watchsync.services.cache_store import CacheStore
from watchsync.services.change_detector import ChangeDetector
from watchsync.services.remote_gateway import RemoteGateway
from watchsync.services.sync_controller import SyncController

app = typer.Typer(
    name="watchsync",
    help="WatchSync - catalog sync, offline cache and new-season alerts",
)
console = Console()
logger = structlog.get_logger()


class Engine:
    """Wires gateway, cache, sync controller and change detector together."""

    def __init__(self, settings: Settings, gateway: Optional[RemoteGateway] = None):
        self.settings = settings
        self.running = False

        self.gateway = gateway or RemoteGateway(settings.remote)
        self.cache = CacheStore(settings.cache)
        self.sync = SyncController(settings, self.gateway, self.cache)
        self.detector = ChangeDetector(settings, self.gateway)
        self._unsubscribe = self.sync.subscribe(self.detector.on_catalog)

    async def start(self, owner_id: str) -> None:
        """Start syncing for ``owner_id``."""
        self.running = True
        logger.info("engine_starting", owner_id=owner_id, version=__version__, environment=self.settings.environment)
        await self.sync.set_identity(owner_id)
        logger.info("engine_started", owner_id=owner_id)

    async def switch_identity(self, owner_id: Optional[str]) -> None:
        """Log in as another identity, or log out with None."""
        await self.detector.stop()
        await self.sync.set_identity(owner_id)

    async def stop(self) -> None:
        """Stop the engine gracefully."""
        if not self.running:
            return
        logger.info("engine_stopping")
        self.running = False

        await self.detector.stop()
        await self.sync.stop()
        self._unsubscribe()
        await self.gateway.close()

        logger.info("engine_stopped")


def load_settings(config_path: Optional[Path]) -> Settings:
    """Load settings from file or defaults."""
    if config_path and config_path.exists():
        logger.info("loading_config", path=str(config_path))
        return Settings.from_yaml(config_path)

    default_paths = [
        Path("config/watchsync.yaml"),
        Path("watchsync.yaml"),
        Path.home() / ".watchsync" / "config.yaml",
    ]

    for path in default_paths:
        if path.exists():
            logger.info("loading_config", path=str(path))
            return Settings.from_yaml(path)

    logger.info("using_default_config")
    return Settings()


def _print_new_seasons(items: list[CatalogItem]) -> None:
    for item in items:
        console.print(f"[bold green]New season:[/bold green] {item.title} now has {item.season_count} seasons")


def _print_state(state: CatalogState) -> None:
    if state.loading:
        return
    flags = []
    if state.offline:
        flags.append("[yellow]offline[/yellow]")
    if state.stale:
        flags.append("[red]stale[/red]")
    console.print(f"Catalog: {len(state.items)} items ({state.source.value}) {' '.join(flags)}")


async def run_engine(settings: Settings, owner_id: str) -> None:
    """Run the engine until interrupted."""
    engine = Engine(settings)
    engine.sync.subscribe(_print_state)
    engine.detector.subscribe(_print_new_seasons)

    loop = asyncio.get_running_loop()

    def signal_handler():
        asyncio.create_task(engine.stop())

    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, signal_handler)
        loop.add_signal_handler(signal.SIGTERM, signal_handler)

    try:
        await engine.start(owner_id)

        while engine.running:
            await asyncio.sleep(1)

    except KeyboardInterrupt:
        pass
    finally:
        await engine.stop()


async def detect_once(settings: Settings, owner_id: str, acknowledge: bool) -> list[CatalogItem]:
    """Fetch the full catalog, run one detection pass and optionally acknowledge it."""
    gateway = RemoteGateway(settings.remote)
    detector = ChangeDetector(settings, gateway)
    try:
        items = await gateway.fetch_catalog(owner_id)
        eligible = await detector.run(owner_id, items)
        if acknowledge and eligible:
            await detector.mark_notified([item.id for item in eligible])
        return eligible
    finally:
        await gateway.close()


@app.command()
def run(
    owner: str = typer.Option(..., "--owner", "-o", help="Identity whose catalog to sync"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
) -> None:
    """Run the sync engine."""
    settings = load_settings(config)
    configure_logging(settings.logging)
    asyncio.run(run_engine(settings, owner))


@app.command("new-seasons")
def new_seasons(
    owner: str = typer.Option(..., "--owner", "-o", help="Identity to check"),
    ack: bool = typer.Option(False, "--ack", help="Acknowledge the reported seasons"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
) -> None:
    """Run one new-season detection pass."""
    settings = load_settings(config)
    configure_logging(settings.logging)
    eligible = asyncio.run(detect_once(settings, owner, ack))

    if not eligible:
        console.print("No new seasons.")
        return

    table = Table(title="New seasons")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Seasons", justify="right")
    for item in eligible:
        table.add_row(item.id, item.title, str(item.season_count))
    console.print(table)
    if ack:
        console.print(f"[green][OK][/green] Acknowledged {len(eligible)} item(s)")


@app.command()
def status(
    owner: str = typer.Option(..., "--owner", "-o", help="Identity to inspect"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
) -> None:
    """Show the cached snapshot for an identity."""
    settings = load_settings(config)
    cache = CacheStore(settings.cache)
    read = cache.read(owner)

    if not read.hit:
        console.print(f"[yellow][!][/yellow] No cached catalog for {owner}")
    else:
        hours = read.age.total_seconds() / 3600
        marker = "[red][STALE][/red]" if cache.is_stale(read.age) else "[green][OK][/green]"
        console.print(
            f"{marker} {len(read.snapshot.items)} items, {read.snapshot.fidelity.value} snapshot, "
            f"{hours:.1f}h old"
        )

    stats = cache.stats()
    console.print(f"Cache usage: {stats.bytes_used} / {stats.quota_bytes} bytes in {stats.entries} snapshot(s)")


@app.command("clear-cache")
def clear_cache(
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Only clear this identity"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
) -> None:
    """Delete cached snapshots."""
    settings = load_settings(config)
    cache = CacheStore(settings.cache)
    if owner:
        cache.clear(owner)
        console.print(f"[green][OK][/green] Cleared cache for {owner}")
    else:
        removed = cache.clear_all()
        console.print(f"[green][OK][/green] Removed {removed} cache entries")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"WatchSync v{__version__}")


if __name__ == "__main__":
    app()

"""CLI entry point for the service watcher."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import WatcherConfig, get_settings, load_config
from .errors import ConfigLoadError
from .logging import configure_logging, get_logger
from .state_store import FileStateStore
from .types import utcnow
from .watcher import CycleReport, Watcher, build_watcher

app = typer.Typer(
    name="service-watcher",
    help="Service Watcher - auto-healing supervisor for systemd services",
    add_completion=False,
)

console = Console(stderr=True)
LOGGER = get_logger(__name__)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to the base configuration document",
)
ConfigDirOption = typer.Option(
    None,
    "--config-dir",
    "-d",
    help="Directory of YAML override fragments, merged in alphabetical order",
)
StateDirOption = typer.Option(
    None,
    "--state-dir",
    "-s",
    help="Directory holding persistent per-service state",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Service Watcher version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable verbose logging",
    ),
) -> None:
    """Service Watcher - auto-healing supervisor for systemd services."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def _load(config: Optional[Path], config_dir: Optional[Path]) -> WatcherConfig:
    try:
        return load_config(config, config_dir)
    except ConfigLoadError as e:
        LOGGER.error("Failed to load configuration", error=str(e))
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


async def _run_once(watcher: Watcher) -> CycleReport:
    try:
        return await watcher.run_cycle()
    finally:
        await watcher.close()


@app.command()
def run(
    config: Optional[Path] = ConfigOption,
    config_dir: Optional[Path] = ConfigDirOption,
    state_dir: Optional[Path] = StateDirOption,
) -> None:
    """Run one watcher cycle over all enabled services and exit.

    Exits 0 whatever happened to individual services; exits 1 only when the
    configuration cannot be loaded.
    """
    watcher_config = _load(config, config_dir)
    watcher = build_watcher(watcher_config, state_dir=state_dir)
    asyncio.run(_run_once(watcher))


@app.command("check-config")
def check_config(
    config: Optional[Path] = ConfigOption,
    config_dir: Optional[Path] = ConfigDirOption,
) -> None:
    """Load and validate the configuration, then print the watched services."""
    watcher_config = _load(config, config_dir)
    limits = watcher_config.rate_limiting

    table = Table(title="Watched services")
    table.add_column("Service", style="cyan")
    table.add_column("Enabled")
    table.add_column("On failed")
    table.add_column("On inactive")
    table.add_column("Health check")
    table.add_column("Dependencies")
    table.add_column("Rate limit")

    for spec in watcher_config.services.values():
        check = spec.health_check
        health = (
            f"{check.type.value} {check.target} ({check.failures_before_restart}x)"
            if check.enabled
            else "-"
        )
        max_restarts = spec.rate_limiting.max_restarts or limits.max_restarts
        window = spec.rate_limiting.window_minutes or limits.window_minutes
        table.add_row(
            spec.name,
            "yes" if spec.enabled else "no",
            "yes" if spec.on_failed else "no",
            "yes" if spec.on_inactive else "no",
            health,
            ", ".join(spec.dependencies) or "-",
            f"{max_restarts}/{window}m",
        )

    Console().print(table)
    console.print(f"[green]Configuration OK[/green] (cooldown {limits.cooldown_minutes}m)")


@app.command()
def status(
    config: Optional[Path] = ConfigOption,
    config_dir: Optional[Path] = ConfigDirOption,
    state_dir: Optional[Path] = StateDirOption,
) -> None:
    """Show persisted state for every configured service."""
    watcher_config = _load(config, config_dir)
    store = FileStateStore(state_dir or get_settings().state_dir)
    now = utcnow()

    table = Table(title="Service watcher state")
    table.add_column("Service", style="cyan")
    table.add_column("Health failures", justify="right")
    table.add_column("Restarts", justify="right")
    table.add_column("Last restart")
    table.add_column("Cooldown until")

    for name in watcher_config.services:
        state = store.get(name)
        last = state.restart_ledger[-1].isoformat() if state.restart_ledger else "-"
        if state.cooldown_until and state.cooldown_until > now:
            cooldown = f"[yellow]{state.cooldown_until.isoformat()}[/yellow]"
        else:
            cooldown = "-"
        table.add_row(
            name,
            str(state.health_failure_count),
            str(len(state.restart_ledger)),
            last,
            cooldown,
        )

    Console().print(table)


if __name__ == "__main__":
    app()

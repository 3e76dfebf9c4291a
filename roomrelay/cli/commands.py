"""CLI commands for roomrelay."""

import asyncio
import json
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from roomrelay import __logo__, __version__

app = typer.Typer(
    name="roomrelay",
    help=f"{__logo__} roomrelay - Room message delivery pipeline",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} roomrelay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """roomrelay - Room message delivery pipeline."""
    pass


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ("KB", "MB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _open_cache():
    from roomrelay.cache.resource_cache import ResourceCache
    from roomrelay.config.loader import load_config

    cache = ResourceCache.from_config(load_config())
    cache.init()
    return cache


# ============================================================================
# Onboard / Status
# ============================================================================


@app.command()
def onboard():
    """Write a default configuration file."""
    from roomrelay.config.loader import get_config_path, load_config, save_config
    from roomrelay.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        console.print("  [bold]y[/bold] = overwrite with defaults (existing values will be lost)")
        console.print("  [bold]N[/bold] = refresh config, keeping existing values and adding new fields")
        if typer.confirm("Overwrite?"):
            save_config(Config())
            console.print(f"[green]✓[/green] Config reset to defaults at {config_path}")
        else:
            save_config(load_config())
            console.print(f"[green]✓[/green] Config refreshed at {config_path} (existing values preserved)")
    else:
        save_config(Config())
        console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} roomrelay is ready!")
    console.print("\nNext steps:")
    console.print(f"  1. Set [cyan]transport.baseUrl[/cyan] and [cyan]transport.token[/cyan] in {config_path}")
    console.print("  2. Try a dry run: [cyan]roomrelay deliver messages.json -c my-group --dry-run[/cyan]")


@app.command()
def status():
    """Show roomrelay status."""
    from roomrelay.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} roomrelay Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Data dir: {config.data_path} {'[green]✓[/green]' if config.data_path.exists() else '[red]✗[/red]'}")

    transport = config.transport.base_url or "[dim]not set[/dim]"
    console.print(f"Transport: {transport}")
    console.print(f"Rate limit: {config.rate_limit.max_per_window} per {config.rate_limit.window_ms}ms")

    cache_state = "[green]enabled[/green]" if config.cache.enabled else "[dim]disabled[/dim]"
    console.print(f"Cache: {config.cache_path} ({cache_state})")


# ============================================================================
# Cache Commands
# ============================================================================


cache_app = typer.Typer(help="Manage the resource cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("stats")
def cache_stats():
    """Show resource cache usage."""
    cache = _open_cache()
    stats = cache.stats()

    table = Table(title="Resource Cache")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Location", str(cache.root))
    table.add_row("Enabled", "✓" if stats["enabled"] else "✗")
    table.add_row("Entries", str(stats["entries"]))
    table.add_row("Size", _format_bytes(int(stats["bytes"])))
    table.add_row("TTL", f"{cache.ttl_seconds // 60} min")
    console.print(table)


@cache_app.command("cleanup")
def cache_cleanup(
    max_age: float = typer.Option(None, "--max-age", "-a", help="Remove entries unused for N minutes"),
):
    """Remove expired cache entries."""
    cache = _open_cache()
    removed = cache.cleanup(max_age)
    console.print(f"[green]✓[/green] Removed {removed} cache entries ({len(cache)} left)")


@cache_app.command("clear")
def cache_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete every cached resource."""
    cache = _open_cache()
    if not yes and not typer.confirm(f"Delete {len(cache)} cached resources?"):
        raise typer.Exit()
    removed = cache.clear()
    console.print(f"[green]✓[/green] Cleared {removed} cache entries")


# ============================================================================
# Delivery
# ============================================================================


def _load_messages(path: Path):
    from roomrelay.bus.events import Message

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error: cannot read {path}: {e}[/red]")
        raise typer.Exit(1) from e

    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        console.print("[red]Error: expected a JSON list of messages[/red]")
        raise typer.Exit(1)
    return [Message.from_dict(item) for item in data if isinstance(item, dict)]


@app.command()
def deliver(
    file: Path = typer.Argument(..., help="JSON file with a list of room messages"),
    channel: list[str] = typer.Option(..., "--channel", "-c", help="Target channel id (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print notifications instead of sending"),
    verbose: bool = typer.Option(False, "--verbose", help="Show runtime logs"),
):
    """Deliver a batch of room messages to one or more channels."""
    from roomrelay.channels.console import ConsoleTransport
    from roomrelay.channels.http import HttpTransport
    from roomrelay.config.loader import load_config
    from roomrelay.pipeline import DeliveryPipeline

    if verbose:
        logger.enable("roomrelay")
    else:
        logger.disable("roomrelay")

    config = load_config()
    messages = _load_messages(file)
    if not messages:
        console.print("No messages to deliver.")
        return

    if dry_run:
        transport = ConsoleTransport(console)
    elif not config.transport.base_url:
        console.print("[red]Error: transport.baseUrl is not configured (or use --dry-run)[/red]")
        raise typer.Exit(1)
    else:
        transport = HttpTransport(config.transport)

    async def run():
        pipeline = DeliveryPipeline(config, transport)
        await pipeline.init()
        try:
            reports = await asyncio.gather(*pipeline.dispatch(messages, list(channel)))
        finally:
            await pipeline.shutdown()
        return reports, pipeline.get_stats()

    reports, stats = asyncio.run(run())

    table = Table(title="Delivery Report")
    table.add_column("Channel", style="cyan")
    table.add_column("Delivered", style="green")
    table.add_column("Failed", style="red")
    table.add_column("Duplicates", style="yellow")
    table.add_column("Batches")
    for report in reports:
        table.add_row(
            report.channel_id,
            str(len(report.delivered)),
            str(len(report.failed)),
            str(report.duplicates),
            str(report.batches),
        )
    console.print(table)
    console.print(f"Cache hit rate: {stats['cache_hit_rate']:.0%}")

    if any(report.failed for report in reports):
        raise typer.Exit(1)

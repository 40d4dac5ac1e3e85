"""Typer-based CLI for ThreadWatch with Pydantic v2 configuration."""

import json
import logging
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel

from ThreadWatch.PageWatch.config import export_config_schema, load_config
from ThreadWatch.PageWatch.engine import EngineContext
from ThreadWatch.PageWatch.events import (
    DownloadEnded,
    DownloadStatus,
    FoundNewImage,
    StatusEvent,
    StopStatus,
    WaitStatus,
)
from ThreadWatch.PageWatch.models import StopReason
from ThreadWatch.PageWatch.watcher import PageWatcher

console = Console()
app = typer.Typer(help="ThreadWatch page watcher")

_CLEAN_STOPS = (StopReason.USER_REQUEST, StopReason.DOWNLOAD_COMPLETE, StopReason.EXITING)

# ============================================================================
# Setup
# ============================================================================


def _setup_logging(verbose: bool) -> None:
    """Setup logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def render_event(event: StatusEvent) -> Optional[str]:
    """Console markup for the events worth showing; ``None`` for the rest."""
    if isinstance(event, DownloadStatus):
        return f"[cyan]{event.kind.value}[/cyan] {event.completed}/{event.total}"
    if isinstance(event, WaitStatus):
        return f"[dim]Next check in {event.ms_until_next_check // 1000}s[/dim]"
    if isinstance(event, FoundNewImage):
        return "[green]Found new images[/green]"
    if isinstance(event, StopStatus):
        style = "green" if event.reason in _CLEAN_STOPS else "red"
        return f"[{style}]Stopped: {event.reason.value}[/{style}]"
    if isinstance(event, DownloadEnded) and not event.successful:
        return f"[yellow]Download {event.download_id} failed after {event.downloaded} bytes[/yellow]"
    return None


def _print_event(event: StatusEvent) -> None:
    text = render_event(event)
    if text is not None:
        console.print(text)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def watch(
    url: str = typer.Argument(..., help="Page URL to watch"),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file",
        envvar="THREADWATCH_CONFIG",
    ),
    interval: Optional[int] = typer.Option(None, "--interval", help="Seconds between checks"),
    once: bool = typer.Option(False, "--once", help="Stop after the first complete check"),
    directory: Optional[str] = typer.Option(None, "--dir", help="Download directory for this page"),
    page_auth: Optional[str] = typer.Option(None, "--page-auth", help="user:password for the page"),
    image_auth: Optional[str] = typer.Option(None, "--image-auth", help="user:password for images"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Watch a page until it stops (Ctrl-C to stop)."""
    _setup_logging(verbose)

    try:
        watch_overrides: dict[str, Any] = {}
        if interval is not None:
            watch_overrides["check_interval_s"] = interval
        if once:
            watch_overrides["one_time"] = True
        cfg = load_config(path=config, cli_overrides={"watch": watch_overrides} if watch_overrides else None)
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)

    engine = EngineContext(cfg)
    engine.events.subscribe(_print_event)
    watcher = PageWatcher(
        engine,
        url,
        page_auth=page_auth,
        image_auth=image_auth,
        download_dir=directory,
    )
    console.print(
        Panel(
            f"[bold green]Watching[/bold green] {url}\n"
            f"Directory: {watcher.download_dir}\n"
            f"Interval: {watcher.check_interval_seconds}s\n"
            f"Config hash: {cfg.config_hash()[:8]}...",
            title="ThreadWatch",
        )
    )

    try:
        watcher.start()
        while not watcher.wait_until_stopped(0.5):
            pass
    except KeyboardInterrupt:
        watcher.stop(StopReason.USER_REQUEST)
        watcher.wait_until_stopped()
    finally:
        engine.events.flush(5.0)
        engine.close()

    if watcher.stop_reason not in _CLEAN_STOPS:
        raise typer.Exit(code=1)


@app.command()
def print_config(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file",
        envvar="THREADWATCH_CONFIG",
    ),
    raw: bool = typer.Option(False, "--raw", help="Raw JSON"),
) -> None:
    """Print merged effective config."""
    try:
        cfg = load_config(path=config)
        data = cfg.model_dump(mode="json")
        if raw:
            typer.echo(json.dumps(data, indent=2))
        else:
            console.print(Panel(json.dumps(data, indent=2), title="ThreadWatch Config", expand=False))
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def config_schema() -> None:
    """Print the JSON Schema of the config file."""
    typer.echo(json.dumps(export_config_schema(), indent=2))


if __name__ == "__main__":
    app()

"""testexecutor CLI application."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import httpx
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from testexecutor import __version__
from testexecutor.config import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    create_default_config,
    load_config,
)
from testexecutor.core.results import Result, build_result_string
from testexecutor.core.service import ExecutorService
from testexecutor.models import AppConfig

# Initialize
app = typer.Typer(
    name="testexecutor",
    help="testexecutor - runs a test command periodically and serves its last result",
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"


def setup_logging(
    verbose: bool = False,
    level: str = "INFO",
    log_file: str | None = None,
    rotation: str = "10 MB",
) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else level.upper()

    # Console logging
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(
            Path(log_file).expanduser(),
            level=level,
            rotation=rotation,
            enqueue=True,
        )


def _load_config_or_exit(config_path: Path | None) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        raise typer.Exit(1)


def _print_result(result: Result, content_type: str) -> None:
    status = "[green]✓ successful[/green]" if result.successful else "[red]✗ failed[/red]"
    console.print(f"Result: {status}")
    console.print(f"  Content type: {result.content_type or content_type}")
    if result.log:
        table = Table(title="Log")
        table.add_column("Level", style="cyan")
        table.add_column("Message")
        for entry in result.log:
            table.add_row(entry.level, entry.message)
        console.print(table)
    body = result.body
    if isinstance(body, (dict, list)):
        body = json.dumps(body, indent=2)
    console.print(body if body is not None else "", markup=False, highlight=False)


# ============================================================================
# Daemon Commands
# ============================================================================


@app.command("run")
def run_daemon(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    host: Optional[str] = typer.Option(None, "--host", help="Override the API host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Override the API port"),
    no_schedule: bool = typer.Option(False, "--no-schedule", help="Don't start the background runner"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the daemon: background runner plus HTTP API."""
    config = _load_config_or_exit(config_path)
    setup_logging(verbose, config.daemon.log_level, config.daemon.log_file, config.daemon.log_rotation)

    from testexecutor.api.server import run_server

    service = ExecutorService.from_config(config)
    time_options = None
    if config.schedule.enabled and not no_schedule:
        time_options = config.schedule.to_time_options()

    host = host or config.daemon.host
    port = port or config.daemon.port
    logger.info(f"testexecutor {__version__} listening on http://{host}:{port}")

    try:
        asyncio.run(
            run_server(
                service,
                host=host,
                port=port,
                time_options=time_options,
                api_config=config.api,
            )
        )
    except KeyboardInterrupt:
        pass


@app.command("exec")
def exec_once(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    command: Optional[str] = typer.Option(None, "--command", help="Override the configured command"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Execution timeout in seconds"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the test command once and print its result."""
    config = _load_config_or_exit(config_path)
    setup_logging(verbose, "WARNING")

    service = ExecutorService.from_config(config)
    if command:
        service.command = command
    if timeout is not None:
        service.execution_timeout = timeout

    result = asyncio.run(service.execute())

    if as_json:
        data = result.to_dict()
        data["content_type"] = service.content_type_for(result)
        typer.echo(json.dumps(data, indent=2))
    else:
        _print_result(result, service.content_type)

    raise typer.Exit(0 if result.successful else 1)


@app.command("encode")
def encode(
    file: str = typer.Argument(..., help="Path of the result file"),
    failed: bool = typer.Option(False, "--failed", help="Mark the run as unsuccessful"),
) -> None:
    """Print a protocol result line, escaped for use with echo "..."."""
    typer.echo(build_result_string(not failed, file))


@app.command("init")
def init(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Create a default config file."""
    path = config_path or DEFAULT_CONFIG_FILE
    if create_default_config(path):
        console.print(f"[green]✓ Created config at {path}[/green]")
    else:
        console.print(f"[yellow]Config already exists at {path}[/yellow]")


# ============================================================================
# Client Commands
# ============================================================================


def _client(config_path: Path | None):
    from testexecutor.cli.client import APIClient

    try:
        return APIClient(config_path=config_path)
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        raise typer.Exit(1)


def _require_daemon(client) -> None:
    if not client.is_daemon_running():
        console.print("[red]Daemon is not running[/red]")
        raise typer.Exit(1)


@app.command("status")
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Show the state of a running daemon."""
    with _client(config_path) as client:
        _require_daemon(client)
        try:
            data = client.status()
        except httpx.HTTPError as e:
            console.print(f"[red]Could not reach daemon: {e}[/red]")
            raise typer.Exit(1)

    last = data["last_result"]
    state = "[yellow]paused[/yellow]" if data["paused"] else "[green]running[/green]"
    console.print(f"Runner: {state}")
    console.print(f"  Command: {data['command']}")
    console.print(f"  Next run: {data.get('next_run') or '-'}")
    outcome = "[green]successful[/green]" if last["successful"] else "[red]failed[/red]"
    console.print(f"  Last result: {outcome}")
    console.print(f"  Started: {last.get('start_time') or '-'}")
    console.print(f"  Finished: {last.get('end_time') or '-'}")


@app.command("pause")
def pause(
    duration: Optional[float] = typer.Option(None, "--duration", "-d", help="Pause duration in seconds"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Pause the background runs of a running daemon."""
    with _client(config_path) as client:
        _require_daemon(client)
        try:
            data = client.pause(duration)
        except httpx.HTTPError as e:
            console.print(f"[red]Could not pause: {e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓ Paused until {data.get('next_run') or '-'}[/green]")


@app.command("resume")
def resume(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Resume the background runs of a running daemon."""
    with _client(config_path) as client:
        _require_daemon(client)
        try:
            client.resume()
        except httpx.HTTPError as e:
            console.print(f"[red]Could not resume: {e}[/red]")
            raise typer.Exit(1)

    console.print("[green]✓ Resumed[/green]")


@app.command("version")
def version() -> None:
    """Show the version."""
    console.print(f"testexecutor {__version__}")


if __name__ == "__main__":
    app()

"""Main CLI implementation using Typer."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from rich.console import Console

from berth.cli.client import IPCClient, IPCError
from berth.cli.commands import (
    agent_reload,
    reconcile,
    remove_container,
    render_configs,
    show_stats,
    show_status,
    signal_ready,
)
from berth.errors import BerthError


app = typer.Typer(
    name="berthctl",
    help="Berth - declarative Docker container reconciliation",
    add_completion=False,
)

console = Console()


def _run_cli_command(handler: Callable[..., Any], socket: Optional[str], **kwargs: Any):
    """Helper to run a CLI command with an IPC client and error handling."""
    try:
        client = IPCClient(socket_path=socket)
        handler(client, **kwargs)
    except IPCError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command("status")
def status_command(
    container: Optional[str] = typer.Argument(
        None, help="Show status for specific container"
    ),
    socket: Optional[str] = typer.Option(
        None, "--socket", "-s", help="Agent socket path"
    ),
):
    """Show agent and container status."""
    _run_cli_command(show_status, socket=socket, container=container)


@app.command("stats")
def stats_command(
    socket: Optional[str] = typer.Option(
        None, "--socket", "-s", help="Agent socket path"
    ),
):
    """Show resource usage of monitored containers."""
    _run_cli_command(show_stats, socket=socket)


@app.command("reconcile")
def reconcile_command(
    socket: Optional[str] = typer.Option(
        None, "--socket", "-s", help="Agent socket path"
    ),
):
    """Run a reconciliation pass now."""
    _run_cli_command(reconcile, socket=socket)


@app.command("reload")
def reload_command(
    socket: Optional[str] = typer.Option(
        None, "--socket", "-s", help="Agent socket path"
    ),
):
    """Reload agent configuration."""
    _run_cli_command(agent_reload, socket=socket)


@app.command("remove")
def remove_command(
    name: str = typer.Argument(..., help="Container name"),
    force: bool = typer.Option(
        False, "--force", "-f", help="Force removal without confirmation"
    ),
    socket: Optional[str] = typer.Option(
        None, "--socket", "-s", help="Agent socket path"
    ),
):
    """Remove a managed container completely."""
    if not force:
        confirm = typer.confirm(f"Remove container {name}?")
        if not confirm:
            raise typer.Abort()
    _run_cli_command(remove_container, socket=socket, name=name)


@app.command("ready")
def ready_command(
    socket: Optional[str] = typer.Option(
        None, "--socket", "-s", help="Agent socket path"
    ),
):
    """Signal that containers waiting for readiness may be reconciled."""
    _run_cli_command(signal_ready, socket=socket)


@app.command("render")
def render_command(
    config_dir: Path = typer.Argument(
        Path("./configs"), help="Configuration directory"
    ),
):
    """Print the container configs a config directory maps to."""
    logging.basicConfig(level=logging.WARNING)
    try:
        output = asyncio.run(render_configs(config_dir))
    except (BerthError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    typer.echo(output)


def main():
    """Main entry point for CLI."""
    app()

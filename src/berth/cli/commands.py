"""Command implementations for CLI."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from berth.agent.config import ConfigManager
from berth.cli.client import IPCClient


console = Console()


STATE_COLORS = {
    "matching": "green",
    "drifted": "yellow",
    "absent": "yellow",
    "disabled": "dim",
    "error": "red",
}


def _run_action(
    client: IPCClient,
    description: str,
    command: str,
    args: Dict[str, Any],
    success_msg: Optional[str] = None,
    quiet: bool = False
) -> Dict[str, Any]:
    """Helper to run an IPC action with a progress spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        disable=quiet,
    ) as progress:
        task = progress.add_task(description, total=None)

        response = client.request(command, args)

        progress.update(task, completed=True)

    if success_msg and not quiet:
        console.print(success_msg)

    return response


def _format_bytes(value: Optional[int]) -> str:
    if value is None:
        return "-"
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}TiB"


def _containers_table(containers: Dict[str, Dict[str, Any]]) -> Table:
    table = Table(title="Containers")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Running")
    table.add_column("Status")
    table.add_column("Image", style="magenta")

    for name, info in containers.items():
        state = info.get("state", "unknown")
        color = STATE_COLORS.get(state, "white")
        running_status = "[green]●[/green]" if info.get("running") else "[red]○[/red]"
        table.add_row(
            name,
            f"[{color}]{state}[/{color}]",
            running_status,
            info.get("status", "-"),
            info.get("image", "-"),
        )
    return table


def show_status(client: IPCClient, container: Optional[str] = None):
    """Show agent or container status."""
    response = client.request("status", {"container": container} if container else {})

    if container:
        containers = response.get("containers", {})
        info = next(iter(containers.values()), None)
        if not info:
            console.print(f"[red]Container {container} not found[/red]")
            return

        console.print(f"[bold]Container: {info['name']}[/bold]")
        console.print(f"  State: {info['state']}")
        console.print(f"  Exists: {'Yes' if info['exists'] else 'No'}")
        console.print(f"  Running: {'Yes' if info['running'] else 'No'}")
        console.print(f"  Image: {info['image']}")
        console.print(f"  Monitoring: {'Yes' if info.get('monitoring') else 'No'}")
        return

    agent_info = response.get("agent", {})
    containers = response.get("containers", {})

    console.print("[bold]Agent Status[/bold]")
    console.print(f"  Running: {'Yes' if agent_info.get('running') else 'No'}")
    console.print(f"  Ready: {'Yes' if agent_info.get('ready') else 'Waiting for ready command'}")
    console.print(f"  Monitoring: {'Yes' if agent_info.get('monitoring') else 'No'}")

    last_recon = agent_info.get("last_reconciliation")
    if last_recon:
        dt = datetime.fromisoformat(last_recon)
        console.print(f"  Last Reconciliation: {dt.strftime('%Y-%m-%d %H:%M:%S')}")
    else:
        console.print("  Last Reconciliation: Never")

    console.print()

    total = len(containers)
    running = sum(1 for c in containers.values() if c.get("running"))
    console.print(f"[bold]Containers[/bold]: {running}/{total} running")

    if containers:
        console.print()
        console.print(_containers_table(containers))


def show_stats(client: IPCClient):
    """Show the last recorded stats of monitored containers."""
    response = client.request("stats", {})
    if not response:
        console.print("No monitored containers")
        return

    table = Table(title="Container Stats")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("CPU %", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Net I/O", justify="right")
    table.add_column("Sampled")

    for name, stats in response.items():
        cpu = stats.get("cpu")
        memory = f"{_format_bytes(stats.get('mem_used'))} / {_format_bytes(stats.get('mem_max'))}"
        net = f"{_format_bytes(stats.get('net_read'))} / {_format_bytes(stats.get('net_write'))}"
        sampled = stats.get("status_ts")
        if sampled:
            sampled = datetime.fromisoformat(sampled).strftime('%H:%M:%S')
        table.add_row(
            name,
            stats.get("status", "unknown"),
            f"{cpu:.2f}" if cpu is not None else "-",
            memory,
            net,
            sampled or "-",
        )

    console.print(table)


def reconcile(client: IPCClient):
    """Trigger a reconciliation pass."""
    response = _run_action(
        client,
        description="Reconciling containers...",
        command="reconcile",
        args={},
    )
    states = response.get("states", {})
    failed = [name for name, state in states.items() if state == "error"]
    if failed:
        for name in failed:
            console.print(f"  [red]✗[/red] {name}")
        console.print(f"[yellow]Reconciled with {len(failed)} failure(s)[/yellow]")
    else:
        console.print(f"[green]✓[/green] Reconciled {len(states)} container(s)")


def agent_reload(client: IPCClient):
    """Reload agent configuration."""
    response = _run_action(
        client,
        description="Reloading configuration...",
        command="reload",
        args={},
    )
    console.print(f"[green]✓[/green] Configuration reloaded ({response.get('containers', 0)} container(s))")


def remove_container(client: IPCClient, name: str):
    """Remove a container."""
    _run_action(
        client,
        description=f"Removing container {name}...",
        command="remove",
        args={"name": name},
        success_msg=f"[green]✓[/green] Container {name} removed"
    )


def signal_ready(client: IPCClient):
    """Release the agent's readiness gate."""
    response = client.request("ready", {})
    if response.get("already_ready"):
        console.print("Agent was already ready")
    else:
        console.print("[green]✓[/green] Agent released for reconciliation")


async def render_configs(config_dir: Path) -> str:
    """Load a config directory offline and return the mapped configs as JSON."""
    manager = ConfigManager(config_dir)
    await manager.load()
    return json.dumps(manager.render(), indent=2)

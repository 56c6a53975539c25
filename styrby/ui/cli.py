"""Main CLI entry point - daemon control and agent commands."""

import asyncio
import json
import os
from collections import deque
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from styrby.core.configs import get_daemon_paths, load_env_file
from styrby.core.log import setup_logging
from styrby.daemon.client import DaemonClient
from styrby.daemon.state import DaemonState
from styrby.daemon.supervisor import get_daemon_status, start_daemon, stop_daemon
from styrby.errors import DaemonTransportError, ProtocolError, StyrbyError

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Styrby - keep your coding agents connected.",
)

console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Styrby - keep your coding agents connected."""
    load_env_file()
    setup_logging("debug" if verbose else os.environ.get("STYRBY_LOG_LEVEL") or "warning")


# ============================================================================
# Daemon commands
# ============================================================================

@app.command()
def start() -> None:
    """Start the background daemon (no-op if it is already running)."""
    state = start_daemon(get_daemon_paths())
    if not state.running:
        typer.echo(f"Error: {state.error_message or 'Daemon failed to start'}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Daemon running (pid {state.pid})")


@app.command()
def stop() -> None:
    """Stop the background daemon."""
    result = stop_daemon(get_daemon_paths())
    if not result.was_running:
        typer.echo("No daemon running")
        return
    if result.forced:
        typer.echo("Daemon did not stop gracefully and was killed")
    else:
        typer.echo("Daemon stopped")


def _current_status() -> DaemonState:
    """Live IPC snapshot when the daemon answers, file-based status otherwise."""
    paths = get_daemon_paths()
    state = DaemonClient(paths.socket_path).get_status()
    if state.running:
        return state
    return get_daemon_status(paths)


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print the raw status as JSON"),
) -> None:
    """Show daemon status."""
    state = _current_status()

    if as_json:
        typer.echo(json.dumps(state.to_dict(), indent=2))
        return

    if not state.running:
        typer.echo("Daemon is not running")
        if state.error_message:
            typer.echo(state.error_message)
        return

    table = Table(title="Styrby Daemon", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for label, value in [
        ("PID", state.pid),
        ("Connection", state.connection_state),
        ("Started", state.started_at),
        ("Uptime", _format_uptime(state.uptime_seconds)),
        ("Active sessions", state.active_sessions),
        ("Last heartbeat", state.last_heartbeat),
        ("Error", state.error_message),
    ]:
        if value is not None:
            table.add_row(label, str(value))
    console.print(table)


def _format_uptime(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@app.command()
def ping() -> None:
    """Check that the daemon answers on its control socket."""
    client = DaemonClient(get_daemon_paths().socket_path)
    try:
        response = client.send_command({"type": "ping"})
    except (DaemonTransportError, ProtocolError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not response.get("success"):
        typer.echo(f"Error: {response.get('error', 'unknown error')}", err=True)
        raise typer.Exit(1)
    data = response.get("data") or {}
    typer.echo(f"pong (pid {data.get('pid')})")


@app.command()
def sessions() -> None:
    """List devices connected through the daemon's relay."""
    client = DaemonClient(get_daemon_paths().socket_path)
    if not client.can_connect():
        typer.echo("Daemon is not running", err=True)
        raise typer.Exit(1)

    devices = client.list_sessions()
    if not devices:
        typer.echo("No devices connected")
        return

    table = Table(title="Connected devices")
    table.add_column("Device", style="cyan")
    table.add_column("Type")
    table.add_column("Platform")
    table.add_column("Online since", style="dim")
    for device in devices:
        table.add_row(
            str(device.get("device_name") or device.get("device_id", "?")),
            str(device.get("device_type", "")),
            str(device.get("platform", "")),
            str(device.get("online_at", "")),
        )
    console.print(table)


@app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Number of lines to show"),
) -> None:
    """Show the tail of the daemon log."""
    log_file = get_daemon_paths().log_file
    if not log_file.exists():
        typer.echo("No daemon log yet")
        return
    with open(log_file, "r", errors="replace") as f:
        tail = deque(f, maxlen=lines)
    typer.echo("".join(tail), nl=False)


# ============================================================================
# Agent commands
# ============================================================================

@app.command()
def agents() -> None:
    """List the registered agent backends."""
    from styrby.agent import agent_registry, initialize_agents

    initialize_agents()
    for agent_id in agent_registry.list():
        typer.echo(agent_id)


@app.command()
def agent(
    agent_id: str = typer.Argument(..., help="Agent to run (see 'styrby agents')"),
    prompt: str = typer.Argument(..., help="Prompt to send"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Project directory"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override"),
    files: List[str] = typer.Option([], "--file", "-f", help="File to add to the chat"),
) -> None:
    """
    Run one prompt through an agent backend.

    Example: styrby agent aider "add type hints to utils.py" -f utils.py
    """
    from styrby.agent import AgentFactoryOptions, agent_registry, initialize_agents

    initialize_agents()
    if not agent_registry.has(agent_id):
        available = ", ".join(agent_registry.list())
        typer.echo(f"Unknown agent: {agent_id} (available: {available})", err=True)
        raise typer.Exit(1)

    options = AgentFactoryOptions(
        cwd=str(cwd) if cwd else os.getcwd(),
        model=model,
        files=list(files),
    )
    backend = agent_registry.create(agent_id, options)

    try:
        asyncio.run(_run_agent(backend, prompt))
    except StyrbyError as e:
        typer.echo(f"\nError: {e}", err=True)
        raise typer.Exit(getattr(e, "exit_code", None) or 1)
    except KeyboardInterrupt:
        typer.echo("\nCancelled by user.", err=True)
        raise typer.Exit(130)


async def _run_agent(backend, prompt: str) -> None:
    from styrby.agent import (
        FsEditMessage,
        ModelOutputMessage,
        SessionStatus,
        StatusMessage,
        TokenCountMessage,
    )

    def on_message(message) -> None:
        if isinstance(message, ModelOutputMessage):
            console.print(message.text_delta, end="", markup=False, highlight=False)
        elif isinstance(message, FsEditMessage):
            console.print(f"[green]edited[/green] {message.description}", highlight=False)
        elif isinstance(message, TokenCountMessage):
            approx = "~" if message.estimated else ""
            console.print(
                f"[dim]tokens: {approx}{message.input_tokens} in / "
                f"{approx}{message.output_tokens} out[/dim]"
            )
        elif isinstance(message, StatusMessage) and message.status == SessionStatus.ERROR:
            if message.detail:
                console.print(f"[red]{message.detail}[/red]", highlight=False)

    backend.on_message(on_message)
    try:
        await backend.start_session(prompt)
    finally:
        await backend.dispose()


@app.command()
def settings(
    action: str = typer.Argument(..., help="Action: init, show, or edit"),
) -> None:
    """
    Manage Styrby configuration.

    Actions:
        init - Interactive configuration wizard
        show - Display current configuration
        edit - Open config file in $EDITOR
    """
    from styrby.ui.config_commands import handle_config
    handle_config(action)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()

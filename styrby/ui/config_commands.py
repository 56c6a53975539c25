"""
Configuration Management Commands

Interactive setup for ~/.styrby/config.cfg (relay endpoint and logging).
This module is lazy-loaded only when settings commands are used.
"""

import configparser
import os
import subprocess
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from styrby.core.configs import (
    ensure_config_dir,
    get_daemon_paths,
    get_relay_settings,
    load_credentials,
    load_raw_config,
)

console = Console()

CONFIG_TEMPLATE = """[DEFAULT]
debug = false

[RELAY]
supabase_url = https://your-project.supabase.co
supabase_anon_key = your_anon_key_here
"""


def handle_config(action: str) -> None:
    """
    Route to appropriate config action.

    Args:
        action: One of 'init', 'show', or 'edit'
    """
    actions = {
        "init": init_config,
        "show": show_config,
        "edit": edit_config,
    }

    if action not in actions:
        console.print(f"[red]Unknown action: {action}[/red]")
        console.print("Available actions: init, show, edit")
        raise SystemExit(1)

    actions[action]()


def mask_secret(value: str) -> str:
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


def init_config() -> None:
    """Interactive configuration wizard; keeps existing values as defaults."""
    config_path = get_daemon_paths().config_file
    console.print(Panel.fit("[bold blue]Styrby Configuration[/bold blue]", title="Setup"))

    existing = load_raw_config(config_path) if config_path.exists() else {}

    console.print("\n[bold cyan]Relay[/bold cyan]")
    url = Prompt.ask(
        "Supabase project URL",
        default=existing.get("supabase_url") or None,
    )
    anon_key = _ask_anon_key(existing.get("supabase_anon_key"))

    console.print("\n[bold cyan]Logging[/bold cyan]")
    debug = Confirm.ask(
        "Enable debug logging?",
        default=existing.get("debug", "false").lower() in ("1", "true", "yes", "on"),
    )

    save_config_file(
        {"debug": "true" if debug else "false"},
        {"supabase_url": (url or "").strip(), "supabase_anon_key": anon_key},
        config_path,
    )

    console.print(
        Panel.fit(
            f"[green]Configuration saved![/green]\nLocation: {config_path}",
            title="Success",
        )
    )


def _ask_anon_key(current_key: Optional[str]) -> str:
    if current_key:
        console.print(f"Current anon key: {mask_secret(current_key)}")
        if not Confirm.ask("Update anon key?", default=False):
            return current_key
    return Prompt.ask("Supabase anon key", password=True).strip()


def show_config() -> None:
    """Display current configuration and credential status in a table."""
    paths = get_daemon_paths()
    raw = load_raw_config(paths.config_file) if paths.config_file.exists() else {}
    relay = get_relay_settings(raw)
    credentials = load_credentials(paths.data_file)

    table = Table(title="Styrby Configuration", show_header=True)
    table.add_column("Setting", style="cyan", width=20)
    table.add_column("Value", style="green")

    table.add_row("config_dir", str(paths.config_dir))
    table.add_row("supabase_url", relay.url or "[dim]not set[/dim]")
    table.add_row(
        "supabase_anon_key",
        mask_secret(relay.anon_key) if relay.anon_key else "[dim]not set[/dim]",
    )
    table.add_row("debug", str(relay.debug).lower())
    if credentials:
        table.add_row("user_id", credentials.user_id)
        table.add_row("machine_id", credentials.machine_id or "[dim]not set[/dim]")
    else:
        table.add_row("credentials", "[yellow]not found[/yellow]")

    console.print(table)
    if not paths.config_file.exists():
        console.print("[yellow]No config.cfg found. Run 'styrby settings init'[/yellow]")
    console.print(f"\n[dim]Config file: {paths.config_file}[/dim]")


def edit_config() -> None:
    """Open config file in user's default editor."""
    config_path = get_daemon_paths().config_file

    if not config_path.exists():
        console.print("[yellow]No configuration found. Creating template...[/yellow]")
        ensure_config_dir(config_path.parent)
        config_path.write_text(CONFIG_TEMPLATE)

    editor = os.environ.get("EDITOR", "vim")

    try:
        console.print(f"[dim]Opening {config_path} with {editor}...[/dim]")
        subprocess.run([editor, str(config_path)], check=True)
        console.print("[green]Config file updated[/green]")
    except subprocess.CalledProcessError:
        console.print(f"[red]Failed to open editor: {editor}[/red]")
        console.print(f"Edit manually: {config_path}")
    except FileNotFoundError:
        console.print(f"[red]Editor not found: {editor}[/red]")
        console.print(f"Set EDITOR environment variable or edit manually: {config_path}")


def save_config_file(
    defaults: Dict[str, str],
    relay: Dict[str, str],
    config_path: Optional[Path] = None,
) -> None:
    """
    Save configuration to file.

    Args:
        defaults: Values for the [DEFAULT] section
        relay: Values for the [RELAY] section
        config_path: Target file (default: ~/.styrby/config.cfg)
    """
    config_path = config_path or get_daemon_paths().config_file
    ensure_config_dir(config_path.parent)

    cfg = configparser.ConfigParser()
    cfg["DEFAULT"] = defaults
    cfg["RELAY"] = {k: v for k, v in relay.items() if v}

    with open(config_path, "w") as f:
        cfg.write(f)
    os.chmod(config_path, 0o600)

"""Configuration management for Styrby.

Loads user settings from ~/.styrby/config.cfg (and ~/.styrby/.env), resolves
the daemon file layout and reads the credentials written at onboarding.

File layout under the config directory:
    config.cfg          - user settings ([DEFAULT] and [RELAY] sections)
    .env                - optional environment overrides (SUPABASE_URL, ...)
    data.json           - persisted credentials (userId, accessToken, machineId)
    daemon.pid          - PID of the running daemon (plain text)
    daemon.status.json  - connection state snapshot written by the daemon
    daemon.log          - stdout/stderr of the daemon process
    daemon.sock         - Unix domain socket for IPC commands
"""

import configparser
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv


def get_config_dir() -> Path:
    """Return the per-user Styrby directory (``STYRBY_HOME`` overrides it)."""
    override = os.environ.get("STYRBY_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".styrby"


# Timeouts (seconds). Every cross-process wait is bounded by one of these.
READY_TIMEOUT = 10.0
IPC_TIMEOUT = 3.0
GRACEFUL_EXIT_TIMEOUT = 5.0
FORCED_EXIT_TIMEOUT = 2.0
STATUS_WRITE_INTERVAL = 10.0
CANCEL_GRACE_PERIOD = 3.0
RESPONSE_COMPLETE_TIMEOUT = 120.0

# Environment handed to the detached daemon process.
DAEMON_ENV = "STYRBY_DAEMON"
READY_FD_ENV = "STYRBY_READY_FD"


@dataclass(frozen=True)
class DaemonPaths:
    config_dir: Path
    pid_file: Path
    status_file: Path
    log_file: Path
    socket_path: Path
    data_file: Path
    config_file: Path


@dataclass
class RelaySettings:
    url: str = ""
    anon_key: str = ""
    debug: bool = False


@dataclass
class Credentials:
    user_id: str
    access_token: str
    machine_id: Optional[str] = None


def get_daemon_paths(config_dir: Optional[Path] = None) -> DaemonPaths:
    """
    Build the daemon file layout.

    Args:
        config_dir: Base directory (default: ~/.styrby or $STYRBY_HOME)

    Returns:
        DaemonPaths for every file the daemon and supervisor share
    """
    base = Path(config_dir) if config_dir else get_config_dir()
    return DaemonPaths(
        config_dir=base,
        pid_file=base / "daemon.pid",
        status_file=base / "daemon.status.json",
        log_file=base / "daemon.log",
        socket_path=base / "daemon.sock",
        data_file=base / "data.json",
        config_file=base / "config.cfg",
    )


def ensure_config_dir(path: Path) -> None:
    """Create the config directory (owner-only) if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True, mode=0o700)


def load_raw_config(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Load configuration values from config.cfg.
    Values are returned with lowercase keys for convenience.
    """
    path = path or get_daemon_paths().config_file
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})
        if "RELAY" in cfg:
            data.update({k.lower(): v for k, v in cfg["RELAY"].items()})

    return data


def load_env_file(config_dir: Optional[Path] = None) -> bool:
    """
    Load <config_dir>/.env into the process environment.

    Variables already set in the real environment are left untouched.

    Returns:
        True if a .env file was found and loaded
    """
    env_path = (Path(config_dir) if config_dir else get_config_dir()) / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(env_path, override=False)


def _get_bool(raw: Dict[str, str], key: str, default: bool = False) -> bool:
    value = raw.get(key, "")
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def get_relay_settings(raw: Optional[Dict[str, str]] = None) -> RelaySettings:
    """
    Resolve relay connection settings.

    Environment variables take precedence over config.cfg. Missing values are
    returned as empty strings; the daemon reports them as an error state.
    """
    raw = raw if raw is not None else load_raw_config()

    url = os.environ.get("SUPABASE_URL") or raw.get("supabase_url", "")
    anon_key = os.environ.get("SUPABASE_ANON_KEY") or raw.get("supabase_anon_key", "")

    log_level = os.environ.get("STYRBY_LOG_LEVEL", "").strip().lower()
    debug = log_level == "debug" or _get_bool(raw, "debug", False)

    return RelaySettings(url=url.strip(), anon_key=anon_key.strip(), debug=debug)


def load_credentials(path: Optional[Path] = None) -> Optional[Credentials]:
    """
    Read the credentials persisted at onboarding.

    Returns:
        Credentials, or None if the file is missing, corrupt or incomplete
    """
    path = path or get_daemon_paths().data_file
    if not path.exists():
        return None

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None

    if not isinstance(data, dict):
        return None

    user_id = data.get("userId")
    access_token = data.get("accessToken")
    if not user_id or not access_token:
        return None

    return Credentials(
        user_id=str(user_id),
        access_token=str(access_token),
        machine_id=data.get("machineId") or None,
    )

"""PID, status and socket file helpers shared by the supervisor and daemon."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from styrby.core.configs import DaemonPaths, ensure_config_dir

logger = logging.getLogger(__name__)


def read_pid_file(path: Path) -> Optional[int]:
    """Return the PID stored in ``path``, or None if missing or invalid."""
    try:
        pid = int(path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if pid > 0 else None


def write_pid_file(path: Path, pid: int) -> None:
    """Write ``pid`` as plain decimal text with owner-only permissions."""
    ensure_config_dir(path.parent)
    _write_private(path, str(pid))


def is_process_alive(pid: int) -> bool:
    """
    Liveness probe: signal 0 checks existence without delivering a signal.

    Any error counts as dead. A PermissionError means the PID now belongs to
    another user's process, so it cannot be our daemon.
    """
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def read_status_file(path: Path) -> Optional[Dict[str, Any]]:
    """Load the status snapshot, or None if missing or corrupt."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def write_daemon_status_file(paths: DaemonPaths, status: Dict[str, Any]) -> None:
    """
    Write the status snapshot atomically (temp file + rename).

    Readers never observe a half-written file.
    """
    ensure_config_dir(paths.status_file.parent)
    tmp_path = paths.status_file.with_suffix(".json.tmp")
    _write_private(tmp_path, json.dumps(status, indent=2))
    os.replace(tmp_path, paths.status_file)


def remove_files(files: Iterable[Path]) -> None:
    """Best-effort removal; failures are logged, never raised."""
    for path in files:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Could not remove {path}: {e}")


def cleanup_daemon_files(paths: DaemonPaths, include_socket: bool = True) -> None:
    """Remove PID and status files (and the socket unless told otherwise)."""
    files = [paths.pid_file, paths.status_file]
    if include_socket:
        files.append(paths.socket_path)
    remove_files(files)


def _write_private(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(path, 0o600)

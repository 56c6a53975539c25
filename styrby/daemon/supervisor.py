"""Daemon supervisor - start, stop and query the background daemon.

Runs inside ordinary CLI invocations. All coordination with the daemon goes
through the files in the config directory plus one readiness handshake:

    start_daemon()      spawn a detached daemon and wait (<=10s) for "ready"
    stop_daemon()       SIGTERM, wait 5s, escalate to SIGKILL, wait 2s
    get_daemon_status() PID file + liveness probe + status snapshot

Benign conditions (no daemon, stale PID file) are returned as
DaemonState(running=False, ...) and never raised.
"""

import json
import logging
import os
import select
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Optional

from styrby.core.configs import (
    DAEMON_ENV,
    FORCED_EXIT_TIMEOUT,
    GRACEFUL_EXIT_TIMEOUT,
    READY_FD_ENV,
    READY_TIMEOUT,
    DaemonPaths,
    ensure_config_dir,
    get_daemon_paths,
)
from styrby.daemon.files import (
    cleanup_daemon_files,
    is_process_alive,
    read_pid_file,
    read_status_file,
    write_pid_file,
)
from styrby.daemon.state import ConnectionState, DaemonState, utc_now_iso, uptime_since

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


@dataclass
class StopResult:
    was_running: bool
    forced: bool = False


def get_daemon_status(paths: Optional[DaemonPaths] = None) -> DaemonState:
    """
    Get the current status of the daemon.

    Checks the PID file, probes the process, and merges the status snapshot
    when one exists. Never raises.
    """
    paths = paths or get_daemon_paths()

    pid = read_pid_file(paths.pid_file)
    if pid is None:
        return DaemonState(running=False)

    if not is_process_alive(pid):
        logger.debug(f"Found stale daemon PID file (pid {pid})")
        return DaemonState(
            running=False,
            error_message="Daemon process not found (stale PID file)",
        )

    status = read_status_file(paths.status_file)
    if status:
        return DaemonState(
            running=True,
            pid=status.get("pid", pid),
            started_at=status.get("startedAt"),
            connection_state=status.get("connectionState"),
            active_sessions=status.get("activeSessions"),
            uptime_seconds=uptime_since(status.get("startedAt")),
            last_heartbeat=status.get("lastHeartbeat"),
            error_message=status.get("errorMessage"),
        )

    return DaemonState(
        running=True,
        pid=pid,
        connection_state=ConnectionState.CONNECTING.value,
    )


def is_daemon_running(paths: Optional[DaemonPaths] = None) -> bool:
    return get_daemon_status(paths).running


def start_daemon(
    paths: Optional[DaemonPaths] = None,
    ready_timeout: float = READY_TIMEOUT,
    command: Optional[list] = None,
) -> DaemonState:
    """
    Start the daemon process.

    If a daemon is already running its current state is returned unchanged;
    a second daemon is never spawned.

    Args:
        paths: Daemon file layout (default: ~/.styrby)
        ready_timeout: Seconds to wait for the ready handshake
        command: Override the daemon command line (tests)

    Returns:
        DaemonState after the start attempt. Failures are reported through
        running=False and error_message, not raised.
    """
    paths = paths or get_daemon_paths()

    existing = get_daemon_status(paths)
    if existing.running:
        logger.debug(f"Daemon already running (pid {existing.pid})")
        return existing

    ensure_config_dir(paths.config_dir)
    cleanup_daemon_files(paths, include_socket=False)

    argv = command or [
        sys.executable,
        "-m",
        "styrby.daemon.server",
        "--daemon",
        "--config-dir",
        str(paths.config_dir),
    ]

    read_fd, write_fd = os.pipe()
    env = dict(os.environ)
    env[DAEMON_ENV] = "1"
    env[READY_FD_ENV] = str(write_fd)
    env["STYRBY_HOME"] = str(paths.config_dir)

    logger.debug(f"Starting daemon: {' '.join(argv)}")
    try:
        with open(paths.log_file, "ab") as log_file:
            child = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                env=env,
                pass_fds=(write_fd,),
                start_new_session=True,
                close_fds=True,
            )
    except OSError as e:
        os.close(read_fd)
        os.close(write_fd)
        logger.error(f"Daemon child process error: {e}")
        return DaemonState(running=False, error_message=f"Failed to spawn daemon: {e}")

    # Only the child keeps the write end; EOF on read_fd now means it exited.
    os.close(write_fd)

    try:
        outcome = _wait_for_ready(read_fd, child, ready_timeout)
    finally:
        os.close(read_fd)

    if outcome == "ready":
        write_pid_file(paths.pid_file, child.pid)
        # Detached: the daemon outlives this process and is never waited on here.
        child.returncode = 0
        logger.debug(f"Daemon started (pid {child.pid})")
        return DaemonState(
            running=True,
            pid=child.pid,
            started_at=utc_now_iso(),
            connection_state=ConnectionState.CONNECTING.value,
        )

    if outcome == "timeout":
        logger.error("Daemon start timed out waiting for ready signal")
        _kill_child(child)
        cleanup_daemon_files(paths)
        return DaemonState(running=False, error_message="Daemon failed to start within timeout")

    # The pipe closes slightly before the exit status becomes available.
    try:
        code = child.wait(timeout=FORCED_EXIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        _kill_child(child)
        code = child.returncode
    logger.error(f"Daemon child exited prematurely (code {code})")
    cleanup_daemon_files(paths)
    return DaemonState(
        running=False,
        error_message=f"Daemon exited before becoming ready (code {code}); see {paths.log_file}",
    )


def _wait_for_ready(read_fd: int, child: subprocess.Popen, timeout: float) -> str:
    """
    Wait for the one-shot {"type": "ready"} message.

    Returns:
        "ready", "timeout", or "exited" (pipe closed or bad message)
    """
    deadline = time.monotonic() + timeout
    data = b""
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return "timeout"

        readable, _, _ = select.select([read_fd], [], [], remaining)
        if not readable:
            return "timeout"

        chunk = os.read(read_fd, 4096)
        if not chunk:
            return "exited"
        data += chunk
        if b"\n" not in data:
            continue

        line = data.split(b"\n", 1)[0]
        try:
            message = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return "exited"
        if isinstance(message, dict) and message.get("type") == "ready":
            return "ready"
        return "exited"


def _kill_child(child: subprocess.Popen) -> None:
    """Terminate a child that never became ready, escalating to SIGKILL."""
    if child.poll() is not None:
        return
    child.terminate()
    try:
        child.wait(timeout=FORCED_EXIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        child.kill()
        try:
            child.wait(timeout=FORCED_EXIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"Daemon child {child.pid} did not exit after SIGKILL")


def stop_daemon(
    paths: Optional[DaemonPaths] = None,
    graceful_timeout: float = GRACEFUL_EXIT_TIMEOUT,
    forced_timeout: float = FORCED_EXIT_TIMEOUT,
) -> StopResult:
    """
    Stop the running daemon process.

    Sends SIGTERM, waits up to graceful_timeout, then escalates to SIGKILL and
    waits up to forced_timeout. The PID, status and socket files are removed
    before returning on every path.
    """
    paths = paths or get_daemon_paths()

    pid = read_pid_file(paths.pid_file)
    if pid is None or not is_process_alive(pid):
        cleanup_daemon_files(paths)
        return StopResult(was_running=False)

    logger.debug(f"Sending SIGTERM to daemon (pid {pid})")
    forced = False
    try:
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Cannot signal daemon (pid {pid}): {e}")
            return StopResult(was_running=False)

        if not wait_for_process_exit(pid, graceful_timeout):
            logger.debug(f"Daemon did not exit after SIGTERM, sending SIGKILL (pid {pid})")
            forced = True
            try:
                os.kill(pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
            wait_for_process_exit(pid, forced_timeout)
    finally:
        cleanup_daemon_files(paths)

    logger.debug("Daemon stopped and cleaned up")
    return StopResult(was_running=True, forced=forced)


def wait_for_process_exit(pid: int, timeout: float) -> bool:
    """
    Wait until ``pid`` exits or ``timeout`` elapses.

    The daemon is usually not our child (an earlier CLI invocation started
    it). On Linux a pidfd delivers the exit as a readable event; elsewhere the
    liveness probe is checked on a short interval until the deadline. Our own
    zombie children are reaped so they don't look alive.

    Returns:
        True if the process exited
    """
    deadline = time.monotonic() + timeout
    _reap(pid)
    if not is_process_alive(pid):
        return True

    if hasattr(os, "pidfd_open"):
        try:
            pidfd = os.pidfd_open(pid)
        except ProcessLookupError:
            return True
        except OSError as e:
            logger.debug(f"pidfd_open failed, falling back to polling: {e}")
        else:
            try:
                select.select([pidfd], [], [], timeout)
            finally:
                os.close(pidfd)

    # Also covers the short window where an exited process is still a zombie.
    while True:
        _reap(pid)
        if not is_process_alive(pid):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(POLL_INTERVAL)


def _reap(pid: int) -> None:
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass

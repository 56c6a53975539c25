"""Lightweight client for daemon communication.

This module provides a thin client that connects to the daemon via its Unix
socket. Each call opens one connection, sends one command line, reads one
response line and closes the connection.

Usage:
    client = DaemonClient()
    if client.can_connect():
        state = client.get_status()
"""

import logging
import socket
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from styrby.core.configs import IPC_TIMEOUT, get_daemon_paths
from styrby.daemon.protocol import LineBuffer, decode_response, encode_command
from styrby.daemon.state import DaemonState
from styrby.errors import DaemonTransportError, ProtocolError, StyrbyError

logger = logging.getLogger(__name__)

NOT_RUNNING_ERROR = "Daemon not running"


class DaemonClient:
    """
    Lightweight client for daemon communication.

    Designed for minimal overhead:
    - Uses stdlib socket (no event loop)
    - One connection per command
    - Whole exchange bounded by ``timeout``
    """

    def __init__(
        self,
        socket_path: Optional[Path] = None,
        timeout: float = IPC_TIMEOUT,
    ):
        """
        Initialize client.

        Args:
            socket_path: Path to Unix socket (default: ~/.styrby/daemon.sock)
            timeout: Seconds allowed for one request/response round trip
        """
        self.socket_path = socket_path or get_daemon_paths().socket_path
        self.timeout = timeout

    def send_command(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send one command to the daemon and return its response.

        "Daemon unreachable" (no socket file, connection refused) and a
        connection closed before any response are returned as
        ``{"success": False, "error": ...}``.

        Raises:
            DaemonTransportError: On timeout or other socket failures
            ProtocolError: If the response cannot be parsed
        """
        deadline = time.monotonic() + self.timeout
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)

        try:
            try:
                sock.connect(str(self.socket_path))
            except (FileNotFoundError, ConnectionRefusedError):
                return {"success": False, "error": NOT_RUNNING_ERROR}

            sock.sendall(encode_command(command))

            buffer = LineBuffer()
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout()
                sock.settimeout(remaining)

                chunk = sock.recv(65536)
                if not chunk:
                    logger.debug("Daemon closed connection without a response")
                    return {"success": False, "error": "Connection closed before response"}

                lines = buffer.feed(chunk)
                if lines:
                    return decode_response(lines[0])

        except socket.timeout as e:
            raise DaemonTransportError(
                f"Timed out after {self.timeout:g}s waiting for daemon response"
            ) from e
        except ProtocolError:
            raise
        except OSError as e:
            raise DaemonTransportError(f"Daemon IPC failed: {e}") from e
        finally:
            sock.close()

    def can_connect(self) -> bool:
        """True if the daemon answers a ping."""
        try:
            return bool(self.send_command({"type": "ping"}).get("success"))
        except StyrbyError:
            return False

    def get_status(self) -> DaemonState:
        """
        Get daemon status via IPC.

        Falls back to DaemonState(running=False) on any failure.
        """
        try:
            response = self.send_command({"type": "status"})
        except StyrbyError as e:
            logger.debug(f"Status request failed: {e}")
            return DaemonState(running=False)

        data = response.get("data")
        if not response.get("success") or not isinstance(data, dict):
            return DaemonState(running=False)
        return DaemonState.from_dict(data)

    def request_stop(self) -> bool:
        """
        Ask the daemon to shut down.

        Returns True if the stop was acknowledged.
        """
        try:
            return bool(self.send_command({"type": "stop"}).get("success"))
        except StyrbyError:
            return False

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Devices connected to the daemon's relay; empty on any failure."""
        try:
            response = self.send_command({"type": "list-sessions"})
        except StyrbyError:
            return []

        data = response.get("data")
        if not response.get("success") or not isinstance(data, dict):
            return []
        devices = data.get("devices")
        return devices if isinstance(devices, list) else []

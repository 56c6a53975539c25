"""Daemon architecture for Styrby.

This package keeps one outbound relay connection alive across terminal
sessions in a detached background process.

Architecture:
- DaemonServer: Long-lived process serving IPC on a Unix socket
- Supervisor: start_daemon / stop_daemon / get_daemon_status from any CLI run
- DaemonClient: Short-lived client sending one command per connection
- protocol: Newline-delimited JSON framing shared by both sides
"""

from styrby.daemon.client import DaemonClient
from styrby.daemon.protocol import (
    COMMAND_TYPES,
    LineBuffer,
    decode_command,
    decode_response,
    encode_command,
    encode_response,
)
from styrby.daemon.state import ConnectionState, DaemonState
from styrby.daemon.supervisor import (
    StopResult,
    get_daemon_status,
    is_daemon_running,
    start_daemon,
    stop_daemon,
)

__all__ = [
    "COMMAND_TYPES",
    "ConnectionState",
    "DaemonClient",
    "DaemonState",
    "LineBuffer",
    "StopResult",
    "decode_command",
    "decode_response",
    "encode_command",
    "encode_response",
    "get_daemon_status",
    "is_daemon_running",
    "start_daemon",
    "stop_daemon",
]

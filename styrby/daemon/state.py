"""Daemon state - runtime record, wire snapshot and connection state machine.

DaemonRuntimeState is owned by exactly one DaemonServer instance. Nothing is
kept at module scope, so several daemons can run in one process under test.

Relay events arrive as a tagged union (RelayEvent) through one channel, and
the daemon's reaction is the pure function apply_relay_event().
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from styrby.relay.events import (
    RelayClosed,
    RelayConnecting,
    RelayEvent,
    RelayFailed,
    RelaySubscribed,
)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState = ConnectionState.DISCONNECTED
    error_message: Optional[str] = None


def apply_relay_event(
    current: ConnectionStatus,
    event: RelayEvent,
    shutting_down: bool = False,
) -> ConnectionStatus:
    """
    Compute the next connection status for a relay event.

    Transitions:
        disconnected -> connecting -> connected | error
        connected/connecting + unexpected close -> reconnecting
        error stays error until a subscription succeeds
        any close during shutdown -> disconnected
    """
    if isinstance(event, RelaySubscribed):
        return ConnectionStatus(ConnectionState.CONNECTED, None)

    if isinstance(event, RelayFailed):
        return ConnectionStatus(ConnectionState.ERROR, event.message)

    if isinstance(event, RelayClosed):
        if shutting_down:
            return replace(current, state=ConnectionState.DISCONNECTED)
        if current.state == ConnectionState.ERROR:
            return current
        return replace(current, state=ConnectionState.RECONNECTING)

    if isinstance(event, RelayConnecting):
        if current.state == ConnectionState.ERROR:
            return current
        return replace(current, state=ConnectionState.CONNECTING)

    return current


# ============================================================================
# Wire / status-file representation
# ============================================================================

def utc_now_iso() -> str:
    """Current time as an ISO 8601 string (UTC, millisecond precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp, accepting a trailing 'Z'. None if invalid."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def uptime_since(started_at: Optional[str]) -> Optional[int]:
    """Whole seconds elapsed since an ISO timestamp (None if unparseable)."""
    start = parse_iso(started_at) if started_at else None
    if start is None:
        return None
    return max(0, int((datetime.now(timezone.utc) - start).total_seconds()))


_WIRE_NAMES = {
    "running": "running",
    "pid": "pid",
    "started_at": "startedAt",
    "connection_state": "connectionState",
    "active_sessions": "activeSessions",
    "uptime_seconds": "uptimeSeconds",
    "last_heartbeat": "lastHeartbeat",
    "error_message": "errorMessage",
}


@dataclass
class DaemonState:
    """Daemon status as reported to callers (never persisted as-is)."""
    running: bool
    pid: Optional[int] = None
    started_at: Optional[str] = None
    connection_state: Optional[str] = None
    active_sessions: Optional[int] = None
    uptime_seconds: Optional[int] = None
    last_heartbeat: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """camelCase wire shape; absent fields are omitted."""
        result: Dict[str, Any] = {}
        for attr, wire in _WIRE_NAMES.items():
            value = getattr(self, attr)
            if value is not None:
                result[wire] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DaemonState":
        kwargs = {attr: data.get(wire) for attr, wire in _WIRE_NAMES.items()}
        kwargs["running"] = bool(kwargs.get("running"))
        return cls(**kwargs)


@dataclass
class DaemonRuntimeState:
    """
    Mutable state of one running daemon.

    Not thread-safe. The daemon runs on a single asyncio loop, so no
    locking is needed.
    """
    pid: int
    started_at: str = field(default_factory=utc_now_iso)
    start_time: float = field(default_factory=time.time)
    connection: ConnectionStatus = field(default_factory=ConnectionStatus)
    shutting_down: bool = False

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def error_message(self) -> Optional[str]:
        return self.connection.error_message

    def apply(self, event: RelayEvent) -> ConnectionStatus:
        self.connection = apply_relay_event(self.connection, event, self.shutting_down)
        return self.connection

    def record_error(self, message: str) -> None:
        """Fold an unexpected internal failure into the error state."""
        self.connection = ConnectionStatus(ConnectionState.ERROR, message)

    def set_error_message(self, message: str) -> None:
        """Record a message without changing the connection state."""
        self.connection = replace(self.connection, error_message=message)

    def uptime_seconds(self) -> int:
        return max(0, int(time.time() - self.start_time))

    def status_file_payload(self, active_sessions: int) -> Dict[str, Any]:
        """Subset mirrored into daemon.status.json."""
        payload: Dict[str, Any] = {
            "pid": self.pid,
            "startedAt": self.started_at,
            "connectionState": self.connection_state.value,
            "activeSessions": active_sessions,
            "lastHeartbeat": utc_now_iso(),
        }
        if self.error_message:
            payload["errorMessage"] = self.error_message
        return payload

    def snapshot(self, active_sessions: int) -> DaemonState:
        """Full state as returned by the 'status' IPC command."""
        return DaemonState(
            running=True,
            pid=self.pid,
            started_at=self.started_at,
            connection_state=self.connection_state.value,
            active_sessions=active_sessions,
            uptime_seconds=self.uptime_seconds(),
            last_heartbeat=utc_now_iso(),
            error_message=self.error_message,
        )

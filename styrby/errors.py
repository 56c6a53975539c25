"""Exception types shared across Styrby.

Expected conditions (no daemon, stale PID file, missing socket) are reported
as negative results, not raised. These classes cover the remaining cases.
"""

from typing import Optional


class StyrbyError(Exception):
    """Base class for all Styrby errors."""


class DaemonTransportError(StyrbyError):
    """IPC transport failed for a reason other than 'daemon not running'."""


class ProtocolError(StyrbyError):
    """A protocol message could not be parsed or is missing fields."""


class AgentBackendError(StyrbyError):
    """Base class for agent backend failures."""


class BackendDisposedError(AgentBackendError):
    def __init__(self) -> None:
        super().__init__("Backend has been disposed")


class SessionMismatchError(AgentBackendError):
    """A command carried a session id the backend does not own."""

    def __init__(self, session_id: str):
        super().__init__(f"Invalid session ID: {session_id}")
        self.session_id = session_id


class AgentProcessError(AgentBackendError):
    """The agent subprocess could not be spawned or exited unsuccessfully."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class UnknownAgentError(AgentBackendError):
    def __init__(self, agent_id: str, available: Optional[list] = None):
        known = ", ".join(available) if available else "none"
        super().__init__(f"Unknown agent: {agent_id} (available: {known})")
        self.agent_id = agent_id

"""
Agent backend abstraction.

Every external agent CLI (Aider, OpenCode, ...) is driven through the same
AgentBackend interface and reports progress as AgentMessage values delivered
to registered listeners.

Backends come in two flavours:
- EphemeralAgentBackend: a fresh subprocess per prompt, no mid-session
  interaction
- PersistentSessionBackend: a long-lived session that can raise interactive
  permission prompts and accept answers via respond_to_permission()
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union

from styrby.core.configs import RESPONSE_COMPLETE_TIMEOUT
from styrby.errors import BackendDisposedError, SessionMismatchError, UnknownAgentError

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    STOPPED = "stopped"
    DISPOSED = "disposed"


# ============================================================================
# Messages
# ============================================================================

@dataclass(frozen=True)
class StatusMessage:
    status: SessionStatus
    detail: Optional[str] = None
    type: str = field(default="status", init=False)


@dataclass(frozen=True)
class ModelOutputMessage:
    text_delta: str
    type: str = field(default="model-output", init=False)


@dataclass(frozen=True)
class FsEditMessage:
    description: str
    path: Optional[str] = None
    type: str = field(default="fs-edit", init=False)


@dataclass(frozen=True)
class TokenCountMessage:
    input_tokens: int
    output_tokens: int
    total_tokens: Optional[int] = None
    cost_usd: float = 0.0
    estimated: bool = False
    type: str = field(default="token-count", init=False)


@dataclass(frozen=True)
class PermissionRequestMessage:
    id: str
    reason: str
    payload: Dict[str, Any] = field(default_factory=dict)
    type: str = field(default="permission-request", init=False)


@dataclass(frozen=True)
class PermissionResponseMessage:
    id: str
    approved: bool
    type: str = field(default="permission-response", init=False)


@dataclass(frozen=True)
class ToolCallMessage:
    tool_name: str
    args: Dict[str, Any]
    call_id: str
    type: str = field(default="tool-call", init=False)


@dataclass(frozen=True)
class ToolResultMessage:
    tool_name: str
    result: Any
    call_id: str
    type: str = field(default="tool-result", init=False)


@dataclass(frozen=True)
class EventMessage:
    name: str
    payload: Any = None
    type: str = field(default="event", init=False)


AgentMessage = Union[
    StatusMessage,
    ModelOutputMessage,
    FsEditMessage,
    TokenCountMessage,
    PermissionRequestMessage,
    PermissionResponseMessage,
    ToolCallMessage,
    ToolResultMessage,
    EventMessage,
]

AgentMessageHandler = Callable[[AgentMessage], None]


def message_to_dict(message: AgentMessage) -> Dict[str, Any]:
    """Plain-dict form of a message (for JSON output)."""
    data = asdict(message)
    if isinstance(message, StatusMessage):
        data["status"] = message.status.value
    return data


# ============================================================================
# Backends
# ============================================================================

@dataclass
class AgentFactoryOptions:
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    model: Optional[str] = None
    api_key: Optional[str] = None
    extra_args: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)


class AgentBackend(ABC):
    """
    Base class for all agent backends.

    Owns the listener list and at most one active session id. Subclasses
    implement the session operations and report through _emit().
    """

    kind: str = "ephemeral"
    capabilities: FrozenSet[str] = frozenset()

    def __init__(self, options: Optional[AgentFactoryOptions] = None):
        self.options = options or AgentFactoryOptions()
        self.session_id: Optional[str] = None
        self._listeners: List[AgentMessageHandler] = []
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_message(self, handler: AgentMessageHandler) -> None:
        self._listeners.append(handler)

    def off_message(self, handler: AgentMessageHandler) -> None:
        try:
            self._listeners.remove(handler)
        except ValueError:
            pass

    def _emit(self, message: AgentMessage) -> None:
        """Deliver a message to every listener; silent after disposal."""
        if self._disposed:
            return
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.warning(f"[{type(self).__name__}] Error in message handler: {e}")

    def _check_session(self, session_id: str) -> None:
        if self._disposed:
            raise BackendDisposedError()
        if session_id != self.session_id:
            raise SessionMismatchError(session_id)

    @abstractmethod
    async def start_session(self, initial_prompt: Optional[str] = None) -> str:
        """Start a new session and return its id."""

    @abstractmethod
    async def send_prompt(self, session_id: str, prompt: str) -> None:
        """Run one prompt; returns when the agent has finished responding."""

    @abstractmethod
    async def cancel(self, session_id: str) -> None:
        """Abort the in-flight prompt, if any."""

    @abstractmethod
    async def wait_for_response_complete(
        self, timeout: float = RESPONSE_COMPLETE_TIMEOUT
    ) -> None:
        """Wait until the in-flight prompt has finished (TimeoutError otherwise)."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release all resources. The backend is unusable afterwards."""


class EphemeralAgentBackend(AgentBackend):
    """A backend that runs a fresh agent process per prompt."""

    kind = "ephemeral"


class PersistentSessionBackend(AgentBackend):
    """A backend holding a live session that can ask for permissions."""

    kind = "persistent"
    capabilities = frozenset({"permission-prompts"})

    @abstractmethod
    async def respond_to_permission(self, request_id: str, approved: bool) -> None:
        """Answer a permission request raised by the agent."""


def supports_permission_prompts(backend: AgentBackend) -> bool:
    return isinstance(backend, PersistentSessionBackend)


# ============================================================================
# Registry
# ============================================================================

AgentFactory = Callable[[AgentFactoryOptions], AgentBackend]


class AgentRegistry:
    """Maps agent ids (e.g. "aider") to backend factories."""

    def __init__(self):
        self._factories: Dict[str, AgentFactory] = {}

    def register(self, agent_id: str, factory: AgentFactory) -> None:
        if agent_id in self._factories:
            logger.debug(f"Replacing agent factory: {agent_id}")
        self._factories[agent_id] = factory

    def has(self, agent_id: str) -> bool:
        return agent_id in self._factories

    def list(self) -> List[str]:
        return sorted(self._factories)

    def create(
        self, agent_id: str, options: Optional[AgentFactoryOptions] = None
    ) -> AgentBackend:
        """
        Create a backend for a registered agent.

        Raises:
            UnknownAgentError: If no factory is registered under agent_id
        """
        factory = self._factories.get(agent_id)
        if factory is None:
            raise UnknownAgentError(agent_id, self.list())
        return factory(options or AgentFactoryOptions())


agent_registry = AgentRegistry()

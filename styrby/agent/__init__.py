"""Agent backends - one event interface over external agent CLIs."""

from styrby.agent.core import (
    AgentBackend,
    AgentFactory,
    AgentFactoryOptions,
    AgentMessage,
    AgentMessageHandler,
    AgentRegistry,
    EphemeralAgentBackend,
    EventMessage,
    FsEditMessage,
    ModelOutputMessage,
    PermissionRequestMessage,
    PermissionResponseMessage,
    PersistentSessionBackend,
    SessionStatus,
    StatusMessage,
    TokenCountMessage,
    ToolCallMessage,
    ToolResultMessage,
    agent_registry,
    message_to_dict,
    supports_permission_prompts,
)
from styrby.agent.factories import register_aider_agent, register_opencode_agent


def initialize_agents(registry: AgentRegistry = agent_registry) -> AgentRegistry:
    """Register the built-in agent backends. Safe to call more than once."""
    register_opencode_agent(registry)
    register_aider_agent(registry)
    return registry


__all__ = [
    "AgentBackend",
    "AgentFactory",
    "AgentFactoryOptions",
    "AgentMessage",
    "AgentMessageHandler",
    "AgentRegistry",
    "EphemeralAgentBackend",
    "EventMessage",
    "FsEditMessage",
    "ModelOutputMessage",
    "PermissionRequestMessage",
    "PermissionResponseMessage",
    "PersistentSessionBackend",
    "SessionStatus",
    "StatusMessage",
    "TokenCountMessage",
    "ToolCallMessage",
    "ToolResultMessage",
    "agent_registry",
    "initialize_agents",
    "message_to_dict",
    "supports_permission_prompts",
]

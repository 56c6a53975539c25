from styrby.agent.factories.aider import (
    AiderBackend,
    create_aider_backend,
    estimate_tokens,
    parse_file_edit,
    register_aider_agent,
)
from styrby.agent.factories.opencode import (
    OpenCodeBackend,
    create_opencode_backend,
    parse_opencode_line,
    register_opencode_agent,
)

__all__ = [
    "AiderBackend",
    "OpenCodeBackend",
    "create_aider_backend",
    "create_opencode_backend",
    "estimate_tokens",
    "parse_file_edit",
    "parse_opencode_line",
    "register_aider_agent",
    "register_opencode_agent",
]

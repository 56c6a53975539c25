"""
OpenCode backend.

OpenCode is a terminal AI coding assistant with structured output:
``opencode run --format json`` prints one JSON object per line. Its session
messages carry real token counts and cost, and the OpenCode session id is
passed back with ``--session`` so later prompts continue the same
conversation.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from styrby.agent.core import (
    AgentFactoryOptions,
    AgentRegistry,
    FsEditMessage,
    ModelOutputMessage,
    SessionStatus,
    StatusMessage,
    TokenCountMessage,
    ToolCallMessage,
    ToolResultMessage,
    agent_registry,
)
from styrby.agent.process import SubprocessAgentBackend

logger = logging.getLogger(__name__)

FILE_WRITE_TOOLS = ("write_file", "edit_file", "str_replace_editor")

STATUS_MAP = {
    "starting": SessionStatus.STARTING,
    "running": SessionStatus.RUNNING,
    "idle": SessionStatus.IDLE,
    "complete": SessionStatus.IDLE,
    "stopped": SessionStatus.STOPPED,
    "error": SessionStatus.ERROR,
}


def parse_opencode_line(line: str) -> Optional[Dict[str, Any]]:
    """Parse one line of JSON output; None for anything that is not an object."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        message = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None


class OpenCodeBackend(SubprocessAgentBackend):
    executable = "opencode"
    display_name = "OpenCode"

    def __init__(
        self,
        options: Optional[AgentFactoryOptions] = None,
        resume_session_id: Optional[str] = None,
    ):
        super().__init__(options)
        self.resume_session_id = resume_session_id
        self.opencode_session_id: Optional[str] = resume_session_id
        self.total_cost = 0.0
        self._line_buffer = ""

    def build_args(self, prompt: str) -> List[str]:
        args = ["run", "--format", "json"]
        if self.options.model:
            args.extend(["--model", self.options.model])
        if self.opencode_session_id:
            args.extend(["--session", self.opencode_session_id])
        args.extend(self.options.extra_args)
        args.append(prompt)
        return args

    def build_env(self) -> Dict[str, str]:
        if self.options.api_key:
            return {"ANTHROPIC_API_KEY": self.options.api_key}
        return {}

    def reset_session_state(self) -> None:
        super().reset_session_state()
        self.total_cost = 0.0
        self.opencode_session_id = self.resume_session_id

    def before_prompt(self, prompt: str) -> None:
        self._line_buffer = ""

    def handle_stdout(self, text: str) -> None:
        lines = (self._line_buffer + text).split("\n")
        self._line_buffer = lines.pop()
        for line in lines:
            self._handle_line(line)

    def handle_stdout_end(self) -> None:
        if self._line_buffer.strip():
            self._handle_line(self._line_buffer)
        self._line_buffer = ""

    def _handle_line(self, line: str) -> None:
        message = parse_opencode_line(line)
        if message is not None:
            self.handle_json_message(message)
        elif line.strip():
            self._emit(ModelOutputMessage(line + "\n"))

    def handle_json_message(self, message: Dict[str, Any]) -> None:
        """Translate one OpenCode JSON message into agent messages."""
        kind = message.get("type")

        if kind == "assistant":
            if message.get("content"):
                self._emit(ModelOutputMessage(message["content"]))

        elif kind == "tool_use":
            if message.get("tool_name") and message.get("call_id"):
                self._emit(ToolCallMessage(
                    tool_name=message["tool_name"],
                    args=message.get("tool_input") or {},
                    call_id=message["call_id"],
                ))

        elif kind == "tool_result":
            tool_name = message.get("tool_name")
            if tool_name and message.get("call_id"):
                self._emit(ToolResultMessage(
                    tool_name=tool_name,
                    result=message.get("tool_result"),
                    call_id=message["call_id"],
                ))
                if tool_name in FILE_WRITE_TOOLS:
                    tool_input = message.get("tool_input") or {}
                    path = tool_input.get("path") or tool_input.get("file_path")
                    if path:
                        self._emit(FsEditMessage(description=f"{tool_name}: {path}", path=path))

        elif kind == "status":
            if message.get("status"):
                status = STATUS_MAP.get(message["status"], SessionStatus.RUNNING)
                self._emit(StatusMessage(status))

        elif kind == "error":
            self._emit(StatusMessage(SessionStatus.ERROR, message.get("error") or "Unknown error"))

        elif kind == "session":
            session = message.get("session")
            if isinstance(session, dict):
                self._update_session(session)

        else:
            logger.debug(f"[OpenCode] Unknown message type: {message}")

    def _update_session(self, session: Dict[str, Any]) -> None:
        if session.get("id"):
            self.opencode_session_id = session["id"]
        if session.get("Cost") is not None:
            self.total_cost = float(session["Cost"])
        if session.get("PromptTokens") is not None:
            self.input_tokens = int(session["PromptTokens"])
        if session.get("CompletionTokens") is not None:
            self.output_tokens = int(session["CompletionTokens"])

        total = session.get("TotalTokens")
        self._emit(TokenCountMessage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=int(total) if total is not None else self.input_tokens + self.output_tokens,
            cost_usd=self.total_cost,
        ))


def create_opencode_backend(
    options: Optional[AgentFactoryOptions] = None,
    resume_session_id: Optional[str] = None,
) -> OpenCodeBackend:
    options = options or AgentFactoryOptions()
    logger.debug(
        f"[OpenCode] Creating backend (cwd={options.cwd}, model={options.model}, "
        f"resume={resume_session_id})"
    )
    return OpenCodeBackend(options, resume_session_id=resume_session_id)


def register_opencode_agent(registry: AgentRegistry = agent_registry) -> None:
    registry.register("opencode", create_opencode_backend)
    logger.debug("[OpenCode] Registered with agent registry")

"""
Aider backend.

Aider (https://aider.chat) is an AI pair programming CLI. Each prompt runs as
``aider --message <prompt> --no-stream --yes`` in the project directory.
Aider prints plain text, so file edits are recognised from its
"Wrote/Updated/Created <path>" lines and token usage is estimated from word
counts.
"""

import logging
import math
import re
from typing import Dict, List, Optional, Tuple

from styrby.agent.core import (
    AgentFactoryOptions,
    AgentRegistry,
    FsEditMessage,
    ModelOutputMessage,
    TokenCountMessage,
    agent_registry,
)
from styrby.agent.process import SubprocessAgentBackend

logger = logging.getLogger(__name__)

FILE_EDIT_PATTERN = re.compile(r"^(Wrote|Updated|Created)\s+(.+)$")
TOKENS_PER_WORD = 1.3


def estimate_tokens(text: str) -> int:
    """Rough token count: about 1.3 tokens per whitespace-separated word."""
    return math.ceil(len(text.split()) * TOKENS_PER_WORD)


def parse_file_edit(line: str) -> Optional[Tuple[str, str]]:
    """
    Recognise an Aider file-edit line.

    Returns:
        (action, path) with a lower-cased action, or None
    """
    match = FILE_EDIT_PATTERN.match(line.strip())
    if not match:
        return None
    return match.group(1).lower(), match.group(2).strip()


class AiderBackend(SubprocessAgentBackend):
    executable = "aider"
    display_name = "Aider"

    def __init__(self, options: Optional[AgentFactoryOptions] = None):
        super().__init__(options)
        self._output: List[str] = []
        self._line_buffer = ""

    def build_args(self, prompt: str) -> List[str]:
        args = ["--message", prompt, "--no-stream", "--yes"]
        if self.options.model:
            args.extend(["--model", self.options.model])
        args.extend(self.options.extra_args)
        args.extend(self.options.files)
        return args

    def build_env(self) -> Dict[str, str]:
        if self.options.api_key:
            return {"OPENAI_API_KEY": self.options.api_key}
        return {}

    def before_prompt(self, prompt: str) -> None:
        self.input_tokens += estimate_tokens(prompt)
        self._output = []
        self._line_buffer = ""

    def handle_stdout(self, text: str) -> None:
        self._output.append(text)
        self._emit(ModelOutputMessage(text))

        # Edits are matched per complete line; a chunk may end mid-line.
        lines = (self._line_buffer + text).split("\n")
        self._line_buffer = lines.pop()
        for line in lines:
            self._check_file_edit(line)

    def handle_stdout_end(self) -> None:
        if self._line_buffer:
            self._check_file_edit(self._line_buffer)
            self._line_buffer = ""

    def handle_exit(self, code: int) -> None:
        self.output_tokens += estimate_tokens("".join(self._output))
        self._emit(TokenCountMessage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.input_tokens + self.output_tokens,
            cost_usd=0.0,
            estimated=True,
        ))

    def _check_file_edit(self, line: str) -> None:
        edit = parse_file_edit(line)
        if edit:
            action, path = edit
            self._emit(FsEditMessage(description=f"{action} {path}", path=path))


def create_aider_backend(options: Optional[AgentFactoryOptions] = None) -> AiderBackend:
    options = options or AgentFactoryOptions()
    logger.debug(
        f"[Aider] Creating backend (cwd={options.cwd}, model={options.model}, "
        f"has_api_key={bool(options.api_key)})"
    )
    return AiderBackend(options)


def register_aider_agent(registry: AgentRegistry = agent_registry) -> None:
    registry.register("aider", create_aider_backend)
    logger.debug("[Aider] Registered with agent registry")

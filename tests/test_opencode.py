"""
Tests for the OpenCode backend: JSON message mapping and session resume.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

from styrby.agent import (
    AgentFactoryOptions,
    FsEditMessage,
    ModelOutputMessage,
    SessionStatus,
    StatusMessage,
    TokenCountMessage,
    ToolCallMessage,
    ToolResultMessage,
)
from styrby.agent.factories.opencode import OpenCodeBackend, parse_opencode_line

# Records each invocation and replies with one JSON message per line.
FAKE_OPENCODE = """#!{python}
import json, os, sys

args = sys.argv[1:]
with open(os.environ["FAKE_OPENCODE_LOG"], "a") as log:
    log.write(json.dumps(args) + "\\n")

def emit(message):
    print(json.dumps(message), flush=True)

emit({{"type": "status", "status": "running"}})
print("plain progress line")
emit({{"type": "assistant", "content": "Done: " + args[-1]}})
emit({{"type": "session", "session": {{
    "id": "oc-session-1",
    "Cost": 0.25,
    "PromptTokens": 100,
    "CompletionTokens": 40,
}}}})
"""


class TestParseLine(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_opencode_line('{"type": "status"}\n'), {"type": "status"})
        self.assertIsNone(parse_opencode_line("Thinking..."))
        self.assertIsNone(parse_opencode_line("{not json"))
        self.assertIsNone(parse_opencode_line(""))


class TestMessageMapping(unittest.TestCase):
    def setUp(self):
        self.backend = OpenCodeBackend()
        self.messages = []
        self.backend.on_message(self.messages.append)

    def test_assistant(self):
        self.backend.handle_json_message({"type": "assistant", "content": "hello"})
        self.backend.handle_json_message({"type": "assistant", "content": ""})
        self.assertEqual(self.messages, [ModelOutputMessage("hello")])

    def test_tool_use_and_file_write(self):
        self.backend.handle_json_message({
            "type": "tool_use",
            "tool_name": "write_file",
            "tool_input": {"path": "src/main.py"},
            "call_id": "c1",
        })
        self.backend.handle_json_message({
            "type": "tool_result",
            "tool_name": "write_file",
            "tool_input": {"path": "src/main.py"},
            "tool_result": "ok",
            "call_id": "c1",
        })

        self.assertEqual(self.messages, [
            ToolCallMessage("write_file", {"path": "src/main.py"}, "c1"),
            ToolResultMessage("write_file", "ok", "c1"),
            FsEditMessage("write_file: src/main.py", "src/main.py"),
        ])

    def test_non_write_tool_has_no_file_edit(self):
        self.backend.handle_json_message({
            "type": "tool_result",
            "tool_name": "read_file",
            "tool_input": {"path": "README.md"},
            "tool_result": "contents",
            "call_id": "c2",
        })
        self.assertEqual(len(self.messages), 1)
        self.assertIsInstance(self.messages[0], ToolResultMessage)

    def test_tool_messages_without_call_id_are_dropped(self):
        self.backend.handle_json_message({"type": "tool_use", "tool_name": "bash"})
        self.assertEqual(self.messages, [])

    def test_status_mapping(self):
        for raw in ("complete", "stopped", "something-new"):
            self.backend.handle_json_message({"type": "status", "status": raw})
        self.assertEqual(
            [m.status for m in self.messages],
            [SessionStatus.IDLE, SessionStatus.STOPPED, SessionStatus.RUNNING],
        )

    def test_error(self):
        self.backend.handle_json_message({"type": "error", "error": "rate limited"})
        self.backend.handle_json_message({"type": "error"})
        self.assertEqual(self.messages, [
            StatusMessage(SessionStatus.ERROR, "rate limited"),
            StatusMessage(SessionStatus.ERROR, "Unknown error"),
        ])

    def test_session_tokens_and_cost(self):
        self.backend.handle_json_message({
            "type": "session",
            "session": {"id": "s-9", "Cost": 0.5, "PromptTokens": 10, "CompletionTokens": 5},
        })

        self.assertEqual(self.backend.opencode_session_id, "s-9")
        self.assertEqual(self.messages, [TokenCountMessage(10, 5, 15, 0.5)])

    def test_unknown_type_is_ignored(self):
        self.backend.handle_json_message({"type": "telemetry"})
        self.assertEqual(self.messages, [])

    def test_split_lines_are_reassembled(self):
        self.backend.handle_stdout('{"type": "assistant", ')
        self.backend.handle_stdout('"content": "joined"}\nloose text')
        self.backend.handle_stdout_end()
        self.assertEqual(self.messages, [
            ModelOutputMessage("joined"),
            ModelOutputMessage("loose text\n"),
        ])


class TestOpenCodeProcess(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        bin_dir = Path(self.temp_dir) / "bin"
        bin_dir.mkdir()
        script = bin_dir / "opencode"
        script.write_text(FAKE_OPENCODE.format(python=sys.executable))
        script.chmod(0o755)

        self.log_file = Path(self.temp_dir) / "calls.log"
        self.env = {
            "PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}",
            "FAKE_OPENCODE_LOG": str(self.log_file),
        }
        self.messages = []

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def calls(self):
        return [json.loads(line) for line in self.log_file.read_text().splitlines()]

    async def test_prompts_resume_the_opencode_session(self):
        backend = OpenCodeBackend(AgentFactoryOptions(env=self.env, model="claude-sonnet"))
        backend.on_message(self.messages.append)

        session_id = await backend.start_session("first")
        await backend.send_prompt(session_id, "second")

        first, second = self.calls()
        self.assertEqual(first, ["run", "--format", "json", "--model", "claude-sonnet", "first"])
        self.assertEqual(
            second,
            ["run", "--format", "json", "--model", "claude-sonnet", "--session", "oc-session-1", "second"],
        )

        outputs = [m.text_delta for m in self.messages if isinstance(m, ModelOutputMessage)]
        self.assertEqual(outputs, [
            "plain progress line\n", "Done: first",
            "plain progress line\n", "Done: second",
        ])

        tokens = [m for m in self.messages if isinstance(m, TokenCountMessage)]
        self.assertEqual(tokens[-1], TokenCountMessage(100, 40, 140, 0.25))
        self.assertEqual(self.messages[-1], StatusMessage(SessionStatus.IDLE))
        await backend.dispose()

    async def test_resume_existing_session(self):
        backend = OpenCodeBackend(AgentFactoryOptions(env=self.env), resume_session_id="oc-old")
        await backend.start_session("continue")

        self.assertEqual(self.calls()[0], ["run", "--format", "json", "--session", "oc-old", "continue"])
        await backend.dispose()


if __name__ == "__main__":
    unittest.main()

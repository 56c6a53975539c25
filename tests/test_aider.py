"""
Tests for the Aider backend, driven against a fake ``aider`` executable.
"""

import asyncio
import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from styrby.agent import (
    AgentFactoryOptions,
    FsEditMessage,
    ModelOutputMessage,
    SessionStatus,
    StatusMessage,
    TokenCountMessage,
)
from styrby.agent.factories.aider import AiderBackend, estimate_tokens, parse_file_edit
from styrby.errors import AgentProcessError, BackendDisposedError, SessionMismatchError

FAKE_AIDER = """#!{python}
import json, os, signal, sys, time

args = sys.argv[1:]
prompt = args[args.index("--message") + 1]

if prompt == "edit":
    print("Applying changes to two files")
    print("Wrote src/app.py")
    print("Updated README.md")
    print("Created tests/test_new.py")
elif prompt == "fail":
    sys.stderr.write("Error: model not found\\n")
    sys.exit(2)
elif prompt == "args":
    print(json.dumps({{
        "argv": args,
        "api_key": os.environ.get("OPENAI_API_KEY"),
        "cwd": os.getcwd(),
    }}))
elif prompt == "hang":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("started", flush=True)
    time.sleep(30)
else:
    print("ok: " + prompt)
"""


class TestAiderParsing(unittest.TestCase):
    def test_estimate_tokens(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens("one"), 2)
        self.assertEqual(estimate_tokens("one two three four five six seven eight nine ten"), 13)

    def test_parse_file_edit(self):
        self.assertEqual(parse_file_edit("Wrote src/app.py"), ("wrote", "src/app.py"))
        self.assertEqual(parse_file_edit("  Updated  README.md  "), ("updated", "README.md"))
        self.assertEqual(parse_file_edit("Created tests/test_new.py"), ("created", "tests/test_new.py"))
        self.assertIsNone(parse_file_edit("I wrote src/app.py"))
        self.assertIsNone(parse_file_edit("Deleted src/app.py"))


class AiderTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.bin_dir = Path(self.temp_dir) / "bin"
        self.project_dir = Path(self.temp_dir) / "project"
        self.bin_dir.mkdir()
        self.project_dir.mkdir()

        script = self.bin_dir / "aider"
        script.write_text(FAKE_AIDER.format(python=sys.executable))
        script.chmod(0o755)

        self.messages = []

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_backend(self, **overrides) -> AiderBackend:
        options = AgentFactoryOptions(
            cwd=str(self.project_dir),
            env={"PATH": f"{self.bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"},
            **overrides,
        )
        backend = AiderBackend(options)
        backend.on_message(self.messages.append)
        return backend

    def of_type(self, cls):
        return [m for m in self.messages if isinstance(m, cls)]

    def statuses(self):
        return [m.status for m in self.of_type(StatusMessage)]

    def output(self) -> str:
        return "".join(m.text_delta for m in self.of_type(ModelOutputMessage))

    async def wait_for_output(self, text, timeout=5.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while text not in self.output():
            if asyncio.get_running_loop().time() > deadline:
                self.fail(f"no {text!r} in agent output")
            await asyncio.sleep(0.02)


class TestAiderBackend(AiderTestCase):
    async def test_start_session_without_prompt(self):
        backend = self.make_backend()
        session_id = await backend.start_session()

        self.assertEqual(backend.session_id, session_id)
        self.assertEqual(self.statuses(), [SessionStatus.STARTING, SessionStatus.IDLE])
        await backend.dispose()

    async def test_file_edits_and_tokens(self):
        backend = self.make_backend()
        await backend.start_session("edit")

        self.assertEqual(
            self.statuses(),
            [SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.IDLE],
        )
        edits = self.of_type(FsEditMessage)
        self.assertEqual(
            [e.description for e in edits],
            ["wrote src/app.py", "updated README.md", "created tests/test_new.py"],
        )
        self.assertEqual([e.path for e in edits], ["src/app.py", "README.md", "tests/test_new.py"])
        self.assertIn("Wrote src/app.py", self.output())

        tokens = self.of_type(TokenCountMessage)
        self.assertEqual(len(tokens), 1)
        self.assertEqual(tokens[0].input_tokens, estimate_tokens("edit"))
        self.assertEqual(tokens[0].output_tokens, 15)
        self.assertEqual(tokens[0].cost_usd, 0.0)
        self.assertTrue(tokens[0].estimated)
        await backend.dispose()

    async def test_token_totals_accumulate(self):
        backend = self.make_backend()
        session_id = await backend.start_session()
        await backend.send_prompt(session_id, "first prompt")
        await backend.send_prompt(session_id, "second")

        tokens = self.of_type(TokenCountMessage)
        self.assertEqual(tokens[-1].input_tokens, estimate_tokens("first prompt") + estimate_tokens("second"))
        self.assertGreater(tokens[-1].output_tokens, tokens[0].output_tokens)

        await backend.start_session()
        self.assertEqual(backend.input_tokens, 0)
        await backend.dispose()

    async def test_command_line_and_environment(self):
        backend = self.make_backend(
            model="gpt-4o",
            api_key="sk-test",
            extra_args=["--no-git"],
            files=["a.py", "b.py"],
        )
        session_id = await backend.start_session()
        await backend.send_prompt(session_id, "args")

        result = json.loads(self.output())
        self.assertEqual(
            result["argv"],
            ["--message", "args", "--no-stream", "--yes", "--model", "gpt-4o", "--no-git", "a.py", "b.py"],
        )
        self.assertEqual(result["api_key"], "sk-test")
        self.assertEqual(os.path.realpath(result["cwd"]), os.path.realpath(self.project_dir))
        await backend.dispose()

    async def test_nonzero_exit(self):
        backend = self.make_backend()
        session_id = await backend.start_session()

        with self.assertRaises(AgentProcessError) as ctx:
            await backend.send_prompt(session_id, "fail")

        self.assertEqual(ctx.exception.exit_code, 2)
        self.assertEqual(str(ctx.exception), "Aider exited with code 2")

        errors = [m.detail for m in self.of_type(StatusMessage) if m.status == SessionStatus.ERROR]
        self.assertIn("Error: model not found", errors)
        self.assertEqual(errors[-1], "Aider exited with code 2")
        self.assertEqual(len(self.of_type(TokenCountMessage)), 1)
        await backend.dispose()

    async def test_spawn_failure(self):
        empty_bin = Path(self.temp_dir) / "empty"
        empty_bin.mkdir()
        backend = AiderBackend(AgentFactoryOptions(env={"PATH": str(empty_bin)}))
        backend.on_message(self.messages.append)
        session_id = await backend.start_session()

        with self.assertRaises(AgentProcessError):
            await backend.send_prompt(session_id, "hello")
        self.assertEqual(self.statuses()[-1], SessionStatus.ERROR)

    async def test_session_mismatch(self):
        backend = self.make_backend()

        with self.assertRaises(SessionMismatchError):
            await backend.send_prompt("not-started", "hello")

        await backend.start_session()
        with self.assertRaises(SessionMismatchError) as ctx:
            await backend.send_prompt("other-session", "hello")
        self.assertEqual(str(ctx.exception), "Invalid session ID: other-session")

        with self.assertRaises(SessionMismatchError):
            await backend.cancel("other-session")
        await backend.dispose()

    async def test_dispose(self):
        backend = self.make_backend()
        session_id = await backend.start_session()
        await backend.dispose()
        count = len(self.messages)

        with self.assertRaises(BackendDisposedError):
            await backend.send_prompt(session_id, "hello")
        with self.assertRaises(BackendDisposedError):
            await backend.start_session()
        self.assertEqual(len(self.messages), count)

    async def test_dispose_kills_running_process(self):
        backend = self.make_backend()
        session_id = await backend.start_session()
        task = asyncio.create_task(backend.send_prompt(session_id, "hang"))
        await self.wait_for_output("started")

        await backend.dispose()
        count = len(self.messages)

        await asyncio.wait_for(task, timeout=5)
        self.assertFalse(backend.is_running)
        self.assertEqual(len(self.messages), count)

    async def test_cancelled_prompt_does_not_leak_process(self):
        backend = self.make_backend()
        session_id = await backend.start_session()
        task = asyncio.create_task(backend.send_prompt(session_id, "hang"))
        await self.wait_for_output("started")
        pid = backend._process.pid

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        await backend.dispose()

        with self.assertRaises(ProcessLookupError):
            os.kill(pid, 0)
        self.assertFalse(backend.is_running)
        await backend.wait_for_response_complete(timeout=0.1)

    async def test_failing_output_handler_does_not_leak_process(self):
        pids = []

        class BrokenParser(AiderBackend):
            def handle_stdout(self, text):
                pids.append(self._process.pid)
                raise RuntimeError("parser bug")

        backend = BrokenParser(AgentFactoryOptions(
            env={"PATH": f"{self.bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"},
        ))
        session_id = await backend.start_session()

        with self.assertRaises(RuntimeError):
            await asyncio.wait_for(backend.send_prompt(session_id, "hang"), timeout=5)

        self.assertEqual(len(pids), 1)
        with self.assertRaises(ProcessLookupError):
            os.kill(pids[0], 0)
        await backend.dispose()


class TestAiderCancel(AiderTestCase):
    async def test_cancel_twice_escalates_once(self):
        backend = self.make_backend()
        session_id = await backend.start_session()
        task = asyncio.create_task(backend.send_prompt(session_id, "hang"))
        await self.wait_for_output("started")

        with patch("styrby.agent.process.CANCEL_GRACE_PERIOD", 0.3):
            await backend.cancel(session_id)
            pending = backend._kill_handle
            self.assertIsNotNone(pending)

            await backend.cancel(session_id)
            self.assertIs(backend._kill_handle, pending)

            # SIGTERM is ignored by the fake agent; only the SIGKILL ends it.
            with self.assertRaises(AgentProcessError) as ctx:
                await asyncio.wait_for(task, timeout=5)

        self.assertEqual(ctx.exception.exit_code, -9)
        self.assertIsNone(backend._kill_handle)
        self.assertEqual(self.statuses().count(SessionStatus.IDLE), 3)
        await backend.dispose()

    async def test_cancel_without_process(self):
        backend = self.make_backend()
        session_id = await backend.start_session()
        await backend.cancel(session_id)

        self.assertIsNone(backend._kill_handle)
        self.assertEqual(self.statuses()[-1], SessionStatus.IDLE)
        await backend.dispose()

    async def test_wait_for_response_complete(self):
        backend = self.make_backend()
        session_id = await backend.start_session()

        # Nothing in flight.
        await backend.wait_for_response_complete(timeout=0.1)

        task = asyncio.create_task(backend.send_prompt(session_id, "hang"))
        await self.wait_for_output("started")

        with self.assertRaises(TimeoutError):
            await backend.wait_for_response_complete(timeout=0.2)
        self.assertTrue(backend.is_running)

        with patch("styrby.agent.process.CANCEL_GRACE_PERIOD", 0.1):
            await backend.cancel(session_id)
            await backend.wait_for_response_complete(timeout=5)

        with self.assertRaises(AgentProcessError):
            await task
        await backend.dispose()


if __name__ == "__main__":
    unittest.main()

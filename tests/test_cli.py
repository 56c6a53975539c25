"""
Tests for the styrby command line, run against a temporary STYRBY_HOME.
"""

import json
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from styrby.daemon.state import DaemonState
from styrby.ui import cli
from styrby.ui.cli import app
from styrby.ui.config_commands import mask_secret, save_config_file


class CliTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.home = Path(self.temp_dir) / "home"
        self.home.mkdir()
        env = patch.dict(os.environ, {"STYRBY_HOME": str(self.home)})
        env.start()
        self.addCleanup(env.stop)
        for name in ("SUPABASE_URL", "SUPABASE_ANON_KEY", "STYRBY_LOG_LEVEL"):
            os.environ.pop(name, None)
        self.runner = CliRunner()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, *args):
        return self.runner.invoke(app, list(args))


class TestDaemonCommands(CliTestCase):
    def test_status_not_running(self):
        result = self.invoke("status")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("Daemon is not running", result.output)

    def test_status_json(self):
        result = self.invoke("status", "--json")
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(result.output), {"running": False})

    def test_status_stale_pid_file(self):
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()
        (self.home / "daemon.pid").write_text(str(child.pid))

        result = self.invoke("status")
        self.assertIn("Daemon is not running", result.output)
        self.assertIn("stale PID file", result.output)

    def test_status_running(self):
        state = DaemonState(
            running=True,
            pid=4242,
            connection_state="connected",
            active_sessions=2,
            uptime_seconds=75,
        )
        with patch.object(cli, "_current_status", return_value=state):
            result = self.invoke("status")

        self.assertEqual(result.exit_code, 0)
        self.assertIn("4242", result.output)
        self.assertIn("connected", result.output)
        self.assertIn("1m 15s", result.output)

    def test_stop_without_daemon(self):
        result = self.invoke("stop")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("No daemon running", result.output)

    def test_ping_without_daemon(self):
        result = self.invoke("ping")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Daemon not running", result.output)

    def test_sessions_without_daemon(self):
        result = self.invoke("sessions")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Daemon is not running", result.output)

    def test_logs(self):
        result = self.invoke("logs")
        self.assertIn("No daemon log yet", result.output)

        (self.home / "daemon.log").write_text("".join(f"line {i}\n" for i in range(10)))
        result = self.invoke("logs", "-n", "3")
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.output, "line 7\nline 8\nline 9\n")

    def test_format_uptime(self):
        self.assertIsNone(cli._format_uptime(None))
        self.assertEqual(cli._format_uptime(9), "9s")
        self.assertEqual(cli._format_uptime(3725), "1h 2m 5s")


class TestAgentCommands(CliTestCase):
    def test_agents(self):
        result = self.invoke("agents")
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.output.split(), ["aider", "opencode"])

    def test_unknown_agent(self):
        result = self.invoke("agent", "nope", "do something")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Unknown agent: nope", result.output)


class TestSettingsCommands(CliTestCase):
    def test_show_without_config(self):
        result = self.invoke("settings", "show")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("not found", result.output)
        self.assertIn("styrby settings init", result.output)

    def test_show_with_config_and_credentials(self):
        save_config_file(
            {"debug": "true"},
            {"supabase_url": "https://abc.supabase.co", "supabase_anon_key": "anon-key-123456"},
            self.home / "config.cfg",
        )
        (self.home / "data.json").write_text(json.dumps({
            "userId": "user-1",
            "accessToken": "token",
            "machineId": "machine-1",
        }))

        result = self.invoke("settings", "show")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("https://abc.supabase.co", result.output)
        self.assertIn("anon...3456", result.output)
        self.assertNotIn("anon-key-123456", result.output)
        self.assertIn("user-1", result.output)
        self.assertIn("machine-1", result.output)

    def test_saved_config_is_private(self):
        config_path = self.home / "config.cfg"
        save_config_file({"debug": "false"}, {"supabase_url": "", "supabase_anon_key": "k"}, config_path)

        self.assertEqual(config_path.stat().st_mode & 0o777, 0o600)
        text = config_path.read_text()
        self.assertIn("[RELAY]", text)
        self.assertNotIn("supabase_url", text)

    def test_unknown_action(self):
        result = self.invoke("settings", "bogus")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Unknown action: bogus", result.output)

    def test_mask_secret(self):
        self.assertEqual(mask_secret("short"), "***")
        self.assertEqual(mask_secret("0123456789"), "0123...6789")


if __name__ == "__main__":
    unittest.main()

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from escrow_sync import cli
from escrow_sync.cli import app, daemon_cmds


class DaemonCommandTests(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()
        self._tmp = tempfile.TemporaryDirectory()
        self.pid_file = Path(self._tmp.name) / "escrow-sync.pid"
        self.patches = [
            patch.object(cli, "PID_FILE", self.pid_file),
            patch.object(daemon_cmds, "PID_FILE", self.pid_file),
            patch.dict(os.environ, {"ESCROW_SYNC_PG_DSN": ""}),
        ]
        for p in self.patches:
            p.start()

    def tearDown(self):
        for p in reversed(self.patches):
            p.stop()
        self._tmp.cleanup()

    def test_status_when_stopped(self):
        result = self.runner.invoke(app, ["daemon", "status"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("stopped", result.output)
        self.assertIn("in-memory", result.output)

    def test_status_when_running(self):
        self.pid_file.write_text(str(os.getpid()))
        result = self.runner.invoke(app, ["daemon", "status"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn(f"PID {os.getpid()}", result.output)

    def test_stop_clears_stale_pid_file(self):
        self.pid_file.write_text("999999999")
        with patch.object(daemon_cmds, "_alive", return_value=False):
            result = self.runner.invoke(app, ["daemon", "stop"])
        self.assertEqual(result.exit_code, 0)
        self.assertFalse(self.pid_file.exists())

    def test_start_requires_config(self):
        missing = Path(self._tmp.name) / "escrow.yaml"
        with patch.object(daemon_cmds, "CONFIG_FILE", missing), patch.object(daemon_cmds.subprocess, "Popen") as popen:
            result = self.runner.invoke(app, ["daemon", "start"])
        self.assertEqual(result.exit_code, 1)
        popen.assert_not_called()


class InitCommandTests(unittest.TestCase):
    def test_init_writes_default_config_once(self):
        runner = CliRunner()
        with tempfile.TemporaryDirectory() as tmp:
            home = Path(tmp)
            config_file = home / "config" / "escrow.yaml"
            with patch.object(cli, "ESCROW_DIR", home), patch.object(cli, "LOG_DIR", home / "logs"), patch.object(
                cli, "DATA_DIR", home / "data"
            ), patch.object(cli, "CONFIG_DIR", home / "config"), patch.object(
                cli, "CONFIG_FILE", config_file
            ), patch.dict(os.environ, {"ESCROW_SYNC_PG_DSN": ""}):
                first = runner.invoke(app, ["init"])
                config_file.write_text("rpc_url: http://custom\n")
                second = runner.invoke(app, ["init"])

            self.assertEqual(first.exit_code, 0)
            self.assertEqual(second.exit_code, 0)
            self.assertEqual(config_file.read_text(), "rpc_url: http://custom\n")
            self.assertTrue((home / "logs").is_dir())


if __name__ == "__main__":
    unittest.main()

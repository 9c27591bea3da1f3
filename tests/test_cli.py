import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from model_registry.__main__ import EXIT_INVALID_SNAPSHOT, acquire_instance_lock, main


class TestCli(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.state = Path(tmp.name)
        env = mock.patch.dict(os.environ, {"REGISTRY_STATE_DIR": str(self.state)}, clear=True)
        env.start()
        self.addCleanup(env.stop)

    def run_cli(self, *argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = main(list(argv))
        return code, out.getvalue()

    def test_stats_on_empty_registry(self):
        code, out = self.run_cli("--stats")
        self.assertEqual(code, 0)
        stats = json.loads(out)
        self.assertEqual(stats["total"], 0)
        self.assertEqual(stats["mode"], "file")

    def test_snapshot_guard_exit_code(self):
        code, _ = self.run_cli("--snapshot", "50000")
        self.assertEqual(code, EXIT_INVALID_SNAPSHOT)

    def test_snapshot_is_persisted(self):
        code, _ = self.run_cli("--snapshot", "1500000")
        self.assertEqual(code, 0)
        doc = json.loads((self.state / "ai_models.json").read_text())
        self.assertEqual(doc["snapshots"][0]["total_models"], 1_500_000)
        code, out = self.run_cli("--timeline")
        self.assertEqual(json.loads(out)["metadata"]["count"], 1)

    def test_instance_lock(self):
        self.assertTrue(acquire_instance_lock(self.state))
        self.assertTrue((self.state / ".registry.lock").exists())


if __name__ == "__main__":
    unittest.main()

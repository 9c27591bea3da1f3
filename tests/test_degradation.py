import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from model_registry.degradation import BackendMode, DegradationController, DegradingBackend
from model_registry.errors import ConnectivityError
from model_registry.records import IncomingRecord
from model_registry.storage import FileBackend, MemoryBackend

T0 = datetime(2025, 6, 1, tzinfo=timezone.utc)


class UnreachableRemote(MemoryBackend):
    mode_name = "remote"
    reports_all_observations = False

    def __init__(self, transient=True):
        super().__init__()
        self.transient = transient
        self.attempts = 0

    async def load(self):
        self.attempts += 1
        raise ConnectivityError("connection refused", transient=self.transient)


class ReadOnlyFile(FileBackend):
    async def load(self):
        raise PermissionError(f"{self.path.parent} is not writable")


class UnsavableFile(FileBackend):
    async def save(self):
        raise OSError("No space left on device")


class TestDegradation(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.path = Path(tmp.name) / "ai_models.json"
        self.remote = UnreachableRemote()

    def controller(self, file_cls=FileBackend, remote=None):
        return DegradationController(
            remote_factory=lambda: remote or self.remote,
            file_factory=lambda: file_cls(self.path),
            degrade_after=2,
        )

    async def test_two_transient_failures_fall_back_to_file(self):
        backend = DegradingBackend(self.controller())
        with self.assertRaises(ConnectivityError):
            await backend.load()
        self.assertEqual(backend.mode, BackendMode.REMOTE)

        await backend.load()
        self.assertEqual(backend.mode, BackendMode.LOCAL_FILE)
        self.assertEqual(self.remote.attempts, 2)

        stats = await backend.get_stats()
        self.assertEqual(stats.total, 0)
        self.assertEqual(stats.mode, "file")
        await backend.load()
        self.assertEqual(self.remote.attempts, 2)

    async def test_missing_credentials_degrade_immediately(self):
        backend = DegradingBackend(self.controller(remote=UnreachableRemote(transient=False)))
        await backend.load()
        self.assertEqual(backend.mode, BackendMode.LOCAL_FILE)

    async def test_unwritable_file_falls_through_to_memory(self):
        controller = self.controller(file_cls=ReadOnlyFile,
                                     remote=UnreachableRemote(transient=False))
        backend = DegradingBackend(controller)
        await backend.load()
        self.assertEqual(backend.mode, BackendMode.MEMORY_ONLY)
        self.assertTrue(backend.reports_all_observations)
        self.assertEqual((await backend.get_stats()).mode, "memory")
        self.assertEqual(len(controller.transitions), 2)

    async def test_unconfigured_remote_is_skipped(self):
        controller = DegradationController(remote_factory=None,
                                           file_factory=lambda: FileBackend(self.path))
        backend = DegradingBackend(controller)
        await backend.load()
        self.assertEqual(backend.mode, BackendMode.LOCAL_FILE)

    async def test_save_failure_keeps_state_in_memory(self):
        controller = self.controller(file_cls=UnsavableFile,
                                     remote=UnreachableRemote(transient=False))
        backend = DegradingBackend(controller)
        await backend.load()
        await backend.upsert_model(IncomingRecord("OpenAI", "gpt-4", frozenset({"code"}), {}), T0)
        await backend.save()
        self.assertEqual(backend.mode, BackendMode.MEMORY_ONLY)
        models = await backend.get_all_models()
        self.assertEqual([m.key for m in models], ["OpenAI-gpt-4"])

    async def test_transitions_are_monotonic_and_idempotent(self):
        controller = self.controller()
        self.assertTrue(controller.transition_to(BackendMode.LOCAL_FILE, "test"))
        self.assertFalse(controller.transition_to(BackendMode.LOCAL_FILE, "test again"))
        self.assertFalse(controller.transition_to(BackendMode.REMOTE, "recovered?"))
        self.assertTrue(controller.transition_to(BackendMode.MEMORY_ONLY, "test"))
        self.assertEqual(len(controller.transitions), 2)


if __name__ == "__main__":
    unittest.main()

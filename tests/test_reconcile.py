import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from model_registry.errors import StoreError
from model_registry.reconcile import ReconciliationEngine
from model_registry.records import DiscoveryKind, IncomingRecord
from model_registry.storage import FileBackend, MemoryBackend

T0 = datetime(2025, 3, 1, tzinfo=timezone.utc)


def gpt4(capabilities, metadata=None, created=None):
    return {"provider": "OpenAI", "id": "gpt-4", "capabilities": capabilities,
            "metadata": metadata or {}, "created": created}


class SteppingClock:
    def __init__(self, start=T0, step=timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


class FlakyBackend(FileBackend):
    def __init__(self, path, fail_ids):
        super().__init__(path)
        self.fail_ids = set(fail_ids)

    async def upsert_model(self, incoming, observed_at):
        if incoming.model_id in self.fail_ids:
            raise StoreError(incoming.key, "disk on fire")
        return await super().upsert_model(incoming, observed_at)


class TestReconciliation(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.path = Path(tmp.name) / "ai_models.json"
        self.backend = FileBackend(self.path)
        self.engine = ReconciliationEngine(self.backend, clock=SteppingClock())

    async def test_new_then_unchanged_then_updated(self):
        first = await self.engine.reconcile([gpt4(["reasoning", "code"])], cycle_id="c1")
        self.assertEqual(len(first.events), 1)
        self.assertEqual(first.events[0].kind, DiscoveryKind.NEW)
        self.assertEqual(first.events[0].significance, 18)
        self.assertIsNone(first.events[0].previous_state)

        again = await self.engine.reconcile([gpt4(["reasoning", "code"])], cycle_id="c2")
        self.assertEqual(again.events, [])
        self.assertEqual(again.processed, 1)

        upgraded = await self.engine.reconcile([gpt4(["reasoning", "code", "vision"])], cycle_id="c3")
        self.assertEqual(len(upgraded.events), 1)
        event = upgraded.events[0]
        self.assertEqual(event.kind, DiscoveryKind.UPDATED)
        self.assertEqual(event.significance, 24)
        self.assertEqual(event.previous_state.capabilities, frozenset({"reasoning", "code"}))
        self.assertEqual(event.model_key, "OpenAI-gpt-4")
        self.assertFalse(event.memory_only)

    async def test_capability_order_is_irrelevant(self):
        await self.engine.reconcile([gpt4(["reasoning", "code"])])
        result = await self.engine.reconcile([gpt4(["code", "reasoning"])])
        self.assertEqual(result.events, [])

    async def test_one_row_per_key(self):
        batch = [gpt4(["code"]), gpt4(["code", "vision"]), gpt4(["reasoning"])]
        result = await self.engine.reconcile(batch)
        self.assertEqual(len(await self.backend.get_all_models()), 1)
        self.assertEqual([e.kind for e in result.events],
                         [DiscoveryKind.NEW, DiscoveryKind.UPDATED, DiscoveryKind.UPDATED])

    async def test_created_first_write_wins(self):
        await self.engine.reconcile([gpt4(["code"], created=1700000000)])
        await self.engine.reconcile([gpt4(["code"], created=1800000000)])
        record = self.backend.models["OpenAI-gpt-4"]
        self.assertEqual(record.created_at, datetime.fromtimestamp(1700000000, tz=timezone.utc))

    async def test_updated_at_never_moves_backwards(self):
        engine = ReconciliationEngine(self.backend, clock=SteppingClock(step=timedelta(hours=-1)))
        await engine.reconcile([gpt4(["code"])])
        first = self.backend.models["OpenAI-gpt-4"].updated_at
        await engine.reconcile([gpt4(["code", "vision"])])
        self.assertEqual(self.backend.models["OpenAI-gpt-4"].updated_at, first)

    async def test_metadata_shallow_merge(self):
        await self.engine.reconcile([gpt4(["code"], {"context_length": 8192, "owner": "openai"})])
        changed = await self.engine.reconcile([gpt4(["code"], {"context_length": 128000})])
        self.assertEqual(len(changed.events), 1)
        self.assertEqual(self.backend.models["OpenAI-gpt-4"].metadata,
                         {"context_length": 128000, "owner": "openai"})

        # a subset of already-known keys changes nothing
        subset = await self.engine.reconcile([gpt4(["code"], {"owner": "openai"})])
        self.assertEqual(subset.events, [])

    async def test_invalid_records_are_skipped(self):
        batch = [
            {"provider": "OpenAI", "capabilities": ["code"]},
            {"provider": "Mistral", "id": "large", "metadata": "oops"},
            "not-a-record",
            gpt4(["code"]),
        ]
        result = await self.engine.reconcile(batch)
        self.assertEqual(result.processed, 1)
        self.assertEqual(len(result.skipped), 3)
        self.assertEqual(len(result.events), 1)

    async def test_non_list_capabilities_skip_only_that_record(self):
        batch = [
            {"provider": "OpenAI", "id": "bad", "capabilities": 7},
            {"provider": "OpenAI", "id": "worse", "capabilities": True},
            {"provider": "OpenAI", "id": "good", "capabilities": ["code"]},
        ]
        result = await self.engine.reconcile(batch)
        self.assertEqual(len(result.skipped), 2)
        self.assertTrue(all(s.reason.startswith("invalid:") for s in result.skipped))
        self.assertEqual([e.model_key for e in result.events], ["OpenAI-good"])

    async def test_store_failure_skips_only_that_record(self):
        backend = FlakyBackend(self.path, fail_ids={"bad"})
        engine = ReconciliationEngine(backend)
        batch = [
            {"provider": "OpenAI", "id": "bad", "capabilities": ["code"]},
            {"provider": "OpenAI", "id": "good", "capabilities": ["code"]},
        ]
        result = await engine.reconcile(batch)
        self.assertEqual([s.key for s in result.skipped], ["OpenAI-bad"])
        self.assertEqual([e.model_key for e in result.events], ["OpenAI-good"])

    async def test_async_stream_and_incoming_records(self):
        async def stream():
            yield IncomingRecord("Google", "gemini-2.0-flash", frozenset({"vision"}), {})
            yield {"provider": "Google", "id": "gemini-2.5-pro", "capabilities": ["reasoning"]}

        result = await self.engine.reconcile(stream())
        self.assertEqual([e.significance for e in result.events], [6, 10])

    async def test_memory_only_reports_every_observation(self):
        engine = ReconciliationEngine(MemoryBackend(), clock=SteppingClock())
        await engine.reconcile([gpt4(["reasoning", "code"])])
        result = await engine.reconcile([gpt4(["reasoning", "code"])])
        self.assertEqual(len(result.events), 1)
        self.assertEqual(result.events[0].kind, DiscoveryKind.UPDATED)
        self.assertTrue(result.events[0].memory_only)


if __name__ == "__main__":
    unittest.main()

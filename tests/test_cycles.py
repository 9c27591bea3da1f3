import unittest

from model_registry.cycles import ResearchCycleManager
from model_registry.records import CycleStatus, DiscoveryEvent, DiscoveryKind, ModelRecord
from model_registry.storage import MemoryBackend


class NoAuditBackend(MemoryBackend):
    async def start_cycle(self, sources, triggering_identity):
        raise RuntimeError("research_cycles table is locked")

    async def record_discovery(self, cycle_id, event):
        raise RuntimeError("discoveries table is locked")

    async def complete_cycle(self, *args, **kwargs):
        raise RuntimeError("research_cycles table is locked")

    async def get_recent_discoveries(self, limit=5):
        raise RuntimeError("discoveries table is locked")


def event(cycle_id):
    return DiscoveryEvent(cycle_id=cycle_id, model_key="OpenAI-gpt-4", kind=DiscoveryKind.NEW,
                          significance=18, previous_state=None,
                          new_state=ModelRecord("OpenAI", "gpt-4", frozenset({"reasoning", "code"})))


class TestResearchCycleManager(unittest.IsolatedAsyncioTestCase):
    async def test_lifecycle(self):
        backend = MemoryBackend()
        manager = ResearchCycleManager(backend)
        cycle_id = await manager.start(["OpenAI"], "1.2.3.4")
        self.assertEqual(backend.cycles[cycle_id].status, CycleStatus.RUNNING)
        self.assertEqual(await manager.record(cycle_id, [event(cycle_id)]), 1)
        await manager.complete(cycle_id, 1, 1)
        self.assertEqual(backend.cycles[cycle_id].status, CycleStatus.COMPLETED)
        self.assertEqual([e.model_key for e in await manager.recent()], ["OpenAI-gpt-4"])

    async def test_bookkeeping_failures_are_swallowed(self):
        manager = ResearchCycleManager(NoAuditBackend())
        self.assertIsNone(await manager.start(["OpenAI"], "cli"))
        self.assertEqual(await manager.record("c1", [event("c1")]), 0)
        await manager.complete("c1", 1, 1)
        self.assertEqual(await manager.recent(), [])

    async def test_untracked_cycle_records_nothing(self):
        backend = MemoryBackend()
        manager = ResearchCycleManager(backend)
        self.assertEqual(await manager.record(None, [event(None)]), 0)
        await manager.complete(None, 1, 1)
        self.assertEqual(backend.discoveries, [])

    async def test_double_completion_is_logged_not_raised(self):
        manager = ResearchCycleManager(MemoryBackend())
        cycle_id = await manager.start([], "cli")
        await manager.complete(cycle_id, 0, 0)
        await manager.complete(cycle_id, 0, 0, failed=True)


if __name__ == "__main__":
    unittest.main()

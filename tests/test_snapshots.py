import unittest
from datetime import datetime, timedelta, timezone

from model_registry.errors import InvalidEcosystemData
from model_registry.records import EcosystemSnapshot, IncomingRecord
from model_registry.snapshots import (
    EcosystemSnapshotCapturer,
    build_timeline,
    growth_rate_per_day,
    phase_for,
)
from model_registry.storage import MemoryBackend

T0 = datetime(2025, 1, 10, tzinfo=timezone.utc)


class ListClock:
    def __init__(self, *times):
        self.times = list(times)

    def __call__(self):
        return self.times.pop(0)


def snap(when, total, growth=None):
    return EcosystemSnapshot(when, total, 0, 0, {}, {}, growth_rate_per_day=growth)


class TestSnapshotCapture(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = MemoryBackend()
        await self.backend.upsert_model(
            IncomingRecord("OpenAI", "gpt-4", frozenset({"reasoning", "code"}), {}), T0)
        await self.backend.upsert_model(
            IncomingRecord("Google", "gemini-2.0-flash", frozenset({"vision", "code"}), {}), T0)

    async def test_below_floor_is_rejected_and_not_persisted(self):
        capturer = EcosystemSnapshotCapturer(self.backend, clock=ListClock(T0))
        with self.assertRaises(InvalidEcosystemData) as ctx:
            await capturer.capture(50_000)
        self.assertEqual(ctx.exception.total_models, 50_000)
        self.assertEqual(await self.backend.get_snapshots(), [])

    async def test_zero_and_missing_totals_are_rejected(self):
        capturer = EcosystemSnapshotCapturer(self.backend, min_total_models=0)
        for bad in (0, -5, None, "1500000"):
            with self.assertRaises(InvalidEcosystemData):
                await capturer.capture(bad)
        self.assertEqual(await self.backend.get_snapshots(), [])

    async def test_plausible_total_is_persisted(self):
        capturer = EcosystemSnapshotCapturer(self.backend, clock=ListClock(T0))
        snapshot = await capturer.capture(1_500_000, research_run_id="cyc_1")
        self.assertEqual(snapshot.total_models, 1_500_000)
        self.assertEqual(snapshot.curated_models, 2)
        self.assertEqual(snapshot.providers_count, 2)
        self.assertEqual(snapshot.provider_distribution, {"OpenAI": 1, "Google": 1})
        self.assertEqual(snapshot.capability_counts, {"reasoning": 1, "code": 2, "vision": 1})
        self.assertIsNone(snapshot.growth_rate_per_day)
        self.assertEqual(await self.backend.get_snapshots(), [snapshot])

    async def test_growth_rate_against_previous_snapshot(self):
        capturer = EcosystemSnapshotCapturer(self.backend,
                                             clock=ListClock(T0, T0 + timedelta(days=10)))
        await capturer.capture(1_000_000)
        second = await capturer.capture(1_030_000)
        self.assertEqual(second.growth_rate_per_day, 3000)


class TestGrowthAndTimeline(unittest.TestCase):
    def test_no_growth_without_elapsed_time(self):
        self.assertIsNone(growth_rate_per_day(None, 1_000_000, T0))
        self.assertIsNone(growth_rate_per_day(snap(T0, 1_000_000), 1_100_000, T0))

    def test_phases(self):
        self.assertEqual(phase_for(datetime(2023, 6, 1, tzinfo=timezone.utc)), "foundation")
        self.assertEqual(phase_for(datetime(2024, 6, 1, tzinfo=timezone.utc)), "acceleration")
        self.assertEqual(phase_for("2025-02-01T00:00:00Z"), "exponential")

    def test_timeline_points(self):
        a = snap(datetime(2024, 12, 22, tzinfo=timezone.utc), 1_000_000)
        b = snap(datetime(2025, 1, 1, tzinfo=timezone.utc), 1_030_000, growth=3000.0)
        timeline = build_timeline([b, a])
        points = timeline["snapshots"]
        self.assertEqual([p["models"] for p in points], [1_000_000, 1_030_000])
        self.assertEqual(points[0]["growth"], 0.0)
        self.assertEqual(points[1]["growth"], 3.0)
        self.assertEqual([p["phase"] for p in points], ["acceleration", "exponential"])
        self.assertEqual(timeline["latest"]["totalModels"], 1_030_000)
        self.assertEqual(timeline["latest"]["avgVelocity"], 3000)
        self.assertEqual(timeline["metadata"]["count"], 2)

    def test_empty_timeline(self):
        timeline = build_timeline([])
        self.assertEqual(timeline["snapshots"], [])
        self.assertEqual(timeline["latest"]["totalModels"], 0)
        self.assertIsNone(timeline["latest"]["avgVelocity"])


if __name__ == "__main__":
    unittest.main()

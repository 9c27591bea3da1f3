import unittest

import redis.asyncio as redis

from model_registry.admission import (
    AdmissionController,
    CounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    client_identity,
)
from model_registry.config import AdmissionConfig
from model_registry.errors import AdmissionDenied


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class BrokenStore(CounterStore):
    async def window(self, identity, now, window_s):
        raise redis.ConnectionError("Connection refused")

    async def add(self, identity, now, window_s):
        raise redis.ConnectionError("Connection refused")


class BrokenPipeline:
    async def __aenter__(self):
        raise redis.ConnectionError("Connection refused")

    async def __aexit__(self, *exc):
        return False


class BrokenRedisClient:
    def pipeline(self, transaction=True):
        return BrokenPipeline()


class TestAdmission(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = ManualClock()
        self.controller = AdmissionController(AdmissionConfig(max_requests=2, window_seconds=3600),
                                              store=MemoryCounterStore(), clock=self.clock)

    async def test_third_request_in_window_is_denied(self):
        await self.controller.check_and_admit("1.2.3.4")
        self.clock.now += 60
        await self.controller.check_and_admit("1.2.3.4")
        self.clock.now += 60
        with self.assertRaises(AdmissionDenied) as ctx:
            await self.controller.check_and_admit("1.2.3.4")
        self.assertGreater(ctx.exception.retry_after_seconds, 0)
        self.assertEqual(ctx.exception.retry_after_seconds, 3600 - 120)
        self.assertEqual(ctx.exception.count_in_window, 2)

    async def test_identities_are_counted_separately(self):
        await self.controller.check_and_admit("1.2.3.4")
        await self.controller.check_and_admit("1.2.3.4")
        await self.controller.check_and_admit("5.6.7.8")

    async def test_window_slides(self):
        await self.controller.check_and_admit("1.2.3.4")
        await self.controller.check_and_admit("1.2.3.4")
        self.clock.now += 3601
        await self.controller.check_and_admit("1.2.3.4")

    async def test_denied_requests_are_not_counted(self):
        await self.controller.check_and_admit("1.2.3.4")
        await self.controller.check_and_admit("1.2.3.4")
        for _ in range(3):
            with self.assertRaises(AdmissionDenied):
                await self.controller.check_and_admit("1.2.3.4")
        state = await self.controller.store.window("1.2.3.4", self.clock.now, 3600)
        self.assertEqual(state.count, 2)

    async def test_store_failure_admits(self):
        controller = AdmissionController(AdmissionConfig(max_requests=1), store=BrokenStore())
        for _ in range(3):
            await controller.check_and_admit("1.2.3.4")

    async def test_redis_outage_admits(self):
        store = RedisCounterStore(BrokenRedisClient())
        controller = AdmissionController(AdmissionConfig(max_requests=1), store=store)
        for _ in range(3):
            await controller.check_and_admit("1.2.3.4")


class TestCounterStore(unittest.TestCase):
    def test_interface_is_abstract(self):
        with self.assertRaises(TypeError):
            CounterStore()


class TestClientIdentity(unittest.TestCase):
    def test_first_forwarded_address(self):
        headers = {"X-Forwarded-For": "1.2.3.4, 10.0.0.1, 10.0.0.2"}
        self.assertEqual(client_identity(headers, peer="10.0.0.2"), "1.2.3.4")

    def test_falls_back_to_peer_then_unknown(self):
        self.assertEqual(client_identity({}, peer="9.9.9.9"), "9.9.9.9")
        self.assertEqual(client_identity({"x-forwarded-for": " "}), "unknown")


if __name__ == "__main__":
    unittest.main()

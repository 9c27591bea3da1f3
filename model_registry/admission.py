"""
Admission control for cycle triggers
====================================

Sliding-window counter per caller identity. The counting store is either
process memory or Redis (sorted set of request timestamps per identity).
If the store itself fails, the request is admitted: running the cycle matters
more than enforcing the quota.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Mapping, Optional

import redis.asyncio as redis

from .config import AdmissionConfig
from .errors import AdmissionDenied


@dataclass(frozen=True)
class WindowState:
    count: int
    oldest: Optional[float]


class CounterStore(abc.ABC):
    """Counting-store interface used by AdmissionController."""

    @abc.abstractmethod
    async def window(self, identity: str, now: float, window_s: int) -> WindowState:
        """Drop entries older than the window, return what remains."""

    @abc.abstractmethod
    async def add(self, identity: str, now: float, window_s: int) -> None:
        """Count one admitted request."""

    async def close(self) -> None:
        return None


class MemoryCounterStore(CounterStore):
    def __init__(self):
        self._hits: Dict[str, Deque[float]] = {}

    async def window(self, identity: str, now: float, window_s: int) -> WindowState:
        hits = self._hits.get(identity)
        if not hits:
            return WindowState(0, None)
        cutoff = now - window_s
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if not hits:
            del self._hits[identity]
            return WindowState(0, None)
        return WindowState(len(hits), hits[0])

    async def add(self, identity: str, now: float, window_s: int) -> None:
        self._hits.setdefault(identity, deque()).append(now)


class RedisCounterStore(CounterStore):
    """Sorted set per identity: member = unique request id, score = timestamp."""

    def __init__(self, client: "redis.Redis", prefix: str = "ratelimit:research"):
        self.redis = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "ratelimit:research") -> "RedisCounterStore":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, identity: str) -> str:
        return f"{self.prefix}:{identity}"

    async def window(self, identity: str, now: float, window_s: int) -> WindowState:
        key = self._key(identity)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", now - window_s)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            _, count, oldest = await pipe.execute()
        return WindowState(int(count), float(oldest[0][1]) if oldest else None)

    async def add(self, identity: str, now: float, window_s: int) -> None:
        key = self._key(identity)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(key, int(window_s) + 1)
            await pipe.execute()

    async def close(self) -> None:
        await self.redis.close()


class AdmissionController:
    def __init__(self, config: AdmissionConfig, store: Optional[CounterStore] = None,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.store = store or MemoryCounterStore()
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: AdmissionConfig,
                    logger: Optional[logging.Logger] = None) -> "AdmissionController":
        store: CounterStore
        if config.redis_url:
            store = RedisCounterStore.from_url(config.redis_url)
        else:
            store = MemoryCounterStore()
        return cls(config, store=store, logger=logger)

    async def check_and_admit(self, identity: str) -> None:
        """Admit or raise AdmissionDenied. Denied requests are not counted."""
        now = self.clock()
        window_s = self.config.window_seconds
        try:
            state = await self.store.window(identity, now, window_s)
            if state.count >= self.config.max_requests:
                oldest = state.oldest if state.oldest is not None else now
                retry_after = max(1, math.ceil(oldest + window_s - now))
                self.log.info("Rate limited %s: %d request(s) in window, retry in %ds",
                              identity, state.count, retry_after)
                raise AdmissionDenied(identity, retry_after, state.count)
            await self.store.add(identity, now, window_s)
        except AdmissionDenied:
            raise
        except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
            self.log.warning("Rate limit store unavailable, admitting %s: %s", identity, e)


def client_identity(headers: Mapping[str, str], peer: Optional[str] = None,
                    forwarded_header: str = "x-forwarded-for") -> str:
    """First address in the forwarded chain, else the direct peer."""
    lowered = {k.lower(): v for k, v in headers.items()}
    chain = lowered.get(forwarded_header.lower(), "")
    first = chain.split(",")[0].strip() if chain else ""
    if first:
        return first
    return peer or "unknown"

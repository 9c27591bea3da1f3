"""
Storage degradation
===================

    REMOTE -> LOCAL_FILE -> MEMORY_ONLY

Transitions only move right and are idempotent; a restart starts again at
REMOTE. The active mode is the only mutable state shared across the process.
Callers always see the StorageBackend surface through DegradingBackend.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .errors import ConnectivityError
from .records import DiscoveryEvent, EcosystemSnapshot, IncomingRecord, ModelRecord
from .storage.base import RegistryStats, StorageBackend, UpsertResult
from .storage.local import LocalBackend, MemoryBackend

BackendFactory = Callable[[], StorageBackend]


class BackendMode(str, Enum):
    REMOTE = "REMOTE"
    LOCAL_FILE = "LOCAL_FILE"
    MEMORY_ONLY = "MEMORY_ONLY"

    @property
    def rank(self) -> int:
        return _MODE_ORDER.index(self)


_MODE_ORDER = [BackendMode.REMOTE, BackendMode.LOCAL_FILE, BackendMode.MEMORY_ONLY]


class DegradationController:
    """Owns the active backend mode and the backend instance for that mode.

    Transient ConnectivityErrors from the remote store are re-raised until
    ``degrade_after`` consecutive failures; non-transient ones and filesystem
    errors degrade at once.
    """

    def __init__(self, remote_factory: Optional[BackendFactory],
                 file_factory: Optional[BackendFactory],
                 memory_factory: BackendFactory = MemoryBackend,
                 degrade_after: int = 2,
                 logger: Optional[logging.Logger] = None):
        self.log = logger or logging.getLogger(__name__)
        self._factories = {
            BackendMode.REMOTE: remote_factory,
            BackendMode.LOCAL_FILE: file_factory,
            BackendMode.MEMORY_ONLY: memory_factory,
        }
        self.degrade_after = max(1, degrade_after)
        self._mode = BackendMode.REMOTE
        self._backend: Optional[StorageBackend] = None
        self._loaded = False
        self._consecutive_failures = 0
        self.transitions: List[str] = []

    @property
    def mode(self) -> BackendMode:
        return self._mode

    @property
    def backend(self) -> StorageBackend:
        """Active backend, constructed on first use."""
        while self._backend is None:
            factory = self._factories[self._mode]
            if factory is None:
                self._degrade(f"{self._mode.value} not configured")
                continue
            self._backend = factory()
        return self._backend

    @property
    def ready(self) -> bool:
        return self._loaded

    def transition_to(self, target: BackendMode, reason: str) -> bool:
        """Move to ``target`` if it is further down the chain. Returns True if
        the mode changed; repeated detection of the same failure is a no-op."""
        if target.rank <= self._mode.rank:
            return False
        previous = self._backend if self._loaded else None
        self.log.warning("Storage degraded %s -> %s: %s", self._mode.value, target.value, reason)
        self.transitions.append(f"{self._mode.value}->{target.value}: {reason}")
        self._mode = target
        self._backend = None
        self._loaded = False
        self._consecutive_failures = 0
        if isinstance(previous, LocalBackend):
            successor = self.backend
            if isinstance(successor, LocalBackend):
                successor.adopt_state(previous)
        return True

    def _degrade(self, reason: str) -> bool:
        if self._mode is BackendMode.MEMORY_ONLY:
            return False
        return self.transition_to(_MODE_ORDER[self._mode.rank + 1], reason)

    async def ensure_ready(self) -> StorageBackend:
        """Load the active backend, degrading as needed.

        Raises ConnectivityError when the failure is below the retry threshold,
        or when even memory-only mode cannot start.
        """
        while True:
            backend = self.backend
            try:
                await backend.load()
            except ConnectivityError as e:
                if self._mode is BackendMode.MEMORY_ONLY:
                    raise
                self._consecutive_failures += 1
                if e.transient and self._consecutive_failures < self.degrade_after:
                    self.log.warning("%s unavailable (%d/%d): %s", self._mode.value,
                                     self._consecutive_failures, self.degrade_after, e)
                    raise
                self._degrade(str(e))
                continue
            except OSError as e:
                if self._mode is BackendMode.MEMORY_ONLY:
                    raise ConnectivityError(f"memory-only backend failed to start: {e}") from e
                self._degrade(f"{type(e).__name__}: {e}")
                continue
            self._loaded = True
            self._consecutive_failures = 0
            return backend

    async def save(self) -> None:
        backend = self.backend
        try:
            await backend.save()
        except (ConnectivityError, OSError) as e:
            if self._degrade(f"save failed: {e}"):
                await self.ensure_ready()
            else:
                raise


class DegradingBackend(StorageBackend):
    """StorageBackend facade that always talks to the controller's active backend."""

    def __init__(self, controller: DegradationController):
        self.controller = controller

    @property
    def mode_name(self) -> str:
        return self.controller.backend.mode_name

    @property
    def reports_all_observations(self) -> bool:
        return self.controller.backend.reports_all_observations

    @property
    def mode(self) -> BackendMode:
        return self.controller.mode

    async def _active(self) -> StorageBackend:
        if self.controller.ready:
            return self.controller.backend
        return await self.controller.ensure_ready()

    async def load(self) -> None:
        await self.controller.ensure_ready()

    async def save(self) -> None:
        await self._active()
        await self.controller.save()

    async def upsert_model(self, incoming: IncomingRecord,
                           observed_at: datetime) -> UpsertResult:
        return await (await self._active()).upsert_model(incoming, observed_at)

    async def get_all_models(self) -> List[ModelRecord]:
        return await (await self._active()).get_all_models()

    async def get_models_by_provider(self, provider: str) -> List[ModelRecord]:
        return await (await self._active()).get_models_by_provider(provider)

    async def get_stats(self) -> RegistryStats:
        return await (await self._active()).get_stats()

    async def start_cycle(self, sources: List[str],
                          triggering_identity: str) -> Optional[str]:
        return await (await self._active()).start_cycle(sources, triggering_identity)

    async def complete_cycle(self, cycle_id: str, models_found: int,
                             new_discoveries: int, error: Optional[str] = None,
                             failed: bool = False) -> None:
        await (await self._active()).complete_cycle(cycle_id, models_found, new_discoveries,
                                                    error=error, failed=failed)

    async def record_discovery(self, cycle_id: Optional[str],
                               event: DiscoveryEvent) -> None:
        await (await self._active()).record_discovery(cycle_id, event)

    async def get_recent_discoveries(self, limit: int = 5) -> List[DiscoveryEvent]:
        return await (await self._active()).get_recent_discoveries(limit)

    async def get_latest_snapshot(self) -> Optional[EcosystemSnapshot]:
        return await (await self._active()).get_latest_snapshot()

    async def save_snapshot(self, snapshot: EcosystemSnapshot) -> None:
        await (await self._active()).save_snapshot(snapshot)

    async def get_snapshots(self) -> List[EcosystemSnapshot]:
        return await (await self._active()).get_snapshots()

    async def close(self) -> None:
        await self.controller.backend.close()

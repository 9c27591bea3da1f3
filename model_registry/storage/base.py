"""Storage backend contract shared by the remote, file and memory variants."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..records import DiscoveryEvent, EcosystemSnapshot, IncomingRecord, ModelRecord


@dataclass(frozen=True)
class UpsertResult:
    existed: bool
    previous: Optional[ModelRecord]
    current: ModelRecord


@dataclass
class RegistryStats:
    total: int
    by_provider: Dict[str, int] = field(default_factory=dict)
    last_update: Optional[datetime] = None
    mode: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "byProvider": dict(self.by_provider),
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "mode": self.mode,
        }


class StorageBackend(abc.ABC):
    """Uniform capability surface over a physical store.

    Every method is a coroutine. Bookkeeping methods (cycles, discoveries,
    snapshots) may raise; callers treat their failures as non-fatal.
    """

    mode_name = "unknown"
    # True when nothing persists between cycles, so every observation must be
    # reported as a discovery rather than diffed.
    reports_all_observations = False

    @abc.abstractmethod
    async def load(self) -> None:
        """Validate access to the medium. Raises ConnectivityError or OSError."""

    @abc.abstractmethod
    async def save(self) -> None:
        """Flush to the medium (no-op where persistence is automatic)."""

    @abc.abstractmethod
    async def upsert_model(self, incoming: IncomingRecord,
                           observed_at: datetime) -> UpsertResult:
        """Atomic read-modify-write keyed by (provider, model_id)."""

    @abc.abstractmethod
    async def get_all_models(self) -> List[ModelRecord]:
        ...

    async def get_models_by_provider(self, provider: str) -> List[ModelRecord]:
        return [m for m in await self.get_all_models() if m.provider == provider]

    @abc.abstractmethod
    async def get_stats(self) -> RegistryStats:
        ...

    @abc.abstractmethod
    async def start_cycle(self, sources: List[str],
                          triggering_identity: str) -> Optional[str]:
        """Open a RUNNING cycle. None when cycle tracking is unavailable."""

    @abc.abstractmethod
    async def complete_cycle(self, cycle_id: str, models_found: int,
                             new_discoveries: int, error: Optional[str] = None,
                             failed: bool = False) -> None:
        ...

    @abc.abstractmethod
    async def record_discovery(self, cycle_id: Optional[str],
                               event: DiscoveryEvent) -> None:
        ...

    @abc.abstractmethod
    async def get_recent_discoveries(self, limit: int = 5) -> List[DiscoveryEvent]:
        """Most recent first."""

    @abc.abstractmethod
    async def get_latest_snapshot(self) -> Optional[EcosystemSnapshot]:
        ...

    @abc.abstractmethod
    async def save_snapshot(self, snapshot: EcosystemSnapshot) -> None:
        ...

    @abc.abstractmethod
    async def get_snapshots(self) -> List[EcosystemSnapshot]:
        """Ordered by captured_at, oldest first."""

    async def close(self) -> None:
        return None

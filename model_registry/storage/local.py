"""In-process registry state, with a JSON-file variant and a memory-only variant.

Mutations run without any await between read and write, so a single event
loop can never interleave two upserts of the same key.
"""

from __future__ import annotations

import copy
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..records import (
    CycleStatus,
    DiscoveryEvent,
    EcosystemSnapshot,
    IncomingRecord,
    ModelRecord,
    ResearchCycle,
    provider_breakdown,
)
from ..util import atomic_write_json, mkdirp, read_json, utc_now, utc_now_iso
from .base import RegistryStats, StorageBackend, UpsertResult


DOCUMENT_VERSION = "1.0.0"
DEFAULT_DISCOVERY_RETENTION = 500


class LocalBackend(StorageBackend):
    """Registry kept in process memory. Subclasses decide about persistence."""

    def __init__(self, discovery_retention: int = DEFAULT_DISCOVERY_RETENTION,
                 logger: Optional[logging.Logger] = None):
        self.log = logger or logging.getLogger(__name__)
        self.discovery_retention = discovery_retention
        self.models: Dict[str, ModelRecord] = {}
        self.cycles: Dict[str, ResearchCycle] = {}
        self.discoveries: List[DiscoveryEvent] = []
        self.snapshots: List[EcosystemSnapshot] = []
        self.metadata: Dict[str, Any] = {"version": DOCUMENT_VERSION, "lastUpdate": None,
                                         "totalModels": 0}

    # -- state transfer (used when degrading with live state) --------------

    def adopt_state(self, other: "LocalBackend") -> None:
        """Take over another local backend's live state (used when degrading)."""
        self.models = dict(other.models)
        self.cycles = copy.deepcopy(other.cycles)
        self.discoveries = list(other.discoveries)
        self.snapshots = list(other.snapshots)
        self.metadata = dict(other.metadata)

    # -- models -------------------------------------------------------------

    async def upsert_model(self, incoming: IncomingRecord,
                           observed_at: datetime) -> UpsertResult:
        key = incoming.key
        previous = self.models.get(key)
        if previous is None:
            current = ModelRecord.first_observation(incoming, observed_at)
        else:
            current = previous.merged_with(incoming, observed_at)
        self.models[key] = current
        return UpsertResult(existed=previous is not None, previous=previous, current=current)

    async def get_all_models(self) -> List[ModelRecord]:
        return list(self.models.values())

    async def get_stats(self) -> RegistryStats:
        completed = [c.completed_at for c in self.cycles.values()
                     if c.status is CycleStatus.COMPLETED and c.completed_at]
        return RegistryStats(
            total=len(self.models),
            by_provider=provider_breakdown(self.models.values()),
            last_update=max(completed) if completed else None,
            mode=self.mode_name,
        )

    # -- cycles & discoveries -----------------------------------------------

    async def start_cycle(self, sources: List[str],
                          triggering_identity: str) -> Optional[str]:
        cycle = ResearchCycle(
            id=f"cyc_{uuid.uuid4().hex[:12]}",
            started_at=utc_now(),
            sources_checked=list(sources),
            triggering_identity=triggering_identity,
        )
        self.cycles[cycle.id] = cycle
        return cycle.id

    async def complete_cycle(self, cycle_id: str, models_found: int,
                             new_discoveries: int, error: Optional[str] = None,
                             failed: bool = False) -> None:
        cycle = self.cycles.get(cycle_id)
        if cycle is None:
            raise KeyError(f"unknown cycle {cycle_id}")
        cycle.finish(models_found, new_discoveries, error=error, failed=failed)

    async def record_discovery(self, cycle_id: Optional[str],
                               event: DiscoveryEvent) -> None:
        self.discoveries.append(event)
        if len(self.discoveries) > self.discovery_retention:
            self.discoveries = self.discoveries[-self.discovery_retention:]

    async def get_recent_discoveries(self, limit: int = 5) -> List[DiscoveryEvent]:
        if limit <= 0:
            return []
        return list(reversed(self.discoveries[-limit:]))

    # -- snapshots ----------------------------------------------------------

    async def get_latest_snapshot(self) -> Optional[EcosystemSnapshot]:
        return self.snapshots[-1] if self.snapshots else None

    async def save_snapshot(self, snapshot: EcosystemSnapshot) -> None:
        self.snapshots.append(snapshot)
        self.snapshots.sort(key=lambda s: s.captured_at)

    async def get_snapshots(self) -> List[EcosystemSnapshot]:
        return list(self.snapshots)


class MemoryBackend(LocalBackend):
    """Volatile registry. Nothing survives the process."""

    mode_name = "memory"
    reports_all_observations = True

    async def load(self) -> None:
        self.log.info("Memory-only mode: %d models in memory (not persisted)", len(self.models))

    async def save(self) -> None:
        self.log.info("Memory-only mode: %d models in memory (not persisted)", len(self.models))


class FileBackend(LocalBackend):
    """Registry persisted as one JSON document.

    Layout::

        {"metadata": {...}, "models": {"<provider>-<model_id>": {...}},
         "cycles": [...], "discoveries": [...], "snapshots": [...]}
    """

    mode_name = "file"

    def __init__(self, file_path: Path, discovery_retention: int = DEFAULT_DISCOVERY_RETENTION,
                 logger: Optional[logging.Logger] = None):
        super().__init__(discovery_retention=discovery_retention, logger=logger)
        self.path = Path(file_path)
        self._loaded = False

    async def load(self) -> None:
        """Read the document once; later calls only re-check the medium."""
        mkdirp(self.path.parent)
        if not os.access(self.path.parent, os.W_OK):
            raise PermissionError(f"{self.path.parent} is not writable")
        if self._loaded:
            return
        self._loaded = True
        data = read_json(self.path)
        if data is None:
            self.log.info("No existing database at %s, starting fresh", self.path)
            return
        if not isinstance(data, dict):
            self.log.warning("Ignoring malformed registry document at %s", self.path)
            return
        self.models = {}
        for key, raw in (data.get("models") or {}).items():
            try:
                self.models[key] = ModelRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                self.log.warning("Skipping unreadable record %s: %s", key, e)
        self.cycles = {}
        for raw in data.get("cycles") or []:
            cycle = ResearchCycle.from_dict(raw)
            self.cycles[cycle.id] = cycle
        self.discoveries = [DiscoveryEvent.from_dict(d) for d in data.get("discoveries") or []]
        self.snapshots = sorted((EcosystemSnapshot.from_dict(s) for s in data.get("snapshots") or []),
                                key=lambda s: s.captured_at)
        self.metadata.update(data.get("metadata") or {})
        self.log.info("Loaded %d models from %s", len(self.models), self.path)

    def to_document(self) -> Dict[str, Any]:
        return {
            "metadata": {
                **self.metadata,
                "lastUpdate": utc_now_iso(),
                "totalModels": len(self.models),
            },
            "models": {key: m.to_dict() for key, m in sorted(self.models.items())},
            "cycles": [c.to_dict() for c in self.cycles.values()],
            "discoveries": [d.to_dict() for d in self.discoveries],
            "snapshots": [s.to_dict() for s in self.snapshots],
        }

    async def save(self) -> None:
        mkdirp(self.path.parent)
        atomic_write_json(self.path, self.to_document())
        self.log.info("Saved %d models to %s", len(self.models), self.path)

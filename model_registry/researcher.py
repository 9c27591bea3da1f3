"""
Research cycle orchestration
============================

One cycle::

    admission -> backend load -> cycle start
      -> every source reconciled concurrently (one failing source never
         stops the others)
      -> discoveries recorded -> cycle completed -> save
      -> webhook -> opportunistic ecosystem snapshot

The cycle is closed on every exit path, cancellation included.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .admission import AdmissionController
from .config import Settings
from .cycles import ResearchCycleManager
from .degradation import DegradationController, DegradingBackend
from .errors import InvalidEcosystemData
from .notify import WebhookNotifier
from .reconcile import ReconcileResult, ReconciliationEngine, SkippedRecord
from .records import CycleStatus, DiscoveryEvent, EcosystemSnapshot, ModelRecord
from .snapshots import DEFAULT_MIN_TOTAL_MODELS, EcosystemSnapshotCapturer, build_timeline
from .sources import EcosystemSource, EntitySource
from .storage import FileBackend, MemoryBackend, RemoteBackend, StorageBackend
from .storage.base import RegistryStats


@dataclass
class CycleResult:
    cycle_id: Optional[str]
    status: CycleStatus
    discoveries: List[DiscoveryEvent] = field(default_factory=list)
    models_found: int = 0
    skipped: List[SkippedRecord] = field(default_factory=list)
    source_errors: Dict[str, str] = field(default_factory=dict)
    mode: str = "unknown"
    all_observations_reported: bool = False
    snapshot: Optional[EcosystemSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycleId": self.cycle_id,
            "status": self.status.value,
            "modelsFound": self.models_found,
            "newDiscoveries": len(self.discoveries),
            "discoveries": [d.to_dict() for d in self.discoveries],
            "skipped": [{"key": s.key, "reason": s.reason} for s in self.skipped],
            "sourceErrors": dict(self.source_errors),
            "mode": self.mode,
            "allObservationsReported": self.all_observations_reported,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


class ModelResearcher:
    def __init__(self, backend: StorageBackend, sources: List[EntitySource],
                 admission: AdmissionController,
                 ecosystem_source: Optional[EcosystemSource] = None,
                 notifier: Optional[WebhookNotifier] = None,
                 min_total_models: int = DEFAULT_MIN_TOTAL_MODELS,
                 logger: Optional[logging.Logger] = None):
        self.log = logger or logging.getLogger(__name__)
        self.backend = backend
        self.sources = list(sources)
        self.admission = admission
        self.ecosystem_source = ecosystem_source
        self.notifier = notifier
        self.engine = ReconciliationEngine(backend, logger=self.log)
        self.cycles = ResearchCycleManager(backend, logger=self.log)
        self.snapshots = EcosystemSnapshotCapturer(backend, min_total_models=min_total_models,
                                                   logger=self.log)

    @classmethod
    def from_settings(cls, settings: Settings, sources: List[EntitySource],
                      ecosystem_source: Optional[EcosystemSource] = None,
                      logger: Optional[logging.Logger] = None) -> "ModelResearcher":
        retention = settings.discovery_retention
        controller = DegradationController(
            remote_factory=lambda: RemoteBackend(settings.postgres),
            file_factory=lambda: FileBackend(settings.registry_file, discovery_retention=retention),
            memory_factory=lambda: MemoryBackend(discovery_retention=retention),
            degrade_after=settings.degrade_after_failures,
        )
        notifier = WebhookNotifier.from_file(settings.webhooks_file)
        return cls(
            DegradingBackend(controller),
            sources,
            AdmissionController.from_config(settings.admission),
            ecosystem_source=ecosystem_source,
            notifier=notifier if notifier.enabled else None,
            min_total_models=settings.snapshot_min_total_models,
            logger=logger,
        )

    # -- cycle --------------------------------------------------------------

    async def _run_source(self, source: EntitySource, cycle_id: Optional[str],
                          result: ReconcileResult) -> Optional[str]:
        """Reconcile one source into ``result``. Returns an error string if the
        source failed; whatever it yielded before failing is kept."""
        try:
            await self.engine.reconcile(source.records(), cycle_id=cycle_id, result=result)
        except Exception as e:
            self.log.warning("Source %s failed: %s: %s", source.name, type(e).__name__, e)
            return f"{type(e).__name__}: {e}"
        return None

    async def run_cycle(self, triggering_identity: str = "unknown") -> CycleResult:
        """Run one research cycle.

        Raises AdmissionDenied before any work when the caller is over quota,
        and ConnectivityError when no backend can be brought up.
        """
        await self.admission.check_and_admit(triggering_identity)
        await self.backend.load()

        names = [s.name for s in self.sources]
        cycle_id = await self.cycles.start(names, triggering_identity)
        per_source = [ReconcileResult() for _ in self.sources]
        try:
            errors = await asyncio.gather(*(
                self._run_source(src, cycle_id, res) for src, res in zip(self.sources, per_source)
            ))
        except asyncio.CancelledError:
            found = sum(r.processed for r in per_source)
            found_events = sum(len(r.events) for r in per_source)
            await self.cycles.complete(cycle_id, found, found_events,
                                       error="cancelled", failed=True)
            raise

        result = CycleResult(cycle_id=cycle_id, status=CycleStatus.COMPLETED)
        for src, res, err in zip(self.sources, per_source, errors):
            result.discoveries.extend(res.events)
            result.skipped.extend(res.skipped)
            result.models_found += res.processed
            if err is not None:
                result.source_errors[src.name] = err

        failed = bool(self.sources) and len(result.source_errors) == len(self.sources)
        if failed:
            result.status = CycleStatus.FAILED
        error = "; ".join(f"{k}: {v}" for k, v in result.source_errors.items()) or None

        await self.cycles.record(cycle_id, result.discoveries)
        await self.cycles.complete(cycle_id, result.models_found, len(result.discoveries),
                                   error=error, failed=failed)
        await self.backend.save()

        result.mode = self.backend.mode_name
        result.all_observations_reported = self.backend.reports_all_observations
        self.log.info("Cycle %s: %d models, %d discoveries, %d source error(s) [%s]",
                      cycle_id or "(untracked)", result.models_found, len(result.discoveries),
                      len(result.source_errors), result.mode)

        await self._notify(result.discoveries, cycle_id)
        result.snapshot = await self._opportunistic_snapshot(cycle_id)
        return result

    async def _notify(self, events: List[DiscoveryEvent], cycle_id: Optional[str]) -> None:
        if self.notifier is None or not events:
            return
        try:
            await asyncio.to_thread(self.notifier.notify_discoveries, events, cycle_id)
        except Exception:
            self.log.exception("Webhook notification failed")

    async def _opportunistic_snapshot(self, cycle_id: Optional[str]) -> Optional[EcosystemSnapshot]:
        if self.ecosystem_source is None:
            return None
        try:
            total = await self.ecosystem_source.total_models()
            if total is None:
                self.log.info("No ecosystem total available; snapshot skipped")
                return None
            snapshot = await self.snapshots.capture(total, research_run_id=cycle_id)
            await self.backend.save()
            return snapshot
        except InvalidEcosystemData:
            return None
        except Exception:
            self.log.exception("Ecosystem snapshot failed")
            return None

    # -- queries ------------------------------------------------------------

    async def get_all_models(self) -> List[ModelRecord]:
        return await self.backend.get_all_models()

    async def get_models_by_provider(self, provider: str) -> List[ModelRecord]:
        return await self.backend.get_models_by_provider(provider)

    async def get_stats(self) -> RegistryStats:
        return await self.backend.get_stats()

    async def get_recent_discoveries(self, limit: int = 5) -> List[DiscoveryEvent]:
        return await self.cycles.recent(limit)

    async def capture_snapshot(self, research_run_id: Optional[str] = None,
                               total_models: Optional[int] = None) -> EcosystemSnapshot:
        """Explicit snapshot. Raises InvalidEcosystemData when the total is
        missing or fails the sanity guard."""
        await self.backend.load()
        if total_models is None and self.ecosystem_source is not None:
            total_models = await self.ecosystem_source.total_models()
        snapshot = await self.snapshots.capture(total_models, research_run_id=research_run_id)
        await self.backend.save()
        return snapshot

    async def timeline(self) -> Dict[str, Any]:
        return build_timeline(await self.backend.get_snapshots())

    async def close(self) -> None:
        await self.backend.close()
        await self.admission.store.close()

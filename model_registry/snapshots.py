"""
Ecosystem snapshots
===================

A snapshot records the size of the whole upstream catalog next to the curated
registry at one point in time. Snapshots form a long-lived growth timeline, so
a capture whose ecosystem total is below the sanity floor is refused: a broken
scrape must not land in the timeline.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import InvalidEcosystemData
from .records import EcosystemSnapshot, provider_breakdown
from .storage.base import StorageBackend
from .util import format_timestamp, parse_timestamp, utc_now

DEFAULT_MIN_TOTAL_MODELS = 100_000
SECONDS_PER_DAY = 86_400
VELOCITY_WINDOW = 7

# Timeline phase boundaries (ISO dates, compared lexically)
PHASES = [
    ("2024-01-01", "foundation"),
    ("2025-01-01", "acceleration"),
]
FINAL_PHASE = "exponential"


def growth_rate_per_day(previous: Optional[EcosystemSnapshot], total_models: int,
                        captured_at: datetime) -> Optional[float]:
    """(delta total_models) / (delta days) against the prior snapshot."""
    if previous is None:
        return None
    elapsed = (captured_at - previous.captured_at).total_seconds()
    if elapsed <= 0:
        return None
    return (total_models - previous.total_models) / (elapsed / SECONDS_PER_DAY)


class EcosystemSnapshotCapturer:
    def __init__(self, backend: StorageBackend,
                 min_total_models: int = DEFAULT_MIN_TOTAL_MODELS,
                 clock: Callable[[], datetime] = utc_now,
                 logger: Optional[logging.Logger] = None):
        self.backend = backend
        self.min_total_models = min_total_models
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    def validate(self, total_models: Optional[int]) -> int:
        if not isinstance(total_models, int) or isinstance(total_models, bool):
            raise InvalidEcosystemData(total_models, self.min_total_models)
        if total_models <= 0 or total_models < self.min_total_models:
            raise InvalidEcosystemData(total_models, self.min_total_models)
        return total_models

    async def capture(self, total_models: Optional[int],
                      research_run_id: Optional[str] = None) -> EcosystemSnapshot:
        """Compute and persist a snapshot. Raises InvalidEcosystemData (and
        writes nothing) when the ecosystem total fails the sanity guard."""
        try:
            total = self.validate(total_models)
        except InvalidEcosystemData as e:
            self.log.error("Snapshot rejected: %s", e)
            raise

        models = await self.backend.get_all_models()
        distribution = provider_breakdown(models)
        capabilities: Counter = Counter()
        for m in models:
            capabilities.update(m.capabilities)

        captured_at = self.clock()
        previous = await self.backend.get_latest_snapshot()
        snapshot = EcosystemSnapshot(
            captured_at=captured_at,
            total_models=total,
            curated_models=len(models),
            providers_count=len(distribution),
            provider_distribution=distribution,
            capability_counts=dict(capabilities),
            growth_rate_per_day=growth_rate_per_day(previous, total, captured_at),
            research_run_id=research_run_id,
        )
        await self.backend.save_snapshot(snapshot)
        self.log.info("Ecosystem snapshot: %s total, %d curated, %d providers, growth/day=%s",
                      f"{total:,}", snapshot.curated_models, snapshot.providers_count,
                      "n/a" if snapshot.growth_rate_per_day is None
                      else f"{snapshot.growth_rate_per_day:,.0f}")
        return snapshot


def phase_for(captured_at: Any) -> str:
    stamp = format_timestamp(parse_timestamp(captured_at)) or ""
    for boundary, phase in PHASES:
        if stamp < boundary:
            return phase
    return FINAL_PHASE


def build_timeline(snapshots: List[EcosystemSnapshot]) -> Dict[str, Any]:
    """Chart-ready view of the snapshot history.

    Each point carries percentage growth from the previous point and a phase
    label; ``latest`` carries the mean growth_rate_per_day over the last
    VELOCITY_WINDOW points that have one.
    """
    ordered = sorted(snapshots, key=lambda s: s.captured_at)
    points = []
    for i, snap in enumerate(ordered):
        prev = ordered[i - 1] if i > 0 else None
        growth_pct = 0.0
        if prev is not None and prev.total_models:
            growth_pct = round((snap.total_models - prev.total_models) / prev.total_models * 100, 2)
        point = snap.to_dict()
        point.update({
            "date": point["captured_at"],
            "models": snap.total_models,
            "growth": growth_pct,
            "phase": phase_for(snap.captured_at),
        })
        points.append(point)

    velocities = [s.growth_rate_per_day for s in ordered[-VELOCITY_WINDOW:]
                  if s.growth_rate_per_day]
    avg_velocity = round(sum(velocities) / len(velocities)) if velocities else None
    latest = ordered[-1] if ordered else None
    return {
        "snapshots": points,
        "latest": {
            "totalModels": latest.total_models if latest else 0,
            "curatedModels": latest.curated_models if latest else 0,
            "providersCount": latest.providers_count if latest else 0,
            "capturedAt": format_timestamp(latest.captured_at) if latest else None,
            "growthRatePerDay": (latest.growth_rate_per_day or 0) if latest else 0,
            "avgVelocity": avg_velocity,
        },
        "metadata": {
            "count": len(ordered),
            "firstSnapshot": format_timestamp(ordered[0].captured_at) if ordered else None,
            "lastSnapshot": format_timestamp(latest.captured_at) if latest else None,
        },
    }

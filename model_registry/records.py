"""Registry data model: curated model records, discovery events, research
cycles and ecosystem snapshots, plus the normalized Entity Source record."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .util import format_timestamp, parse_timestamp, utc_now


def model_key(provider: str, model_id: str) -> str:
    return f"{provider}-{model_id}"


def merge_metadata(existing: Optional[Dict[str, Any]],
                   incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow merge: incoming keys overwrite, keys absent from incoming survive."""
    merged = dict(existing or {})
    merged.update(incoming or {})
    return merged


class DiscoveryKind(str, Enum):
    NEW = "NEW"
    UPDATED = "UPDATED"


class CycleStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class IncomingRecord:
    """One normalized observation produced by an Entity Source."""
    provider: str
    model_id: str
    capabilities: FrozenSet[str]
    metadata: Dict[str, Any]
    created_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return model_key(self.provider, self.model_id)

    @classmethod
    def from_source(cls, raw: Dict[str, Any]) -> "IncomingRecord":
        """Validate the ``{provider, id, created, capabilities, metadata}`` shape."""
        if not isinstance(raw, dict):
            raise ValueError(f"record must be a mapping, got {type(raw).__name__}")
        provider = str(raw.get("provider") or "").strip()
        model_id = str(raw.get("id") or raw.get("model_id") or "").strip()
        if not provider or not model_id:
            raise ValueError("record is missing provider or id")
        caps = raw.get("capabilities") or []
        if isinstance(caps, str):
            caps = [caps]
        if not isinstance(caps, (list, tuple, set, frozenset)):
            raise ValueError(f"capabilities for {provider}/{model_id} is not a list")
        metadata = raw.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError(f"metadata for {provider}/{model_id} is not an object")
        return cls(
            provider=provider,
            model_id=model_id,
            capabilities=frozenset(str(c) for c in caps if c),
            metadata=copy.deepcopy(metadata),
            created_at=parse_timestamp(raw.get("created")),
        )


@dataclass
class ModelRecord:
    provider: str
    model_id: str
    capabilities: FrozenSet[str] = frozenset()
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return model_key(self.provider, self.model_id)

    def same_content(self, other: "ModelRecord") -> bool:
        """Equality on capabilities + metadata only. created_at is provenance
        and never counts as a change."""
        return (set(self.capabilities) == set(other.capabilities)
                and self.metadata == other.metadata)

    def merged_with(self, incoming: IncomingRecord, observed_at: datetime) -> "ModelRecord":
        return ModelRecord(
            provider=self.provider,
            model_id=self.model_id,
            capabilities=frozenset(incoming.capabilities),
            metadata=merge_metadata(self.metadata, incoming.metadata),
            created_at=self.created_at if self.created_at is not None else incoming.created_at,
            updated_at=max(self.updated_at, observed_at),
        )

    @classmethod
    def first_observation(cls, incoming: IncomingRecord, observed_at: datetime) -> "ModelRecord":
        return cls(
            provider=incoming.provider,
            model_id=incoming.model_id,
            capabilities=frozenset(incoming.capabilities),
            metadata=dict(incoming.metadata),
            created_at=incoming.created_at,
            updated_at=observed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "id": self.model_id,
            "capabilities": sorted(self.capabilities),
            "metadata": self.metadata,
            "created": format_timestamp(self.created_at),
            "lastUpdated": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ModelRecord":
        return cls(
            provider=d["provider"],
            model_id=d.get("id") or d["model_id"],
            capabilities=frozenset(d.get("capabilities") or []),
            metadata=dict(d.get("metadata") or {}),
            created_at=parse_timestamp(d.get("created")),
            updated_at=parse_timestamp(d.get("lastUpdated")) or utc_now(),
        )


@dataclass(frozen=True)
class DiscoveryEvent:
    cycle_id: Optional[str]
    model_key: str
    kind: DiscoveryKind
    significance: int
    previous_state: Optional[ModelRecord]
    new_state: ModelRecord
    observed_at: datetime = field(default_factory=utc_now)
    # Emitted because the active backend cannot diff (nothing persists).
    memory_only: bool = False

    def __post_init__(self):
        if (self.kind is DiscoveryKind.NEW) != (self.previous_state is None):
            raise ValueError(f"{self.model_key}: NEW iff there is no previous state")
        object.__setattr__(self, "significance", max(0, min(100, int(self.significance))))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "model_key": self.model_key,
            "kind": self.kind.value,
            "significance": self.significance,
            "previous_state": self.previous_state.to_dict() if self.previous_state else None,
            "new_state": self.new_state.to_dict(),
            "observed_at": format_timestamp(self.observed_at),
            "memory_only": self.memory_only,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DiscoveryEvent":
        prev = d.get("previous_state")
        return cls(
            cycle_id=d.get("cycle_id"),
            model_key=d["model_key"],
            kind=DiscoveryKind(d["kind"]),
            significance=d.get("significance", 0),
            previous_state=ModelRecord.from_dict(prev) if prev else None,
            new_state=ModelRecord.from_dict(d["new_state"]),
            observed_at=parse_timestamp(d.get("observed_at")) or utc_now(),
            memory_only=bool(d.get("memory_only", False)),
        )


@dataclass
class ResearchCycle:
    id: str
    started_at: datetime
    sources_checked: List[str] = field(default_factory=list)
    triggering_identity: str = "unknown"
    status: CycleStatus = CycleStatus.RUNNING
    completed_at: Optional[datetime] = None
    models_found: int = 0
    new_discoveries: int = 0
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not CycleStatus.RUNNING

    def finish(self, models_found: int, new_discoveries: int,
               error: Optional[str] = None, failed: bool = False,
               completed_at: Optional[datetime] = None) -> None:
        if self.is_terminal:
            raise ValueError(f"cycle {self.id} already {self.status.value}")
        self.status = CycleStatus.FAILED if failed else CycleStatus.COMPLETED
        self.completed_at = completed_at or utc_now()
        self.models_found = models_found
        self.new_discoveries = new_discoveries
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "status": self.status.value,
            "sources_checked": list(self.sources_checked),
            "models_found": self.models_found,
            "new_discoveries": self.new_discoveries,
            "error": self.error,
            "triggering_identity": self.triggering_identity,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ResearchCycle":
        return cls(
            id=str(d["id"]),
            started_at=parse_timestamp(d.get("started_at")) or utc_now(),
            sources_checked=list(d.get("sources_checked") or []),
            triggering_identity=d.get("triggering_identity") or "unknown",
            status=CycleStatus(d.get("status", "RUNNING")),
            completed_at=parse_timestamp(d.get("completed_at")),
            models_found=int(d.get("models_found") or 0),
            new_discoveries=int(d.get("new_discoveries") or 0),
            error=d.get("error"),
        )


@dataclass(frozen=True)
class EcosystemSnapshot:
    captured_at: datetime
    total_models: int
    curated_models: int
    providers_count: int
    provider_distribution: Dict[str, int]
    capability_counts: Dict[str, int]
    growth_rate_per_day: Optional[float] = None
    research_run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "captured_at": format_timestamp(self.captured_at),
            "total_models": self.total_models,
            "curated_models": self.curated_models,
            "providers_count": self.providers_count,
            "provider_distribution": dict(self.provider_distribution),
            "capability_counts": dict(self.capability_counts),
            "growth_rate_per_day": self.growth_rate_per_day,
            "research_run_id": self.research_run_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EcosystemSnapshot":
        growth = d.get("growth_rate_per_day")
        return cls(
            captured_at=parse_timestamp(d.get("captured_at")) or utc_now(),
            total_models=int(d.get("total_models") or 0),
            curated_models=int(d.get("curated_models") or 0),
            providers_count=int(d.get("providers_count") or 0),
            provider_distribution=dict(d.get("provider_distribution") or {}),
            capability_counts=dict(d.get("capability_counts") or {}),
            growth_rate_per_day=float(growth) if growth is not None else None,
            research_run_id=d.get("research_run_id"),
        )


def provider_breakdown(records: Iterable[ModelRecord]) -> Dict[str, int]:
    stats: Dict[str, int] = {}
    for r in records:
        stats[r.provider] = stats.get(r.provider, 0) + 1
    return stats

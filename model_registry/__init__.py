"""Curated registry of AI models with change discovery and ecosystem snapshots."""

from .admission import AdmissionController, client_identity
from .config import AdmissionConfig, PostgresConfig, Settings
from .degradation import BackendMode, DegradationController, DegradingBackend
from .errors import (
    AdmissionDenied,
    ConnectivityError,
    CycleBookkeepingError,
    InvalidEcosystemData,
    PerRecordStoreError,
    RegistryError,
    StoreError,
)
from .reconcile import ReconcileResult, ReconciliationEngine, SkippedRecord
from .records import (
    CycleStatus,
    DiscoveryEvent,
    DiscoveryKind,
    EcosystemSnapshot,
    IncomingRecord,
    ModelRecord,
    ResearchCycle,
    model_key,
)
from .researcher import CycleResult, ModelResearcher
from .scoring import score
from .snapshots import EcosystemSnapshotCapturer, build_timeline

__version__ = "0.1.0"

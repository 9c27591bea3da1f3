"""Error taxonomy for the registry.

Only ConnectivityError, AdmissionDenied and InvalidEcosystemData reach callers.
StoreError and CycleBookkeepingError are recovered inline and reported as data.
"""

from __future__ import annotations

from typing import Optional


class RegistryError(Exception):
    """Base class for every error raised by model_registry."""


class ConnectivityError(RegistryError):
    """The storage medium cannot be reached or used.

    ``transient`` is False when retrying cannot help (e.g. credentials absent),
    which lets the degradation controller fall back without waiting.
    """

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class StoreError(RegistryError):
    """A single record could not be written. The record is skipped."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key


PerRecordStoreError = StoreError


class CycleBookkeepingError(RegistryError):
    """A cycle or discovery audit write failed. Never propagated."""


class InvalidEcosystemData(RegistryError):
    """Snapshot sanity guard tripped; nothing was persisted."""

    def __init__(self, total_models: Optional[int], floor: int):
        super().__init__(
            f"ecosystem total {total_models!r} is below the sanity floor {floor}; "
            f"refusing to record snapshot"
        )
        self.total_models = total_models
        self.floor = floor


class AdmissionDenied(RegistryError):
    """Caller exceeded the cycle-trigger rate limit."""

    def __init__(self, identity: str, retry_after_seconds: int, count_in_window: int):
        super().__init__(
            f"rate limit exceeded for {identity}: {count_in_window} request(s) in window, "
            f"retry after {retry_after_seconds}s"
        )
        self.identity = identity
        self.retry_after_seconds = retry_after_seconds
        self.count_in_window = count_in_window

"""Reconcile a batch of observed records against the registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional, Union

from .errors import StoreError
from .records import DiscoveryEvent, DiscoveryKind, IncomingRecord
from .scoring import score
from .storage.base import StorageBackend, UpsertResult
from .util import utc_now

RecordStream = Union[Iterable[Any], AsyncIterator[Any]]


@dataclass(frozen=True)
class SkippedRecord:
    key: str
    reason: str


@dataclass
class ReconcileResult:
    events: List[DiscoveryEvent] = field(default_factory=list)
    processed: int = 0
    skipped: List[SkippedRecord] = field(default_factory=list)


async def _iterate(records: RecordStream):
    if hasattr(records, "__aiter__"):
        async for item in records:
            yield item
    else:
        for item in records:
            yield item


def _describe(raw: Any) -> str:
    if isinstance(raw, IncomingRecord):
        return raw.key
    if isinstance(raw, dict):
        return f"{raw.get('provider', '?')}-{raw.get('id', raw.get('model_id', '?'))}"
    return repr(raw)[:80]


class ReconciliationEngine:
    """Upserts each record and decides NEW / UPDATED / UNCHANGED.

    Holds no state between calls. Events come out in input order. A record
    that fails validation or storage is skipped; the rest of the batch goes on.
    When the backend cannot diff (memory-only), every observed record is
    reported and the event is flagged ``memory_only``.
    """

    def __init__(self, backend: StorageBackend,
                 scorer: Callable[[Iterable[str]], int] = score,
                 clock: Callable[[], datetime] = utc_now,
                 logger: Optional[logging.Logger] = None):
        self.backend = backend
        self.scorer = scorer
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    async def reconcile(self, records: RecordStream,
                        cycle_id: Optional[str] = None,
                        result: Optional[ReconcileResult] = None) -> ReconcileResult:
        """Errors raised by the stream itself propagate. Pass ``result`` to keep
        the progress made before such an error."""
        if result is None:
            result = ReconcileResult()
        report_all = self.backend.reports_all_observations

        async for raw in _iterate(records):
            try:
                incoming = raw if isinstance(raw, IncomingRecord) else IncomingRecord.from_source(raw)
            except ValueError as e:
                self.log.warning("Skipping invalid record %s: %s", _describe(raw), e)
                result.skipped.append(SkippedRecord(_describe(raw), f"invalid: {e}"))
                continue

            observed_at = self.clock()
            try:
                upsert = await self.backend.upsert_model(incoming, observed_at)
            except StoreError as e:
                self.log.warning("Failed to upsert %s: %s", incoming.key, e)
                result.skipped.append(SkippedRecord(incoming.key, f"store: {e}"))
                continue

            result.processed += 1
            event = self._classify(incoming, upsert, cycle_id, observed_at, report_all)
            if event is not None:
                result.events.append(event)

        self.log.info("Reconciled %d record(s): %d discoveries, %d skipped%s",
                      result.processed, len(result.events), len(result.skipped),
                      " (memory-only: every observation reported)" if report_all else "")
        return result

    def _classify(self, incoming: IncomingRecord, upsert: UpsertResult,
                  cycle_id: Optional[str], observed_at: datetime,
                  report_all: bool) -> Optional[DiscoveryEvent]:
        if not upsert.existed:
            kind = DiscoveryKind.NEW
        elif upsert.previous is None:
            # Lost a race with a concurrent first insert; nothing to diff against.
            self.log.debug("No prior state returned for %s; treating as unchanged", incoming.key)
            return None
        elif report_all or not upsert.previous.same_content(upsert.current):
            kind = DiscoveryKind.UPDATED
        else:
            return None

        return DiscoveryEvent(
            cycle_id=cycle_id,
            model_key=incoming.key,
            kind=kind,
            significance=self.scorer(upsert.current.capabilities),
            previous_state=upsert.previous if kind is DiscoveryKind.UPDATED else None,
            new_state=upsert.current,
            observed_at=observed_at,
            memory_only=report_all,
        )

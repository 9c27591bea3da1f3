"""Research cycle bookkeeping.

Every call here is best-effort: a failed audit write is logged and swallowed
so it can never abort reconciliation.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .errors import CycleBookkeepingError
from .records import DiscoveryEvent
from .storage.base import StorageBackend


class ResearchCycleManager:
    def __init__(self, backend: StorageBackend, logger: Optional[logging.Logger] = None):
        self.backend = backend
        self.log = logger or logging.getLogger(__name__)

    def _swallow(self, what: str, e: Exception) -> None:
        err = CycleBookkeepingError(f"{what}: {type(e).__name__}: {e}")
        self.log.warning("Cycle bookkeeping failed (%s)", err)

    async def start(self, sources: List[str], triggering_identity: str) -> Optional[str]:
        """Open a RUNNING cycle. None means tracking is unavailable and later
        recording becomes a no-op."""
        try:
            cycle_id = await self.backend.start_cycle(sources, triggering_identity)
        except Exception as e:
            self._swallow("start_cycle", e)
            return None
        if cycle_id is None:
            self.log.info("Cycle tracking unavailable; discoveries will not be recorded")
        else:
            self.log.info("Research cycle %s started (%s)", cycle_id, ", ".join(sources) or "no sources")
        return cycle_id

    async def record(self, cycle_id: Optional[str], events: Iterable[DiscoveryEvent]) -> int:
        """Append events to the discovery log. Returns how many were written."""
        if cycle_id is None:
            return 0
        written = 0
        for event in events:
            try:
                await self.backend.record_discovery(cycle_id, event)
                written += 1
            except Exception as e:
                self._swallow(f"record_discovery {event.model_key}", e)
        return written

    async def complete(self, cycle_id: Optional[str], models_found: int,
                       new_discoveries: int, error: Optional[str] = None,
                       failed: bool = False) -> None:
        if cycle_id is None:
            return
        try:
            await self.backend.complete_cycle(cycle_id, models_found, new_discoveries,
                                              error=error, failed=failed)
        except Exception as e:
            self._swallow(f"complete_cycle {cycle_id}", e)
            return
        self.log.info("Research cycle %s %s: %d models, %d discoveries",
                      cycle_id, "FAILED" if failed else "COMPLETED", models_found, new_discoveries)

    async def recent(self, limit: int = 5) -> List[DiscoveryEvent]:
        try:
            return await self.backend.get_recent_discoveries(limit)
        except Exception as e:
            self._swallow("get_recent_discoveries", e)
            return []

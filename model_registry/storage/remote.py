"""
PostgreSQL backend (asyncpg)
============================

Tables: models, research_cycles, discoveries, ecosystem_snapshots. See
SCHEMA_SQL. The models upsert locks the existing row and writes it in one
transaction so concurrent writers of the same (provider, model_id) cannot
lose updates.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from ..config import PostgresConfig
from ..errors import ConnectivityError, StoreError
from ..records import (
    DiscoveryEvent,
    DiscoveryKind,
    EcosystemSnapshot,
    IncomingRecord,
    ModelRecord,
)
from .base import RegistryStats, StorageBackend, UpsertResult

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS models (
    provider      TEXT NOT NULL,
    model_id      TEXT NOT NULL,
    capabilities  TEXT[] NOT NULL DEFAULT '{}',
    metadata      JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at    TIMESTAMPTZ,
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (provider, model_id)
);

CREATE TABLE IF NOT EXISTS research_cycles (
    id                   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    started_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at         TIMESTAMPTZ,
    status               TEXT NOT NULL DEFAULT 'RUNNING',
    sources_checked      TEXT[] NOT NULL DEFAULT '{}',
    models_found         INTEGER NOT NULL DEFAULT 0,
    new_discoveries      INTEGER NOT NULL DEFAULT 0,
    error                TEXT,
    triggering_identity  TEXT
);

CREATE TABLE IF NOT EXISTS discoveries (
    id              BIGSERIAL PRIMARY KEY,
    cycle_id        UUID REFERENCES research_cycles(id),
    model_key       TEXT NOT NULL,
    kind            TEXT NOT NULL,
    significance    INTEGER NOT NULL CHECK (significance BETWEEN 0 AND 100),
    previous_state  JSONB,
    new_state       JSONB NOT NULL,
    observed_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    memory_only     BOOLEAN NOT NULL DEFAULT false
);
CREATE INDEX IF NOT EXISTS discoveries_observed_at_idx ON discoveries (observed_at DESC);

CREATE TABLE IF NOT EXISTS ecosystem_snapshots (
    id                     BIGSERIAL PRIMARY KEY,
    captured_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    total_models           INTEGER NOT NULL,
    curated_models         INTEGER NOT NULL,
    providers_count        INTEGER NOT NULL,
    provider_distribution  JSONB NOT NULL DEFAULT '{}'::jsonb,
    capability_counts      JSONB NOT NULL DEFAULT '{}'::jsonb,
    growth_rate_per_day    DOUBLE PRECISION,
    research_run_id        TEXT
);
CREATE INDEX IF NOT EXISTS ecosystem_snapshots_captured_at_idx ON ecosystem_snapshots (captured_at);
"""

# Run inside one transaction: PRIOR_MODEL_SQL locks the existing row (if any)
# so the state it returns is exactly the state UPSERT_MODEL_SQL replaces.
PRIOR_MODEL_SQL = """
SELECT provider, model_id, capabilities, metadata, created_at, updated_at
FROM models
WHERE provider = $1 AND model_id = $2
FOR UPDATE
"""

UPSERT_MODEL_SQL = """
INSERT INTO models (provider, model_id, capabilities, metadata, created_at, updated_at)
VALUES ($1, $2, $3, $4::jsonb, $5, $6)
ON CONFLICT (provider, model_id) DO UPDATE SET
    capabilities = EXCLUDED.capabilities,
    metadata     = models.metadata || EXCLUDED.metadata,
    created_at   = COALESCE(models.created_at, EXCLUDED.created_at),
    updated_at   = GREATEST(models.updated_at, EXCLUDED.updated_at)
RETURNING provider, model_id, capabilities, metadata, created_at, updated_at,
          (xmax = 0) AS inserted
"""

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.PostgresError,
                   asyncpg.InterfaceError)


def _json_value(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)


def _row_to_record(row: Any) -> ModelRecord:
    return ModelRecord(
        provider=row["provider"],
        model_id=row["model_id"],
        capabilities=frozenset(row["capabilities"] or []),
        metadata=_json_value(row["metadata"]) or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_snapshot(row: Any) -> EcosystemSnapshot:
    return EcosystemSnapshot(
        captured_at=row["captured_at"],
        total_models=row["total_models"],
        curated_models=row["curated_models"],
        providers_count=row["providers_count"],
        provider_distribution=_json_value(row["provider_distribution"]) or {},
        capability_counts=_json_value(row["capability_counts"]) or {},
        growth_rate_per_day=row["growth_rate_per_day"],
        research_run_id=row["research_run_id"],
    )


class RemoteBackend(StorageBackend):
    """Registry in PostgreSQL. Persistence is automatic; save() is a no-op."""

    mode_name = "remote"

    def __init__(self, config: PostgresConfig, pool: Optional[asyncpg.Pool] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.pool = pool
        self.log = logger or logging.getLogger(__name__)

    async def _connect(self) -> asyncpg.Pool:
        if self.pool is None:
            if not self.config.configured:
                raise ConnectivityError("missing PostgreSQL credentials (DATABASE_URL / POSTGRES_HOST)",
                                        transient=False)
            try:
                self.pool = await asyncpg.create_pool(**self.config.to_asyncpg_kwargs())
            except _CONNECT_ERRORS as e:
                raise ConnectivityError(f"cannot connect to PostgreSQL: {e}") from e
        return self.pool

    async def load(self) -> None:
        pool = await self._connect()
        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1 FROM models LIMIT 1")
        except asyncpg.UndefinedTableError as e:
            raise ConnectivityError("models table is missing; run with --init-schema",
                                    transient=False) from e
        except _CONNECT_ERRORS as e:
            raise ConnectivityError(f"PostgreSQL probe failed: {e}") from e
        self.log.info("PostgreSQL connection verified")

    async def create_schema(self) -> None:
        pool = await self._connect()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        self.log.info("PostgreSQL schema ensured")

    async def save(self) -> None:
        self.log.debug("Models auto-saved to PostgreSQL")

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    # -- models -------------------------------------------------------------

    async def upsert_model(self, incoming: IncomingRecord,
                           observed_at: datetime) -> UpsertResult:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    prior = await conn.fetchrow(PRIOR_MODEL_SQL,
                                                incoming.provider, incoming.model_id)
                    row = await conn.fetchrow(
                        UPSERT_MODEL_SQL,
                        incoming.provider,
                        incoming.model_id,
                        sorted(incoming.capabilities),
                        json.dumps(incoming.metadata, sort_keys=True, default=str),
                        incoming.created_at,
                        observed_at,
                    )
        except _CONNECT_ERRORS as e:
            raise StoreError(incoming.key, str(e)) from e
        # prior is None with inserted False when a concurrent writer inserted first
        previous = _row_to_record(prior) if prior is not None else None
        return UpsertResult(existed=not row["inserted"], previous=previous,
                            current=_row_to_record(row))

    async def get_all_models(self) -> List[ModelRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT provider, model_id, capabilities, metadata, created_at, updated_at
                FROM models ORDER BY provider, model_id
            """)
        return [_row_to_record(r) for r in rows]

    async def get_models_by_provider(self, provider: str) -> List[ModelRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT provider, model_id, capabilities, metadata, created_at, updated_at
                FROM models WHERE provider = $1 ORDER BY model_id
            """, provider)
        return [_row_to_record(r) for r in rows]

    async def get_stats(self) -> RegistryStats:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT provider, count(*) AS n FROM models GROUP BY provider")
            try:
                last_update = await conn.fetchval("""
                    SELECT max(completed_at) FROM research_cycles WHERE status = 'COMPLETED'
                """)
            except asyncpg.UndefinedTableError:
                last_update = None
        by_provider: Dict[str, int] = {r["provider"]: r["n"] for r in rows}
        return RegistryStats(total=sum(by_provider.values()), by_provider=by_provider,
                             last_update=last_update, mode=self.mode_name)

    # -- cycles & discoveries -----------------------------------------------

    async def start_cycle(self, sources: List[str],
                          triggering_identity: str) -> Optional[str]:
        try:
            async with self.pool.acquire() as conn:
                cycle_id = await conn.fetchval("""
                    INSERT INTO research_cycles (sources_checked, triggering_identity, status)
                    VALUES ($1, $2, 'RUNNING')
                    RETURNING id
                """, list(sources), triggering_identity)
        except asyncpg.UndefinedTableError:
            self.log.warning("research_cycles table not found; cycle tracking disabled")
            return None
        return str(cycle_id)

    async def complete_cycle(self, cycle_id: str, models_found: int,
                             new_discoveries: int, error: Optional[str] = None,
                             failed: bool = False) -> None:
        status = "FAILED" if failed else "COMPLETED"
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE research_cycles
                SET status = $2, completed_at = now(), models_found = $3,
                    new_discoveries = $4, error = $5
                WHERE id = $1::uuid AND status = 'RUNNING'
            """, cycle_id, status, models_found, new_discoveries, error)
        if result != "UPDATE 1":
            self.log.warning("Cycle %s was not RUNNING; completion ignored", cycle_id)

    async def record_discovery(self, cycle_id: Optional[str],
                               event: DiscoveryEvent) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO discoveries (cycle_id, model_key, kind, significance,
                                         previous_state, new_state, observed_at, memory_only)
                VALUES ($1::uuid, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8)
            """,
                cycle_id,
                event.model_key,
                event.kind.value,
                event.significance,
                json.dumps(event.previous_state.to_dict()) if event.previous_state else None,
                json.dumps(event.new_state.to_dict()),
                event.observed_at,
                event.memory_only,
            )

    async def get_recent_discoveries(self, limit: int = 5) -> List[DiscoveryEvent]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT cycle_id, model_key, kind, significance, previous_state,
                           new_state, observed_at, memory_only
                    FROM discoveries ORDER BY observed_at DESC, id DESC LIMIT $1
                """, limit)
        except asyncpg.UndefinedTableError:
            return []
        out = []
        for r in rows:
            prev = _json_value(r["previous_state"])
            out.append(DiscoveryEvent(
                cycle_id=str(r["cycle_id"]) if r["cycle_id"] else None,
                model_key=r["model_key"],
                kind=DiscoveryKind(r["kind"]),
                significance=r["significance"],
                previous_state=ModelRecord.from_dict(prev) if prev else None,
                new_state=ModelRecord.from_dict(_json_value(r["new_state"])),
                observed_at=r["observed_at"],
                memory_only=r["memory_only"],
            ))
        return out

    # -- snapshots ----------------------------------------------------------

    async def get_latest_snapshot(self) -> Optional[EcosystemSnapshot]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM ecosystem_snapshots ORDER BY captured_at DESC LIMIT 1
            """)
        return _row_to_snapshot(row) if row else None

    async def save_snapshot(self, snapshot: EcosystemSnapshot) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO ecosystem_snapshots (captured_at, total_models, curated_models,
                    providers_count, provider_distribution, capability_counts,
                    growth_rate_per_day, research_run_id)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8)
            """,
                snapshot.captured_at,
                snapshot.total_models,
                snapshot.curated_models,
                snapshot.providers_count,
                json.dumps(snapshot.provider_distribution, sort_keys=True),
                json.dumps(snapshot.capability_counts, sort_keys=True),
                snapshot.growth_rate_per_day,
                snapshot.research_run_id,
            )

    async def get_snapshots(self) -> List[EcosystemSnapshot]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM ecosystem_snapshots ORDER BY captured_at ASC")
        return [_row_to_snapshot(r) for r in rows]

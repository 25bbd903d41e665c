"""Postgres ledger backend (asyncpg).

Two tables:

    health_samples — one row per sample id; ``is_synced`` only ever goes
                     from FALSE to TRUE (enforced in the upsert itself).
    sync_records   — append-only pass history.

Every statement runs in its own transaction, so concurrent passes and the
cleanup scheduler see consistent rows.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

import asyncpg

from src.healthsync.base import (
    HealthDataSample,
    HealthDataType,
    SyncRecord,
    SyncRecordStatus,
)
from src.healthsync.errors import LedgerFetchError, LedgerSaveError
from src.healthsync.ledger.base import Ledger
from src.services.database import get_connection

logger = logging.getLogger("healthstack.ledger.postgres")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS health_samples (
    id            UUID PRIMARY KEY,
    user_id       TEXT NOT NULL,
    type          TEXT NOT NULL,
    value         DOUBLE PRECISION NOT NULL,
    unit          TEXT NOT NULL,
    start_date    TIMESTAMPTZ NOT NULL,
    end_date      TIMESTAMPTZ NOT NULL,
    source_bundle TEXT,
    metadata      JSONB,
    is_synced     BOOLEAN NOT NULL DEFAULT FALSE,
    created_at    TIMESTAMPTZ NOT NULL,
    tz_offset     TEXT
);
CREATE INDEX IF NOT EXISTS health_samples_unsynced_idx
    ON health_samples (created_at, id) WHERE NOT is_synced;

CREATE TABLE IF NOT EXISTS sync_records (
    id            UUID PRIMARY KEY,
    timestamp     TIMESTAMPTZ NOT NULL,
    status        TEXT NOT NULL,
    synced_count  INTEGER NOT NULL,
    error_message TEXT,
    duration      DOUBLE PRECISION NOT NULL
);
CREATE INDEX IF NOT EXISTS sync_records_timestamp_idx ON sync_records (timestamp DESC);
"""

_UPSERT_SQL = """
INSERT INTO health_samples
    (id, user_id, type, value, unit, start_date, end_date,
     source_bundle, metadata, is_synced, created_at, tz_offset)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12)
ON CONFLICT (id) DO UPDATE SET
    user_id       = EXCLUDED.user_id,
    type          = EXCLUDED.type,
    value         = EXCLUDED.value,
    unit          = EXCLUDED.unit,
    start_date    = EXCLUDED.start_date,
    end_date      = EXCLUDED.end_date,
    source_bundle = EXCLUDED.source_bundle,
    metadata      = EXCLUDED.metadata,
    is_synced     = health_samples.is_synced OR EXCLUDED.is_synced,
    tz_offset     = EXCLUDED.tz_offset
"""


def _row_to_sample(row: asyncpg.Record) -> HealthDataSample:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return HealthDataSample(
        id=row["id"],
        type=HealthDataType(row["type"]),
        value=row["value"],
        unit=row["unit"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        source_bundle=row["source_bundle"],
        metadata=metadata,
        is_synced=row["is_synced"],
        created_at=row["created_at"],
        tz_offset=row["tz_offset"],
    )


def _row_to_record(row: asyncpg.Record) -> SyncRecord:
    return SyncRecord(
        id=row["id"],
        timestamp=row["timestamp"],
        status=SyncRecordStatus(row["status"]),
        synced_count=row["synced_count"],
        error_message=row["error_message"],
        duration=row["duration"],
    )


class PostgresLedger(Ledger):
    """Ledger stored in Postgres through an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Ledger schema ensured")

    async def save(self, samples: Sequence[HealthDataSample], user_id: str) -> None:
        if not samples:
            return
        args = [
            (
                s.id, user_id, s.type.value, float(s.value), s.unit,
                s.start_date, s.end_date, s.source_bundle,
                json.dumps(s.metadata) if s.metadata is not None else None,
                s.is_synced, s.created_at, s.tz_offset,
            )
            for s in samples
        ]
        try:
            async with get_connection(self._pool) as conn:
                await conn.executemany(_UPSERT_SQL, args)
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("Ledger save failed for %d samples: %s", len(samples), exc)
            raise LedgerSaveError(f"Failed to save samples: {exc}") from exc

    async def fetch_unsynced(
        self, limit: int | None = None, offset: int = 0
    ) -> list[HealthDataSample]:
        query = (
            "SELECT * FROM health_samples WHERE NOT is_synced "
            "ORDER BY created_at ASC, id ASC OFFSET $1"
        )
        params: list = [offset]
        if limit is not None:
            query += " LIMIT $2"
            params.append(limit)
        try:
            async with get_connection(self._pool) as conn:
                rows = await conn.fetch(query, *params)
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerFetchError(f"Failed to fetch unsynced samples: {exc}") from exc
        return [_row_to_sample(r) for r in rows]

    async def count_unsynced(self) -> int:
        try:
            async with get_connection(self._pool) as conn:
                return await conn.fetchval(
                    "SELECT COUNT(*) FROM health_samples WHERE NOT is_synced"
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerFetchError(f"Failed to count unsynced samples: {exc}") from exc

    async def mark_synced(self, ids: Iterable[UUID]) -> int:
        id_list = list(ids)
        if not id_list:
            return 0
        try:
            async with get_connection(self._pool) as conn:
                result = await conn.execute(
                    "UPDATE health_samples SET is_synced = TRUE "
                    "WHERE id = ANY($1::uuid[]) AND NOT is_synced",
                    id_list,
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerSaveError(f"Failed to mark samples synced: {exc}") from exc
        return int(result.split()[-1])

    async def delete_older_than(self, cutoff: datetime) -> int:
        try:
            async with get_connection(self._pool) as conn:
                result = await conn.execute(
                    "DELETE FROM health_samples WHERE is_synced AND created_at < $1",
                    cutoff,
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerSaveError(f"Failed to delete old samples: {exc}") from exc
        deleted = int(result.split()[-1])
        logger.info("Deleted %d synced samples older than %s", deleted, cutoff)
        return deleted

    async def append_history(self, record: SyncRecord) -> None:
        try:
            async with get_connection(self._pool) as conn:
                await conn.execute(
                    "INSERT INTO sync_records "
                    "(id, timestamp, status, synced_count, error_message, duration) "
                    "VALUES ($1, $2, $3, $4, $5, $6)",
                    record.id, record.timestamp, record.status.value,
                    record.synced_count, record.error_message, record.duration,
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerSaveError(f"Failed to append sync history: {exc}") from exc

    async def list_history(self, limit: int = 50) -> list[SyncRecord]:
        try:
            async with get_connection(self._pool) as conn:
                rows = await conn.fetch(
                    "SELECT * FROM sync_records ORDER BY timestamp DESC LIMIT $1", limit
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerFetchError(f"Failed to list sync history: {exc}") from exc
        return [_row_to_record(r) for r in rows]

    async def last_success_record(self) -> SyncRecord | None:
        try:
            async with get_connection(self._pool) as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM sync_records WHERE status = $1 "
                    "ORDER BY timestamp DESC LIMIT 1",
                    SyncRecordStatus.SUCCESS.value,
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerFetchError(f"Failed to read sync history: {exc}") from exc
        return _row_to_record(row) if row else None

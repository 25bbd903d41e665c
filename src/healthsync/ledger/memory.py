"""In-memory ledger for development mode and tests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Sequence
from uuid import UUID

from src.healthsync.base import HealthDataSample, SyncRecord
from src.healthsync.ledger.base import Ledger

logger = logging.getLogger("healthstack.ledger.memory")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class MemoryLedger(Ledger):
    """Dict-backed ledger guarded by an asyncio.Lock.

    Not durable: everything is lost when the process exits.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rows: dict[UUID, HealthDataSample] = {}
        self._owners: dict[UUID, str] = {}
        self._history: list[SyncRecord] = []

    async def save(self, samples: Sequence[HealthDataSample], user_id: str) -> None:
        async with self._lock:
            for sample in samples:
                existing = self._rows.get(sample.id)
                if existing is not None:
                    sample = replace(
                        sample,
                        is_synced=existing.is_synced or sample.is_synced,
                        created_at=existing.created_at,
                    )
                else:
                    sample = replace(sample)
                self._rows[sample.id] = sample
                self._owners[sample.id] = user_id
        logger.debug("Saved %d samples", len(samples))

    def _ordered_unsynced(self) -> list[HealthDataSample]:
        unsynced = [s for s in self._rows.values() if not s.is_synced]
        unsynced.sort(key=lambda s: (_aware(s.created_at), str(s.id)))
        return unsynced

    async def fetch_unsynced(
        self, limit: int | None = None, offset: int = 0
    ) -> list[HealthDataSample]:
        async with self._lock:
            rows = self._ordered_unsynced()[offset:]
            if limit is not None:
                rows = rows[:limit]
            return [replace(s) for s in rows]

    async def count_unsynced(self) -> int:
        async with self._lock:
            return sum(1 for s in self._rows.values() if not s.is_synced)

    async def mark_synced(self, ids: Iterable[UUID]) -> int:
        changed = 0
        async with self._lock:
            for sample_id in ids:
                row = self._rows.get(sample_id)
                if row is not None and not row.is_synced:
                    self._rows[sample_id] = row.synced()
                    changed += 1
        return changed

    async def delete_older_than(self, cutoff: datetime) -> int:
        cutoff = _aware(cutoff)
        async with self._lock:
            doomed = [
                sid for sid, s in self._rows.items()
                if s.is_synced and _aware(s.created_at) < cutoff
            ]
            for sid in doomed:
                del self._rows[sid]
                self._owners.pop(sid, None)
        if doomed:
            logger.info("Deleted %d synced samples older than %s", len(doomed), cutoff)
        return len(doomed)

    async def append_history(self, record: SyncRecord) -> None:
        async with self._lock:
            self._history.append(record)

    async def list_history(self, limit: int = 50) -> list[SyncRecord]:
        async with self._lock:
            # ties keep append order, newest append first
            ordered = sorted(
                enumerate(self._history),
                key=lambda item: (_aware(item[1].timestamp), item[0]),
                reverse=True,
            )
            return [record for _, record in ordered[:limit]]

    # Introspection helpers (tests, debug endpoints)

    async def get(self, sample_id: UUID) -> HealthDataSample | None:
        async with self._lock:
            row = self._rows.get(sample_id)
            return replace(row) if row else None

    async def count_all(self) -> int:
        async with self._lock:
            return len(self._rows)

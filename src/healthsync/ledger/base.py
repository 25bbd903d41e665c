"""Ledger contract: the durable store of samples and sync history.

The unsynced rows in the ledger are the single source of truth for what
still has to reach the gateway.  The orchestrator never touches them except
through this contract, and implementations must tolerate concurrent calls
from foreground passes, background passes and the cleanup scheduler.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from src.healthsync.base import HealthDataSample, SyncRecord, SyncRecordStatus


class Ledger(ABC):
    """Abstract base class for ledger backends.

    Ordering: unsynced rows are always returned oldest first, by
    ``(created_at, id)``.  Retention only ever deletes synced rows, so it can
    never race ahead of older rows still waiting for delivery.
    """

    @abstractmethod
    async def save(self, samples: Sequence[HealthDataSample], user_id: str) -> None:
        """Upsert ``samples`` by id.

        A row that is already synced stays synced, and its ``created_at``
        is preserved.

        Raises:
            LedgerSaveError: If the write fails.
        """

    @abstractmethod
    async def fetch_unsynced(
        self, limit: int | None = None, offset: int = 0
    ) -> list[HealthDataSample]:
        """Return unsynced rows oldest first, optionally paginated.

        Raises:
            LedgerFetchError: If the read fails.
        """

    @abstractmethod
    async def count_unsynced(self) -> int:
        ...

    @abstractmethod
    async def mark_synced(self, ids: Iterable[UUID]) -> int:
        """Flag ``ids`` as synced. Returns the number of rows that changed."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete synced rows created before ``cutoff``. Returns rows removed."""

    @abstractmethod
    async def append_history(self, record: SyncRecord) -> None:
        ...

    @abstractmethod
    async def list_history(self, limit: int = 50) -> list[SyncRecord]:
        """Return history records newest first."""

    async def last_success_record(self) -> SyncRecord | None:
        """Most recent successful pass, if any."""
        for record in await self.list_history(limit=50):
            if record.status is SyncRecordStatus.SUCCESS:
                return record
        return None

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

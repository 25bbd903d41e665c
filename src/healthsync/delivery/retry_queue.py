"""In-memory holding area for pages that exhausted delivery retries.

Entries are lost when the process exits.  Nothing is lost for good: the
samples are still unsynced in the ledger and the next full pass picks them
up again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from src.healthsync.base import HealthDataSample

logger = logging.getLogger("healthstack.delivery.retry_queue")


class RetryQueue:
    """Serialized append/drain queue of samples."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._items: list[HealthDataSample] = []

    async def add(self, samples: Sequence[HealthDataSample]) -> None:
        async with self._lock:
            self._items.extend(samples)
            total = len(self._items)
        logger.info("Parked %d samples for retry (%d queued)", len(samples), total)

    async def remove_all(self) -> list[HealthDataSample]:
        """Return everything queued and leave the queue empty."""
        async with self._lock:
            drained, self._items = self._items, []
        return drained

    async def count(self) -> int:
        async with self._lock:
            return len(self._items)

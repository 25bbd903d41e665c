"""Periodic retention cleanup of the ledger.

Synced rows older than the retention window are deleted once at start-up
and then every ``cleanup_interval_hours``.  Unsynced rows are never
touched, whatever their age.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable

from src.healthsync.base import utc_now
from src.healthsync.config_loader import RetentionConfig
from src.healthsync.ledger.base import Ledger

logger = logging.getLogger("healthstack.sync.cleanup")


class DataCleanupScheduler:
    def __init__(
        self,
        ledger: Ledger,
        retention: RetentionConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._retention = retention or RetentionConfig()
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._next_run: datetime | None = None

    def start(self) -> None:
        """Run a cleanup now and then every cleanup interval."""
        self.stop()
        logger.info(
            "Starting automatic data cleanup (every %.0fh, keep %d days)",
            self._retention.cleanup_interval_hours,
            self._retention.synced_retention_days,
        )
        self._task = asyncio.create_task(self._loop(), name="data-cleanup")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            self._next_run = None
            logger.info("Stopped automatic data cleanup")

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_cleanup_time(self) -> datetime | None:
        return self._next_run if self.is_scheduled else None

    def cutoff(self) -> datetime:
        return self._clock() - timedelta(days=self._retention.synced_retention_days)

    async def perform_cleanup(self) -> int | None:
        """Delete old synced rows now. Returns rows deleted, or None on failure."""
        started = time.monotonic()
        cutoff = self.cutoff()
        logger.info("Deleting synced data older than %s", cutoff.isoformat())
        try:
            deleted = await self._ledger.delete_older_than(cutoff)
        except Exception as exc:
            logger.error("Data cleanup failed: %s", exc)
            return None
        logger.info(
            "Data cleanup completed in %.3fs (%d rows deleted)",
            time.monotonic() - started, deleted,
        )
        return deleted

    async def _loop(self) -> None:
        interval = self._retention.cleanup_interval_seconds
        while True:
            await self.perform_cleanup()
            self._next_run = self._clock() + timedelta(seconds=interval)
            await asyncio.sleep(interval)

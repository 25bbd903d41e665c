"""In-memory sample source for development mode and tests."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable

from src.healthsync.acquisition.base import HealthDataSource
from src.healthsync.base import HealthDataSample, HealthDataType
from src.healthsync.errors import AcquisitionQueryError

logger = logging.getLogger("healthstack.acquisition.memory")


class MemoryHealthSource(HealthDataSource):
    """Holds samples per type in memory.

    ``push()`` adds samples and, while observing, fires the observation
    handler once per type that received data.  ``fail_types`` makes fetches
    of those types raise AcquisitionQueryError.
    """

    SOURCE_ID = "memory"
    DISPLAY_NAME = "In-memory source"

    def __init__(self, samples: Iterable[HealthDataSample] = ()) -> None:
        super().__init__()
        self._samples: dict[HealthDataType, list[HealthDataSample]] = defaultdict(list)
        self._observed: set[HealthDataType] = set()
        self.authorized: set[HealthDataType] = set()
        self.fail_types: set[HealthDataType] = set()
        self.fetch_calls: list[tuple[HealthDataType, datetime, datetime, int | None]] = []
        self.cache_clears = 0
        for sample in samples:
            self._samples[sample.type].append(sample)

    async def request_authorization(self, types: Iterable[HealthDataType]) -> None:
        self.authorized.update(types)

    async def fetch(
        self,
        data_type: HealthDataType,
        start: datetime,
        end: datetime,
        limit: int | None = None,
    ) -> list[HealthDataSample]:
        self.fetch_calls.append((data_type, start, end, limit))
        if data_type in self.fail_types:
            raise AcquisitionQueryError(f"Query failed for {data_type.value}")
        matching = sorted(
            (s for s in self._samples.get(data_type, []) if start <= s.start_date <= end),
            key=lambda s: s.start_date,
        )
        return matching[:limit] if limit is not None else matching

    async def start_observing(self, types: Iterable[HealthDataType]) -> None:
        self._observed = set(types)
        logger.info("Observing %d data types", len(self._observed))

    async def stop_observing(self) -> None:
        self._observed.clear()

    @property
    def observed_types(self) -> set[HealthDataType]:
        return set(self._observed)

    def clear_authorization_cache(self) -> None:
        self.cache_clears += 1

    async def push(self, samples: Iterable[HealthDataSample]) -> None:
        """Add samples and notify the observer for each affected type."""
        touched: list[HealthDataType] = []
        for sample in samples:
            self._samples[sample.type].append(sample)
            if sample.type not in touched:
                touched.append(sample.type)
        for data_type in touched:
            if data_type in self._observed:
                await self._notify(data_type)

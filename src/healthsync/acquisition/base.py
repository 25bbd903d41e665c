"""Acquisition contract: where new samples come from.

Every data source subclasses HealthDataSource.  Capabilities that used to be
probed for at runtime (authorization-cache clearing, observation callbacks)
are explicit members here, so every implementation honours the same
contract; sources without a cache simply inherit the no-op.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable
from uuid import NAMESPACE_URL, UUID, uuid5

from src.healthsync.base import HealthDataType

logger = logging.getLogger("healthstack.acquisition")

#: Async (or plain) callback invoked with the type that has new data.
ObservationHandler = Callable[[HealthDataType], Awaitable[None] | None]

_SAMPLE_NAMESPACE = uuid5(NAMESPACE_URL, "https://healthstack.dev/samples")


def stable_sample_id(
    data_type: HealthDataType,
    start: datetime,
    end: datetime,
    value: float,
    unit: str,
    source: str | None = None,
) -> UUID:
    """Derive a deterministic sample id from the sample's content.

    Re-fetching an overlapping time window therefore produces the same ids,
    which the ledger upserts instead of duplicating.
    """
    def _ts(dt: datetime) -> str:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat()

    key = f"{data_type.value}|{_ts(start)}|{_ts(end)}|{value!r}|{unit}|{source or ''}"
    return uuid5(_SAMPLE_NAMESPACE, key)


class HealthDataSource(ABC):
    """Abstract base class for all sample sources.

    Subclasses must implement:
        - request_authorization()
        - fetch()
        - start_observing()
        - stop_observing()

    Optional overrides:
        - clear_authorization_cache()  (no-op by default)
        - is_available()               (True by default)
    """

    #: Unique slug used by the source registry.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and the control API.
    DISPLAY_NAME: str = "Unknown Source"

    def __init__(self) -> None:
        self._observation_handler: ObservationHandler | None = None

    @abstractmethod
    async def request_authorization(self, types: Iterable[HealthDataType]) -> None:
        """Ask for read access to ``types``.

        Raises:
            AcquisitionUnavailableError: If the source cannot be used at all.
            AcquisitionQueryError:       If the request itself fails.
        """

    @abstractmethod
    async def fetch(
        self,
        data_type: HealthDataType,
        start: datetime,
        end: datetime,
        limit: int | None = None,
    ) -> list:
        """Return samples of ``data_type`` whose start lies in ``[start, end]``.

        Results are ordered by start date ascending and truncated to ``limit``.

        Raises:
            AcquisitionError: On any failure.
        """

    @abstractmethod
    async def start_observing(self, types: Iterable[HealthDataType]) -> None:
        """Begin push notification of new data for ``types``."""

    @abstractmethod
    async def stop_observing(self) -> None:
        """Stop all observation started by start_observing()."""

    def set_observation_handler(self, handler: ObservationHandler | None) -> None:
        self._observation_handler = handler

    def clear_authorization_cache(self) -> None:
        """Drop any cached authorization state so the next fetch re-checks."""

    def is_available(self) -> bool:
        return True

    async def _notify(self, data_type: HealthDataType) -> None:
        """Invoke the observation handler, awaiting it when it is async."""
        handler = self._observation_handler
        if handler is None:
            logger.debug("%s: new %s data but no handler set", self.SOURCE_ID, data_type.value)
            return
        result = handler(data_type)
        if inspect.isawaitable(result):
            await result

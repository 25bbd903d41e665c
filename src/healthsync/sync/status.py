"""Published SyncStatus stream.

The orchestrator publishes every status transition here.  Observers either
read ``current``, register a plain callback, or iterate ``subscribe()`` to
receive the current status followed by every later one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

from src.healthsync.base import SyncStatus

logger = logging.getLogger("healthstack.sync.status")

StatusListener = Callable[[SyncStatus], None]


class SyncStatusPublisher:
    def __init__(self) -> None:
        self._current = SyncStatus.idle()
        self._subscribers: set[asyncio.Queue[SyncStatus]] = set()
        self._listeners: list[StatusListener] = []

    @property
    def current(self) -> SyncStatus:
        return self._current

    def publish(self, status: SyncStatus) -> None:
        self._current = status
        for queue in self._subscribers:
            queue.put_nowait(status)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                logger.warning("Status listener %r raised: %s", listener, exc)

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self) -> AsyncIterator[SyncStatus]:
        """Yield the current status, then every published one until closed."""
        queue: asyncio.Queue[SyncStatus] = asyncio.Queue()
        queue.put_nowait(self._current)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

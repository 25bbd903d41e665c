"""Connectivity monitor.

Probes the gateway periodically and emits the "network restored" signal on
every offline → online transition.  The orchestrator answers that signal by
draining the Retry Queue.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from src.healthsync.errors import DeliveryError

logger = logging.getLogger("healthstack.sync.connectivity")

Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    """Track whether the gateway is reachable.

    Starts out online, so a failure is needed before a restoration can be
    reported.
    """

    def __init__(
        self,
        probe: Probe,
        on_restored: Callable[[], None],
        interval: float = 30.0,
    ) -> None:
        self._probe = probe
        self._on_restored = on_restored
        self._interval = interval
        self._online = True
        self._task: asyncio.Task | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    async def check(self) -> bool:
        """Probe once and update state, firing on_restored when we come back."""
        try:
            online = await self._probe()
        except DeliveryError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            online = False

        was_online, self._online = self._online, online
        if online != was_online:
            logger.info("Network status changed: connected=%s", online)
        if online and not was_online:
            self._on_restored()
        return online

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="connectivity-monitor")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._interval)

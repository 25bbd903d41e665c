"""Background execution scheduler.

Stands in for the OS facility that runs work outside the foreground:

1. A handler is registered under a task id.
2. ``schedule()`` arranges one invocation no earlier than ``earliest_delay``
   from now.  Scheduling an id again replaces its pending invocation.
3. When the delay elapses (and, if required, the network is up) the handler
   runs inside an execution window.  At the end of the window the handler's
   ExpirationSignal fires; a handler still running one grace period later
   is cancelled.

Handler failures are logged and never propagate into the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

logger = logging.getLogger("healthstack.sync.scheduler")


class ExpirationSignal:
    """Cooperative expiration flag handed to background handlers."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def expired(self) -> bool:
        return self._event.is_set()

    def expire(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


BackgroundHandler = Callable[[ExpirationSignal], Awaitable[None]]


class BackgroundScheduler(ABC):
    """Contract for background invocation of registered handlers."""

    @abstractmethod
    def register(self, task_id: str, handler: BackgroundHandler) -> None:
        ...

    @abstractmethod
    def schedule(self, task_id: str, earliest_delay: float, requires_network: bool = True) -> None:
        ...

    @abstractmethod
    def cancel(self, task_id: str) -> None:
        ...

    def cancel_all(self) -> None:
        for task_id in list(self.scheduled_ids()):
            self.cancel(task_id)

    @abstractmethod
    def scheduled_ids(self) -> set[str]:
        ...


class AsyncioBackgroundScheduler(BackgroundScheduler):
    """Run background handlers as asyncio tasks on the current loop.

    Usage::

        scheduler = AsyncioBackgroundScheduler(is_online=lambda: monitor.is_online)
        scheduler.register("com.healthstack.sync", orchestrator.handle_background_task)
        scheduler.schedule("com.healthstack.sync", earliest_delay=3600)
    """

    def __init__(
        self,
        execution_window: float = 30.0,
        expiration_grace: float = 5.0,
        probe_interval: float = 30.0,
        is_online: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            execution_window: Seconds a handler may run before expiration fires.
            expiration_grace: Seconds after expiration before forced cancellation.
            probe_interval:   Seconds between connectivity re-checks while deferred.
            is_online:        Connectivity predicate for ``requires_network`` tasks.
        """
        self._window = execution_window
        self._grace = expiration_grace
        self._probe_interval = probe_interval
        self._is_online = is_online
        self._handlers: dict[str, BackgroundHandler] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()
        self._due_at: dict[str, float] = {}

    def register(self, task_id: str, handler: BackgroundHandler) -> None:
        self._handlers[task_id] = handler
        logger.info("Registered background task: %s", task_id)

    def schedule(self, task_id: str, earliest_delay: float, requires_network: bool = True) -> None:
        self._cancel_pending(task_id)
        self._due_at[task_id] = time.time() + earliest_delay
        self._pending[task_id] = asyncio.create_task(
            self._run(task_id, earliest_delay, requires_network),
            name=f"background:{task_id}",
        )
        logger.info("Scheduled %s for %.0fs from now", task_id, earliest_delay)

    def cancel(self, task_id: str) -> None:
        if self._cancel_pending(task_id):
            logger.info("Cancelled background task: %s", task_id)

    def scheduled_ids(self) -> set[str]:
        return {tid for tid, task in self._pending.items() if not task.done()}

    def next_run_time(self, task_id: str) -> float | None:
        """Epoch seconds of the pending invocation, if any."""
        if task_id not in self.scheduled_ids():
            return None
        return self._due_at.get(task_id)

    async def aclose(self) -> None:
        """Cancel pending invocations and any handler still running."""
        self.cancel_all()
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cancel_pending(self, task_id: str) -> bool:
        task = self._pending.pop(task_id, None)
        self._due_at.pop(task_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _run(self, task_id: str, delay: float, requires_network: bool) -> None:
        await asyncio.sleep(delay)
        while requires_network and self._is_online is not None and not self._is_online():
            logger.info("%s deferred: network unavailable", task_id)
            await asyncio.sleep(self._probe_interval)

        # The handler may reschedule this id; it must not cancel the running invocation.
        if self._pending.get(task_id) is asyncio.current_task():
            del self._pending[task_id]
            self._due_at.pop(task_id, None)

        handler = self._handlers.get(task_id)
        if handler is None:
            logger.warning("No handler registered for %s", task_id)
            return

        logger.info("Background task %s started", task_id)
        started = time.monotonic()
        signal = ExpirationSignal()
        task = asyncio.create_task(handler(signal), name=f"background-handler:{task_id}")
        self._running.add(task)
        try:
            done, _ = await asyncio.wait({task}, timeout=self._window)
            if not done:
                logger.warning("Background task %s expired, signalling handler", task_id)
                signal.expire()
                done, _ = await asyncio.wait({task}, timeout=self._grace)
                if not done:
                    logger.warning("Background task %s ignored expiration, cancelling", task_id)
                    task.cancel()
                    await asyncio.wait({task})
        finally:
            self._running.discard(task)

        duration = time.monotonic() - started
        if task.cancelled():
            logger.warning("Background task %s cancelled after %.1fs", task_id, duration)
        elif task.exception() is not None:
            logger.error(
                "Background task %s failed after %.1fs: %s", task_id, duration, task.exception()
            )
        else:
            logger.info("Background task %s completed in %.1fs", task_id, duration)

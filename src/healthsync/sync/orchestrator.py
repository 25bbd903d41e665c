"""Sync orchestrator: drives a full pass and arbitrates its triggers.

One pass::

    guard → clear auth cache → fetch new samples per type since watermark
          → persist in batches (progress 0.2–0.3) → settle → count unsynced N
          → page through the ledger oldest first (progress 0.3–0.9)
                send page (outer retry) → mark accepted ids synced
                exhausted page → Retry Queue, continue
          → history record → retention cleanup → success(total)

Triggers: manual calls, the periodic timer, new-data observation and the
background scheduler.  All of them go through ``perform_manual_sync()`` and
its single-flight guard.  Timer ticks, new-data notifications and the
network-restored signal are posted as commands onto one queue and handled
by a single dispatcher task, so nothing but the dispatcher reacts to them.

All mutable state (active flag, auto-sync mode, timer handle, watermarks)
is only touched from the event loop thread, and the guard is a synchronous
check-and-set with no await in between.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence
from uuid import UUID

from src.healthsync.acquisition.base import HealthDataSource
from src.healthsync.base import (
    AutoSyncMode,
    GatewayConfig,
    HealthDataSample,
    HealthDataType,
    SyncFrequency,
    SyncRecord,
    SyncRecordStatus,
    SyncStatus,
    utc_now,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.delivery.gateway import GatewayClient
from src.healthsync.delivery.retry_queue import RetryQueue
from src.healthsync.errors import (
    AcquisitionError,
    DeliveryError,
    ErrorInfo,
    HealthStackError,
    InvalidConfigurationError,
    SyncInProgressError,
)
from src.healthsync.ledger.base import Ledger
from src.healthsync.preferences import SyncPreferences
from src.healthsync.sync.scheduler import BackgroundScheduler, ExpirationSignal
from src.healthsync.sync.status import SyncStatusPublisher

logger = logging.getLogger("healthstack.sync.orchestrator")

SleepFunc = Callable[[float], Awaitable[None]]


class CommandKind(str, enum.Enum):
    TIMER_FIRED = "timer_fired"
    NEW_DATA = "new_data"
    NETWORK_RESTORED = "network_restored"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    data_type: HealthDataType | None = None


class SyncOrchestrator:
    """State machine for sync passes plus auto-sync trigger management.

    Usage::

        orchestrator = SyncOrchestrator(source, ledger, gateway, RetryQueue(), prefs)
        await orchestrator.start()
        record = await orchestrator.perform_manual_sync()
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        source: HealthDataSource,
        ledger: Ledger,
        gateway: GatewayClient,
        retry_queue: RetryQueue,
        preferences: SyncPreferences,
        background: BackgroundScheduler | None = None,
        status: SyncStatusPublisher | None = None,
        config: SyncConfig | None = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            source:      Where new samples come from.
            ledger:      Durable store of samples and history.
            gateway:     Delivery engine.
            retry_queue: Holding area for pages that exhaust retries.
            preferences: Runtime sync preferences, read fresh every pass.
            background:  Optional background scheduler for periodic mode.
            status:      Status publisher (a new one is created if omitted).
            config:      Tuning config (defaults to sync_config.yaml).
            sleep:       Awaitable used for settle and backoff delays (for testing).
            clock:       UTC clock (for testing).
        """
        self._source = source
        self._ledger = ledger
        self._gateway = gateway
        self._retry_queue = retry_queue
        self._prefs = preferences
        self._background = background
        self.status = status or SyncStatusPublisher()
        self._config = config or get_sync_config()
        self._sleep = sleep
        self._clock = clock

        self._active = False
        self._auto_mode = AutoSyncMode.STOPPED
        self._timer_task: asyncio.Task | None = None
        self._watermarks: dict[HealthDataType, datetime] = {}
        self._drain_deferred = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._commands: asyncio.Queue[Command] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._spawned: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the command dispatcher and hook up observation and background work."""
        if self._dispatcher is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._commands = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch(), name="sync-dispatcher")
        self._source.set_observation_handler(self.on_new_data)
        if self._background is not None:
            self._background.register(
                self._config.background.task_id, self.handle_background_task
            )
        logger.info("Sync orchestrator started")

    async def shutdown(self) -> None:
        await self.stop_auto_sync()
        self._source.set_observation_handler(None)
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        spawned = list(self._spawned)
        for task in spawned:
            task.cancel()
        if spawned:
            await asyncio.gather(*spawned, return_exceptions=True)
        logger.info("Sync orchestrator stopped")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self._active

    @property
    def auto_sync_mode(self) -> AutoSyncMode:
        return self._auto_mode

    @property
    def current_status(self) -> SyncStatus:
        return self.status.current

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry_queue

    @property
    def preferences(self) -> SyncPreferences:
        return self._prefs

    async def get_sync_history(self, limit: int | None = None) -> list[SyncRecord]:
        return await self._ledger.list_history(limit or self._config.orchestrator.history_limit)

    async def last_successful_sync(self) -> SyncRecord | None:
        return await self._ledger.last_success_record()

    # ------------------------------------------------------------------
    # Manual pass
    # ------------------------------------------------------------------

    async def perform_manual_sync(self) -> SyncRecord:
        """Run one full pass and return its history record.

        Raises:
            SyncInProgressError: Another pass is active.
            HealthStackError:    The pass failed; a ``failed`` record was written.
        """
        if self._active:
            logger.warning("Sync already in progress")
            raise SyncInProgressError()
        self._active = True

        started = time.monotonic()
        logger.info("Starting sync pass")
        self.status.publish(SyncStatus.syncing(0.0))
        try:
            return await self._run_pass(started)
        except asyncio.CancelledError:
            logger.warning("Sync pass cancelled")
            await self._record_failure(started, "Sync cancelled")
            self.status.publish(SyncStatus.idle())
            raise
        except Exception as exc:
            logger.error("Sync pass failed: %s", exc)
            await self._record_failure(started, str(exc) or type(exc).__name__)
            self.status.publish(SyncStatus.failed(ErrorInfo.from_exception(exc), self._clock()))
            raise
        finally:
            self._active = False
            if self._drain_deferred:
                self._drain_deferred = False
                self.notify_network_restored()

    async def _run_pass(self, started: float) -> SyncRecord:
        cfg = self._config
        batch_size = cfg.batching.batch_size
        types = self._prefs.enabled_types()
        user_id = self._prefs.user_id
        gateway_config = self._prefs.get_gateway_config()

        self._source.clear_authorization_cache()
        self.status.publish(SyncStatus.syncing(0.05))

        new_samples, fetched_until = await self._fetch_new_samples(types)
        self.status.publish(SyncStatus.syncing(0.2))

        if new_samples:
            logger.info("Saving %d new samples to ledger", len(new_samples))
            chunks = [
                new_samples[i:i + batch_size] for i in range(0, len(new_samples), batch_size)
            ]
            for index, chunk in enumerate(chunks):
                await self._ledger.save(chunk, user_id)
                self.status.publish(SyncStatus.syncing(0.2 + 0.1 * (index + 1) / len(chunks)))
        else:
            logger.info("No new samples to save")
        self._watermarks.update(fetched_until)

        self.status.publish(SyncStatus.syncing(0.3))
        await self._sleep(cfg.orchestrator.settle_delay_seconds)

        total = await self._ledger.count_unsynced()
        logger.info("Unsynced samples: %d", total)
        if total == 0:
            record = SyncRecord(
                status=SyncRecordStatus.SUCCESS,
                synced_count=0,
                duration=time.monotonic() - started,
                timestamp=self._clock(),
            )
            await self._ledger.append_history(record)
            self.status.publish(SyncStatus.syncing(1.0))
            self.status.publish(SyncStatus.success(0, self._clock()))
            logger.info("Nothing to sync")
            return record

        if gateway_config is not None:
            self._gateway.configure(gateway_config)
        else:
            logger.warning("Gateway not configured; samples are kept locally only")

        synced = await self._drain_ledger(total, user_id, gateway_config)

        self.status.publish(SyncStatus.syncing(0.95))
        record = SyncRecord(
            status=SyncRecordStatus.SUCCESS if synced == total else SyncRecordStatus.PARTIAL_SUCCESS,
            synced_count=synced,
            duration=time.monotonic() - started,
            timestamp=self._clock(),
        )
        await self._ledger.append_history(record)
        logger.info(
            "Sync pass complete: %d/%d synced (%s) in %.2fs",
            synced, total, record.status.value, record.duration,
        )

        await self._cleanup_old_data()

        self.status.publish(SyncStatus.syncing(1.0))
        self.status.publish(SyncStatus.success(synced, self._clock()))
        return record

    async def _drain_ledger(
        self, total: int, user_id: str, gateway_config: GatewayConfig | None
    ) -> int:
        """Page through unsynced rows oldest first; return samples acknowledged.

        ``skip`` counts rows from this pass that are still unsynced (parked
        or not accepted), so rows marked synced mid-pass never shift the
        window past rows that have not been sent yet.
        """
        batch_size = self._config.batching.batch_size
        pages = math.ceil(total / batch_size)
        max_iterations = pages + self._config.orchestrator.iteration_slack
        logger.info("Processing %d pages of up to %d samples", pages, batch_size)

        synced = processed = skip = iterations = 0
        while processed < total:
            page = await self._ledger.fetch_unsynced(limit=batch_size, offset=skip)
            if not page:
                logger.warning("No more unsynced rows at offset %d; stopping", skip)
                break

            accepted_ids = await self._send_page(page, user_id, gateway_config)
            if accepted_ids:
                await self._ledger.mark_synced(accepted_ids)

            accepted = len(accepted_ids)
            synced += accepted
            skip += len(page) - accepted
            processed += len(page)
            iterations += 1

            self.status.publish(SyncStatus.syncing(0.3 + 0.6 * min(processed, total) / total))
            logger.info(
                "Page %d/%d: %d/%d accepted (%d/%d total)",
                iterations, pages, accepted, len(page), synced, total,
            )
            if iterations >= max_iterations:
                logger.error("Iteration ceiling reached after %d pages; stopping", iterations)
                break

        return min(synced, total)

    async def _send_page(
        self,
        page: Sequence[HealthDataSample],
        user_id: str,
        gateway_config: GatewayConfig | None,
    ) -> list[UUID]:
        """Deliver one page with page-level retry; return the accepted ids.

        Without a gateway the whole page counts as delivered.  A page that
        still fails after the last attempt is parked in the Retry Queue and
        yields no ids.  Permanent delivery errors propagate.
        """
        if gateway_config is None:
            return [s.id for s in page]

        retry = self._config.outer_retry
        for attempt in range(1, retry.max_attempts + 1):
            delay = retry.delay_before(attempt)
            if delay:
                await self._sleep(delay)
            try:
                # In-flight requests finish even if the pass is cancelled.
                result = await asyncio.shield(self._gateway.send_health_data(page, user_id))
            except DeliveryError as exc:
                if exc.permanent:
                    raise
                logger.warning(
                    "Page attempt %d/%d failed: %s", attempt, retry.max_attempts, exc
                )
                continue
            return list(result.synced_ids)

        logger.error("Page of %d samples failed after %d attempts; parking", len(page), retry.max_attempts)
        await self._retry_queue.add(page)
        return []

    async def _fetch_new_samples(
        self, types: Sequence[HealthDataType]
    ) -> tuple[list[HealthDataSample], dict[HealthDataType, datetime]]:
        """Fetch per type since its watermark; failed types are skipped.

        A type without a watermark of its own (first pass, or every fetch so
        far failed) looks back the default window.  A fetch that hits the
        query cap only advances to the start of its last sample, so the rows
        past the cap are read by the next pass.
        """
        if not types:
            logger.info("No data types enabled")
            return [], {}

        now = self._clock()
        lookback = now - timedelta(hours=self._config.orchestrator.default_lookback_hours)
        limit = self._config.batching.acquisition_query_limit
        samples: list[HealthDataSample] = []
        fetched_until: dict[HealthDataType, datetime] = {}

        for data_type in types:
            since = self._watermarks.get(data_type, lookback)
            try:
                fetched = await self._source.fetch(data_type, since, now, limit=limit)
            except AcquisitionError as exc:
                logger.error("Failed to fetch %s: %s", data_type.value, exc)
                continue
            samples.extend(fetched)
            if len(fetched) >= limit:
                logger.info(
                    "Fetch of %s hit the %d-sample cap; resuming from its last sample",
                    data_type.value, limit,
                )
                fetched_until[data_type] = max(since, fetched[-1].start_date)
            else:
                fetched_until[data_type] = now

        logger.info("Fetched %d new samples across %d types", len(samples), len(fetched_until))
        return samples, fetched_until

    async def _cleanup_old_data(self) -> None:
        cutoff = self._clock() - timedelta(days=self._config.retention.synced_retention_days)
        try:
            await self._ledger.delete_older_than(cutoff)
        except HealthStackError as exc:
            logger.error("Retention cleanup failed: %s", exc)

    async def _record_failure(self, started: float, message: str) -> None:
        record = SyncRecord(
            status=SyncRecordStatus.FAILED,
            synced_count=0,
            duration=time.monotonic() - started,
            timestamp=self._clock(),
            error_message=message,
        )
        try:
            await self._ledger.append_history(record)
        except HealthStackError as exc:
            logger.error("Could not record failed sync: %s", exc)

    # ------------------------------------------------------------------
    # Auto sync
    # ------------------------------------------------------------------

    async def start_auto_sync(self) -> None:
        if self._auto_mode is not AutoSyncMode.STOPPED:
            logger.info("Auto sync already enabled")
            return

        frequency = self._prefs.frequency
        logger.info("Starting auto sync with frequency: %s", frequency.display_name)

        if frequency is SyncFrequency.REALTIME:
            types = self._prefs.enabled_types()
            if not types:
                logger.warning("No data types enabled for sync")
                return
            self._auto_mode = AutoSyncMode.REALTIME
            await self._source.start_observing(types)
            logger.info("Real-time sync started for %d data types", len(types))
            self._spawn(self._triggered_pass("initial"))

        elif frequency.interval is not None:
            interval = frequency.interval
            self._auto_mode = AutoSyncMode.PERIODIC
            self._timer_task = asyncio.create_task(self._timer(interval), name="sync-timer")
            if self._background is not None:
                self._background.schedule(
                    self._config.background.task_id, interval, requires_network=True
                )
            self._spawn(self._triggered_pass("initial"))

        else:
            logger.info("Manual sync mode - no automatic sync scheduled")

    async def stop_auto_sync(self) -> None:
        if self._auto_mode is AutoSyncMode.STOPPED:
            return
        self._auto_mode = AutoSyncMode.STOPPED
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        await self._source.stop_observing()
        if self._background is not None:
            self._background.cancel(self._config.background.task_id)
        logger.info("Auto sync stopped")

    async def _timer(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.post(Command(CommandKind.TIMER_FIRED))

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_new_data(self, data_type: HealthDataType) -> None:
        """Observation callback; safe to call from any thread."""
        logger.info("New health data available for %s", data_type.value)
        self.post(Command(CommandKind.NEW_DATA, data_type))

    def notify_network_restored(self) -> None:
        logger.info("Network restored")
        self.post(Command(CommandKind.NETWORK_RESTORED))

    def post(self, command: Command) -> None:
        if self._commands is None or self._loop is None:
            logger.warning("Dropping %s: orchestrator not started", command.kind.value)
            return
        if threading.get_ident() == self._loop_thread:
            self._commands.put_nowait(command)
        else:
            self._loop.call_soon_threadsafe(self._commands.put_nowait, command)

    async def _dispatch(self) -> None:
        assert self._commands is not None
        while True:
            command = await self._commands.get()
            if command.kind is CommandKind.TIMER_FIRED:
                if self._auto_mode is AutoSyncMode.PERIODIC:
                    self._spawn(self._triggered_pass("timer"))
            elif command.kind is CommandKind.NEW_DATA:
                if (
                    self._auto_mode is AutoSyncMode.REALTIME
                    and self._prefs.frequency is SyncFrequency.REALTIME
                ):
                    self._spawn(self._triggered_pass(f"new {command.data_type.value} data"))
                else:
                    logger.debug("Ignoring new-data notification outside real-time mode")
            elif command.kind is CommandKind.NETWORK_RESTORED:
                self._spawn(self.process_retry_queue())

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._spawned.add(task)
        task.add_done_callback(self._spawned.discard)
        return task

    async def _triggered_pass(self, reason: str) -> None:
        logger.info("Automatic sync triggered: %s", reason)
        try:
            await self.perform_manual_sync()
        except SyncInProgressError:
            logger.info("Skipping %s sync: a pass is already running", reason)
        except Exception as exc:
            logger.error("Automatic sync (%s) failed: %s", reason, exc)

    async def handle_background_task(self, signal: ExpirationSignal) -> None:
        """Background scheduler handler: run a pass, honour expiration, reschedule."""
        pass_task = asyncio.ensure_future(self.perform_manual_sync())
        expired = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({pass_task, expired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pass_task.cancel()
            raise
        finally:
            expired.cancel()

        if not pass_task.done():
            logger.warning("Background window expired, cancelling sync pass")
            pass_task.cancel()
        try:
            await pass_task
        except asyncio.CancelledError:
            logger.warning("Background sync cancelled")
        except SyncInProgressError:
            logger.info("Background sync skipped: a pass is already running")
        except HealthStackError as exc:
            logger.error("Background sync failed: %s", exc)

        interval = self._prefs.frequency.interval
        if (
            self._background is not None
            and interval is not None
            and self._auto_mode is AutoSyncMode.PERIODIC
        ):
            self._background.schedule(self._config.background.task_id, interval, requires_network=True)

    # ------------------------------------------------------------------
    # Retry queue / connectivity
    # ------------------------------------------------------------------

    async def process_retry_queue(self) -> int:
        """Resend everything parked in the Retry Queue; return samples acknowledged.

        Samples that fail again are dropped from the queue; they stay
        unsynced in the ledger for the next pass to pick up.  A drain requested
        while a pass is running is deferred until that pass ends.
        """
        if self._active:
            logger.info("Sync pass running; retry queue drain deferred until it ends")
            self._drain_deferred = True
            return 0

        queued = await self._retry_queue.remove_all()
        if not queued:
            return 0

        logger.info("Processing retry queue with %d samples", len(queued))
        gateway_config = self._prefs.get_gateway_config()
        try:
            if gateway_config is None:
                accepted_ids = [s.id for s in queued]
            else:
                self._gateway.configure(gateway_config)
                result = await self._gateway.send_health_data(queued, self._prefs.user_id)
                accepted_ids = list(result.synced_ids)
            if accepted_ids:
                await self._ledger.mark_synced(accepted_ids)
        except HealthStackError as exc:
            logger.error("Failed to process retry queue: %s", exc)
            return 0

        logger.info("Retry queue processed: %d/%d acknowledged", len(accepted_ids), len(queued))
        return len(accepted_ids)

    async def test_connection(self) -> bool:
        """Probe the configured gateway.

        Raises:
            InvalidConfigurationError: No gateway configured.
            DeliveryError:             The probe failed.
        """
        gateway_config = self._prefs.get_gateway_config()
        if gateway_config is None:
            raise InvalidConfigurationError("No gateway configured")
        self._gateway.configure(gateway_config)
        return await self._gateway.test_connection()

    async def check_connectivity(self) -> bool:
        """Connectivity probe for the monitor; local-only mode counts as online."""
        if self._prefs.get_gateway_config() is None:
            return True
        return await self.test_connection()

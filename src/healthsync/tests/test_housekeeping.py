"""Tests for retention cleanup, connectivity monitoring and status publishing."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.healthsync.base import SyncState, SyncStatus
from src.healthsync.config_loader import RetentionConfig
from src.healthsync.errors import ErrorInfo, LedgerError, NetworkError
from src.healthsync.ledger.memory import MemoryLedger
from src.healthsync.sync.cleanup import DataCleanupScheduler
from src.healthsync.sync.connectivity import ConnectivityMonitor
from src.healthsync.sync.status import SyncStatusPublisher
from src.healthsync.tests.factories import NOW, TEST_USER_ID, make_sample


# ---------------------------------------------------------------------------
# Retention cleanup
# ---------------------------------------------------------------------------


class TestDataCleanup:
    @pytest.mark.asyncio
    async def test_perform_cleanup(self, ledger: MemoryLedger) -> None:
        old = make_sample(created_at=NOW - timedelta(days=31), is_synced=True)
        recent = make_sample(created_at=NOW - timedelta(days=29), is_synced=True)
        stale_unsynced = make_sample(created_at=NOW - timedelta(days=90))
        await ledger.save([old, recent, stale_unsynced], TEST_USER_ID)
        cleanup = DataCleanupScheduler(ledger, RetentionConfig(), clock=lambda: NOW)

        assert await cleanup.perform_cleanup() == 1
        assert await ledger.get(old.id) is None
        assert await ledger.get(recent.id) is not None
        assert await ledger.get(stale_unsynced.id) is not None

    def test_cutoff(self, ledger: MemoryLedger) -> None:
        cleanup = DataCleanupScheduler(
            ledger, RetentionConfig(synced_retention_days=7), clock=lambda: NOW
        )
        assert cleanup.cutoff() == NOW - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_failure_returns_none(self) -> None:
        class BrokenLedger(MemoryLedger):
            async def delete_older_than(self, cutoff):
                raise LedgerError("locked")

        cleanup = DataCleanupScheduler(BrokenLedger(), clock=lambda: NOW)
        assert await cleanup.perform_cleanup() is None

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_schedules(self, ledger: MemoryLedger) -> None:
        old = make_sample(created_at=NOW - timedelta(days=60), is_synced=True)
        await ledger.save([old], TEST_USER_ID)
        cleanup = DataCleanupScheduler(ledger, RetentionConfig(), clock=lambda: NOW)

        cleanup.start()
        try:
            await asyncio.sleep(0.01)
            assert cleanup.is_scheduled
            assert cleanup.next_cleanup_time == NOW + timedelta(hours=24)
            assert await ledger.get(old.id) is None
        finally:
            cleanup.stop()

        assert not cleanup.is_scheduled
        assert cleanup.next_cleanup_time is None


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class TestConnectivityMonitor:
    @pytest.mark.asyncio
    async def test_restoration_fires_once(self) -> None:
        results = [False, False, True, True]
        restored: list[int] = []

        async def probe() -> bool:
            return results.pop(0)

        monitor = ConnectivityMonitor(probe, lambda: restored.append(1))
        for _ in range(4):
            await monitor.check()

        assert restored == [1]
        assert monitor.is_online

    @pytest.mark.asyncio
    async def test_probe_error_means_offline(self) -> None:
        async def probe() -> bool:
            raise NetworkError("unreachable")

        monitor = ConnectivityMonitor(probe, lambda: None)
        assert await monitor.check() is False
        assert not monitor.is_online

    @pytest.mark.asyncio
    async def test_starts_online_without_signal(self) -> None:
        restored: list[int] = []

        async def probe() -> bool:
            return True

        monitor = ConnectivityMonitor(probe, lambda: restored.append(1))
        await monitor.check()
        assert restored == []

    @pytest.mark.asyncio
    async def test_loop_start_stop(self) -> None:
        probes: list[int] = []

        async def probe() -> bool:
            probes.append(1)
            return True

        monitor = ConnectivityMonitor(probe, lambda: None, interval=0.01)
        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()
        count = len(probes)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(probes) == count


# ---------------------------------------------------------------------------
# Status publishing
# ---------------------------------------------------------------------------


class TestStatusPublisher:
    def test_starts_idle(self) -> None:
        assert SyncStatusPublisher().current.state is SyncState.IDLE

    def test_listeners_receive_updates(self) -> None:
        publisher = SyncStatusPublisher()
        seen: list[SyncStatus] = []
        publisher.add_listener(seen.append)

        publisher.publish(SyncStatus.syncing(0.5))
        publisher.remove_listener(seen.append)
        publisher.publish(SyncStatus.idle())

        assert [s.state for s in seen] == [SyncState.SYNCING]

    def test_listener_error_is_contained(self) -> None:
        publisher = SyncStatusPublisher()

        def broken(status: SyncStatus) -> None:
            raise RuntimeError("listener bug")

        publisher.add_listener(broken)
        publisher.publish(SyncStatus.success(3, NOW))
        assert publisher.current.synced_count == 3

    @pytest.mark.asyncio
    async def test_subscribe_yields_current_then_updates(self) -> None:
        publisher = SyncStatusPublisher()
        publisher.publish(SyncStatus.syncing(0.2))
        stream = publisher.subscribe()

        first = await stream.__anext__()
        publisher.publish(SyncStatus.failed(ErrorInfo(message="nope"), NOW))
        second = await stream.__anext__()

        assert first.progress == 0.2
        assert second.state is SyncState.ERROR
        assert publisher.subscriber_count == 1
        await stream.aclose()
        assert publisher.subscriber_count == 0

    def test_progress_is_clamped(self) -> None:
        assert SyncStatus.syncing(1.7).progress == 1.0
        assert SyncStatus.syncing(-0.2).progress == 0.0

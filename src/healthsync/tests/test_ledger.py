"""Tests for the in-memory ledger and the Retry Queue."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from src.healthsync.base import SyncRecord, SyncRecordStatus
from src.healthsync.delivery.retry_queue import RetryQueue
from src.healthsync.ledger.memory import MemoryLedger
from src.healthsync.tests.factories import NOW, TEST_USER_ID, make_sample, make_samples


class TestLedgerSave:
    @pytest.mark.asyncio
    async def test_save_is_idempotent(self, ledger: MemoryLedger) -> None:
        samples = make_samples(3)
        await ledger.save(samples, TEST_USER_ID)
        await ledger.save(samples, TEST_USER_ID)
        assert await ledger.count_all() == 3
        assert await ledger.count_unsynced() == 3

    @pytest.mark.asyncio
    async def test_upsert_never_reverts_synced(self, ledger: MemoryLedger) -> None:
        sample = make_sample()
        await ledger.save([sample], TEST_USER_ID)
        await ledger.mark_synced([sample.id])

        await ledger.save([replace(sample, value=42.0, is_synced=False)], TEST_USER_ID)

        stored = await ledger.get(sample.id)
        assert stored.is_synced
        assert stored.value == 42.0

    @pytest.mark.asyncio
    async def test_upsert_keeps_original_created_at(self, ledger: MemoryLedger) -> None:
        sample = make_sample(created_at=NOW - timedelta(days=2))
        await ledger.save([sample], TEST_USER_ID)
        await ledger.save([replace(sample, created_at=NOW)], TEST_USER_ID)
        stored = await ledger.get(sample.id)
        assert stored.created_at == NOW - timedelta(days=2)


# ---------------------------------------------------------------------------
# Unsynced reads
# ---------------------------------------------------------------------------


class TestLedgerUnsynced:
    @pytest.mark.asyncio
    async def test_oldest_first(self, ledger: MemoryLedger) -> None:
        samples = make_samples(5)
        await ledger.save(list(reversed(samples)), TEST_USER_ID)
        fetched = await ledger.fetch_unsynced()
        assert [s.id for s in fetched] == [s.id for s in samples]

    @pytest.mark.asyncio
    async def test_pages_concatenate_to_unpaged(self, ledger: MemoryLedger) -> None:
        await ledger.save(make_samples(23), TEST_USER_ID)
        unpaged = [s.id for s in await ledger.fetch_unsynced()]

        paged = []
        for offset in range(0, 23, 10):
            paged.extend(s.id for s in await ledger.fetch_unsynced(limit=10, offset=offset))

        assert paged == unpaged

    @pytest.mark.asyncio
    async def test_mark_synced_counts_changes(self, ledger: MemoryLedger) -> None:
        samples = make_samples(4)
        await ledger.save(samples, TEST_USER_ID)

        assert await ledger.mark_synced([samples[0].id, samples[1].id]) == 2
        assert await ledger.mark_synced([samples[0].id]) == 0
        assert await ledger.count_unsynced() == 2

    @pytest.mark.asyncio
    async def test_fetch_returns_copies(self, ledger: MemoryLedger) -> None:
        sample = make_sample()
        await ledger.save([sample], TEST_USER_ID)
        (fetched,) = await ledger.fetch_unsynced()
        fetched.is_synced = True
        assert await ledger.count_unsynced() == 1


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


class TestLedgerRetention:
    @pytest.mark.asyncio
    async def test_deletes_only_old_synced_rows(self, ledger: MemoryLedger) -> None:
        old_synced = make_sample(created_at=NOW - timedelta(days=40))
        old_unsynced = make_sample(created_at=NOW - timedelta(days=40))
        fresh_synced = make_sample(created_at=NOW - timedelta(days=1))
        await ledger.save([old_synced, old_unsynced, fresh_synced], TEST_USER_ID)
        await ledger.mark_synced([old_synced.id, fresh_synced.id])

        deleted = await ledger.delete_older_than(NOW - timedelta(days=30))

        assert deleted == 1
        assert await ledger.get(old_synced.id) is None
        assert await ledger.get(old_unsynced.id) is not None
        assert await ledger.get(fresh_synced.id) is not None


class TestLedgerHistory:
    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, ledger: MemoryLedger) -> None:
        for i in range(5):
            await ledger.append_history(
                SyncRecord(
                    status=SyncRecordStatus.SUCCESS,
                    synced_count=i,
                    duration=1.0,
                    timestamp=NOW + timedelta(minutes=i),
                )
            )
        history = await ledger.list_history(limit=3)
        assert [r.synced_count for r in history] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_last_success_skips_failures(self, ledger: MemoryLedger) -> None:
        await ledger.append_history(
            SyncRecord(SyncRecordStatus.SUCCESS, 3, 2.0, timestamp=NOW - timedelta(hours=2))
        )
        await ledger.append_history(
            SyncRecord(SyncRecordStatus.FAILED, 0, 1.0, "boom", timestamp=NOW)
        )
        record = await ledger.last_success_record()
        assert record.timestamp == NOW - timedelta(hours=2)
        assert record.synced_count == 3

    @pytest.mark.asyncio
    async def test_no_success_yet(self, ledger: MemoryLedger) -> None:
        assert await ledger.last_success_record() is None


# ---------------------------------------------------------------------------
# Retry Queue
# ---------------------------------------------------------------------------


class TestRetryQueue:
    @pytest.mark.asyncio
    async def test_add_and_drain(self) -> None:
        queue = RetryQueue()
        first, second = make_samples(2), make_samples(3)
        await queue.add(first)
        await queue.add(second)
        assert await queue.count() == 5

        drained = await queue.remove_all()
        assert [s.id for s in drained] == [s.id for s in first + second]
        assert await queue.count() == 0
        assert await queue.remove_all() == []

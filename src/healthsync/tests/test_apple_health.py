"""Tests for the Apple Health export source and the source registry."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.healthsync.acquisition import (
    AppleHealthExportSource,
    MemoryHealthSource,
    get_source,
    stable_sample_id,
)
from src.healthsync.acquisition.apple_health import parse_export_datetime, parse_export_xml
from src.healthsync.base import HealthDataType, SyncRecordStatus
from src.healthsync.errors import AcquisitionQueryError, AcquisitionUnavailableError

EXPORT_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<HealthData locale="en_US">
  <Record type="HKQuantityTypeIdentifierStepCount" sourceName="Watch" unit="count"
          creationDate="2026-02-22 09:05:00 -0800"
          startDate="2026-02-22 09:00:00 -0800" endDate="2026-02-22 09:05:00 -0800"
          value="412"/>
  <Record type="HKQuantityTypeIdentifierStepCount" sourceName="Watch" unit="count"
          creationDate="2026-02-22 08:05:00 -0800"
          startDate="2026-02-22 08:00:00 -0800" endDate="2026-02-22 08:05:00 -0800"
          value="120"/>
  <Record type="HKQuantityTypeIdentifierHeartRate" sourceName="Watch" unit="count/min"
          startDate="2026-02-22 09:01:00 -0800" endDate="2026-02-22 09:01:00 -0800"
          value="64">
    <MetadataEntry key="HKMetadataKeyHeartRateMotionContext" value="1"/>
  </Record>
  <Record type="HKCategoryTypeIdentifierSleepAnalysis" sourceName="Watch"
          startDate="2026-02-21 23:00:00 -0800" endDate="2026-02-22 06:30:00 -0800"
          value="HKCategoryValueSleepAnalysisAsleepCore"/>
  <Record type="HKQuantityTypeIdentifierStepCount" sourceName="Watch" unit="count"
          startDate="garbage" endDate="2026-02-22 09:05:00 -0800" value="1"/>
  <Record type="HKQuantityTypeIdentifierUnmappedThing" sourceName="Watch"
          startDate="2026-02-22 09:00:00 -0800" endDate="2026-02-22 09:05:00 -0800"
          value="3"/>
</HealthData>
"""

DAY_START = datetime(2026, 2, 21, tzinfo=timezone.utc)
DAY_END = datetime(2026, 2, 23, tzinfo=timezone.utc)


def _write_export(path: Path, content: bytes = EXPORT_XML) -> Path:
    path.write_bytes(content)
    return path


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseExport:
    def test_parse_datetime_apple_format(self) -> None:
        dt = parse_export_datetime("2026-02-22 23:00:00 -0800")
        assert dt.utcoffset() == timedelta(hours=-8)
        assert dt.astimezone(timezone.utc) == datetime(2026, 2, 23, 7, tzinfo=timezone.utc)

    def test_parse_datetime_iso_fallback(self) -> None:
        dt = parse_export_datetime("2026-02-22T10:00:00Z")
        assert dt == datetime(2026, 2, 22, 10, tzinfo=timezone.utc)

    def test_groups_and_sorts_by_type(self) -> None:
        parsed = parse_export_xml(EXPORT_XML)
        steps = parsed[HealthDataType.STEP_COUNT]
        assert [s.value for s in steps] == [120.0, 412.0]
        assert steps[0].start_date == datetime(2026, 2, 22, 16, tzinfo=timezone.utc)
        assert steps[0].tz_offset == "-08:00"
        assert steps[0].source_bundle == "Watch"
        assert steps[0].unit == "count"

    def test_metadata_entries_kept(self) -> None:
        (hr,) = parse_export_xml(EXPORT_XML)[HealthDataType.HEART_RATE]
        assert hr.metadata == {"HKMetadataKeyHeartRateMotionContext": "1"}
        assert hr.value == 64.0

    def test_sleep_value_is_duration_minutes(self) -> None:
        (sleep,) = parse_export_xml(EXPORT_XML)[HealthDataType.SLEEP_ANALYSIS]
        assert sleep.value == 450.0
        assert sleep.unit == "min"
        assert sleep.metadata == {"sleepStage": "HKCategoryValueSleepAnalysisAsleepCore"}

    def test_unknown_and_bad_records_skipped(self) -> None:
        parsed = parse_export_xml(EXPORT_XML)
        assert set(parsed) == {
            HealthDataType.STEP_COUNT,
            HealthDataType.HEART_RATE,
            HealthDataType.SLEEP_ANALYSIS,
        }
        assert len(parsed[HealthDataType.STEP_COUNT]) == 2

    def test_ids_are_stable_across_parses(self) -> None:
        first = parse_export_xml(EXPORT_XML)[HealthDataType.STEP_COUNT]
        second = parse_export_xml(EXPORT_XML)[HealthDataType.STEP_COUNT]
        assert [s.id for s in first] == [s.id for s in second]
        assert len({s.id for s in first}) == 2

    def test_malformed_xml_raises(self) -> None:
        with pytest.raises(AcquisitionQueryError):
            parse_export_xml(b"<HealthData><Record")

    def test_stable_id_depends_on_content(self) -> None:
        start = datetime(2026, 2, 22, tzinfo=timezone.utc)
        a = stable_sample_id(HealthDataType.STEP_COUNT, start, start, 1.0, "count")
        b = stable_sample_id(HealthDataType.STEP_COUNT, start, start, 2.0, "count")
        assert a != b
        assert a == stable_sample_id(HealthDataType.STEP_COUNT, start, start, 1.0, "count")


# ---------------------------------------------------------------------------
# Source behaviour
# ---------------------------------------------------------------------------


class TestAppleHealthExportSource:
    @pytest.mark.asyncio
    async def test_fetch_window_and_limit(self, tmp_path: Path) -> None:
        source = AppleHealthExportSource(_write_export(tmp_path / "export.xml"))

        all_steps = await source.fetch(HealthDataType.STEP_COUNT, DAY_START, DAY_END)
        limited = await source.fetch(HealthDataType.STEP_COUNT, DAY_START, DAY_END, limit=1)
        late = await source.fetch(
            HealthDataType.STEP_COUNT,
            datetime(2026, 2, 22, 16, 30, tzinfo=timezone.utc),
            DAY_END,
        )

        assert len(all_steps) == 2
        assert [s.value for s in limited] == [120.0]
        assert [s.value for s in late] == [412.0]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path) -> None:
        source = AppleHealthExportSource(tmp_path / "missing.xml")
        assert not source.is_available()
        with pytest.raises(AcquisitionUnavailableError):
            await source.request_authorization([HealthDataType.STEP_COUNT])
        with pytest.raises(AcquisitionUnavailableError):
            await source.fetch(HealthDataType.STEP_COUNT, DAY_START, DAY_END)

    @pytest.mark.asyncio
    async def test_unreadable_export_is_unavailable(self, tmp_path: Path) -> None:
        # a directory stats fine but cannot be read as a file
        source = AppleHealthExportSource(tmp_path)
        with pytest.raises(AcquisitionUnavailableError, match="Cannot read"):
            await source.fetch(HealthDataType.STEP_COUNT, DAY_START, DAY_END)

    @pytest.mark.asyncio
    async def test_unreadable_export_skips_types_in_pass(
        self, tmp_path: Path, make_orchestrator, ledger
    ) -> None:
        orchestrator = make_orchestrator(source=AppleHealthExportSource(tmp_path))

        record = await orchestrator.perform_manual_sync()

        assert record.status is SyncRecordStatus.SUCCESS
        assert record.synced_count == 0
        assert await ledger.count_all() == 0

    @pytest.mark.asyncio
    async def test_authorization_with_file(self, tmp_path: Path) -> None:
        source = AppleHealthExportSource(_write_export(tmp_path / "export.xml"))
        await source.request_authorization([HealthDataType.STEP_COUNT])
        source.clear_authorization_cache()

    @pytest.mark.asyncio
    async def test_observation_fires_on_new_records(self, tmp_path: Path) -> None:
        path = _write_export(tmp_path / "export.xml")
        source = AppleHealthExportSource(path, poll_interval=0.01)
        await source.fetch(HealthDataType.STEP_COUNT, DAY_START, DAY_END)

        notified: list[HealthDataType] = []
        source.set_observation_handler(notified.append)
        await source.start_observing([HealthDataType.STEP_COUNT, HealthDataType.HEART_RATE])
        try:
            extra = b"""  <Record type="HKQuantityTypeIdentifierStepCount" sourceName="Watch"
          unit="count" startDate="2026-02-22 10:00:00 -0800"
          endDate="2026-02-22 10:05:00 -0800" value="99"/>
</HealthData>
"""
            _write_export(path, EXPORT_XML.replace(b"</HealthData>\n", extra))
            stat = path.stat()
            os.utime(path, (stat.st_atime, stat.st_mtime + 10))

            for _ in range(100):
                if notified:
                    break
                await asyncio.sleep(0.01)
        finally:
            await source.stop_observing()

        assert notified == [HealthDataType.STEP_COUNT]


class TestSourceRegistry:
    def test_lookup(self) -> None:
        assert get_source("memory") is MemoryHealthSource
        assert get_source("apple_health_export") is AppleHealthExportSource

    def test_unknown_source(self) -> None:
        with pytest.raises(KeyError, match="Available"):
            get_source("fitbit")

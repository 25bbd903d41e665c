"""Apple Health export source.

Apple does not provide a server-side API; data leaves the device as an
``export.xml`` produced by the Health app (or re-exported periodically by a
Shortcut).  This source reads that file and serves it through the
HealthDataSource contract:

1. **fetch**: ``Record`` elements are parsed once per file version, mapped
   onto HealthDataType and filtered by start date.
2. **observation**: the file's mtime is polled; when it changes, the file is
   re-parsed and the handler fires for every observed type that gained
   records.

Category records (sleep, mindful sessions) carry no numeric value; their
value is the interval duration in minutes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
from xml.etree import ElementTree as ET

from src.healthsync.acquisition.base import HealthDataSource, stable_sample_id
from src.healthsync.base import HealthDataSample, HealthDataType, utc_now
from src.healthsync.errors import (
    AcquisitionError,
    AcquisitionQueryError,
    AcquisitionUnavailableError,
)

logger = logging.getLogger("healthstack.acquisition.apple_health")

# HKQuantityTypeIdentifier / HKCategoryTypeIdentifier → HealthDataType
_HK_TYPE_MAP: dict[str, HealthDataType] = {
    "HKQuantityTypeIdentifierHeight": HealthDataType.HEIGHT,
    "HKQuantityTypeIdentifierBodyMass": HealthDataType.BODY_MASS,
    "HKQuantityTypeIdentifierBodyMassIndex": HealthDataType.BODY_MASS_INDEX,
    "HKQuantityTypeIdentifierBodyFatPercentage": HealthDataType.BODY_FAT_PERCENTAGE,
    "HKQuantityTypeIdentifierLeanBodyMass": HealthDataType.LEAN_BODY_MASS,
    "HKQuantityTypeIdentifierWaistCircumference": HealthDataType.WAIST_CIRCUMFERENCE,
    "HKQuantityTypeIdentifierStepCount": HealthDataType.STEP_COUNT,
    "HKQuantityTypeIdentifierDistanceWalkingRunning": HealthDataType.DISTANCE_WALKING_RUNNING,
    "HKQuantityTypeIdentifierFlightsClimbed": HealthDataType.FLIGHTS_CLIMBED,
    "HKQuantityTypeIdentifierActiveEnergyBurned": HealthDataType.ACTIVE_ENERGY_BURNED,
    "HKQuantityTypeIdentifierBasalEnergyBurned": HealthDataType.BASAL_ENERGY_BURNED,
    "HKQuantityTypeIdentifierAppleExerciseTime": HealthDataType.EXERCISE_TIME,
    "HKQuantityTypeIdentifierAppleStandTime": HealthDataType.STAND_HOURS,
    "HKQuantityTypeIdentifierHeartRate": HealthDataType.HEART_RATE,
    "HKQuantityTypeIdentifierRestingHeartRate": HealthDataType.RESTING_HEART_RATE,
    "HKQuantityTypeIdentifierHeartRateVariabilitySDNN": HealthDataType.HEART_RATE_VARIABILITY,
    "HKQuantityTypeIdentifierBloodPressureSystolic": HealthDataType.BLOOD_PRESSURE_SYSTOLIC,
    "HKQuantityTypeIdentifierBloodPressureDiastolic": HealthDataType.BLOOD_PRESSURE_DIASTOLIC,
    "HKQuantityTypeIdentifierOxygenSaturation": HealthDataType.OXYGEN_SATURATION,
    "HKCategoryTypeIdentifierSleepAnalysis": HealthDataType.SLEEP_ANALYSIS,
    "HKQuantityTypeIdentifierDietaryEnergyConsumed": HealthDataType.DIETARY_ENERGY,
    "HKQuantityTypeIdentifierDietaryProtein": HealthDataType.DIETARY_PROTEIN,
    "HKQuantityTypeIdentifierDietaryCarbohydrates": HealthDataType.DIETARY_CARBOHYDRATES,
    "HKQuantityTypeIdentifierDietaryFatTotal": HealthDataType.DIETARY_FAT,
    "HKQuantityTypeIdentifierDietaryFiber": HealthDataType.DIETARY_FIBER,
    "HKQuantityTypeIdentifierDietarySugar": HealthDataType.DIETARY_SUGAR,
    "HKQuantityTypeIdentifierDietaryWater": HealthDataType.DIETARY_WATER,
    "HKQuantityTypeIdentifierRespiratoryRate": HealthDataType.RESPIRATORY_RATE,
    "HKQuantityTypeIdentifierVO2Max": HealthDataType.VO2_MAX,
    "HKQuantityTypeIdentifierBloodGlucose": HealthDataType.BLOOD_GLUCOSE,
    "HKQuantityTypeIdentifierBodyTemperature": HealthDataType.BODY_TEMPERATURE,
    "HKCategoryTypeIdentifierMindfulSession": HealthDataType.MINDFUL_MINUTES,
}

# Category types whose value is an enum label, not a number
_DURATION_TYPES = {HealthDataType.SLEEP_ANALYSIS, HealthDataType.MINDFUL_MINUTES}

_EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"


def parse_export_datetime(value: str) -> datetime:
    """Parse Apple's ``2026-02-22 23:00:00 -0800`` format (ISO also accepted)."""
    value = value.strip()
    try:
        return datetime.strptime(value, _EXPORT_DATE_FORMAT)
    except ValueError:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _offset_string(dt: datetime) -> str | None:
    offset = dt.utcoffset()
    if offset is None:
        return None
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    minutes = abs(minutes)
    return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def parse_export_xml(xml_bytes: bytes) -> dict[HealthDataType, list[HealthDataSample]]:
    """Parse an Apple Health ``export.xml`` into samples grouped by type.

    Unknown record types and records with unparseable dates or values are
    skipped.  Each group is sorted by start date ascending.

    Raises:
        AcquisitionQueryError: If the XML is malformed.
    """
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        logger.error("Apple Health XML parse error: %s", exc)
        raise AcquisitionQueryError(f"Invalid Apple Health XML: {exc}") from exc

    by_type: dict[HealthDataType, list[HealthDataSample]] = defaultdict(list)
    skipped = 0

    for record in root.iter("Record"):
        data_type = _HK_TYPE_MAP.get(record.get("type", ""))
        if data_type is None:
            continue
        try:
            start = parse_export_datetime(record.get("startDate", ""))
            end = parse_export_datetime(record.get("endDate", "") or record.get("startDate", ""))
            created_raw = record.get("creationDate")
            created = parse_export_datetime(created_raw) if created_raw else utc_now()
            if data_type in _DURATION_TYPES:
                value = round((end - start).total_seconds() / 60.0, 3)
                unit = "min"
            else:
                value = float(record.get("value", ""))
                unit = record.get("unit") or data_type.unit
        except ValueError:
            skipped += 1
            continue

        metadata = {
            entry.get("key", ""): entry.get("value", "")
            for entry in record.findall("MetadataEntry")
            if entry.get("key")
        }
        if data_type is HealthDataType.SLEEP_ANALYSIS and record.get("value"):
            metadata["sleepStage"] = record.get("value", "")

        source = record.get("sourceName")
        by_type[data_type].append(
            HealthDataSample(
                id=stable_sample_id(data_type, start, end, value, unit, source),
                type=data_type,
                value=value,
                unit=unit,
                start_date=start.astimezone(timezone.utc),
                end_date=end.astimezone(timezone.utc),
                source_bundle=source,
                metadata=metadata or None,
                created_at=created.astimezone(timezone.utc),
                tz_offset=_offset_string(start),
            )
        )

    for samples in by_type.values():
        samples.sort(key=lambda s: s.start_date)

    logger.info(
        "Apple Health XML: parsed %d records across %d types (%d skipped)",
        sum(len(v) for v in by_type.values()), len(by_type), skipped,
    )
    return dict(by_type)


class AppleHealthExportSource(HealthDataSource):
    """Serve samples from an Apple Health ``export.xml`` on disk."""

    SOURCE_ID = "apple_health_export"
    DISPLAY_NAME = "Apple Health export"

    def __init__(self, export_path: str | Path, poll_interval: float = 60.0) -> None:
        """Initialize the source.

        Args:
            export_path:   Path to export.xml.
            poll_interval: Seconds between mtime checks while observing.
        """
        super().__init__()
        self._path = Path(export_path)
        self._poll_interval = poll_interval
        self._cache: dict[HealthDataType, list[HealthDataSample]] | None = None
        self._cache_mtime: float | None = None
        self._authorized: set[HealthDataType] | None = None
        self._observed: set[HealthDataType] = set()
        self._poll_task: asyncio.Task | None = None
        self._load_lock = asyncio.Lock()

    def is_available(self) -> bool:
        return self._path.is_file()

    async def request_authorization(self, types: Iterable[HealthDataType]) -> None:
        """Exports are readable by whoever can read the file; just check it exists."""
        if not self.is_available():
            raise AcquisitionUnavailableError(f"Apple Health export not found: {self._path}")
        self._authorized = set(types)
        logger.info("Apple Health export authorized for %d types", len(self._authorized))

    def clear_authorization_cache(self) -> None:
        self._authorized = None

    async def fetch(
        self,
        data_type: HealthDataType,
        start: datetime,
        end: datetime,
        limit: int | None = None,
    ) -> list[HealthDataSample]:
        records = await self._load()
        matching = [s for s in records.get(data_type, []) if start <= s.start_date <= end]
        logger.debug(
            "Fetched %d %s samples from %s to %s", len(matching), data_type.value, start, end
        )
        return matching[:limit] if limit is not None else matching

    async def start_observing(self, types: Iterable[HealthDataType]) -> None:
        self._observed = set(types)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="apple-health-poll")
        logger.info("Observing export for %d data types", len(self._observed))

    async def stop_observing(self) -> None:
        self._observed.clear()
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _current_mtime(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise AcquisitionUnavailableError(
                f"Cannot stat Apple Health export {self._path}: {exc}"
            ) from exc

    async def _load(self) -> dict[HealthDataType, list[HealthDataSample]]:
        async with self._load_lock:
            mtime = self._current_mtime()
            if mtime is None:
                raise AcquisitionUnavailableError(f"Apple Health export not found: {self._path}")
            if self._cache is None or mtime != self._cache_mtime:
                try:
                    xml_bytes = await asyncio.to_thread(self._path.read_bytes)
                except OSError as exc:
                    raise AcquisitionUnavailableError(
                        f"Cannot read Apple Health export {self._path}: {exc}"
                    ) from exc
                self._cache = await asyncio.to_thread(parse_export_xml, xml_bytes)
                self._cache_mtime = mtime
            return self._cache

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                mtime = self._current_mtime()
            except AcquisitionUnavailableError as exc:
                logger.warning("%s", exc)
                continue
            if mtime is None or mtime == self._cache_mtime:
                continue

            before = {t: len(v) for t, v in (self._cache or {}).items()}
            try:
                after = await self._load()
            except AcquisitionError as exc:
                logger.warning("Export changed but could not be read: %s", exc)
                continue

            for data_type in sorted(self._observed, key=lambda t: t.value):
                if len(after.get(data_type, [])) > before.get(data_type, 0):
                    logger.info("New %s data in export", data_type.value)
                    await self._notify(data_type)

"""Canonical data models for the HealthStack sync engine.

Every collaborator (acquisition sources, ledgers, the delivery engine and the
orchestrator) exchanges these types.  They are plain dataclasses and enums with
no I/O or framework dependencies, so they can be shared by the FastAPI
layer, the Postgres ledger and the test suite alike.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID, uuid4

from src.healthsync.errors import ErrorInfo, InvalidConfigurationError

logger = logging.getLogger("healthstack")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with a trailing ``Z``.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class HealthDataCategory(str, Enum):
    ACTIVITY = "activity"
    CARDIOVASCULAR = "cardiovascular"
    SLEEP = "sleep"
    NUTRITION = "nutrition"
    BODY_MEASUREMENTS = "bodyMeasurements"
    RESPIRATORY = "respiratory"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return _CATEGORY_DISPLAY_NAMES[self]


_CATEGORY_DISPLAY_NAMES: dict[HealthDataCategory, str] = {
    HealthDataCategory.ACTIVITY: "Activity & Fitness",
    HealthDataCategory.CARDIOVASCULAR: "Cardiovascular",
    HealthDataCategory.SLEEP: "Sleep",
    HealthDataCategory.NUTRITION: "Nutrition",
    HealthDataCategory.BODY_MEASUREMENTS: "Body Measurements",
    HealthDataCategory.RESPIRATORY: "Respiratory",
    HealthDataCategory.OTHER: "Other",
}


class HealthDataType(str, Enum):
    """Type tag carried by every sample.

    Values are the wire identifiers sent to the gateway.
    """

    # Body measurements
    HEIGHT = "height"
    BODY_MASS = "bodyMass"
    BODY_MASS_INDEX = "bodyMassIndex"
    BODY_FAT_PERCENTAGE = "bodyFatPercentage"
    LEAN_BODY_MASS = "leanBodyMass"
    WAIST_CIRCUMFERENCE = "waistCircumference"

    # Activity
    STEP_COUNT = "stepCount"
    DISTANCE_WALKING_RUNNING = "distanceWalkingRunning"
    FLIGHTS_CLIMBED = "flightsClimbed"
    ACTIVE_ENERGY_BURNED = "activeEnergyBurned"
    BASAL_ENERGY_BURNED = "basalEnergyBurned"
    EXERCISE_TIME = "exerciseTime"
    STAND_HOURS = "standHours"

    # Cardiovascular
    HEART_RATE = "heartRate"
    RESTING_HEART_RATE = "restingHeartRate"
    HEART_RATE_VARIABILITY = "heartRateVariability"
    BLOOD_PRESSURE_SYSTOLIC = "bloodPressureSystolic"
    BLOOD_PRESSURE_DIASTOLIC = "bloodPressureDiastolic"
    OXYGEN_SATURATION = "oxygenSaturation"

    # Sleep
    SLEEP_ANALYSIS = "sleepAnalysis"
    TIME_IN_BED = "timeInBed"

    # Nutrition
    DIETARY_ENERGY = "dietaryEnergy"
    DIETARY_PROTEIN = "dietaryProtein"
    DIETARY_CARBOHYDRATES = "dietaryCarbohydrates"
    DIETARY_FAT = "dietaryFat"
    DIETARY_FIBER = "dietaryFiber"
    DIETARY_SUGAR = "dietarySugar"
    DIETARY_WATER = "dietaryWater"

    # Respiratory
    RESPIRATORY_RATE = "respiratoryRate"
    VO2_MAX = "vo2Max"

    # Other
    BLOOD_GLUCOSE = "bloodGlucose"
    BODY_TEMPERATURE = "bodyTemperature"
    MINDFUL_MINUTES = "mindfulMinutes"

    @property
    def category(self) -> HealthDataCategory:
        return _TYPE_CATEGORIES[self]

    @property
    def unit(self) -> str:
        """Canonical unit string for values of this type."""
        return _TYPE_UNITS[self]


_TYPE_CATEGORIES: dict[HealthDataType, HealthDataCategory] = {
    **dict.fromkeys(
        [
            HealthDataType.HEIGHT,
            HealthDataType.BODY_MASS,
            HealthDataType.BODY_MASS_INDEX,
            HealthDataType.BODY_FAT_PERCENTAGE,
            HealthDataType.LEAN_BODY_MASS,
            HealthDataType.WAIST_CIRCUMFERENCE,
        ],
        HealthDataCategory.BODY_MEASUREMENTS,
    ),
    **dict.fromkeys(
        [
            HealthDataType.STEP_COUNT,
            HealthDataType.DISTANCE_WALKING_RUNNING,
            HealthDataType.FLIGHTS_CLIMBED,
            HealthDataType.ACTIVE_ENERGY_BURNED,
            HealthDataType.BASAL_ENERGY_BURNED,
            HealthDataType.EXERCISE_TIME,
            HealthDataType.STAND_HOURS,
        ],
        HealthDataCategory.ACTIVITY,
    ),
    **dict.fromkeys(
        [
            HealthDataType.HEART_RATE,
            HealthDataType.RESTING_HEART_RATE,
            HealthDataType.HEART_RATE_VARIABILITY,
            HealthDataType.BLOOD_PRESSURE_SYSTOLIC,
            HealthDataType.BLOOD_PRESSURE_DIASTOLIC,
            HealthDataType.OXYGEN_SATURATION,
        ],
        HealthDataCategory.CARDIOVASCULAR,
    ),
    **dict.fromkeys(
        [HealthDataType.SLEEP_ANALYSIS, HealthDataType.TIME_IN_BED],
        HealthDataCategory.SLEEP,
    ),
    **dict.fromkeys(
        [
            HealthDataType.DIETARY_ENERGY,
            HealthDataType.DIETARY_PROTEIN,
            HealthDataType.DIETARY_CARBOHYDRATES,
            HealthDataType.DIETARY_FAT,
            HealthDataType.DIETARY_FIBER,
            HealthDataType.DIETARY_SUGAR,
            HealthDataType.DIETARY_WATER,
        ],
        HealthDataCategory.NUTRITION,
    ),
    **dict.fromkeys(
        [HealthDataType.RESPIRATORY_RATE, HealthDataType.VO2_MAX],
        HealthDataCategory.RESPIRATORY,
    ),
    **dict.fromkeys(
        [
            HealthDataType.BLOOD_GLUCOSE,
            HealthDataType.BODY_TEMPERATURE,
            HealthDataType.MINDFUL_MINUTES,
        ],
        HealthDataCategory.OTHER,
    ),
}

_TYPE_UNITS: dict[HealthDataType, str] = {
    HealthDataType.HEIGHT: "cm",
    HealthDataType.BODY_MASS: "kg",
    HealthDataType.BODY_MASS_INDEX: "count",
    HealthDataType.BODY_FAT_PERCENTAGE: "%",
    HealthDataType.LEAN_BODY_MASS: "kg",
    HealthDataType.WAIST_CIRCUMFERENCE: "cm",
    HealthDataType.STEP_COUNT: "count",
    HealthDataType.DISTANCE_WALKING_RUNNING: "m",
    HealthDataType.FLIGHTS_CLIMBED: "count",
    HealthDataType.ACTIVE_ENERGY_BURNED: "kcal",
    HealthDataType.BASAL_ENERGY_BURNED: "kcal",
    HealthDataType.EXERCISE_TIME: "s",
    HealthDataType.STAND_HOURS: "s",
    HealthDataType.HEART_RATE: "count/min",
    HealthDataType.RESTING_HEART_RATE: "count/min",
    HealthDataType.HEART_RATE_VARIABILITY: "ms",
    HealthDataType.BLOOD_PRESSURE_SYSTOLIC: "mmHg",
    HealthDataType.BLOOD_PRESSURE_DIASTOLIC: "mmHg",
    HealthDataType.OXYGEN_SATURATION: "%",
    HealthDataType.SLEEP_ANALYSIS: "min",
    HealthDataType.TIME_IN_BED: "min",
    HealthDataType.DIETARY_ENERGY: "kcal",
    HealthDataType.DIETARY_PROTEIN: "g",
    HealthDataType.DIETARY_CARBOHYDRATES: "g",
    HealthDataType.DIETARY_FAT: "g",
    HealthDataType.DIETARY_FIBER: "g",
    HealthDataType.DIETARY_SUGAR: "g",
    HealthDataType.DIETARY_WATER: "mL",
    HealthDataType.RESPIRATORY_RATE: "count/min",
    HealthDataType.VO2_MAX: "mL/kg·min",
    HealthDataType.BLOOD_GLUCOSE: "mg/dL",
    HealthDataType.BODY_TEMPERATURE: "degC",
    HealthDataType.MINDFUL_MINUTES: "min",
}


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------


@dataclass
class HealthDataSample:
    """One time-series sample captured on the device.

    Owned by the ledger once saved.  Saving the same ``id`` again upserts in
    place; ``is_synced`` only ever transitions False → True.

    Attributes:
        id:            Stable client-generated identifier.
        type:          Data type tag.
        value:         Numeric value in ``unit``.
        unit:          Unit string (see HealthDataType.unit).
        start_date:    UTC start of the measurement interval.
        end_date:      UTC end of the measurement interval.
        source_bundle: Identifier of the app/device that produced the sample.
        metadata:      Optional string-keyed metadata.
        is_synced:     True once the gateway acknowledged the sample.
        created_at:    When the sample entered the ledger pipeline.
        tz_offset:     UTC offset captured with the sample, e.g. "+02:00".
    """

    type: HealthDataType
    value: float
    unit: str
    start_date: datetime
    end_date: datetime
    id: UUID = field(default_factory=uuid4)
    source_bundle: str | None = None
    metadata: dict[str, str] | None = None
    is_synced: bool = False
    created_at: datetime = field(default_factory=utc_now)
    tz_offset: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the gateway's JSON sample shape."""
        return {
            "id": str(self.id),
            "type": self.type.value,
            "value": self.value,
            "unit": self.unit,
            "startDate": isoformat_z(self.start_date),
            "endDate": isoformat_z(self.end_date),
            "sourceBundle": self.source_bundle,
            "metadata": self.metadata,
            "isSynced": self.is_synced,
            "createdAt": isoformat_z(self.created_at),
            "timezone": self.tz_offset,
        }

    def synced(self) -> "HealthDataSample":
        return replace(self, is_synced=True)


# ---------------------------------------------------------------------------
# Sync history
# ---------------------------------------------------------------------------


class SyncRecordStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partialSuccess"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncRecord:
    """Immutable, append-only history entry written once per pass.

    Attributes:
        status:        Outcome of the pass.
        synced_count:  Samples acknowledged during the pass.
        duration:      Wall-clock seconds the pass took.
        error_message: Failure description when status is FAILED.
        id:            Record identifier.
        timestamp:     When the record was written (UTC).
    """

    status: SyncRecordStatus
    synced_count: int
    duration: float
    error_message: str | None = None
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Sync frequency
# ---------------------------------------------------------------------------


class SyncFrequency(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"
    MANUAL = "manual"

    @property
    def display_name(self) -> str:
        return {
            SyncFrequency.REALTIME: "Real-time",
            SyncFrequency.HOURLY: "Hourly",
            SyncFrequency.DAILY: "Daily",
            SyncFrequency.MANUAL: "Manual Only",
        }[self]

    @property
    def interval(self) -> float | None:
        """Seconds between periodic passes; None for push-driven or manual."""
        return {
            SyncFrequency.HOURLY: 3600.0,
            SyncFrequency.DAILY: 86400.0,
        }.get(self)


class AutoSyncMode(str, Enum):
    STOPPED = "stopped"
    REALTIME = "realtime"
    PERIODIC = "periodic"


# ---------------------------------------------------------------------------
# Published status
# ---------------------------------------------------------------------------


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class SyncStatus:
    """Transient published state of the sync engine.

    Use the classmethod constructors rather than building instances directly.
    """

    state: SyncState
    progress: float | None = None
    synced_count: int | None = None
    timestamp: datetime | None = None
    error: ErrorInfo | None = None

    @classmethod
    def idle(cls) -> "SyncStatus":
        return cls(state=SyncState.IDLE)

    @classmethod
    def syncing(cls, progress: float) -> "SyncStatus":
        return cls(state=SyncState.SYNCING, progress=min(max(progress, 0.0), 1.0))

    @classmethod
    def success(cls, synced_count: int, timestamp: datetime | None = None) -> "SyncStatus":
        return cls(
            state=SyncState.SUCCESS,
            synced_count=synced_count,
            timestamp=timestamp or utc_now(),
        )

    @classmethod
    def failed(cls, error: ErrorInfo, timestamp: datetime | None = None) -> "SyncStatus":
        return cls(state=SyncState.ERROR, error=error, timestamp=timestamp or utc_now())

    @property
    def is_syncing(self) -> bool:
        return self.state is SyncState.SYNCING

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "progress": self.progress,
            "synced_count": self.synced_count,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "error": self.error.to_dict() if self.error else None,
        }


# ---------------------------------------------------------------------------
# Gateway configuration and delivery results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayConfig:
    """Connection settings for the remote gateway.

    Attributes:
        base_url: Gateway root, e.g. ``https://gateway.example.com``.
        port:     Optional port, applied only when ``base_url`` has none.
        api_key:  Sent as ``X-API-Key`` when set.
        username: HTTP Basic username (used together with ``password``).
        password: HTTP Basic password.
    """

    base_url: str
    port: int | None = None
    api_key: str | None = None
    username: str | None = None
    password: str | None = None

    def validate(self) -> None:
        """Check the URL is well formed.

        Scheme security is enforced separately by the delivery engine so a
        plain-http URL fails with InsecureConnectionError, not this one.

        Raises:
            InvalidConfigurationError: If the URL cannot be parsed or has no host.
        """
        try:
            parts = urlsplit(self.base_url.strip())
        except ValueError as exc:
            raise InvalidConfigurationError(f"Malformed gateway URL: {exc}") from exc
        if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
            raise InvalidConfigurationError(
                f"Gateway URL must include a scheme and host, got {self.base_url!r}"
            )
        if self.port is not None and not (0 < self.port < 65536):
            raise InvalidConfigurationError(f"Gateway port out of range: {self.port}")

    @property
    def is_secure(self) -> bool:
        return urlsplit(self.base_url.strip()).scheme.lower() == "https"

    def __repr__(self) -> str:
        # never leak credentials into logs
        return (
            f"GatewayConfig(base_url={self.base_url!r}, port={self.port!r}, "
            f"api_key={'***' if self.api_key else None}, "
            f"username={self.username!r}, password={'***' if self.password else None})"
        )


@dataclass
class DeliveryResult:
    """Aggregate outcome of delivering a list of samples.

    Attributes:
        synced_count: Samples the gateway reported as received.
        failed_count: Remainder of the input that was not accepted.
        synced_ids:   Ids of the accepted samples, in input order.
        message:      Human-readable summary.
    """

    synced_count: int
    failed_count: int
    synced_ids: list[UUID] = field(default_factory=list)
    message: str | None = None

    @property
    def success(self) -> bool:
        return self.failed_count == 0

"""Schemas for the sync control API."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import Field

from src.healthsync.base import (
    AutoSyncMode,
    HealthDataType,
    SyncFrequency,
    SyncRecord,
    SyncRecordStatus,
    SyncState,
    SyncStatus,
)
from src.healthsync.errors import ErrorInfo
from src.models.base import HealthStackBase


class ErrorInfoRead(HealthStackBase):
    message: str
    underlying_error: str | None = None
    recovery_suggestion: str | None = None
    retryable: bool = False
    needs_settings: bool = False

    @classmethod
    def from_info(cls, info: ErrorInfo) -> "ErrorInfoRead":
        return cls(**info.to_dict())


class SyncStatusRead(HealthStackBase):
    state: SyncState
    progress: float | None = None
    synced_count: int | None = None
    timestamp: datetime | None = None
    error: ErrorInfoRead | None = None
    auto_sync_mode: AutoSyncMode | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_status(
        cls,
        status: SyncStatus,
        mode: AutoSyncMode | None = None,
        last_synced_at: datetime | None = None,
    ) -> "SyncStatusRead":
        return cls(
            state=status.state,
            progress=status.progress,
            synced_count=status.synced_count,
            timestamp=status.timestamp,
            error=ErrorInfoRead.from_info(status.error) if status.error else None,
            auto_sync_mode=mode,
            last_synced_at=last_synced_at,
        )


class SyncRecordRead(HealthStackBase):
    id: uuid.UUID
    timestamp: datetime
    status: SyncRecordStatus
    synced_count: int
    error_message: str | None = None
    duration: float

    @classmethod
    def from_record(cls, record: SyncRecord) -> "SyncRecordRead":
        return cls.model_validate(record)


class GatewaySettingsUpdate(HealthStackBase):
    base_url: str = Field(min_length=1)
    port: int | None = Field(default=None, gt=0, lt=65536)
    api_key: str | None = None
    username: str | None = None
    password: str | None = None


class SyncPreferencesUpdate(HealthStackBase):
    """Partial update; omitted fields are left unchanged."""

    frequency: SyncFrequency | None = None
    data_types: dict[HealthDataType, bool] | None = None
    user_id: str | None = None
    gateway: GatewaySettingsUpdate | None = None
    clear_gateway: bool = False


class SyncPreferencesRead(HealthStackBase):
    frequency: SyncFrequency
    enabled_data_types: list[HealthDataType]
    user_id: str
    gateway_configured: bool
    gateway_url: str | None = None


class ConnectionTestRead(HealthStackBase):
    success: bool
    error: ErrorInfoRead | None = None


class RetryQueueRead(HealthStackBase):
    queued_samples: int


class RetryQueueProcessed(HealthStackBase):
    acknowledged: int

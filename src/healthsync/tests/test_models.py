"""Tests for the core data types and runtime preferences."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.config import Settings
from src.healthsync.base import (
    DeliveryResult,
    GatewayConfig,
    HealthDataCategory,
    HealthDataType,
    SyncFrequency,
    isoformat_z,
)
from src.healthsync.errors import InvalidConfigurationError
from src.healthsync.preferences import SyncPreferences
from src.healthsync.tests.factories import make_sample


class TestHealthDataSample:
    def test_payload_shape(self) -> None:
        sample = make_sample(value=12.5)
        payload = sample.to_payload()

        assert payload["id"] == str(sample.id)
        assert payload["type"] == "stepCount"
        assert payload["value"] == 12.5
        assert payload["startDate"] == "2026-03-01T11:00:00Z"
        assert payload["endDate"] == "2026-03-01T11:05:00Z"
        assert payload["timezone"] == "+00:00"
        assert payload["isSynced"] is False

    def test_isoformat_converts_offsets(self) -> None:
        local = datetime(2026, 3, 1, 4, 0, tzinfo=timezone(timedelta(hours=-8)))
        assert isoformat_z(local) == "2026-03-01T12:00:00Z"
        assert isoformat_z(datetime(2026, 3, 1, 12, 0)) == "2026-03-01T12:00:00Z"

    def test_synced_copy(self) -> None:
        sample = make_sample()
        synced = sample.synced()
        assert synced.is_synced
        assert not sample.is_synced
        assert synced.id == sample.id


class TestEnums:
    def test_every_type_has_category_and_unit(self) -> None:
        for data_type in HealthDataType:
            assert isinstance(data_type.category, HealthDataCategory)
            assert data_type.unit

    def test_frequency_intervals(self) -> None:
        assert SyncFrequency.HOURLY.interval == 3600.0
        assert SyncFrequency.DAILY.interval == 86400.0
        assert SyncFrequency.REALTIME.interval is None
        assert SyncFrequency.MANUAL.interval is None

    def test_delivery_result_success(self) -> None:
        assert DeliveryResult(synced_count=3, failed_count=0).success
        assert not DeliveryResult(synced_count=2, failed_count=1).success


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class TestSyncPreferences:
    def test_all_types_enabled_by_default(self) -> None:
        prefs = SyncPreferences()
        assert prefs.enabled_types() == list(HealthDataType)

    def test_disable_types(self) -> None:
        prefs = SyncPreferences()
        prefs.set_data_type_preferences({HealthDataType.VO2_MAX: False})
        assert HealthDataType.VO2_MAX not in prefs.enabled_types()
        assert prefs.get_data_type_preferences()[HealthDataType.VO2_MAX] is False

    def test_user_id_falls_back_to_device(self) -> None:
        prefs = SyncPreferences(device_id="phone-7")
        assert prefs.user_id == "phone-7"
        prefs.user_id = "alex"
        assert prefs.user_id == "alex"

    def test_invalid_gateway_not_stored(self) -> None:
        prefs = SyncPreferences()
        with pytest.raises(InvalidConfigurationError):
            prefs.set_gateway_config(GatewayConfig(base_url="ftp://files"))
        assert prefs.get_gateway_config() is None

    def test_from_settings(self) -> None:
        settings = Settings(
            gateway_base_url="https://gw.example.com",
            gateway_port=8443,
            gateway_api_key="k",
            sync_frequency="hourly",
            enabled_data_types=["stepCount", "heartRate", "notAType"],
            device_id="dev-1",
        )
        prefs = SyncPreferences.from_settings(settings)

        assert prefs.frequency is SyncFrequency.HOURLY
        assert prefs.enabled_types() == [HealthDataType.STEP_COUNT, HealthDataType.HEART_RATE]
        assert prefs.get_gateway_config().port == 8443
        assert prefs.user_id == "dev-1"

    def test_from_settings_local_only(self) -> None:
        prefs = SyncPreferences.from_settings(Settings())
        assert prefs.get_gateway_config() is None
        assert prefs.frequency is SyncFrequency.MANUAL

"""Shared fixtures for sync engine tests."""

from __future__ import annotations

from typing import Callable

import pytest

from src.healthsync.acquisition.memory import MemoryHealthSource
from src.healthsync.base import GatewayConfig, HealthDataType
from src.healthsync.config_loader import SyncConfig, load_sync_config
from src.healthsync.delivery.retry_queue import RetryQueue
from src.healthsync.ledger.memory import MemoryLedger
from src.healthsync.preferences import SyncPreferences
from src.healthsync.sync.orchestrator import SyncOrchestrator
from src.healthsync.tests.factories import (
    GATEWAY_URL,
    NOW,
    TEST_DEVICE_ID,
    TEST_USER_ID,
    GatewayStub,
    RecordingSleep,
    make_gateway,
)


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(base_url=GATEWAY_URL, api_key="secret-key")


@pytest.fixture
def preferences(gateway_config: GatewayConfig) -> SyncPreferences:
    prefs = SyncPreferences(
        gateway_config=gateway_config, user_id=TEST_USER_ID, device_id=TEST_DEVICE_ID
    )
    prefs.enable_only([HealthDataType.STEP_COUNT, HealthDataType.HEART_RATE])
    return prefs


@pytest.fixture
def source() -> MemoryHealthSource:
    return MemoryHealthSource()


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger()


@pytest.fixture
def make_orchestrator(
    source: MemoryHealthSource,
    ledger: MemoryLedger,
    preferences: SyncPreferences,
    sync_config: SyncConfig,
    recording_sleep: RecordingSleep,
) -> Callable[..., SyncOrchestrator]:
    """Factory: orchestrator over in-memory collaborators and a scripted gateway."""

    def _factory(stub: GatewayStub | None = None, **kwargs) -> SyncOrchestrator:
        stub = stub or GatewayStub(200)
        kwargs.setdefault("retry_queue", RetryQueue())
        kwargs.setdefault("clock", lambda: NOW)
        kwargs.setdefault("sleep", recording_sleep)
        kwargs.setdefault("ledger", ledger)
        kwargs.setdefault("source", source)
        kwargs.setdefault("config", sync_config)
        return SyncOrchestrator(
            gateway=make_gateway(stub, recording_sleep, sync_config),
            preferences=preferences,
            **kwargs,
        )

    return _factory

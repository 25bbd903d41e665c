"""Runtime-mutable sync preferences.

Holds what a user can change while the engine runs: the gateway connection,
which data types to sync, how often, and the user id stamped on payloads.
The orchestrator reads a fresh snapshot at the start of every pass, so
changes take effect on the next pass without restarting anything.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from src.config import Settings
from src.healthsync.base import GatewayConfig, HealthDataType, SyncFrequency

logger = logging.getLogger("healthstack.preferences")


class SyncPreferences:
    """Thread-safe holder for user-editable sync settings.

    Every known data type is enabled unless explicitly disabled.  No gateway
    config means local-only mode: samples are persisted and acknowledged
    without any network attempt.
    """

    def __init__(
        self,
        gateway_config: GatewayConfig | None = None,
        frequency: SyncFrequency = SyncFrequency.MANUAL,
        data_types: dict[HealthDataType, bool] | None = None,
        user_id: str | None = None,
        device_id: str = "unknown",
    ) -> None:
        self._lock = threading.Lock()
        self._gateway_config = gateway_config
        self._frequency = frequency
        self._data_types: dict[HealthDataType, bool] = {t: True for t in HealthDataType}
        if data_types:
            self._data_types.update(data_types)
        self._user_id = user_id
        self.device_id = device_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncPreferences":
        gateway = None
        if settings.gateway_base_url:
            gateway = GatewayConfig(
                base_url=settings.gateway_base_url,
                port=settings.gateway_port,
                api_key=settings.gateway_api_key,
                username=settings.gateway_username,
                password=settings.gateway_password,
            )

        data_types = None
        if settings.enabled_data_types:
            wanted = set(settings.enabled_data_types)
            unknown = wanted - {t.value for t in HealthDataType}
            if unknown:
                logger.warning("Ignoring unknown data types in settings: %s", sorted(unknown))
            data_types = {t: t.value in wanted for t in HealthDataType}

        return cls(
            gateway_config=gateway,
            frequency=SyncFrequency(settings.sync_frequency),
            data_types=data_types,
            user_id=settings.user_id,
            device_id=settings.device_id,
        )

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    def get_gateway_config(self) -> GatewayConfig | None:
        with self._lock:
            return self._gateway_config

    def set_gateway_config(self, config: GatewayConfig | None) -> None:
        if config is not None:
            config.validate()
        with self._lock:
            self._gateway_config = config
        logger.info("Gateway config updated: %r", config)

    # ------------------------------------------------------------------
    # Data types
    # ------------------------------------------------------------------

    def get_data_type_preferences(self) -> dict[HealthDataType, bool]:
        with self._lock:
            return dict(self._data_types)

    def set_data_type_preferences(self, preferences: dict[HealthDataType, bool]) -> None:
        with self._lock:
            self._data_types.update(preferences)

    def enabled_types(self) -> list[HealthDataType]:
        """Enabled types in declaration order."""
        with self._lock:
            return [t for t in HealthDataType if self._data_types.get(t, True)]

    def enable_only(self, types: Iterable[HealthDataType]) -> None:
        wanted = set(types)
        with self._lock:
            self._data_types = {t: t in wanted for t in HealthDataType}

    # ------------------------------------------------------------------
    # Frequency / identity
    # ------------------------------------------------------------------

    @property
    def frequency(self) -> SyncFrequency:
        with self._lock:
            return self._frequency

    @frequency.setter
    def frequency(self, value: SyncFrequency) -> None:
        with self._lock:
            self._frequency = value

    @property
    def user_id(self) -> str:
        """Configured user id, falling back to the device id."""
        with self._lock:
            return self._user_id or self.device_id

    @user_id.setter
    def user_id(self, value: str | None) -> None:
        with self._lock:
            self._user_id = value

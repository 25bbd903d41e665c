"""Load, validate, and hot-reload the HealthStack sync tuning configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an update without a restart.

Usage::

    from src.healthsync.config_loader import get_sync_config

    config = get_sync_config()
    config.batching.batch_size               # 100
    config.inner_retry.delay_for(3)          # 8.0
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("healthstack.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class BatchingConfig:
    batch_size: int = 100
    acquisition_query_limit: int = 1000


@dataclass
class OuterRetryConfig:
    """Page-level retry around a full page send."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0

    def delay_before(self, attempt: int) -> float:
        """Delay before 1-based ``attempt``; zero for the first attempt."""
        if attempt < 2:
            return 0.0
        return self.base_delay_seconds * 2 ** (attempt - 2)


@dataclass
class InnerRetryConfig:
    """Per-request retry inside the gateway client."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 16.0

    def delay_for(self, attempt: int) -> float:
        """Delay after failed 0-based ``attempt``, capped at max_delay_seconds."""
        return min(self.base_delay_seconds * 2**attempt, self.max_delay_seconds)


@dataclass
class OrchestratorConfig:
    settle_delay_seconds: float = 0.1
    default_lookback_hours: float = 24
    iteration_slack: int = 10
    history_limit: int = 50


@dataclass
class RetentionConfig:
    synced_retention_days: int = 30
    cleanup_interval_hours: float = 24

    @property
    def cleanup_interval_seconds(self) -> float:
        return self.cleanup_interval_hours * 3600


@dataclass
class BackgroundConfig:
    task_id: str = "com.healthstack.sync"
    execution_window_seconds: float = 30
    expiration_grace_seconds: float = 5


@dataclass
class ConnectivityConfig:
    probe_interval_seconds: float = 30


@dataclass
class SyncConfig:
    """Complete, validated sync tuning configuration.

    This is the single in-memory representation of sync_config.yaml.
    The orchestrator, gateway client and schedulers all read from it.
    """

    version: str = "1.0"
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    outer_retry: OuterRetryConfig = field(default_factory=OuterRetryConfig)
    inner_retry: InnerRetryConfig = field(default_factory=InnerRetryConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    background: BackgroundConfig = field(default_factory=BackgroundConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing sections fall back to defaults; present values must be numbers
    in range.  All problems are collected and reported together.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    def _number(section: dict, section_name: str, key: str, default: Any, cast: type, minimum: float) -> Any:
        value = section.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{section_name}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{section_name}.{key} = {number} must be >= {minimum}")
        return number

    # ── Batching ──
    b = _section("batching")
    batching = BatchingConfig(
        batch_size=_number(b, "batching", "batch_size", 100, int, 1),
        acquisition_query_limit=_number(b, "batching", "acquisition_query_limit", 1000, int, 1),
    )

    # ── Retry layers ──
    o = _section("outer_retry")
    outer_retry = OuterRetryConfig(
        max_attempts=_number(o, "outer_retry", "max_attempts", 5, int, 1),
        base_delay_seconds=_number(o, "outer_retry", "base_delay_seconds", 1.0, float, 0),
    )
    i = _section("inner_retry")
    inner_retry = InnerRetryConfig(
        max_attempts=_number(i, "inner_retry", "max_attempts", 5, int, 1),
        base_delay_seconds=_number(i, "inner_retry", "base_delay_seconds", 1.0, float, 0),
        max_delay_seconds=_number(i, "inner_retry", "max_delay_seconds", 16.0, float, 0),
    )
    if inner_retry.max_delay_seconds < inner_retry.base_delay_seconds:
        errors.append("inner_retry.max_delay_seconds must be >= base_delay_seconds")

    # ── Orchestrator ──
    oc = _section("orchestrator")
    orchestrator = OrchestratorConfig(
        settle_delay_seconds=_number(oc, "orchestrator", "settle_delay_seconds", 0.1, float, 0),
        default_lookback_hours=_number(oc, "orchestrator", "default_lookback_hours", 24, float, 0),
        iteration_slack=_number(oc, "orchestrator", "iteration_slack", 10, int, 0),
        history_limit=_number(oc, "orchestrator", "history_limit", 50, int, 1),
    )

    # ── Retention ──
    r = _section("retention")
    retention = RetentionConfig(
        synced_retention_days=_number(r, "retention", "synced_retention_days", 30, int, 1),
        cleanup_interval_hours=_number(r, "retention", "cleanup_interval_hours", 24, float, 0.01),
    )

    # ── Background ──
    bg = _section("background")
    background = BackgroundConfig(
        task_id=str(bg.get("task_id", "com.healthstack.sync")),
        execution_window_seconds=_number(bg, "background", "execution_window_seconds", 30, float, 0.01),
        expiration_grace_seconds=_number(bg, "background", "expiration_grace_seconds", 5, float, 0),
    )

    # ── Connectivity ──
    c = _section("connectivity")
    connectivity = ConnectivityConfig(
        probe_interval_seconds=_number(c, "connectivity", "probe_interval_seconds", 30, float, 0.01),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=str(raw.get("version", "1.0")),
        batching=batching,
        outer_retry=outer_retry,
        inner_retry=inner_retry,
        orchestrator=orchestrator,
        retention=retention,
        background=background,
        connectivity=connectivity,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config

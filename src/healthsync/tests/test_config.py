"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from src.healthsync.config_loader import (
    ConfigValidationError,
    InnerRetryConfig,
    OuterRetryConfig,
    SyncConfig,
    _validate_and_build,
    load_sync_config,
    reload_sync_config,
)


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, sync_config: SyncConfig) -> None:
        assert sync_config.version == "1.0"
        assert sync_config.batching.batch_size == 100
        assert sync_config.batching.acquisition_query_limit == 1000

    def test_retry_layers(self, sync_config: SyncConfig) -> None:
        assert sync_config.outer_retry.max_attempts == 5
        assert sync_config.inner_retry.max_attempts == 5
        assert sync_config.inner_retry.max_delay_seconds == 16.0

    def test_orchestrator_defaults(self, sync_config: SyncConfig) -> None:
        oc = sync_config.orchestrator
        assert oc.settle_delay_seconds == pytest.approx(0.1)
        assert oc.default_lookback_hours == 24
        assert oc.iteration_slack == 10

    def test_retention_defaults(self, sync_config: SyncConfig) -> None:
        assert sync_config.retention.synced_retention_days == 30
        assert sync_config.retention.cleanup_interval_seconds == 24 * 3600

    def test_background_task_id(self, sync_config: SyncConfig) -> None:
        assert sync_config.background.task_id == "com.healthstack.sync"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(tmp_path / "nope.yaml")

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("batching: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_sync_config(bad)

    def test_reload_replaces_values(self, tmp_path: Path) -> None:
        path = tmp_path / "sync.yaml"
        path.write_text(
            textwrap.dedent(
                """
                version: "2.0"
                batching:
                  batch_size: 25
                """
            ),
            encoding="utf-8",
        )
        config = reload_sync_config(path)
        try:
            assert config.version == "2.0"
            assert config.batching.batch_size == 25
            assert config.outer_retry.max_attempts == 5
        finally:
            reload_sync_config()


# ---------------------------------------------------------------------------
# Backoff schedules
# ---------------------------------------------------------------------------


class TestBackoffSchedules:
    def test_outer_delays(self) -> None:
        """No delay before the first attempt, then 1, 2, 4, 8."""
        retry = OuterRetryConfig()
        assert [retry.delay_before(k) for k in range(1, 6)] == [0.0, 1.0, 2.0, 4.0, 8.0]

    def test_outer_delays_uncapped(self) -> None:
        assert OuterRetryConfig().delay_before(10) == 256.0

    def test_inner_delays_capped(self) -> None:
        retry = InnerRetryConfig()
        assert [retry.delay_for(n) for n in range(7)] == [1, 2, 4, 8, 16, 16, 16]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestConfigValidation:
    def test_empty_config_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config.batching.batch_size == 100
        assert config.retention.synced_retention_days == 30

    def test_zero_batch_size_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="batching.batch_size"):
            _validate_and_build({"batching": {"batch_size": 0}})

    def test_non_numeric_value_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="must be a number"):
            _validate_and_build({"outer_retry": {"max_attempts": "lots"}})

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigValidationError, match="'retention' must be a mapping"):
            _validate_and_build({"retention": [1, 2]})

    def test_cap_below_base_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="max_delay_seconds"):
            _validate_and_build(
                {"inner_retry": {"base_delay_seconds": 10, "max_delay_seconds": 2}}
            )

    def test_all_errors_reported_together(self) -> None:
        with pytest.raises(ConfigValidationError, match="2 validation error"):
            _validate_and_build(
                {"batching": {"batch_size": 0}, "retention": {"synced_retention_days": 0}}
            )

"""Tests for trend_config.yaml loading and validation, and application settings."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from cardiowatch.config import Settings
from cardiowatch.wearables.config_loader import (
    ConfigValidationError,
    TrendConfig,
    _validate_and_build,
    get_trend_config,
    load_trend_config,
    reload_trend_config,
    threshold_ordering_errors,
)


@pytest.fixture
def raw(trend_config: TrendConfig) -> dict:
    """A mutable copy of the bundled YAML."""
    return copy.deepcopy(trend_config._raw)


class TestConfigLoading:
    """Tests for loading the bundled trend_config.yaml."""

    def test_load_default_config(self, trend_config: TrendConfig) -> None:
        """The bundled trend_config.yaml loads without errors."""
        assert trend_config.version == "1.0"
        assert trend_config.trends.baseline_days == 7
        assert trend_config.trends.current_days == 1

    def test_default_thresholds(self, trend_config: TrendConfig) -> None:
        th = trend_config.thresholds
        assert th["resting_hr_critical_high"] == 120
        assert th["spo2_low_critical"] == 90
        assert th["inactivity_hours_warning"] == 12
        assert threshold_ordering_errors(th) == []

    def test_rules_fall_back_to_default(self, trend_config: TrendConfig) -> None:
        assert trend_config.rules_for("hrv")["critical"] == {"pct_lte": -25}
        assert trend_config.rules_for("blood_oxygen") == trend_config.trends.rules["default"]

    def test_readiness_config(self, trend_config: TrendConfig) -> None:
        """Readiness has three components whose weights sum to 1.0."""
        rs = trend_config.readiness
        assert rs.enabled
        assert [c.name for c in rs.components] == [
            "hrv_vs_baseline",
            "resting_hr_vs_baseline",
            "sleep_score",
        ]
        assert abs(rs.total_weight - 1.0) < 0.01
        assert rs.weight("hrv_vs_baseline") == 0.4
        assert rs.weight("unknown") == 0.0
        assert (rs.ready_threshold, rs.moderate_threshold) == (70, 45)

    def test_sync_and_backfill_config(self, trend_config: TrendConfig) -> None:
        assert trend_config.sync.max_concurrent == 5
        assert trend_config.sync.refresh_buffer_seconds == 300
        bf = trend_config.backfill
        assert bf.max_days["garmin"] == 730
        assert bf.batch_size_days == 7
        assert bf.rate_limit_ms == 500

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_trend_config(path=Path("/nonexistent/path/config.yaml"))


class TestConfigValidation:
    """Tests for config validation logic."""

    def test_bundled_raw_is_valid(self, raw: dict) -> None:
        assert _validate_and_build(raw).version == "1.0"

    def test_missing_rules_raises(self, raw: dict) -> None:
        raw["trends"]["rules"] = {}
        with pytest.raises(ConfigValidationError, match="trends.rules"):
            _validate_and_build(raw)

    def test_unknown_condition_raises(self, raw: dict) -> None:
        raw["trends"]["rules"]["hrv"]["critical"] = {"pct_between": 5}
        with pytest.raises(ConfigValidationError, match="unknown condition"):
            _validate_and_build(raw)

    def test_unknown_status_raises(self, raw: dict) -> None:
        raw["trends"]["rules"]["hrv"]["alarming"] = {"pct_lt": -50}
        with pytest.raises(ConfigValidationError, match="alarming"):
            _validate_and_build(raw)

    def test_window_outside_range_raises(self, raw: dict) -> None:
        raw["trends"]["baseline_days"] = 30
        with pytest.raises(ConfigValidationError, match="baseline_days"):
            _validate_and_build(raw)

    def test_missing_threshold_raises(self, raw: dict) -> None:
        del raw["thresholds"]["steps_low_warning"]
        with pytest.raises(ConfigValidationError, match="steps_low_warning"):
            _validate_and_build(raw)

    def test_unknown_threshold_raises(self, raw: dict) -> None:
        raw["thresholds"]["glucose_high"] = 180
        with pytest.raises(ConfigValidationError, match="glucose_high"):
            _validate_and_build(raw)

    def test_threshold_ordering_enforced(self, raw: dict) -> None:
        raw["thresholds"]["spo2_low_critical"] = 96
        with pytest.raises(ConfigValidationError, match="spo2_low_critical"):
            _validate_and_build(raw)

    def test_non_numeric_value_raises(self, raw: dict) -> None:
        raw["thresholds"]["hrv_low_warning"] = "low"
        with pytest.raises(ConfigValidationError, match="hrv_low_warning"):
            _validate_and_build(raw)

    def test_all_errors_reported_together(self, raw: dict) -> None:
        raw["sync"]["max_concurrent"] = 0
        raw["backfill"]["batch_size_days"] = 0
        with pytest.raises(ConfigValidationError, match="2 validation error"):
            _validate_and_build(raw)

    def test_readiness_band_order(self, raw: dict) -> None:
        raw["readiness"]["thresholds"] = {"ready": 40, "moderate": 60}
        with pytest.raises(ConfigValidationError, match="moderate"):
            _validate_and_build(raw)

    def test_weight_sum_only_warns(self, raw: dict) -> None:
        raw["readiness"]["components"]["sleep_score"]["weight"] = 0.9
        config = _validate_and_build(raw)
        assert config.readiness.total_weight == pytest.approx(1.6)


class TestThresholdOrdering:
    def test_critical_must_be_beyond_warning(self) -> None:
        errors = threshold_ordering_errors({"hrv_low_warning": 20, "hrv_low_critical": 25})
        assert errors == ["hrv_low_critical must not exceed hrv_low_warning"]

    def test_high_limits(self) -> None:
        errors = threshold_ordering_errors(
            {"resting_hr_low": 50, "resting_hr_high": 100, "resting_hr_critical_high": 90}
        )
        assert errors == ["resting_hr_critical_high must not be below resting_hr_high"]

    def test_partial_sets_checked_pairwise(self) -> None:
        assert threshold_ordering_errors({"spo2_low_warning": 94}) == []


class TestReload:
    def test_hot_reload_replaces_singleton(self, raw: dict, tmp_path: Path) -> None:
        raw["version"] = "2.0-test"
        config_file = tmp_path / "trend_config.yaml"
        config_file.write_text(yaml.safe_dump(raw))
        try:
            new_config = reload_trend_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert get_trend_config() is new_config
        finally:
            reload_trend_config()

    def test_invalid_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_trend_config()
        config_file = tmp_path / "trend_config.yaml"
        config_file.write_text("version: '3.0'\ntrends: {}\n")
        with pytest.raises(ConfigValidationError):
            reload_trend_config(path=config_file)
        assert get_trend_config() is before

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "trend_config.yaml"
        config_file.write_text("trends: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_trend_config(path=config_file)


class TestSettings:
    def test_short_secrets_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(encryption_key="short", jwt_secret="x" * 40)

    def test_defaults(self) -> None:
        settings = Settings(encryption_key="k" * 40, jwt_secret="j" * 40)
        assert settings.storage_backend == "memory"
        assert settings.environment == "development"
        assert not settings.scheduler_enabled

"""Load, validate, and hot-reload the CardioWatch trend configuration.

The config lives in ``trend_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_trend_config()`` to re-read from
disk after an edit; no restart required.

Usage::

    from cardiowatch.wearables.config_loader import get_trend_config

    config = get_trend_config()
    rules = config.rules_for("hrv")
    batch = config.backfill.batch_size_days
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("cardiowatch.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "trend_config.yaml"

TREND_STATUSES = ("critical", "concerning", "improving")
RULE_CONDITIONS = frozenset({"pct_gte", "pct_gt", "pct_lte", "pct_lt", "abs_z_gt"})

THRESHOLD_KEYS: tuple[str, ...] = (
    "resting_hr_low",
    "resting_hr_high",
    "resting_hr_critical_low",
    "resting_hr_critical_high",
    "hrv_low_warning",
    "hrv_low_critical",
    "spo2_low_warning",
    "spo2_low_critical",
    "sleep_hours_low_warning",
    "sleep_hours_low_critical",
    "steps_low_warning",
    "inactivity_hours_warning",
)


def threshold_ordering_errors(thresholds: dict[str, float]) -> list[str]:
    """Problems with the relative order of clinical limits (empty when valid)."""
    errors = []
    for low, critical in (
        ("resting_hr_low", "resting_hr_critical_low"),
        ("hrv_low_warning", "hrv_low_critical"),
        ("spo2_low_warning", "spo2_low_critical"),
        ("sleep_hours_low_warning", "sleep_hours_low_critical"),
    ):
        if low in thresholds and critical in thresholds and thresholds[critical] > thresholds[low]:
            errors.append(f"{critical} must not exceed {low}")
    if thresholds.get("resting_hr_high", 0) < thresholds.get("resting_hr_low", 0):
        errors.append("resting_hr_high must not be below resting_hr_low")
    if thresholds.get("resting_hr_critical_high", 0) < thresholds.get("resting_hr_high", 0):
        errors.append("resting_hr_critical_high must not be below resting_hr_high")
    return errors


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TrendSettings:
    """Baseline/current window sizes and classification bands."""

    baseline_days: int
    current_days: int
    baseline_days_range: tuple[int, int]
    current_days_range: tuple[int, int]
    cache_ttl_seconds: int
    direction_threshold_pct: float
    # metric -> status -> condition -> bound
    rules: dict[str, dict[str, dict[str, float]]]


@dataclass
class SyncConfig:
    max_concurrent: int
    metric_timeout_seconds: float
    refresh_buffer_seconds: int
    lookback_days: int


@dataclass
class ReadinessComponent:
    """One component of the readiness score formula."""

    name: str
    weight: float
    description: str


@dataclass
class ReadinessConfig:
    """Readiness score computation settings."""

    enabled: bool
    components: list[ReadinessComponent]
    ready_threshold: int     # ≥ this = ready
    moderate_threshold: int  # ≥ this = moderate

    @property
    def total_weight(self) -> float:
        return sum(c.weight for c in self.components)

    def weight(self, name: str) -> float:
        return next((c.weight for c in self.components if c.name == name), 0.0)


@dataclass
class BackfillConfig:
    """Historical backfill settings per provider."""

    enabled: bool
    max_days: dict[str, int]
    batch_size_days: int
    rate_limit_ms: int


@dataclass
class TrendConfig:
    """Complete, validated trend configuration.

    This is the single in-memory representation of trend_config.yaml.
    The trend engine, readiness scorer, scheduler and backfill read from it.

    Attributes:
        version:    Config schema version string.
        trends:     Window sizes, cache TTL and status bands.
        thresholds: System default clinical thresholds.
        sync:       Pull sync tuning.
        readiness:  Readiness score weights and bands.
        backfill:   Historical backfill settings.
    """

    version: str
    trends: TrendSettings
    thresholds: dict[str, float]
    sync: SyncConfig
    readiness: ReadinessConfig
    backfill: BackfillConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def rules_for(self, metric: str) -> dict[str, dict[str, float]]:
        """Status bands for a metric, falling back to the ``default`` bands."""
        return self.trends.rules.get(metric) or self.trends.rules.get("default", {})


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when trend_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise FileNotFoundError(f"Trend config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> TrendConfig:
    """Validate the raw YAML dict and construct a TrendConfig.

    Every problem found is collected so one error lists them all.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _number(value: Any, where: str, default: float | None = None) -> float:
        if value is None and default is not None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{where} must be a number, got {value!r}")
            return default or 0.0

    def _range(value: Any, where: str, default: tuple[int, int]) -> tuple[int, int]:
        if value is None:
            return default
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            errors.append(f"{where} must be a [min, max] pair")
            return default
        lo, hi = int(_number(value[0], where)), int(_number(value[1], where))
        if lo > hi:
            errors.append(f"{where} minimum {lo} exceeds maximum {hi}")
        return lo, hi

    version = str(raw.get("version", "1.0"))

    # ── Trends ──
    tr_raw = raw.get("trends") or {}
    rules: dict[str, dict[str, dict[str, float]]] = {}
    rules_raw = tr_raw.get("rules") or {}
    if not rules_raw:
        errors.append("'trends.rules' section is missing or empty")
    for metric, bands in rules_raw.items():
        if not isinstance(bands, dict):
            errors.append(f"trends.rules.{metric} must be a mapping of status→conditions")
            continue
        rules[metric] = {}
        for status, conditions in bands.items():
            if status not in TREND_STATUSES:
                errors.append(f"trends.rules.{metric}.{status} is not one of {TREND_STATUSES}")
                continue
            if not isinstance(conditions, dict) or not conditions:
                errors.append(f"trends.rules.{metric}.{status} must be a non-empty mapping")
                continue
            parsed: dict[str, float] = {}
            for condition, bound in conditions.items():
                if condition not in RULE_CONDITIONS:
                    errors.append(f"trends.rules.{metric}.{status}: unknown condition '{condition}'")
                    continue
                parsed[condition] = _number(bound, f"trends.rules.{metric}.{status}.{condition}")
            rules[metric][status] = parsed

    trends = TrendSettings(
        baseline_days=int(_number(tr_raw.get("baseline_days"), "trends.baseline_days", 7)),
        current_days=int(_number(tr_raw.get("current_days"), "trends.current_days", 1)),
        baseline_days_range=_range(tr_raw.get("baseline_days_range"), "trends.baseline_days_range", (7, 14)),
        current_days_range=_range(tr_raw.get("current_days_range"), "trends.current_days_range", (1, 3)),
        cache_ttl_seconds=int(_number(tr_raw.get("cache_ttl_seconds"), "trends.cache_ttl_seconds", 300)),
        direction_threshold_pct=_number(
            tr_raw.get("direction_threshold_pct"), "trends.direction_threshold_pct", 5.0
        ),
        rules=rules,
    )
    lo, hi = trends.baseline_days_range
    if not lo <= trends.baseline_days <= hi:
        errors.append(f"trends.baseline_days = {trends.baseline_days} is outside [{lo}, {hi}]")
    lo, hi = trends.current_days_range
    if not lo <= trends.current_days <= hi:
        errors.append(f"trends.current_days = {trends.current_days} is outside [{lo}, {hi}]")

    # ── Thresholds ──
    th_raw = raw.get("thresholds") or {}
    thresholds: dict[str, float] = {}
    for key in THRESHOLD_KEYS:
        if key not in th_raw:
            errors.append(f"Missing required key '{key}' in section 'thresholds'")
            continue
        thresholds[key] = _number(th_raw[key], f"thresholds.{key}")
    for key in set(th_raw) - set(THRESHOLD_KEYS):
        errors.append(f"thresholds.{key} is not a known threshold")
    errors.extend(f"thresholds.{e}" for e in threshold_ordering_errors(thresholds))

    # ── Sync ──
    sy_raw = raw.get("sync") or {}
    sync = SyncConfig(
        max_concurrent=int(_number(sy_raw.get("max_concurrent"), "sync.max_concurrent", 5)),
        metric_timeout_seconds=_number(
            sy_raw.get("metric_timeout_seconds"), "sync.metric_timeout_seconds", 30.0
        ),
        refresh_buffer_seconds=int(
            _number(sy_raw.get("refresh_buffer_seconds"), "sync.refresh_buffer_seconds", 300)
        ),
        lookback_days=int(_number(sy_raw.get("lookback_days"), "sync.lookback_days", 7)),
    )
    if sync.max_concurrent < 1:
        errors.append("sync.max_concurrent must be at least 1")

    # ── Readiness score ──
    rs_raw = raw.get("readiness") or {}
    components: list[ReadinessComponent] = []
    for name, cfg in (rs_raw.get("components") or {}).items():
        if not isinstance(cfg, dict):
            errors.append(f"readiness.components.{name} must be a mapping")
            continue
        w = _number(cfg.get("weight", 0.0), f"readiness.components.{name}.weight")
        if w < 0:
            errors.append(f"readiness.components.{name}.weight must not be negative")
        components.append(
            ReadinessComponent(name=name, weight=w, description=cfg.get("description", ""))
        )
    bands_raw = rs_raw.get("thresholds") or {}
    readiness = ReadinessConfig(
        enabled=bool(rs_raw.get("enabled", True)),
        components=components,
        ready_threshold=int(_number(bands_raw.get("ready"), "readiness.thresholds.ready", 70)),
        moderate_threshold=int(
            _number(bands_raw.get("moderate"), "readiness.thresholds.moderate", 45)
        ),
    )
    if readiness.moderate_threshold > readiness.ready_threshold:
        errors.append("readiness.thresholds.moderate must not exceed readiness.thresholds.ready")

    # Weights are renormalized at runtime; warn only
    total_w = readiness.total_weight
    if components and not (0.95 <= total_w <= 1.05):
        logger.warning(
            "Readiness component weights sum to %.3f (expected ~1.0). "
            "Score will be normalized at runtime.",
            total_w,
        )

    # ── Backfill ──
    bf_raw = raw.get("backfill") or {}
    backfill = BackfillConfig(
        enabled=bool(bf_raw.get("enabled", True)),
        max_days={
            str(k): int(_number(v, f"backfill.max_days.{k}"))
            for k, v in (bf_raw.get("max_days") or {}).items()
        },
        batch_size_days=int(_number(bf_raw.get("batch_size_days"), "backfill.batch_size_days", 7)),
        rate_limit_ms=int(_number(bf_raw.get("rate_limit_ms"), "backfill.rate_limit_ms", 500)),
    )
    if backfill.batch_size_days < 1:
        errors.append("backfill.batch_size_days must be at least 1")

    if errors:
        raise ConfigValidationError(
            f"trend_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return TrendConfig(
        version=version,
        trends=trends,
        thresholds=thresholds,
        sync=sync,
        readiness=readiness,
        backfill=backfill,
        _raw=raw,
    )


def load_trend_config(path: Path | str | None = None) -> TrendConfig:
    """Load and validate the trend config from disk.

    Args:
        path: Override path to YAML. Uses the bundled trend_config.yaml by default.
    """
    target = Path(path) if path else _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded trend config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: TrendConfig | None = None
_config_lock = threading.Lock()


def get_trend_config() -> TrendConfig:
    """Return the global TrendConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_trend_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_trend_config()
    return _config


def reload_trend_config(path: Path | str | None = None) -> TrendConfig:
    """Reload the trend config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is
    re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_trend_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded trend config: %s → %s", old_version, new_config.version)
    return new_config

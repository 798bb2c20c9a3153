"""Personal baselines, trend classification and clinical threshold alerts.

A trend compares the mean of a short *current* window (default: today)
against a *baseline* built from the days immediately before it (default:
the previous 7 days).  Each day contributes one value:

    heart_rate, blood_oxygen, hrv  - mean of that day's samples
    resting_heart_rate             - mean of that day's resting samples
    sleep_session                  - asleep hours of the night's sessions
    activity_day                   - step count

Status bands come from ``trend_config.yaml``; a clinical threshold breach on
the current value escalates the status (warning → at least ``concerning``,
critical → ``critical``).  Threshold boundaries are inclusive.
"""

from __future__ import annotations

import logging
import math
import statistics
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Sequence
from uuid import UUID

from cardiowatch.wearables.base import utc_now
from cardiowatch.wearables.canonical import CanonicalSample, MetricType, day_bucket
from cardiowatch.wearables.config_loader import THRESHOLD_KEYS, TrendConfig, get_trend_config
from cardiowatch.wearables.normalizer import Normalizer
from cardiowatch.wearables.repositories import ThresholdRepository
from cardiowatch.wearables.store import SampleStore

logger = logging.getLogger("cardiowatch.wearables.trends")

# Order in which analyze_patient reports metrics
TREND_METRICS: tuple[MetricType, ...] = (
    MetricType.RESTING_HEART_RATE,
    MetricType.HRV,
    MetricType.SLEEP_SESSION,
    MetricType.ACTIVITY_DAY,
    MetricType.HEART_RATE,
    MetricType.BLOOD_OXYGEN,
)

# Metrics whose latest sample shows the patient is wearing/using a device
_PRESENCE_METRICS = (MetricType.HEART_RATE, MetricType.ACTIVITY_DAY)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class Baseline:
    mean: float
    median: float
    stddev: float
    min: float
    max: float
    count: int
    window_start: date
    window_end: date

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat()
        data["window_end"] = self.window_end.isoformat()
        return data


@dataclass
class ThresholdAlert:
    metric: MetricType
    severity: str  # warning | critical
    message: str
    threshold: float
    actual_value: float
    detected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "severity": self.severity,
            "message": self.message,
            "threshold": self.threshold,
            "actual_value": self.actual_value,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class TrendResult:
    metric: MetricType
    current_value: float
    baseline: Baseline
    percent_change: float
    z_score: float
    direction: str  # increasing | decreasing | stable
    status: str     # normal | improving | concerning | critical
    alert: ThresholdAlert | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "current_value": round(self.current_value, 2),
            "baseline": self.baseline.to_dict(),
            "percent_change": round(self.percent_change, 2),
            "z_score": round(self.z_score, 2),
            "direction": self.direction,
            "status": self.status,
            "alert": self.alert.to_dict() if self.alert else None,
        }


@dataclass(frozen=True)
class ClinicalThresholds:
    """Per-patient clinical limits.  Units: bpm, ms, %, hours, steps, hours."""

    resting_hr_low: float = 50
    resting_hr_high: float = 100
    resting_hr_critical_low: float = 40
    resting_hr_critical_high: float = 120
    hrv_low_warning: float = 20
    hrv_low_critical: float = 10
    spo2_low_warning: float = 94
    spo2_low_critical: float = 90
    sleep_hours_low_warning: float = 5
    sleep_hours_low_critical: float = 3
    steps_low_warning: float = 2000
    inactivity_hours_warning: float = 12

    @classmethod
    def from_config(cls, config: TrendConfig | None = None) -> ClinicalThresholds:
        config = config or get_trend_config()
        return cls(**{k: v for k, v in config.thresholds.items() if k in THRESHOLD_KEYS})

    def with_overrides(self, overrides: dict[str, float]) -> ClinicalThresholds:
        """Return a copy with ``overrides`` applied.

        Raises:
            ValueError: Unknown key or non-numeric value.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown threshold(s): {', '.join(sorted(unknown))}")
        values: dict[str, float] = {}
        for key, value in overrides.items():
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(f"Threshold {key} must be finite")
            values[key] = number
        return replace(self, **values)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def compute_baseline(values: Sequence[float], window_start: date, window_end: date) -> Baseline | None:
    """Summary statistics of ``values``; None when there are none.

    The standard deviation is the population deviation, 0 for fewer than
    two values.
    """
    clean = [float(v) for v in values if v is not None and math.isfinite(v)]
    if not clean:
        return None
    return Baseline(
        mean=statistics.fmean(clean),
        median=statistics.median(clean),
        stddev=statistics.pstdev(clean) if len(clean) >= 2 else 0.0,
        min=min(clean),
        max=max(clean),
        count=len(clean),
        window_start=window_start,
        window_end=window_end,
    )


def _matches(conditions: dict[str, float], pct: float, z: float) -> bool:
    checks = {
        "pct_gte": lambda bound: pct >= bound,
        "pct_gt": lambda bound: pct > bound,
        "pct_lte": lambda bound: pct <= bound,
        "pct_lt": lambda bound: pct < bound,
        "abs_z_gt": lambda bound: abs(z) > bound,
    }
    return all(checks[name](bound) for name, bound in conditions.items())


def classify(rules: dict[str, dict[str, float]], pct: float, z: float) -> str:
    for status in ("critical", "concerning", "improving"):
        conditions = rules.get(status)
        if conditions and _matches(conditions, pct, z):
            return status
    return "normal"


def evaluate_thresholds(
    metric: MetricType,
    value: float,
    thresholds: ClinicalThresholds,
    now: datetime | None = None,
) -> ThresholdAlert | None:
    """Check a daily value against the clinical limits.

    ``value`` is in trend units (sleep in hours, activity in steps).
    Boundaries are inclusive: a value equal to a critical limit is critical.
    """
    now = now or utc_now()

    def alert(severity: str, message: str, threshold: float) -> ThresholdAlert:
        return ThresholdAlert(metric, severity, message, threshold, value, now)

    t = thresholds
    if metric == MetricType.RESTING_HEART_RATE:
        if value >= t.resting_hr_critical_high:
            return alert("critical", f"Critical high resting heart rate: {value:.0f} bpm", t.resting_hr_critical_high)
        if value <= t.resting_hr_critical_low:
            return alert("critical", f"Critical low resting heart rate: {value:.0f} bpm", t.resting_hr_critical_low)
        if value >= t.resting_hr_high:
            return alert("warning", f"Elevated resting heart rate: {value:.0f} bpm", t.resting_hr_high)
        if value <= t.resting_hr_low:
            return alert("warning", f"Low resting heart rate: {value:.0f} bpm", t.resting_hr_low)
    elif metric == MetricType.HRV:
        if value <= t.hrv_low_critical:
            return alert("critical", f"Critical low HRV: {value:.0f} ms", t.hrv_low_critical)
        if value <= t.hrv_low_warning:
            return alert("warning", f"Low HRV: {value:.0f} ms", t.hrv_low_warning)
    elif metric == MetricType.BLOOD_OXYGEN:
        if value <= t.spo2_low_critical:
            return alert("critical", f"Critical low blood oxygen: {value:.0f}%", t.spo2_low_critical)
        if value <= t.spo2_low_warning:
            return alert("warning", f"Low blood oxygen: {value:.0f}%", t.spo2_low_warning)
    elif metric == MetricType.SLEEP_SESSION:
        if value <= t.sleep_hours_low_critical:
            return alert("critical", f"Critical low sleep: {value:.1f} hours", t.sleep_hours_low_critical)
        if value <= t.sleep_hours_low_warning:
            return alert("warning", f"Low sleep: {value:.1f} hours", t.sleep_hours_low_warning)
    elif metric == MetricType.ACTIVITY_DAY:
        if value <= t.steps_low_warning:
            return alert("warning", f"Low activity: {value:.0f} steps", t.steps_low_warning)
    return None


def analyze_trend(
    metric: MetricType,
    baseline: Baseline,
    current: float,
    rules: dict[str, dict[str, float]],
    thresholds: ClinicalThresholds | None = None,
    direction_threshold_pct: float = 5.0,
    now: datetime | None = None,
) -> TrendResult:
    """Compare ``current`` with ``baseline`` and classify the change.

    Percent change is 0 when the baseline mean is 0; the z-score is 0 when
    the baseline has no spread.
    """
    delta = current - baseline.mean
    pct = delta / baseline.mean * 100 if baseline.mean != 0 else 0.0
    z = delta / baseline.stddev if baseline.stddev > 0 else 0.0

    direction = "stable"
    if abs(pct) > direction_threshold_pct:
        direction = "increasing" if pct > 0 else "decreasing"

    status = classify(rules, pct, z)
    alert = evaluate_thresholds(metric, current, thresholds, now) if thresholds else None
    if alert is not None:
        if alert.severity == "critical":
            status = "critical"
        elif status in ("normal", "improving"):
            status = "concerning"

    return TrendResult(
        metric=metric,
        current_value=current,
        baseline=baseline,
        percent_change=pct,
        z_score=z,
        direction=direction,
        status=status,
        alert=alert,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TrendEngine:
    """Read stored samples and produce baselines, trends and alerts.

    Baselines are cached per (patient, metric, window) for
    ``trends.cache_ttl_seconds``.
    """

    def __init__(
        self,
        store: SampleStore,
        thresholds: ThresholdRepository | None = None,
        config: TrendConfig | None = None,
        normalizer: Normalizer | None = None,
    ) -> None:
        self._store = store
        self._thresholds = thresholds
        self._config = config or get_trend_config()
        self._normalizer = normalizer or Normalizer()
        self._cache: dict[tuple, tuple[float, Baseline | None]] = {}

    @property
    def config(self) -> TrendConfig:
        return self._config

    @property
    def store(self) -> SampleStore:
        return self._store

    def local_date(self, value: datetime) -> date:
        return self._normalizer.local_date(value)

    def invalidate(self, patient_id: UUID | None = None) -> None:
        if patient_id is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == patient_id]:
            del self._cache[key]

    def _windows(
        self,
        metric: MetricType,
        baseline_days: int | None,
        current_days: int | None,
        now: datetime | None,
    ) -> tuple[tuple[date, date], tuple[date, date]]:
        cfg = self._config.trends
        b_lo, b_hi = cfg.baseline_days_range
        c_lo, c_hi = cfg.current_days_range
        b_days = min(max(baseline_days or cfg.baseline_days, b_lo), b_hi)
        c_days = min(max(current_days or cfg.current_days, c_lo), c_hi)
        today = self._normalizer.local_date(now or utc_now())
        if metric == MetricType.SLEEP_SESSION:
            # Last night is bucketed on the date it started
            today -= timedelta(days=1)
        current_start = today - timedelta(days=c_days - 1)
        baseline_end = current_start - timedelta(days=1)
        baseline_start = baseline_end - timedelta(days=b_days - 1)
        return (baseline_start, baseline_end), (current_start, today)

    async def daily_values(
        self, patient_id: UUID, metric: MetricType, first: date, last: date
    ) -> dict[date, float]:
        """One value per local day in ``[first, last]``."""
        # Widen by a day each side so local-day filtering sees every sample
        rows = await self._store.query(
            patient_id,
            metric,
            start=day_bucket(first - timedelta(days=1)),
            end=day_bucket(last + timedelta(days=2)),
        )
        return self._per_day(metric, rows, first, last)

    def _per_day(
        self, metric: MetricType, rows: Iterable[CanonicalSample], first: date, last: date
    ) -> dict[date, float]:
        if metric.is_aggregate:
            out: dict[date, float] = {}
            for sample in rows:
                if sample.day is None or not first <= sample.day <= last:
                    continue
                value = sample.value / 60.0 if metric == MetricType.SLEEP_SESSION else sample.value
                out[sample.day] = value
            return out

        buckets: dict[date, list[float]] = defaultdict(list)
        for sample in rows:
            day = self._normalizer.local_date(sample.start)
            if first <= day <= last:
                buckets[day].append(sample.value)
        return {day: statistics.fmean(values) for day, values in buckets.items()}

    async def thresholds_for(self, patient_id: UUID) -> ClinicalThresholds:
        defaults = ClinicalThresholds.from_config(self._config)
        if self._thresholds is None:
            return defaults
        overrides = await self._thresholds.get_overrides(patient_id)
        return defaults.with_overrides(overrides) if overrides else defaults

    async def baseline(
        self,
        patient_id: UUID,
        metric: MetricType,
        days: int | None = None,
        current_days: int | None = None,
        now: datetime | None = None,
    ) -> Baseline | None:
        (start, end), _ = self._windows(metric, days, current_days, now)
        key = (patient_id, metric, start, end)
        cached = self._cache.get(key)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]

        values = await self.daily_values(patient_id, metric, start, end)
        result = compute_baseline(list(values.values()), start, end)
        self._cache[key] = (time.monotonic() + self._config.trends.cache_ttl_seconds, result)
        return result

    async def trend(
        self,
        patient_id: UUID,
        metric: MetricType,
        baseline_days: int | None = None,
        current_days: int | None = None,
        now: datetime | None = None,
    ) -> TrendResult | None:
        """Trend of one metric, or None without baseline or current data."""
        baseline = await self.baseline(patient_id, metric, baseline_days, current_days, now)
        if baseline is None:
            return None
        _, (start, end) = self._windows(metric, baseline_days, current_days, now)
        current = await self.daily_values(patient_id, metric, start, end)
        if not current:
            return None
        return analyze_trend(
            metric,
            baseline,
            statistics.fmean(current.values()),
            self._config.rules_for(metric.value),
            await self.thresholds_for(patient_id),
            self._config.trends.direction_threshold_pct,
            now,
        )

    async def analyze_patient(
        self,
        patient_id: UUID,
        baseline_days: int | None = None,
        current_days: int | None = None,
        now: datetime | None = None,
    ) -> list[TrendResult]:
        results = []
        for metric in TREND_METRICS:
            result = await self.trend(patient_id, metric, baseline_days, current_days, now)
            if result is not None:
                results.append(result)
        critical = [r.metric.value for r in results if r.status == "critical"]
        if critical:
            logger.info("Patient %s has critical trends: %s", patient_id, ", ".join(critical))
        return results

    async def check_inactivity(self, patient_id: UUID, now: datetime | None = None) -> ThresholdAlert | None:
        """Warn when no heart-rate or activity data arrived for too long.

        Returns None when the patient has no data at all.
        """
        now = now or utc_now()
        latest: datetime | None = None
        for metric in _PRESENCE_METRICS:
            sample = await self._store.latest(patient_id, metric)
            if sample is None:
                continue
            seen = sample.end or sample.start
            latest = seen if latest is None else max(latest, seen)
        if latest is None:
            return None

        thresholds = await self.thresholds_for(patient_id)
        hours = (now - latest).total_seconds() / 3600.0
        if hours < thresholds.inactivity_hours_warning:
            return None
        return ThresholdAlert(
            metric=MetricType.ACTIVITY_DAY,
            severity="warning",
            message=f"No wearable data for {hours:.0f} hours",
            threshold=thresholds.inactivity_hours_warning,
            actual_value=round(hours, 1),
            detected_at=now,
        )


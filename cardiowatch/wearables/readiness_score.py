"""CardioWatch readiness score calculator.

Computes a 0–100 readiness score by comparing today's values to the
patient's personal rolling baseline.  This is NOT a copy of any device's
proprietary score.

Score formula (weights from trend_config.yaml):
    - HRV vs baseline              (weight: 0.40)
    - Resting HR vs baseline       (weight: 0.30, inverted)
    - Last night's sleep score     (weight: 0.30)

Components without data are excluded and the remaining weights are
renormalized.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

from cardiowatch.wearables.base import utc_now
from cardiowatch.wearables.canonical import MetricType
from cardiowatch.wearables.config_loader import ReadinessConfig, TrendConfig, get_trend_config

if TYPE_CHECKING:
    from cardiowatch.wearables.trends import TrendEngine

logger = logging.getLogger("cardiowatch.wearables.readiness")

# Fewer baseline days than this and a component is unavailable
MIN_BASELINE_DAYS = 3


@dataclass
class ReadinessComponentScore:
    """Score for a single readiness component.

    Attributes:
        name:        Component identifier (matches config key).
        raw_score:   Raw component score 0.0–1.0 before weighting.
        weight:      Configured weight for this component.
        available:   False if data was insufficient.
        explanation: Human-readable explanation of this component's value.
    """

    name: str
    raw_score: float
    weight: float
    available: bool = True
    explanation: str = ""

    @property
    def weighted(self) -> float:
        return self.raw_score * self.weight if self.available else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "raw_score": self.raw_score,
            "weight": self.weight,
            "available": self.available,
            "explanation": self.explanation,
        }


@dataclass
class ReadinessScore:
    """The readiness score for one patient and date.

    Attributes:
        patient_id:  Patient the score belongs to.
        date:        Date of the score.
        score:       Final 0–100 score.
        band:        'ready', 'moderate', or 'recover'.
        components:  Per-component breakdown.
        available:   False if no component had data.
        computed_at: UTC timestamp.
    """

    patient_id: str
    date: date
    score: int
    band: str
    components: list[ReadinessComponentScore] = field(default_factory=list)
    available: bool = True
    computed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "score": self.score,
            "band": self.band,
            "available": self.available,
            "components": [c.to_dict() for c in self.components],
            "computed_at": self.computed_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Component scorers
# ---------------------------------------------------------------------------


def _sigmoid_score(value: float, mean: float, std: float, higher_is_better: bool = True) -> float:
    """Convert a metric value to a 0.0–1.0 score using a sigmoid function.

    A value equal to the mean returns 0.5.  Values 2 std deviations above
    the mean return ~0.95 (higher_is_better=True) or ~0.05.
    """
    if std <= 0:
        # Flat baseline: 0.5 at the mean, else all or nothing
        return 0.5 if value == mean else (1.0 if (value > mean) == higher_is_better else 0.0)

    z = (value - mean) / std
    if not higher_is_better:
        z = -z

    # Steepness 1.5
    score = 1.0 / (1.0 + math.exp(-z * 1.5))
    return round(min(max(score, 0.0), 1.0), 4)


def _baseline_stats(values: list[float]) -> tuple[float, float]:
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def _score_hrv_vs_baseline(current_hrv: float | None, baseline_values: list[float]) -> ReadinessComponentScore:
    """Higher HRV than usual means better recovery."""
    component = "hrv_vs_baseline"

    if current_hrv is None:
        return ReadinessComponentScore(
            name=component, raw_score=0.5, weight=0.0,
            available=False, explanation="No HRV data available for today",
        )
    if len(baseline_values) < MIN_BASELINE_DAYS:
        return ReadinessComponentScore(
            name=component, raw_score=0.5, weight=0.0, available=False,
            explanation=f"Insufficient HRV baseline ({len(baseline_values)} days, need {MIN_BASELINE_DAYS}+)",
        )

    mean, std = _baseline_stats(baseline_values)
    raw = _sigmoid_score(current_hrv, mean, std, higher_is_better=True)
    pct_vs_baseline = ((current_hrv - mean) / mean * 100) if mean > 0 else 0.0
    return ReadinessComponentScore(
        name=component,
        raw_score=raw,
        weight=0.0,
        explanation=f"HRV {current_hrv:.1f}ms vs {mean:.1f}ms baseline ({pct_vs_baseline:+.1f}%)",
    )


def _score_rhr_vs_baseline(current_rhr: float | None, baseline_values: list[float]) -> ReadinessComponentScore:
    """Lower resting HR than usual means better recovery."""
    component = "resting_hr_vs_baseline"

    if current_rhr is None:
        return ReadinessComponentScore(
            name=component, raw_score=0.5, weight=0.0,
            available=False, explanation="No resting HR data for today",
        )
    if len(baseline_values) < MIN_BASELINE_DAYS:
        return ReadinessComponentScore(
            name=component, raw_score=0.5, weight=0.0, available=False,
            explanation=f"Insufficient RHR baseline ({len(baseline_values)} days)",
        )

    mean, std = _baseline_stats(baseline_values)
    raw = _sigmoid_score(current_rhr, mean, std, higher_is_better=False)
    return ReadinessComponentScore(
        name=component,
        raw_score=raw,
        weight=0.0,
        explanation=f"RHR {current_rhr:.0f}bpm vs {mean:.0f}bpm baseline ({current_rhr - mean:+.1f}bpm)",
    )


def _score_sleep(sleep_score: float | None) -> ReadinessComponentScore:
    component = "sleep_score"
    if sleep_score is None:
        return ReadinessComponentScore(
            name=component, raw_score=0.5, weight=0.0,
            available=False, explanation="No sleep data for last night",
        )
    raw = min(max(sleep_score / 100.0, 0.0), 1.0)
    return ReadinessComponentScore(
        name=component,
        raw_score=round(raw, 4),
        weight=0.0,
        explanation=f"Sleep score {sleep_score:.0f}/100",
    )


# ---------------------------------------------------------------------------
# Main calculator
# ---------------------------------------------------------------------------


class ReadinessCalculator:
    """Compute the readiness score from baseline-relative components.

    Usage::

        calc = ReadinessCalculator()
        score = calc.compute(
            patient_id="...",
            target_date=date.today(),
            hrv_today=48.0,
            hrv_baseline=[52.1, 48.3, ...],
            rhr_today=58.0,
            rhr_baseline=[54, 55, ...],
            sleep_score=82,
        )
        print(score.score, score.band)
    """

    def __init__(self, config: TrendConfig | None = None) -> None:
        self._config = config or get_trend_config()

    @property
    def _rs_config(self) -> ReadinessConfig:
        return self._config.readiness

    def compute(
        self,
        patient_id: str,
        target_date: date,
        hrv_today: float | None = None,
        hrv_baseline: list[float] | None = None,
        rhr_today: float | None = None,
        rhr_baseline: list[float] | None = None,
        sleep_score: float | None = None,
    ) -> ReadinessScore:
        rs_cfg = self._rs_config

        if not rs_cfg.enabled:
            return ReadinessScore(
                patient_id=patient_id, date=target_date, score=0,
                band="recover", available=False,
            )

        components = [
            _score_hrv_vs_baseline(hrv_today, hrv_baseline or []),
            _score_rhr_vs_baseline(rhr_today, rhr_baseline or []),
            _score_sleep(sleep_score),
        ]
        for component in components:
            component.weight = rs_cfg.weight(component.name)

        # Re-normalize weights over the components that have data
        available_components = [c for c in components if c.available and c.weight > 0]
        if not available_components:
            return ReadinessScore(
                patient_id=patient_id, date=target_date, score=50,
                band="moderate", components=components, available=False,
            )

        available_weight_sum = sum(c.weight for c in available_components)
        raw_score = sum(c.raw_score * (c.weight / available_weight_sum) for c in available_components)
        final_score = max(0, min(100, int(round(raw_score * 100))))

        if final_score >= rs_cfg.ready_threshold:
            band = "ready"
        elif final_score >= rs_cfg.moderate_threshold:
            band = "moderate"
        else:
            band = "recover"

        logger.debug(
            "Readiness score for %s on %s: %d (%s)",
            patient_id, target_date, final_score, band,
        )
        return ReadinessScore(
            patient_id=patient_id,
            date=target_date,
            score=final_score,
            band=band,
            components=components,
        )

    async def for_patient(
        self, engine: TrendEngine, patient_id: UUID, now: datetime | None = None
    ) -> ReadinessScore:
        """Gather today's values and baselines from ``engine`` and score them."""
        today = engine.local_date(now or utc_now())
        first = today - timedelta(days=engine.config.trends.baseline_days)
        yesterday = today - timedelta(days=1)

        hrv = await engine.daily_values(patient_id, MetricType.HRV, first, today)
        rhr = await engine.daily_values(patient_id, MetricType.RESTING_HEART_RATE, first, today)

        sleep_score = None
        last_sleep = await engine.store.latest(patient_id, MetricType.SLEEP_SESSION)
        if last_sleep is not None and last_sleep.day is not None and last_sleep.day >= yesterday:
            sleep_score = last_sleep.details.get("score")

        return self.compute(
            patient_id=str(patient_id),
            target_date=today,
            hrv_today=hrv.pop(today, None),
            hrv_baseline=list(hrv.values()),
            rhr_today=rhr.pop(today, None),
            rhr_baseline=list(rhr.values()),
            sleep_score=sleep_score,
        )

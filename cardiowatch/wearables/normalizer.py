"""Canonical normalizer: raw provider samples -> CanonicalSample list.

Pure transformation, no I/O.  The same algorithms apply to every provider:

* heart-rate context inference (motion metadata, else local time of day)
* resting heart rate inference per local day
* sleep aggregation into per-night sessions with a 0–100 score
* activity aggregation per local day, keyed by contribution
* unit normalization (percent 0–100, minutes, meters)
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from statistics import fmean
from typing import Iterable
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cardiowatch.wearables.base import (
    ActivityIncrement,
    HeartRateReading,
    RawSampleBatch,
    SleepSegment,
    SleepStage,
)
from cardiowatch.wearables.canonical import (
    UNITS,
    CanonicalSample,
    HeartRateContext,
    MetricType,
    as_utc,
)

logger = logging.getLogger("cardiowatch.wearables.normalizer")

# Motion context codes reported by HealthKit-style metadata
MOTION_ACTIVE = 1
MOTION_RESTING = 2

SLEEP_WINDOW_START_HOUR = 22
SLEEP_WINDOW_END_HOUR = 6

# Segments further apart than this start a new sleep session
SESSION_GAP = timedelta(hours=2)

RESTING_HR_MIN_READINGS = 5

ACTIVITY_FIELDS: tuple[str, ...] = ("steps", "distance_m", "calories", "floors", "active_minutes")


# ---------------------------------------------------------------------------
# Sleep scoring
# ---------------------------------------------------------------------------


def _ratio_bonus(ratio_pct: float, low: float, high: float, peak: float) -> float:
    """Full ``peak`` inside ``[low, high]``; minus one point per pct point outside."""
    if low <= ratio_pct <= high:
        return peak
    distance = low - ratio_pct if ratio_pct < low else ratio_pct - high
    return max(0.0, peak - distance)


def sleep_score(stages: dict[str, float]) -> int:
    """Score a night of sleep from its stage minutes.

    Base 50, plus a duration bonus (15 for 7–9 h asleep, 7 for 6–10 h),
    a deep-sleep ratio bonus (12 at 15–25 % of asleep time) and a REM ratio
    bonus (12 at 20–30 %).  The result is clamped to [0, 100].

    Args:
        stages: Minutes per stage, keys ``awake``, ``light``, ``deep``, ``rem``.

    Returns:
        Integer score in [0, 100].  Zero asleep minutes scores 0.
    """
    deep = max(stages.get("deep", 0.0), 0.0)
    rem = max(stages.get("rem", 0.0), 0.0)
    light = max(stages.get("light", 0.0), 0.0)
    asleep = deep + rem + light
    if asleep <= 0 or not math.isfinite(asleep):
        return 0

    score = 50.0
    hours = asleep / 60.0
    if 7.0 <= hours <= 9.0:
        score += 15.0
    elif 6.0 <= hours <= 10.0:
        score += 7.0

    score += _ratio_bonus(deep / asleep * 100.0, 15.0, 25.0, 12.0)
    score += _ratio_bonus(rem / asleep * 100.0, 20.0, 30.0, 12.0)
    return int(round(min(100.0, max(0.0, score))))


@dataclass
class _SleepSession:
    segments: list[SleepSegment] = field(default_factory=list)

    @property
    def start(self) -> datetime:
        return min(s.start for s in self.segments)

    @property
    def end(self) -> datetime:
        return max(s.end for s in self.segments)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class Normalizer:
    """Convert a :class:`RawSampleBatch` into canonical samples.

    Args:
        timezone_name: IANA zone of the patient, used for calendar-day
            bucketing and the sleep-hours heuristic.  Defaults to UTC.
    """

    def __init__(self, timezone_name: str = "UTC") -> None:
        try:
            self._tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to UTC", timezone_name)
            self._tz = ZoneInfo("UTC")

    def local_date(self, value: datetime) -> date:
        return as_utc(value).astimezone(self._tz).date()

    def normalize(
        self,
        batch: RawSampleBatch,
        patient_id: UUID,
        device_id: UUID,
        provider: str,
    ) -> list[CanonicalSample]:
        """Normalize every raw sample in ``batch``.

        Invalid values (non-finite, negative, out of range) are dropped.
        """

        def make(metric: MetricType, start: datetime, value: float, **kwargs) -> CanonicalSample:
            return CanonicalSample(
                patient_id=patient_id,
                device_id=device_id,
                provider=provider,
                metric=metric,
                start=as_utc(start),
                value=value,
                unit=UNITS[metric],
                **kwargs,
            )

        samples: list[CanonicalSample] = []
        samples.extend(self._heart_rate(batch.heart_rate, make))
        samples.extend(self._oxygen(batch, make))
        samples.extend(self._hrv(batch, make))
        samples.extend(self._sleep(batch.sleep, make))
        samples.extend(self._activity(batch.activity, make))
        return samples

    # ------------------------------------------------------------------
    # Heart rate
    # ------------------------------------------------------------------

    def infer_context(self, reading: HeartRateReading) -> HeartRateContext | None:
        """Classify a heart-rate reading.

        Explicit context wins, then motion metadata (1 active, 2 resting).
        User-entered readings get no context.  Otherwise a local hour in
        [22:00, 06:00) means sleep.
        """
        if reading.context is not None:
            return reading.context
        if reading.motion_context == MOTION_ACTIVE:
            return HeartRateContext.ACTIVE
        if reading.motion_context == MOTION_RESTING:
            return HeartRateContext.RESTING
        if reading.user_entered:
            return None
        hour = as_utc(reading.timestamp).astimezone(self._tz).hour
        if hour >= SLEEP_WINDOW_START_HOUR or hour < SLEEP_WINDOW_END_HOUR:
            return HeartRateContext.SLEEP
        return None

    def _heart_rate(self, readings: Iterable[HeartRateReading], make) -> list[CanonicalSample]:
        out: list[CanonicalSample] = []
        by_day: dict[date, list[tuple[HeartRateReading, HeartRateContext | None]]] = defaultdict(list)
        explicit_resting_days: set[date] = set()

        for reading in readings:
            if not _valid(reading.bpm) or reading.bpm <= 0:
                continue
            context = self.infer_context(reading)
            day = self.local_date(reading.timestamp)
            if reading.context == HeartRateContext.RESTING:
                # A stated resting value is itself the resting heart rate
                out.append(
                    make(
                        MetricType.RESTING_HEART_RATE,
                        reading.timestamp,
                        round(reading.bpm, 1),
                        day=day,
                        context=HeartRateContext.RESTING,
                        details={"method": "reported"},
                    )
                )
                explicit_resting_days.add(day)
                continue
            out.append(make(MetricType.HEART_RATE, reading.timestamp, reading.bpm, context=context))
            by_day[day].append((reading, context))

        for day, entries in by_day.items():
            if day in explicit_resting_days:
                continue
            inferred = self.infer_resting_heart_rate(entries)
            if inferred is None:
                continue
            # One inferred value per local day, anchored at local midnight
            out.append(
                make(
                    MetricType.RESTING_HEART_RATE,
                    datetime.combine(day, time.min, tzinfo=self._tz),
                    inferred,
                    day=day,
                    context=HeartRateContext.RESTING,
                    details={"method": "inferred"},
                )
            )
        return out

    @staticmethod
    def infer_resting_heart_rate(
        entries: list[tuple[HeartRateReading, HeartRateContext | None]],
    ) -> float | None:
        """Estimate resting heart rate for one day.

        Uses the mean of motion-resting readings when any exist, else the
        mean of the five lowest non-active readings (needs at least five).

        Returns:
            Mean bpm, or None if there is not enough data.
        """
        resting = [r for r, ctx in entries if ctx == HeartRateContext.RESTING]
        if resting:
            chosen = resting
        else:
            candidates = [
                r for r, ctx in entries
                if ctx not in (HeartRateContext.ACTIVE, HeartRateContext.WORKOUT)
            ]
            if len(candidates) < RESTING_HR_MIN_READINGS:
                return None
            chosen = sorted(candidates, key=lambda r: r.bpm)[:RESTING_HR_MIN_READINGS]
        return round(fmean(r.bpm for r in chosen), 1)

    # ------------------------------------------------------------------
    # SpO2 / HRV
    # ------------------------------------------------------------------

    def _oxygen(self, batch: RawSampleBatch, make) -> list[CanonicalSample]:
        out = []
        for reading in batch.oxygen:
            if not _valid(reading.value):
                continue
            value = reading.value * 100.0 if reading.fraction else reading.value
            if value <= 0 or value > 100:
                continue
            out.append(make(MetricType.BLOOD_OXYGEN, reading.timestamp, round(value, 1)))
        return out

    def _hrv(self, batch: RawSampleBatch, make) -> list[CanonicalSample]:
        return [
            make(
                MetricType.HRV,
                reading.timestamp,
                round(reading.value_ms, 1),
                details={"method": reading.method},
            )
            for reading in batch.hrv
            if _valid(reading.value_ms) and reading.value_ms > 0
        ]

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    def _sessions(self, segments: list[SleepSegment]) -> list[_SleepSession]:
        """Group segments by session id, else chain them while gaps <= 2 h."""
        by_id: dict[str, _SleepSession] = {}
        chained: list[_SleepSession] = []
        loose = sorted((s for s in segments if not s.session_id), key=lambda s: s.start)
        for seg in segments:
            if seg.session_id:
                by_id.setdefault(seg.session_id, _SleepSession()).segments.append(seg)
        for seg in loose:
            if chained and seg.start - chained[-1].end <= SESSION_GAP:
                chained[-1].segments.append(seg)
            else:
                chained.append(_SleepSession(segments=[seg]))
        return list(by_id.values()) + chained

    def _sleep(self, segments: list[SleepSegment], make) -> list[CanonicalSample]:
        valid = [s for s in segments if s.end > s.start]
        by_day: dict[date, list[_SleepSession]] = defaultdict(list)
        for session in self._sessions(valid):
            by_day[self.local_date(session.start)].append(session)

        out = []
        for day, sessions in sorted(by_day.items()):
            stages = {stage.value: 0.0 for stage in SleepStage}
            for session in sessions:
                for seg in session.segments:
                    stages[seg.stage.value] += seg.minutes
            asleep = stages["light"] + stages["deep"] + stages["rem"]
            start = min(s.start for s in sessions)
            end = max(s.end for s in sessions)
            out.append(
                make(
                    MetricType.SLEEP_SESSION,
                    start,
                    round(asleep, 1),
                    end=as_utc(end),
                    day=day,
                    details={
                        "stages": {k: round(v, 1) for k, v in stages.items()},
                        "total_minutes": round(asleep, 1),
                        "time_in_bed_minutes": round((end - start).total_seconds() / 60.0, 1),
                        "score": sleep_score(stages),
                        "sessions": len(sessions),
                    },
                )
            )
        return out

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def _activity(self, increments: list[ActivityIncrement], make) -> list[CanonicalSample]:
        by_day: dict[date, dict[str, dict[str, float]]] = defaultdict(dict)
        starts: dict[date, datetime] = {}
        for inc in increments:
            values = {name: getattr(inc, name) for name in ACTIVITY_FIELDS}
            if not all(_valid(v) and v >= 0 for v in values.values()):
                continue
            day = self.local_date(inc.start)
            component = by_day[day].setdefault(inc.source_id, {name: 0.0 for name in ACTIVITY_FIELDS})
            for name, value in values.items():
                # The same contribution delivered twice in one batch counts once
                component[name] = max(component[name], value)
            starts[day] = min(starts.get(day, as_utc(inc.start)), as_utc(inc.start))

        out = []
        for day, components in sorted(by_day.items()):
            totals = activity_totals(components)
            out.append(
                make(
                    MetricType.ACTIVITY_DAY,
                    starts[day],
                    totals["steps"],
                    day=day,
                    details={"components": components, "totals": totals},
                )
            )
        return out


def activity_totals(components: dict[str, dict[str, float]]) -> dict[str, float]:
    """Sum per-contribution activity values into day totals."""
    totals = {name: 0.0 for name in ACTIVITY_FIELDS}
    for component in components.values():
        for name in ACTIVITY_FIELDS:
            totals[name] += float(component.get(name, 0.0))
    return {name: round(value, 2) for name, value in totals.items()}


def _valid(value: float) -> bool:
    return value is not None and math.isfinite(value) and value >= 0

"""Canonical sample model shared by every provider.

A :class:`CanonicalSample` is the normalized unit of truth written by the
store and read by the trend engine.  Its identity is a typed
:class:`SampleKey` so that repeated delivery of the same underlying event
overwrites instead of duplicating.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any
from uuid import UUID


class MetricType(str, Enum):
    HEART_RATE = "heart_rate"
    RESTING_HEART_RATE = "resting_heart_rate"
    HRV = "hrv"
    BLOOD_OXYGEN = "blood_oxygen"
    SLEEP_SESSION = "sleep_session"
    ACTIVITY_DAY = "activity_day"

    @property
    def is_aggregate(self) -> bool:
        """Aggregate metrics are bucketed by calendar day."""
        return self in AGGREGATE_METRICS


AGGREGATE_METRICS: frozenset[MetricType] = frozenset(
    {MetricType.SLEEP_SESSION, MetricType.ACTIVITY_DAY}
)

UNITS: dict[MetricType, str] = {
    MetricType.HEART_RATE: "bpm",
    MetricType.RESTING_HEART_RATE: "bpm",
    MetricType.HRV: "ms",
    MetricType.BLOOD_OXYGEN: "%",
    MetricType.SLEEP_SESSION: "min",
    MetricType.ACTIVITY_DAY: "steps",
}


class HeartRateContext(str, Enum):
    RESTING = "resting"
    ACTIVE = "active"
    WORKOUT = "workout"
    SLEEP = "sleep"


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_bucket(day: date) -> datetime:
    """Midnight UTC of a calendar date, the bucket start of aggregate metrics."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class SampleKey:
    """Deterministic identity of a stored sample.

    Point metrics use the exact UTC timestamp; aggregate metrics use the
    calendar day expressed as midnight UTC.
    """

    patient_id: UUID
    metric: MetricType
    bucket_start: datetime

    @classmethod
    def for_point(cls, patient_id: UUID, metric: MetricType, timestamp: datetime) -> SampleKey:
        return cls(patient_id, metric, as_utc(timestamp))

    @classmethod
    def for_day(cls, patient_id: UUID, metric: MetricType, day: date) -> SampleKey:
        return cls(patient_id, metric, day_bucket(day))


@dataclass
class CanonicalSample:
    """A normalized reading.

    Attributes:
        patient_id: Owning patient.
        device_id:  Device that delivered the data.
        provider:   Provider tag value (e.g. ``"fitbit"``).
        metric:     Canonical metric type.
        start:      UTC start (or the timestamp of point metrics).
        end:        UTC end for ranged samples.
        value:      Primary numeric value in ``unit``.
        unit:       Canonical unit (see :data:`UNITS`).
        day:        Patient-local calendar date; required for aggregates.
        context:    Heart-rate context tag, when applicable.
        details:    Metric-specific components (sleep stages, activity totals).
    """

    patient_id: UUID
    device_id: UUID
    provider: str
    metric: MetricType
    start: datetime
    value: float
    unit: str
    end: datetime | None = None
    day: date | None = None
    context: HeartRateContext | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> SampleKey:
        if self.metric.is_aggregate:
            if self.day is None:
                raise ValueError(f"{self.metric.value} sample requires a calendar day")
            return SampleKey.for_day(self.patient_id, self.metric, self.day)
        return SampleKey.for_point(self.patient_id, self.metric, self.start)

    def to_dict(self) -> dict[str, Any]:
        return {
            "patient_id": str(self.patient_id),
            "device_id": str(self.device_id),
            "provider": self.provider,
            "metric": self.metric.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "day": self.day.isoformat() if self.day else None,
            "value": self.value,
            "unit": self.unit,
            "context": self.context.value if self.context else None,
            "details": self.details,
        }

"""Apple HealthKit push adapter.

Apple provides no server-side API.  The CardioWatch iOS companion app reads
HealthKit and posts batches to ``/api/v1/webhooks/apple-health``, signed with
a hex HMAC-SHA256 of the raw body in the ``x-apple-signature`` header.

Payload::

    {
      "userId": "...", "deviceId": "...", "dataType": "heart_rate",
      "samples": [{"uuid": "...", "startDate": "...", "endDate": "...",
                   "value": 72, "unit": "count/min", "metadata": {...}}],
      "syncToken": "..."
    }

``dataType`` is either a short name (``heart_rate``, ``sleep``...) or the
HealthKit type identifier.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from cardiowatch.wearables.base import (
    ActivityIncrement,
    HeartRateReading,
    HrvReading,
    OxygenReading,
    PayloadValidationError,
    ProviderTag,
    PushAdapter,
    PushBatch,
    RawSampleBatch,
    SleepSegment,
    SleepStage,
)
from cardiowatch.wearables.canonical import HeartRateContext, MetricType

logger = logging.getLogger("cardiowatch.wearables.apple_health")

# HealthKit identifiers → short data type names
_HK_TYPES: dict[str, str] = {
    "HKQuantityTypeIdentifierHeartRate": "heart_rate",
    "HKQuantityTypeIdentifierRestingHeartRate": "resting_heart_rate",
    "HKCategoryTypeIdentifierSleepAnalysis": "sleep",
    "HKQuantityTypeIdentifierOxygenSaturation": "blood_oxygen",
    "HKQuantityTypeIdentifierHeartRateVariabilitySDNN": "hrv",
    "HKQuantityTypeIdentifierStepCount": "steps",
    "HKQuantityTypeIdentifierDistanceWalkingRunning": "distance",
    "HKQuantityTypeIdentifierActiveEnergyBurned": "active_energy",
    "HKQuantityTypeIdentifierAppleExerciseTime": "exercise_time",
    "HKQuantityTypeIdentifierFlightsClimbed": "flights_climbed",
}

# HKCategoryValueSleepAnalysis: inBed and unspecified count as light sleep
_SLEEP_STAGE_MAP: dict[int, SleepStage] = {
    0: SleepStage.LIGHT,  # inBed
    1: SleepStage.LIGHT,  # asleepUnspecified
    2: SleepStage.AWAKE,
    3: SleepStage.LIGHT,  # asleepCore
    4: SleepStage.DEEP,
    5: SleepStage.REM,
}

_SLEEP_STAGE_NAMES: dict[str, int] = {
    "HKCategoryValueSleepAnalysisInBed": 0,
    "HKCategoryValueSleepAnalysisAsleepUnspecified": 1,
    "HKCategoryValueSleepAnalysisAwake": 2,
    "HKCategoryValueSleepAnalysisAsleepCore": 3,
    "HKCategoryValueSleepAnalysisAsleepDeep": 4,
    "HKCategoryValueSleepAnalysisAsleepREM": 5,
}

_DISTANCE_TO_METERS: dict[str, float] = {"m": 1.0, "km": 1000.0, "mi": 1609.344, "ft": 0.3048}
_ENERGY_TO_KCAL: dict[str, float] = {"kcal": 1.0, "Cal": 1.0, "kJ": 1 / 4.184}


class AppleHealthAdapter(PushAdapter):
    """Apple Watch / HealthKit, delivered by the companion iOS app."""

    PROVIDERS = (ProviderTag.APPLE_WATCH,)
    DISPLAY_NAME = "Apple Watch"
    SIGNATURE_HEADER = "x-apple-signature"
    PLATFORMS = ("ios",)
    SUPPORTED_METRICS = frozenset(
        {
            MetricType.HEART_RATE,
            MetricType.RESTING_HEART_RATE,
            MetricType.HRV,
            MetricType.BLOOD_OXYGEN,
            MetricType.SLEEP_SESSION,
            MetricType.ACTIVITY_DAY,
        }
    )

    def _webhook_secret(self) -> str:
        return self._settings.apple_webhook_secret

    def parse_push(self, payload: Any) -> PushBatch:
        """Parse one HealthKit batch.

        Raises:
            PayloadValidationError: Missing identity fields, unknown
                ``dataType`` or a malformed sample.
        """
        if not isinstance(payload, dict):
            raise PayloadValidationError("Payload must be a JSON object")
        user_id = str(self._require(payload, "userId"))
        device_id = str(self._require(payload, "deviceId"))
        data_type = self._require(payload, "dataType")
        if not isinstance(data_type, str):
            raise PayloadValidationError("dataType must be a string")
        kind = _HK_TYPES.get(data_type, data_type)
        handler = self._handlers().get(kind)
        if handler is None:
            raise PayloadValidationError(f"Unsupported dataType: {data_type!r}")

        samples = payload.get("samples")
        if not isinstance(samples, list):
            raise PayloadValidationError("samples must be a list")

        batch = RawSampleBatch()
        for sample in samples:
            if not isinstance(sample, dict):
                raise PayloadValidationError("Each sample must be an object")
            handler(sample, batch)

        return PushBatch(
            samples=batch,
            device_serial=device_id,
            external_user_id=user_id,
            cursor=payload.get("syncToken"),
        )

    def _handlers(self) -> dict[str, Callable[[dict, RawSampleBatch], None]]:
        return {
            "heart_rate": self._heart_rate,
            "resting_heart_rate": self._resting_heart_rate,
            "sleep": self._sleep,
            "blood_oxygen": self._blood_oxygen,
            "hrv": self._hrv,
            "steps": self._activity("steps"),
            "distance": self._activity("distance_m"),
            "active_energy": self._activity("calories"),
            "exercise_time": self._activity("active_minutes"),
            "flights_climbed": self._activity("floors"),
        }

    # ------------------------------------------------------------------
    # Per-type sample parsers
    # ------------------------------------------------------------------

    def _heart_rate(self, sample: dict, batch: RawSampleBatch) -> None:
        metadata = self._optional_object(sample, "metadata")
        batch.heart_rate.append(
            HeartRateReading(
                timestamp=self._require_time(sample, "startDate"),
                bpm=self._require_number(sample, "value"),
                motion_context=self._safe_int(metadata.get("HKHeartRateMotionContext")),
                user_entered=bool(metadata.get("HKMetadataKeyWasUserEntered")),
            )
        )

    def _resting_heart_rate(self, sample: dict, batch: RawSampleBatch) -> None:
        batch.heart_rate.append(
            HeartRateReading(
                timestamp=self._require_time(sample, "startDate"),
                bpm=self._require_number(sample, "value"),
                context=HeartRateContext.RESTING,
            )
        )

    def _sleep(self, sample: dict, batch: RawSampleBatch) -> None:
        raw_value = sample.get("value")
        code = _SLEEP_STAGE_NAMES.get(raw_value) if isinstance(raw_value, str) else None
        if code is None:
            code = self._safe_int(raw_value)
        stage = _SLEEP_STAGE_MAP.get(code) if code is not None else None
        if stage is None:
            raise PayloadValidationError(f"Unknown sleep value: {raw_value!r}")
        batch.sleep.append(
            SleepSegment(
                start=self._require_time(sample, "startDate"),
                end=self._require_time(sample, "endDate"),
                stage=stage,
            )
        )

    def _blood_oxygen(self, sample: dict, batch: RawSampleBatch) -> None:
        value = self._require_number(sample, "value")
        batch.oxygen.append(
            OxygenReading(
                timestamp=self._require_time(sample, "startDate"),
                value=value,
                fraction=value <= 1.0,
            )
        )

    def _hrv(self, sample: dict, batch: RawSampleBatch) -> None:
        batch.hrv.append(
            HrvReading(
                timestamp=self._require_time(sample, "startDate"),
                value_ms=self._require_number(sample, "value"),
                method="sdnn",
            )
        )

    def _activity(self, field_name: str) -> Callable[[dict, RawSampleBatch], None]:
        def parse(sample: dict, batch: RawSampleBatch) -> None:
            value = self._require_number(sample, "value")
            unit = sample.get("unit")
            if not isinstance(unit, str):
                unit = ""
            if field_name == "distance_m":
                value *= _DISTANCE_TO_METERS.get(unit, 1.0)
            elif field_name == "calories":
                value *= _ENERGY_TO_KCAL.get(unit, 1.0)
            start = self._require_time(sample, "startDate")
            source_id = sample.get("uuid") or f"{field_name}:{start.isoformat()}"
            batch.activity.append(
                ActivityIncrement(
                    start=start,
                    end=self._parse_iso_datetime(sample.get("endDate")),
                    source_id=f"apple:{source_id}",
                    **{field_name: value},
                )
            )

        return parse

"""Android Health Connect push adapter (also serves Wear OS devices).

Authorization happens on the phone: the CardioWatch Android app requests
Health Connect permissions and posts change batches to
``/api/v1/webhooks/health-connect`` with a hex HMAC-SHA256 of the raw body
in ``x-health-connect-signature``.

Payload::

    {
      "patientId": "...", "deviceId": "...",
      "deviceInfo": {"manufacturer": "...", "model": "...", "osVersion": "...", "appVersion": "..."},
      "records": [{"recordType": "androidx.health.connect.client.records.StepsRecord",
                   "id": "...", "startTime": "...", "endTime": "...", "count": 1200}],
      "changeToken": "..."
    }

Record types not listed in ``_RECORD_TYPES`` are ignored.
"""

from __future__ import annotations

import logging
from typing import Any

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

logger = logging.getLogger("cardiowatch.wearables.health_connect")

RECORD_PREFIX = "androidx.health.connect.client.records."

_RECORD_TYPES: frozenset[str] = frozenset(
    {
        "HeartRateRecord",
        "RestingHeartRateRecord",
        "HeartRateVariabilityRmssdRecord",
        "OxygenSaturationRecord",
        "StepsRecord",
        "DistanceRecord",
        "ActiveCaloriesBurnedRecord",
        "FloorsClimbedRecord",
        "SleepSessionRecord",
    }
)

# SleepSessionRecord stage codes
_SLEEP_STAGE_MAP: dict[int, SleepStage] = {
    0: SleepStage.LIGHT,  # unknown
    1: SleepStage.AWAKE,
    2: SleepStage.LIGHT,  # sleeping
    3: SleepStage.AWAKE,  # out of bed
    4: SleepStage.LIGHT,
    5: SleepStage.DEEP,
    6: SleepStage.REM,
    7: SleepStage.AWAKE,  # awake in bed
}


class HealthConnectAdapter(PushAdapter):
    """Health Connect records pushed by the Android companion app."""

    PROVIDERS = (ProviderTag.HEALTH_CONNECT, ProviderTag.WEAR_OS)
    DISPLAY_NAME = "Health Connect"
    SIGNATURE_HEADER = "x-health-connect-signature"
    PLATFORMS = ("android",)
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
        return self._settings.health_connect_webhook_secret

    def parse_push(self, payload: Any) -> PushBatch:
        """Parse a Health Connect change batch.

        Raises:
            PayloadValidationError: Missing identity fields or a malformed
                record of a supported type.
        """
        if not isinstance(payload, dict):
            raise PayloadValidationError("Payload must be a JSON object")
        patient_id = str(self._require(payload, "patientId"))
        device_id = str(self._require(payload, "deviceId"))
        records = payload.get("records")
        if not isinstance(records, list):
            raise PayloadValidationError("records must be a list")

        batch = RawSampleBatch()
        skipped = 0
        for record in records:
            if not isinstance(record, dict):
                raise PayloadValidationError("Each record must be an object")
            record_type = str(record.get("recordType", "")).removeprefix(RECORD_PREFIX)
            if record_type not in _RECORD_TYPES:
                skipped += 1
                continue
            self._parse_record(record_type, record, batch)
        if skipped:
            logger.debug("Ignored %d unsupported Health Connect records", skipped)

        return PushBatch(
            samples=batch,
            device_serial=device_id,
            external_user_id=patient_id,
            cursor=payload.get("changeToken"),
        )

    def _parse_record(self, record_type: str, record: dict, batch: RawSampleBatch) -> None:
        if record_type == "HeartRateRecord":
            samples = record.get("samples") or []
            if not isinstance(samples, list):
                raise PayloadValidationError("HeartRateRecord.samples must be a list")
            for sample in samples:
                if not isinstance(sample, dict):
                    raise PayloadValidationError("Heart rate sample must be an object")
                batch.heart_rate.append(
                    HeartRateReading(
                        timestamp=self._require_time(sample, "time"),
                        bpm=self._require_number(sample, "beatsPerMinute"),
                    )
                )
        elif record_type == "RestingHeartRateRecord":
            batch.heart_rate.append(
                HeartRateReading(
                    timestamp=self._require_time(record, "startTime"),
                    bpm=self._require_number(record, "beatsPerMinute"),
                    context=HeartRateContext.RESTING,
                )
            )
        elif record_type == "HeartRateVariabilityRmssdRecord":
            batch.hrv.append(
                HrvReading(
                    timestamp=self._require_time(record, "startTime"),
                    value_ms=self._require_number(record, "heartRateVariabilityMillis"),
                    method="rmssd",
                )
            )
        elif record_type == "OxygenSaturationRecord":
            batch.oxygen.append(
                OxygenReading(
                    timestamp=self._require_time(record, "startTime"),
                    value=self._require_number(record, "percentage"),
                )
            )
        elif record_type == "SleepSessionRecord":
            self._parse_sleep(record, batch)
        else:
            batch.activity.append(self._parse_activity(record_type, record))

    def _parse_activity(self, record_type: str, record: dict) -> ActivityIncrement:
        start = self._require_time(record, "startTime")
        record_id = record.get("id") or f"{record_type}:{start.isoformat()}"
        increment = ActivityIncrement(
            start=start,
            end=self._parse_iso_datetime(record.get("endTime")),
            source_id=f"hc:{record_id}",
        )
        if record_type == "StepsRecord":
            increment.steps = self._require_number(record, "count")
        elif record_type == "DistanceRecord":
            increment.distance_m = self._require_number(self._optional_object(record, "distance"), "inMeters")
        elif record_type == "ActiveCaloriesBurnedRecord":
            increment.calories = self._require_number(self._optional_object(record, "energy"), "inKilocalories")
        elif record_type == "FloorsClimbedRecord":
            increment.floors = self._require_number(record, "floors")
        return increment

    def _parse_sleep(self, record: dict, batch: RawSampleBatch) -> None:
        start = self._require_time(record, "startTime")
        end = self._require_time(record, "endTime")
        session_id = str(record.get("id") or start.isoformat())
        stages = record.get("stages") or []
        if not isinstance(stages, list):
            raise PayloadValidationError("SleepSessionRecord.stages must be a list")
        if not stages:
            # A session without stage detail counts as light sleep throughout
            batch.sleep.append(SleepSegment(start, end, SleepStage.LIGHT, session_id))
            return
        for stage in stages:
            if not isinstance(stage, dict):
                raise PayloadValidationError("Sleep stage must be an object")
            code = self._safe_int(stage.get("stage"))
            batch.sleep.append(
                SleepSegment(
                    start=self._require_time(stage, "startTime"),
                    end=self._require_time(stage, "endTime"),
                    stage=_SLEEP_STAGE_MAP.get(code, SleepStage.LIGHT),
                    session_id=session_id,
                )
            )

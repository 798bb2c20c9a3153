"""Tests for the Health Connect and Samsung Health push adapters."""

from __future__ import annotations

import pytest

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters.health_connect import HealthConnectAdapter
from cardiowatch.wearables.adapters.samsung_health import SamsungHealthAdapter
from cardiowatch.wearables.base import PayloadValidationError, ProviderTag, SleepStage
from cardiowatch.wearables.canonical import HeartRateContext
from cardiowatch.wearables.tests.conftest import (
    HEALTH_CONNECT_SECRET,
    SAMSUNG_SECRET,
    TEST_PATIENT_ID,
    fixture_bytes,
    load_fixture,
    sign,
)


@pytest.fixture
def hc_adapter(settings: Settings) -> HealthConnectAdapter:
    return HealthConnectAdapter(settings=settings)


class TestHealthConnectParsing:
    def test_identity_and_change_token(self, hc_adapter: HealthConnectAdapter) -> None:
        batch = hc_adapter.parse_push(load_fixture("health_connect_records.json"))
        assert batch.device_serial == "PIXEL-WATCH-2"
        assert batch.external_user_id == str(TEST_PATIENT_ID)
        assert batch.cursor == "hc-change-7"

    def test_record_counts(self, hc_adapter: HealthConnectAdapter) -> None:
        samples = hc_adapter.parse_push(load_fixture("health_connect_records.json")).samples
        assert len(samples.heart_rate) == 3
        assert len(samples.hrv) == 1
        assert len(samples.oxygen) == 1
        assert len(samples.activity) == 4
        assert len(samples.sleep) == 5

    def test_unsupported_records_ignored(self, hc_adapter: HealthConnectAdapter) -> None:
        payload = load_fixture("health_connect_records.json")
        payload["records"] = [r for r in payload["records"] if r["id"] == "exercise-1"]
        assert hc_adapter.parse_push(payload).samples.is_empty()

    def test_resting_record_is_explicit(self, hc_adapter: HealthConnectAdapter) -> None:
        samples = hc_adapter.parse_push(load_fixture("health_connect_records.json")).samples
        resting = [r for r in samples.heart_rate if r.context == HeartRateContext.RESTING]
        assert [r.bpm for r in resting] == [58.0]

    def test_activity_fields(self, hc_adapter: HealthConnectAdapter) -> None:
        samples = hc_adapter.parse_push(load_fixture("health_connect_records.json")).samples
        by_id = {inc.source_id: inc for inc in samples.activity}
        assert by_id["hc:steps-1"].steps == 1200
        assert by_id["hc:dist-1"].distance_m == pytest.approx(950.5)
        assert by_id["hc:cal-1"].calories == pytest.approx(85.0)

    def test_sleep_stages_share_session(self, hc_adapter: HealthConnectAdapter) -> None:
        samples = hc_adapter.parse_push(load_fixture("health_connect_records.json")).samples
        assert {s.session_id for s in samples.sleep} == {"sleep-1"}
        assert [s.stage for s in samples.sleep] == [
            SleepStage.LIGHT,
            SleepStage.DEEP,
            SleepStage.REM,
            SleepStage.LIGHT,
            SleepStage.AWAKE,
        ]

    def test_session_without_stages_is_light(self, hc_adapter: HealthConnectAdapter) -> None:
        payload = {
            "patientId": str(TEST_PATIENT_ID),
            "deviceId": "PIXEL-WATCH-2",
            "records": [
                {
                    "recordType": "SleepSessionRecord",
                    "id": "nap",
                    "startTime": "2026-02-23T13:00:00Z",
                    "endTime": "2026-02-23T13:40:00Z",
                }
            ],
        }
        segment = hc_adapter.parse_push(payload).samples.sleep[0]
        assert segment.stage == SleepStage.LIGHT
        assert segment.minutes == pytest.approx(40.0)

    def test_missing_patient_id(self, hc_adapter: HealthConnectAdapter) -> None:
        payload = load_fixture("health_connect_records.json")
        del payload["patientId"]
        with pytest.raises(PayloadValidationError):
            hc_adapter.parse_push(payload)

    def test_records_must_be_list(self, hc_adapter: HealthConnectAdapter) -> None:
        payload = load_fixture("health_connect_records.json")
        payload["records"] = {"recordType": "StepsRecord"}
        with pytest.raises(PayloadValidationError):
            hc_adapter.parse_push(payload)

    def test_malformed_supported_record(self, hc_adapter: HealthConnectAdapter) -> None:
        payload = load_fixture("health_connect_records.json")
        payload["records"] = [{"recordType": "StepsRecord", "startTime": "2026-02-23T09:00:00Z"}]
        with pytest.raises(PayloadValidationError):
            hc_adapter.parse_push(payload)

    @pytest.mark.parametrize(
        "record_type, field, value",
        [
            ("DistanceRecord", "distance", 5),
            ("DistanceRecord", "distance", "950 m"),
            ("ActiveCaloriesBurnedRecord", "energy", [85]),
        ],
    )
    def test_nested_measure_must_be_object(
        self, hc_adapter: HealthConnectAdapter, record_type: str, field: str, value: object
    ) -> None:
        payload = load_fixture("health_connect_records.json")
        payload["records"] = [{"recordType": record_type, "startTime": "2026-02-23T09:00:00Z", field: value}]
        with pytest.raises(PayloadValidationError):
            hc_adapter.parse_push(payload)


class TestHealthConnectSignature:
    def test_valid_signature(self, hc_adapter: HealthConnectAdapter) -> None:
        body = fixture_bytes("health_connect_records.json")
        assert hc_adapter.validate_webhook(sign(HEALTH_CONNECT_SECRET, body), body)

    def test_samsung_uses_its_own_secret(self, settings: Settings) -> None:
        samsung = SamsungHealthAdapter(settings=settings)
        body = fixture_bytes("health_connect_records.json")
        assert samsung.validate_webhook(sign(SAMSUNG_SECRET, body), body)
        assert not samsung.validate_webhook(sign(HEALTH_CONNECT_SECRET, body), body)
        assert samsung.SIGNATURE_HEADER == "x-samsung-signature"
        assert samsung.provider == ProviderTag.SAMSUNG

    def test_samsung_parses_health_connect_format(self, settings: Settings) -> None:
        samsung = SamsungHealthAdapter(settings=settings)
        batch = samsung.parse_push(load_fixture("health_connect_records.json"))
        assert batch.samples.count() == 14

"""Tests for the push ingestion gateway."""

from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import pytest

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters.apple_health import AppleHealthAdapter
from cardiowatch.wearables.base import (
    DeviceNotFoundError,
    PayloadValidationError,
    ProviderTag,
    SignatureError,
)
from cardiowatch.wearables.canonical import MetricType
from cardiowatch.wearables.connections import ConnectionService
from cardiowatch.wearables.ingestion import IngestionGateway
from cardiowatch.wearables.repositories import MemoryDeviceRepository
from cardiowatch.wearables.store import MemorySampleStore
from cardiowatch.wearables.tests.conftest import (
    APPLE_SECRET,
    OTHER_PATIENT_ID,
    TEST_PATIENT_ID,
    fixture_bytes,
    load_fixture,
    pull_device,
    sign,
)
from cardiowatch.wearables.vault import CredentialVault

SERIAL = "APPLE-WATCH-001"


@pytest.fixture
def gateway(
    device_repo: MemoryDeviceRepository,
    sample_store: MemorySampleStore,
    vault: CredentialVault,
    adapter_factory,
) -> IngestionGateway:
    return IngestionGateway(device_repo, sample_store, vault, adapter_factory=adapter_factory)


@pytest.fixture
def apple(settings: Settings) -> AppleHealthAdapter:
    return AppleHealthAdapter(settings=settings)


async def _register(connections: ConnectionService, patient_id=TEST_PATIENT_ID):
    return await connections.register_push_device(patient_id, ProviderTag.APPLE_WATCH, SERIAL)


# ---------------------------------------------------------------------------
# Signed webhooks
# ---------------------------------------------------------------------------


class TestAcceptWebhook:
    @pytest.mark.asyncio
    async def test_valid_delivery_builds_job(
        self, gateway: IngestionGateway, apple: AppleHealthAdapter, connections: ConnectionService
    ) -> None:
        device, _ = await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")

        job = await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)

        assert job.device.id == device.id
        assert job.cursor == "sync-token-42"
        # Three readings plus the inferred resting value
        assert job.count == 4
        assert all(s.patient_id == TEST_PATIENT_ID for s in job.samples)

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self,
        gateway: IngestionGateway,
        apple: AppleHealthAdapter,
        connections: ConnectionService,
        device_repo: MemoryDeviceRepository,
    ) -> None:
        device, _ = await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")
        with pytest.raises(SignatureError):
            await gateway.accept_webhook(apple, sign("wrong", body), body)
        with pytest.raises(SignatureError):
            await gateway.accept_webhook(apple, None, body)
        stored = await device_repo.get(device.id)
        assert stored is not None and stored.last_sync_at is None

    @pytest.mark.asyncio
    async def test_invalid_json_rejected(self, gateway: IngestionGateway, apple: AppleHealthAdapter) -> None:
        body = b"{not json"
        with pytest.raises(PayloadValidationError):
            await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b'{"userId":"u","deviceId":"APPLE-WATCH-001","dataType":["heart_rate"],"samples":[]}',
            b'{"userId":"u","deviceId":"APPLE-WATCH-001","dataType":"heart_rate",'
            b'"samples":[{"startDate":"2026-02-23T10:00:00Z","value":70,"metadata":"x"}]}',
            b'{"userId":"u","deviceId":"APPLE-WATCH-001","dataType":"sleep",'
            b'"samples":[{"startDate":"2026-02-23T01:00:00Z","endDate":"2026-02-23T02:00:00Z","value":1e400}]}',
            b'{"userId":"u","deviceId":"APPLE-WATCH-001","dataType":"sleep",'
            b'"samples":[{"startDate":"2026-02-23T01:00:00Z","endDate":"2026-02-23T02:00:00Z","value":Infinity}]}',
        ],
    )
    async def test_malformed_fields_rejected(
        self, gateway: IngestionGateway, apple: AppleHealthAdapter, connections: ConnectionService, body: bytes
    ) -> None:
        await _register(connections)
        with pytest.raises(PayloadValidationError):
            await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)

    @pytest.mark.asyncio
    async def test_unknown_device_rejected(self, gateway: IngestionGateway, apple: AppleHealthAdapter) -> None:
        body = fixture_bytes("apple_heart_rate.json")
        with pytest.raises(DeviceNotFoundError):
            await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)

    @pytest.mark.asyncio
    async def test_payload_for_other_patient_rejected(
        self, gateway: IngestionGateway, apple: AppleHealthAdapter, connections: ConnectionService
    ) -> None:
        await _register(connections, patient_id=OTHER_PATIENT_ID)
        body = fixture_bytes("apple_heart_rate.json")
        with pytest.raises(DeviceNotFoundError):
            await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)

    @pytest.mark.asyncio
    async def test_disabled_metrics_dropped(
        self,
        gateway: IngestionGateway,
        apple: AppleHealthAdapter,
        connections: ConnectionService,
        device_repo: MemoryDeviceRepository,
    ) -> None:
        device, _ = await _register(connections)
        device.enabled_metrics = {MetricType.RESTING_HEART_RATE}
        await device_repo.save(device)

        body = fixture_bytes("apple_heart_rate.json")
        job = await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)
        assert [s.metric for s in job.samples] == [MetricType.RESTING_HEART_RATE]


class TestProcess:
    @pytest.mark.asyncio
    async def test_stores_samples_and_stamps_sync(
        self,
        gateway: IngestionGateway,
        apple: AppleHealthAdapter,
        connections: ConnectionService,
        device_repo: MemoryDeviceRepository,
        sample_store: MemorySampleStore,
    ) -> None:
        device, _ = await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")
        job = await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body)

        assert await gateway.process(job) == 4
        stored = await device_repo.get(device.id)
        assert stored is not None and stored.last_sync_at is not None
        assert await sample_store.count(TEST_PATIENT_ID) == 4

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(
        self,
        gateway: IngestionGateway,
        apple: AppleHealthAdapter,
        connections: ConnectionService,
        sample_store: MemorySampleStore,
    ) -> None:
        await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")
        for _ in range(2):
            await gateway.process(await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body))
        assert await sample_store.count(TEST_PATIENT_ID) == 4

    @pytest.mark.asyncio
    async def test_concurrent_replays_store_once(
        self,
        gateway: IngestionGateway,
        apple: AppleHealthAdapter,
        connections: ConnectionService,
        sample_store: MemorySampleStore,
    ) -> None:
        await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")
        jobs = [await gateway.accept_webhook(apple, sign(APPLE_SECRET, body), body) for _ in range(10)]

        results = await asyncio.gather(*(gateway.process(job) for job in jobs))

        assert results == [4] * 10
        assert await sample_store.count(TEST_PATIENT_ID) == 4


# ---------------------------------------------------------------------------
# Token-authenticated pushes
# ---------------------------------------------------------------------------


class TestAcceptPush:
    @pytest.mark.asyncio
    async def test_valid_token(self, gateway: IngestionGateway, connections: ConnectionService) -> None:
        device, token = await _register(connections)
        job = await gateway.accept_push(device.id, token, fixture_bytes("apple_heart_rate.json"))
        assert job.device.id == device.id
        assert job.count == 4

    @pytest.mark.asyncio
    async def test_wrong_or_missing_token(self, gateway: IngestionGateway, connections: ConnectionService) -> None:
        device, _ = await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")
        with pytest.raises(SignatureError):
            await gateway.accept_push(device.id, "0" * 64, body)
        with pytest.raises(SignatureError):
            await gateway.accept_push(device.id, None, body)

    @pytest.mark.asyncio
    async def test_rotated_token_invalidates_old(
        self, gateway: IngestionGateway, connections: ConnectionService
    ) -> None:
        device, old_token = await _register(connections)
        _, new_token = await _register(connections)
        body = fixture_bytes("apple_heart_rate.json")
        with pytest.raises(SignatureError):
            await gateway.accept_push(device.id, old_token, body)
        assert (await gateway.accept_push(device.id, new_token, body)).count == 4

    @pytest.mark.asyncio
    async def test_unknown_or_disconnected_device(
        self, gateway: IngestionGateway, connections: ConnectionService
    ) -> None:
        body = fixture_bytes("apple_heart_rate.json")
        with pytest.raises(DeviceNotFoundError):
            await gateway.accept_push(uuid4(), "token", body)

        device, token = await _register(connections)
        await connections.disconnect(device.id)
        with pytest.raises(DeviceNotFoundError):
            await gateway.accept_push(device.id, token, body)

    @pytest.mark.asyncio
    async def test_pull_device_cannot_push(
        self, gateway: IngestionGateway, device_repo: MemoryDeviceRepository, vault: CredentialVault
    ) -> None:
        device = await device_repo.save(pull_device(vault))
        with pytest.raises(DeviceNotFoundError):
            await gateway.accept_push(device.id, "access-0", b"{}")

    @pytest.mark.asyncio
    async def test_malformed_body(self, gateway: IngestionGateway, connections: ConnectionService) -> None:
        device, token = await _register(connections)
        with pytest.raises(PayloadValidationError):
            await gateway.accept_push(device.id, token, b"[")

    @pytest.mark.asyncio
    async def test_payload_naming_other_patient(
        self, gateway: IngestionGateway, connections: ConnectionService
    ) -> None:
        device, token = await _register(connections)
        payload = load_fixture("apple_heart_rate.json")
        payload["userId"] = str(OTHER_PATIENT_ID)
        with pytest.raises(DeviceNotFoundError):
            await gateway.accept_push(device.id, token, json.dumps(payload).encode())


# ---------------------------------------------------------------------------
# Change notifications
# ---------------------------------------------------------------------------


class TestResolveNotification:
    @pytest.mark.asyncio
    async def test_resolves_connected_device(
        self, gateway: IngestionGateway, device_repo: MemoryDeviceRepository, vault: CredentialVault
    ) -> None:
        device = await device_repo.save(pull_device(vault, external_user_id="FB-USER"))
        found = await gateway.resolve_notification([ProviderTag.FITBIT], "FB-USER")
        assert found is not None and found.id == device.id

    @pytest.mark.asyncio
    async def test_unknown_or_missing_user(self, gateway: IngestionGateway) -> None:
        assert await gateway.resolve_notification([ProviderTag.FITBIT], "nobody") is None
        assert await gateway.resolve_notification([ProviderTag.FITBIT], None) is None

"""Tests for the device connection state machine and repositories."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from cardiowatch.wearables.base import ProviderTag, utc_now
from cardiowatch.wearables.devices import (
    ConnectionState,
    Credential,
    Device,
    InvalidTransitionError,
)
from cardiowatch.wearables.repositories import MemoryDeviceRepository, MemoryThresholdRepository
from cardiowatch.wearables.tests.conftest import OTHER_PATIENT_ID, TEST_PATIENT_ID


def _device(state: ConnectionState = ConnectionState.UNAUTHORIZED, **kwargs) -> Device:
    return Device(patient_id=TEST_PATIENT_ID, provider=ProviderTag.FITBIT, state=state, **kwargs)


def _credential() -> Credential:
    return Credential(access_token="enc-access", refresh_token="enc-refresh", expires_at=utc_now())


class TestTransitions:
    def test_oauth_happy_path(self) -> None:
        device = _device()
        device.begin_auth("hash", utc_now() + timedelta(minutes=10), "enc-verifier")
        assert device.state == ConnectionState.PENDING_AUTH
        device.authorize(_credential())
        assert device.state == ConnectionState.AUTHORIZED
        assert device.auth_state_hash is None
        assert device.auth_code_verifier is None

    def test_push_registration_skips_pending(self) -> None:
        device = _device()
        device.authorize(_credential())
        assert device.is_connected

    def test_expire_keeps_refresh_token(self) -> None:
        device = _device(ConnectionState.AUTHORIZED, credential=_credential())
        device.expire()
        assert device.state == ConnectionState.EXPIRED
        assert device.credential is not None
        assert device.credential.access_token is None
        assert device.credential.refresh_token == "enc-refresh"

    def test_expired_can_only_refresh_or_disconnect(self) -> None:
        device = _device(ConnectionState.EXPIRED)
        with pytest.raises(InvalidTransitionError):
            device.transition(ConnectionState.PENDING_AUTH)
        with pytest.raises(InvalidTransitionError):
            device.revoke()
        device.authorize(_credential())
        assert device.state == ConnectionState.AUTHORIZED

    def test_expired_device_reconsents_without_leaving_expired(self) -> None:
        device = _device(ConnectionState.EXPIRED)
        device.begin_auth("hash", utc_now() + timedelta(minutes=10), None)
        assert device.state == ConnectionState.EXPIRED
        assert device.auth_state_hash == "hash"

    def test_revoke_and_disconnect_drop_credential(self) -> None:
        revoked = _device(ConnectionState.AUTHORIZED, credential=_credential())
        revoked.revoke()
        assert revoked.credential is None

        disconnected = _device(ConnectionState.AUTHORIZED, credential=_credential())
        disconnected.disconnect()
        assert disconnected.state == ConnectionState.DISCONNECTED
        assert disconnected.credential is None

    def test_unauthorized_cannot_expire(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            _device().expire()
        assert exc_info.value.current == ConnectionState.UNAUTHORIZED
        assert exc_info.value.target == ConnectionState.EXPIRED

    def test_disconnected_can_reconnect(self) -> None:
        device = _device(ConnectionState.DISCONNECTED)
        device.begin_auth("hash", utc_now(), None)
        assert device.state == ConnectionState.PENDING_AUTH


class TestCredential:
    def test_expires_within(self) -> None:
        now = utc_now()
        credential = Credential(access_token="x", expires_at=now + timedelta(minutes=4))
        assert credential.expires_within(300, now=now)
        assert not credential.expires_within(60, now=now)

    def test_no_expiry_never_expires(self) -> None:
        assert not Credential(access_token="x").expires_within(10**6)


class TestPublicDict:
    def test_never_exposes_credentials(self) -> None:
        device = _device(
            ConnectionState.AUTHORIZED,
            credential=_credential(),
            auth_state_hash="hash",
            serial_number="SERIAL-1",
        )
        public = device.to_public_dict()
        flattened = repr(public)
        assert "enc-access" not in flattened
        assert "enc-refresh" not in flattened
        assert "hash" not in public
        assert public["state"] == "authorized"
        assert public["is_connected"] is True


class TestMemoryDeviceRepository:
    @pytest.mark.asyncio
    async def test_returns_copies(self, device_repo: MemoryDeviceRepository) -> None:
        device = await device_repo.save(_device())
        loaded = await device_repo.get(device.id)
        assert loaded is not None and loaded is not device
        loaded.name = "changed"
        again = await device_repo.get(device.id)
        assert again is not None and again.name is None

    @pytest.mark.asyncio
    async def test_lookup_by_serial_only_connected(self, device_repo: MemoryDeviceRepository) -> None:
        await device_repo.save(_device(ConnectionState.DISCONNECTED, serial_number="S-1"))
        assert await device_repo.find_by_serial([ProviderTag.FITBIT], "S-1") is None

        connected = await device_repo.save(_device(ConnectionState.AUTHORIZED, serial_number="S-1"))
        found = await device_repo.find_by_serial([ProviderTag.FITBIT, ProviderTag.GARMIN], "S-1")
        assert found is not None and found.id == connected.id
        assert await device_repo.find_by_serial([ProviderTag.GARMIN], "S-1") is None

    @pytest.mark.asyncio
    async def test_lookup_by_external_user(self, device_repo: MemoryDeviceRepository) -> None:
        await device_repo.save(_device(ConnectionState.AUTHORIZED, external_user_id="U-1"))
        await device_repo.save(_device(ConnectionState.EXPIRED, external_user_id="U-1"))
        found = await device_repo.find_by_external_user([ProviderTag.FITBIT], "U-1")
        assert len(found) == 1

    @pytest.mark.asyncio
    async def test_find_by_auth_state(self, device_repo: MemoryDeviceRepository) -> None:
        device = _device()
        device.begin_auth("state-hash", utc_now(), None)
        await device_repo.save(device)
        found = await device_repo.find_by_auth_state("state-hash")
        assert found is not None and found.id == device.id
        assert await device_repo.find_by_auth_state("other") is None

    @pytest.mark.asyncio
    async def test_list_for_patient_and_find(self, device_repo: MemoryDeviceRepository) -> None:
        first = await device_repo.save(_device())
        await device_repo.save(Device(patient_id=OTHER_PATIENT_ID, provider=ProviderTag.FITBIT))
        # Distinct updated_at stamps
        await asyncio.sleep(0.001)
        second = _device()
        await device_repo.save(second)

        mine = await device_repo.list_for_patient(TEST_PATIENT_ID)
        assert [d.id for d in mine] == [first.id, second.id]
        latest = await device_repo.find_for_patient(TEST_PATIENT_ID, ProviderTag.FITBIT)
        assert latest is not None and latest.id == second.id
        assert await device_repo.find_for_patient(TEST_PATIENT_ID, ProviderTag.GARMIN) is None

    @pytest.mark.asyncio
    async def test_list_connected(self, device_repo: MemoryDeviceRepository) -> None:
        await device_repo.save(_device(ConnectionState.AUTHORIZED))
        await device_repo.save(_device(ConnectionState.EXPIRED))
        assert len(await device_repo.list_connected([ProviderTag.FITBIT])) == 1


class TestMemoryThresholdRepository:
    @pytest.mark.asyncio
    async def test_round_trip(self, threshold_repo: MemoryThresholdRepository) -> None:
        assert await threshold_repo.get_overrides(TEST_PATIENT_ID) == {}
        await threshold_repo.set_overrides(TEST_PATIENT_ID, {"resting_hr_high": 95.0})
        assert await threshold_repo.get_overrides(TEST_PATIENT_ID) == {"resting_hr_high": 95.0}
        assert await threshold_repo.get_overrides(OTHER_PATIENT_ID) == {}

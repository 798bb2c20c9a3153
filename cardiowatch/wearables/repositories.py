"""Persistence for devices and per-patient clinical threshold overrides."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable
from uuid import UUID

from cardiowatch.services.database import get_connection
from cardiowatch.wearables.base import ProviderTag, utc_now
from cardiowatch.wearables.canonical import MetricType
from cardiowatch.wearables.devices import ConnectionState, Credential, Device
from cardiowatch.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("cardiowatch.wearables.repositories")


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceRepository(ABC):
    @abstractmethod
    async def get(self, device_id: UUID) -> Device | None: ...

    @abstractmethod
    async def save(self, device: Device) -> Device: ...

    @abstractmethod
    async def list_for_patient(self, patient_id: UUID) -> list[Device]: ...

    @abstractmethod
    async def find_by_serial(
        self, providers: Iterable[ProviderTag], serial_number: str
    ) -> Device | None:
        """Connected device with this provider-side serial number."""

    @abstractmethod
    async def find_by_external_user(
        self, providers: Iterable[ProviderTag], external_user_id: str
    ) -> list[Device]:
        """Connected devices belonging to a provider-side user id."""

    @abstractmethod
    async def find_by_auth_state(self, state_hash: str) -> Device | None: ...

    @abstractmethod
    async def list_connected(self, providers: Iterable[ProviderTag]) -> list[Device]: ...

    async def find_for_patient(self, patient_id: UUID, provider: ProviderTag) -> Device | None:
        """Most recently updated device of a provider for a patient."""
        devices = [d for d in await self.list_for_patient(patient_id) if d.provider == provider]
        if not devices:
            return None
        return max(devices, key=lambda d: d.updated_at)


class MemoryDeviceRepository(DeviceRepository):
    """Process-local repository.  Returns copies so callers must ``save``."""

    def __init__(self) -> None:
        self._devices: dict[UUID, Device] = {}
        self._lock = asyncio.Lock()

    async def get(self, device_id: UUID) -> Device | None:
        device = self._devices.get(device_id)
        return copy.deepcopy(device) if device else None

    async def save(self, device: Device) -> Device:
        async with self._lock:
            device.updated_at = utc_now()
            self._devices[device.id] = copy.deepcopy(device)
        return device

    def _select(self, predicate) -> list[Device]:
        return [copy.deepcopy(d) for d in self._devices.values() if predicate(d)]

    async def list_for_patient(self, patient_id: UUID) -> list[Device]:
        return sorted(
            self._select(lambda d: d.patient_id == patient_id), key=lambda d: d.created_at
        )

    async def find_by_serial(
        self, providers: Iterable[ProviderTag], serial_number: str
    ) -> Device | None:
        tags = set(providers)
        found = self._select(
            lambda d: d.provider in tags and d.serial_number == serial_number and d.is_connected
        )
        return found[0] if found else None

    async def find_by_external_user(
        self, providers: Iterable[ProviderTag], external_user_id: str
    ) -> list[Device]:
        tags = set(providers)
        return self._select(
            lambda d: d.provider in tags
            and d.external_user_id == external_user_id
            and d.is_connected
        )

    async def find_by_auth_state(self, state_hash: str) -> Device | None:
        found = self._select(lambda d: d.auth_state_hash == state_hash)
        return found[0] if found else None

    async def list_connected(self, providers: Iterable[ProviderTag]) -> list[Device]:
        tags = set(providers)
        return self._select(lambda d: d.provider in tags and d.is_connected)


_DEVICE_COLUMNS: list[str] = [
    "id",
    "patient_id",
    "provider",
    "state",
    "name",
    "model",
    "firmware_version",
    "serial_number",
    "external_user_id",
    "access_token_encrypted",
    "refresh_token_encrypted",
    "token_expires_at",
    "token_type",
    "enabled_metrics",
    "sync_frequency_minutes",
    "last_sync_at",
    "auth_state_hash",
    "auth_state_expires_at",
    "auth_code_verifier",
    "created_at",
]

_DEVICE_UPSERT_SQL = build_upsert_query("wearable_devices", _DEVICE_COLUMNS, ["id"])
_DEVICE_SELECT_SQL = f"SELECT {', '.join(_DEVICE_COLUMNS)}, updated_at FROM wearable_devices"


def _device_values(device: Device) -> list[Any]:
    cred = device.credential
    return [
        device.id,
        device.patient_id,
        device.provider.value,
        device.state.value,
        device.name,
        device.model,
        device.firmware_version,
        device.serial_number,
        device.external_user_id,
        cred.access_token if cred else None,
        cred.refresh_token if cred else None,
        cred.expires_at if cred else None,
        cred.token_type if cred else None,
        sorted(m.value for m in device.enabled_metrics),
        device.sync_frequency_minutes,
        device.last_sync_at,
        device.auth_state_hash,
        device.auth_state_expires_at,
        device.auth_code_verifier,
        device.created_at,
    ]


def _row_to_device(row: Any) -> Device:
    credential = None
    if row["access_token_encrypted"] or row["refresh_token_encrypted"]:
        credential = Credential(
            access_token=row["access_token_encrypted"],
            refresh_token=row["refresh_token_encrypted"],
            expires_at=row["token_expires_at"],
            token_type=row["token_type"] or "Bearer",
        )
    return Device(
        id=row["id"],
        patient_id=row["patient_id"],
        provider=ProviderTag(row["provider"]),
        state=ConnectionState(row["state"]),
        credential=credential,
        name=row["name"],
        model=row["model"],
        firmware_version=row["firmware_version"],
        serial_number=row["serial_number"],
        external_user_id=row["external_user_id"],
        enabled_metrics={MetricType(m) for m in row["enabled_metrics"] or []},
        sync_frequency_minutes=row["sync_frequency_minutes"],
        last_sync_at=row["last_sync_at"],
        auth_state_hash=row["auth_state_hash"],
        auth_state_expires_at=row["auth_state_expires_at"],
        auth_code_verifier=row["auth_code_verifier"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresDeviceRepository(DeviceRepository):
    async def get(self, device_id: UUID) -> Device | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(f"{_DEVICE_SELECT_SQL} WHERE id = $1", device_id)
        return _row_to_device(row) if row else None

    async def save(self, device: Device) -> Device:
        async with get_connection() as conn:
            await conn.execute(_DEVICE_UPSERT_SQL, *_device_values(device))
        device.updated_at = utc_now()
        return device

    async def _fetch(self, where: str, *args: Any) -> list[Device]:
        async with get_connection() as conn:
            rows = await conn.fetch(f"{_DEVICE_SELECT_SQL} WHERE {where}", *args)
        return [_row_to_device(row) for row in rows]

    async def list_for_patient(self, patient_id: UUID) -> list[Device]:
        return await self._fetch("patient_id = $1 ORDER BY created_at", patient_id)

    async def find_by_serial(
        self, providers: Iterable[ProviderTag], serial_number: str
    ) -> Device | None:
        found = await self._fetch(
            "provider = ANY($1::text[]) AND serial_number = $2 AND state = 'authorized' LIMIT 1",
            [p.value for p in providers],
            serial_number,
        )
        return found[0] if found else None

    async def find_by_external_user(
        self, providers: Iterable[ProviderTag], external_user_id: str
    ) -> list[Device]:
        return await self._fetch(
            "provider = ANY($1::text[]) AND external_user_id = $2 AND state = 'authorized'",
            [p.value for p in providers],
            external_user_id,
        )

    async def find_by_auth_state(self, state_hash: str) -> Device | None:
        found = await self._fetch("auth_state_hash = $1", state_hash)
        return found[0] if found else None

    async def list_connected(self, providers: Iterable[ProviderTag]) -> list[Device]:
        return await self._fetch(
            "provider = ANY($1::text[]) AND state = 'authorized'",
            [p.value for p in providers],
        )


# ---------------------------------------------------------------------------
# Threshold overrides
# ---------------------------------------------------------------------------


class ThresholdRepository(ABC):
    """Per-patient overrides of the default clinical thresholds.

    Overrides are stored as a flat ``{field: value}`` mapping; absent
    fields fall back to the configured defaults.
    """

    @abstractmethod
    async def get_overrides(self, patient_id: UUID) -> dict[str, float]: ...

    @abstractmethod
    async def set_overrides(self, patient_id: UUID, overrides: dict[str, float]) -> None: ...


class MemoryThresholdRepository(ThresholdRepository):
    def __init__(self) -> None:
        self._overrides: dict[UUID, dict[str, float]] = {}

    async def get_overrides(self, patient_id: UUID) -> dict[str, float]:
        return dict(self._overrides.get(patient_id, {}))

    async def set_overrides(self, patient_id: UUID, overrides: dict[str, float]) -> None:
        self._overrides[patient_id] = dict(overrides)


_THRESHOLD_UPSERT_SQL = build_upsert_query(
    "patient_thresholds", ["patient_id", "thresholds"], ["patient_id"]
)


class PostgresThresholdRepository(ThresholdRepository):
    async def get_overrides(self, patient_id: UUID) -> dict[str, float]:
        async with get_connection() as conn:
            raw = await conn.fetchval(
                "SELECT thresholds FROM patient_thresholds WHERE patient_id = $1", patient_id
            )
        if raw is None:
            return {}
        return json.loads(raw) if isinstance(raw, str) else dict(raw)

    async def set_overrides(self, patient_id: UUID, overrides: dict[str, float]) -> None:
        async with get_connection() as conn:
            await conn.execute(_THRESHOLD_UPSERT_SQL, patient_id, json.dumps(overrides))

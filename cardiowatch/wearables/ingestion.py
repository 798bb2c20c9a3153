"""Push ingestion gateway.

Verifies, parses and normalizes incoming device payloads into an
:class:`IngestionJob`; :meth:`IngestionGateway.process` stores a job under
the device's lock.  Routers acknowledge as soon as a job is built and run
``process`` in the background.

Nothing here logs payload content: a rejected webhook is logged with the
provider and reason only.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable
from uuid import UUID

from cardiowatch.wearables.adapters import create_adapter
from cardiowatch.wearables.base import (
    Capability,
    DeviceNotFoundError,
    PayloadValidationError,
    ProviderAdapter,
    ProviderTag,
    PushBatch,
    SignatureError,
    utc_now,
)
from cardiowatch.wearables.canonical import CanonicalSample
from cardiowatch.wearables.devices import ConnectionState, Device
from cardiowatch.wearables.normalizer import Normalizer
from cardiowatch.wearables.repositories import DeviceRepository
from cardiowatch.wearables.store import SampleStore
from cardiowatch.wearables.sync.locks import KeyedLock
from cardiowatch.wearables.vault import CredentialVault, EncryptionError, secure_compare

logger = logging.getLogger("cardiowatch.wearables.ingestion")


@dataclass
class IngestionJob:
    device: Device
    samples: list[CanonicalSample] = field(default_factory=list)
    cursor: str | None = None

    @property
    def count(self) -> int:
        return len(self.samples)


class IngestionGateway:
    """Turns signed push payloads into stored canonical samples."""

    def __init__(
        self,
        devices: DeviceRepository,
        store: SampleStore,
        vault: CredentialVault,
        normalizer: Normalizer | None = None,
        locks: KeyedLock | None = None,
        adapter_factory: Callable[[ProviderTag], ProviderAdapter] | None = None,
    ) -> None:
        self._devices = devices
        self._store = store
        self._vault = vault
        self._normalizer = normalizer or Normalizer()
        self._locks = locks or KeyedLock()
        self._adapter_factory = adapter_factory or create_adapter

    @staticmethod
    def _decode(raw_body: bytes) -> object:
        try:
            return json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PayloadValidationError("Body is not valid JSON") from exc

    def _build_job(self, device: Device, batch: PushBatch) -> IngestionJob:
        if batch.external_user_id and batch.external_user_id != str(device.patient_id):
            logger.warning("Push for device %s names a different patient", device.id)
            raise DeviceNotFoundError("Device not found")

        samples = self._normalizer.normalize(
            batch.samples, device.patient_id, device.id, device.provider.value
        )
        if device.enabled_metrics:
            samples = [s for s in samples if s.metric in device.enabled_metrics]
        cursor = str(batch.cursor) if batch.cursor is not None else None
        return IngestionJob(device=device, samples=samples, cursor=cursor)

    async def accept_webhook(
        self, adapter: ProviderAdapter, signature: str | None, raw_body: bytes
    ) -> IngestionJob:
        """Verify, parse, resolve and normalize one signed webhook delivery.

        Raises:
            SignatureError:         Missing or invalid signature.
            PayloadValidationError: Body or payload is malformed.
            DeviceNotFoundError:    No authorized device for the payload, or
                                    the payload names another patient.
        """
        if not adapter.validate_webhook(signature, raw_body):
            logger.warning("Rejected %s webhook: invalid signature", adapter.provider.value)
            raise SignatureError("Invalid webhook signature")

        payload = self._decode(raw_body)
        batch = adapter.parse_push(payload)
        if not batch.device_serial:
            raise PayloadValidationError("Missing device identifier")

        device = await self._devices.find_by_serial(adapter.PROVIDERS, batch.device_serial)
        if device is None:
            logger.info("Rejected %s webhook: unknown device", adapter.provider.value)
            raise DeviceNotFoundError("Device not found")

        return self._build_job(device, batch)

    async def accept_push(self, device_id: UUID, push_token: str | None, raw_body: bytes) -> IngestionJob:
        """Authenticate a ``/push-data`` delivery by the device's push token.

        Raises:
            SignatureError:         Missing or wrong push token.
            PayloadValidationError: Body or payload is malformed.
            DeviceNotFoundError:    Unknown or unauthorized device.
        """
        device = await self._devices.get(device_id)
        if device is None or device.state != ConnectionState.AUTHORIZED:
            raise DeviceNotFoundError("Device not found")

        adapter = self._adapter_factory(device.provider)
        if adapter.CAPABILITY != Capability.PUSH:
            raise DeviceNotFoundError("Device not found")

        stored = device.credential.access_token if device.credential else None
        if not push_token or not stored:
            raise SignatureError("Missing push token")
        try:
            expected = self._vault.decrypt(stored, strict=True)
        except EncryptionError as exc:
            logger.warning("Push token for device %s failed to decrypt", device.id)
            raise SignatureError("Invalid push token") from exc
        if not secure_compare(expected, push_token):
            logger.warning("Rejected push for device %s: invalid token", device.id)
            raise SignatureError("Invalid push token")

        return self._build_job(device, adapter.parse_push(self._decode(raw_body)))

    async def process(self, job: IngestionJob) -> int:
        """Store a job's samples and stamp ``last_sync_at``; returns the count."""
        async with self._locks.acquire(job.device.id):
            stored = await self._store.upsert_many(job.samples)
            device = await self._devices.get(job.device.id)
            if device is not None:
                device.last_sync_at = utc_now()
                await self._devices.save(device)
        logger.info("Ingested %d samples for device %s", stored, job.device.id)
        return stored

    async def resolve_notification(
        self, providers: Iterable[ProviderTag], external_user_id: str | None
    ) -> Device | None:
        """Connected device for a pull-provider change notification."""
        if not external_user_id:
            return None
        devices = await self._devices.find_by_external_user(providers, external_user_id)
        if not devices:
            logger.info("No connected device for notification user")
            return None
        return max(devices, key=lambda d: d.updated_at)

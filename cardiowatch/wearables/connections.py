"""Device connection lifecycle: connect, OAuth callback, push registration,
disconnect, and access-token retrieval with refresh.

All token material is vault-encrypted before it reaches the repository.
The OAuth ``state`` is stored only as a SHA-256 hash, with a 10-minute
expiry; the PKCE verifier is stored encrypted.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable
from uuid import UUID

import httpx

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters import create_adapter
from cardiowatch.wearables.base import (
    AuthorizationStateError,
    Capability,
    DeviceNotFoundError,
    OAuthTokens,
    ProviderAdapter,
    ProviderTag,
    TokenRefreshError,
    UnsupportedOperationError,
    pkce_pair,
    utc_now,
)
from cardiowatch.wearables.devices import ConnectionState, Credential, Device
from cardiowatch.wearables.repositories import DeviceRepository
from cardiowatch.wearables.sync.locks import SingleFlight
from cardiowatch.wearables.vault import CredentialVault, EncryptionError

logger = logging.getLogger("cardiowatch.wearables.connections")

STATE_TTL = timedelta(minutes=10)
REFRESH_BUFFER_SECONDS = 300

PUSH_REGISTER_ENDPOINT = "/api/v1/wearables/register-device"
PUSH_SYNC_ENDPOINT = "/api/v1/wearables/push-data"

_PUSH_INSTRUCTIONS: dict[ProviderTag, str] = {
    ProviderTag.APPLE_WATCH: (
        "Install the CardioWatch iOS app, allow Health access for heart rate, "
        "sleep, activity, blood oxygen and HRV, then register the watch from the app."
    ),
    ProviderTag.HEALTH_CONNECT: (
        "Install the CardioWatch Android app and grant Health Connect read "
        "permissions, then register the phone from the app."
    ),
    ProviderTag.WEAR_OS: (
        "Pair the watch with Health Connect on your phone, install the "
        "CardioWatch Android app and register the watch from the app."
    ),
    ProviderTag.SAMSUNG: (
        "Enable Samsung Health sync to Health Connect, install the CardioWatch "
        "Android app and register the Galaxy Watch from the app."
    ),
}

AdapterFactory = Callable[[ProviderTag], ProviderAdapter]


class ConnectionService:
    """Owns every state change of a :class:`Device`.

    Args:
        devices:         Device repository.
        vault:           Credential vault.
        settings:        Application settings passed to adapters.
        http_client:     Shared httpx client passed to adapters.
        adapter_factory: Override adapter construction (tests).
        refresh_buffer_seconds: Refresh tokens expiring within this window.
    """

    def __init__(
        self,
        devices: DeviceRepository,
        vault: CredentialVault,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        adapter_factory: AdapterFactory | None = None,
        refresh_buffer_seconds: int = REFRESH_BUFFER_SECONDS,
    ) -> None:
        self._devices = devices
        self._vault = vault
        self._adapter_factory = adapter_factory or (
            lambda tag: create_adapter(tag, settings=settings, http_client=http_client)
        )
        self._refresh_buffer = refresh_buffer_seconds
        self._refreshes = SingleFlight()

    def adapter_for(self, provider: ProviderTag) -> ProviderAdapter:
        return self._adapter_factory(provider)

    # ------------------------------------------------------------------
    # Connect / OAuth callback
    # ------------------------------------------------------------------

    async def begin_connect(self, patient_id: UUID, provider: ProviderTag) -> dict[str, Any]:
        """Start connecting ``provider`` for a patient.

        Pull providers get a consent URL carrying a fresh ``state``; push
        providers get registration instructions for the companion app.
        """
        adapter = self.adapter_for(provider)
        if adapter.CAPABILITY == Capability.PUSH:
            return {
                "type": "push",
                "provider": provider.value,
                "register_endpoint": PUSH_REGISTER_ENDPOINT,
                "instructions": _PUSH_INSTRUCTIONS.get(provider, ""),
            }

        device = await self._devices.find_for_patient(patient_id, provider)
        if device is None:
            device = Device(
                patient_id=patient_id,
                provider=provider,
                name=adapter.DISPLAY_NAME,
                enabled_metrics=set(adapter.SUPPORTED_METRICS),
            )

        state = self._vault.generate_token()
        verifier, challenge = pkce_pair() if adapter.USES_PKCE else (None, None)
        device.begin_auth(
            state_hash=self._vault.hash(state),
            expires_at=utc_now() + STATE_TTL,
            code_verifier=self._vault.encrypt(verifier) if verifier else None,
        )
        await self._devices.save(device)
        logger.info("Started %s authorization for device %s", provider.value, device.id)

        return {
            "type": "oauth",
            "provider": provider.value,
            "device_id": str(device.id),
            "auth_url": adapter.authorization_url(state, challenge),
            "state": state,
            "expires_in": int(STATE_TTL.total_seconds()),
        }

    async def complete_oauth(
        self, provider: ProviderTag, code: str, state: str, patient_id: UUID | None = None
    ) -> Device:
        """Exchange the authorization code and authorize the device.

        The ``state`` is single-use: it is cleared before the exchange.  When
        ``patient_id`` is given the pending flow must belong to that patient.

        Raises:
            AuthorizationStateError: Missing, unknown, expired or mismatched state.
            TokenExchangeError:      The provider rejected the code.
        """
        if not code or not state:
            raise AuthorizationStateError("Missing code or state")

        device = await self._devices.find_by_auth_state(self._vault.hash(state))
        if device is None or device.provider != provider:
            raise AuthorizationStateError("Unknown authorization state")
        if patient_id is not None and device.patient_id != patient_id:
            logger.warning("Authorization state for device %s presented by another patient", device.id)
            raise AuthorizationStateError("Unknown authorization state")

        expires_at = device.auth_state_expires_at
        verifier_ct = device.auth_code_verifier
        device.clear_pending_auth()
        if expires_at is None or expires_at <= utc_now():
            if device.state == ConnectionState.PENDING_AUTH:
                device.transition(ConnectionState.UNAUTHORIZED)
            await self._devices.save(device)
            raise AuthorizationStateError("Authorization state expired")
        await self._devices.save(device)

        try:
            verifier = self._vault.decrypt(verifier_ct, strict=True) if verifier_ct else None
        except EncryptionError as exc:
            raise AuthorizationStateError("Authorization state unreadable") from exc

        result = await self.adapter_for(provider).exchange_code(code, verifier)

        device.external_user_id = result.external_user_id or device.external_user_id
        device.authorize(self._seal(result.tokens))
        await self._devices.save(device)
        logger.info("Authorized %s device %s", provider.value, device.id)
        return device

    # ------------------------------------------------------------------
    # Push registration
    # ------------------------------------------------------------------

    async def register_push_device(
        self,
        patient_id: UUID,
        provider: ProviderTag,
        serial_number: str,
        name: str | None = None,
        model: str | None = None,
        firmware_version: str | None = None,
    ) -> tuple[Device, str]:
        """Register (or re-register) a push device and mint its push token.

        Returns:
            ``(device, push_token)``.  The plaintext token is returned once
            and stored only encrypted.

        Raises:
            UnsupportedOperationError: ``provider`` is not a push provider.
        """
        adapter = self.adapter_for(provider)
        if adapter.CAPABILITY != Capability.PUSH:
            raise UnsupportedOperationError(f"{provider.value} devices connect through OAuth")

        existing = [
            d for d in await self._devices.list_for_patient(patient_id)
            if d.provider == provider and d.serial_number == serial_number
        ]
        device = existing[0] if existing else Device(
            patient_id=patient_id,
            provider=provider,
            serial_number=serial_number,
            enabled_metrics=set(adapter.SUPPORTED_METRICS),
        )
        device.name = name or device.name or adapter.DISPLAY_NAME
        device.model = model or device.model
        device.firmware_version = firmware_version or device.firmware_version

        result = adapter.register_device(
            {"serial_number": serial_number, "model": device.model, "firmware_version": device.firmware_version}
        )
        device.authorize(
            Credential(
                access_token=self._vault.encrypt(result.tokens.access_token),
                token_type=result.tokens.token_type,
            )
        )
        await self._devices.save(device)
        logger.info("Registered %s push device %s", provider.value, device.id)
        return device, result.tokens.access_token

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def disconnect(self, device_id: UUID) -> Device:
        """Revoke at the provider (pull), clear credentials, mark disconnected.

        Disconnecting an already disconnected device is a no-op.

        Raises:
            DeviceNotFoundError: Unknown device.
        """
        device = await self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError("Device not found")
        if device.state == ConnectionState.DISCONNECTED:
            return device

        adapter = self.adapter_for(device.provider)
        credential = device.credential
        if adapter.CAPABILITY == Capability.PULL and credential and credential.access_token:
            try:
                token = self._vault.decrypt(credential.access_token)
            except EncryptionError:
                logger.warning("Skipping revoke for device %s: credential unreadable", device.id)
            else:
                if not await adapter.revoke(token):
                    logger.warning("Provider revoke failed for device %s", device.id)

        device.disconnect()
        await self._devices.save(device)
        logger.info("Disconnected device %s", device.id)
        return device

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _seal(self, tokens: OAuthTokens, previous_refresh: str | None = None) -> Credential:
        return Credential(
            access_token=self._vault.encrypt(tokens.access_token),
            refresh_token=(
                self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else previous_refresh
            ),
            expires_at=tokens.expires_at,
            token_type=tokens.token_type,
        )

    async def _mark_reconnect_required(self, device: Device) -> None:
        current = await self._devices.get(device.id) or device
        if current.state == ConnectionState.AUTHORIZED:
            current.expire()
            await self._devices.save(current)
        device.state = current.state
        device.credential = current.credential

    async def access_token(self, device: Device) -> str:
        """Plaintext access token for a pull device, refreshing when needed.

        A token expiring within the refresh buffer (or an expired device
        holding a refresh token) is refreshed once, shared by concurrent
        callers.  ``device`` is updated in place.

        Raises:
            TokenRefreshError: No usable token; the device is left ``expired``
                and must be reconnected.
        """
        credential = device.credential
        if credential is None or device.state not in (ConnectionState.AUTHORIZED, ConnectionState.EXPIRED):
            raise TokenRefreshError("Device has no credential")

        needs_refresh = (
            device.state == ConnectionState.EXPIRED
            or not credential.access_token
            or credential.expires_within(self._refresh_buffer)
        )
        if needs_refresh:
            return await self._refreshes.run(device.id, lambda: self._refresh(device))

        try:
            return self._vault.decrypt(credential.access_token)
        except EncryptionError as exc:
            logger.warning("Stored credential for device %s failed to decrypt", device.id)
            await self._mark_reconnect_required(device)
            raise TokenRefreshError("Stored credential unreadable") from exc

    async def _refresh(self, device: Device) -> str:
        credential = device.credential
        if credential is None or not credential.refresh_token:
            await self._mark_reconnect_required(device)
            raise TokenRefreshError("No refresh token")

        try:
            refresh_token = self._vault.decrypt(credential.refresh_token)
        except EncryptionError as exc:
            logger.warning("Stored refresh token for device %s failed to decrypt", device.id)
            await self._mark_reconnect_required(device)
            raise TokenRefreshError("Stored credential unreadable") from exc

        try:
            tokens = await self.adapter_for(device.provider).refresh(refresh_token)
        except TokenRefreshError:
            logger.warning("Token refresh failed for device %s", device.id)
            await self._mark_reconnect_required(device)
            raise

        current = await self._devices.get(device.id) or device
        current.authorize(self._seal(tokens, previous_refresh=credential.refresh_token))
        await self._devices.save(current)
        device.state = current.state
        device.credential = current.credential
        logger.info("Refreshed token for device %s", device.id)
        return tokens.access_token

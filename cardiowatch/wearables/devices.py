"""Wearable device model and connection state machine.

State flow::

    unauthorized -> pending_auth -> authorized -> (expired | revoked | disconnected)

Pull devices move ``pending_auth -> authorized`` on a successful code
exchange; push devices go straight to ``authorized`` on registration.  From
``expired`` the only ways out are a successful refresh (``authorized``) or
``disconnected``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from cardiowatch.wearables.base import ProviderTag, WearableError, utc_now
from cardiowatch.wearables.canonical import MetricType


class ConnectionState(str, Enum):
    UNAUTHORIZED = "unauthorized"
    PENDING_AUTH = "pending_auth"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DISCONNECTED = "disconnected"


ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.UNAUTHORIZED: frozenset(
        {ConnectionState.PENDING_AUTH, ConnectionState.AUTHORIZED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.PENDING_AUTH: frozenset(
        {ConnectionState.AUTHORIZED, ConnectionState.UNAUTHORIZED, ConnectionState.DISCONNECTED}
    ),
    # authorized -> authorized covers a successful token refresh
    ConnectionState.AUTHORIZED: frozenset(
        {
            ConnectionState.AUTHORIZED,
            ConnectionState.EXPIRED,
            ConnectionState.REVOKED,
            ConnectionState.DISCONNECTED,
        }
    ),
    ConnectionState.EXPIRED: frozenset({ConnectionState.AUTHORIZED, ConnectionState.DISCONNECTED}),
    ConnectionState.REVOKED: frozenset(
        {ConnectionState.PENDING_AUTH, ConnectionState.AUTHORIZED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.PENDING_AUTH, ConnectionState.AUTHORIZED}
    ),
}


class InvalidTransitionError(WearableError):
    def __init__(self, current: ConnectionState, target: ConnectionState) -> None:
        super().__init__(f"Cannot move device from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass
class Credential:
    """Encrypted token material owned by one device.

    ``access_token`` and ``refresh_token`` hold vault ciphertext, never
    plaintext.  An expired device keeps only ``refresh_token``.
    """

    access_token: str | None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utc_now()
        return self.expires_at - now <= timedelta(seconds=seconds)


@dataclass
class Device:
    """A patient's connection to one wearable provider.

    Attributes:
        id:                     Internal device id.
        patient_id:             Owning patient.
        provider:               Provider tag; fixes the adapter.
        state:                  Connection state.
        credential:             Encrypted credential while authorized.
        name:                   Display name.
        model:                  Hardware model.
        firmware_version:       Firmware/OS version.
        serial_number:          Provider-side device id (push natural key).
        external_user_id:       Provider-side user id (notification webhooks).
        enabled_metrics:        Metrics to sync and accept.
        sync_frequency_minutes: Scheduler cadence for pull devices.
        last_sync_at:           Last successful ingestion.
        auth_state_hash:        SHA-256 of the pending OAuth ``state``.
        auth_state_expires_at:  Expiry of the pending OAuth ``state``.
        auth_code_verifier:     Encrypted PKCE verifier for the pending flow.
    """

    patient_id: uuid.UUID
    provider: ProviderTag
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    state: ConnectionState = ConnectionState.UNAUTHORIZED
    credential: Credential | None = None
    name: str | None = None
    model: str | None = None
    firmware_version: str | None = None
    serial_number: str | None = None
    external_user_id: str | None = None
    enabled_metrics: set[MetricType] = field(default_factory=set)
    sync_frequency_minutes: int = 15
    last_sync_at: datetime | None = None
    auth_state_hash: str | None = None
    auth_state_expires_at: datetime | None = None
    auth_code_verifier: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.AUTHORIZED

    def transition(self, target: ConnectionState) -> None:
        """Move to ``target`` or raise :class:`InvalidTransitionError`."""
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        self.state = target
        self.updated_at = utc_now()

    def authorize(self, credential: Credential) -> None:
        self.transition(ConnectionState.AUTHORIZED)
        self.credential = credential
        self.clear_pending_auth()

    def expire(self) -> None:
        """Drop the access token but keep the refresh token for reauthorization."""
        self.transition(ConnectionState.EXPIRED)
        if self.credential is not None:
            self.credential = Credential(
                access_token=None,
                refresh_token=self.credential.refresh_token,
                expires_at=None,
                token_type=self.credential.token_type,
            )

    def revoke(self) -> None:
        self.transition(ConnectionState.REVOKED)
        self.credential = None

    def disconnect(self) -> None:
        self.transition(ConnectionState.DISCONNECTED)
        self.credential = None
        self.clear_pending_auth()

    def begin_auth(self, state_hash: str, expires_at: datetime, code_verifier: str | None) -> None:
        """Record a pending OAuth flow.

        Expired and authorized devices keep their state while re-consenting;
        completing the flow moves them to ``authorized`` directly.
        """
        if self.state in (
            ConnectionState.UNAUTHORIZED,
            ConnectionState.REVOKED,
            ConnectionState.DISCONNECTED,
        ):
            self.transition(ConnectionState.PENDING_AUTH)
        self.updated_at = utc_now()
        self.auth_state_hash = state_hash
        self.auth_state_expires_at = expires_at
        self.auth_code_verifier = code_verifier

    def clear_pending_auth(self) -> None:
        self.auth_state_hash = None
        self.auth_state_expires_at = None
        self.auth_code_verifier = None

    def to_public_dict(self) -> dict[str, Any]:
        """Client-facing representation; never includes credential material."""
        return {
            "id": str(self.id),
            "patient_id": str(self.patient_id),
            "provider": self.provider.value,
            "state": self.state.value,
            "is_connected": self.is_connected,
            "name": self.name,
            "model": self.model,
            "firmware_version": self.firmware_version,
            "enabled_metrics": sorted(m.value for m in self.enabled_metrics),
            "sync_frequency_minutes": self.sync_frequency_minutes,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "created_at": self.created_at.isoformat(),
        }

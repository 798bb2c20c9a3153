"""Shared fixtures, constants and helpers for the wearable integration tests."""

from __future__ import annotations

import os

# Settings() reads these when cardiowatch.main is imported
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef-0123")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-0123456789abcdef-0123456789")

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

import jwt as pyjwt
import pytest

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters import create_adapter
from cardiowatch.wearables.base import (
    AuthResult,
    OAuthTokens,
    ProviderAdapter,
    ProviderTag,
    PullAdapter,
    RawSampleBatch,
    TokenExchangeError,
    utc_now,
)
from cardiowatch.wearables.canonical import MetricType
from cardiowatch.wearables.config_loader import TrendConfig, load_trend_config
from cardiowatch.wearables.connections import ConnectionService
from cardiowatch.wearables.devices import ConnectionState, Credential, Device
from cardiowatch.wearables.repositories import MemoryDeviceRepository, MemoryThresholdRepository
from cardiowatch.wearables.store import MemorySampleStore
from cardiowatch.wearables.vault import CredentialVault

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test identities
TEST_PATIENT_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_PATIENT_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_SECRET = "vault-secret-for-tests-0123456789abcdef"
JWT_SECRET = "jwt-secret-for-tests-0123456789abcdef-xyz"

APPLE_SECRET = "apple-webhook-secret"
HEALTH_CONNECT_SECRET = "health-connect-webhook-secret"
SAMSUNG_SECRET = "samsung-webhook-secret"
FITBIT_CLIENT_SECRET = "fitbit-client-secret"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def load_fixture(name: str) -> Any:
    return json.loads((FIXTURES_DIR / name).read_text())


def fixture_bytes(name: str) -> bytes:
    """Fixture re-serialized compactly, as a device would send it."""
    return json.dumps(load_fixture(name), separators=(",", ":")).encode("utf-8")


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256, the push-provider webhook signature."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def make_token(
    role: str = "patient",
    patient_id: UUID | None = TEST_PATIENT_ID,
    sub: str = "user-1",
    expires_in: int = 3600,
    secret: str = JWT_SECRET,
) -> str:
    claims: dict[str, Any] = {
        "sub": sub,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if patient_id is not None:
        claims["patient_id"] = str(patient_id)
    return pyjwt.encode(claims, secret, algorithm="HS256")


def auth_headers(**kwargs: Any) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


def pull_device(
    vault: CredentialVault,
    patient_id: UUID = TEST_PATIENT_ID,
    provider: ProviderTag = ProviderTag.FITBIT,
    access_token: str | None = "access-0",
    refresh_token: str | None = "refresh-0",
    expires_in: timedelta = timedelta(hours=8),
    **kwargs: Any,
) -> Device:
    """An authorized pull device holding encrypted tokens."""
    device = Device(
        patient_id=patient_id,
        provider=provider,
        state=ConnectionState.AUTHORIZED,
        credential=Credential(
            access_token=vault.encrypt(access_token) if access_token else None,
            refresh_token=vault.encrypt(refresh_token) if refresh_token else None,
            expires_at=utc_now() + expires_in,
        ),
        **kwargs,
    )
    return device


class StubPullAdapter(PullAdapter):
    """Pull adapter with scripted responses, registered as Fitbit."""

    PROVIDERS = (ProviderTag.FITBIT,)
    DISPLAY_NAME = "Stub Tracker"
    USES_PKCE = True
    SUPPORTED_METRICS = frozenset(
        {
            MetricType.HEART_RATE,
            MetricType.RESTING_HEART_RATE,
            MetricType.SLEEP_SESSION,
            MetricType.ACTIVITY_DAY,
        }
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.batches: dict[MetricType, RawSampleBatch] = {}
        self.failures: dict[MetricType, Exception] = {}
        self.exchange_result = AuthResult(
            tokens=OAuthTokens(
                access_token="access-1",
                refresh_token="refresh-1",
                expires_at=utc_now() + timedelta(hours=8),
            ),
            external_user_id="EXT-USER-1",
        )
        self.refresh_result: OAuthTokens | Exception = OAuthTokens(
            access_token="access-2",
            refresh_token="refresh-2",
            expires_at=utc_now() + timedelta(hours=8),
        )
        self.calls: list[tuple] = []
        self.revoked: list[str] = []

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        return f"https://stub.example/authorize?state={state}&code_challenge={code_challenge}"

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> AuthResult:
        self.calls.append(("exchange", code, code_verifier))
        if code == "rejected":
            raise TokenExchangeError("rejected")
        return self.exchange_result

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        self.calls.append(("refresh", refresh_token))
        # Yield so concurrent callers can join the in-flight refresh
        await asyncio.sleep(0)
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return self.refresh_result

    async def revoke(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        return True

    async def fetch(
        self, metric: MetricType, access_token: str, start: datetime, end: datetime
    ) -> RawSampleBatch:
        self.calls.append(("fetch", metric, access_token))
        if metric in self.failures:
            raise self.failures[metric]
        return self.batches.get(metric, RawSampleBatch())


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def trend_config() -> TrendConfig:
    """Load the real trend config for tests."""
    return load_trend_config()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        encryption_key=TEST_SECRET,
        jwt_secret=JWT_SECRET,
        apple_webhook_secret=APPLE_SECRET,
        health_connect_webhook_secret=HEALTH_CONNECT_SECRET,
        samsung_webhook_secret=SAMSUNG_SECRET,
        fitbit_client_id="fitbit-client",
        fitbit_client_secret=FITBIT_CLIENT_SECRET,
        fitbit_verification_code="verify-me",
        google_client_id="google-client",
        google_client_secret="google-secret",
        google_pubsub_token="pubsub-token",
        garmin_client_id="garmin-client",
        garmin_client_secret="garmin-secret",
        garmin_callback_token="garmin-token",
        withings_client_id="withings-client",
        withings_client_secret="withings-secret",
        withings_callback_token="withings-token",
        rate_limit_per_minute=1000,
    )


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_SECRET)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def device_repo() -> MemoryDeviceRepository:
    return MemoryDeviceRepository()


@pytest.fixture
def threshold_repo() -> MemoryThresholdRepository:
    return MemoryThresholdRepository()


@pytest.fixture
def sample_store() -> MemorySampleStore:
    return MemorySampleStore()


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stub_adapter(settings: Settings) -> StubPullAdapter:
    return StubPullAdapter(settings=settings, provider=ProviderTag.FITBIT)


@pytest.fixture
def adapter_factory(settings: Settings, stub_adapter: StubPullAdapter):
    """Real push adapters; Fitbit replaced by the scripted stub."""

    def factory(provider: ProviderTag) -> ProviderAdapter:
        if provider == ProviderTag.FITBIT:
            return stub_adapter
        return create_adapter(provider, settings=settings)

    return factory


@pytest.fixture
def connections(
    device_repo: MemoryDeviceRepository, vault: CredentialVault, adapter_factory
) -> ConnectionService:
    return ConnectionService(device_repo, vault, adapter_factory=adapter_factory)

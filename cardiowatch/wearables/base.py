"""Base classes and raw data models for the CardioWatch provider adapters.

Every provider adapter subclasses either :class:`PullAdapter` (cloud OAuth
providers queried on demand) or :class:`PushAdapter` (on-device sources that
deliver signed webhooks).  Callers dispatch on ``adapter.CAPABILITY`` rather
than on the provider tag.  Operations that belong to the other variant raise
:class:`UnsupportedOperationError` so "not supported" is never mistaken for
"no data".

Adapters return raw, provider-neutral sample batches; the normalizer turns
those into canonical samples.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from cardiowatch.wearables.canonical import HeartRateContext, MetricType

if TYPE_CHECKING:
    from cardiowatch.config import Settings

logger = logging.getLogger("cardiowatch.wearables")


class ProviderTag(str, Enum):
    APPLE_WATCH = "apple_watch"
    WEAR_OS = "wear_os"
    HEALTH_CONNECT = "health_connect"
    GOOGLE_FIT = "google_fit"
    FITBIT = "fitbit"
    GARMIN = "garmin"
    SAMSUNG = "samsung"
    WITHINGS = "withings"


class Capability(str, Enum):
    PUSH = "push"
    PULL = "pull"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WearableError(Exception):
    """Base class for provider and ingestion errors."""


class UnsupportedOperationError(WearableError):
    """An operation was called on an adapter variant that cannot perform it."""


class ProviderAPIError(WearableError):
    """A provider API returned an error or an unusable response."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class TokenExchangeError(WearableError):
    """Authorization code could not be exchanged for tokens."""


class TokenRefreshError(WearableError):
    """Refresh token was rejected or the refresh call failed."""


class PayloadValidationError(WearableError):
    """Push payload is malformed."""


class SignatureError(WearableError):
    """Webhook signature is missing or invalid."""


class DeviceNotFoundError(WearableError):
    """No connected device matches the request."""


class AuthorizationStateError(WearableError):
    """OAuth ``state`` is missing, expired, or does not match a pending connect."""


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """Token pair returned after authentication or refresh.

    Attributes:
        access_token:  Bearer token for API calls (or the push token).
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    ``"Bearer"`` or ``"device_push"``.
        scope:         Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)


@dataclass
class AuthResult:
    """Outcome of a code exchange or device registration."""

    tokens: OAuthTokens
    external_user_id: str | None = None


# ---------------------------------------------------------------------------
# Raw sample shapes (provider-neutral, pre-normalization)
# ---------------------------------------------------------------------------


class SleepStage(str, Enum):
    AWAKE = "awake"
    LIGHT = "light"
    DEEP = "deep"
    REM = "rem"


@dataclass
class HeartRateReading:
    """One heart-rate measurement.

    ``motion_context`` carries the device's motion code when present
    (1 = active, 2 = resting).  ``context`` is set when the provider states
    the context outright, e.g. a dedicated resting-heart-rate record.
    """

    timestamp: datetime
    bpm: float
    motion_context: int | None = None
    user_entered: bool = False
    context: HeartRateContext | None = None


@dataclass
class OxygenReading:
    timestamp: datetime
    value: float
    fraction: bool = False  # True when the provider reports 0.0–1.0


@dataclass
class HrvReading:
    timestamp: datetime
    value_ms: float
    method: str = "rmssd"


@dataclass
class SleepSegment:
    start: datetime
    end: datetime
    stage: SleepStage
    session_id: str | None = None

    @property
    def minutes(self) -> float:
        return max((self.end - self.start).total_seconds() / 60.0, 0.0)


@dataclass
class ActivityIncrement:
    """An activity contribution.

    ``source_id`` identifies the contribution so that re-delivery replaces
    it while distinct contributions to the same day add up.
    """

    start: datetime
    source_id: str
    end: datetime | None = None
    steps: float = 0.0
    distance_m: float = 0.0
    calories: float = 0.0
    floors: float = 0.0
    active_minutes: float = 0.0


@dataclass
class RawSampleBatch:
    heart_rate: list[HeartRateReading] = field(default_factory=list)
    oxygen: list[OxygenReading] = field(default_factory=list)
    hrv: list[HrvReading] = field(default_factory=list)
    sleep: list[SleepSegment] = field(default_factory=list)
    activity: list[ActivityIncrement] = field(default_factory=list)

    def extend(self, other: RawSampleBatch) -> None:
        self.heart_rate.extend(other.heart_rate)
        self.oxygen.extend(other.oxygen)
        self.hrv.extend(other.hrv)
        self.sleep.extend(other.sleep)
        self.activity.extend(other.activity)

    def count(self) -> int:
        return (
            len(self.heart_rate)
            + len(self.oxygen)
            + len(self.hrv)
            + len(self.sleep)
            + len(self.activity)
        )

    def is_empty(self) -> bool:
        return self.count() == 0


@dataclass
class PushBatch:
    """A parsed push payload.

    Attributes:
        samples:          Raw samples extracted from the payload.
        device_serial:    Provider-side device identifier (natural key).
        external_user_id: Patient/user id as stated by the sender.
        cursor:           Provider sync cursor to echo back.
    """

    samples: RawSampleBatch
    device_serial: str | None = None
    external_user_id: str | None = None
    cursor: str | None = None


@dataclass
class MetricError:
    """A sanitized per-metric failure.  ``reason`` never carries provider text."""

    metric: MetricType
    reason: str  # timeout | provider_error | auth_error | unsupported | internal_error

    def to_dict(self) -> dict[str, str]:
        return {"metric": self.metric.value, "reason": self.reason}


@dataclass
class PullResult:
    samples: RawSampleBatch = field(default_factory=RawSampleBatch)
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[MetricError] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        return "partial" if self.counts else "error"


# Metrics a pull adapter can fetch directly; resting HR is derived from heart rate.
FETCHABLE_METRICS: tuple[MetricType, ...] = (
    MetricType.HEART_RATE,
    MetricType.HRV,
    MetricType.BLOOD_OXYGEN,
    MetricType.SLEEP_SESSION,
    MetricType.ACTIVITY_DAY,
)


def fetch_metric_for(metric: MetricType) -> MetricType:
    if metric == MetricType.RESTING_HEART_RATE:
        return MetricType.HEART_RATE
    return metric


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def pkce_pair() -> tuple[str, str]:
    """Return ``(code_verifier, code_challenge)`` using the S256 method."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Common surface of all provider adapters.

    Both variants expose the full operation set; the half that does not
    apply raises :class:`UnsupportedOperationError`.
    """

    #: Provider tags served by this adapter.
    PROVIDERS: tuple[ProviderTag, ...] = ()

    CAPABILITY: Capability

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    SUPPORTED_METRICS: frozenset[MetricType] = frozenset()

    PLATFORMS: tuple[str, ...] = ()

    #: Whether a companion mobile app must be installed.
    REQUIRES_APP: bool = False

    USES_PKCE: bool = False

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        provider: ProviderTag | None = None,
    ) -> None:
        if settings is None:
            from cardiowatch.config import get_settings

            settings = get_settings()
        self._settings = settings
        self._http_client = http_client
        self.provider = provider or self.PROVIDERS[0]

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"{self.DISPLAY_NAME} is a {self.CAPABILITY.value} provider; "
            f"{operation} is not supported"
        )

    # ------------------------------------------------------------------
    # Pull surface
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        raise self._unsupported("authorization_url")

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> AuthResult:
        raise self._unsupported("exchange_code")

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        raise self._unsupported("refresh")

    async def revoke(self, access_token: str) -> bool:
        raise self._unsupported("revoke")

    async def fetch(
        self, metric: MetricType, access_token: str, start: datetime, end: datetime
    ) -> RawSampleBatch:
        raise self._unsupported("fetch")

    async def sync_health_data(
        self,
        access_token: str,
        since: datetime | None = None,
        until: datetime | None = None,
        metrics: set[MetricType] | None = None,
        timeout: float | None = None,
    ) -> PullResult:
        raise self._unsupported("sync_health_data")

    # ------------------------------------------------------------------
    # Push surface
    # ------------------------------------------------------------------

    def validate_webhook(self, signature: str | None, raw_body: bytes) -> bool:
        raise self._unsupported("validate_webhook")

    def parse_push(self, payload: Any) -> PushBatch:
        raise self._unsupported("parse_push")

    def register_device(self, device_info: dict[str, Any]) -> AuthResult:
        raise self._unsupported("register_device")

    # ------------------------------------------------------------------
    # Shared helpers available to all adapters
    # ------------------------------------------------------------------

    @classmethod
    def descriptor(cls, provider: ProviderTag) -> dict[str, Any]:
        """Public description used by the supported-devices listing."""
        return {
            "id": provider.value,
            "name": cls.DISPLAY_NAME,
            "type": "push" if cls.CAPABILITY == Capability.PUSH else "oauth",
            "capabilities": sorted(m.value for m in cls.SUPPORTED_METRICS),
            "requires_app": cls.REQUIRES_APP,
            "platforms": list(cls.PLATFORMS),
        }

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        missing or unparseable.
        """
        if not value or not isinstance(value, str):
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _from_epoch(value: object, scale: float = 1.0) -> datetime | None:
        """Convert an epoch number (seconds / ``scale``) to UTC datetime."""
        try:
            seconds = float(value) / scale  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        return datetime.fromtimestamp(seconds, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Pull variant
# ---------------------------------------------------------------------------


class PullAdapter(ProviderAdapter):
    """Cloud provider queried on demand with a delegated OAuth token."""

    CAPABILITY = Capability.PULL

    DEFAULT_LOOKBACK_DAYS = 7
    DEFAULT_METRIC_TIMEOUT = 30.0

    @abstractmethod
    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        """Build the provider's consent URL carrying ``state``."""

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: str | None = None) -> AuthResult:
        """Exchange an authorization code for tokens.

        Raises:
            TokenExchangeError: The provider rejected the code.
        """

    @abstractmethod
    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token.

        Raises:
            TokenRefreshError: The provider rejected the refresh.
        """

    @abstractmethod
    async def revoke(self, access_token: str) -> bool:
        """Revoke access at the provider.  Never raises; False on failure."""

    async def fetch_heart_rate(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        raise UnsupportedOperationError(f"{self.DISPLAY_NAME} does not provide heart rate")

    async def fetch_sleep(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        raise UnsupportedOperationError(f"{self.DISPLAY_NAME} does not provide sleep")

    async def fetch_activity(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        raise UnsupportedOperationError(f"{self.DISPLAY_NAME} does not provide activity")

    async def fetch_blood_oxygen(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        raise UnsupportedOperationError(f"{self.DISPLAY_NAME} does not provide blood oxygen")

    async def fetch_hrv(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        raise UnsupportedOperationError(f"{self.DISPLAY_NAME} does not provide HRV")

    async def fetch(
        self, metric: MetricType, access_token: str, start: datetime, end: datetime
    ) -> RawSampleBatch:
        """Fetch raw samples of one metric type for ``[start, end)``."""
        fetchers = {
            MetricType.HEART_RATE: self.fetch_heart_rate,
            MetricType.HRV: self.fetch_hrv,
            MetricType.BLOOD_OXYGEN: self.fetch_blood_oxygen,
            MetricType.SLEEP_SESSION: self.fetch_sleep,
            MetricType.ACTIVITY_DAY: self.fetch_activity,
        }
        return await fetchers[fetch_metric_for(metric)](access_token, start, end)

    async def sync_health_data(
        self,
        access_token: str,
        since: datetime | None = None,
        until: datetime | None = None,
        metrics: set[MetricType] | None = None,
        timeout: float | None = None,
    ) -> PullResult:
        """Fetch every requested metric independently and collect the results.

        Each metric runs under its own timeout.  A failure or timeout is
        recorded in ``PullResult.errors`` and does not cancel the others.

        Args:
            access_token: Valid OAuth access token.
            since:        Window start (default: 7 days before ``until``).
            until:        Window end (default: now).
            metrics:      Metrics to fetch (default: all supported).
            timeout:      Per-metric timeout in seconds.

        Returns:
            PullResult with raw samples, per-metric counts and errors.
        """
        until = until or utc_now()
        since = since or until - timedelta(days=self.DEFAULT_LOOKBACK_DAYS)
        per_metric_timeout = timeout or self.DEFAULT_METRIC_TIMEOUT
        requested = metrics if metrics is not None else self.SUPPORTED_METRICS
        wanted = [
            m for m in FETCHABLE_METRICS
            if m in {fetch_metric_for(r) for r in requested}
        ]

        async def _run(metric: MetricType) -> RawSampleBatch:
            return await asyncio.wait_for(
                self.fetch(metric, access_token, since, until), per_metric_timeout
            )

        outcomes = await asyncio.gather(*(_run(m) for m in wanted), return_exceptions=True)

        result = PullResult()
        for metric, outcome in zip(wanted, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                reason = self._classify_failure(metric, outcome)
                result.errors.append(MetricError(metric=metric, reason=reason))
                continue
            result.samples.extend(outcome)
            result.counts[metric.value] = outcome.count()
        return result

    def _classify_failure(self, metric: MetricType, exc: Exception) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            logger.warning("%s %s fetch timed out", self.DISPLAY_NAME, metric.value)
            return "timeout"
        if isinstance(exc, UnsupportedOperationError):
            return "unsupported"
        if isinstance(exc, ProviderAPIError):
            logger.warning(
                "%s %s fetch failed (status=%s)", self.DISPLAY_NAME, metric.value, exc.status_code
            )
            return "auth_error" if exc.is_auth_error else "provider_error"
        logger.error(
            "%s %s fetch raised unexpectedly", self.DISPLAY_NAME, metric.value, exc_info=exc
        )
        return "internal_error"

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> Any:
        """Perform an HTTP request and return the decoded JSON body.

        Raises:
            ProviderAPIError: Transport failure, non-2xx status or non-JSON body.
        """
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        kwargs: dict[str, Any] = {"params": params, "data": data, "headers": request_headers}
        if auth is not None:
            kwargs["auth"] = auth
        try:
            if self._http_client:
                resp = await self._http_client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderAPIError(
                self.provider.value, "request failed", exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderAPIError(self.provider.value, "transport error") from exc
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderAPIError(self.provider.value, "invalid JSON", resp.status_code) from exc

    async def _get(self, url: str, access_token: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", url, access_token=access_token, params=params)


# ---------------------------------------------------------------------------
# Push variant
# ---------------------------------------------------------------------------


class PushAdapter(ProviderAdapter):
    """On-device source that delivers signed webhook payloads."""

    CAPABILITY = Capability.PUSH
    REQUIRES_APP = True

    #: Request header carrying the signature.
    SIGNATURE_HEADER: str = ""

    @abstractmethod
    def _webhook_secret(self) -> str:
        """Shared secret for this provider's webhook signatures."""

    def _signature_input(self, raw_body: bytes) -> bytes:
        return raw_body

    def _expected_signature(self, secret: str, raw_body: bytes) -> str:
        return hmac.new(
            secret.encode("utf-8"), self._signature_input(raw_body), hashlib.sha256
        ).hexdigest()

    def validate_webhook(self, signature: str | None, raw_body: bytes) -> bool:
        """Verify the HMAC-SHA256 signature over the raw request body.

        Returns False when the secret is not configured or the signature is
        missing.  The comparison is constant-time.
        """
        secret = self._webhook_secret()
        if not secret or not signature:
            return False
        expected = self._expected_signature(secret, raw_body)
        return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))

    @abstractmethod
    def parse_push(self, payload: Any) -> PushBatch:
        """Extract device identity and raw samples from a decoded payload.

        Raises:
            PayloadValidationError: The payload is malformed.
        """

    def register_device(self, device_info: dict[str, Any]) -> AuthResult:
        """Mint a push token for a newly registered device."""
        token = secrets.token_hex(32)
        return AuthResult(tokens=OAuthTokens(access_token=token, token_type="device_push"))

    # ------------------------------------------------------------------
    # Parsing helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require(payload: dict[str, Any], key: str) -> Any:
        value = payload.get(key)
        if value is None or value == "":
            raise PayloadValidationError(f"Missing required field: {key}")
        return value

    @staticmethod
    def _optional_object(item: dict[str, Any], key: str) -> dict[str, Any]:
        """Nested object under ``key``; empty when absent."""
        value = item.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise PayloadValidationError(f"{key} must be an object")
        return value

    def _require_time(self, item: dict[str, Any], key: str) -> datetime:
        parsed = self._parse_iso_datetime(item.get(key))
        if parsed is None:
            raise PayloadValidationError(f"Invalid or missing timestamp: {key}")
        return parsed

    def _require_number(self, item: dict[str, Any], key: str) -> float:
        value = self._safe_float(item.get(key))
        if value is None:
            raise PayloadValidationError(f"Invalid or missing number: {key}")
        return value

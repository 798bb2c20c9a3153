"""Withings Public API adapter (OAuth2 pull).

API base: https://wbsapi.withings.net

Every call is a form POST carrying an ``action`` and answers with an
envelope ``{"status": 0, "body": {...}}``; any non-zero status is an error
even when the HTTP status is 200.

Endpoints used:
    /v2/oauth2   action=requesttoken  - code exchange and refresh
    /measure     action=getmeas       - heart pulse (type 11) and SpO2 (type 54)
    /v2/measure  action=getactivity   - daily activity aggregates
    /v2/sleep    action=get           - high-frequency sleep state series

Withings exposes no HRV stream.  Revocation is local only: Withings has no
revoke endpoint, access lapses once the tokens are discarded.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cardiowatch.wearables.base import (
    ActivityIncrement,
    AuthResult,
    HeartRateReading,
    OAuthTokens,
    OxygenReading,
    ProviderAPIError,
    ProviderTag,
    PullAdapter,
    RawSampleBatch,
    SleepSegment,
    SleepStage,
    TokenExchangeError,
    TokenRefreshError,
    utc_now,
)
from cardiowatch.wearables.canonical import MetricType

logger = logging.getLogger("cardiowatch.wearables.withings")

_AUTH_URL = "https://account.withings.com/oauth2_user/authorize2"
_API_BASE = "https://wbsapi.withings.net"
_TOKEN_URL = f"{_API_BASE}/v2/oauth2"

SCOPES = ["user.info", "user.metrics", "user.activity"]

MEASURE_HEART_PULSE = 11
MEASURE_SPO2 = 54

# Envelope statuses meaning the token is invalid or the user revoked access
_AUTH_STATUSES = frozenset({100, 101, 102, 200, 401})

_SLEEP_STATES: dict[int, SleepStage] = {
    0: SleepStage.AWAKE,
    1: SleepStage.LIGHT,
    2: SleepStage.DEEP,
    3: SleepStage.REM,
}

# /v2/sleep action=get accepts at most 24 hours per request
_SLEEP_WINDOW = timedelta(hours=24)


class WithingsAdapter(PullAdapter):
    """Withings watches and health devices (ScanWatch, Pulse, BPM)."""

    PROVIDERS = (ProviderTag.WITHINGS,)
    DISPLAY_NAME = "Withings"
    PLATFORMS = ("ios", "android", "web")
    SUPPORTED_METRICS = frozenset(
        {
            MetricType.HEART_RATE,
            MetricType.RESTING_HEART_RATE,
            MetricType.BLOOD_OXYGEN,
            MetricType.SLEEP_SESSION,
            MetricType.ACTIVITY_DAY,
        }
    )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self._settings.withings_client_id,
            "redirect_uri": self._settings.withings_redirect_uri,
            "scope": ",".join(SCOPES),
            "state": state,
        }
        return f"{_AUTH_URL}?{urlencode(params, quote_via=quote)}"

    async def _call(self, url: str, action: str, access_token: str | None = None, **params) -> dict:
        """POST ``action`` and unwrap the status envelope.

        Raises:
            ProviderAPIError: HTTP failure or a non-zero envelope status.
        """
        data = await self._request(
            "POST", url, access_token=access_token, data={"action": action, **params}
        )
        status = self._safe_int(data.get("status")) if isinstance(data, dict) else None
        if status != 0:
            code = 401 if status in _AUTH_STATUSES else None
            raise ProviderAPIError(self.provider.value, f"{action} returned status {status}", code)
        return data.get("body") or {}

    def _tokens_from(self, body: dict) -> OAuthTokens:
        expires_in = self._safe_int(body.get("expires_in")) or 10800
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=expires_in),
            token_type=body.get("token_type", "Bearer"),
            scope=str(body.get("scope", "")).split(","),
        )

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> AuthResult:
        try:
            body = await self._call(
                _TOKEN_URL,
                "requesttoken",
                grant_type="authorization_code",
                client_id=self._settings.withings_client_id,
                client_secret=self._settings.withings_client_secret,
                code=code,
                redirect_uri=self._settings.withings_redirect_uri,
            )
            tokens = self._tokens_from(body)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenExchangeError("Withings code exchange failed") from exc
        userid = body.get("userid")
        return AuthResult(tokens=tokens, external_user_id=str(userid) if userid is not None else None)

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        try:
            body = await self._call(
                _TOKEN_URL,
                "requesttoken",
                grant_type="refresh_token",
                client_id=self._settings.withings_client_id,
                client_secret=self._settings.withings_client_secret,
                refresh_token=refresh_token,
            )
            return self._tokens_from(body)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenRefreshError("Withings token refresh failed") from exc

    async def revoke(self, access_token: str) -> bool:
        return True

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _measures(
        self, access_token: str, measure_type: int, start: datetime, end: datetime
    ) -> list[tuple[datetime, float]]:
        body = await self._call(
            f"{_API_BASE}/measure",
            "getmeas",
            access_token,
            meastype=measure_type,
            category=1,
            startdate=int(start.timestamp()),
            enddate=int(end.timestamp()),
        )
        out = []
        for group in body.get("measuregrps", []):
            ts = self._from_epoch(group.get("date"))
            if ts is None:
                continue
            for measure in group.get("measures", []):
                if self._safe_int(measure.get("type")) != measure_type:
                    continue
                value = self._safe_float(measure.get("value"))
                unit = self._safe_int(measure.get("unit")) or 0
                if value is not None:
                    out.append((ts, value * 10**unit))
        return out

    async def fetch_heart_rate(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for ts, bpm in await self._measures(access_token, MEASURE_HEART_PULSE, start, end):
            batch.heart_rate.append(HeartRateReading(timestamp=ts, bpm=bpm))
        return batch

    async def fetch_blood_oxygen(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for ts, value in await self._measures(access_token, MEASURE_SPO2, start, end):
            batch.oxygen.append(OxygenReading(timestamp=ts, value=value))
        return batch

    @staticmethod
    def _local_noon(day: date, tz_name: str | None) -> datetime:
        try:
            tz = ZoneInfo(tz_name) if tz_name else timezone.utc
        except (ZoneInfoNotFoundError, ValueError):
            tz = timezone.utc
        return datetime.combine(day, time(12), tzinfo=tz).astimezone(timezone.utc)

    async def fetch_activity(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        body = await self._call(
            f"{_API_BASE}/v2/measure",
            "getactivity",
            access_token,
            startdateymd=start.date().isoformat(),
            enddateymd=end.date().isoformat(),
            data_fields="steps,distance,elevation,calories,active",
        )
        batch = RawSampleBatch()
        for activity in body.get("activities", []):
            try:
                day = date.fromisoformat(str(activity.get("date")))
            except ValueError:
                continue
            batch.activity.append(
                ActivityIncrement(
                    start=self._local_noon(day, activity.get("timezone")),
                    source_id=f"withings:activity:{day.isoformat()}",
                    steps=self._safe_float(activity.get("steps")) or 0.0,
                    distance_m=self._safe_float(activity.get("distance")) or 0.0,
                    calories=self._safe_float(activity.get("calories")) or 0.0,
                    floors=self._safe_float(activity.get("elevation")) or 0.0,
                    active_minutes=(self._safe_float(activity.get("active")) or 0.0) / 60.0,
                )
            )
        return batch

    async def fetch_sleep(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        window_start = start
        while window_start < end:
            window_end = min(window_start + _SLEEP_WINDOW, end)
            body = await self._call(
                f"{_API_BASE}/v2/sleep",
                "get",
                access_token,
                startdate=int(window_start.timestamp()),
                enddate=int(window_end.timestamp()),
            )
            for entry in body.get("series", []):
                stage = _SLEEP_STATES.get(self._safe_int(entry.get("state")))
                seg_start = self._from_epoch(entry.get("startdate"))
                seg_end = self._from_epoch(entry.get("enddate"))
                if stage is not None and seg_start and seg_end:
                    # Sessions are rebuilt from gaps between segments
                    batch.sleep.append(SleepSegment(seg_start, seg_end, stage))
            window_start = window_end
        return batch

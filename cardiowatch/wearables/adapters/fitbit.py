"""Fitbit Web API adapter (OAuth2 authorization code + PKCE).

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/profile.json                                 - UTC offset of the account
    /1/user/-/activities/heart/date/{date}/1d/1min.json    - intraday HR + resting HR
    /1.2/user/-/sleep/date/{start}/{end}.json              - sleep logs with stage levels
    /1/user/-/activities/date/{date}.json                  - daily activity summary
    /1/user/-/spo2/date/{start}/{end}.json                 - nightly SpO2 average
    /1/user/-/hrv/date/{start}/{end}.json                  - nightly RMSSD

Fitbit reports intraday and sleep times in the account's local time; the
profile's ``offsetFromUTCMillis`` converts them to UTC.

Subscription notifications are verified with :meth:`FitbitAdapter.verify_notification`.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import date, datetime, time, timedelta, timezone
from urllib.parse import quote, urlencode

from cardiowatch.wearables.base import (
    ActivityIncrement,
    AuthResult,
    HeartRateReading,
    HrvReading,
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
from cardiowatch.wearables.canonical import HeartRateContext, MetricType

logger = logging.getLogger("cardiowatch.wearables.fitbit")

_AUTH_URL = "https://www.fitbit.com/oauth2/authorize"
_API_BASE = "https://api.fitbit.com"
_TOKEN_URL = f"{_API_BASE}/oauth2/token"
_REVOKE_URL = f"{_API_BASE}/oauth2/revoke"

SCOPES = ["activity", "heartrate", "sleep", "oxygen_saturation", "respiratory_rate", "profile"]

# Range endpoints accept at most 30 days per request
_MAX_RANGE_DAYS = 30

_SLEEP_LEVELS: dict[str, SleepStage] = {
    "wake": SleepStage.AWAKE,
    "awake": SleepStage.AWAKE,
    "restless": SleepStage.AWAKE,
    "light": SleepStage.LIGHT,
    "asleep": SleepStage.LIGHT,
    "deep": SleepStage.DEEP,
    "rem": SleepStage.REM,
}


def _days(start: datetime, end: datetime) -> list[date]:
    first, last = start.date(), end.date()
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def _ranges(start: datetime, end: datetime) -> list[tuple[date, date]]:
    days = _days(start, end)
    return [
        (days[i], days[min(i + _MAX_RANGE_DAYS, len(days)) - 1])
        for i in range(0, len(days), _MAX_RANGE_DAYS)
    ]


class FitbitAdapter(PullAdapter):
    """Fitbit trackers and smartwatches."""

    PROVIDERS = (ProviderTag.FITBIT,)
    DISPLAY_NAME = "Fitbit"
    PLATFORMS = ("ios", "android", "web")
    USES_PKCE = True
    SUPPORTED_METRICS = frozenset(
        {
            MetricType.HEART_RATE,
            MetricType.RESTING_HEART_RATE,
            MetricType.HRV,
            MetricType.BLOOD_OXYGEN,
            MetricType.SLEEP_SESSION,
            MetricType.ACTIVITY_DAY,
        }
    )

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._utc_offset: timedelta | None = None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self._settings.fitbit_client_id,
            "redirect_uri": self._settings.fitbit_redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{_AUTH_URL}?{urlencode(params, quote_via=quote)}"

    def _client_auth(self) -> tuple[str, str]:
        return (self._settings.fitbit_client_id, self._settings.fitbit_client_secret)

    def _tokens_from(self, data: dict) -> OAuthTokens:
        expires_in = self._safe_int(data.get("expires_in")) or 28800
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=expires_in),
            token_type=data.get("token_type", "Bearer"),
            scope=str(data.get("scope", "")).split(),
        )

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> AuthResult:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._settings.fitbit_client_id,
            "redirect_uri": self._settings.fitbit_redirect_uri,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        try:
            data = await self._request("POST", _TOKEN_URL, data=form, auth=self._client_auth())
            tokens = self._tokens_from(data)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenExchangeError("Fitbit code exchange failed") from exc
        return AuthResult(tokens=tokens, external_user_id=data.get("user_id"))

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Fitbit rotates refresh tokens: the old one is invalid after use."""
        try:
            data = await self._request(
                "POST",
                _TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=self._client_auth(),
            )
            return self._tokens_from(data)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenRefreshError("Fitbit token refresh failed") from exc

    async def revoke(self, access_token: str) -> bool:
        try:
            await self._request(
                "POST", _REVOKE_URL, data={"token": access_token}, auth=self._client_auth()
            )
        except ProviderAPIError as exc:
            logger.warning("Fitbit revoke failed (status=%s)", exc.status_code)
            return False
        return True

    def verify_notification(self, signature: str | None, raw_body: bytes) -> bool:
        """Check ``X-Fitbit-Signature``: base64 HMAC-SHA256 of ``body + "&"``."""
        secret = self._settings.fitbit_client_secret
        if not secret or not signature:
            return False
        digest = hmac.new(secret.encode("utf-8"), raw_body + b"&", hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _offset(self, access_token: str) -> timedelta:
        if self._utc_offset is None:
            profile = await self._get(f"{_API_BASE}/1/user/-/profile.json", access_token)
            millis = self._safe_int((profile.get("user") or {}).get("offsetFromUTCMillis")) or 0
            self._utc_offset = timedelta(milliseconds=millis)
        return self._utc_offset

    @staticmethod
    def _local_to_utc(value: datetime, offset: timedelta) -> datetime:
        return (value - offset).replace(tzinfo=timezone.utc)

    def _parse_local(self, value: str | None, offset: timedelta) -> datetime | None:
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            return parsed.astimezone(timezone.utc)
        return self._local_to_utc(parsed, offset)

    async def fetch_heart_rate(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        offset = await self._offset(access_token)
        batch = RawSampleBatch()
        for day in _days(start, end):
            data = await self._get(
                f"{_API_BASE}/1/user/-/activities/heart/date/{day.isoformat()}/1d/1min.json",
                access_token,
            )
            for summary in data.get("activities-heart", []):
                resting = self._safe_float((summary.get("value") or {}).get("restingHeartRate"))
                if resting:
                    batch.heart_rate.append(
                        HeartRateReading(
                            timestamp=self._local_to_utc(datetime.combine(day, time.min), offset),
                            bpm=resting,
                            context=HeartRateContext.RESTING,
                        )
                    )
            intraday = (data.get("activities-heart-intraday") or {}).get("dataset", [])
            for point in intraday:
                bpm = self._safe_float(point.get("value"))
                try:
                    clock = time.fromisoformat(point.get("time", ""))
                except ValueError:
                    continue
                if bpm is None:
                    continue
                ts = self._local_to_utc(datetime.combine(day, clock), offset)
                if start <= ts < end:
                    batch.heart_rate.append(HeartRateReading(timestamp=ts, bpm=bpm))
        return batch

    async def fetch_sleep(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        offset = await self._offset(access_token)
        batch = RawSampleBatch()
        for first, last in _ranges(start, end):
            data = await self._get(
                f"{_API_BASE}/1.2/user/-/sleep/date/{first.isoformat()}/{last.isoformat()}.json",
                access_token,
            )
            for log in data.get("sleep", []):
                session_id = str(log.get("logId") or log.get("startTime"))
                levels = (log.get("levels") or {}).get("data") or []
                for level in levels:
                    seg_start = self._parse_local(level.get("dateTime"), offset)
                    seconds = self._safe_float(level.get("seconds"))
                    stage = _SLEEP_LEVELS.get(str(level.get("level", "")).lower())
                    if seg_start is None or not seconds or stage is None:
                        continue
                    batch.sleep.append(
                        SleepSegment(seg_start, seg_start + timedelta(seconds=seconds), stage, session_id)
                    )
                if not levels:
                    log_start = self._parse_local(log.get("startTime"), offset)
                    log_end = self._parse_local(log.get("endTime"), offset)
                    if log_start and log_end:
                        batch.sleep.append(SleepSegment(log_start, log_end, SleepStage.LIGHT, session_id))
        return batch

    async def fetch_activity(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        offset = await self._offset(access_token)
        batch = RawSampleBatch()
        for day in _days(start, end):
            data = await self._get(
                f"{_API_BASE}/1/user/-/activities/date/{day.isoformat()}.json", access_token
            )
            summary = data.get("summary") or {}
            if not summary:
                continue
            distance_km = next(
                (
                    self._safe_float(d.get("distance")) or 0.0
                    for d in summary.get("distances", [])
                    if d.get("activity") == "total"
                ),
                0.0,
            )
            active_minutes = sum(
                self._safe_float(summary.get(k)) or 0.0
                for k in ("fairlyActiveMinutes", "veryActiveMinutes")
            )
            batch.activity.append(
                ActivityIncrement(
                    # Noon local keeps the summary on its own calendar day
                    start=self._local_to_utc(datetime.combine(day, time(12)), offset),
                    source_id=f"fitbit:summary:{day.isoformat()}",
                    steps=self._safe_float(summary.get("steps")) or 0.0,
                    distance_m=distance_km * 1000.0,
                    calories=self._safe_float(summary.get("activityCalories")) or 0.0,
                    floors=self._safe_float(summary.get("floors")) or 0.0,
                    active_minutes=active_minutes,
                )
            )
        return batch

    async def fetch_blood_oxygen(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        offset = await self._offset(access_token)
        batch = RawSampleBatch()
        for first, last in _ranges(start, end):
            data = await self._get(
                f"{_API_BASE}/1/user/-/spo2/date/{first.isoformat()}/{last.isoformat()}.json",
                access_token,
            )
            entries = data if isinstance(data, list) else [data]
            for entry in entries:
                avg = self._safe_float((entry.get("value") or {}).get("avg"))
                day = self._parse_local(entry.get("dateTime"), offset)
                if avg is not None and day is not None:
                    batch.oxygen.append(OxygenReading(timestamp=day, value=avg))
        return batch

    async def fetch_hrv(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        offset = await self._offset(access_token)
        batch = RawSampleBatch()
        for first, last in _ranges(start, end):
            data = await self._get(
                f"{_API_BASE}/1/user/-/hrv/date/{first.isoformat()}/{last.isoformat()}.json",
                access_token,
            )
            for entry in data.get("hrv", []):
                rmssd = self._safe_float((entry.get("value") or {}).get("dailyRmssd"))
                day = self._parse_local(entry.get("dateTime"), offset)
                if rmssd is not None and day is not None:
                    batch.hrv.append(HrvReading(timestamp=day, value_ms=rmssd, method="rmssd"))
        return batch

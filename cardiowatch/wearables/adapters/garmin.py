"""Garmin Health API adapter (OAuth2 authorization code + PKCE).

Garmin requires a client id/secret registered with the Garmin Connect
Developer Program.

API base: https://apis.garmin.com/wellness-api/rest

Endpoints used:
    /user/id            - Garmin user id (matches webhook notifications)
    /dailies            - Daily summaries (steps, distance, kcal, resting HR, HR samples)
    /sleeps             - Sleep summaries with ``sleepLevelsMap``
    /pulseOx            - SpO2 samples
    /hrv                - Overnight HRV samples
    /user/registration  - DELETE to deregister (revoke)

Summary endpoints accept an upload window of at most 86400 seconds, so
longer ranges are requested one day at a time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
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

logger = logging.getLogger("cardiowatch.wearables.garmin")

_AUTH_URL = "https://connect.garmin.com/oauth2Confirm"
_TOKEN_URL = "https://diauth.garmin.com/di-oauth2-service/oauth/token"
_API_BASE = "https://apis.garmin.com/wellness-api/rest"

_MAX_WINDOW_SECONDS = 86400

_SLEEP_LEVELS: dict[str, SleepStage] = {
    "deep": SleepStage.DEEP,
    "light": SleepStage.LIGHT,
    "rem": SleepStage.REM,
    "awake": SleepStage.AWAKE,
}


def _windows(start: datetime, end: datetime) -> list[tuple[int, int]]:
    """Split ``[start, end)`` into upload windows Garmin will accept."""
    lo, hi = int(start.timestamp()), int(end.timestamp())
    return [(t, min(t + _MAX_WINDOW_SECONDS, hi)) for t in range(lo, hi, _MAX_WINDOW_SECONDS)]


class GarminAdapter(PullAdapter):
    """Garmin Connect devices (Forerunner, Fenix, Venu, Vivoactive...)."""

    PROVIDERS = (ProviderTag.GARMIN,)
    DISPLAY_NAME = "Garmin Connect"
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

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self._settings.garmin_client_id,
            "redirect_uri": self._settings.garmin_redirect_uri,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{_AUTH_URL}?{urlencode(params, quote_via=quote)}"

    def _tokens_from(self, data: dict) -> OAuthTokens:
        expires_in = self._safe_int(data.get("expires_in")) or 86400
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
            "client_id": self._settings.garmin_client_id,
            "client_secret": self._settings.garmin_client_secret,
            "code": code,
            "redirect_uri": self._settings.garmin_redirect_uri,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        try:
            tokens = self._tokens_from(await self._request("POST", _TOKEN_URL, data=form))
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenExchangeError("Garmin code exchange failed") from exc

        external_user_id = None
        try:
            profile = await self._get(f"{_API_BASE}/user/id", tokens.access_token)
            external_user_id = profile.get("userId")
        except ProviderAPIError as exc:
            logger.warning("Garmin user id lookup failed (status=%s)", exc.status_code)
        return AuthResult(tokens=tokens, external_user_id=external_user_id)

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        try:
            data = await self._request(
                "POST",
                _TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._settings.garmin_client_id,
                    "client_secret": self._settings.garmin_client_secret,
                    "refresh_token": refresh_token,
                },
            )
            return self._tokens_from(data)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenRefreshError("Garmin token refresh failed") from exc

    async def revoke(self, access_token: str) -> bool:
        try:
            await self._request("DELETE", f"{_API_BASE}/user/registration", access_token=access_token)
        except ProviderAPIError as exc:
            logger.warning("Garmin deregistration failed (status=%s)", exc.status_code)
            return False
        return True

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _summaries(
        self, endpoint: str, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        out: list[dict] = []
        for lo, hi in _windows(start, end):
            data = await self._get(
                f"{_API_BASE}/{endpoint}",
                access_token,
                params={"uploadStartTimeInSeconds": lo, "uploadEndTimeInSeconds": hi},
            )
            # Garmin returns a bare list; older accounts wrap it by endpoint name
            items = data if isinstance(data, list) else data.get(endpoint, [])
            out.extend(item for item in items if isinstance(item, dict))
        return out

    def _offset_series(self, summary: dict, key: str) -> list[tuple[datetime, float]]:
        base = self._safe_int(summary.get("startTimeInSeconds"))
        series = summary.get(key) or {}
        if base is None or not isinstance(series, dict):
            return []
        points = []
        for offset, value in series.items():
            seconds = self._safe_int(offset)
            number = self._safe_float(value)
            if seconds is None or number is None:
                continue
            ts = self._from_epoch(base + seconds)
            if ts is not None:
                points.append((ts, number))
        return points

    async def fetch_heart_rate(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for daily in await self._summaries("dailies", access_token, start, end):
            resting = self._safe_float(daily.get("restingHeartRateInBeatsPerMinute"))
            day_start = self._from_epoch(daily.get("startTimeInSeconds"))
            if resting and day_start:
                batch.heart_rate.append(
                    HeartRateReading(timestamp=day_start, bpm=resting, context=HeartRateContext.RESTING)
                )
            for ts, bpm in self._offset_series(daily, "timeOffsetHeartRateSamples"):
                batch.heart_rate.append(HeartRateReading(timestamp=ts, bpm=bpm))
        return batch

    async def fetch_activity(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for daily in await self._summaries("dailies", access_token, start, end):
            day_start = self._from_epoch(daily.get("startTimeInSeconds"))
            if day_start is None:
                continue
            active_seconds = sum(
                self._safe_float(daily.get(k)) or 0.0
                for k in ("moderateIntensityDurationInSeconds", "vigorousIntensityDurationInSeconds")
            )
            summary_id = daily.get("summaryId") or daily.get("calendarDate") or day_start.isoformat()
            batch.activity.append(
                ActivityIncrement(
                    # Midday keeps the summary on its own calendar day
                    start=day_start + timedelta(hours=12),
                    source_id=f"garmin:{summary_id}",
                    steps=self._safe_float(daily.get("steps")) or 0.0,
                    distance_m=self._safe_float(daily.get("distanceInMeters")) or 0.0,
                    calories=self._safe_float(daily.get("activeKilocalories")) or 0.0,
                    floors=self._safe_float(daily.get("floorsClimbed")) or 0.0,
                    active_minutes=active_seconds / 60.0,
                )
            )
        return batch

    async def fetch_sleep(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for sleep in await self._summaries("sleeps", access_token, start, end):
            session_id = str(sleep.get("summaryId") or sleep.get("startTimeInSeconds"))
            levels: dict[str, Any] = sleep.get("sleepLevelsMap") or {}
            for level, spans in levels.items():
                stage = _SLEEP_LEVELS.get(level.lower())
                if stage is None or not isinstance(spans, list):
                    continue
                for span in spans:
                    seg_start = self._from_epoch(span.get("startTimeInSeconds"))
                    seg_end = self._from_epoch(span.get("endTimeInSeconds"))
                    if seg_start and seg_end:
                        batch.sleep.append(SleepSegment(seg_start, seg_end, stage, session_id))
            if not levels:
                s_start = self._from_epoch(sleep.get("startTimeInSeconds"))
                duration = self._safe_int(sleep.get("durationInSeconds"))
                if s_start and duration:
                    batch.sleep.append(
                        SleepSegment(s_start, s_start + timedelta(seconds=duration), SleepStage.LIGHT, session_id)
                    )
        return batch

    async def fetch_blood_oxygen(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for summary in await self._summaries("pulseOx", access_token, start, end):
            for ts, value in self._offset_series(summary, "timeOffsetSpo2Values"):
                batch.oxygen.append(OxygenReading(timestamp=ts, value=value))
        return batch

    async def fetch_hrv(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for summary in await self._summaries("hrv", access_token, start, end):
            for ts, value in self._offset_series(summary, "hrvValues"):
                batch.hrv.append(HrvReading(timestamp=ts, value_ms=value, method="rmssd"))
        return batch

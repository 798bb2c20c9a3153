"""Google Fit REST API adapter (OAuth2 pull).

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    /dataSources/{id}/datasets/{startNanos}-{endNanos} - merged data streams
    /sessions?activityType=72                          - sleep sessions

Heart rate, steps, distance, calories, SpO2 and sleep segments are read from
Google's merged ("derived") data sources.  Google Fit exposes no HRV stream.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from urllib.parse import quote, urlencode

import jwt as pyjwt

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

logger = logging.getLogger("cardiowatch.wearables.google_fit")

_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_TOKEN_URL = "https://oauth2.googleapis.com/token"
_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"

_SCOPE_PREFIX = "https://www.googleapis.com/auth/fitness."
SCOPES: list[str] = ["openid"] + [
    _SCOPE_PREFIX + name
    for name in (
        "heart_rate.read",
        "blood_pressure.read",
        "oxygen_saturation.read",
        "body_temperature.read",
        "activity.read",
        "sleep.read",
        "body.read",
        "location.read",
    )
]

_DS_HEART_RATE = "derived:com.google.heart_rate.bpm:com.google.android.gms:merge_heart_rate_bpm"
_DS_STEPS = "derived:com.google.step_count.delta:com.google.android.gms:estimated_steps"
_DS_DISTANCE = "derived:com.google.distance.delta:com.google.android.gms:merge_distance_delta"
_DS_CALORIES = "derived:com.google.calories.expended:com.google.android.gms:merge_calories_expended"
_DS_SPO2 = "derived:com.google.oxygen_saturation:com.google.android.gms:merged"
_DS_SLEEP = "derived:com.google.sleep.segment:com.google.android.gms:merged"

_SLEEP_ACTIVITY_TYPE = 72

# com.google.sleep.segment intVal
_SLEEP_STAGE_MAP: dict[int, SleepStage] = {
    1: SleepStage.AWAKE,
    2: SleepStage.LIGHT,  # generic sleep
    3: SleepStage.AWAKE,  # out of bed
    4: SleepStage.LIGHT,
    5: SleepStage.DEEP,
    6: SleepStage.REM,
}


def _nanos(value: datetime) -> int:
    return int(value.timestamp() * 1_000_000_000)


class GoogleFitAdapter(PullAdapter):
    """Google Fit (Android phones, Wear OS watches, web)."""

    PROVIDERS = (ProviderTag.GOOGLE_FIT,)
    DISPLAY_NAME = "Google Fit"
    PLATFORMS = ("android", "web")
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
            "client_id": self._settings.google_client_id,
            "redirect_uri": self._settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{_AUTH_URL}?{urlencode(params, quote_via=quote)}"

    def _tokens_from(self, data: dict, fallback_refresh: str | None = None) -> OAuthTokens:
        expires_in = self._safe_int(data.get("expires_in")) or 3600
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=utc_now() + timedelta(seconds=expires_in),
            token_type=data.get("token_type", "Bearer"),
            scope=str(data.get("scope", "")).split(),
        )

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> AuthResult:
        try:
            data = await self._request(
                "POST",
                _TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._settings.google_client_id,
                    "client_secret": self._settings.google_client_secret,
                    "redirect_uri": self._settings.google_redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
            tokens = self._tokens_from(data)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenExchangeError("Google Fit code exchange failed") from exc
        return AuthResult(tokens=tokens, external_user_id=self._subject(data.get("id_token")))

    @staticmethod
    def _subject(id_token: str | None) -> str | None:
        """Google account id from the id_token returned with the ``openid`` scope.

        The token comes straight from Google's token endpoint over TLS, so
        only the ``sub`` claim is read here.
        """
        if not id_token:
            return None
        try:
            claims = pyjwt.decode(id_token, options={"verify_signature": False})
        except pyjwt.InvalidTokenError:
            logger.warning("Google Fit id_token could not be decoded")
            return None
        return claims.get("sub")

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        try:
            data = await self._request(
                "POST",
                _TOKEN_URL,
                data={
                    "refresh_token": refresh_token,
                    "client_id": self._settings.google_client_id,
                    "client_secret": self._settings.google_client_secret,
                    "grant_type": "refresh_token",
                },
            )
            return self._tokens_from(data, fallback_refresh=refresh_token)
        except (ProviderAPIError, KeyError, TypeError) as exc:
            raise TokenRefreshError("Google Fit token refresh failed") from exc

    async def revoke(self, access_token: str) -> bool:
        try:
            await self._request("POST", _REVOKE_URL, params={"token": access_token})
        except ProviderAPIError as exc:
            logger.warning("Google Fit revoke failed (status=%s)", exc.status_code)
            return False
        return True

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _dataset(
        self, source_id: str, access_token: str, start: datetime, end: datetime
    ) -> list[dict]:
        url = f"{_API_BASE}/dataSources/{source_id}/datasets/{_nanos(start)}-{_nanos(end)}"
        data = await self._get(url, access_token)
        points = data.get("point", []) if isinstance(data, dict) else []
        return [p for p in points if isinstance(p, dict)]

    def _point_value(self, point: dict, key: str) -> float | None:
        values = point.get("value") or []
        if not values or not isinstance(values[0], dict):
            return None
        return self._safe_float(values[0].get(key))

    async def fetch_heart_rate(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for point in await self._dataset(_DS_HEART_RATE, access_token, start, end):
            bpm = self._point_value(point, "fpVal")
            ts = self._from_epoch(point.get("startTimeNanos"), 1e9)
            if bpm is not None and ts is not None:
                batch.heart_rate.append(HeartRateReading(timestamp=ts, bpm=bpm))
        return batch

    async def fetch_blood_oxygen(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        for point in await self._dataset(_DS_SPO2, access_token, start, end):
            value = self._point_value(point, "fpVal")
            ts = self._from_epoch(point.get("startTimeNanos"), 1e9)
            if value is not None and ts is not None:
                batch.oxygen.append(OxygenReading(timestamp=ts, value=value, fraction=True))
        return batch

    async def fetch_hrv(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        return RawSampleBatch()

    async def fetch_activity(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        batch = RawSampleBatch()
        streams = (
            ("steps", _DS_STEPS, "intVal"),
            ("distance_m", _DS_DISTANCE, "fpVal"),
            ("calories", _DS_CALORIES, "fpVal"),
        )
        for field_name, source_id, value_key in streams:
            for point in await self._dataset(source_id, access_token, start, end):
                value = self._point_value(point, value_key)
                ts = self._from_epoch(point.get("startTimeNanos"), 1e9)
                if value is None or ts is None:
                    continue
                batch.activity.append(
                    ActivityIncrement(
                        start=ts,
                        end=self._from_epoch(point.get("endTimeNanos"), 1e9),
                        source_id=(
                            f"gfit:{field_name}:{point.get('startTimeNanos')}"
                            f"-{point.get('endTimeNanos')}"
                        ),
                        **{field_name: value},
                    )
                )
        return batch

    async def fetch_sleep(self, access_token: str, start: datetime, end: datetime) -> RawSampleBatch:
        data = await self._get(
            f"{_API_BASE}/sessions",
            access_token,
            params={
                "startTime": start.isoformat().replace("+00:00", "Z"),
                "endTime": end.isoformat().replace("+00:00", "Z"),
                "activityType": _SLEEP_ACTIVITY_TYPE,
            },
        )
        sessions = []
        for raw in data.get("session", []) if isinstance(data, dict) else []:
            s_start = self._from_epoch(raw.get("startTimeMillis"), 1e3)
            s_end = self._from_epoch(raw.get("endTimeMillis"), 1e3)
            if s_start and s_end and s_end > s_start:
                sessions.append((str(raw.get("id") or s_start.isoformat()), s_start, s_end))

        batch = RawSampleBatch()
        if not sessions:
            return batch

        covered: set[str] = set()
        for point in await self._dataset(_DS_SLEEP, access_token, start, end):
            seg_start = self._from_epoch(point.get("startTimeNanos"), 1e9)
            seg_end = self._from_epoch(point.get("endTimeNanos"), 1e9)
            code = self._safe_int(self._point_value(point, "intVal"))
            if seg_start is None or seg_end is None or code not in _SLEEP_STAGE_MAP:
                continue
            session_id = next(
                (sid for sid, s, e in sessions if s <= seg_start < e), None
            )
            if session_id is None:
                continue
            covered.add(session_id)
            batch.sleep.append(
                SleepSegment(seg_start, seg_end, _SLEEP_STAGE_MAP[code], session_id)
            )

        # Sessions without segment data count as light sleep throughout
        for session_id, s_start, s_end in sessions:
            if session_id not in covered:
                batch.sleep.append(SleepSegment(s_start, s_end, SleepStage.LIGHT, session_id))
        return batch

"""Tests for the Google Fit adapter against mocked REST responses."""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import jwt as pyjwt
import pytest

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters.google_fit import GoogleFitAdapter
from cardiowatch.wearables.base import SleepStage, TokenExchangeError
from cardiowatch.wearables.canonical import MetricType

START = datetime(2026, 2, 23, 0, 0, tzinfo=timezone.utc)
END = datetime(2026, 2, 24, 0, 0, tzinfo=timezone.utc)

# 2026-02-23T00:00:00Z
DAY_SECONDS = 1771804800


def _nanos(hour: int, minute: int = 0) -> str:
    return str((DAY_SECONDS + hour * 3600 + minute * 60) * 1_000_000_000)


def _millis(hour: int, minute: int = 0) -> str:
    return str((DAY_SECONDS + hour * 3600 + minute * 60) * 1000)


def _point(start: str, end: str, **value) -> dict:
    return {"startTimeNanos": start, "endTimeNanos": end, "value": [value]}


DATASETS = {
    "merge_heart_rate_bpm": [
        _point(_nanos(10), _nanos(10), fpVal=71.0),
        _point(_nanos(10, 1), _nanos(10, 1), fpVal=74.0),
    ],
    "estimated_steps": [_point(_nanos(9), _nanos(10), intVal=3200)],
    "merge_distance_delta": [_point(_nanos(9), _nanos(10), fpVal=2400.5)],
    "merge_calories_expended": [_point(_nanos(9), _nanos(10), fpVal=180.0)],
    "oxygen_saturation": [_point(_nanos(4), _nanos(4), fpVal=0.97)],
    "sleep.segment": [
        # Night of the 22nd into the 23rd, inside the session below
        _point(str((DAY_SECONDS - 3600) * 1_000_000_000), _nanos(2), intVal=4),
        _point(_nanos(2), _nanos(4), intVal=5),
        _point(_nanos(4), _nanos(6), intVal=6),
        # Outside any session
        _point(_nanos(14), _nanos(15), intVal=4),
    ],
}

SESSIONS = {
    "session": [
        {
            "id": "night-1",
            "activityType": 72,
            "startTimeMillis": str((DAY_SECONDS - 3600) * 1000),
            "endTimeMillis": _millis(6),
        }
    ]
}


def _routes(overrides: dict[str, httpx.Response] | None = None):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        for marker, response in (overrides or {}).items():
            if marker in path:
                return response
        if path.endswith("/sessions"):
            return httpx.Response(200, json=SESSIONS)
        for marker, points in DATASETS.items():
            if "/dataSources/" in path and marker in path:
                return httpx.Response(200, json={"point": points})
        if path == "/token":
            id_token = pyjwt.encode(
                {"sub": "google-sub-123"}, "google-signing-key-0123456789abcdef", algorithm="HS256"
            )
            return httpx.Response(
                200,
                json={
                    "access_token": "gfit-access",
                    "refresh_token": "gfit-refresh",
                    "expires_in": 3599,
                    "scope": "openid https://www.googleapis.com/auth/fitness.heart_rate.read",
                    "id_token": id_token,
                },
            )
        return httpx.Response(404)

    return handler, requests


def _adapter(settings: Settings, handler) -> GoogleFitAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleFitAdapter(settings=settings, http_client=client)


class TestGoogleFitOAuth:
    def test_authorization_url_requests_offline_access(self, settings: Settings) -> None:
        url = GoogleFitAdapter(settings=settings).authorization_url("state-xyz")
        query = parse_qs(urlparse(url).query)
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == ["state-xyz"]
        assert "code_challenge" not in query
        assert "openid" in query["scope"][0].split(" ")

    @pytest.mark.asyncio
    async def test_exchange_reads_subject_from_id_token(self, settings: Settings) -> None:
        handler, _ = _routes()
        result = await _adapter(settings, handler).exchange_code("code-1")
        assert result.tokens.access_token == "gfit-access"
        assert result.external_user_id == "google-sub-123"

    @pytest.mark.asyncio
    async def test_exchange_without_id_token(self, settings: Settings) -> None:
        handler, _ = _routes(
            {"/token": httpx.Response(200, json={"access_token": "a", "expires_in": 3600})}
        )
        result = await _adapter(settings, handler).exchange_code("code-1")
        assert result.external_user_id is None

    @pytest.mark.asyncio
    async def test_exchange_rejected(self, settings: Settings) -> None:
        handler, _ = _routes({"/token": httpx.Response(400, json={"error": "invalid_grant"})})
        with pytest.raises(TokenExchangeError):
            await _adapter(settings, handler).exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(self, settings: Settings) -> None:
        handler, _ = _routes(
            {"/token": httpx.Response(200, json={"access_token": "gfit-access-2", "expires_in": 3600})}
        )
        tokens = await _adapter(settings, handler).refresh("gfit-refresh")
        assert tokens.access_token == "gfit-access-2"
        assert tokens.refresh_token == "gfit-refresh"

    @pytest.mark.asyncio
    async def test_revoke(self, settings: Settings) -> None:
        handler, requests = _routes({"/revoke": httpx.Response(200)})
        assert await _adapter(settings, handler).revoke("gfit-access") is True
        assert requests[0].url.params["token"] == "gfit-access"


class TestGoogleFitFetch:
    @pytest.mark.asyncio
    async def test_heart_rate(self, settings: Settings) -> None:
        handler, requests = _routes()
        batch = await _adapter(settings, handler).fetch_heart_rate("token", START, END)

        assert [r.bpm for r in batch.heart_rate] == [71.0, 74.0]
        assert batch.heart_rate[0].timestamp == datetime(2026, 2, 23, 10, 0, tzinfo=timezone.utc)
        assert requests[0].headers["authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_oxygen_is_fraction(self, settings: Settings) -> None:
        handler, _ = _routes()
        batch = await _adapter(settings, handler).fetch_blood_oxygen("token", START, END)
        assert batch.oxygen[0].value == pytest.approx(0.97)
        assert batch.oxygen[0].fraction is True

    @pytest.mark.asyncio
    async def test_activity_streams(self, settings: Settings) -> None:
        handler, _ = _routes()
        batch = await _adapter(settings, handler).fetch_activity("token", START, END)

        assert len(batch.activity) == 3
        steps = next(a for a in batch.activity if a.steps)
        assert steps.steps == 3200
        assert steps.source_id.startswith("gfit:steps:")
        assert sum(a.distance_m for a in batch.activity) == pytest.approx(2400.5)
        assert sum(a.calories for a in batch.activity) == pytest.approx(180.0)

    @pytest.mark.asyncio
    async def test_sleep_segments_assigned_to_sessions(self, settings: Settings) -> None:
        handler, _ = _routes()
        batch = await _adapter(settings, handler).fetch_sleep("token", START, END)

        assert [s.stage for s in batch.sleep] == [SleepStage.LIGHT, SleepStage.DEEP, SleepStage.REM]
        assert {s.session_id for s in batch.sleep} == {"night-1"}

    @pytest.mark.asyncio
    async def test_session_without_segments_is_light(self, settings: Settings) -> None:
        handler, _ = _routes({"sleep.segment": httpx.Response(200, json={"point": []})})
        batch = await _adapter(settings, handler).fetch_sleep("token", START, END)

        assert len(batch.sleep) == 1
        assert batch.sleep[0].stage == SleepStage.LIGHT
        assert batch.sleep[0].minutes == pytest.approx(420.0)

    @pytest.mark.asyncio
    async def test_no_sessions_means_no_sleep(self, settings: Settings) -> None:
        handler, _ = _routes({"/sessions": httpx.Response(200, json={"session": []})})
        batch = await _adapter(settings, handler).fetch_sleep("token", START, END)
        assert batch.is_empty()

    @pytest.mark.asyncio
    async def test_hrv_is_always_empty(self, settings: Settings) -> None:
        handler, requests = _routes()
        batch = await _adapter(settings, handler).fetch_hrv("token", START, END)
        assert batch.is_empty()
        assert requests == []

    @pytest.mark.asyncio
    async def test_single_metric_auth_failure_is_error(self, settings: Settings) -> None:
        handler, _ = _routes({"merge_heart_rate_bpm": httpx.Response(403)})
        result = await _adapter(settings, handler).sync_health_data(
            "token", since=START, until=END, metrics={MetricType.HEART_RATE}
        )
        assert result.status == "error"
        assert result.errors[0].reason == "auth_error"

    @pytest.mark.asyncio
    async def test_server_error_is_provider_error(self, settings: Settings) -> None:
        handler, _ = _routes({"oxygen_saturation": httpx.Response(503)})
        result = await _adapter(settings, handler).sync_health_data(
            "token", since=START, until=END, metrics={MetricType.BLOOD_OXYGEN, MetricType.HEART_RATE}
        )
        assert result.status == "partial"
        assert [e.to_dict() for e in result.errors] == [
            {"metric": "blood_oxygen", "reason": "provider_error"}
        ]
        assert result.counts == {"heart_rate": 2}

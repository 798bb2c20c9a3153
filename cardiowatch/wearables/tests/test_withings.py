"""Tests for the Withings adapter and its status envelope."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters.withings import WithingsAdapter
from cardiowatch.wearables.base import SleepStage, TokenExchangeError, TokenRefreshError
from cardiowatch.wearables.canonical import MetricType

START = datetime(2026, 2, 23, 0, 0, tzinfo=timezone.utc)
END = datetime(2026, 2, 24, 0, 0, tzinfo=timezone.utc)
DAY_SECONDS = 1771804800

MEASURES = {
    "measuregrps": [
        {
            "grpid": 1,
            "date": DAY_SECONDS + 8 * 3600,
            "measures": [
                {"type": 11, "value": 62, "unit": 0},
                {"type": 54, "value": 975, "unit": -1},
            ],
        },
        {"grpid": 2, "date": DAY_SECONDS + 9 * 3600, "measures": [{"type": 11, "value": 66, "unit": 0}]},
    ]
}

ACTIVITIES = {
    "activities": [
        {
            "date": "2026-02-23",
            "timezone": "Europe/Paris",
            "steps": 10400,
            "distance": 8100.5,
            "elevation": 6,
            "calories": 410.2,
            "active": 2700,
        },
        {"date": "not-a-date", "steps": 1},
    ]
}

SLEEP_SERIES = {
    "series": [
        {"startdate": DAY_SECONDS - 3600, "enddate": DAY_SECONDS, "state": 1},
        {"startdate": DAY_SECONDS, "enddate": DAY_SECONDS + 3600, "state": 2},
        {"startdate": DAY_SECONDS + 3600, "enddate": DAY_SECONDS + 5400, "state": 3},
        {"startdate": DAY_SECONDS + 5400, "enddate": DAY_SECONDS + 6000, "state": 0},
        {"startdate": DAY_SECONDS + 6000, "enddate": DAY_SECONDS + 6600, "state": 9},
    ]
}


def _envelope(body: dict, status: int = 0) -> httpx.Response:
    return httpx.Response(200, json={"status": status, "body": body})


def _routes(overrides: dict[str, httpx.Response] | None = None):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        key = f"{request.url.path}:{form.get('action')}"
        if overrides and key in overrides:
            return overrides[key]
        if key == "/v2/oauth2:requesttoken":
            return _envelope(
                {
                    "userid": 3141592,
                    "access_token": "withings-access",
                    "refresh_token": "withings-refresh",
                    "expires_in": 10800,
                    "scope": "user.info,user.metrics,user.activity",
                }
            )
        if key == "/measure:getmeas":
            return _envelope(MEASURES)
        if key == "/v2/measure:getactivity":
            return _envelope(ACTIVITIES)
        if key == "/v2/sleep:get":
            return _envelope(SLEEP_SERIES)
        return httpx.Response(404)

    return handler, requests


def _adapter(settings: Settings, handler) -> WithingsAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WithingsAdapter(settings=settings, http_client=client)


class TestWithingsOAuth:
    @pytest.mark.asyncio
    async def test_exchange_code(self, settings: Settings) -> None:
        handler, requests = _routes()
        result = await _adapter(settings, handler).exchange_code("code-1")

        assert result.tokens.access_token == "withings-access"
        assert result.tokens.scope == ["user.info", "user.metrics", "user.activity"]
        assert result.external_user_id == "3141592"
        form = parse_qs(requests[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["client_secret"] == ["withings-secret"]

    @pytest.mark.asyncio
    async def test_nonzero_status_rejects_exchange(self, settings: Settings) -> None:
        handler, _ = _routes({"/v2/oauth2:requesttoken": _envelope({}, status=503)})
        with pytest.raises(TokenExchangeError):
            await _adapter(settings, handler).exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, settings: Settings) -> None:
        handler, _ = _routes({"/v2/oauth2:requesttoken": _envelope({}, status=401)})
        with pytest.raises(TokenRefreshError):
            await _adapter(settings, handler).refresh("withings-refresh")

    @pytest.mark.asyncio
    async def test_revoke_is_local(self, settings: Settings) -> None:
        handler, requests = _routes()
        assert await _adapter(settings, handler).revoke("withings-access") is True
        assert requests == []


class TestWithingsFetch:
    @pytest.mark.asyncio
    async def test_heart_pulse_measures(self, settings: Settings) -> None:
        handler, requests = _routes()
        batch = await _adapter(settings, handler).fetch_heart_rate("token", START, END)

        assert [r.bpm for r in batch.heart_rate] == [62.0, 66.0]
        assert batch.heart_rate[0].timestamp == START + timedelta(hours=8)
        assert parse_qs(requests[0].content.decode())["meastype"] == ["11"]

    @pytest.mark.asyncio
    async def test_spo2_unit_exponent(self, settings: Settings) -> None:
        handler, _ = _routes()
        batch = await _adapter(settings, handler).fetch_blood_oxygen("token", START, END)
        assert [o.value for o in batch.oxygen] == [pytest.approx(97.5)]

    @pytest.mark.asyncio
    async def test_activity_at_local_noon(self, settings: Settings) -> None:
        handler, _ = _routes()
        batch = await _adapter(settings, handler).fetch_activity("token", START, END)

        assert len(batch.activity) == 1
        day = batch.activity[0]
        # Noon in Paris (UTC+1 in February)
        assert day.start == datetime(2026, 2, 23, 11, 0, tzinfo=timezone.utc)
        assert day.steps == 10400
        assert day.active_minutes == pytest.approx(45.0)
        assert day.source_id == "withings:activity:2026-02-23"

    @pytest.mark.asyncio
    async def test_sleep_states(self, settings: Settings) -> None:
        handler, requests = _routes()
        batch = await _adapter(settings, handler).fetch_sleep("token", START, END)

        assert [s.stage for s in batch.sleep] == [
            SleepStage.LIGHT,
            SleepStage.DEEP,
            SleepStage.REM,
            SleepStage.AWAKE,
        ]
        assert all(s.session_id is None for s in batch.sleep)
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_sleep_requested_in_day_windows(self, settings: Settings) -> None:
        handler, requests = _routes()
        await _adapter(settings, handler).fetch_sleep("token", START, START + timedelta(hours=60))
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_auth_status_reported_as_auth_error(self, settings: Settings) -> None:
        handler, _ = _routes({"/v2/sleep:get": _envelope({}, status=401)})
        result = await _adapter(settings, handler).sync_health_data(
            "token", since=START, until=END, metrics={MetricType.SLEEP_SESSION, MetricType.ACTIVITY_DAY}
        )
        assert result.status == "partial"
        assert result.counts == {"activity_day": 1}
        assert [e.to_dict() for e in result.errors] == [{"metric": "sleep_session", "reason": "auth_error"}]

    @pytest.mark.asyncio
    async def test_other_status_is_provider_error(self, settings: Settings) -> None:
        handler, _ = _routes({"/measure:getmeas": _envelope({}, status=2554)})
        result = await _adapter(settings, handler).sync_health_data(
            "token", since=START, until=END, metrics={MetricType.HEART_RATE}
        )
        assert result.status == "error"
        assert result.errors[0].reason == "provider_error"

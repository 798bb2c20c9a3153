"""Tests for the provider adapter registry and descriptors."""

from __future__ import annotations

import pytest

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters import (
    ADAPTER_REGISTRY,
    FitbitAdapter,
    HealthConnectAdapter,
    create_adapter,
    get_adapter,
    supported_providers,
)
from cardiowatch.wearables.base import (
    Capability,
    ProviderTag,
    PullAdapter,
    PushAdapter,
    UnsupportedOperationError,
)


class TestRegistry:
    def test_every_provider_registered(self) -> None:
        assert set(ADAPTER_REGISTRY) == set(ProviderTag)

    def test_get_adapter_by_string(self) -> None:
        assert get_adapter("fitbit") is FitbitAdapter

    def test_wear_os_served_by_health_connect(self) -> None:
        assert get_adapter(ProviderTag.WEAR_OS) is HealthConnectAdapter

    def test_unknown_provider_raises(self) -> None:
        with pytest.raises(KeyError):
            get_adapter("oura")

    def test_create_adapter_binds_tag(self, settings: Settings) -> None:
        adapter = create_adapter(ProviderTag.WEAR_OS, settings=settings)
        assert isinstance(adapter, HealthConnectAdapter)
        assert adapter.provider == ProviderTag.WEAR_OS

    @pytest.mark.parametrize(
        "tag",
        [ProviderTag.APPLE_WATCH, ProviderTag.HEALTH_CONNECT, ProviderTag.WEAR_OS, ProviderTag.SAMSUNG],
    )
    def test_push_providers(self, tag: ProviderTag) -> None:
        assert issubclass(ADAPTER_REGISTRY[tag], PushAdapter)
        assert ADAPTER_REGISTRY[tag].CAPABILITY == Capability.PUSH

    @pytest.mark.parametrize(
        "tag",
        [ProviderTag.GOOGLE_FIT, ProviderTag.FITBIT, ProviderTag.GARMIN, ProviderTag.WITHINGS],
    )
    def test_pull_providers(self, tag: ProviderTag) -> None:
        assert issubclass(ADAPTER_REGISTRY[tag], PullAdapter)
        assert ADAPTER_REGISTRY[tag].CAPABILITY == Capability.PULL


class TestDescriptors:
    def test_one_descriptor_per_provider(self) -> None:
        ids = [d["id"] for d in supported_providers()]
        assert sorted(ids) == sorted(t.value for t in ProviderTag)

    def test_apple_descriptor(self) -> None:
        apple = next(d for d in supported_providers() if d["id"] == "apple_watch")
        assert apple["type"] == "push"
        assert apple["requires_app"] is True
        assert apple["platforms"] == ["ios"]
        assert "heart_rate" in apple["capabilities"]

    def test_withings_has_no_hrv(self) -> None:
        withings = next(d for d in supported_providers() if d["id"] == "withings")
        assert withings["type"] == "oauth"
        assert withings["requires_app"] is False
        assert "hrv" not in withings["capabilities"]

    def test_capabilities_sorted(self) -> None:
        for descriptor in supported_providers():
            assert descriptor["capabilities"] == sorted(descriptor["capabilities"])


class TestUnsupportedOperations:
    @pytest.mark.asyncio
    async def test_push_adapter_cannot_exchange_code(self, settings: Settings) -> None:
        adapter = create_adapter(ProviderTag.APPLE_WATCH, settings=settings)
        with pytest.raises(UnsupportedOperationError):
            await adapter.exchange_code("code")
        with pytest.raises(UnsupportedOperationError):
            adapter.authorization_url("state")

    def test_pull_adapter_cannot_parse_push(self, settings: Settings) -> None:
        adapter = create_adapter(ProviderTag.GARMIN, settings=settings)
        with pytest.raises(UnsupportedOperationError):
            adapter.parse_push({})
        with pytest.raises(UnsupportedOperationError):
            adapter.validate_webhook("sig", b"{}")
        with pytest.raises(UnsupportedOperationError):
            adapter.register_device({})

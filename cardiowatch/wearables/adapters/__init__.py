"""Provider adapters for CardioWatch.

Push adapters (signed webhooks from on-device apps):
    AppleHealthAdapter    - Apple Watch via HealthKit
    HealthConnectAdapter  - Android Health Connect and Wear OS
    SamsungHealthAdapter  - Samsung Galaxy Watch

Pull adapters (OAuth2 cloud APIs):
    GoogleFitAdapter      - Google Fit REST API
    FitbitAdapter         - Fitbit Web API (PKCE)
    GarminAdapter         - Garmin Health API (PKCE)
    WithingsAdapter       - Withings Public API
"""

from __future__ import annotations

import httpx

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters.apple_health import AppleHealthAdapter
from cardiowatch.wearables.adapters.fitbit import FitbitAdapter
from cardiowatch.wearables.adapters.garmin import GarminAdapter
from cardiowatch.wearables.adapters.google_fit import GoogleFitAdapter
from cardiowatch.wearables.adapters.health_connect import HealthConnectAdapter
from cardiowatch.wearables.adapters.samsung_health import SamsungHealthAdapter
from cardiowatch.wearables.adapters.withings import WithingsAdapter
from cardiowatch.wearables.base import ProviderAdapter, ProviderTag

__all__ = [
    "AppleHealthAdapter",
    "FitbitAdapter",
    "GarminAdapter",
    "GoogleFitAdapter",
    "HealthConnectAdapter",
    "SamsungHealthAdapter",
    "WithingsAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
    "create_adapter",
    "supported_providers",
]

# Registry: provider tag → adapter class
ADAPTER_REGISTRY: dict[ProviderTag, type[ProviderAdapter]] = {
    ProviderTag.APPLE_WATCH: AppleHealthAdapter,
    ProviderTag.WEAR_OS: HealthConnectAdapter,
    ProviderTag.HEALTH_CONNECT: HealthConnectAdapter,
    ProviderTag.SAMSUNG: SamsungHealthAdapter,
    ProviderTag.GOOGLE_FIT: GoogleFitAdapter,
    ProviderTag.FITBIT: FitbitAdapter,
    ProviderTag.GARMIN: GarminAdapter,
    ProviderTag.WITHINGS: WithingsAdapter,
}


def get_adapter(provider: ProviderTag | str) -> type[ProviderAdapter]:
    """Return the adapter class for a provider tag.

    Args:
        provider: e.g. ``ProviderTag.FITBIT`` or ``"fitbit"``

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the provider is not registered.
    """
    try:
        tag = ProviderTag(provider)
    except ValueError:
        tag = None
    if tag not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for provider '{provider}'. "
            f"Available: {[t.value for t in ADAPTER_REGISTRY]}"
        )
    return ADAPTER_REGISTRY[tag]


def create_adapter(
    provider: ProviderTag | str,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Instantiate the adapter for ``provider`` bound to that tag."""
    tag = ProviderTag(provider)
    return get_adapter(tag)(settings=settings, http_client=http_client, provider=tag)


def supported_providers() -> list[dict]:
    """Descriptors for every supported provider, in registry order."""
    return [cls.descriptor(tag) for tag, cls in ADAPTER_REGISTRY.items()]

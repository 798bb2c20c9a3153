"""Samsung Health push adapter.

Galaxy Watch data reaches the phone's Health Connect store; the Android app
forwards it to ``/api/v1/webhooks/samsung-health`` in the Health Connect
record format, signed with ``x-samsung-signature`` (hex HMAC-SHA256 of the
raw body) using the Samsung webhook secret.
"""

from __future__ import annotations

from cardiowatch.wearables.adapters.health_connect import HealthConnectAdapter
from cardiowatch.wearables.base import ProviderTag


class SamsungHealthAdapter(HealthConnectAdapter):
    PROVIDERS = (ProviderTag.SAMSUNG,)
    DISPLAY_NAME = "Samsung Galaxy Watch"
    SIGNATURE_HEADER = "x-samsung-signature"

    def _webhook_secret(self) -> str:
        return self._settings.samsung_webhook_secret

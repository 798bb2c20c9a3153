"""CardioWatch wearable integration layer.

This package connects patients' wearables, ingests their data into one
canonical sample model, and derives baselines, trends and clinical alerts.

Subpackages:
    adapters/  - Provider adapters (Apple Health, Health Connect, Samsung Health,
                 Google Fit, Fitbit, Garmin, Withings) and the provider registry
    sync/      - Per-device locks, pull sync service, scheduler, backfill, dedup

Core modules:
    base            - Adapter ABCs, raw reading types and the error hierarchy
    canonical       - Canonical samples, metric types and dedup keys
    vault           - AES-256-GCM credential vault
    devices         - Device model and connection state machine
    repositories    - Device and threshold persistence
    connections     - Connect / OAuth callback / push registration / disconnect
    ingestion       - Signed push ingestion gateway
    normalizer      - Raw readings to canonical samples
    store           - Deduplicating sample store
    trends          - Baselines, trend classification and clinical thresholds
    readiness_score - Baseline-relative readiness score
    config_loader   - Load/validate/hot-reload trend_config.yaml
"""

from cardiowatch.wearables.base import (
    OAuthTokens,
    ProviderAdapter,
    ProviderTag,
    PullAdapter,
    PushAdapter,
    WearableError,
)
from cardiowatch.wearables.canonical import CanonicalSample, MetricType
from cardiowatch.wearables.config_loader import TrendConfig, get_trend_config

__all__ = [
    "ProviderAdapter",
    "PullAdapter",
    "PushAdapter",
    "ProviderTag",
    "OAuthTokens",
    "WearableError",
    "CanonicalSample",
    "MetricType",
    "TrendConfig",
    "get_trend_config",
]

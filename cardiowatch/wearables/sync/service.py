"""On-demand pull sync for one device.

Workflow per call, under the device lock:

1. Load the device and obtain a valid access token (refreshing if needed)
2. Fetch every enabled metric concurrently, each with its own timeout
3. Normalize and upsert the samples
4. Advance ``last_sync_at`` unless every metric failed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from cardiowatch.wearables.base import (
    Capability,
    DeviceNotFoundError,
    MetricError,
    PullAdapter,
    TokenRefreshError,
    UnsupportedOperationError,
    fetch_metric_for,
    utc_now,
)
from cardiowatch.wearables.canonical import as_utc
from cardiowatch.wearables.config_loader import TrendConfig, get_trend_config
from cardiowatch.wearables.connections import ConnectionService
from cardiowatch.wearables.devices import ConnectionState
from cardiowatch.wearables.normalizer import Normalizer
from cardiowatch.wearables.repositories import DeviceRepository
from cardiowatch.wearables.store import SampleStore
from cardiowatch.wearables.sync.locks import KeyedLock

logger = logging.getLogger("cardiowatch.wearables.sync.service")


@dataclass
class SyncReport:
    """Result of one device sync.

    Attributes:
        device_id:          Device that was synced.
        status:             'success', 'partial' or 'error'.
        counts:             Raw samples fetched per metric.
        stored:             Canonical samples written.
        errors:             Sanitized per-metric failures.
        synced_at:          UTC completion time.
        reconnect_required: The credential is unusable; the patient must reconnect.
    """

    device_id: UUID
    status: str = "success"
    counts: dict[str, int] = field(default_factory=dict)
    stored: int = 0
    errors: list[MetricError] = field(default_factory=list)
    synced_at: datetime = field(default_factory=utc_now)
    reconnect_required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": str(self.device_id),
            "status": self.status,
            "counts": dict(self.counts),
            "stored": self.stored,
            "errors": [e.to_dict() for e in self.errors],
            "synced_at": self.synced_at.isoformat(),
            "reconnect_required": self.reconnect_required,
        }


class SyncService:
    """Pull-sync a single device on demand or for the scheduler."""

    def __init__(
        self,
        devices: DeviceRepository,
        store: SampleStore,
        connections: ConnectionService,
        locks: KeyedLock | None = None,
        normalizer: Normalizer | None = None,
        config: TrendConfig | None = None,
    ) -> None:
        self._devices = devices
        self._store = store
        self._connections = connections
        self._locks = locks or KeyedLock()
        self._normalizer = normalizer or Normalizer()
        self._config = config

    @property
    def config(self) -> TrendConfig:
        return self._config or get_trend_config()

    async def sync_device(
        self,
        device_id: UUID,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> SyncReport:
        """Fetch, normalize and store new data for one pull device.

        Args:
            device_id: Device to sync.
            since:     Window start (default: ``last_sync_at`` or the
                       configured lookback).
            until:     Window end (default: now).

        Raises:
            DeviceNotFoundError:       Unknown device.
            UnsupportedOperationError: The device is a push device.
        """
        async with self._locks.acquire(device_id):
            device = await self._devices.get(device_id)
            if device is None:
                raise DeviceNotFoundError("Device not found")

            adapter = self._connections.adapter_for(device.provider)
            if adapter.CAPABILITY != Capability.PULL or not isinstance(adapter, PullAdapter):
                raise UnsupportedOperationError(f"{device.provider.value} devices push their data")

            sync_cfg = self.config.sync
            until = as_utc(until) if until else utc_now()
            if since is None:
                since = device.last_sync_at or until - timedelta(days=sync_cfg.lookback_days)
            since = as_utc(since)

            metrics = set(adapter.SUPPORTED_METRICS)
            if device.enabled_metrics:
                metrics &= device.enabled_metrics
            report = SyncReport(device_id=device.id)

            if device.state not in (ConnectionState.AUTHORIZED, ConnectionState.EXPIRED):
                return self._auth_failure(report, metrics)
            try:
                token = await self._connections.access_token(device)
            except TokenRefreshError:
                logger.warning("Sync for device %s needs reconnect", device.id)
                return self._auth_failure(report, metrics)

            result = await adapter.sync_health_data(
                token,
                since=since,
                until=until,
                metrics=metrics,
                timeout=sync_cfg.metric_timeout_seconds,
            )

            samples = self._normalizer.normalize(
                result.samples, device.patient_id, device.id, device.provider.value
            )
            samples = [s for s in samples if s.metric in metrics]
            report.stored = await self._store.upsert_many(samples)
            report.counts = result.counts
            report.errors = result.errors
            report.status = result.status
            report.reconnect_required = any(e.reason == "auth_error" for e in result.errors)

            # One cursor per device: a partial sync still moves it to ``until``,
            # so the failed metrics are not refetched for this window.  A
            # manual sync or backfill with an explicit ``since`` recovers them.
            if report.status == "partial":
                logger.warning(
                    "Partial sync for device %s: %s skipped for %s..%s",
                    device.id,
                    ", ".join(sorted(e.metric.value for e in report.errors)),
                    since.isoformat(),
                    until.isoformat(),
                )
            if report.status != "error":
                current = await self._devices.get(device.id) or device
                if current.last_sync_at is None or current.last_sync_at < until:
                    current.last_sync_at = until
                await self._devices.save(current)

        logger.info(
            "Sync complete: device %s -> %d stored, status=%s",
            device_id, report.stored, report.status,
        )
        return report

    @staticmethod
    def _auth_failure(report: SyncReport, metrics: set) -> SyncReport:
        wanted = sorted({fetch_metric_for(m) for m in metrics}, key=lambda m: m.value)
        report.status = "error"
        report.errors = [MetricError(metric=m, reason="auth_error") for m in wanted]
        report.reconnect_required = True
        return report

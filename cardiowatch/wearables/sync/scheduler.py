"""Background sync scheduler for pull devices.

Each tick:
1. Select connected pull devices whose ``sync_frequency_minutes`` has
   elapsed since ``last_sync_at``
2. Sync them concurrently, at most ``max_concurrent`` at a time
3. Log one line per tick with the outcome counts

Push devices never appear here: their data arrives through webhooks.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from cardiowatch.wearables.adapters import ADAPTER_REGISTRY
from cardiowatch.wearables.base import Capability, ProviderTag, utc_now
from cardiowatch.wearables.devices import Device
from cardiowatch.wearables.repositories import DeviceRepository
from cardiowatch.wearables.sync.service import SyncReport, SyncService

logger = logging.getLogger("cardiowatch.wearables.sync.scheduler")

PULL_PROVIDERS: tuple[ProviderTag, ...] = tuple(
    tag for tag, cls in ADAPTER_REGISTRY.items() if cls.CAPABILITY == Capability.PULL
)


class SyncScheduler:
    """Select due pull devices and sync them with bounded concurrency.

    Usage::

        scheduler = SyncScheduler(devices, sync_service, max_concurrent=5)
        reports = await scheduler.run_once()

        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run_forever(stop))
    """

    def __init__(
        self,
        devices: DeviceRepository,
        sync_service: SyncService,
        max_concurrent: int = 5,
        interval_seconds: float = 300,
    ) -> None:
        """Initialize the scheduler.

        Args:
            devices:          Device repository.
            sync_service:     Performs each device sync.
            max_concurrent:   Maximum number of simultaneous syncs.
            interval_seconds: Sleep between ticks in :meth:`run_forever`.
        """
        self._devices = devices
        self._sync = sync_service
        self._max_concurrent = max(1, max_concurrent)
        self._interval = interval_seconds

    @staticmethod
    def is_due(device: Device, now: datetime | None = None) -> bool:
        """Return True if a device is due for a sync.

        A device that has never synced is always due.
        """
        if device.last_sync_at is None:
            return True
        now = now or utc_now()
        return now - device.last_sync_at >= timedelta(minutes=device.sync_frequency_minutes)

    async def due_devices(self, now: datetime | None = None) -> list[Device]:
        now = now or utc_now()
        connected = await self._devices.list_connected(PULL_PROVIDERS)
        due = [d for d in connected if self.is_due(d, now)]
        # Never-synced first, then the longest waiting
        due.sort(key=lambda d: d.last_sync_at or datetime.min.replace(tzinfo=now.tzinfo))
        return due

    async def run_once(self, now: datetime | None = None) -> list[SyncReport]:
        """Sync every due device once.

        Returns:
            Reports for the syncs that completed; exceptions are logged.
        """
        due = await self.due_devices(now)
        if not due:
            logger.debug("SyncScheduler: no devices due")
            return []

        logger.info("SyncScheduler: syncing %d devices", len(due))
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _run(device: Device) -> SyncReport:
            async with semaphore:
                return await self._sync.sync_device(device.id)

        results = await asyncio.gather(*(_run(d) for d in due), return_exceptions=True)

        reports: list[SyncReport] = []
        for device, outcome in zip(due, results):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Sync for device %s failed", device.id, exc_info=outcome)
            else:
                reports.append(outcome)

        logger.info(
            "SyncScheduler: %d syncs complete, %d errors, %d failed",
            len(reports),
            sum(1 for r in reports if r.status == "error"),
            len(due) - len(reports),
        )
        return reports

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Tick every ``interval_seconds`` until ``stop`` is set."""
        logger.info("SyncScheduler started (interval=%ss)", self._interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("SyncScheduler tick failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("SyncScheduler stopped")

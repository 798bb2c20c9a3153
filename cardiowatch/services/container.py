"""Service wiring.

Every long-lived service object is built once by :func:`build_container`
and stored on ``app.state.container``.  Route handlers reach it through
the ``ContainerDep`` alias in :mod:`cardiowatch.dependencies`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from cardiowatch.config import Settings
from cardiowatch.wearables.adapters import create_adapter
from cardiowatch.wearables.base import ProviderAdapter, ProviderTag
from cardiowatch.wearables.config_loader import TrendConfig, get_trend_config
from cardiowatch.wearables.connections import ConnectionService
from cardiowatch.wearables.ingestion import IngestionGateway
from cardiowatch.wearables.normalizer import Normalizer
from cardiowatch.wearables.readiness_score import ReadinessCalculator
from cardiowatch.wearables.repositories import (
    DeviceRepository,
    MemoryDeviceRepository,
    MemoryThresholdRepository,
    PostgresDeviceRepository,
    PostgresThresholdRepository,
    ThresholdRepository,
)
from cardiowatch.wearables.store import MemorySampleStore, PostgresSampleStore, SampleStore
from cardiowatch.wearables.sync.backfill import BackfillOrchestrator
from cardiowatch.wearables.sync.locks import KeyedLock
from cardiowatch.wearables.sync.scheduler import SyncScheduler
from cardiowatch.wearables.sync.service import SyncService
from cardiowatch.wearables.trends import TrendEngine
from cardiowatch.wearables.vault import CredentialVault

logger = logging.getLogger("cardiowatch.services.container")

PROVIDER_TIMEOUT_SECONDS = 30.0


@dataclass
class ServiceContainer:
    settings: Settings
    config: TrendConfig
    vault: CredentialVault
    http_client: httpx.AsyncClient
    devices: DeviceRepository
    thresholds: ThresholdRepository
    store: SampleStore
    locks: KeyedLock
    connections: ConnectionService
    ingestion: IngestionGateway
    sync: SyncService
    trends: TrendEngine
    readiness: ReadinessCalculator
    scheduler: SyncScheduler
    backfill: BackfillOrchestrator

    def adapter(self, provider: ProviderTag) -> ProviderAdapter:
        return self.connections.adapter_for(provider)

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_container(
    settings: Settings,
    vault: CredentialVault,
    http_client: httpx.AsyncClient | None = None,
    config: TrendConfig | None = None,
) -> ServiceContainer:
    """Assemble the service graph for the configured storage backend."""
    config = config or get_trend_config()
    http_client = http_client or httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS)

    if settings.storage_backend == "postgres":
        devices: DeviceRepository = PostgresDeviceRepository()
        thresholds: ThresholdRepository = PostgresThresholdRepository()
        store: SampleStore = PostgresSampleStore()
    else:
        devices = MemoryDeviceRepository()
        thresholds = MemoryThresholdRepository()
        store = MemorySampleStore()
    logger.info("Using %s storage backend", settings.storage_backend)

    def adapter_factory(provider: ProviderTag) -> ProviderAdapter:
        return create_adapter(provider, settings=settings, http_client=http_client)

    locks = KeyedLock()
    normalizer = Normalizer()
    connections = ConnectionService(
        devices,
        vault,
        adapter_factory=adapter_factory,
        refresh_buffer_seconds=config.sync.refresh_buffer_seconds,
    )
    ingestion = IngestionGateway(
        devices, store, vault, normalizer=normalizer, locks=locks, adapter_factory=adapter_factory
    )
    sync = SyncService(devices, store, connections, locks=locks, normalizer=normalizer, config=config)
    trends = TrendEngine(store, thresholds=thresholds, config=config, normalizer=normalizer)
    scheduler = SyncScheduler(
        devices,
        sync,
        max_concurrent=config.sync.max_concurrent,
        interval_seconds=settings.scheduler_interval_seconds,
    )

    return ServiceContainer(
        settings=settings,
        config=config,
        vault=vault,
        http_client=http_client,
        devices=devices,
        thresholds=thresholds,
        store=store,
        locks=locks,
        connections=connections,
        ingestion=ingestion,
        sync=sync,
        trends=trends,
        readiness=ReadinessCalculator(config),
        scheduler=scheduler,
        backfill=BackfillOrchestrator(sync, config),
    )

"""Wearable endpoints: device connection lifecycle, push ingestion, sync,
readings, trends and clinical thresholds."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from cardiowatch.dependencies import (
    ContainerDep,
    CurrentUser,
    ensure_patient_access,
    require_patient,
)
from cardiowatch.models.wearables import (
    BackfillAccepted,
    BackfillRequest,
    ConnectRead,
    DeviceRead,
    OAuthCallback,
    PushAck,
    RegisterDeviceRead,
    RegisterDeviceRequest,
    SampleRead,
    SupportedProviderRead,
    SyncReportRead,
    SyncRequest,
    ThresholdsRead,
    ThresholdsUpdate,
    TrendsRead,
)
from cardiowatch.services.container import ServiceContainer
from cardiowatch.wearables.adapters import supported_providers
from cardiowatch.wearables.base import (
    AuthorizationStateError,
    Capability,
    DeviceNotFoundError,
    PayloadValidationError,
    ProviderTag,
    SignatureError,
    TokenExchangeError,
    UnsupportedOperationError,
)
from cardiowatch.wearables.canonical import MetricType
from cardiowatch.wearables.config_loader import threshold_ordering_errors
from cardiowatch.wearables.connections import PUSH_SYNC_ENDPOINT
from cardiowatch.wearables.devices import ConnectionState, Device
from cardiowatch.wearables.ingestion import IngestionJob

router = APIRouter(prefix="/wearables", tags=["wearables"])
logger = logging.getLogger("cardiowatch.wearables.api")


async def _owned_device(container: ServiceContainer, user: CurrentUser, device_id: uuid.UUID) -> Device:
    device = await container.devices.get(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    ensure_patient_access(user, device.patient_id, clinician_ok=False)
    return device


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    return min(max(value, bounds[0]), bounds[1])


async def run_ingestion(container: ServiceContainer, job: IngestionJob) -> None:
    """Background task: store an accepted push job."""
    try:
        stored = await container.ingestion.process(job)
    except Exception:
        logger.exception("Background ingestion failed for device %s", job.device.id)
        return
    if stored:
        container.trends.invalidate(job.device.patient_id)


async def run_backfill(container: ServiceContainer, device: Device, start: date, end: date) -> None:
    """Background task: import history for a pull device window by window."""
    final = None
    try:
        async for progress in container.backfill.run(device.id, start, end):
            final = progress
    except Exception:
        logger.exception("Backfill failed for device %s", device.id)
        return
    if final is None:
        return
    logger.info(
        "Backfill for device %s finished at %s: %d records, complete=%s",
        device.id, final.current_date, final.records_saved, final.is_complete,
    )
    if final.records_saved:
        container.trends.invalidate(device.patient_id)


# ---------- Providers / Devices ----------

@router.get("/devices/supported", response_model=list[SupportedProviderRead])
async def list_supported(user: CurrentUser) -> Any:
    return supported_providers()


@router.get("/devices", response_model=list[DeviceRead])
async def list_devices(user: CurrentUser, container: ContainerDep) -> Any:
    patient_id = require_patient(user)
    devices = await container.devices.list_for_patient(patient_id)
    devices.sort(key=lambda d: d.created_at, reverse=True)
    return [d.to_public_dict() for d in devices]


# ---------- Connect / OAuth ----------

@router.post("/connect/{provider}", response_model=ConnectRead, response_model_exclude_none=True)
async def connect(provider: ProviderTag, user: CurrentUser, container: ContainerDep) -> Any:
    patient_id = require_patient(user)
    return await container.connections.begin_connect(patient_id, provider)


@router.post("/callback/{provider}", response_model=DeviceRead)
async def oauth_callback(
    provider: ProviderTag, body: OAuthCallback, user: CurrentUser, container: ContainerDep
) -> Any:
    patient_id = require_patient(user)
    try:
        device = await container.connections.complete_oauth(
            provider, body.code, body.state, patient_id=patient_id
        )
    except AuthorizationStateError:
        raise HTTPException(status_code=400, detail="Invalid or expired authorization state")
    except (TokenExchangeError, UnsupportedOperationError):
        raise HTTPException(status_code=502, detail="Could not complete authorization with provider")
    return device.to_public_dict()


# ---------- Push devices ----------

@router.post("/register-device", response_model=RegisterDeviceRead, status_code=201)
async def register_device(body: RegisterDeviceRequest, user: CurrentUser, container: ContainerDep) -> Any:
    patient_id = require_patient(user)
    try:
        device, push_token = await container.connections.register_push_device(
            patient_id,
            body.provider,
            body.device_id,
            name=body.name,
            model=body.model,
            firmware_version=body.firmware_version,
        )
    except UnsupportedOperationError:
        raise HTTPException(status_code=400, detail="Provider does not support device registration")
    return {"device_id": device.id, "push_token": push_token, "sync_endpoint": PUSH_SYNC_ENDPOINT}


@router.post("/push-data", response_model=PushAck)
async def push_data(
    request: Request,
    background: BackgroundTasks,
    container: ContainerDep,
    x_device_id: str | None = Header(default=None),
    x_push_token: str | None = Header(default=None),
) -> Any:
    """Device push delivery, authenticated by the device push token."""
    try:
        device_id = uuid.UUID(x_device_id or "")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid device credentials")

    raw_body = await request.body()
    try:
        job = await container.ingestion.accept_push(device_id, x_push_token, raw_body)
    except SignatureError:
        raise HTTPException(status_code=401, detail="Invalid device credentials")
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    except PayloadValidationError:
        raise HTTPException(status_code=400, detail="Malformed payload")

    background.add_task(run_ingestion, container, job)
    return {"success": True, "processed": job.count, "next_sync_token": job.cursor}


# ---------- Disconnect / Sync ----------

@router.delete("/disconnect/{device_id}", response_model=DeviceRead)
async def disconnect(device_id: uuid.UUID, user: CurrentUser, container: ContainerDep) -> Any:
    await _owned_device(container, user, device_id)
    try:
        device = await container.connections.disconnect(device_id)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    return device.to_public_dict()


@router.post("/sync/{device_id}", response_model=SyncReportRead)
async def sync_device(
    device_id: uuid.UUID,
    user: CurrentUser,
    container: ContainerDep,
    body: SyncRequest | None = None,
) -> Any:
    device = await _owned_device(container, user, device_id)
    try:
        report = await container.sync.sync_device(device_id, since=body.since if body else None)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    except UnsupportedOperationError:
        raise HTTPException(status_code=400, detail="Push devices sync from the companion app")

    if report.stored:
        container.trends.invalidate(device.patient_id)
    if report.reconnect_required and report.status == "error":
        return JSONResponse(status_code=409, content=report.to_dict())
    return report.to_dict()


@router.post("/backfill/{device_id}", response_model=BackfillAccepted, status_code=202)
async def backfill_device(
    device_id: uuid.UUID,
    user: CurrentUser,
    container: ContainerDep,
    background: BackgroundTasks,
    body: BackfillRequest | None = None,
) -> Any:
    """Schedule a historical import, clamped to the provider's history limit."""
    device = await _owned_device(container, user, device_id)
    if container.adapter(device.provider).CAPABILITY != Capability.PULL:
        raise HTTPException(status_code=400, detail="Push devices sync from the companion app")
    if device.state not in (ConnectionState.AUTHORIZED, ConnectionState.EXPIRED):
        raise HTTPException(status_code=409, detail="Device must be reconnected")

    today = date.today()
    earliest = container.backfill.get_max_start_date(device.provider, today)
    start = max(body.start or earliest, earliest) if body else earliest
    end = min(body.end or today, today) if body else today
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    background.add_task(run_backfill, container, device, start, end)
    return {"device_id": device.id, "start": start, "end": end, "total_days": (end - start).days + 1}


# ---------- Readings ----------

@router.get("/readings/{patient_id}", response_model=list[SampleRead])
async def list_readings(
    patient_id: uuid.UUID,
    user: CurrentUser,
    container: ContainerDep,
    metric: MetricType = Query(...),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
) -> Any:
    ensure_patient_access(user, patient_id)
    if start and end and end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    samples = await container.store.query(patient_id, metric, start=start, end=end, limit=limit)
    return [s.to_dict() for s in samples]


@router.get("/readings/{patient_id}/latest")
async def latest_readings(patient_id: uuid.UUID, user: CurrentUser, container: ContainerDep) -> dict:
    ensure_patient_access(user, patient_id)
    latest: dict[str, Any] = {}
    for metric in MetricType:
        sample = await container.store.latest(patient_id, metric)
        latest[metric.value] = sample.to_dict() if sample else None
    return latest


@router.get("/readings/{patient_id}/trends", response_model=TrendsRead)
async def patient_trends(
    patient_id: uuid.UUID,
    user: CurrentUser,
    container: ContainerDep,
    baseline_days: int | None = Query(default=None, ge=1, le=90),
    current_days: int | None = Query(default=None, ge=1, le=30),
) -> Any:
    ensure_patient_access(user, patient_id)
    engine = container.trends
    results = await engine.analyze_patient(patient_id, baseline_days, current_days)

    alerts = [r.alert.to_dict() for r in results if r.alert]
    inactivity = await engine.check_inactivity(patient_id)
    if inactivity:
        alerts.append(inactivity.to_dict())

    readiness = await container.readiness.for_patient(engine, patient_id)
    cfg = container.config.trends
    return {
        "patient_id": patient_id,
        "baseline_days": _clamp(baseline_days or cfg.baseline_days, cfg.baseline_days_range),
        "current_days": _clamp(current_days or cfg.current_days, cfg.current_days_range),
        "trends": [r.to_dict() for r in results],
        "alerts": alerts,
        "readiness": readiness.to_dict(),
    }


# ---------- Thresholds ----------

@router.get("/thresholds/{patient_id}", response_model=ThresholdsRead)
async def get_thresholds(patient_id: uuid.UUID, user: CurrentUser, container: ContainerDep) -> Any:
    ensure_patient_access(user, patient_id)
    return (await container.trends.thresholds_for(patient_id)).to_dict()


@router.put("/thresholds/{patient_id}", response_model=ThresholdsRead)
async def update_thresholds(
    patient_id: uuid.UUID, body: ThresholdsUpdate, user: CurrentUser, container: ContainerDep
) -> Any:
    ensure_patient_access(user, patient_id)
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No thresholds to update")

    overrides = {**await container.thresholds.get_overrides(patient_id), **updates}
    merged = (await container.trends.thresholds_for(patient_id)).with_overrides(updates)
    problems = threshold_ordering_errors(merged.to_dict())
    if problems:
        raise HTTPException(status_code=422, detail="; ".join(problems))

    await container.thresholds.set_overrides(patient_id, overrides)
    container.trends.invalidate(patient_id)
    logger.info("Thresholds updated for patient %s by %s", patient_id, user.role)
    return merged.to_dict()


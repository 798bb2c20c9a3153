"""Provider webhook handlers.

Push providers (Apple Health, Health Connect, Samsung Health) deliver signed
sample batches that are ingested directly.  Pull providers (Fitbit, Google
Fit, Garmin, Withings) only notify that new data exists; the matching device
gets a background pull sync.

All endpoints here are public in the JWT middleware and authenticate by
signature or shared token instead.  Request bodies are never logged.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Iterable
from urllib.parse import parse_qs
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, Response

from cardiowatch.dependencies import ContainerDep
from cardiowatch.routers.wearables import run_ingestion
from cardiowatch.services.container import ServiceContainer
from cardiowatch.wearables.base import (
    DeviceNotFoundError,
    PayloadValidationError,
    ProviderTag,
    PushAdapter,
    SignatureError,
    WearableError,
)
from cardiowatch.wearables.vault import secure_compare

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("cardiowatch.webhooks")


async def run_pull_sync(container: ServiceContainer, device_id: UUID) -> None:
    """Background task: pull-sync a device after a provider notification."""
    try:
        report = await container.sync.sync_device(device_id)
    except WearableError as exc:
        logger.warning("Notification sync for device %s failed: %s", device_id, type(exc).__name__)
        return
    if report.stored:
        device = await container.devices.get(device_id)
        if device is not None:
            container.trends.invalidate(device.patient_id)


def _require_token(presented: str | None, expected: str, provider: str) -> None:
    if not expected or not secure_compare(presented, expected):
        logger.warning("Rejected %s notification: invalid token", provider)
        raise HTTPException(status_code=401, detail="Unauthorized")


async def _schedule_syncs(
    container: ServiceContainer,
    background: BackgroundTasks,
    provider: ProviderTag,
    user_ids: Iterable[str],
) -> int:
    scheduled = 0
    for user_id in dict.fromkeys(u for u in user_ids if u):
        device = await container.ingestion.resolve_notification((provider,), user_id)
        if device is not None:
            background.add_task(run_pull_sync, container, device.id)
            scheduled += 1
    logger.info("%s notification: %d device sync(s) scheduled", provider.value, scheduled)
    return scheduled


def _json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Malformed payload")


# ---------- Push providers ----------

async def _ingest(
    provider: ProviderTag,
    request: Request,
    background: BackgroundTasks,
    container: ContainerDep,
) -> dict:
    adapter = container.adapter(provider)
    if not isinstance(adapter, PushAdapter):
        raise HTTPException(status_code=404, detail="Not found")
    raw_body = await request.body()
    signature = request.headers.get(adapter.SIGNATURE_HEADER)
    try:
        job = await container.ingestion.accept_webhook(adapter, signature, raw_body)
    except SignatureError:
        raise HTTPException(status_code=401, detail="Unauthorized")
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")
    except PayloadValidationError:
        raise HTTPException(status_code=400, detail="Malformed payload")

    background.add_task(run_ingestion, container, job)
    return {"success": True, "processed": job.count, "next_sync_token": job.cursor}


@router.post("/apple-health")
async def apple_health_webhook(
    request: Request, background: BackgroundTasks, container: ContainerDep
) -> dict:
    return await _ingest(ProviderTag.APPLE_WATCH, request, background, container)


@router.post("/health-connect")
async def health_connect_webhook(
    request: Request, background: BackgroundTasks, container: ContainerDep
) -> dict:
    return await _ingest(ProviderTag.HEALTH_CONNECT, request, background, container)


@router.post("/samsung-health")
async def samsung_health_webhook(
    request: Request, background: BackgroundTasks, container: ContainerDep
) -> dict:
    return await _ingest(ProviderTag.SAMSUNG, request, background, container)


# ---------- Fitbit ----------

@router.get("/fitbit")
async def fitbit_verify(container: ContainerDep, verify: str | None = Query(default=None)) -> Response:
    """Subscriber verification: 204 for the configured code, 404 otherwise."""
    expected = container.settings.fitbit_verification_code
    if expected and secure_compare(verify, expected):
        return Response(status_code=204)
    return Response(status_code=404)


@router.post("/fitbit", status_code=204)
async def fitbit_webhook(
    request: Request, background: BackgroundTasks, container: ContainerDep
) -> Response:
    adapter = container.adapter(ProviderTag.FITBIT)
    raw_body = await request.body()
    if not adapter.verify_notification(request.headers.get("x-fitbit-signature"), raw_body):
        logger.warning("Rejected fitbit notification: invalid signature")
        raise HTTPException(status_code=401, detail="Unauthorized")

    updates = _json(raw_body)
    if not isinstance(updates, list):
        raise HTTPException(status_code=400, detail="Malformed payload")
    owners = [str(u.get("ownerId") or "") for u in updates if isinstance(u, dict)]
    await _schedule_syncs(container, background, ProviderTag.FITBIT, owners)
    return Response(status_code=204)


# ---------- Google Fit (Cloud Pub/Sub push) ----------

@router.post("/google-fit")
async def google_fit_webhook(
    request: Request,
    background: BackgroundTasks,
    container: ContainerDep,
    token: str | None = Query(default=None),
) -> dict:
    _require_token(token, container.settings.google_pubsub_token, "google_fit")
    envelope = _json(await request.body())
    message = envelope.get("message") if isinstance(envelope, dict) else None
    if not isinstance(message, dict) or not message.get("data"):
        raise HTTPException(status_code=400, detail="Malformed payload")
    try:
        data = json.loads(base64.b64decode(message["data"], validate=True))
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Malformed payload")

    user_id = str(data.get("userId") or "") if isinstance(data, dict) else ""
    scheduled = await _schedule_syncs(container, background, ProviderTag.GOOGLE_FIT, [user_id])
    return {"success": True, "scheduled": scheduled}


# ---------- Garmin (Health API push notifications) ----------

@router.post("/garmin")
async def garmin_webhook(
    request: Request,
    background: BackgroundTasks,
    container: ContainerDep,
    token: str | None = Query(default=None),
) -> dict:
    _require_token(token, container.settings.garmin_callback_token, "garmin")
    body = _json(await request.body())
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Malformed payload")

    # {"dailies": [{"userId": ...}, ...], "sleeps": [...], ...}
    user_ids = [
        str(item.get("userId") or "")
        for items in body.values() if isinstance(items, list)
        for item in items if isinstance(item, dict)
    ]
    scheduled = await _schedule_syncs(container, background, ProviderTag.GARMIN, user_ids)
    return {"success": True, "scheduled": scheduled}


# ---------- Withings (notify callback, form-encoded) ----------

@router.post("/withings")
async def withings_webhook(
    request: Request,
    background: BackgroundTasks,
    container: ContainerDep,
    token: str | None = Query(default=None),
) -> dict:
    _require_token(token, container.settings.withings_callback_token, "withings")
    raw_body = await request.body()
    if request.headers.get("content-type", "").startswith("application/json"):
        body = _json(raw_body)
        user_id = str(body.get("userid") or "") if isinstance(body, dict) else ""
    else:
        form = parse_qs(raw_body.decode("utf-8", errors="replace"))
        user_id = (form.get("userid") or [""])[0]
    if not user_id:
        raise HTTPException(status_code=400, detail="Malformed payload")

    scheduled = await _schedule_syncs(container, background, ProviderTag.WITHINGS, [user_id])
    return {"success": True, "scheduled": scheduled}

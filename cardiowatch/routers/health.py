"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import asyncpg
from fastapi import APIRouter

from cardiowatch.config import get_settings
from cardiowatch.services.database import fetchval, pool_initialized

router = APIRouter(tags=["system"])
logger = logging.getLogger("cardiowatch.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness check. Returns 200 if the API process is up.

    With the postgres backend it also performs a lightweight DB
    connectivity check.
    """
    settings = get_settings()
    database = "not_configured"
    if settings.storage_backend == "postgres":
        database = "unreachable"
        if pool_initialized():
            try:
                await fetchval("SELECT 1")
                database = "connected"
            except (asyncpg.PostgresError, OSError) as exc:
                logger.warning("Health check DB query failed: %s", type(exc).__name__)

    return {
        "status": "degraded" if database == "unreachable" else "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "storage": settings.storage_backend,
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

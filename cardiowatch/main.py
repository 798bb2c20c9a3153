"""CardioWatch API: FastAPI application entry point.

Run locally:
    uvicorn cardiowatch.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cardiowatch.config import Settings, get_settings
from cardiowatch.middleware.jwt_auth import JWTAuthMiddleware
from cardiowatch.middleware.rate_limit import RateLimitMiddleware
from cardiowatch.middleware.security import SecurityHeadersMiddleware
from cardiowatch.routers import health, wearables, webhooks
from cardiowatch.services.container import ServiceContainer, build_container
from cardiowatch.services.database import apply_schema, close_pool, init_pool
from cardiowatch.wearables.config_loader import get_trend_config, reload_trend_config
from cardiowatch.wearables.vault import close_vault, init_vault

logger = logging.getLogger("cardiowatch")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    A container already placed on ``app.state`` (tests) is used as-is.
    """
    settings: Settings = app.state.settings
    logger.info(
        "Starting CardioWatch API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    container: ServiceContainer | None = getattr(app.state, "container", None)
    owns_container = container is None
    if owns_container:
        if settings.storage_backend == "postgres":
            await init_pool(settings)
            await apply_schema()
        config = (
            reload_trend_config(settings.trend_config_path)
            if settings.trend_config_path
            else get_trend_config()
        )
        container = build_container(settings, init_vault(settings.encryption_key), config=config)
        app.state.container = container

    stop = asyncio.Event()
    scheduler_task: asyncio.Task | None = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(container.scheduler.run_forever(stop))

    yield

    stop.set()
    if scheduler_task is not None:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
    if owns_container:
        await container.aclose()
        app.state.container = None
        close_vault()
        if settings.storage_backend == "postgres":
            await close_pool()
    logger.info("CardioWatch API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="CardioWatch API",
        description=(
            "Remote cardiac monitoring: wearable device connections, "
            "sample ingestion, baselines, trends and clinical alerts."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if container is not None:
        app.state.container = container

    # ---------- Middleware (last added runs first) ----------

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware, settings=settings)

    # Rate limiting
    app.add_middleware(RateLimitMiddleware, settings=settings)

    # Bearer JWT authentication
    app.add_middleware(JWTAuthMiddleware, settings=settings)

    # CORS, added last so preflight requests are answered before auth
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(wearables.router, prefix=v1_prefix)

    return app


app = create_app()

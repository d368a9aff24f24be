"""Wearsync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import Settings, get_settings
from src.middleware.auth import BearerAuthMiddleware
from src.routers import health, wearables, webhooks
from src.services.database import apply_schema, close_pool, init_pool
from src.wearables.engine import SyncEngine
from src.wearables.errors import WearableSyncError
from src.wearables.store import MemorySyncStore, SyncStore
from src.wearables.store.postgres import PostgresSyncStore
from src.wearables.sync.scheduler import ReconciliationScheduler
from src.wearables.worker import WebhookWorkerPool

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("wearsync")


# ---------- Store ----------

async def _open_store(settings: Settings) -> SyncStore:
    if not settings.database_url:
        logger.warning("DATABASE_URL is not set; using the in-memory store")
        return MemorySyncStore()
    pool = await init_pool(settings)
    await apply_schema()
    return PostgresSyncStore(pool)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting Wearsync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    store = await _open_store(settings)
    http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    engine = SyncEngine(settings, store, http)
    pool = WebhookWorkerPool(settings.webhook_workers, settings.webhook_queue_size)
    scheduler = ReconciliationScheduler(engine, settings)

    app.state.engine = engine
    app.state.webhook_pool = pool
    app.state.scheduler = scheduler

    pool.start()
    if settings.reconciliation_enabled:
        scheduler.start()
    subscriptions = await engine.ensure_webhook_subscriptions()
    logger.info("Oura webhook subscriptions: %s", subscriptions)
    logger.info(
        "Configured providers: %s",
        ", ".join(r.name for r in engine.configured_runtimes()) or "none",
    )

    yield

    await scheduler.stop()
    await pool.stop()
    await http.aclose()
    await store.close()
    if settings.database_url:
        await close_pool()
    logger.info("Wearsync API shut down")


# ---------- Error handling ----------

async def wearable_error_handler(request: Request, exc: WearableSyncError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Wearsync API",
        description=(
            "Wearable sync engine — OAuth connections, signed webhooks, "
            "rate-limited polling and idempotent metric storage for Oura, "
            "WHOOP, Garmin and Fitbit."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(WearableSyncError, wearable_error_handler)

    # ---------- Middleware (order matters: outermost first) ----------

    # Bearer JWT authentication
    app.add_middleware(BearerAuthMiddleware, settings=settings)

    # CORS: innermost, so it handles preflight
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    # ---------- Health check (outside the v1 prefix) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(wearables.router, prefix=v1_prefix)

    return app


app = create_app()

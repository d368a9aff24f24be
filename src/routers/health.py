"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.dependencies import AppSettings, Engine

router = APIRouter(tags=["system"])
logger = logging.getLogger("wearsync.health")


@router.get("/health")
async def health_check(settings: AppSettings, engine: Engine) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight store connectivity check.
    """
    store_ok = await engine.store.ping()
    if not store_ok:
        logger.warning("Health check store probe failed")

    return {
        "status": "healthy" if store_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "store": "connected" if store_ok else "unreachable",
        "providers": {
            runtime.name: runtime.configured for runtime in map(engine.runtime, engine.names)
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

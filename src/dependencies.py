"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.wearables.engine import ProviderRuntime, SyncEngine
from src.wearables.worker import WebhookWorkerPool


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the bearer JWT."""

    user_id: str  # the token's ``sub`` claim: the local user id
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The bearer auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_app_settings(request: Request) -> Settings:
    """Settings the app was created with, else the environment."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_engine(request: Request) -> SyncEngine:
    """The SyncEngine built by the app lifespan."""
    engine: SyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not started")
    return engine


def get_webhook_pool(request: Request) -> WebhookWorkerPool:
    pool: WebhookWorkerPool | None = getattr(request.app.state, "webhook_pool", None)
    if pool is None:
        raise HTTPException(status_code=503, detail="Webhook workers not started")
    return pool


def get_runtime(provider: str, engine: Annotated[SyncEngine, Depends(get_engine)]) -> ProviderRuntime:
    """Resolve the ``{provider}`` path parameter to its runtime (404 if unknown)."""
    try:
        return engine.runtime(provider)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}") from None


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Engine = Annotated[SyncEngine, Depends(get_engine)]
WebhookPool = Annotated[WebhookWorkerPool, Depends(get_webhook_pool)]
Runtime = Annotated[ProviderRuntime, Depends(get_runtime)]

"""Wearable connection endpoints: connect, status, sync, disconnect, events."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Body, HTTPException, Query, Response
from fastapi.responses import RedirectResponse

from src.dependencies import AppSettings, CurrentUser, Engine, Runtime, WebhookPool
from src.models.base import ErrorDetail
from src.models.wearables import (
    AuthorizeResponse,
    CallbackResponse,
    ConnectionRead,
    ConnectionStatus,
    SyncRequest,
    SyncResponse,
    WebhookEventRead,
)
from src.wearables.errors import WearableSyncError

router = APIRouter(
    prefix="/wearables",
    tags=["wearables"],
    responses={
        404: {"model": ErrorDetail},
        409: {"model": ErrorDetail},
        503: {"model": ErrorDetail},
    },
)
logger = logging.getLogger("wearsync.routers.wearables")


def _frontend_redirect(frontend_url: str, **params: str) -> RedirectResponse:
    return RedirectResponse(
        f"{frontend_url.rstrip('/')}/wearables?{urlencode(params)}", status_code=302
    )


@router.get("", response_model=list[ConnectionRead])
async def list_connections(user: CurrentUser, engine: Engine) -> Any:
    return await engine.list_connections(user.user_id)


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(user: CurrentUser, runtime: Runtime) -> Any:
    return {"url": runtime.oauth.build_authorization_url(user.user_id)}


@router.get("/{provider}/callback", response_model=CallbackResponse)
async def oauth_callback(
    runtime: Runtime,
    pool: WebhookPool,
    settings: AppSettings,
    code: str = Query(default=""),
    state: str = Query(default=""),
    error: str | None = Query(default=None),
) -> Any:
    """OAuth redirect target.  Public: the signed state identifies the user."""
    if error:
        logger.warning("%s authorization denied: %s", runtime.name, error)
        if settings.frontend_url:
            return _frontend_redirect(
                settings.frontend_url, provider=runtime.name, status="error", reason=error
            )
        raise HTTPException(status_code=400, detail=f"Authorization failed: {error}")

    try:
        connection = await runtime.oauth.exchange_code(code, state)
    except WearableSyncError as exc:
        if not settings.frontend_url:
            raise
        logger.warning("%s callback failed: %s", runtime.name, exc.message)
        return _frontend_redirect(
            settings.frontend_url,
            provider=runtime.name,
            status="error",
            reason=exc.__class__.__name__,
        )

    user_id = connection.user_id
    scheduled = pool.submit(lambda: runtime.backfill.sync_recent(user_id))
    if not scheduled:
        logger.warning("%s initial backfill for user %s not scheduled", runtime.name, user_id)

    if settings.frontend_url:
        return _frontend_redirect(settings.frontend_url, provider=runtime.name, status="connected")
    return {
        "provider": runtime.name,
        "connected": True,
        "provider_user_id": connection.provider_user_id,
        "backfill_scheduled": scheduled,
    }


@router.get("/{provider}/status", response_model=ConnectionStatus)
async def connection_status(user: CurrentUser, runtime: Runtime, engine: Engine) -> Any:
    return await engine.status(user.user_id, runtime.name)


@router.post("/{provider}/sync", response_model=SyncResponse)
async def sync_now(
    user: CurrentUser,
    runtime: Runtime,
    body: SyncRequest | None = Body(default=None),
) -> Any:
    """Run a historical sync now and return the per-data-type outcome."""
    request = body or SyncRequest()
    if request.start_date and request.end_date:
        results = await runtime.backfill.sync_range(
            user.user_id, request.start_date, request.end_date, request.data_types
        )
    else:
        results = await runtime.backfill.sync_recent(
            user.user_id, request.days, request.data_types
        )
    return {"provider": runtime.name, "results": [r.to_dict() for r in results]}


@router.delete("/{provider}", status_code=204)
async def disconnect(user: CurrentUser, runtime: Runtime) -> Response:
    if not await runtime.oauth.disconnect(user.user_id):
        raise HTTPException(status_code=404, detail=f"{runtime.name} is not connected")
    return Response(status_code=204)


@router.get("/{provider}/events", response_model=list[WebhookEventRead])
async def list_events(
    user: CurrentUser,
    runtime: Runtime,
    engine: Engine,
    limit: int = Query(default=50, ge=1, le=200),
) -> Any:
    return await engine.store.list_webhook_events(runtime.name, user.user_id, limit)

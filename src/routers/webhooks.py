"""Provider webhook endpoints.

Deliveries are verified synchronously (HMAC over the raw body), acknowledged
immediately, and processed on the webhook worker pool.  Processing errors
never reach the provider; they are stored on the event row.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from src.dependencies import Runtime, WebhookPool
from src.wearables.errors import InvalidSignature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("wearsync.webhooks")


def _reply(status_code: int, body: object = None) -> Response:
    if body is None or status_code == 204:
        return Response(status_code=status_code)
    return JSONResponse(body, status_code=status_code)


@router.get("/{provider}")
async def verification_challenge(request: Request, runtime: Runtime) -> Response:
    """Subscription-time verification (Oura challenge echo, Fitbit verify code)."""
    status_code, body = runtime.provider.verification_challenge(dict(request.query_params))
    if status_code >= 400:
        logger.warning("%s webhook verification failed (%d)", runtime.name, status_code)
    return _reply(status_code, body)


@router.post("/{provider}")
async def receive_webhook(request: Request, runtime: Runtime, pool: WebhookPool) -> Response:
    """Verify, acknowledge, and defer processing to the worker pool."""
    provider = runtime.provider
    body = await request.body()

    try:
        notices = runtime.webhooks.verify(body, request.headers)
    except InvalidSignature as exc:
        return _reply(provider.SIGNATURE_FAILURE_STATUS, exc.to_dict())
    except ValueError as exc:
        logger.warning("%s webhook body rejected: %s", runtime.name, exc)
        return _reply(400, {"detail": "Malformed webhook body"})

    for notice in notices:
        if not pool.submit(lambda notice=notice: runtime.webhooks.process(notice)):
            return _reply(503, {"detail": "Webhook queue is full, retry later"})

    logger.info("%s webhook accepted: %d notice(s)", runtime.name, len(notices))
    return _reply(provider.WEBHOOK_ACK_STATUS, {"status": "accepted", "notices": len(notices)})

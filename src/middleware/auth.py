"""Bearer JWT verification middleware for FastAPI.

Validates the HS256 Bearer token issued by the host application on every
request (except public routes), and sets ``request.state.auth`` with the
authenticated user context that route handlers consume via
``get_current_user``.

Public routes: the health probe, the API docs, the provider webhook
endpoints (they carry their own signatures) and the OAuth callbacks (the
signed state token identifies the user).
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import AuthContext

logger = logging.getLogger("wearsync.auth")

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}
PUBLIC_PREFIXES: tuple[str, ...] = ("/docs", "/redoc", "/api/v1/webhooks/")
WEARABLES_PREFIX = "/api/v1/wearables/"


def _is_public(path: str) -> bool:
    if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
        return True
    return path.startswith(WEARABLES_PREFIX) and path.endswith("/callback")


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Verify host-issued HS256 JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Missing or invalid Authorization header")

        if not self._settings.auth_jwt_secret:
            logger.error("AUTH_JWT_SECRET is not set; rejecting authenticated request")
            return _unauthorized("Authentication is not configured")

        token = auth_header.removeprefix("Bearer ").strip()
        try:
            payload = pyjwt.decode(
                token,
                self._settings.auth_jwt_secret,
                algorithms=["HS256"],
                options={"require": ["sub"], "verify_aud": False},
            )
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.warning("JWT validation failed: %s", exc)
            return _unauthorized("Invalid token")

        user_id = str(payload.get("sub") or "")
        if not user_id:
            return _unauthorized("Invalid token")

        request.state.auth = AuthContext(
            user_id=user_id,
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )
        return await call_next(request)

"""OAuth 2.0 flow management: state tokens, PKCE, code exchange and refresh.

State is a short-lived HS256 JWT carrying the local user id, the provider
tag, a nonce and (for PKCE providers) the code verifier.  Nothing about a
pending authorization is stored server-side; the signature and expiry are
the whole CSRF/replay check.

Refresh policy:
    - Tokens expiring within the skew window are refreshed before use.
    - Every refresh persists the returned refresh token (Fitbit rotates
      single-use refresh tokens); a response without one keeps the old.
    - Concurrent refreshes for one connection collapse behind a per-user
      lock.  The second caller re-reads the fresh row instead of refreshing.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable
from urllib.parse import quote, urlencode

import httpx
import jwt as pyjwt

from src.wearables.base import OAuthTokens, ProviderConnection, utc_now
from src.wearables.errors import (
    ConfigurationError,
    InvalidState,
    NotConnected,
    ProviderRequestError,
    ReauthRequired,
    ServiceUnavailable,
    WearableSyncError,
)

if TYPE_CHECKING:
    from src.config import Settings
    from src.wearables.base import WearableProvider
    from src.wearables.client import ProviderRequestClient
    from src.wearables.store import SyncStore

logger = logging.getLogger("wearsync.wearables.oauth")

_STATE_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """Random 43-character PKCE verifier (32 bytes of entropy)."""
    return _b64url(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    """S256 challenge: URL-safe base64 of SHA-256(verifier), no padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


# ---------------------------------------------------------------------------
# State tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthState:
    """Decoded contents of a verified state token."""

    user_id: str
    provider: str
    nonce: str
    code_verifier: str | None = None


def issue_state(
    secret: str,
    user_id: str,
    provider: str,
    *,
    ttl_seconds: int = 900,
    code_verifier: str | None = None,
    now: datetime | None = None,
) -> str:
    """Mint a signed, time-boxed state token."""
    issued = now or utc_now()
    claims = {
        "sub": user_id,
        "prv": provider,
        "nonce": secrets.token_urlsafe(16),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    if code_verifier:
        claims["cv"] = code_verifier
    return pyjwt.encode(claims, secret, algorithm=_STATE_ALGORITHM)


def verify_state(secret: str, token: str, provider: str) -> OAuthState:
    """Check signature, expiry and provider tag of a state token.

    Raises:
        InvalidState: If the token is expired, tampered, malformed or was
                      issued for another provider.
    """
    if not token:
        raise InvalidState("missing state", provider=provider)
    try:
        claims = pyjwt.decode(
            token,
            secret,
            algorithms=[_STATE_ALGORITHM],
            options={"require": ["exp", "iat", "sub", "prv"]},
        )
    except pyjwt.ExpiredSignatureError as exc:
        raise InvalidState("state expired", provider=provider) from exc
    except pyjwt.InvalidTokenError as exc:
        raise InvalidState("state invalid", provider=provider) from exc

    if claims.get("prv") != provider:
        raise InvalidState("state issued for another provider", provider=provider)
    return OAuthState(
        user_id=str(claims["sub"]),
        provider=provider,
        nonce=str(claims.get("nonce", "")),
        code_verifier=claims.get("cv"),
    )


# ---------------------------------------------------------------------------
# Flow manager
# ---------------------------------------------------------------------------


class OAuthFlowManager:
    """Authorization, exchange and refresh for one provider.

    Credentials are always read from and written to the store; the manager
    holds only per-user refresh locks.

    Args:
        provider: Provider whose OAuth endpoints are used.
        settings: Global settings (state secret, skew, timeout).
        store:    Credential store.
        http:     Shared httpx.AsyncClient for token endpoint calls.
        client:   The provider's request client, for post-exchange lookups.
        clock:    Returns "now" as an aware UTC datetime (tests).
    """

    def __init__(
        self,
        provider: WearableProvider,
        settings: Settings,
        store: SyncStore,
        http: httpx.AsyncClient,
        client: ProviderRequestClient | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.name = provider.SOURCE_ID
        self._settings = settings
        self._store = store
        self._http = http
        self._client = client
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def bind_client(self, client: ProviderRequestClient) -> None:
        self._client = client

    def _require_configured(self) -> None:
        ps = self.provider.settings
        if not ps.is_configured:
            raise ConfigurationError(
                f"{ps.display_name} client id, secret or redirect URI is not set",
                provider=self.name,
            )
        if not self._settings.state_secret:
            raise ConfigurationError("STATE_SECRET is not set", provider=self.name)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def build_authorization_url(self, user_id: str) -> str:
        """Return the provider consent URL for ``user_id``.

        Raises:
            ConfigurationError: If client credentials, redirect URI or the
                                state secret are unset.
        """
        self._require_configured()
        ps = self.provider.settings

        verifier = generate_code_verifier() if ps.pkce else None
        state = issue_state(
            self._settings.state_secret,
            user_id,
            self.name,
            ttl_seconds=self._settings.state_ttl_seconds,
            code_verifier=verifier,
            now=self._clock(),
        )
        params: dict[str, str] = {
            "client_id": ps.client_id,
            "redirect_uri": ps.redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if ps.scopes:
            params["scope"] = " ".join(ps.scopes)
        if verifier:
            params["code_challenge"] = code_challenge(verifier)
            params["code_challenge_method"] = "S256"
        params.update(self.provider.authorization_params())
        return f"{ps.authorize_url}?{urlencode(params, quote_via=quote)}"

    async def exchange_code(self, code: str, state: str) -> ProviderConnection:
        """Verify state, trade the code for tokens and store the connection.

        Raises:
            InvalidState:         Bad or expired state (checked first).
            ConfigurationError:   Provider not configured.
            ProviderRequestError: Token endpoint rejected the code.
            ServiceUnavailable:   Token endpoint unreachable.
        """
        if not self._settings.state_secret:
            raise ConfigurationError("STATE_SECRET is not set", provider=self.name)
        oauth_state = verify_state(self._settings.state_secret, state, self.name)
        self._require_configured()
        if not code:
            raise InvalidState("missing authorization code", provider=self.name)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.provider.settings.redirect_uri,
        }
        if oauth_state.code_verifier:
            form["code_verifier"] = oauth_state.code_verifier

        response = await self._post_token(form)
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{self.name} token exchange failed with {response.status_code}",
                provider=self.name,
                response_status=response.status_code,
                body=response.text[:500],
            )
        tokens = OAuthTokens.from_token_response(response.json(), self._clock())

        provider_user_id: str | None = None
        if self._client is not None:
            try:
                provider_user_id = await self.provider.fetch_provider_user_id(
                    self._client, tokens
                )
            except WearableSyncError as exc:
                logger.warning(
                    "%s: could not resolve provider user id for %s: %s",
                    self.name,
                    oauth_state.user_id,
                    exc,
                )

        connection = await self._store.upsert_connection(
            ProviderConnection(
                user_id=oauth_state.user_id,
                provider=self.name,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
                provider_user_id=provider_user_id,
                scope=tokens.scope,
            )
        )
        logger.info(
            "%s connected for user %s (provider user %s)",
            self.name,
            connection.user_id,
            provider_user_id or "unknown",
        )

        if self._client is not None:
            try:
                await self.provider.on_connected(self._client, connection)
            except WearableSyncError as exc:
                logger.warning("%s post-connect hook failed: %s", self.name, exc)
        return connection

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def get_valid_access_token(self, user_id: str) -> str:
        """Return a usable access token, refreshing when it is about to expire.

        Raises:
            NotConnected:       No connection for this user.
            ReauthRequired:     Refresh was refused or impossible.
            ServiceUnavailable: Token endpoint unreachable.
        """
        connection = await self._store.get_connection(user_id, self.name)
        if connection is None:
            raise NotConnected(f"{self.name} is not connected", provider=self.name)
        skew = self._settings.token_refresh_skew_seconds
        if not connection.expires_within(skew, self._clock()):
            return connection.access_token
        return await self._refresh_serialized(user_id, rejected_token=None)

    async def force_refresh(self, user_id: str, rejected_token: str | None = None) -> str:
        """Refresh after the provider rejected ``rejected_token`` with a 401."""
        return await self._refresh_serialized(user_id, rejected_token=rejected_token, force=True)

    async def _refresh_serialized(
        self, user_id: str, *, rejected_token: str | None, force: bool = False
    ) -> str:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            connection = await self._store.get_connection(user_id, self.name)
            if connection is None:
                raise NotConnected(f"{self.name} is not connected", provider=self.name)
            if force:
                if rejected_token and connection.access_token != rejected_token:
                    return connection.access_token
            elif not connection.expires_within(
                self._settings.token_refresh_skew_seconds, self._clock()
            ):
                return connection.access_token
            refreshed = await self.refresh(connection)
            return refreshed.access_token

    async def refresh(self, connection: ProviderConnection) -> ProviderConnection:
        """Run the refresh grant and persist the full new token set.

        Raises:
            ReauthRequired:     No refresh token, or the endpoint answered 400/401.
            ServiceUnavailable: Transport failure or 5xx.
            NotConnected:       The connection was deleted mid-refresh.
        """
        if not connection.refresh_token:
            raise ReauthRequired(
                f"{self.name} connection has no refresh token", provider=self.name
            )

        response = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": connection.refresh_token}
        )
        if response.status_code in (400, 401):
            logger.warning(
                "%s refresh refused for user %s (%d)",
                self.name,
                connection.user_id,
                response.status_code,
            )
            raise ReauthRequired(
                f"{self.name} refresh token was rejected", provider=self.name
            )
        if response.status_code >= 400:
            raise ServiceUnavailable(
                f"{self.name} token endpoint returned {response.status_code}",
                provider=self.name,
            )

        tokens = OAuthTokens.from_token_response(response.json(), self._clock())
        # A single-use refresh token is spent by this call whether or not a new one came back.
        single_use = self.provider.settings.single_use_refresh_tokens
        if single_use and not tokens.refresh_token:
            logger.warning(
                "%s refresh for user %s returned no new refresh token; reauth will be needed",
                self.name,
                connection.user_id,
            )
        updated = await self._store.update_tokens(
            connection.user_id, self.name, tokens, keep_refresh_token=not single_use
        )
        if updated is None:
            raise NotConnected(f"{self.name} was disconnected", provider=self.name)
        logger.info(
            "Refreshed %s token for user %s (rotated=%s)",
            self.name,
            connection.user_id,
            bool(tokens.refresh_token and tokens.refresh_token != connection.refresh_token),
        )
        return updated

    async def disconnect(self, user_id: str) -> bool:
        """Delete the stored connection.  Returns False if there was none."""
        removed = await self._store.delete_connection(user_id, self.name)
        self._locks.pop(user_id, None)
        if removed:
            logger.info("%s disconnected for user %s", self.name, user_id)
        return removed

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def _post_token(self, form: dict[str, str]) -> httpx.Response:
        ps = self.provider.settings
        body = dict(form)
        auth: httpx.BasicAuth | None = None
        if ps.client_auth == "basic":
            auth = httpx.BasicAuth(ps.client_id, ps.client_secret)
        else:
            body["client_id"] = ps.client_id
            body["client_secret"] = ps.client_secret
        try:
            return await self._http.post(
                ps.token_url,
                data=body,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self._settings.http_timeout_seconds,
            )
        except httpx.TransportError as exc:
            raise ServiceUnavailable(
                f"{self.name} token endpoint unreachable: {exc.__class__.__name__}",
                provider=self.name,
            ) from exc

"""Tests for OAuth state tokens, PKCE, code exchange and token refresh."""

from __future__ import annotations

import asyncio
import base64
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from src.wearables.base import utc_now
from src.wearables.engine import SyncEngine
from src.wearables.errors import (
    ConfigurationError,
    InvalidState,
    NotConnected,
    ProviderRequestError,
    ReauthRequired,
)
from src.wearables.oauth import code_challenge, generate_code_verifier, issue_state, verify_state
from src.wearables.store import MemorySyncStore
from src.wearables.tests.conftest import (
    NOW,
    STATE_SECRET,
    TEST_USER_ID,
    FakeProviderAPI,
    connect,
    make_settings,
)

WHOOP_TOKEN_PATH = "/oauth/oauth2/token"
FITBIT_TOKEN_PATH = "/oauth2/token"
GARMIN_TOKEN_PATH = "/di-oauth2-service/oauth/token"


def form(request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ---------------------------------------------------------------------------
# State and PKCE
# ---------------------------------------------------------------------------


class TestStateTokens:
    def test_round_trip(self) -> None:
        token = issue_state(STATE_SECRET, TEST_USER_ID, "oura", code_verifier="v" * 43)
        state = verify_state(STATE_SECRET, token, "oura")

        assert state.user_id == TEST_USER_ID
        assert state.provider == "oura"
        assert state.code_verifier == "v" * 43
        assert state.nonce

    def test_nonce_differs_per_token(self) -> None:
        first = verify_state(STATE_SECRET, issue_state(STATE_SECRET, TEST_USER_ID, "oura"), "oura")
        second = verify_state(STATE_SECRET, issue_state(STATE_SECRET, TEST_USER_ID, "oura"), "oura")
        assert first.nonce != second.nonce

    def test_expired_state_rejected(self) -> None:
        token = issue_state(
            STATE_SECRET, TEST_USER_ID, "oura", ttl_seconds=60, now=utc_now() - timedelta(hours=1)
        )
        with pytest.raises(InvalidState, match="expired"):
            verify_state(STATE_SECRET, token, "oura")

    def test_other_provider_rejected(self) -> None:
        token = issue_state(STATE_SECRET, TEST_USER_ID, "whoop")
        with pytest.raises(InvalidState, match="another provider"):
            verify_state(STATE_SECRET, token, "oura")

    def test_wrong_secret_rejected(self) -> None:
        token = issue_state("some-other-secret", TEST_USER_ID, "oura")
        with pytest.raises(InvalidState):
            verify_state(STATE_SECRET, token, "oura")

    def test_empty_state_rejected(self) -> None:
        with pytest.raises(InvalidState):
            verify_state(STATE_SECRET, "", "oura")


class TestPKCE:
    def test_rfc7636_vector(self) -> None:
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWlOEjXk"
        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_verifier_is_url_safe_and_43_chars(self) -> None:
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier and "+" not in verifier and "/" not in verifier


# ---------------------------------------------------------------------------
# Authorization URL
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    @pytest.fixture
    def live_engine(self, store: MemorySyncStore, api: FakeProviderAPI) -> SyncEngine:
        # State expiry is checked against wall time.
        return SyncEngine(make_settings(), store, api.client())

    def test_oura_url_has_scopes_and_state(self, live_engine: SyncEngine) -> None:
        url = live_engine.runtime("oura").oauth.build_authorization_url(TEST_USER_ID)
        params = query(url)

        assert url.startswith("https://cloud.ouraring.com/oauth/authorize?")
        assert params["client_id"] == "oura-client"
        assert params["response_type"] == "code"
        assert "daily" in params["scope"].split(" ")
        assert "code_challenge" not in params
        assert verify_state(STATE_SECRET, params["state"], "oura").user_id == TEST_USER_ID

    def test_garmin_url_carries_pkce_challenge(self, live_engine: SyncEngine) -> None:
        params = query(live_engine.runtime("garmin").oauth.build_authorization_url(TEST_USER_ID))
        state = verify_state(STATE_SECRET, params["state"], "garmin")

        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == code_challenge(state.code_verifier)

    def test_unconfigured_provider_raises(self, store: MemorySyncStore, api: FakeProviderAPI) -> None:
        engine = SyncEngine(make_settings(whoop_client_id=""), store, api.client())
        with pytest.raises(ConfigurationError):
            engine.runtime("whoop").oauth.build_authorization_url(TEST_USER_ID)

    def test_missing_state_secret_raises(self, store: MemorySyncStore, api: FakeProviderAPI) -> None:
        engine = SyncEngine(make_settings(state_secret=""), store, api.client())
        with pytest.raises(ConfigurationError, match="STATE_SECRET"):
            engine.runtime("oura").oauth.build_authorization_url(TEST_USER_ID)


# ---------------------------------------------------------------------------
# Code exchange
# ---------------------------------------------------------------------------


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_whoop_exchange_stores_connection(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        api.add(
            "POST",
            WHOOP_TOKEN_PATH,
            json={
                "access_token": "whoop-access",
                "refresh_token": "whoop-refresh",
                "expires_in": 3600,
                "scope": "read:recovery offline",
                "token_type": "bearer",
            },
        )
        api.add("GET", "/developer/v2/user/profile/basic", json={"user_id": 10129})
        oauth = engine.runtime("whoop").oauth
        state = issue_state(STATE_SECRET, TEST_USER_ID, "whoop")

        connection = await oauth.exchange_code("the-code", state)

        assert connection.user_id == TEST_USER_ID
        assert connection.provider_user_id == "10129"
        assert connection.expires_at == NOW + timedelta(seconds=3600)
        assert connection.scope == ["read:recovery", "offline"]
        stored = await store.get_connection(TEST_USER_ID, "whoop")
        assert stored.access_token == "whoop-access"

        [token_call] = api.calls("POST", WHOOP_TOKEN_PATH)
        body = form(token_call)
        assert body["grant_type"] == "authorization_code"
        assert body["code"] == "the-code"
        assert body["client_secret"] == "whoop-secret"
        [profile_call] = api.calls("GET", "/developer/v2/user/profile/basic")
        assert profile_call.headers["Authorization"] == "Bearer whoop-access"

    @pytest.mark.asyncio
    async def test_garmin_exchange_sends_verifier_with_basic_auth(
        self, engine: SyncEngine, api: FakeProviderAPI
    ) -> None:
        api.add("POST", GARMIN_TOKEN_PATH, json={"access_token": "g", "expires_in": 86400})
        api.add("GET", "/wellness-api/rest/user/id", json={"userId": "garmin-user-1"})
        state = issue_state(STATE_SECRET, TEST_USER_ID, "garmin", code_verifier="v" * 43)

        connection = await engine.runtime("garmin").oauth.exchange_code("c", state)

        [token_call] = api.calls("POST", GARMIN_TOKEN_PATH)
        assert form(token_call)["code_verifier"] == "v" * 43
        assert "client_secret" not in form(token_call)
        expected = base64.b64encode(b"garmin-client:garmin-secret").decode()
        assert token_call.headers["Authorization"] == f"Basic {expected}"
        assert connection.provider_user_id == "garmin-user-1"

    @pytest.mark.asyncio
    async def test_bad_state_never_reaches_token_endpoint(
        self, engine: SyncEngine, api: FakeProviderAPI
    ) -> None:
        with pytest.raises(InvalidState):
            await engine.runtime("whoop").oauth.exchange_code("c", "not-a-jwt")
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_rejected_code_raises(self, engine: SyncEngine, api: FakeProviderAPI) -> None:
        api.add("POST", WHOOP_TOKEN_PATH, status=400, json={"error": "invalid_grant"})
        state = issue_state(STATE_SECRET, TEST_USER_ID, "whoop")

        with pytest.raises(ProviderRequestError) as exc_info:
            await engine.runtime("whoop").oauth.exchange_code("c", state)
        assert exc_info.value.response_status == 400

    @pytest.mark.asyncio
    async def test_failed_user_lookup_still_connects(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        api.add("POST", WHOOP_TOKEN_PATH, json={"access_token": "a", "refresh_token": "r"})
        api.add("GET", "/developer/v2/user/profile/basic", status=403)
        state = issue_state(STATE_SECRET, TEST_USER_ID, "whoop")

        connection = await engine.runtime("whoop").oauth.exchange_code("c", state)

        assert connection.provider_user_id is None
        assert await store.get_connection(TEST_USER_ID, "whoop") is not None


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestTokenLifecycle:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "whoop")
        token = await engine.runtime("whoop").oauth.get_valid_access_token(TEST_USER_ID)

        assert token == "access-1"
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_token_inside_skew_is_refreshed(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "whoop", expires_at=NOW + timedelta(seconds=30))
        api.add(
            "POST",
            WHOOP_TOKEN_PATH,
            json={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600},
        )

        token = await engine.runtime("whoop").oauth.get_valid_access_token(TEST_USER_ID)

        assert token == "access-2"
        stored = await store.get_connection(TEST_USER_ID, "whoop")
        assert stored.refresh_token == "refresh-2"
        assert stored.expires_at == NOW + timedelta(seconds=3600)
        assert form(api.calls("POST", WHOOP_TOKEN_PATH)[0])["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_fitbit_rotated_refresh_token_is_persisted(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "fitbit", expires_at=NOW - timedelta(minutes=5))
        api.add(
            "POST",
            FITBIT_TOKEN_PATH,
            json={"access_token": "fb-2", "refresh_token": "fb-refresh-2", "expires_in": 28800},
        )

        await engine.runtime("fitbit").oauth.get_valid_access_token(TEST_USER_ID)

        stored = await store.get_connection(TEST_USER_ID, "fitbit")
        assert stored.refresh_token == "fb-refresh-2"
        [call] = api.calls("POST", FITBIT_TOKEN_PATH)
        assert call.headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token_keeps_old(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "whoop", expires_at=NOW)
        api.add("POST", WHOOP_TOKEN_PATH, json={"access_token": "access-2", "expires_in": 3600})

        await engine.runtime("whoop").oauth.get_valid_access_token(TEST_USER_ID)

        stored = await store.get_connection(TEST_USER_ID, "whoop")
        assert stored.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_single_use_refresh_token_is_not_reused(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "fitbit", expires_at=NOW - timedelta(minutes=5))
        api.add("POST", FITBIT_TOKEN_PATH, json={"access_token": "fb-2", "expires_in": 28800})
        oauth = engine.runtime("fitbit").oauth

        assert await oauth.get_valid_access_token(TEST_USER_ID) == "fb-2"
        stored = await store.get_connection(TEST_USER_ID, "fitbit")
        assert stored.refresh_token is None

        with pytest.raises(ReauthRequired):
            await oauth.force_refresh(TEST_USER_ID, "fb-2")
        assert len(api.calls("POST", FITBIT_TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_collapse_into_one(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "whoop", expires_at=NOW)
        api.add(
            "POST",
            WHOOP_TOKEN_PATH,
            json={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600},
        )
        oauth = engine.runtime("whoop").oauth

        tokens = await asyncio.gather(
            *(oauth.get_valid_access_token(TEST_USER_ID) for _ in range(5))
        )

        assert tokens == ["access-2"] * 5
        assert len(api.calls("POST", WHOOP_TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_force_refresh_skips_when_token_already_replaced(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "whoop", access_token="access-2")

        token = await engine.runtime("whoop").oauth.force_refresh(TEST_USER_ID, "access-1")

        assert token == "access-2"
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_refused_refresh_requires_reauth(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "whoop", expires_at=NOW)
        api.add("POST", WHOOP_TOKEN_PATH, status=400, json={"error": "invalid_grant"})

        with pytest.raises(ReauthRequired):
            await engine.runtime("whoop").oauth.get_valid_access_token(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_missing_refresh_token_requires_reauth(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        await connect(store, "whoop", expires_at=NOW, refresh_token=None)

        with pytest.raises(ReauthRequired):
            await engine.runtime("whoop").oauth.get_valid_access_token(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_not_connected(self, engine: SyncEngine) -> None:
        with pytest.raises(NotConnected):
            await engine.runtime("whoop").oauth.get_valid_access_token(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_disconnect(self, engine: SyncEngine, store: MemorySyncStore) -> None:
        await connect(store, "oura")
        oauth = engine.runtime("oura").oauth

        assert await oauth.disconnect(TEST_USER_ID) is True
        assert await oauth.disconnect(TEST_USER_ID) is False
        assert await store.get_connection(TEST_USER_ID, "oura") is None

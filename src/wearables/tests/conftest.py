"""Shared fixtures for the wearable sync engine tests.

Provider HTTP is faked with ``httpx.MockTransport``: tests script replies per
(method, path) on a ``FakeProviderAPI`` and inspect the recorded requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from src.config import Settings
from src.wearables.base import ProviderConnection
from src.wearables.engine import SyncEngine
from src.wearables.store import MemorySyncStore

TEST_USER_ID = "user-123"
OTHER_USER_ID = "user-456"
STATE_SECRET = "test-state-secret"
AUTH_SECRET = "test-auth-secret"
GARMIN_WEBHOOK_SECRET = "garmin-webhook-secret"
FITBIT_VERIFY_CODE = "fitbit-verify-code"
OURA_VERIFICATION_TOKEN = "oura-verification-token"

# Fixed "now" for token expiry and webhook receipt times.
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# Fake provider HTTP
# ---------------------------------------------------------------------------


@dataclass
class Reply:
    status: int = 200
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    error: type[httpx.TransportError] | None = None


class FakeProviderAPI:
    """Scripted httpx transport.

    Replies registered for one (method, path) are served in order; the last
    one repeats.  Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], list[Reply]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        status: int = 200,
        json: Any = None,
        headers: dict[str, str] | None = None,
        error: type[httpx.TransportError] | None = None,
    ) -> None:
        self._routes.setdefault((method.upper(), path), []).append(
            Reply(status=status, json=json, headers=headers or {}, error=error)
        )

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self._routes.get((request.method, request.url.path))
        if not replies:
            return httpx.Response(404, json={"detail": f"no route for {request.url.path}"})
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if reply.error is not None:
            raise reply.error("simulated transport failure", request=request)
        return httpx.Response(reply.status, json=reply.json, headers=reply.headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns at once and records delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Settings / store / engine
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "state_secret": STATE_SECRET,
        "auth_jwt_secret": AUTH_SECRET,
        "database_url": "",
        "retry_max_attempts": 3,
        "retry_max_jitter_seconds": 0.0,
        "reconciliation_enabled": False,
        "oura_client_id": "oura-client",
        "oura_client_secret": "oura-secret",
        "oura_redirect_uri": "https://app.test/api/v1/wearables/oura/callback",
        "oura_webhook_url": "https://app.test/api/v1/webhooks/oura",
        "oura_webhook_verification_token": OURA_VERIFICATION_TOKEN,
        "whoop_client_id": "whoop-client",
        "whoop_client_secret": "whoop-secret",
        "whoop_redirect_uri": "https://app.test/api/v1/wearables/whoop/callback",
        "garmin_client_id": "garmin-client",
        "garmin_client_secret": "garmin-secret",
        "garmin_redirect_uri": "https://app.test/api/v1/wearables/garmin/callback",
        "garmin_webhook_secret": GARMIN_WEBHOOK_SECRET,
        "fitbit_client_id": "fitbit-client",
        "fitbit_client_secret": "fitbit-secret",
        "fitbit_redirect_uri": "https://app.test/api/v1/wearables/fitbit/callback",
        "fitbit_subscriber_verification_code": FITBIT_VERIFY_CODE,
        "fitbit_notification_coalesce_seconds": 300,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> MemorySyncStore:
    return MemorySyncStore()


@pytest.fixture
def api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def engine(
    settings: Settings, store: MemorySyncStore, api: FakeProviderAPI, sleep: RecordingSleep
) -> SyncEngine:
    return SyncEngine(settings, store, api.client(), sleep=sleep, clock=fixed_clock)


async def connect(
    store: MemorySyncStore,
    provider: str,
    user_id: str = TEST_USER_ID,
    *,
    provider_user_id: str | None = None,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_at: datetime | None = NOW + timedelta(hours=1),
) -> ProviderConnection:
    """Seed a stored connection."""
    return await store.upsert_connection(
        ProviderConnection(
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            provider_user_id=provider_user_id,
        )
    )

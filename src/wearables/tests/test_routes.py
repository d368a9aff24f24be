"""API tests: auth middleware, connection endpoints and webhook receivers.

The lifespan is not run; tests install an engine over the in-memory store
and an unstarted worker pool, so accepted webhooks stay queued.
"""

from __future__ import annotations

import asyncio
import json

import jwt as pyjwt
import pytest
from fastapi.testclient import TestClient

from src.config import Settings
from src.main import create_app
from src.wearables.base import WebhookEventRecord
from src.wearables.engine import SyncEngine
from src.wearables.oauth import issue_state
from src.wearables.signing import b64_signature, hex_signature
from src.wearables.store import MemorySyncStore
from src.wearables.tests.conftest import (
    AUTH_SECRET,
    FITBIT_VERIFY_CODE,
    OURA_VERIFICATION_TOKEN,
    STATE_SECRET,
    TEST_USER_ID,
    FakeProviderAPI,
    connect,
    make_settings,
)
from src.wearables.worker import WebhookWorkerPool

OURA_BODY = json.dumps(
    {
        "event_type": "create",
        "data_type": "daily_sleep",
        "object_id": "abc123",
        "event_time": "2026-03-01T08:00:00+00:00",
        "user_id": "oura-user-1",
    }
).encode()


def oura_headers(body: bytes, secret: str = "oura-secret") -> dict:
    timestamp = "1772366400"
    return {
        "x-oura-signature": hex_signature(secret, timestamp.encode() + body).upper(),
        "x-oura-timestamp": timestamp,
        "content-type": "application/json",
    }


def bearer(user_id: str = TEST_USER_ID, secret: str = AUTH_SECRET) -> dict:
    return {"Authorization": f"Bearer {pyjwt.encode({'sub': user_id}, secret, algorithm='HS256')}"}


def build_client(settings: Settings, engine: SyncEngine, pool: WebhookWorkerPool) -> TestClient:
    app = create_app(settings)
    app.state.engine = engine
    app.state.webhook_pool = pool
    return TestClient(app)


@pytest.fixture
def pool() -> WebhookWorkerPool:
    return WebhookWorkerPool(workers=1, max_queue=10)


@pytest.fixture
def client(settings: Settings, engine: SyncEngine, pool: WebhookWorkerPool) -> TestClient:
    return build_client(settings, engine, pool)


class TestHealthAndAuth:
    def test_health_is_public(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["providers"] == {"oura": True, "whoop": True, "garmin": True, "fitbit": True}

    def test_missing_token(self, client: TestClient) -> None:
        response = client.get("/api/v1/wearables")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing or invalid Authorization header"

    def test_wrong_secret(self, client: TestClient) -> None:
        response = client.get("/api/v1/wearables", headers=bearer(secret="not-the-secret"))

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_unconfigured_auth_rejects(self, engine: SyncEngine, pool: WebhookWorkerPool) -> None:
        client = build_client(make_settings(auth_jwt_secret=""), engine, pool)

        assert client.get("/api/v1/wearables", headers=bearer()).status_code == 401


class TestConnectionEndpoints:
    def test_list_connections(self, client: TestClient, store: MemorySyncStore) -> None:
        asyncio.run(connect(store, "oura", provider_user_id="oura-user-1"))

        response = client.get("/api/v1/wearables", headers=bearer())

        assert response.status_code == 200
        [row] = response.json()
        assert row["provider"] == "oura"
        assert row["display_name"] == "Oura Ring"
        assert "access_token" not in row

    def test_authorize_returns_consent_url(self, client: TestClient) -> None:
        response = client.get("/api/v1/wearables/oura/authorize", headers=bearer())

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://cloud.ouraring.com/oauth/authorize?")

    def test_authorize_unconfigured_provider_is_503(
        self, store: MemorySyncStore, api: FakeProviderAPI, pool: WebhookWorkerPool
    ) -> None:
        settings = make_settings(whoop_client_id="")
        client = build_client(settings, SyncEngine(settings, store, api.client()), pool)

        response = client.get("/api/v1/wearables/whoop/authorize", headers=bearer())

        assert response.status_code == 503
        assert response.json()["error"] == "ConfigurationError"

    def test_unknown_provider_is_404(self, client: TestClient) -> None:
        assert client.get("/api/v1/wearables/polar/status", headers=bearer()).status_code == 404

    def test_status_not_connected(self, client: TestClient) -> None:
        response = client.get("/api/v1/wearables/garmin/status", headers=bearer())

        assert response.status_code == 200
        body = response.json()
        assert body["configured"] is True
        assert body["connected"] is False
        assert body["webhook_configured"] is True
        assert body["pull_configured"] is False

    def test_disconnect(self, client: TestClient, store: MemorySyncStore) -> None:
        asyncio.run(connect(store, "whoop"))

        assert client.delete("/api/v1/wearables/whoop", headers=bearer()).status_code == 204
        assert client.delete("/api/v1/wearables/whoop", headers=bearer()).status_code == 404

    def test_sync_without_connection_is_404(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/wearables/oura/sync",
            headers=bearer(),
            json={"start_date": "2026-02-27", "end_date": "2026-03-01", "data_types": ["daily_sleep"]},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NotConnected"

    def test_sync_range(
        self, client: TestClient, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        asyncio.run(connect(store, "oura"))
        api.add(
            "GET",
            "/v2/usercollection/daily_sleep",
            json={"data": [{"id": "s1", "day": "2026-02-28", "score": 81}]},
        )

        response = client.post(
            "/api/v1/wearables/oura/sync",
            headers=bearer(),
            json={"start_date": "2026-02-27", "end_date": "2026-03-01", "data_types": ["daily_sleep"]},
        )

        assert response.status_code == 200
        [result] = response.json()["results"]
        assert result == {
            "data_type": "daily_sleep",
            "success": True,
            "documents_processed": 1,
            "metrics_inserted": 1,
            "error": None,
        }

    def test_sync_rejects_half_range(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/wearables/oura/sync", headers=bearer(), json={"start_date": "2026-02-27"}
        )

        assert response.status_code == 422

    def test_events_list(self, client: TestClient, store: MemorySyncStore) -> None:
        asyncio.run(
            store.insert_webhook_event(
                WebhookEventRecord(
                    provider="oura",
                    event_key="oura:evt-1",
                    user_id=TEST_USER_ID,
                    data_type="daily_sleep",
                    event_type="create",
                    payload={"object_id": "abc123"},
                    object_id="abc123",
                    error="boom",
                )
            )
        )

        response = client.get("/api/v1/wearables/oura/events", headers=bearer())

        assert response.status_code == 200
        [event] = response.json()
        assert event["event_key"] == "oura:evt-1"
        assert event["processed"] is False
        assert event["error"] == "boom"


class TestOAuthCallback:
    def test_provider_error_without_frontend(self, client: TestClient) -> None:
        response = client.get("/api/v1/wearables/oura/callback", params={"error": "access_denied"})

        assert response.status_code == 400

    def test_provider_error_redirects_to_frontend(
        self, engine: SyncEngine, pool: WebhookWorkerPool
    ) -> None:
        client = build_client(make_settings(frontend_url="https://app.test/"), engine, pool)

        response = client.get(
            "/api/v1/wearables/oura/callback",
            params={"error": "access_denied"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == (
            "https://app.test/wearables?provider=oura&status=error&reason=access_denied"
        )

    def test_bad_state_is_400(self, client: TestClient, api: FakeProviderAPI) -> None:
        response = client.get(
            "/api/v1/wearables/whoop/callback", params={"code": "c", "state": "garbage"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidState"
        assert api.requests == []

    def test_successful_exchange_schedules_backfill(
        self,
        client: TestClient,
        store: MemorySyncStore,
        api: FakeProviderAPI,
        pool: WebhookWorkerPool,
    ) -> None:
        api.add(
            "POST",
            "/oauth/oauth2/token",
            json={"access_token": "whoop-access", "refresh_token": "r", "expires_in": 3600},
        )
        api.add("GET", "/developer/v2/user/profile/basic", json={"user_id": 10129})
        state = issue_state(STATE_SECRET, TEST_USER_ID, "whoop")

        response = client.get(
            "/api/v1/wearables/whoop/callback", params={"code": "the-code", "state": state}
        )

        assert response.status_code == 200
        assert response.json() == {
            "provider": "whoop",
            "connected": True,
            "provider_user_id": "10129",
            "backfill_scheduled": True,
        }
        assert pool.pending == 1
        assert (TEST_USER_ID, "whoop") in store.connections


class TestWebhookReceivers:
    def test_oura_delivery_is_queued(self, client: TestClient, pool: WebhookWorkerPool) -> None:
        response = client.post(
            "/api/v1/webhooks/oura", content=OURA_BODY, headers=oura_headers(OURA_BODY)
        )

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "notices": 1}
        assert pool.pending == 1

    def test_bad_signature_is_rejected_and_not_queued(
        self, client: TestClient, pool: WebhookWorkerPool
    ) -> None:
        response = client.post(
            "/api/v1/webhooks/oura",
            content=OURA_BODY,
            headers=oura_headers(OURA_BODY, secret="wrong"),
        )

        assert response.status_code == 401
        assert pool.pending == 0

    def test_malformed_body_is_400(self, client: TestClient) -> None:
        body = b"[1, 2, 3]"

        response = client.post("/api/v1/webhooks/oura", content=body, headers=oura_headers(body))

        assert response.status_code == 400

    def test_unknown_provider_is_404(self, client: TestClient) -> None:
        assert client.post("/api/v1/webhooks/polar", content=b"{}").status_code == 404

    def test_full_queue_is_503(self, settings: Settings, engine: SyncEngine) -> None:
        pool = WebhookWorkerPool(workers=1, max_queue=1)
        client = build_client(settings, engine, pool)
        first = client.post("/api/v1/webhooks/oura", content=OURA_BODY, headers=oura_headers(OURA_BODY))

        second = client.post(
            "/api/v1/webhooks/oura", content=OURA_BODY, headers=oura_headers(OURA_BODY)
        )

        assert first.status_code == 202
        assert second.status_code == 503

    def test_fitbit_ack_and_rejection_statuses(
        self, client: TestClient, pool: WebhookWorkerPool
    ) -> None:
        body = json.dumps(
            [
                {
                    "collectionType": "sleep",
                    "date": "2026-03-01",
                    "ownerId": "7ZYX42",
                    "ownerType": "user",
                    "subscriptionId": "s-1",
                }
            ]
        ).encode()
        signed = {"x-fitbit-signature": b64_signature("fitbit-secret&", body, "sha1")}
        unsigned = {"x-fitbit-signature": b64_signature("nope&", body, "sha1")}

        accepted = client.post("/api/v1/webhooks/fitbit", content=body, headers=signed)
        rejected = client.post("/api/v1/webhooks/fitbit", content=body, headers=unsigned)

        assert accepted.status_code == 204
        assert accepted.content == b""
        assert rejected.status_code == 404
        assert pool.pending == 1


class TestVerificationChallenges:
    def test_oura_challenge_echo(self, client: TestClient) -> None:
        response = client.get(
            "/api/v1/webhooks/oura",
            params={"verification_token": OURA_VERIFICATION_TOKEN, "challenge": "xyz"},
        )

        assert response.status_code == 200
        assert response.json() == {"challenge": "xyz"}

    def test_oura_wrong_token(self, client: TestClient) -> None:
        response = client.get(
            "/api/v1/webhooks/oura", params={"verification_token": "nope", "challenge": "xyz"}
        )

        assert response.status_code == 401

    def test_fitbit_verify_code(self, client: TestClient) -> None:
        assert client.get("/api/v1/webhooks/fitbit", params={"verify": FITBIT_VERIFY_CODE}).status_code == 204
        assert client.get("/api/v1/webhooks/fitbit", params={"verify": "wrong"}).status_code == 404

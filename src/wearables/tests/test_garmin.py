"""Tests for the Garmin provider: push payloads, pings, deregistrations, pulls."""

from __future__ import annotations

import json
from datetime import date

import pytest

from src.wearables.base import MetricType, NoticeKind
from src.wearables.engine import SyncEngine
from src.wearables.errors import InvalidSignature
from src.wearables.signing import hex_signature
from src.wearables.store import MemorySyncStore
from src.wearables.tests.conftest import (
    GARMIN_WEBHOOK_SECRET,
    TEST_USER_ID,
    FakeProviderAPI,
    connect,
    fixed_clock,
    make_settings,
)
from src.wearables.webhooks import WebhookState

GARMIN_USER_ID = "garmin-user-1"


def sign(body: bytes, secret: str = GARMIN_WEBHOOK_SECRET, prefix: str = "") -> dict:
    return {"x-garmin-signature": prefix + hex_signature(secret, body)}


@pytest.fixture
def daily_payload() -> dict:
    return {
        "dailies": [
            {
                "userId": GARMIN_USER_ID,
                "summaryId": "x3f2a-67a1b800-15180",
                "calendarDate": "2026-03-01",
                "startTimeInSeconds": 1772323200,
                "durationInSeconds": 86400,
                "steps": 10432,
                "activeKilocalories": 512,
                "distanceInMeters": 8120.5,
                "restingHeartRateInBeatsPerMinute": 52,
                "averageStressLevel": 31,
                "bodyBatteryMostRecentValue": 64,
            }
        ]
    }


class TestGarminSignature:
    def test_valid_signature_passes(self, engine: SyncEngine) -> None:
        body = b'{"dailies": []}'
        engine.runtime("garmin").provider.verify_signature(body, sign(body))

    def test_sha256_prefix_accepted(self, engine: SyncEngine) -> None:
        body = b'{"dailies": []}'
        engine.runtime("garmin").provider.verify_signature(body, sign(body, prefix="sha256="))

    def test_mismatch_rejected(self, engine: SyncEngine) -> None:
        body = b'{"dailies": []}'
        with pytest.raises(InvalidSignature):
            engine.runtime("garmin").provider.verify_signature(body, sign(body, secret="nope"))

    def test_rejects_everything_without_a_secret(
        self, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        engine = SyncEngine(make_settings(garmin_webhook_secret=""), store, api.client())
        body = b'{"dailies": []}'
        with pytest.raises(InvalidSignature, match="GARMIN_WEBHOOK_SECRET"):
            engine.runtime("garmin").provider.verify_signature(body, sign(body, secret=""))

    def test_configurable_header_name(self, store: MemorySyncStore, api: FakeProviderAPI) -> None:
        engine = SyncEngine(
            make_settings(garmin_webhook_signature_header="X-Custom-Signature"),
            store,
            api.client(),
        )
        body = b'{"dailies": []}'
        engine.runtime("garmin").provider.verify_signature(
            body, {"x-custom-signature": hex_signature(GARMIN_WEBHOOK_SECRET, body)}
        )


class TestGarminWebhookParsing:
    def test_push_items_grouped_per_user_and_type(
        self, engine: SyncEngine, daily_payload: dict
    ) -> None:
        daily_payload["dailies"].append({**daily_payload["dailies"][0], "summaryId": "other"})
        body = json.dumps({"eventId": "evt-9", **daily_payload}).encode()

        [notice] = engine.runtime("garmin").provider.parse_webhook(body, fixed_clock())

        assert notice.data_type == "daily"
        assert notice.provider_user_id == GARMIN_USER_ID
        assert notice.event_id == f"evt-9:daily:{GARMIN_USER_ID}"
        assert len(notice.documents) == 2

    def test_ping_item_carries_callback_url(self, engine: SyncEngine) -> None:
        body = json.dumps(
            {
                "sleeps": [
                    {
                        "userId": GARMIN_USER_ID,
                        "callbackURL": "https://apis.garmin.com/wellness-api/rest/sleeps?token=t1",
                    }
                ]
            }
        ).encode()

        [notice] = engine.runtime("garmin").provider.parse_webhook(body, fixed_clock())

        assert notice.event_type == "ping"
        assert notice.callback_url.endswith("token=t1")
        assert notice.documents == []

    def test_deregistration_notice(self, engine: SyncEngine) -> None:
        body = json.dumps({"deregistrations": [{"userId": GARMIN_USER_ID}]}).encode()

        [notice] = engine.runtime("garmin").provider.parse_webhook(body, fixed_clock())

        assert notice.kind == NoticeKind.DEREGISTER

    def test_body_without_event_id_keys_on_content(self, engine: SyncEngine) -> None:
        provider = engine.runtime("garmin").provider
        first = provider.parse_webhook(b'{"dailies": [{"userId": "a", "steps": 1}]}', fixed_clock())
        second = provider.parse_webhook(b'{"dailies": [{"userId": "a", "steps": 2}]}', fixed_clock())

        assert first[0].event_id != second[0].event_id

    def test_non_object_body_is_malformed(self, engine: SyncEngine) -> None:
        with pytest.raises(ValueError):
            engine.runtime("garmin").provider.parse_webhook(b"[1, 2]", fixed_clock())


class TestGarminWebhookIngestion:
    @pytest.mark.asyncio
    async def test_push_documents_are_stored_without_fetching(
        self,
        engine: SyncEngine,
        store: MemorySyncStore,
        api: FakeProviderAPI,
        daily_payload: dict,
    ) -> None:
        await connect(store, "garmin", provider_user_id=GARMIN_USER_ID)
        body = json.dumps(daily_payload).encode()

        [result] = await engine.runtime("garmin").webhooks.ingest(body, sign(body))

        assert result.state == WebhookState.PROCESSED
        assert api.requests == []
        assert (TEST_USER_ID, "garmin", "daily", "x3f2a-67a1b800-15180") in store.documents
        values = {m.metric_type: m.value for m in store.metrics.values()}
        assert values["steps"] == 10432
        assert values["active_calories"] == 512
        assert values["resting_heart_rate"] == 52
        assert values["stress_score"] == 31
        assert values["body_battery"] == 64

    @pytest.mark.asyncio
    async def test_documents_without_ids_are_kept_apart(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        await connect(store, "garmin", provider_user_id=GARMIN_USER_ID)
        epochs = [
            {"userId": GARMIN_USER_ID, "startTimeInSeconds": 1772323200, "steps": 120},
            {"userId": GARMIN_USER_ID, "startTimeInSeconds": 1772324100, "steps": 340},
        ]
        body = json.dumps({"epochs": epochs}).encode()

        [result] = await engine.runtime("garmin").webhooks.ingest(body, sign(body))

        assert result.state == WebhookState.PROCESSED
        assert result.documents == 2
        ids = sorted(key[3] for key in store.documents if key[2] == "epoch")
        assert len(ids) == 2
        assert ids[0] != ids[1]

    @pytest.mark.asyncio
    async def test_same_push_twice_is_duplicate(
        self,
        engine: SyncEngine,
        store: MemorySyncStore,
        daily_payload: dict,
    ) -> None:
        await connect(store, "garmin", provider_user_id=GARMIN_USER_ID)
        pipeline = engine.runtime("garmin").webhooks
        body = json.dumps(daily_payload).encode()

        await pipeline.ingest(body, sign(body))
        [again] = await pipeline.ingest(body, sign(body))

        assert again.state == WebhookState.DUPLICATE
        assert len(store.metrics) == 6

    @pytest.mark.asyncio
    async def test_ping_pulls_callback_url(
        self, engine: SyncEngine, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        await connect(store, "garmin", provider_user_id=GARMIN_USER_ID)
        api.add(
            "GET",
            "/wellness-api/rest/sleeps",
            json=[
                {
                    "summaryId": "sleep-1",
                    "calendarDate": "2026-03-01",
                    "sleepDurationInSeconds": 27000,
                }
            ],
        )
        body = json.dumps(
            {
                "sleeps": [
                    {
                        "userId": GARMIN_USER_ID,
                        "callbackURL": "https://apis.garmin.com/wellness-api/rest/sleeps?token=t1",
                    }
                ]
            }
        ).encode()

        [result] = await engine.runtime("garmin").webhooks.ingest(body, sign(body))

        assert result.state == WebhookState.PROCESSED
        [call] = api.calls("GET", "/wellness-api/rest/sleeps")
        assert call.url.params["token"] == "t1"
        assert call.headers["Authorization"] == "Bearer access-1"
        [metric] = store.metrics.values()
        assert metric.metric_type == "sleep"
        assert metric.value == 7.5

    @pytest.mark.asyncio
    async def test_deregistration_removes_connection(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        await connect(store, "garmin", provider_user_id=GARMIN_USER_ID)
        body = json.dumps({"deregistrations": [{"userId": GARMIN_USER_ID}]}).encode()

        [result] = await engine.runtime("garmin").webhooks.ingest(body, sign(body))

        assert result.state == WebhookState.PROCESSED
        assert await store.get_connection(TEST_USER_ID, "garmin") is None


class TestGarminPull:
    def test_webhook_only_without_pull_endpoints(self, engine: SyncEngine) -> None:
        assert engine.runtime("garmin").provider.default_data_types() == []

    @pytest.mark.asyncio
    async def test_pulls_configured_endpoint(
        self, store: MemorySyncStore, api: FakeProviderAPI
    ) -> None:
        engine = SyncEngine(
            make_settings(garmin_pull_endpoints="/wellness-api/rest/dailies"),
            store,
            api.client(),
            clock=fixed_clock,
        )
        await connect(store, "garmin")
        api.add(
            "GET",
            "/wellness-api/rest/dailies",
            json=[{"summaryId": "d-1", "calendarDate": "2026-02-28", "steps": 900}],
        )
        runtime = engine.runtime("garmin")

        [document] = await runtime.provider.fetch_range(
            runtime.client,
            TEST_USER_ID,
            "/wellness-api/rest/dailies",
            date(2026, 2, 27),
            date(2026, 2, 28),
        )

        assert document.data_type == "daily"
        [call] = api.calls("GET", "/wellness-api/rest/dailies")
        assert call.url.params["startDate"] == "2026-02-27"
        assert call.url.params["endDate"] == "2026-02-28"

    @pytest.mark.asyncio
    async def test_unconfigured_endpoint_is_rejected(self, engine: SyncEngine) -> None:
        runtime = engine.runtime("garmin")
        with pytest.raises(ValueError, match="not configured"):
            await runtime.provider.fetch_range(
                runtime.client, TEST_USER_ID, "/wellness-api/rest/epochs", date(2026, 2, 27), date(2026, 2, 28)
            )


class TestGarminExtraction:
    def test_aliases_first_numeric_wins(self, engine: SyncEngine) -> None:
        provider = engine.runtime("garmin").provider
        metrics = provider.extract_metrics(
            "workout",
            {"activityId": 1, "totalSteps": 300, "steps": None, "durationInSeconds": 1800},
        )
        values = {m.metric_type: m.value for m in metrics}

        assert values[MetricType.STEPS] == 300
        assert values[MetricType.WORKOUT] == 30

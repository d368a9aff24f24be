"""Tests for document persistence, metric dedup and downstream fan-out."""

from __future__ import annotations

import pytest

from src.wearables.documents import AUDIT_EVENT_TYPE, FEED_SOURCE_TABLE
from src.wearables.engine import SyncEngine
from src.wearables.store import MemorySyncStore
from src.wearables.tests.conftest import TEST_USER_ID


def daily_activity(**overrides) -> dict:
    doc = {
        "id": "act-1",
        "day": "2026-02-28",
        "steps": 8450,
        "active_calories": 410,
        "equivalent_walking_distance": 6200,
        "total_calories": 2310,
    }
    doc.update(overrides)
    return doc


class TestIngest:
    @pytest.mark.asyncio
    async def test_stores_document_metrics_feed_and_audit(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        documents = engine.runtime("oura").documents

        result = await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())

        assert result.document_id == "act-1"
        assert result.metrics_extracted == 4
        assert result.metrics_inserted == 4

        stored = store.documents[(TEST_USER_ID, "oura", "daily_activity", "act-1")]
        assert stored.day.isoformat() == "2026-02-28"
        assert stored.summary_value == 8450

        assert len(store.feed) == 4
        assert {item.source_table for item in store.feed} == {FEED_SOURCE_TABLE}
        steps = next(item for item in store.feed if item.data_type == "steps")
        assert steps.data["value"] == 8450
        assert steps.data["provider"] == "oura"
        assert steps.data["document_id"] == "act-1"

        [audit] = store.audit
        assert audit.event_type == AUDIT_EVENT_TYPE
        assert audit.payload["metrics_inserted"] == 4

    @pytest.mark.asyncio
    async def test_reingest_inserts_nothing_new(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        documents = engine.runtime("oura").documents

        await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())
        again = await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())

        assert again.metrics_extracted == 4
        assert again.metrics_inserted == 0
        assert len(store.metrics) == 4
        assert len(store.feed) == 4
        assert len(store.documents) == 1

    @pytest.mark.asyncio
    async def test_revision_updates_value_in_place_without_feed(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        documents = engine.runtime("oura").documents

        await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())
        revised = await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity(steps=9000))

        assert revised.metrics_inserted == 0
        steps = [m for m in store.metrics.values() if m.metric_type == "steps"]
        assert [m.value for m in steps] == [9000]
        assert len(store.feed) == 4
        assert store.documents[(TEST_USER_ID, "oura", "daily_activity", "act-1")].payload["steps"] == 9000

    @pytest.mark.asyncio
    async def test_event_key_lands_in_metric_metadata(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        await engine.runtime("oura").documents.ingest(
            TEST_USER_ID, "daily_sleep", {"id": "ds-1", "day": "2026-02-28", "score": 77}, event_key="oura:evt"
        )

        [metric] = store.metrics.values()
        assert metric.metadata["event_key"] == "oura:evt"
        assert metric.metadata["day"] == "2026-02-28"

    @pytest.mark.asyncio
    async def test_document_without_id_uses_fallback(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        result = await engine.runtime("oura").documents.ingest(
            TEST_USER_ID, "daily_sleep", {"day": "2026-02-28", "score": 70}, fallback_id="obj-9"
        )

        assert result.document_id == "obj-9"

    @pytest.mark.asyncio
    async def test_document_without_any_id_is_rejected(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        with pytest.raises(ValueError):
            await engine.runtime("oura").documents.ingest(
                TEST_USER_ID, "daily_sleep", {"day": "2026-02-28", "score": 70}
            )

        assert store.documents == {}

    @pytest.mark.asyncio
    async def test_metrics_are_isolated_per_user(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        documents = engine.runtime("oura").documents

        await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())
        other = await documents.ingest("someone-else", "daily_activity", daily_activity())

        assert other.metrics_inserted == 4
        owners = [m.user_id for m in store.metrics.values()]
        assert owners.count(TEST_USER_ID) == 4
        assert owners.count("someone-else") == 4


class TestMarkDeleted:
    @pytest.mark.asyncio
    async def test_marks_document_and_audits(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        documents = engine.runtime("oura").documents
        await documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())

        assert await documents.mark_deleted(TEST_USER_ID, "daily_activity", "act-1") is True

        stored = store.documents[(TEST_USER_ID, "oura", "daily_activity", "act-1")]
        assert stored.deleted_at is not None
        assert store.audit[-1].payload["deleted"] is True

    @pytest.mark.asyncio
    async def test_unknown_document_is_a_no_op(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        assert await engine.runtime("oura").documents.mark_deleted(TEST_USER_ID, "sleep", "nope") is False
        assert store.audit == []


class TestConsumers:
    @pytest.mark.asyncio
    async def test_feed_items_are_claimed_until_processed(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        await engine.runtime("oura").documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())

        first = await store.claim_feed_items(limit=3)
        assert len(first) == 3
        assert await store.mark_feed_items_processed([item.id for item in first]) == 3
        assert await store.mark_feed_items_processed([first[0].id]) == 0

        [rest] = await store.claim_feed_items()
        assert rest.id not in {item.id for item in first}

    @pytest.mark.asyncio
    async def test_audit_events_are_delivered_once(
        self, engine: SyncEngine, store: MemorySyncStore
    ) -> None:
        await engine.runtime("oura").documents.ingest(TEST_USER_ID, "daily_activity", daily_activity())

        [event] = await store.pending_audit_events()
        assert await store.mark_audit_events_delivered([event.id]) == 1
        assert await store.pending_audit_events() == []

"""In-process SyncStore used when DATABASE_URL is empty, and in tests.

Methods never await between reading and writing, so each call is atomic
with respect to other tasks on the event loop.  That gives the same
conditional-write guarantees as the Postgres unique constraints.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from src.wearables.base import (
    AuditEvent,
    FeedItem,
    MetricOrigin,
    MetricSample,
    OAuthTokens,
    ProviderConnection,
    ProviderDocument,
    WebhookEventRecord,
    utc_now,
)
from src.wearables.store.base import MetricWrite, SyncStore

logger = logging.getLogger("wearsync.db.memory")


@dataclass
class StoredMetric:
    id: int
    user_id: str
    source: str
    metric_type: str
    value: float
    unit: str
    start_time: datetime | None
    end_time: datetime | None
    document_id: str
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


class MemorySyncStore(SyncStore):
    """Dict-backed store.  Public attributes are safe for tests to inspect."""

    def __init__(self) -> None:
        self.connections: dict[tuple[str, str], ProviderConnection] = {}
        self.webhook_events: dict[tuple[str, str], WebhookEventRecord] = {}
        self.documents: dict[tuple[str, str, str, str], ProviderDocument] = {}
        self.metrics: dict[tuple, StoredMetric] = {}
        self.feed: list[FeedItem] = []
        self.audit: list[AuditEvent] = []
        self.subscriptions: dict[str, dict] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_connection(self, user_id: str, provider: str) -> ProviderConnection | None:
        row = self.connections.get((user_id, provider))
        return replace(row) if row else None

    async def upsert_connection(self, connection: ProviderConnection) -> ProviderConnection:
        key = (connection.user_id, connection.provider)
        existing = self.connections.get(key)
        now = utc_now()
        stored = replace(
            connection,
            connected_at=existing.connected_at if existing else connection.connected_at,
            updated_at=now,
        )
        self.connections[key] = stored
        return replace(stored)

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        tokens: OAuthTokens,
        *,
        keep_refresh_token: bool = True,
    ) -> ProviderConnection | None:
        row = self.connections.get((user_id, provider))
        if row is None:
            return None
        row.access_token = tokens.access_token
        if tokens.refresh_token or not keep_refresh_token:
            row.refresh_token = tokens.refresh_token
        row.expires_at = tokens.expires_at
        if tokens.scope:
            row.scope = list(tokens.scope)
        row.updated_at = utc_now()
        return replace(row)

    async def delete_connection(self, user_id: str, provider: str) -> bool:
        return self.connections.pop((user_id, provider), None) is not None

    async def list_connections(self, provider: str) -> list[ProviderConnection]:
        rows = [replace(c) for c in self.connections.values() if c.provider == provider]
        return sorted(rows, key=lambda c: c.updated_at, reverse=True)

    async def list_user_connections(self, user_id: str) -> list[ProviderConnection]:
        return [replace(c) for c in self.connections.values() if c.user_id == user_id]

    async def find_user_by_provider_user_id(
        self, provider: str, provider_user_id: str
    ) -> str | None:
        for conn in self.connections.values():
            if conn.provider == provider and conn.provider_user_id == provider_user_id:
                return conn.user_id
        return None

    async def set_provider_user_id(
        self, user_id: str, provider: str, provider_user_id: str
    ) -> None:
        row = self.connections.get((user_id, provider))
        if row is not None and not row.provider_user_id:
            row.provider_user_id = provider_user_id

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def insert_webhook_event(self, event: WebhookEventRecord) -> bool:
        key = (event.provider, event.event_key)
        existing = self.webhook_events.get(key)
        if existing is not None:
            if existing.processed or existing.error is None:
                return False
            existing.error = None
            existing.payload = dict(event.payload)
            existing.received_at = event.received_at
            return True
        self.webhook_events[key] = replace(event)
        return True

    async def mark_webhook_event(
        self, provider: str, event_key: str, *, processed: bool, error: str | None = None
    ) -> None:
        row = self.webhook_events.get((provider, event_key))
        if row is None:
            return
        row.processed = processed
        row.error = error
        row.processed_at = utc_now() if processed else None

    async def list_webhook_events(
        self, provider: str, user_id: str, limit: int = 50
    ) -> list[WebhookEventRecord]:
        rows = [
            replace(e)
            for e in self.webhook_events.values()
            if e.provider == provider and e.user_id == user_id
        ]
        rows.sort(key=lambda e: e.received_at, reverse=True)
        return rows[:limit]

    # ------------------------------------------------------------------
    # Documents and metrics
    # ------------------------------------------------------------------

    async def upsert_document(self, document: ProviderDocument) -> None:
        key = (document.user_id, document.provider, document.data_type, document.document_id)
        self.documents[key] = replace(document, updated_at=utc_now(), deleted_at=None)

    async def mark_document_deleted(
        self, user_id: str, provider: str, data_type: str, document_id: str
    ) -> bool:
        row = self.documents.get((user_id, provider, data_type, document_id))
        if row is None:
            return False
        row.deleted_at = utc_now()
        row.updated_at = row.deleted_at
        return True

    async def insert_metric_if_new(
        self, user_id: str, sample: MetricSample, origin: MetricOrigin
    ) -> MetricWrite:
        key = (
            user_id,
            origin.provider,
            sample.metric_type.value,
            sample.start_time,
            sample.end_time,
            origin.document_id,
        )
        existing = self.metrics.get(key)
        if existing is not None:
            if existing.value == sample.value:
                return MetricWrite(metric_id=None, inserted=False)
            existing.value = sample.value
            existing.metadata = origin.to_metadata()
            existing.updated_at = utc_now()
            return MetricWrite(metric_id=existing.id, inserted=False, revised=True)

        metric_id = next(self._ids)
        self.metrics[key] = StoredMetric(
            id=metric_id,
            user_id=user_id,
            source=origin.provider,
            metric_type=sample.metric_type.value,
            value=sample.value,
            unit=sample.unit,
            start_time=sample.start_time,
            end_time=sample.end_time,
            document_id=origin.document_id,
            metadata=origin.to_metadata(),
        )
        return MetricWrite(metric_id=metric_id, inserted=True)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def enqueue_feed_item(
        self, user_id: str, source_table: str, source_id: int, data_type: str, data: dict
    ) -> int:
        item_id = next(self._ids)
        self.feed.append(
            FeedItem(
                id=item_id,
                user_id=user_id,
                source_table=source_table,
                source_id=source_id,
                data_type=data_type,
                data=dict(data),
            )
        )
        return item_id

    async def claim_feed_items(self, limit: int = 100) -> list[FeedItem]:
        return [replace(item) for item in self.feed if not item.processed][:limit]

    async def mark_feed_items_processed(self, ids: list[int]) -> int:
        wanted = set(ids)
        changed = 0
        for item in self.feed:
            if item.id in wanted and not item.processed:
                item.processed = True
                item.processed_at = utc_now()
                changed += 1
        return changed

    async def append_audit_event(self, user_id: str, event_type: str, payload: dict) -> int:
        event_id = next(self._ids)
        self.audit.append(
            AuditEvent(id=event_id, user_id=user_id, event_type=event_type, payload=dict(payload))
        )
        return event_id

    async def pending_audit_events(self, limit: int = 100) -> list[AuditEvent]:
        return [replace(e) for e in self.audit if not e.delivered][:limit]

    async def mark_audit_events_delivered(self, ids: list[int]) -> int:
        wanted = set(ids)
        changed = 0
        for event in self.audit:
            if event.id in wanted and not event.delivered:
                event.delivered = True
                changed += 1
        return changed

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------

    async def upsert_webhook_subscription(
        self,
        provider: str,
        subscription_id: str,
        data_type: str,
        event_type: str,
        callback_url: str,
        expiration_time: datetime | None,
    ) -> None:
        self.subscriptions[subscription_id] = {
            "provider": provider,
            "subscription_id": subscription_id,
            "data_type": data_type,
            "event_type": event_type,
            "callback_url": callback_url,
            "expiration_time": expiration_time,
            "active": True,
        }

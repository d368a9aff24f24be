"""asyncpg-backed SyncStore.

Conditional writes map onto the unique constraints in ``schema.sql``:
``ON CONFLICT DO NOTHING RETURNING`` tells the caller whether a row was
actually created, so no read-then-write race exists between webhook workers
and the reconciliation backfill.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

import asyncpg

from src.wearables.base import (
    AuditEvent,
    FeedItem,
    MetricOrigin,
    MetricSample,
    OAuthTokens,
    ProviderConnection,
    ProviderDocument,
    WebhookEventRecord,
)
from src.wearables.store.base import MetricWrite, SyncStore
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("wearsync.db.postgres")

_CONNECTION_COLUMNS = [
    "user_id",
    "provider",
    "provider_user_id",
    "access_token",
    "refresh_token",
    "expires_at",
    "scope",
    "connected_at",
]

_DOCUMENT_COLUMNS = [
    "user_id",
    "provider",
    "data_type",
    "document_id",
    "provider_user_id",
    "day",
    "start_time",
    "end_time",
    "payload",
    "summary_value",
]

_UPSERT_CONNECTION = build_upsert_query(
    "wearable_connections",
    _CONNECTION_COLUMNS,
    ["user_id", "provider"],
    update_columns=["provider_user_id", "access_token", "refresh_token", "expires_at", "scope"],
    returning="*",
)

_UPSERT_DOCUMENT = build_upsert_query(
    "provider_documents",
    _DOCUMENT_COLUMNS,
    ["user_id", "provider", "data_type", "document_id"],
    update_columns=[
        "provider_user_id",
        "day",
        "start_time",
        "end_time",
        "payload",
        "summary_value",
    ],
).replace("updated_at = NOW()", "updated_at = NOW(), deleted_at = NULL")

_INSERT_METRIC = """
INSERT INTO health_metrics
    (user_id, source, metric_type, value, unit, start_time, end_time, document_id, metadata)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
ON CONFLICT (user_id, source, metric_type, start_time, end_time, document_id)
DO UPDATE SET value = EXCLUDED.value, metadata = EXCLUDED.metadata, updated_at = NOW()
    WHERE health_metrics.value IS DISTINCT FROM EXCLUDED.value
RETURNING id, (xmax = 0) AS inserted
"""

_UPSERT_SUBSCRIPTION = build_upsert_query(
    "oura_webhook_subscriptions",
    ["subscription_id", "provider", "data_type", "event_type", "callback_url", "expiration_time"],
    ["subscription_id"],
).replace("updated_at = NOW()", "updated_at = NOW(), active = TRUE")


def _json(value: object) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)  # type: ignore[call-overload]


def _connection_from_row(row: asyncpg.Record) -> ProviderConnection:
    return ProviderConnection(
        user_id=row["user_id"],
        provider=row["provider"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        provider_user_id=row["provider_user_id"],
        scope=list(row["scope"] or []),
        connected_at=row["connected_at"],
        updated_at=row["updated_at"],
    )


def _event_from_row(row: asyncpg.Record) -> WebhookEventRecord:
    return WebhookEventRecord(
        provider=row["provider"],
        event_key=row["event_key"],
        user_id=row["user_id"],
        data_type=row["data_type"],
        event_type=row["event_type"],
        payload=_json(row["payload"]),
        object_id=row["object_id"],
        event_time=row["event_time"],
        provider_user_id=row["provider_user_id"],
        processed=row["processed"],
        error=row["error"],
        received_at=row["received_at"],
        processed_at=row["processed_at"],
    )


class PostgresSyncStore(SyncStore):
    """SyncStore over an asyncpg pool created by ``src.services.database``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_connection(self, user_id: str, provider: str) -> ProviderConnection | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM wearable_connections WHERE user_id = $1 AND provider = $2",
            user_id,
            provider,
        )
        return _connection_from_row(row) if row else None

    async def upsert_connection(self, connection: ProviderConnection) -> ProviderConnection:
        row = await self._pool.fetchrow(
            _UPSERT_CONNECTION,
            connection.user_id,
            connection.provider,
            connection.provider_user_id,
            connection.access_token,
            connection.refresh_token,
            connection.expires_at,
            list(connection.scope),
            connection.connected_at,
        )
        return _connection_from_row(row)

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        tokens: OAuthTokens,
        *,
        keep_refresh_token: bool = True,
    ) -> ProviderConnection | None:
        row = await self._pool.fetchrow(
            """
            UPDATE wearable_connections
               SET access_token = $3,
                   refresh_token = CASE WHEN $7::boolean THEN COALESCE($4, refresh_token) ELSE $4 END,
                   expires_at = $5,
                   scope = CASE WHEN cardinality($6::text[]) > 0 THEN $6::text[] ELSE scope END,
                   updated_at = NOW()
             WHERE user_id = $1 AND provider = $2
         RETURNING *
            """,
            user_id,
            provider,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
            list(tokens.scope),
            keep_refresh_token,
        )
        return _connection_from_row(row) if row else None

    async def delete_connection(self, user_id: str, provider: str) -> bool:
        status = await self._pool.execute(
            "DELETE FROM wearable_connections WHERE user_id = $1 AND provider = $2",
            user_id,
            provider,
        )
        return status.endswith(" 1")

    async def list_connections(self, provider: str) -> list[ProviderConnection]:
        rows = await self._pool.fetch(
            "SELECT * FROM wearable_connections WHERE provider = $1 ORDER BY updated_at DESC",
            provider,
        )
        return [_connection_from_row(r) for r in rows]

    async def list_user_connections(self, user_id: str) -> list[ProviderConnection]:
        rows = await self._pool.fetch(
            "SELECT * FROM wearable_connections WHERE user_id = $1 ORDER BY provider",
            user_id,
        )
        return [_connection_from_row(r) for r in rows]

    async def find_user_by_provider_user_id(
        self, provider: str, provider_user_id: str
    ) -> str | None:
        return await self._pool.fetchval(
            """
            SELECT user_id FROM wearable_connections
             WHERE provider = $1 AND provider_user_id = $2
             ORDER BY updated_at DESC
             LIMIT 1
            """,
            provider,
            provider_user_id,
        )

    async def set_provider_user_id(
        self, user_id: str, provider: str, provider_user_id: str
    ) -> None:
        await self._pool.execute(
            """
            UPDATE wearable_connections SET provider_user_id = $3, updated_at = NOW()
             WHERE user_id = $1 AND provider = $2 AND provider_user_id IS NULL
            """,
            user_id,
            provider,
            provider_user_id,
        )

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def insert_webhook_event(self, event: WebhookEventRecord) -> bool:
        event_id = await self._pool.fetchval(
            """
            INSERT INTO wearable_webhook_events
                (provider, event_key, user_id, provider_user_id, data_type, event_type,
                 object_id, event_time, payload, received_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (provider, event_key) DO UPDATE
                SET error = NULL,
                    payload = EXCLUDED.payload,
                    received_at = EXCLUDED.received_at
                WHERE NOT wearable_webhook_events.processed
                  AND wearable_webhook_events.error IS NOT NULL
            RETURNING id
            """,
            event.provider,
            event.event_key,
            event.user_id,
            event.provider_user_id,
            event.data_type,
            event.event_type,
            event.object_id,
            event.event_time,
            json.dumps(event.payload, default=str),
            event.received_at,
        )
        return event_id is not None

    async def mark_webhook_event(
        self, provider: str, event_key: str, *, processed: bool, error: str | None = None
    ) -> None:
        await self._pool.execute(
            """
            UPDATE wearable_webhook_events
               SET processed = $3,
                   error = $4,
                   processed_at = CASE WHEN $3 THEN NOW() ELSE NULL END
             WHERE provider = $1 AND event_key = $2
            """,
            provider,
            event_key,
            processed,
            error,
        )

    async def list_webhook_events(
        self, provider: str, user_id: str, limit: int = 50
    ) -> list[WebhookEventRecord]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM wearable_webhook_events
             WHERE provider = $1 AND user_id = $2
             ORDER BY received_at DESC
             LIMIT $3
            """,
            provider,
            user_id,
            limit,
        )
        return [_event_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Documents and metrics
    # ------------------------------------------------------------------

    async def upsert_document(self, document: ProviderDocument) -> None:
        await self._pool.execute(
            _UPSERT_DOCUMENT,
            document.user_id,
            document.provider,
            document.data_type,
            document.document_id,
            document.provider_user_id,
            document.day,
            document.start_time,
            document.end_time,
            json.dumps(document.payload, default=str),
            document.summary_value,
        )

    async def mark_document_deleted(
        self, user_id: str, provider: str, data_type: str, document_id: str
    ) -> bool:
        status = await self._pool.execute(
            """
            UPDATE provider_documents SET deleted_at = NOW(), updated_at = NOW()
             WHERE user_id = $1 AND provider = $2 AND data_type = $3 AND document_id = $4
            """,
            user_id,
            provider,
            data_type,
            document_id,
        )
        return status.endswith(" 1")

    async def insert_metric_if_new(
        self, user_id: str, sample: MetricSample, origin: MetricOrigin
    ) -> MetricWrite:
        row = await self._pool.fetchrow(
            _INSERT_METRIC,
            user_id,
            origin.provider,
            sample.metric_type.value,
            sample.value,
            sample.unit,
            sample.start_time,
            sample.end_time,
            origin.document_id,
            json.dumps(origin.to_metadata()),
        )
        if row is None:
            return MetricWrite(metric_id=None, inserted=False)
        inserted = bool(row["inserted"])
        return MetricWrite(metric_id=row["id"], inserted=inserted, revised=not inserted)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def enqueue_feed_item(
        self, user_id: str, source_table: str, source_id: int, data_type: str, data: dict
    ) -> int:
        return await self._pool.fetchval(
            """
            INSERT INTO health_feed_queue (user_id, source_table, source_id, data_type, data)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
            """,
            user_id,
            source_table,
            source_id,
            data_type,
            json.dumps(data, default=str),
        )

    async def claim_feed_items(self, limit: int = 100) -> list[FeedItem]:
        rows = await self._pool.fetch(
            "SELECT * FROM health_feed_queue WHERE NOT processed ORDER BY id LIMIT $1",
            limit,
        )
        return [
            FeedItem(
                id=r["id"],
                user_id=r["user_id"],
                source_table=r["source_table"],
                source_id=r["source_id"],
                data_type=r["data_type"],
                data=_json(r["data"]),
                processed=r["processed"],
                created_at=r["created_at"],
                processed_at=r["processed_at"],
            )
            for r in rows
        ]

    async def mark_feed_items_processed(self, ids: list[int]) -> int:
        if not ids:
            return 0
        status = await self._pool.execute(
            """
            UPDATE health_feed_queue SET processed = TRUE, processed_at = NOW()
             WHERE id = ANY($1::bigint[]) AND NOT processed
            """,
            list(ids),
        )
        return int(status.split()[-1])

    async def append_audit_event(self, user_id: str, event_type: str, payload: dict) -> int:
        return await self._pool.fetchval(
            """
            INSERT INTO health_audit_events (user_id, event_type, payload)
            VALUES ($1, $2, $3)
            RETURNING id
            """,
            user_id,
            event_type,
            json.dumps(payload, default=str),
        )

    async def pending_audit_events(self, limit: int = 100) -> list[AuditEvent]:
        rows = await self._pool.fetch(
            "SELECT * FROM health_audit_events WHERE NOT delivered ORDER BY id LIMIT $1",
            limit,
        )
        return [
            AuditEvent(
                id=r["id"],
                user_id=r["user_id"],
                event_type=r["event_type"],
                payload=_json(r["payload"]),
                delivered=r["delivered"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def mark_audit_events_delivered(self, ids: list[int]) -> int:
        if not ids:
            return 0
        status = await self._pool.execute(
            "UPDATE health_audit_events SET delivered = TRUE "
            "WHERE id = ANY($1::bigint[]) AND NOT delivered",
            list(ids),
        )
        return int(status.split()[-1])

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
        await self._pool.execute(
            _UPSERT_SUBSCRIPTION,
            subscription_id,
            provider,
            data_type,
            event_type,
            callback_url,
            expiration_time,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            return await self._pool.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError) as exc:
            logger.warning("Database ping failed: %s", exc)
            return False

"""Deduplication keys and idempotent-write helpers.

The same data reaches the engine through several paths: a webhook, its
redelivery, and the reconciliation backfill.  Database unique constraints
are the authoritative dedup mechanism; the helpers here build the keys and
queries that target them.

Dedup keys:
    - wearable_webhook_events: (provider, event_key)
    - provider_documents:      (user_id, provider, data_type, document_id)
    - health_metrics:          (user_id, source, metric_type, start, end, document_id)
"""

from __future__ import annotations

import hashlib
import json

from src.wearables.base import WebhookNotice


def webhook_event_key(user_id: str, notice: WebhookNotice) -> str:
    """Generate the natural key of a webhook delivery.

    A provider-supplied event id wins (Whoop ``trace_id``, Garmin
    ``eventId``).  Otherwise the key is built from
    (provider, user, data type, event type, object id, event time).  A
    notice without an event time uses its receipt time.

    Args:
        user_id: Local user the notice resolved to.
        notice:  Parsed webhook notice.

    Returns:
        Colon-separated key, unique per provider.
    """
    if notice.event_id:
        return f"{notice.provider}:{notice.event_id}"
    event_time = (notice.event_time or notice.received_at).isoformat()
    return ":".join(
        [
            notice.provider,
            user_id,
            notice.data_type,
            notice.event_type,
            notice.object_id or "",
            event_time,
        ]
    )


def document_key(user_id: str, provider: str, data_type: str, document_id: str) -> str:
    """Key matching the provider_documents primary key."""
    return f"{user_id}:{provider}:{data_type}:{document_id}"


def payload_content_hash(payload: dict) -> str:
    """SHA-256 of the key-sorted JSON; stands in for an id a document lacks."""
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class InMemoryDedupCache:
    """Document keys already handled in one delivery or backfill run."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    *,
    touch_column: str | None = "updated_at",
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes, safe to repeat with the same data.  On
    conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        touch_column:     Timestamp column set to NOW() on update, if any.
        returning:        Optional RETURNING expression list.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        if touch_column and touch_column not in update_columns:
            update_set += f", {touch_column} = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query

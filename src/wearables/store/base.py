"""Persistence interface for the sync engine.

The engine owns every write to connections, webhook events, documents,
metrics, the feed queue and the audit log.  Two backends implement this
interface: ``PostgresSyncStore`` (asyncpg, production) and
``MemorySyncStore`` (single process, development and tests).

Every conditional write is atomic in the backend, so concurrent webhook and
backfill tasks touching the same rows resolve without application locks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
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
)


@dataclass(frozen=True)
class MetricWrite:
    """Outcome of a conditional metric insert.

    Attributes:
        metric_id: Row id when a row was inserted or revised, else None.
        inserted:  True only when a new row was created.
        revised:   True when an existing row's value changed.
    """

    metric_id: int | None
    inserted: bool
    revised: bool = False


class SyncStore(ABC):
    """Abstract store.  All methods are coroutine-safe."""

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_connection(self, user_id: str, provider: str) -> ProviderConnection | None:
        """Return the connection for (user, provider), or None."""

    @abstractmethod
    async def upsert_connection(self, connection: ProviderConnection) -> ProviderConnection:
        """Insert or replace the (user, provider) row, keeping connected_at."""

    @abstractmethod
    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        tokens: OAuthTokens,
        *,
        keep_refresh_token: bool = True,
    ) -> ProviderConnection | None:
        """Atomically rewrite access token, refresh token and expiry.

        A None refresh_token keeps the stored one, or clears it when
        keep_refresh_token is False.  Returns the updated row, or None if the
        connection vanished (disconnected mid-refresh).
        """

    @abstractmethod
    async def delete_connection(self, user_id: str, provider: str) -> bool:
        """Delete the row.  Returns True if one existed."""

    @abstractmethod
    async def list_connections(self, provider: str) -> list[ProviderConnection]:
        """All connections of one provider, most recently updated first."""

    @abstractmethod
    async def list_user_connections(self, user_id: str) -> list[ProviderConnection]:
        """All connections of one user."""

    @abstractmethod
    async def find_user_by_provider_user_id(
        self, provider: str, provider_user_id: str
    ) -> str | None:
        """Map a provider-side user id to the local user id."""

    @abstractmethod
    async def set_provider_user_id(
        self, user_id: str, provider: str, provider_user_id: str
    ) -> None:
        """Fill the provider user id when the connection has none yet."""

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_webhook_event(self, event: WebhookEventRecord) -> bool:
        """Conditionally insert an event.  False when the key already exists.

        A row whose earlier processing failed (not processed, error set) is
        re-claimed: its error is cleared and True is returned so the
        redelivery is processed again.
        """

    @abstractmethod
    async def mark_webhook_event(
        self, provider: str, event_key: str, *, processed: bool, error: str | None = None
    ) -> None:
        """Record the processing outcome of an event."""

    @abstractmethod
    async def list_webhook_events(
        self, provider: str, user_id: str, limit: int = 50
    ) -> list[WebhookEventRecord]:
        """Most recent events for (provider, user), newest first."""

    # ------------------------------------------------------------------
    # Documents and metrics
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_document(self, document: ProviderDocument) -> None:
        """Insert or overwrite by (user, provider, data_type, document_id).

        Overwrites clear deleted_at and bump updated_at.
        """

    @abstractmethod
    async def mark_document_deleted(
        self, user_id: str, provider: str, data_type: str, document_id: str
    ) -> bool:
        """Set deleted_at.  Returns True if the document existed."""

    @abstractmethod
    async def insert_metric_if_new(
        self, user_id: str, sample: MetricSample, origin: MetricOrigin
    ) -> MetricWrite:
        """Conditional insert keyed on
        (user, source, metric_type, start, end, document_id).

        An existing row with a different value is revised in place and
        reported with inserted=False.
        """

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    @abstractmethod
    async def enqueue_feed_item(
        self, user_id: str, source_table: str, source_id: int, data_type: str, data: dict
    ) -> int:
        """Append one feed row and return its id."""

    @abstractmethod
    async def claim_feed_items(self, limit: int = 100) -> list[FeedItem]:
        """Oldest unprocessed feed rows."""

    @abstractmethod
    async def mark_feed_items_processed(self, ids: list[int]) -> int:
        """Set the processed marker.  Returns the number of rows changed."""

    @abstractmethod
    async def append_audit_event(self, user_id: str, event_type: str, payload: dict) -> int:
        """Append one audit row and return its id."""

    @abstractmethod
    async def pending_audit_events(self, limit: int = 100) -> list[AuditEvent]:
        """Oldest undelivered audit rows."""

    @abstractmethod
    async def mark_audit_events_delivered(self, ids: list[int]) -> int:
        ...

    # ------------------------------------------------------------------
    # Webhook subscriptions (Oura)
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_webhook_subscription(
        self,
        provider: str,
        subscription_id: str,
        data_type: str,
        event_type: str,
        callback_url: str,
        expiration_time: datetime | None,
    ) -> None:
        ...

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Cheap liveness probe for the health endpoint."""
        return True

    async def close(self) -> None:
        """Release backend resources."""

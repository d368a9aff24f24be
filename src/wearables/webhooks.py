"""Webhook ingestion pipeline.

    received -> verified -> deduplicated -> (fetched) -> persisted -> processed
    received -> rejected | duplicate | unmapped
    verified -> error (retryable; left on the event row)

``verify`` runs inside the HTTP handler: it checks the signature and parses
the body, and nothing is written before it succeeds.  ``process`` runs later
on the worker pool: it resolves the user, records the event under its
natural key, and persists documents and metrics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Mapping

from src.wearables.base import (
    NoticeKind,
    WebhookEventRecord,
    WebhookNotice,
    utc_now,
)
from src.wearables.errors import DuplicateEvent, InvalidSignature, UnmappableUser
from src.wearables.sync.dedup import InMemoryDedupCache, document_key, webhook_event_key

if TYPE_CHECKING:
    from datetime import datetime

    from src.config import Settings
    from src.wearables.base import WearableProvider
    from src.wearables.client import ProviderRequestClient
    from src.wearables.documents import DocumentMetricStore
    from src.wearables.store import SyncStore

logger = logging.getLogger("wearsync.wearables.webhooks")

_MAX_ERROR_LENGTH = 2000


class WebhookState(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNMAPPED = "unmapped"
    FAILED = "failed"


@dataclass
class WebhookResult:
    """Outcome of processing one notice.

    Attributes:
        state:            Terminal state of the notice.
        event_key:        Natural key the event was recorded under, if any.
        documents:        Documents persisted (or marked deleted).
        metrics_inserted: New metric rows.
        error:            Error message for FAILED notices.
    """

    state: WebhookState
    event_key: str | None = None
    documents: int = 0
    metrics_inserted: int = 0
    error: str | None = None


class WebhookIngestionPipeline:
    """Verify, deduplicate and persist one provider's webhook deliveries."""

    def __init__(
        self,
        provider: WearableProvider,
        settings: Settings,
        store: SyncStore,
        client: ProviderRequestClient,
        documents: DocumentMetricStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.name = provider.SOURCE_ID
        self._settings = settings
        self._store = store
        self._client = client
        self._documents = documents
        self._clock = clock

    # ------------------------------------------------------------------
    # Synchronous part (inside the HTTP handler)
    # ------------------------------------------------------------------

    def verify(self, body: bytes, headers: Mapping[str, str]) -> list[WebhookNotice]:
        """Check the signature, then parse the body into notices.

        Raises:
            InvalidSignature: Signature missing, wrong, or no secret configured.
            ValueError:       Verified body that is not the expected JSON shape.
        """
        try:
            self.provider.verify_signature(body, headers)
        except InvalidSignature as exc:
            logger.warning("%s webhook rejected: %s", self.name, exc.message)
            raise
        received_at = self._clock()
        notices = self.provider.parse_webhook(body, received_at)
        for notice in notices:
            notice.received_at = received_at
        logger.debug("%s webhook verified: %d notice(s)", self.name, len(notices))
        return notices

    # ------------------------------------------------------------------
    # Deferred part (on the worker pool)
    # ------------------------------------------------------------------

    async def resolve_user(self, notice: WebhookNotice) -> str:
        """Map the notice's provider user id to a local user.

        Raises:
            UnmappableUser: No connection matches.
        """
        if notice.provider_user_id:
            user_id = await self._store.find_user_by_provider_user_id(
                self.name, notice.provider_user_id
            )
            if user_id:
                return user_id

        if self._settings.webhook_single_connection_fallback:
            connections = await self._store.list_connections(self.name)
            if len(connections) == 1:
                user_id = connections[0].user_id
                if notice.provider_user_id:
                    await self._store.set_provider_user_id(
                        user_id, self.name, notice.provider_user_id
                    )
                logger.info(
                    "%s webhook mapped to the only connection (user %s)", self.name, user_id
                )
                return user_id

        raise UnmappableUser(
            f"no {self.name} connection for provider user {notice.provider_user_id!r}",
            provider=self.name,
        )

    async def record_event(self, user_id: str, notice: WebhookNotice) -> str:
        """Conditionally insert the event row and return its natural key.

        Raises:
            DuplicateEvent: The key was already recorded.
        """
        event_key = webhook_event_key(user_id, notice)
        inserted = await self._store.insert_webhook_event(
            WebhookEventRecord(
                provider=self.name,
                event_key=event_key,
                user_id=user_id,
                data_type=notice.data_type,
                event_type=notice.event_type,
                payload=notice.payload,
                object_id=notice.object_id,
                event_time=notice.event_time,
                provider_user_id=notice.provider_user_id,
            )
        )
        if not inserted:
            raise DuplicateEvent(event_key, provider=self.name)
        return event_key

    async def process(self, notice: WebhookNotice) -> WebhookResult:
        """Resolve, record and handle one notice.  Never raises for data errors."""
        try:
            user_id = await self.resolve_user(notice)
        except UnmappableUser as exc:
            logger.warning("%s webhook dropped: %s", self.name, exc.message)
            return WebhookResult(WebhookState.UNMAPPED)

        try:
            event_key = await self.record_event(user_id, notice)
        except DuplicateEvent as exc:
            logger.info("%s %s", self.name, exc.message)
            return WebhookResult(WebhookState.DUPLICATE, event_key=exc.event_key)

        try:
            result = await self._handle(user_id, notice, event_key)
        except Exception as exc:
            logger.exception("%s webhook event %s failed", self.name, event_key)
            error = f"{exc.__class__.__name__}: {exc}"[:_MAX_ERROR_LENGTH]
            await self._store.mark_webhook_event(
                self.name, event_key, processed=False, error=error
            )
            return WebhookResult(WebhookState.FAILED, event_key=event_key, error=error)

        await self._store.mark_webhook_event(self.name, event_key, processed=True)
        return result

    async def _handle(
        self, user_id: str, notice: WebhookNotice, event_key: str
    ) -> WebhookResult:
        if notice.kind == NoticeKind.DEREGISTER:
            removed = await self._store.delete_connection(user_id, self.name)
            logger.info(
                "%s deregistration for user %s (connection removed=%s)",
                self.name,
                user_id,
                removed,
            )
            return WebhookResult(WebhookState.PROCESSED, event_key=event_key)

        if notice.kind == NoticeKind.DELETE:
            if not notice.object_id:
                raise ValueError("delete notice has no object id")
            deleted = await self._documents.mark_deleted(
                user_id, notice.data_type, notice.object_id
            )
            logger.info(
                "%s/%s %s deleted (existed=%s)",
                self.name,
                notice.data_type,
                notice.object_id,
                deleted,
            )
            return WebhookResult(
                WebhookState.PROCESSED, event_key=event_key, documents=int(deleted)
            )

        fetched = await self.provider.fetch_notice_documents(self._client, user_id, notice)
        result = WebhookResult(WebhookState.PROCESSED, event_key=event_key)
        seen = InMemoryDedupCache()
        for document in fetched:
            if not document.payload:
                continue
            document_id = self.provider.document_id(
                document.data_type, document.payload, document.fallback_id
            )
            key = document_key(user_id, self.name, document.data_type, document_id)
            if seen.is_seen(key):
                continue
            seen.mark_seen(key)
            ingested = await self._documents.ingest(
                user_id,
                document.data_type,
                document.payload,
                fallback_id=document.fallback_id,
                provider_user_id=notice.provider_user_id,
                event_key=event_key,
            )
            result.documents += 1
            result.metrics_inserted += ingested.metrics_inserted

        logger.info(
            "%s webhook %s processed: %d document(s), %d new metric(s)",
            self.name,
            event_key,
            result.documents,
            result.metrics_inserted,
        )
        return result

    async def ingest(self, body: bytes, headers: Mapping[str, str]) -> list[WebhookResult]:
        """Verify and process a delivery inline (tests and replays)."""
        notices = self.verify(body, headers)
        return [await self.process(notice) for notice in notices]

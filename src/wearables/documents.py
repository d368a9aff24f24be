"""Document persistence, metric extraction and downstream fan-out.

Both ingestion paths (webhook and backfill) end here::

    raw payload -> provider_documents upsert
                -> extract_metrics (pure)
                -> insert_metric_if_new per metric
                -> one feed item per *new* metric
                -> one health_data_changed audit event per document
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.wearables.base import (
    MetricOrigin,
    MetricSample,
    ProviderDocument,
    WearableProvider,
)

if TYPE_CHECKING:
    from src.wearables.store import SyncStore

logger = logging.getLogger("wearsync.wearables.documents")

FEED_SOURCE_TABLE = "health_metrics"
AUDIT_EVENT_TYPE = "health_data_changed"


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""

    data_type: str
    document_id: str
    metrics_extracted: int = 0
    metrics_inserted: int = 0


class DocumentMetricStore:
    """Provider-bound facade over the SyncStore's document and metric tables."""

    def __init__(self, provider: WearableProvider, store: SyncStore) -> None:
        self.provider = provider
        self.name = provider.SOURCE_ID
        self._store = store

    async def persist_document(
        self,
        user_id: str,
        data_type: str,
        payload: dict,
        *,
        fallback_id: str | None = None,
        provider_user_id: str | None = None,
    ) -> str:
        """Upsert the raw payload and return its document id.

        Raises:
            ValueError: If no document id can be derived.
        """
        document_id = self.provider.document_id(data_type, payload, fallback_id)
        span = self.provider.document_span(data_type, payload)
        await self._store.upsert_document(
            ProviderDocument(
                user_id=user_id,
                provider=self.name,
                data_type=data_type,
                document_id=document_id,
                payload=payload,
                day=span.day,
                start_time=span.start_time,
                end_time=span.end_time,
                summary_value=self.provider.summary_value(data_type, payload),
                provider_user_id=provider_user_id,
            )
        )
        return document_id

    def extract_metrics(self, data_type: str, payload: dict) -> list[MetricSample]:
        return self.provider.extract_metrics(data_type, payload)

    async def insert_metric_if_new(
        self, user_id: str, sample: MetricSample, origin: MetricOrigin
    ) -> bool:
        """Conditionally insert one metric; fan out only when a row was created.

        Returns:
            True if a new metric row was inserted.
        """
        write = await self._store.insert_metric_if_new(user_id, sample, origin)
        if write.revised:
            logger.debug(
                "%s revised %s for document %s",
                self.name,
                sample.metric_type.value,
                origin.document_id,
            )
        if not write.inserted or write.metric_id is None:
            return False
        await self._store.enqueue_feed_item(
            user_id,
            FEED_SOURCE_TABLE,
            write.metric_id,
            sample.metric_type.value,
            {
                "metric_type": sample.metric_type.value,
                "value": sample.value,
                "unit": sample.unit,
                "start_time": sample.start_time.isoformat() if sample.start_time else None,
                "end_time": sample.end_time.isoformat() if sample.end_time else None,
                **origin.to_metadata(),
            },
        )
        return True

    async def ingest(
        self,
        user_id: str,
        data_type: str,
        payload: dict,
        *,
        fallback_id: str | None = None,
        provider_user_id: str | None = None,
        event_key: str | None = None,
    ) -> IngestResult:
        """Persist one document, extract its metrics, fan out, audit."""
        document_id = await self.persist_document(
            user_id,
            data_type,
            payload,
            fallback_id=fallback_id,
            provider_user_id=provider_user_id,
        )
        span = self.provider.document_span(data_type, payload)
        origin = MetricOrigin(
            provider=self.name,
            data_type=data_type,
            document_id=document_id,
            day=span.day,
            event_key=event_key,
        )
        result = IngestResult(data_type=data_type, document_id=document_id)
        for sample in self.extract_metrics(data_type, payload):
            result.metrics_extracted += 1
            if await self.insert_metric_if_new(user_id, sample, origin):
                result.metrics_inserted += 1

        await self._store.append_audit_event(
            user_id,
            AUDIT_EVENT_TYPE,
            {
                "provider": self.name,
                "data_type": data_type,
                "document_id": document_id,
                "metrics_inserted": result.metrics_inserted,
            },
        )
        logger.debug(
            "%s/%s %s: %d metric(s), %d new",
            self.name,
            data_type,
            document_id,
            result.metrics_extracted,
            result.metrics_inserted,
        )
        return result

    async def mark_deleted(self, user_id: str, data_type: str, document_id: str) -> bool:
        deleted = await self._store.mark_document_deleted(
            user_id, self.name, data_type, document_id
        )
        if deleted:
            await self._store.append_audit_event(
                user_id,
                AUDIT_EVENT_TYPE,
                {
                    "provider": self.name,
                    "data_type": data_type,
                    "document_id": document_id,
                    "deleted": True,
                },
            )
        return deleted

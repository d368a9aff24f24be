"""Historical sync for one provider.

Runs on initial connect, on a manual "sync now" and from the reconciliation
scheduler.  Every data type is fetched and persisted independently:

- a permanent failure on one endpoint (missing scope, 404, exhausted
  retries) is recorded for that data type and the others carry on;
- ``NotConnected`` and ``ReauthRequired`` abort the whole run, since no
  other data type can succeed either.

Usage::

    backfill = HistoricalSync(provider, client, oauth, documents)
    results = await backfill.sync_recent(user_id, days=7)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Callable, Iterable

from src.wearables.base import utc_now
from src.wearables.errors import NotConnected, ReauthRequired, WearableSyncError
from src.wearables.sync.dedup import InMemoryDedupCache, document_key

if TYPE_CHECKING:
    from src.wearables.base import WearableProvider
    from src.wearables.client import ProviderRequestClient, TokenSource
    from src.wearables.documents import DocumentMetricStore

logger = logging.getLogger("wearsync.wearables.sync.backfill")


def _today() -> date:
    return utc_now().date()


@dataclass
class DataTypeSyncResult:
    """Outcome of syncing one data type.

    Attributes:
        data_type:           Provider data type (Garmin: the pull endpoint).
        success:             False when the fetch or persistence failed.
        documents_processed: Documents persisted.
        metrics_inserted:    New metric rows.
        error:               Failure message.
    """

    data_type: str
    success: bool
    documents_processed: int = 0
    metrics_inserted: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        body = asdict(self)
        if body["error"] is None:
            del body["error"]
        return body


class HistoricalSync:
    """Date-ranged, paginated polling across a provider's data types.

    Args:
        provider:  Provider whose range endpoints are used.
        client:    The provider's request client.
        tokens:    Token source, checked once up front.
        documents: Document and metric store bound to the provider.
        today:     Returns the current UTC date (tests).
    """

    def __init__(
        self,
        provider: WearableProvider,
        client: ProviderRequestClient,
        tokens: TokenSource,
        documents: DocumentMetricStore,
        *,
        today: Callable[[], date] = _today,
    ) -> None:
        self.provider = provider
        self.name = provider.SOURCE_ID
        self._client = client
        self._tokens = tokens
        self._documents = documents
        self._today = today

    async def sync_range(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        data_types: Iterable[str] | None = None,
    ) -> list[DataTypeSyncResult]:
        """Fetch and persist every data type over [start_date, end_date].

        Raises:
            ValueError:     If start_date is after end_date.
            NotConnected:   The user has no connection.
            ReauthRequired: The stored credentials can no longer be refreshed.
        """
        if start_date > end_date:
            raise ValueError("start_date must not be after end_date")

        # Fails fast (and refreshes if needed) before any data type runs.
        await self._tokens.get_valid_access_token(user_id)

        types = list(data_types) if data_types else self.provider.default_data_types()
        if not types:
            logger.info("%s has nothing to pull for user %s", self.name, user_id)
            return []

        logger.info(
            "%s sync for user %s: %s..%s, %d data type(s)",
            self.name,
            user_id,
            start_date,
            end_date,
            len(types),
        )
        seen = InMemoryDedupCache()
        results = [
            await self._sync_data_type(user_id, data_type, start_date, end_date, seen)
            for data_type in types
        ]
        logger.info(
            "%s sync for user %s done: %d/%d data type(s) ok, %d new metric(s)",
            self.name,
            user_id,
            sum(1 for r in results if r.success),
            len(results),
            sum(r.metrics_inserted for r in results),
        )
        return results

    async def sync_recent(
        self,
        user_id: str,
        days: int | None = None,
        data_types: Iterable[str] | None = None,
    ) -> list[DataTypeSyncResult]:
        """Sync ``[today - days, today]``, clamping days to the provider window."""
        window = self.provider.settings.clamp_days(days)
        end_date = self._today()
        return await self.sync_range(
            user_id, end_date - timedelta(days=window), end_date, data_types
        )

    async def _sync_data_type(
        self,
        user_id: str,
        data_type: str,
        start_date: date,
        end_date: date,
        seen: InMemoryDedupCache,
    ) -> DataTypeSyncResult:
        result = DataTypeSyncResult(data_type=data_type, success=True)
        try:
            fetched = await self.provider.fetch_range(
                self._client, user_id, data_type, start_date, end_date
            )
            for document in fetched:
                if not document.payload:
                    continue
                document_id = self.provider.document_id(
                    document.data_type, document.payload, document.fallback_id
                )
                key = document_key(user_id, self.name, document.data_type, document_id)
                if seen.is_seen(key):
                    logger.debug("Skipping duplicate document: %s", key)
                    continue
                seen.mark_seen(key)
                ingested = await self._documents.ingest(
                    user_id,
                    document.data_type,
                    document.payload,
                    fallback_id=document.fallback_id,
                )
                result.documents_processed += 1
                result.metrics_inserted += ingested.metrics_inserted
        except (NotConnected, ReauthRequired):
            raise
        except (WearableSyncError, ValueError) as exc:
            logger.warning(
                "%s sync of %s failed for user %s: %s", self.name, data_type, user_id, exc
            )
            result.success = False
            result.error = str(exc)
        return result

"""Wiring of the per-provider runtimes.

``SyncEngine`` builds one ``ProviderRuntime`` per provider from settings:
the provider, its request client (rate budget and queue), its OAuth flow
manager, its document store facade, its webhook pipeline and its historical
sync.  Credentials live only in the store; runtimes hold no tokens.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Mapping

from src.wearables.base import utc_now
from src.wearables.client import ProviderRequestClient
from src.wearables.documents import DocumentMetricStore
from src.wearables.errors import WearableSyncError
from src.wearables.oauth import OAuthFlowManager
from src.wearables.providers import PROVIDER_REGISTRY, get_provider
from src.wearables.providers.oura import OuraProvider
from src.wearables.sync.backfill import HistoricalSync
from src.wearables.webhooks import WebhookIngestionPipeline

if TYPE_CHECKING:
    import httpx

    from src.config import Settings
    from src.wearables.base import ProviderConnection, WearableProvider
    from src.wearables.store import SyncStore

logger = logging.getLogger("wearsync.wearables.engine")


@dataclass
class ProviderRuntime:
    """Everything one provider needs at runtime."""

    provider: WearableProvider
    client: ProviderRequestClient
    oauth: OAuthFlowManager
    documents: DocumentMetricStore
    webhooks: WebhookIngestionPipeline
    backfill: HistoricalSync

    @property
    def name(self) -> str:
        return self.provider.SOURCE_ID

    @property
    def configured(self) -> bool:
        return self.provider.settings.is_configured


def connection_summary(connection: ProviderConnection) -> dict:
    return {
        "provider": connection.provider,
        "provider_user_id": connection.provider_user_id,
        "scope": list(connection.scope),
        "expires_at": connection.expires_at,
        "connected_at": connection.connected_at,
        "updated_at": connection.updated_at,
    }


class SyncEngine:
    """The four provider runtimes over one store and one HTTP client.

    Args:
        settings:  Global settings.
        store:     Persistence backend.
        http:      Shared httpx.AsyncClient.
        providers: Pre-built providers by slug (tests); default builds all
                   registered providers from settings.
        sleep:     Backoff sleep handed to every request client (tests).
        clock:     "Now" for OAuth and webhook receipt times (tests).
    """

    def __init__(
        self,
        settings: Settings,
        store: SyncStore,
        http: httpx.AsyncClient,
        providers: Mapping[str, WearableProvider] | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self._http = http
        self._sleep = sleep
        self._clock = clock
        if providers is None:
            providers = {name: get_provider(name, settings) for name in PROVIDER_REGISTRY}
        self._runtimes = {name: self._build(provider) for name, provider in providers.items()}

    def _build(self, provider: WearableProvider) -> ProviderRuntime:
        client = ProviderRequestClient(provider, self.settings, self._http, sleep=self._sleep)
        oauth = OAuthFlowManager(
            provider, self.settings, self.store, self._http, client, clock=self._clock
        )
        client.bind_tokens(oauth)
        documents = DocumentMetricStore(provider, self.store)
        return ProviderRuntime(
            provider=provider,
            client=client,
            oauth=oauth,
            documents=documents,
            webhooks=WebhookIngestionPipeline(
                provider, self.settings, self.store, client, documents, clock=self._clock
            ),
            backfill=HistoricalSync(provider, client, oauth, documents),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return list(self._runtimes)

    def runtime(self, name: str) -> ProviderRuntime:
        """Return the runtime for a provider slug.

        Raises:
            KeyError: Unknown provider.
        """
        if name not in self._runtimes:
            raise KeyError(f"Unknown provider '{name}'. Available: {self.names}")
        return self._runtimes[name]

    def configured_runtimes(self) -> list[ProviderRuntime]:
        return [runtime for runtime in self._runtimes.values() if runtime.configured]

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def list_connections(self, user_id: str) -> list[dict]:
        connections = await self.store.list_user_connections(user_id)
        return [
            {**connection_summary(c), "display_name": self.runtime(c.provider).provider.DISPLAY_NAME}
            for c in connections
            if c.provider in self._runtimes
        ]

    async def status(self, user_id: str, name: str) -> dict:
        """Connection status plus configuration flags for one provider."""
        runtime = self.runtime(name)
        connection = await self.store.get_connection(user_id, name)
        body: dict = {
            "provider": name,
            "display_name": runtime.provider.DISPLAY_NAME,
            "configured": runtime.configured,
            "connected": connection is not None,
            "webhook_configured": bool(runtime.provider.signing_secret),
            "pull_configured": bool(runtime.provider.default_data_types()),
            "token_expired": (
                connection.expires_within(0, self._clock()) if connection else None
            ),
        }
        if connection is not None:
            body.update(connection_summary(connection))
        return body

    async def disconnect(self, user_id: str, name: str) -> bool:
        return await self.runtime(name).oauth.disconnect(user_id)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def ensure_webhook_subscriptions(self) -> dict:
        """Register the app-level Oura subscriptions, when Oura is configured."""
        runtime = self._runtimes.get("oura")
        if runtime is None or not runtime.configured:
            return {"enabled": False, "reason": "Oura is not configured"}
        provider = runtime.provider
        if not isinstance(provider, OuraProvider):
            return {"enabled": False, "reason": "Oura provider unavailable"}
        try:
            return await provider.ensure_webhook_subscriptions(runtime.client, self.store)
        except WearableSyncError as exc:
            logger.warning("Oura webhook subscription setup failed: %s", exc)
            return {"enabled": False, "reason": str(exc)}

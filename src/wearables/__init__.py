"""Wearsync wearable sync engine.

This package connects users' Oura, WHOOP, Garmin and Fitbit accounts,
receives and verifies provider webhooks, polls provider APIs within their
rate budgets, and stores raw documents plus canonical health metrics
exactly once.

Subpackages:
    providers/ — One WearableProvider per vendor (OAuth quirks, signatures, extractors)
    store/     — SyncStore ABC with Postgres (asyncpg) and in-memory backends
    sync/      — Historical backfill, reconciliation scheduler, dedup keys

Core modules:
    base          — WearableProvider ABC and canonical data models
    client        — Rate-limited, serialized provider HTTP client with retries
    oauth         — OAuth state tokens, PKCE, code exchange and token refresh
    webhooks      — Verify-then-ack webhook ingestion pipeline
    documents     — Document persistence, metric dedup and fan-out
    engine        — Per-provider runtime wiring
    config_loader — Load/validate/hot-reload providers.yaml
"""

from src.wearables.base import (
    MetricSample,
    MetricType,
    OAuthTokens,
    ProviderConnection,
    WearableProvider,
    WebhookNotice,
)
from src.wearables.config_loader import ProviderCatalog, get_provider_catalog

__all__ = [
    "WearableProvider",
    "MetricType",
    "MetricSample",
    "OAuthTokens",
    "ProviderConnection",
    "WebhookNotice",
    "ProviderCatalog",
    "get_provider_catalog",
]

"""Wearable providers for Wearsync.

Each provider implements the WearableProvider ABC and knows:
- its OAuth quirks (PKCE, client auth style, provider user id lookup)
- its webhook signature scheme and notification shape
- how to page its range endpoints
- how to turn its documents into canonical metrics

Available providers:
    OuraProvider   — Oura API v2
    WhoopProvider  — WHOOP Developer API v2
    GarminProvider — Garmin Health API (push, ping and pull)
    FitbitProvider — Fitbit Web API
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.wearables.base import WearableProvider
from src.wearables.providers.fitbit import FitbitProvider
from src.wearables.providers.garmin import GarminProvider
from src.wearables.providers.oura import OuraProvider
from src.wearables.providers.whoop import WhoopProvider

if TYPE_CHECKING:
    from src.config import Settings

__all__ = [
    "OuraProvider",
    "WhoopProvider",
    "GarminProvider",
    "FitbitProvider",
    "PROVIDER_REGISTRY",
    "get_provider",
]

# Registry: source_id → provider class
PROVIDER_REGISTRY: dict[str, type[WearableProvider]] = {
    "oura": OuraProvider,
    "whoop": WhoopProvider,
    "garmin": GarminProvider,
    "fitbit": FitbitProvider,
}


def get_provider(name: str, settings: Settings) -> WearableProvider:
    """Build the provider for a slug, configured from ``settings``.

    Args:
        name:     e.g. 'oura', 'whoop', 'garmin', 'fitbit'
        settings: Global settings; merged with the provider catalog.

    Returns:
        A provider instance.

    Raises:
        KeyError: If the name is not registered.
    """
    if name not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No provider registered for '{name}'. Available: {list(PROVIDER_REGISTRY)}"
        )
    return PROVIDER_REGISTRY[name](settings.provider(name))

"""Load and validate the provider catalog.

The catalog lives in ``providers.yaml`` alongside this module and holds the
static facts about each provider: endpoints, scopes, client authentication
style, page-size cap, backfill window and default rate budget.  It is loaded
once and cached.  Call ``reload_provider_catalog()`` to re-read from disk.

Usage::

    from src.wearables.config_loader import get_provider_catalog

    catalog = get_provider_catalog()
    oura = catalog.provider("oura")
    oura.rate_limit.max_requests   # 4800
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("wearsync.wearables.config")

# Path to the YAML file sitting next to this module
_CATALOG_PATH = Path(__file__).parent / "providers.yaml"

_CLIENT_AUTH_STYLES = ("body", "basic")


# ---------------------------------------------------------------------------
# Typed catalog sections
# ---------------------------------------------------------------------------


@dataclass
class RateLimitConfig:
    """Sliding-window request budget."""

    window_seconds: float
    max_requests: int


@dataclass
class BackfillWindow:
    """How far back a historical sync may reach, in days."""

    default_days: int
    max_days: int


@dataclass
class WebhookCatalog:
    """App-level webhook subscription defaults (Oura)."""

    data_types: list[str] = field(default_factory=list)
    event_types: list[str] = field(default_factory=list)


@dataclass
class ProviderCatalogEntry:
    """Static facts about one provider."""

    name: str
    display_name: str
    authorize_url: str
    token_url: str
    api_base_url: str
    scopes: list[str]
    client_auth: str  # body | basic
    pkce: bool
    single_use_refresh_tokens: bool
    max_page_size: int | None
    rate_limit: RateLimitConfig
    backfill: BackfillWindow
    default_data_types: list[str]
    webhook: WebhookCatalog


@dataclass
class ProviderCatalog:
    """Complete, validated provider catalog."""

    version: str
    providers: dict[str, ProviderCatalogEntry]
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, name: str) -> ProviderCatalogEntry:
        """Return one provider's entry.

        Raises:
            KeyError: If the provider is not in the catalog.
        """
        if name not in self.providers:
            raise KeyError(
                f"Provider '{name}' is not in the catalog. "
                f"Available: {sorted(self.providers)}"
            )
        return self.providers[name]

    @property
    def names(self) -> list[str]:
        return list(self.providers)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when providers.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Provider catalog not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> ProviderCatalog:
    """Validate the raw YAML dict and construct a ProviderCatalog.

    Collects every problem before failing so one run reports them all.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _require(d: dict, key: str, section: str) -> Any:
        if key not in d or d[key] in (None, ""):
            errors.append(f"Missing required key '{key}' in section '{section}'")
            return None
        return d[key]

    def _positive_int(value: Any, where: str, default: int) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{where} must be an integer, got {value!r}")
            return default
        if number < 1:
            errors.append(f"{where} must be >= 1, got {number}")
        return number

    version = str(raw.get("version", "1.0"))
    providers_raw = raw.get("providers") or {}
    if not isinstance(providers_raw, dict) or not providers_raw:
        errors.append("'providers' section is missing or empty")
        providers_raw = {}

    providers: dict[str, ProviderCatalogEntry] = {}
    for name, cfg in providers_raw.items():
        section = f"providers.{name}"
        if not isinstance(cfg, dict):
            errors.append(f"{section} must be a mapping")
            continue

        client_auth = cfg.get("client_auth", "body")
        if client_auth not in _CLIENT_AUTH_STYLES:
            errors.append(
                f"{section}.client_auth must be one of {_CLIENT_AUTH_STYLES}, got {client_auth!r}"
            )

        max_page_size = cfg.get("max_page_size")
        if max_page_size is not None:
            max_page_size = _positive_int(max_page_size, f"{section}.max_page_size", 1)

        rl_raw = cfg.get("rate_limit") or {}
        try:
            window_seconds = float(rl_raw.get("window_seconds", 300))
        except (TypeError, ValueError):
            errors.append(f"{section}.rate_limit.window_seconds must be a number")
            window_seconds = 300.0
        if window_seconds <= 0:
            errors.append(f"{section}.rate_limit.window_seconds must be > 0")
        rate_limit = RateLimitConfig(
            window_seconds=window_seconds,
            max_requests=_positive_int(
                rl_raw.get("max_requests", 100), f"{section}.rate_limit.max_requests", 100
            ),
        )

        bf_raw = cfg.get("backfill") or {}
        backfill = BackfillWindow(
            default_days=_positive_int(
                bf_raw.get("default_days", 7), f"{section}.backfill.default_days", 7
            ),
            max_days=_positive_int(
                bf_raw.get("max_days", 30), f"{section}.backfill.max_days", 30
            ),
        )
        if backfill.default_days > backfill.max_days:
            errors.append(f"{section}.backfill.default_days exceeds max_days")

        wh_raw = cfg.get("webhook") or {}
        providers[name] = ProviderCatalogEntry(
            name=name,
            display_name=cfg.get("display_name", name.title()),
            authorize_url=_require(cfg, "authorize_url", section) or "",
            token_url=_require(cfg, "token_url", section) or "",
            api_base_url=(_require(cfg, "api_base_url", section) or "").rstrip("/"),
            scopes=[str(s) for s in cfg.get("scopes") or []],
            client_auth=client_auth,
            pkce=bool(cfg.get("pkce", False)),
            single_use_refresh_tokens=bool(cfg.get("single_use_refresh_tokens", False)),
            max_page_size=max_page_size,
            rate_limit=rate_limit,
            backfill=backfill,
            default_data_types=[str(t) for t in cfg.get("default_data_types") or []],
            webhook=WebhookCatalog(
                data_types=[str(t) for t in wh_raw.get("data_types") or []],
                event_types=[str(t) for t in wh_raw.get("event_types") or []],
            ),
        )

    if errors:
        raise ConfigValidationError(
            f"providers.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ProviderCatalog(version=version, providers=providers, _raw=raw)


def load_provider_catalog(path: Path | None = None) -> ProviderCatalog:
    """Load and validate the provider catalog from disk.

    Args:
        path: Override path to YAML. Uses the bundled providers.yaml by default.
    """
    target = path or _CATALOG_PATH
    raw = _load_yaml(target)
    catalog = _validate_and_build(raw)
    logger.info("Loaded provider catalog v%s from %s", catalog.version, target)
    return catalog


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

_catalog: ProviderCatalog | None = None
_catalog_lock = threading.Lock()


def get_provider_catalog() -> ProviderCatalog:
    """Return the global ProviderCatalog, loading it on first call.  Thread-safe."""
    global _catalog
    if _catalog is None:
        with _catalog_lock:
            if _catalog is None:  # double-checked locking
                _catalog = load_provider_catalog()
    return _catalog


def reload_provider_catalog(path: Path | None = None) -> ProviderCatalog:
    """Reload the catalog from disk and replace the global singleton.

    If validation fails, the old catalog is retained and the error re-raised.

    Raises:
        ConfigValidationError: If the new catalog is invalid.
        FileNotFoundError:     If the catalog file is missing.
    """
    global _catalog
    new_catalog = load_provider_catalog(path)  # validate before acquiring lock
    with _catalog_lock:
        old_version = _catalog.version if _catalog else "none"
        _catalog = new_catalog
    logger.info("Reloaded provider catalog: %s → %s", old_version, new_catalog.version)
    return new_catalog

"""Application configuration loaded from environment variables."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from pydantic_settings import BaseSettings

from src.wearables.config_loader import ProviderCatalog, get_provider_catalog


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class ProviderSettings:
    """Everything one provider runtime needs: catalog facts merged with env values.

    Built by ``Settings.provider()``; never read from the environment directly.
    """

    name: str
    display_name: str
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    api_base_url: str
    scopes: list[str]
    client_auth: str
    pkce: bool
    single_use_refresh_tokens: bool
    max_page_size: int | None
    rate_limit_window_seconds: float
    rate_limit_max_requests: int
    backfill_default_days: int
    backfill_max_days: int
    default_data_types: list[str]
    # --- Webhooks ---
    webhook_secret: str = ""
    webhook_signature_header: str = ""
    webhook_url: str = ""
    webhook_verification_token: str = ""
    webhook_data_types: list[str] = field(default_factory=list)
    webhook_event_types: list[str] = field(default_factory=list)
    # --- Provider specific ---
    pull_endpoints: list[str] = field(default_factory=list)
    subscriber_id: str = ""
    notification_coalesce_seconds: int = 300

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def clamp_days(self, days: int | None) -> int:
        if days is None:
            return self.backfill_default_days
        return max(1, min(int(days), self.backfill_max_days))


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Wearsync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = ""  # empty = in-memory store (development / tests)

    # --- Auth ---
    auth_jwt_secret: str = ""  # HS256 secret of the host application's bearer tokens
    state_secret: str = ""  # signs OAuth state tokens
    state_ttl_seconds: int = 900
    frontend_url: str = ""  # OAuth callbacks redirect here when set

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    # --- Outbound HTTP ---
    http_timeout_seconds: float = 20.0
    retry_max_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_max_jitter_seconds: float = 0.5
    retry_max_wait_seconds: float = 300.0  # longer Retry-After fails fast
    token_refresh_skew_seconds: int = 60

    # --- Webhook processing ---
    webhook_workers: int = 4
    webhook_queue_size: int = 1000
    webhook_single_connection_fallback: bool = False

    # --- Reconciliation ---
    reconciliation_enabled: bool = True
    reconciliation_interval_seconds: int = 900
    reconciliation_lookback_days: int = 2
    reconciliation_concurrency: int = 3

    # --- Oura ---
    oura_client_id: str = ""
    oura_client_secret: str = ""
    oura_redirect_uri: str = ""
    oura_rate_limit_max: int | None = None
    oura_rate_limit_window_seconds: float | None = None
    oura_webhook_url: str = ""
    oura_webhook_verification_token: str = ""
    oura_webhook_data_types: str = ""  # comma-separated; catalog default when empty
    oura_webhook_event_types: str = ""

    # --- WHOOP ---
    whoop_client_id: str = ""
    whoop_client_secret: str = ""
    whoop_redirect_uri: str = ""
    whoop_rate_limit_max: int | None = None
    whoop_rate_limit_window_seconds: float | None = None

    # --- Garmin ---
    garmin_client_id: str = ""
    garmin_client_secret: str = ""
    garmin_redirect_uri: str = ""
    garmin_rate_limit_max: int | None = None
    garmin_rate_limit_window_seconds: float | None = None
    garmin_auth_url: str = ""
    garmin_token_url: str = ""
    garmin_api_base_url: str = ""
    garmin_scopes: str = ""
    garmin_webhook_secret: str = ""
    garmin_webhook_signature_header: str = "x-garmin-signature"
    garmin_pull_endpoints: str = ""  # comma-separated API paths

    # --- Fitbit ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = ""
    fitbit_rate_limit_max: int | None = None
    fitbit_rate_limit_window_seconds: float | None = None
    fitbit_subscriber_verification_code: str = ""
    fitbit_subscriber_id: str = ""
    fitbit_notification_coalesce_seconds: int = 300

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def provider(
        self, name: str, catalog: ProviderCatalog | None = None
    ) -> ProviderSettings:
        """Merge the catalog entry for ``name`` with its environment values.

        Raises:
            KeyError: If the provider is not in the catalog.
        """
        entry = (catalog or get_provider_catalog()).provider(name)

        def env(key: str, default=None):
            return getattr(self, f"{name}_{key}", default)

        scopes = entry.scopes
        if env("scopes"):
            scopes = env("scopes").replace(",", " ").split()

        webhook_data_types = _split_csv(env("webhook_data_types", "") or "")
        webhook_event_types = _split_csv(env("webhook_event_types", "") or "")

        return ProviderSettings(
            name=name,
            display_name=entry.display_name,
            client_id=env("client_id", "") or "",
            client_secret=env("client_secret", "") or "",
            redirect_uri=env("redirect_uri", "") or "",
            authorize_url=env("auth_url") or entry.authorize_url,
            token_url=env("token_url") or entry.token_url,
            api_base_url=(env("api_base_url") or entry.api_base_url).rstrip("/"),
            scopes=scopes,
            client_auth=entry.client_auth,
            pkce=entry.pkce,
            single_use_refresh_tokens=entry.single_use_refresh_tokens,
            max_page_size=entry.max_page_size,
            rate_limit_window_seconds=(
                env("rate_limit_window_seconds") or entry.rate_limit.window_seconds
            ),
            rate_limit_max_requests=env("rate_limit_max") or entry.rate_limit.max_requests,
            backfill_default_days=entry.backfill.default_days,
            backfill_max_days=entry.backfill.max_days,
            default_data_types=entry.default_data_types,
            webhook_secret=env("webhook_secret", "") or "",
            webhook_signature_header=(env("webhook_signature_header", "") or "").lower(),
            webhook_url=env("webhook_url", "") or "",
            webhook_verification_token=(
                env("webhook_verification_token", "")
                or env("subscriber_verification_code", "")
                or ""
            ),
            webhook_data_types=webhook_data_types or entry.webhook.data_types,
            webhook_event_types=webhook_event_types or entry.webhook.event_types,
            pull_endpoints=_split_csv(env("pull_endpoints", "") or ""),
            subscriber_id=env("subscriber_id", "") or "",
            notification_coalesce_seconds=env("notification_coalesce_seconds", 300) or 300,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()

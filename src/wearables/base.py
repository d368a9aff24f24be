"""Base classes and canonical data models for the Wearsync sync engine.

Every provider subclasses WearableProvider and turns its own payloads into the
canonical MetricSample / ProviderDocument / WebhookNotice models below.  These
types are the single source of truth consumed by the document store, webhook
pipeline, backfill and API layer.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping

if TYPE_CHECKING:
    from src.config import ProviderSettings
    from src.wearables.client import ProviderRequestClient

logger = logging.getLogger("wearsync.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / connections
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token set returned after a code exchange or refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Token used to obtain a new access_token.  None when the
                       provider did not send one (the stored one is kept).
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
        extra:         Any additional fields returned by the provider (e.g. user_id).
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_token_response(cls, data: Mapping[str, Any], now: datetime) -> OAuthTokens:
        """Build tokens from a provider's token endpoint JSON.

        Raises:
            KeyError: If the response carries no access_token.
        """
        expires_in = safe_float(data.get("expires_in"))
        expires_at = now + timedelta(seconds=expires_in) if expires_in is not None else None
        raw_scope = data.get("scope") or ""
        scope = raw_scope.split() if isinstance(raw_scope, str) else list(raw_scope)
        known = {"access_token", "refresh_token", "expires_in", "token_type", "scope"}
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
            scope=scope,
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class ProviderConnection:
    """One stored OAuth connection, unique per (user_id, provider)."""

    user_id: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    provider_user_id: str | None = None
    scope: list[str] = field(default_factory=list)
    connected_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """Return True if the access token expires within ``seconds``.

        A connection without a known expiry is treated as valid.
        """
        if self.expires_at is None:
            return False
        now = now or utc_now()
        return (self.expires_at - now).total_seconds() < seconds


# ---------------------------------------------------------------------------
# Canonical metric vocabulary
# ---------------------------------------------------------------------------


class MetricType(str, Enum):
    STEPS = "steps"
    ACTIVE_CALORIES = "active_calories"
    TOTAL_CALORIES = "total_calories"
    CALORIES = "calories"
    DISTANCE = "distance"
    SLEEP = "sleep"
    SLEEP_SCORE = "sleep_score"
    SLEEP_EFFICIENCY = "sleep_efficiency"
    READINESS_SCORE = "readiness_score"
    RECOVERY_SCORE = "recovery_score"
    HEART_RATE = "heart_rate"
    RESTING_HEART_RATE = "resting_heart_rate"
    MAX_HEART_RATE = "max_heart_rate"
    HEART_RATE_VARIABILITY = "heart_rate_variability"
    RESPIRATORY_RATE = "respiratory_rate"
    SPO2 = "spo2"
    SKIN_TEMPERATURE = "skin_temperature"
    WORKOUT = "workout"
    SESSION = "session"
    STRAIN = "strain"
    STRESS_SCORE = "stress_score"
    STRESS_HIGH_SECONDS = "stress_high_seconds"
    RECOVERY_HIGH_SECONDS = "recovery_high_seconds"
    BODY_BATTERY = "body_battery"
    VASCULAR_AGE = "vascular_age"
    VO2_MAX = "vo2_max"
    WEIGHT = "weight"
    HEIGHT = "height"
    BMI = "bmi"
    BODY_FAT = "body_fat"
    FLOORS = "floors"
    VERY_ACTIVE_MINUTES = "very_active_minutes"
    FAIRLY_ACTIVE_MINUTES = "fairly_active_minutes"
    ACTIVE_ZONE_MINUTES = "active_zone_minutes"


#: One canonical unit per metric type, whatever the provider reports.
METRIC_UNITS: dict[MetricType, str] = {
    MetricType.STEPS: "count",
    MetricType.ACTIVE_CALORIES: "kcal",
    MetricType.TOTAL_CALORIES: "kcal",
    MetricType.CALORIES: "kcal",
    MetricType.DISTANCE: "m",
    MetricType.SLEEP: "hours",
    MetricType.SLEEP_SCORE: "score",
    MetricType.SLEEP_EFFICIENCY: "%",
    MetricType.READINESS_SCORE: "score",
    MetricType.RECOVERY_SCORE: "score",
    MetricType.HEART_RATE: "bpm",
    MetricType.RESTING_HEART_RATE: "bpm",
    MetricType.MAX_HEART_RATE: "bpm",
    MetricType.HEART_RATE_VARIABILITY: "ms",
    MetricType.RESPIRATORY_RATE: "brpm",
    MetricType.SPO2: "%",
    MetricType.SKIN_TEMPERATURE: "celsius",
    MetricType.WORKOUT: "minutes",
    MetricType.SESSION: "minutes",
    MetricType.STRAIN: "score",
    MetricType.STRESS_SCORE: "score",
    MetricType.STRESS_HIGH_SECONDS: "seconds",
    MetricType.RECOVERY_HIGH_SECONDS: "seconds",
    MetricType.BODY_BATTERY: "score",
    MetricType.VASCULAR_AGE: "years",
    MetricType.VO2_MAX: "ml/kg/min",
    MetricType.WEIGHT: "kg",
    MetricType.HEIGHT: "m",
    MetricType.BMI: "kg/m2",
    MetricType.BODY_FAT: "%",
    MetricType.FLOORS: "count",
    MetricType.VERY_ACTIVE_MINUTES: "minutes",
    MetricType.FAIRLY_ACTIVE_MINUTES: "minutes",
    MetricType.ACTIVE_ZONE_MINUTES: "minutes",
}


@dataclass(frozen=True)
class MetricSample:
    """One normalized measurement extracted from a document.

    Attributes:
        metric_type: Canonical metric type.
        value:       Numeric value in the canonical unit.
        start_time:  UTC start of the measured span.
        end_time:    UTC end of the measured span.
    """

    metric_type: MetricType
    value: float
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def unit(self) -> str:
        return METRIC_UNITS[self.metric_type]


@dataclass(frozen=True)
class MetricOrigin:
    """Provider-tagged provenance of a metric.

    Kept typed through extraction; flattened to the JSON metadata column only
    when the metric row is written.
    """

    provider: str
    data_type: str
    document_id: str
    day: date | None = None
    event_key: str | None = None

    def to_metadata(self) -> dict:
        metadata = {
            "provider": self.provider,
            "data_type": self.data_type,
            "document_id": self.document_id,
        }
        if self.day is not None:
            metadata["day"] = self.day.isoformat()
        if self.event_key:
            metadata["event_key"] = self.event_key
        return metadata


# ---------------------------------------------------------------------------
# Documents, events, fan-out rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentSpan:
    """Day and time span of a provider document."""

    day: date | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    def metric_bounds(self) -> tuple[datetime | None, datetime | None]:
        """Start/end for metrics: explicit timestamps, else the day's bounds."""
        day_start, day_end = day_bounds(self.day) if self.day else (None, None)
        return self.start_time or day_start, self.end_time or day_end


@dataclass
class ProviderDocument:
    """Canonical cache of one provider resource, unique per
    (user_id, provider, data_type, document_id)."""

    user_id: str
    provider: str
    data_type: str
    document_id: str
    payload: dict
    day: date | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    summary_value: float | None = None
    provider_user_id: str | None = None
    updated_at: datetime = field(default_factory=utc_now)
    deleted_at: datetime | None = None


@dataclass
class FetchedDocument:
    """A raw resource ready for persistence.

    Attributes:
        data_type:   Provider data type the payload belongs to.
        payload:     Raw resource JSON.
        fallback_id: Document id to use when the payload carries none.
    """

    data_type: str
    payload: dict
    fallback_id: str | None = None


class NoticeKind(str, Enum):
    DATA = "data"
    DELETE = "delete"
    DEREGISTER = "deregister"


@dataclass
class WebhookNotice:
    """One verified, parsed webhook notification awaiting processing.

    Attributes:
        provider:         Provider slug.
        provider_user_id: Provider-side user id used to find the local user.
        data_type:        Provider data type.
        event_type:       Provider event type ('create', 'update', 'delete', ...).
        object_id:        Resource id (thin pointers) or day.
        event_time:       Provider event time, or the coalescing bucket.
        event_id:         Provider-supplied unique event id, when there is one.
        kind:             Data, delete or deregister.
        payload:          The notification JSON as delivered.
        documents:        Documents embedded in the notification (push style).
        callback_url:     Absolute URL to pull the data from (ping style).
        received_at:      When the delivery reached the webhook endpoint.
    """

    provider: str
    provider_user_id: str | None
    data_type: str
    event_type: str
    object_id: str | None = None
    event_time: datetime | None = None
    event_id: str | None = None
    kind: NoticeKind = NoticeKind.DATA
    payload: dict = field(default_factory=dict)
    documents: list[FetchedDocument] = field(default_factory=list)
    callback_url: str | None = None
    received_at: datetime = field(default_factory=utc_now)


@dataclass
class WebhookEventRecord:
    """Stored webhook event, unique per (provider, event_key)."""

    provider: str
    event_key: str
    user_id: str
    data_type: str
    event_type: str
    payload: dict
    object_id: str | None = None
    event_time: datetime | None = None
    provider_user_id: str | None = None
    processed: bool = False
    error: str | None = None
    received_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None


@dataclass
class FeedItem:
    """Outbox row: one per newly inserted metric."""

    id: int
    user_id: str
    source_table: str
    source_id: int
    data_type: str
    data: dict
    processed: bool = False
    created_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None


@dataclass
class AuditEvent:
    """Audit row: one per processed document."""

    id: int
    user_id: str
    event_type: str
    payload: dict
    delivered: bool = False
    created_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def safe_float(value: object) -> float | None:
    """Coerce a value to a finite float, returning None when it is not numeric.

    Booleans are not numbers here.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def first_number(payload: Mapping[str, Any], *keys: str) -> float | None:
    """Return the first key whose value is numeric.  A real 0 counts."""
    for key in keys:
        number = safe_float(payload.get(key))
        if number is not None:
            return number
    return None


def dig(payload: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None on the first missing step."""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


def parse_timestamp(value: object) -> datetime | None:
    """Parse ISO-8601 strings or epoch seconds to an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_day(value: object) -> date | None:
    """Parse a YYYY-MM-DD day, or the date part of a timestamp."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return (00:00:00.000Z, 23:59:59.999Z) for a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=timezone.utc)
    return start, end


def minutes_between(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None or end < start:
        return None
    return (end - start).total_seconds() / 60


class MetricCollector:
    """Accumulate MetricSamples for one document, skipping missing values."""

    def __init__(self, span: DocumentSpan) -> None:
        self.start_time, self.end_time = span.metric_bounds()
        self.samples: list[MetricSample] = []

    def add(self, metric_type: MetricType, value: object, *, scale: float = 1.0) -> None:
        number = safe_float(value)
        if number is None:
            return
        self.samples.append(
            MetricSample(
                metric_type=metric_type,
                value=round(number * scale, 4),
                start_time=self.start_time,
                end_time=self.end_time,
            )
        )


# ---------------------------------------------------------------------------
# Pagination description
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pagination:
    """How a provider pages a collection endpoint.

    Attributes:
        items_key:     Response key holding the page's records.
        cursor_param:  Query parameter carrying the continuation token.
        cursor_fields: Response keys that may hold the next token.
        limit_param:   Query parameter for page size, if the provider has one.
    """

    items_key: str
    cursor_param: str
    cursor_fields: tuple[str, ...]
    limit_param: str | None = None


Extractor = Callable[[dict, DocumentSpan], list[MetricSample]]


# ---------------------------------------------------------------------------
# Abstract base provider
# ---------------------------------------------------------------------------


class WearableProvider(ABC):
    """Abstract base class for the four wearable providers.

    A provider is pure knowledge about one third party: how to sign, parse,
    page, identify and extract its payloads.  It holds no tokens; all I/O goes
    through the ProviderRequestClient handed to it.

    Subclasses must implement:
        - verify_signature()
        - parse_webhook()
        - fetch_range()
        - document_span()

    Subclasses declare:
        - DATA_TYPES:      the provider's data type enum
        - EXTRACTORS:      data type -> metric extractor, one per DATA_TYPES member
        - SUMMARY_FIELDS:  payload keys tried, in order, for the summary value
    """

    #: Unique slug used in URLs, tables and logs (e.g. 'oura').
    SOURCE_ID: ClassVar[str] = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: ClassVar[str] = "Unknown Provider"

    DATA_TYPES: ClassVar[type[Enum]]
    EXTRACTORS: ClassVar[dict[Any, Extractor]] = {}
    SUMMARY_FIELDS: ClassVar[tuple[str, ...]] = ()
    ID_FIELDS: ClassVar[tuple[str, ...]] = ("id",)

    #: HTTP status for a failed signature check (provider contract).
    SIGNATURE_FAILURE_STATUS: ClassVar[int] = 401
    #: HTTP status used to acknowledge a verified delivery.
    WEBHOOK_ACK_STATUS: ClassVar[int] = 202
    #: Response headers that carry a server-requested wait, in seconds.
    RETRY_AFTER_HEADERS: ClassVar[tuple[str, ...]] = ("retry-after",)
    PAGINATION: ClassVar[Pagination | None] = None

    def __init__(self, settings: ProviderSettings) -> None:
        self.settings = settings

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(source_id={self.SOURCE_ID!r})"

    # ------------------------------------------------------------------
    # OAuth hooks
    # ------------------------------------------------------------------

    def authorization_params(self) -> dict[str, str]:
        """Extra query parameters for the authorize URL."""
        return {}

    async def fetch_provider_user_id(
        self, client: ProviderRequestClient, tokens: OAuthTokens
    ) -> str | None:
        """Resolve the provider-side user id right after a code exchange.

        Default: the ``user_id`` field of the token response, if any.
        """
        value = tokens.extra.get("user_id")
        return str(value) if value is not None else None

    async def on_connected(
        self, client: ProviderRequestClient, connection: ProviderConnection
    ) -> None:
        """Post-connect hook (e.g. webhook subscription).  Default: nothing."""

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @property
    def signing_secret(self) -> str:
        """Key the provider signs webhook deliveries with."""
        return self.settings.client_secret

    @abstractmethod
    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        """Check the delivery signature in constant time.

        Raises:
            InvalidSignature: If the signature is missing, malformed or wrong,
                              or no signing secret is configured.
        """

    @abstractmethod
    def parse_webhook(self, body: bytes, received_at: datetime) -> list[WebhookNotice]:
        """Turn a verified delivery body into notices.

        Raises:
            ValueError: If the body is not the JSON shape the provider sends.
        """

    def verification_challenge(self, params: Mapping[str, str]) -> tuple[int, Any]:
        """Answer a subscription-time GET challenge.

        Returns:
            (status_code, body) tuple.  Default: the provider has no challenge.
        """
        return 404, {"detail": "Not Found"}

    async def fetch_notice_documents(
        self, client: ProviderRequestClient, user_id: str, notice: WebhookNotice
    ) -> list[FetchedDocument]:
        """Return the documents a DATA notice refers to.

        Default: the documents embedded in the notice.  Thin-pointer providers
        override this to fetch the full resource.
        """
        return list(notice.documents)

    # ------------------------------------------------------------------
    # Documents and metrics
    # ------------------------------------------------------------------

    def document_id(self, data_type: str, payload: dict, fallback: str | None = None) -> str:
        """Derive the document id from the payload, else the fallback.

        Raises:
            ValueError: If neither the payload nor the caller supplies an id.
        """
        for key in self.ID_FIELDS:
            value = payload.get(key)
            if value is not None and value != "":
                return str(value)
        if fallback:
            return str(fallback)
        raise ValueError(f"{self.SOURCE_ID}/{data_type}: document has no id")

    @abstractmethod
    def document_span(self, data_type: str, payload: dict) -> DocumentSpan:
        """Return the day and start/end times of a document."""

    def summary_value(self, data_type: str, payload: dict) -> float | None:
        return first_number(payload, *self.SUMMARY_FIELDS)

    def extract_metrics(self, data_type: str, payload: dict) -> list[MetricSample]:
        """Pure mapping from a raw document to canonical metrics.

        Unknown data types and missing fields produce no metrics.
        """
        try:
            kind = self.DATA_TYPES(data_type)
        except ValueError:
            logger.debug("%s: no extractor for data type %r", self.SOURCE_ID, data_type)
            return []
        extractor = self.EXTRACTORS.get(kind)
        if extractor is None:
            return []
        return extractor(payload, self.document_span(data_type, payload))

    # ------------------------------------------------------------------
    # Historical sync
    # ------------------------------------------------------------------

    def default_data_types(self) -> list[str]:
        return list(self.settings.default_data_types)

    @abstractmethod
    async def fetch_range(
        self,
        client: ProviderRequestClient,
        user_id: str,
        data_type: str,
        start_date: date,
        end_date: date,
    ) -> list[FetchedDocument]:
        """Fetch every document of one data type within [start_date, end_date].

        Raises:
            ValueError: For an unsupported data type.
            WearableSyncError: For provider failures (from the request client).
        """

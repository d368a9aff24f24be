"""Garmin Connect (Health API) provider.

Garmin pushes data.  A delivery body is a JSON object whose keys name
summary lists (``dailies``, ``sleeps``, ``activities``, ...), each item
carrying its own ``userId``.  Two variants need a follow-up:

    - ping items carry a ``callbackURL`` to pull the data from;
    - ``deregistrations`` items mean the user revoked access.

Historical pulls are opt-in: each path in ``GARMIN_PULL_ENDPOINTS`` is
requested with ``startDate`` / ``endDate``.  With none configured the
provider is webhook-only.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Mapping

from src.wearables.base import (
    DocumentSpan,
    FetchedDocument,
    MetricCollector,
    MetricSample,
    MetricType,
    NoticeKind,
    OAuthTokens,
    WearableProvider,
    WebhookNotice,
    first_number,
    parse_day,
    parse_timestamp,
)
from src.wearables.errors import InvalidSignature
from src.wearables.signing import header, hex_signature, signatures_match
from src.wearables.sync.dedup import payload_content_hash

if TYPE_CHECKING:
    from src.wearables.client import ProviderRequestClient

logger = logging.getLogger("wearsync.wearables.garmin")

DEFAULT_SIGNATURE_HEADER = "x-garmin-signature"


class GarminDataType(str, Enum):
    DAILY = "daily"
    EPOCH = "epoch"
    WORKOUT = "workout"
    SLEEP = "sleep"
    STRESS = "stress"
    USER_METRICS = "user_metrics"
    BODY_COMP = "body_comp"
    HRV = "hrv"
    PULSE_OX = "pulse_ox"
    RESPIRATION = "respiration"
    SUMMARY = "summary"


#: Delivery body key -> data type.
PAYLOAD_KEYS: dict[str, GarminDataType] = {
    "dailies": GarminDataType.DAILY,
    "epochs": GarminDataType.EPOCH,
    "activities": GarminDataType.WORKOUT,
    "sleeps": GarminDataType.SLEEP,
    "stressDetails": GarminDataType.STRESS,
    "userMetrics": GarminDataType.USER_METRICS,
    "bodyComps": GarminDataType.BODY_COMP,
    "hrv": GarminDataType.HRV,
    "pulseox": GarminDataType.PULSE_OX,
    "respiration": GarminDataType.RESPIRATION,
}

DEREGISTRATION_KEY = "deregistrations"


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

# The first alias holding a number wins.
FIELD_ALIASES: list[tuple[MetricType, tuple[str, ...], float]] = [
    (MetricType.STEPS, ("steps", "totalSteps", "stepCount"), 1.0),
    (MetricType.ACTIVE_CALORIES, ("activeCalories", "activeKilocalories", "calories"), 1.0),
    (MetricType.DISTANCE, ("distanceInMeters", "distanceMeters", "distance"), 1.0),
    (
        MetricType.HEART_RATE,
        ("averageHeartRateInBeatsPerMinute", "averageHeartRate", "avgHr"),
        1.0,
    ),
    (
        MetricType.RESTING_HEART_RATE,
        ("restingHeartRateInBeatsPerMinute", "restingHeartRate"),
        1.0,
    ),
    (MetricType.STRESS_SCORE, ("stressScore", "stressLevel", "averageStressLevel"), 1.0),
    (MetricType.VO2_MAX, ("vo2Max", "vo2max"), 1.0),
    (MetricType.BODY_BATTERY, ("bodyBatteryMostRecentValue", "bodyBatteryValue"), 1.0),
]

_SLEEP_SECONDS = ("sleepDurationInSeconds", "sleepSeconds")


def _summary(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    for metric_type, aliases, scale in FIELD_ALIASES:
        m.add(metric_type, first_number(doc, *aliases), scale=scale)
    return m.samples


def _sleep(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    samples = _summary(doc, span)
    m = MetricCollector(span)
    m.add(
        MetricType.SLEEP,
        first_number(doc, *_SLEEP_SECONDS, "durationInSeconds"),
        scale=1 / 3600,
    )
    return samples + m.samples


def _with_sleep_fields(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    samples = _summary(doc, span)
    m = MetricCollector(span)
    m.add(MetricType.SLEEP, first_number(doc, *_SLEEP_SECONDS), scale=1 / 3600)
    return samples + m.samples


def _workout(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    samples = _summary(doc, span)
    m = MetricCollector(span)
    m.add(
        MetricType.WORKOUT,
        first_number(doc, "durationInSeconds", "movingDurationInSeconds"),
        scale=1 / 60,
    )
    return samples + m.samples


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GarminProvider(WearableProvider):
    """Garmin Connect.

    Signature: hex HMAC-SHA256 of the raw body keyed with the webhook
    secret, optional ``sha256=`` prefix, header name configurable.
    """

    SOURCE_ID = "garmin"
    DISPLAY_NAME = "Garmin Connect"
    DATA_TYPES = GarminDataType
    EXTRACTORS = {
        GarminDataType.DAILY: _with_sleep_fields,
        GarminDataType.EPOCH: _summary,
        GarminDataType.WORKOUT: _workout,
        GarminDataType.SLEEP: _sleep,
        GarminDataType.STRESS: _summary,
        GarminDataType.USER_METRICS: _summary,
        GarminDataType.BODY_COMP: _summary,
        GarminDataType.HRV: _summary,
        GarminDataType.PULSE_OX: _summary,
        GarminDataType.RESPIRATION: _summary,
        GarminDataType.SUMMARY: _with_sleep_fields,
    }
    SUMMARY_FIELDS = (
        "steps",
        "totalSteps",
        "activeKilocalories",
        "sleepDurationInSeconds",
        "durationInSeconds",
    )
    ID_FIELDS = ("id", "activityId", "summaryId", "calendarDate")

    @property
    def signature_header(self) -> str:
        return self.settings.webhook_signature_header or DEFAULT_SIGNATURE_HEADER

    @property
    def signing_secret(self) -> str:
        return self.settings.webhook_secret

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def fetch_provider_user_id(
        self, client: ProviderRequestClient, tokens: OAuthTokens
    ) -> str | None:
        body = await client.get_json("/wellness-api/rest/user/id", access_token=tokens.access_token)
        value = body.get("userId") if isinstance(body, dict) else None
        return str(value) if value else None

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.signing_secret
        if not secret:
            raise InvalidSignature("GARMIN_WEBHOOK_SECRET is not set", provider=self.SOURCE_ID)
        provided = header(headers, self.signature_header)
        if not provided:
            raise InvalidSignature("missing Garmin signature", provider=self.SOURCE_ID)
        provided = provided.strip().lower().removeprefix("sha256=")
        if not signatures_match(hex_signature(secret, body), provided):
            raise InvalidSignature("Garmin signature mismatch", provider=self.SOURCE_ID)

    def parse_webhook(self, body: bytes, received_at: datetime) -> list[WebhookNotice]:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("Garmin webhook body must be a JSON object")

        base_event_id = str(
            payload.get("eventId") or payload.get("event_id") or hashlib.sha256(body).hexdigest()
        )
        event_type = str(payload.get("eventType") or payload.get("event_type") or "update")
        event_time = parse_timestamp(payload.get("eventTimestamp") or payload.get("timestamp"))
        notices: list[WebhookNotice] = []

        for item in payload.get(DEREGISTRATION_KEY) or []:
            user_id = _user_id(item)
            if user_id is None:
                continue
            notices.append(
                WebhookNotice(
                    provider=self.SOURCE_ID,
                    provider_user_id=user_id,
                    data_type="deregistration",
                    event_type="deregistration",
                    event_id=f"{base_event_id}:deregistration:{user_id}",
                    event_time=event_time,
                    kind=NoticeKind.DEREGISTER,
                    payload=item,
                )
            )

        groups: dict[tuple[str, str | None], list[dict]] = defaultdict(list)
        for key, data_type in PAYLOAD_KEYS.items():
            items = payload.get(key)
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                user_id = _user_id(item) or _user_id(payload)
                callback_url = item.get("callbackURL")
                if callback_url:
                    digest = hashlib.sha256(str(callback_url).encode("utf-8")).hexdigest()[:16]
                    notices.append(
                        WebhookNotice(
                            provider=self.SOURCE_ID,
                            provider_user_id=user_id,
                            data_type=data_type.value,
                            event_type="ping",
                            event_id=f"{base_event_id}:{data_type.value}:{user_id}:{digest}",
                            event_time=event_time,
                            payload=item,
                            callback_url=str(callback_url),
                        )
                    )
                else:
                    groups[(data_type.value, user_id)].append(item)

        summary = payload.get("summary")
        if isinstance(summary, dict):
            groups[(GarminDataType.SUMMARY.value, _user_id(summary) or _user_id(payload))].append(
                summary
            )

        if not notices and not groups:
            groups[(GarminDataType.SUMMARY.value, _user_id(payload))].append(payload)

        for (data_type, user_id), documents in groups.items():
            event_id = f"{base_event_id}:{data_type}:{user_id}"
            notices.append(
                WebhookNotice(
                    provider=self.SOURCE_ID,
                    provider_user_id=user_id,
                    data_type=data_type,
                    event_type=event_type,
                    event_id=event_id,
                    event_time=event_time,
                    payload={"documents": documents},
                    documents=[
                        FetchedDocument(data_type, doc, fallback_id=_fallback_id(event_id, doc))
                        for doc in documents
                    ],
                )
            )
        return notices

    async def fetch_notice_documents(
        self, client: ProviderRequestClient, user_id: str, notice: WebhookNotice
    ) -> list[FetchedDocument]:
        if not notice.callback_url:
            return list(notice.documents)
        body = await client.get_json(notice.callback_url, user_id=user_id)
        return [
            FetchedDocument(
                notice.data_type, doc, fallback_id=_fallback_id(notice.event_id or "ping", doc)
            )
            for doc in _as_documents(body)
        ]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document_span(self, data_type: str, payload: dict) -> DocumentSpan:
        day = parse_day(payload.get("calendarDate") or payload.get("day"))
        start = parse_timestamp(payload.get("startTimeInSeconds") or payload.get("startTime"))
        end = parse_timestamp(payload.get("endTimeInSeconds") or payload.get("endTime"))
        if day is None and start is not None:
            day = start.date()
        return DocumentSpan(day=day, start_time=start, end_time=end)

    def default_data_types(self) -> list[str]:
        return list(self.settings.pull_endpoints)

    async def fetch_range(
        self,
        client: ProviderRequestClient,
        user_id: str,
        data_type: str,
        start_date: date,
        end_date: date,
    ) -> list[FetchedDocument]:
        """Pull one configured endpoint.  ``data_type`` is the endpoint path."""
        if data_type not in self.settings.pull_endpoints:
            raise ValueError(f"Garmin pull endpoint not configured: {data_type}")
        body = await client.get_json(
            data_type,
            user_id=user_id,
            params={"startDate": start_date.isoformat(), "endDate": end_date.isoformat()},
        )
        fallback = f"pull-{start_date.isoformat()}-{end_date.isoformat()}"
        return [
            FetchedDocument(
                _pull_data_type(data_type, doc), doc, fallback_id=_fallback_id(fallback, doc)
            )
            for doc in _as_documents(body)
        ]


def _user_id(item: object) -> str | None:
    if not isinstance(item, dict):
        return None
    value = item.get("userId") or item.get("user_id")
    return str(value) if value else None


def _fallback_id(prefix: str, doc: dict) -> str:
    """Per-document id for summaries that carry no summaryId."""
    return f"{prefix}:{payload_content_hash(doc)[:16]}"


def _as_documents(body: object) -> list[dict]:
    if isinstance(body, list):
        return [doc for doc in body if isinstance(doc, dict)]
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, list):
            return [doc for doc in data if isinstance(doc, dict)]
        return [body] if body else []
    return []


def _pull_data_type(endpoint: str, doc: dict) -> str:
    explicit = doc.get("dataType") or doc.get("data_type")
    if explicit:
        try:
            return GarminDataType(str(explicit)).value
        except ValueError:
            pass
    segment = endpoint.rstrip("/").rsplit("/", 1)[-1]
    data_type = PAYLOAD_KEYS.get(segment)
    return data_type.value if data_type else GarminDataType.SUMMARY.value

"""Oura Ring API v2 provider.

API base: https://api.ouraring.com

Webhooks are thin pointers: ``{event_type, data_type, object_id,
event_time, user_id}``.  The full document is fetched from
``/v2/usercollection/<data_type>/<object_id>``.  Subscriptions are app-level
and managed with the client id/secret headers.

Endpoints used:
    /v2/usercollection/<data_type>        Range reads (start_date/end_date, next_token)
    /v2/usercollection/personal_info      Provider user id after connect
    /v2/webhook/subscription              Subscription list/create
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from src.wearables.base import (
    DocumentSpan,
    FetchedDocument,
    MetricCollector,
    MetricSample,
    MetricType,
    NoticeKind,
    OAuthTokens,
    Pagination,
    WearableProvider,
    WebhookNotice,
    dig,
    minutes_between,
    parse_day,
    parse_timestamp,
)
from src.wearables.errors import InvalidSignature
from src.wearables.signing import header, hex_signature, signatures_match

if TYPE_CHECKING:
    from src.wearables.client import ProviderRequestClient
    from src.wearables.store import SyncStore

logger = logging.getLogger("wearsync.wearables.oura")


class OuraDataType(str, Enum):
    DAILY_ACTIVITY = "daily_activity"
    DAILY_SLEEP = "daily_sleep"
    DAILY_READINESS = "daily_readiness"
    SLEEP = "sleep"
    WORKOUT = "workout"
    SESSION = "session"
    DAILY_STRESS = "daily_stress"
    DAILY_SPO2 = "daily_spo2"
    DAILY_RESILIENCE = "daily_resilience"
    DAILY_CARDIOVASCULAR_AGE = "daily_cardiovascular_age"
    VO2_MAX = "vo2_max"


# Oura spells this one collection differently in its URL.
_PATH_OVERRIDES = {OuraDataType.VO2_MAX: "vO2_max"}


def collection_path(data_type: OuraDataType, object_id: str | None = None) -> str:
    path = f"/v2/usercollection/{_PATH_OVERRIDES.get(data_type, data_type.value)}"
    return f"{path}/{object_id}" if object_id else path


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


def _daily_activity(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.STEPS, doc.get("steps"))
    m.add(MetricType.ACTIVE_CALORIES, doc.get("active_calories"))
    m.add(MetricType.DISTANCE, doc.get("equivalent_walking_distance"))
    m.add(MetricType.TOTAL_CALORIES, doc.get("total_calories"))
    return m.samples


def _daily_sleep(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.SLEEP_SCORE, doc.get("score"))
    return m.samples


def _daily_readiness(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.READINESS_SCORE, doc.get("score"))
    return m.samples


def _sleep(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.SLEEP, doc.get("total_sleep_duration"), scale=1 / 3600)
    m.add(MetricType.HEART_RATE, doc.get("average_heart_rate"))
    m.add(MetricType.HEART_RATE_VARIABILITY, doc.get("average_hrv"))
    m.add(MetricType.RESTING_HEART_RATE, doc.get("lowest_heart_rate"))
    return m.samples


def _workout(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.WORKOUT, minutes_between(span.start_time, span.end_time))
    m.add(MetricType.ACTIVE_CALORIES, doc.get("calories"))
    m.add(MetricType.DISTANCE, doc.get("distance"))
    return m.samples


def _session(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.SESSION, minutes_between(span.start_time, span.end_time))
    return m.samples


def _daily_spo2(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.SPO2, dig(doc, "spo2_percentage", "average"))
    return m.samples


def _daily_stress(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.STRESS_HIGH_SECONDS, doc.get("stress_high"))
    m.add(MetricType.RECOVERY_HIGH_SECONDS, doc.get("recovery_high"))
    return m.samples


def _daily_resilience(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    # Resilience is a categorical level; nothing numeric to keep.
    return []


def _daily_cardiovascular_age(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.VASCULAR_AGE, doc.get("vascular_age"))
    return m.samples


def _vo2_max(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.VO2_MAX, doc.get("vo2_max"))
    return m.samples


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class OuraProvider(WearableProvider):
    """Oura Ring.

    Signature: uppercase hex HMAC-SHA256 of ``timestamp + body`` keyed with
    the client secret, in ``x-oura-signature`` / ``x-oura-timestamp``.
    """

    SOURCE_ID = "oura"
    DISPLAY_NAME = "Oura Ring"
    DATA_TYPES = OuraDataType
    EXTRACTORS = {
        OuraDataType.DAILY_ACTIVITY: _daily_activity,
        OuraDataType.DAILY_SLEEP: _daily_sleep,
        OuraDataType.DAILY_READINESS: _daily_readiness,
        OuraDataType.SLEEP: _sleep,
        OuraDataType.WORKOUT: _workout,
        OuraDataType.SESSION: _session,
        OuraDataType.DAILY_STRESS: _daily_stress,
        OuraDataType.DAILY_SPO2: _daily_spo2,
        OuraDataType.DAILY_RESILIENCE: _daily_resilience,
        OuraDataType.DAILY_CARDIOVASCULAR_AGE: _daily_cardiovascular_age,
        OuraDataType.VO2_MAX: _vo2_max,
    }
    SUMMARY_FIELDS = ("score", "steps", "active_calories", "vo2_max", "stress_high")
    PAGINATION = Pagination(items_key="data", cursor_param="next_token", cursor_fields=("next_token",))

    SIGNATURE_HEADER = "x-oura-signature"
    TIMESTAMP_HEADER = "x-oura-timestamp"
    SUBSCRIPTION_PATH = "/v2/webhook/subscription"

    def _data_type(self, data_type: str) -> OuraDataType:
        try:
            return OuraDataType(data_type)
        except ValueError:
            raise ValueError(f"Unsupported Oura data type: {data_type}") from None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def fetch_provider_user_id(
        self, client: ProviderRequestClient, tokens: OAuthTokens
    ) -> str | None:
        info = await client.get_json(
            "/v2/usercollection/personal_info", access_token=tokens.access_token
        )
        value = info.get("id") if isinstance(info, dict) else None
        return str(value) if value else None

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.signing_secret
        signature = header(headers, self.SIGNATURE_HEADER)
        timestamp = header(headers, self.TIMESTAMP_HEADER)
        if not secret or not signature or not timestamp:
            raise InvalidSignature("missing Oura signature, timestamp or secret", provider=self.SOURCE_ID)
        expected = hex_signature(secret, timestamp.encode("utf-8") + body).upper()
        if not signatures_match(expected, signature.upper()):
            raise InvalidSignature("Oura signature mismatch", provider=self.SOURCE_ID)

    def verification_challenge(self, params: Mapping[str, str]) -> tuple[int, Any]:
        expected = self.settings.webhook_verification_token
        token = params.get("verification_token")
        challenge = params.get("challenge")
        if not expected or not challenge or not signatures_match(expected, token):
            return 401, {"detail": "Invalid verification token"}
        return 200, {"challenge": challenge}

    def parse_webhook(self, body: bytes, received_at: datetime) -> list[WebhookNotice]:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("Oura webhook body must be a JSON object")
        data_type = payload.get("data_type")
        object_id = payload.get("object_id")
        if not data_type or not object_id:
            raise ValueError("Oura webhook is missing data_type or object_id")
        event_type = str(payload.get("event_type") or "update")
        user_id = payload.get("user_id")
        return [
            WebhookNotice(
                provider=self.SOURCE_ID,
                provider_user_id=str(user_id) if user_id else None,
                data_type=str(data_type),
                event_type=event_type,
                object_id=str(object_id),
                event_time=parse_timestamp(payload.get("event_time")),
                kind=NoticeKind.DELETE if event_type == "delete" else NoticeKind.DATA,
                payload=payload,
            )
        ]

    async def fetch_notice_documents(
        self, client: ProviderRequestClient, user_id: str, notice: WebhookNotice
    ) -> list[FetchedDocument]:
        path = collection_path(self._data_type(notice.data_type), notice.object_id)
        document = await client.get_json(path, user_id=user_id)
        return [FetchedDocument(notice.data_type, document, fallback_id=notice.object_id)]

    async def ensure_webhook_subscriptions(
        self, client: ProviderRequestClient, store: SyncStore
    ) -> dict:
        """Create any missing (data type x event type) subscription and store all.

        Returns:
            ``{"enabled": False, "reason": ...}`` when the callback URL or
            verification token is unset, else created/desired counts.
        """
        s = self.settings
        if not s.webhook_url or not s.webhook_verification_token:
            return {
                "enabled": False,
                "reason": "OURA_WEBHOOK_URL or OURA_WEBHOOK_VERIFICATION_TOKEN is missing",
            }

        app_headers = {"x-client-id": s.client_id, "x-client-secret": s.client_secret}
        existing = await client.get_json(self.SUBSCRIPTION_PATH, auth="client", headers=app_headers)
        subscriptions = existing if isinstance(existing, list) else []

        desired = [(d, e) for d in s.webhook_data_types for e in s.webhook_event_types]
        created = 0
        for data_type, event_type in desired:
            found = next(
                (
                    sub
                    for sub in subscriptions
                    if sub.get("callback_url") == s.webhook_url
                    and sub.get("data_type") == data_type
                    and sub.get("event_type") == event_type
                ),
                None,
            )
            if found is None:
                response = await client.request(
                    "POST",
                    self.SUBSCRIPTION_PATH,
                    auth="client",
                    headers=app_headers,
                    json={
                        "callback_url": s.webhook_url,
                        "verification_token": s.webhook_verification_token,
                        "data_type": data_type,
                        "event_type": event_type,
                    },
                )
                found = response.json()
                created += 1
            await store.upsert_webhook_subscription(
                self.SOURCE_ID,
                str(found.get("id")),
                found.get("data_type", data_type),
                found.get("event_type", event_type),
                found.get("callback_url", s.webhook_url),
                parse_timestamp(found.get("expiration_time")),
            )

        logger.info("Oura webhook subscriptions: %d desired, %d created", len(desired), created)
        return {"enabled": True, "created": created, "total_desired": len(desired)}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document_span(self, data_type: str, payload: dict) -> DocumentSpan:
        day = parse_day(payload.get("day"))
        if data_type == OuraDataType.SLEEP.value:
            return DocumentSpan(
                day=day,
                start_time=parse_timestamp(payload.get("bedtime_start")),
                end_time=parse_timestamp(payload.get("bedtime_end")),
            )
        if data_type in (OuraDataType.WORKOUT.value, OuraDataType.SESSION.value):
            return DocumentSpan(
                day=day,
                start_time=parse_timestamp(payload.get("start_datetime")),
                end_time=parse_timestamp(payload.get("end_datetime")),
            )
        if data_type == OuraDataType.VO2_MAX.value:
            return DocumentSpan(day=day, start_time=parse_timestamp(payload.get("timestamp")))
        return DocumentSpan(day=day)

    async def fetch_range(
        self,
        client: ProviderRequestClient,
        user_id: str,
        data_type: str,
        start_date: date,
        end_date: date,
    ) -> list[FetchedDocument]:
        kind = self._data_type(data_type)
        records = await client.paginate(
            collection_path(kind),
            user_id=user_id,
            pagination=self.PAGINATION,
            params={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
        return [FetchedDocument(data_type, record) for record in records]

"""Fitbit Web API provider.

Fitbit notifications are a JSON list of ``{collectionType, date, ownerId,
subscriptionId}`` entries.  Each one only says "this collection changed on
this day", so the day's resources are re-pulled.  Many notifications for the
same user/collection/day arrive in bursts; the event key buckets them by
receipt time so a burst collapses to one pull.

Refresh tokens are single use; every refresh persists the rotated token.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from src.wearables.base import (
    DocumentSpan,
    FetchedDocument,
    MetricCollector,
    MetricSample,
    MetricType,
    NoticeKind,
    ProviderConnection,
    WearableProvider,
    WebhookNotice,
    dig,
    parse_day,
)
from src.wearables.errors import InvalidSignature, ProviderRequestError
from src.wearables.signing import b64_signature, header, signatures_match

if TYPE_CHECKING:
    from src.wearables.client import ProviderRequestClient

logger = logging.getLogger("wearsync.wearables.fitbit")


class FitbitDataType(str, Enum):
    ACTIVITIES = "activities"
    HEART = "heart"
    HRV = "hrv"
    SLEEP = "sleep"
    BODY = "body"
    ACTIVE_ZONE_MINUTES = "active_zone_minutes"


_DAY_ENDPOINTS: dict[FitbitDataType, str] = {
    FitbitDataType.ACTIVITIES: "/1/user/-/activities/date/{day}.json",
    FitbitDataType.HEART: "/1/user/-/activities/heart/date/{day}/1d.json",
    FitbitDataType.HRV: "/1/user/-/hrv/date/{day}.json",
    FitbitDataType.SLEEP: "/1.2/user/-/sleep/date/{day}.json",
    FitbitDataType.BODY: "/1/user/-/body/log/weight/date/{day}.json",
    FitbitDataType.ACTIVE_ZONE_MINUTES: "/1/user/-/activities/active-zone-minutes/date/{day}/1d.json",
}

#: Subscription collection -> data types re-pulled for that day.
COLLECTION_DATA_TYPES: dict[str, tuple[FitbitDataType, ...]] = {
    "activities": (
        FitbitDataType.ACTIVITIES,
        FitbitDataType.HEART,
        FitbitDataType.ACTIVE_ZONE_MINUTES,
    ),
    "sleep": (FitbitDataType.SLEEP,),
    "body": (FitbitDataType.BODY,),
}

DEREGISTER_COLLECTIONS = frozenset({"userRevokedAccess", "deleteUser"})


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


def _activities(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    summary = doc.get("summary") or {}
    m = MetricCollector(span)
    m.add(MetricType.STEPS, summary.get("steps"))
    m.add(MetricType.TOTAL_CALORIES, summary.get("caloriesOut"))
    m.add(MetricType.ACTIVE_CALORIES, summary.get("activityCalories"))
    total = next(
        (d for d in summary.get("distances") or [] if d.get("activity") == "total"), None
    )
    if total is not None:
        m.add(MetricType.DISTANCE, total.get("distance"), scale=1000)
    m.add(MetricType.VERY_ACTIVE_MINUTES, summary.get("veryActiveMinutes"))
    m.add(MetricType.FAIRLY_ACTIVE_MINUTES, summary.get("fairlyActiveMinutes"))
    m.add(MetricType.FLOORS, summary.get("floors"))
    return m.samples


def _heart(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.RESTING_HEART_RATE, dig(doc, "activities-heart", 0, "value", "restingHeartRate"))
    return m.samples


def _hrv(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.HEART_RATE_VARIABILITY, dig(doc, "hrv", 0, "value", "dailyRmssd"))
    return m.samples


def _sleep(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    logs = [entry for entry in doc.get("sleep") or [] if isinstance(entry, dict)]
    main = next((entry for entry in logs if entry.get("isMainSleep")), logs[0] if logs else None)
    if main is None:
        return []
    m = MetricCollector(span)
    m.add(MetricType.SLEEP, main.get("minutesAsleep"), scale=1 / 60)
    m.add(MetricType.SLEEP_EFFICIENCY, main.get("efficiency"))
    return m.samples


def _body(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    entry = dig(doc, "weight", 0)
    if not isinstance(entry, dict):
        return []
    m = MetricCollector(span)
    m.add(MetricType.WEIGHT, entry.get("weight"))
    m.add(MetricType.BMI, entry.get("bmi"))
    m.add(MetricType.BODY_FAT, entry.get("fat"))
    return m.samples


def _active_zone_minutes(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(
        MetricType.ACTIVE_ZONE_MINUTES,
        dig(doc, "activities-active-zone-minutes", 0, "value", "activeZoneMinutes"),
    )
    return m.samples


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


def coalesce_bucket(received_at: datetime, window_seconds: int) -> datetime:
    """Floor a receipt time to the start of its coalescing window."""
    window = max(1, int(window_seconds))
    epoch = int(received_at.timestamp())
    return datetime.fromtimestamp(epoch - epoch % window, tz=timezone.utc)


class FitbitProvider(WearableProvider):
    """Fitbit.

    Signature: base64 HMAC-SHA1 of the body keyed with
    ``client_secret + "&"``, in ``x-fitbit-signature``.  Failures answer 404
    and verified deliveries 204, as the subscriber contract requires.
    """

    SOURCE_ID = "fitbit"
    DISPLAY_NAME = "Fitbit"
    DATA_TYPES = FitbitDataType
    EXTRACTORS = {
        FitbitDataType.ACTIVITIES: _activities,
        FitbitDataType.HEART: _heart,
        FitbitDataType.HRV: _hrv,
        FitbitDataType.SLEEP: _sleep,
        FitbitDataType.BODY: _body,
        FitbitDataType.ACTIVE_ZONE_MINUTES: _active_zone_minutes,
    }
    ID_FIELDS = ()
    SIGNATURE_FAILURE_STATUS = 404
    WEBHOOK_ACK_STATUS = 204
    RETRY_AFTER_HEADERS = ("retry-after", "fitbit-rate-limit-reset")

    SIGNATURE_HEADER = "x-fitbit-signature"

    def _data_type(self, data_type: str) -> FitbitDataType:
        try:
            return FitbitDataType(data_type)
        except ValueError:
            raise ValueError(f"Unsupported Fitbit data type: {data_type}") from None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def on_connected(
        self, client: ProviderRequestClient, connection: ProviderConnection
    ) -> None:
        """Register the per-user subscription.  An existing one (409) is fine."""
        headers = {}
        if self.settings.subscriber_id:
            headers["X-Fitbit-Subscriber-Id"] = self.settings.subscriber_id
        path = f"/1/user/-/apiSubscriptions/user-{connection.user_id}.json"
        try:
            await client.request("POST", path, user_id=connection.user_id, headers=headers)
        except ProviderRequestError as exc:
            if exc.response_status != 409:
                raise
            logger.info("Fitbit subscription already exists for user %s", connection.user_id)
            return
        logger.info("Fitbit subscription created for user %s", connection.user_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.signing_secret
        signature = header(headers, self.SIGNATURE_HEADER)
        if not secret or not signature:
            raise InvalidSignature("missing Fitbit signature or secret", provider=self.SOURCE_ID)
        expected = b64_signature(f"{secret}&", body, "sha1")
        if not signatures_match(expected, signature):
            raise InvalidSignature("Fitbit signature mismatch", provider=self.SOURCE_ID)

    def verification_challenge(self, params: Mapping[str, str]) -> tuple[int, Any]:
        expected = self.settings.webhook_verification_token
        if expected and signatures_match(expected, params.get("verify")):
            return 204, None
        return 404, None

    def parse_webhook(self, body: bytes, received_at: datetime) -> list[WebhookNotice]:
        notifications = json.loads(body)
        if not isinstance(notifications, list):
            raise ValueError("Fitbit webhook body must be a JSON list")

        bucket = coalesce_bucket(received_at, self.settings.notification_coalesce_seconds)
        notices: list[WebhookNotice] = []
        for item in notifications:
            if not isinstance(item, dict):
                continue
            collection = str(item.get("collectionType") or "")
            owner_id = item.get("ownerId")
            day = parse_day(item.get("date")) or received_at.date()
            if collection in DEREGISTER_COLLECTIONS:
                kind = NoticeKind.DEREGISTER
            elif collection in COLLECTION_DATA_TYPES:
                kind = NoticeKind.DATA
            else:
                logger.info("Ignoring Fitbit collection %r", collection)
                continue
            notices.append(
                WebhookNotice(
                    provider=self.SOURCE_ID,
                    provider_user_id=str(owner_id) if owner_id else None,
                    data_type=collection,
                    event_type=f"{collection}.updated",
                    object_id=day.isoformat(),
                    event_time=bucket,
                    kind=kind,
                    payload=item,
                )
            )
        return notices

    async def fetch_notice_documents(
        self, client: ProviderRequestClient, user_id: str, notice: WebhookNotice
    ) -> list[FetchedDocument]:
        day = parse_day(notice.object_id)
        if day is None:
            raise ValueError(f"Fitbit notice has no date: {notice.object_id!r}")
        documents: list[FetchedDocument] = []
        for kind in COLLECTION_DATA_TYPES.get(notice.data_type, ()):
            documents.append(await self._fetch_day(client, user_id, kind, day))
        return documents

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document_id(self, data_type: str, payload: dict, fallback: str | None = None) -> str:
        day = payload.get("date")
        if day:
            return f"{data_type}:{day}"
        return super().document_id(data_type, payload, fallback)

    def document_span(self, data_type: str, payload: dict) -> DocumentSpan:
        return DocumentSpan(day=parse_day(payload.get("date")))

    def summary_value(self, data_type: str, payload: dict) -> float | None:
        for sample in self.extract_metrics(data_type, payload):
            return sample.value
        return None

    async def _fetch_day(
        self, client: ProviderRequestClient, user_id: str, kind: FitbitDataType, day: date
    ) -> FetchedDocument:
        body = await client.get_json(_DAY_ENDPOINTS[kind].format(day=day.isoformat()), user_id=user_id)
        payload = {**(body if isinstance(body, dict) else {}), "date": day.isoformat()}
        return FetchedDocument(kind.value, payload, fallback_id=f"{kind.value}:{day.isoformat()}")

    async def fetch_range(
        self,
        client: ProviderRequestClient,
        user_id: str,
        data_type: str,
        start_date: date,
        end_date: date,
    ) -> list[FetchedDocument]:
        kind = self._data_type(data_type)
        documents: list[FetchedDocument] = []
        day = start_date
        while day <= end_date:
            documents.append(await self._fetch_day(client, user_id, kind, day))
            day += timedelta(days=1)
        return documents

"""WHOOP Developer API v2 provider.

API base: https://api.prod.whoop.com/developer

Webhooks are thin pointers: ``{user_id, id, type, trace_id}`` where
``type`` is ``<resource>.updated`` or ``<resource>.deleted``.  Recovery
notices carry the sleep id; the recovery itself hangs off the sleep's cycle,
so it is fetched as sleep -> cycle_id -> /v2/cycle/<cycle_id>/recovery.

Collections page with ``limit`` (max 25) and ``nextToken``.
"""

from __future__ import annotations

import json
import logging
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
    Pagination,
    WearableProvider,
    WebhookNotice,
    dig,
    minutes_between,
    parse_day,
    parse_timestamp,
    safe_float,
)
from src.wearables.errors import InvalidSignature
from src.wearables.signing import b64_signature, header, signatures_match

if TYPE_CHECKING:
    from src.wearables.client import ProviderRequestClient

logger = logging.getLogger("wearsync.wearables.whoop")

KJ_TO_KCAL = 0.239
_MS_PER_HOUR = 3_600_000


class WhoopDataType(str, Enum):
    RECOVERY = "recovery"
    SLEEP = "sleep"
    CYCLE = "cycle"
    WORKOUT = "workout"
    BODY_MEASUREMENT = "body_measurement"


_COLLECTIONS = {
    WhoopDataType.RECOVERY: "/v2/recovery",
    WhoopDataType.SLEEP: "/v2/activity/sleep",
    WhoopDataType.CYCLE: "/v2/cycle",
    WhoopDataType.WORKOUT: "/v2/activity/workout",
}
_BODY_MEASUREMENT_PATH = "/v2/user/measurement/body"


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


def _recovery(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    score = doc.get("score") or {}
    m = MetricCollector(span)
    m.add(MetricType.RECOVERY_SCORE, score.get("recovery_score"))
    m.add(MetricType.RESTING_HEART_RATE, score.get("resting_heart_rate"))
    m.add(MetricType.HEART_RATE_VARIABILITY, score.get("hrv_rmssd_milli"))
    m.add(MetricType.SPO2, score.get("spo2_percentage"))
    m.add(MetricType.SKIN_TEMPERATURE, score.get("skin_temp_celsius"))
    return m.samples


def _sleep(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    score = doc.get("score") or {}
    stages = score.get("stage_summary") or {}
    m = MetricCollector(span)
    m.add(MetricType.SLEEP_SCORE, score.get("sleep_performance_percentage"))

    parts = [
        safe_float(stages.get(key))
        for key in (
            "total_light_sleep_time_milli",
            "total_slow_wave_sleep_time_milli",
            "total_rem_sleep_time_milli",
        )
    ]
    present = [p for p in parts if p is not None]
    if present:
        m.add(MetricType.SLEEP, sum(present), scale=1 / _MS_PER_HOUR)

    m.add(MetricType.SLEEP_EFFICIENCY, score.get("sleep_efficiency_percentage"))
    m.add(MetricType.RESPIRATORY_RATE, score.get("respiratory_rate"))
    return m.samples


def _cycle(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    score = doc.get("score") or {}
    m = MetricCollector(span)
    m.add(MetricType.STRAIN, score.get("strain"))
    m.add(MetricType.HEART_RATE, score.get("average_heart_rate"))
    m.add(MetricType.MAX_HEART_RATE, score.get("max_heart_rate"))
    m.add(MetricType.TOTAL_CALORIES, score.get("kilojoule"), scale=KJ_TO_KCAL)
    return m.samples


def _workout(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    score = doc.get("score") or {}
    m = MetricCollector(span)
    m.add(MetricType.STRAIN, score.get("strain"))
    m.add(MetricType.HEART_RATE, score.get("average_heart_rate"))
    m.add(MetricType.MAX_HEART_RATE, score.get("max_heart_rate"))
    m.add(MetricType.CALORIES, score.get("kilojoule"), scale=KJ_TO_KCAL)
    m.add(MetricType.DISTANCE, score.get("distance_meter"))
    m.add(MetricType.WORKOUT, minutes_between(span.start_time, span.end_time))
    return m.samples


def _body_measurement(doc: dict, span: DocumentSpan) -> list[MetricSample]:
    m = MetricCollector(span)
    m.add(MetricType.WEIGHT, doc.get("weight_kilogram"))
    m.add(MetricType.HEIGHT, doc.get("height_meter"))
    m.add(MetricType.MAX_HEART_RATE, doc.get("max_heart_rate"))
    return m.samples


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class WhoopProvider(WearableProvider):
    """WHOOP.

    Signature: base64 HMAC-SHA256 of ``timestamp + body`` keyed with the
    client secret, in ``x-whoop-signature`` / ``x-whoop-signature-timestamp``.
    """

    SOURCE_ID = "whoop"
    DISPLAY_NAME = "WHOOP"
    DATA_TYPES = WhoopDataType
    EXTRACTORS = {
        WhoopDataType.RECOVERY: _recovery,
        WhoopDataType.SLEEP: _sleep,
        WhoopDataType.CYCLE: _cycle,
        WhoopDataType.WORKOUT: _workout,
        WhoopDataType.BODY_MEASUREMENT: _body_measurement,
    }
    # Recovery records have no id of their own; they are keyed by cycle.
    ID_FIELDS = ("id", "cycle_id")
    PAGINATION = Pagination(
        items_key="records",
        cursor_param="nextToken",
        cursor_fields=("next_token", "nextToken"),
        limit_param="limit",
    )

    SIGNATURE_HEADER = "x-whoop-signature"
    TIMESTAMP_HEADER = "x-whoop-signature-timestamp"

    def _data_type(self, data_type: str) -> WhoopDataType:
        try:
            return WhoopDataType(data_type)
        except ValueError:
            raise ValueError(f"Unsupported WHOOP data type: {data_type}") from None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def fetch_provider_user_id(
        self, client: ProviderRequestClient, tokens: OAuthTokens
    ) -> str | None:
        profile = await client.get_json(
            "/v2/user/profile/basic", access_token=tokens.access_token
        )
        value = profile.get("user_id") if isinstance(profile, dict) else None
        return str(value) if value is not None else None

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.signing_secret
        signature = header(headers, self.SIGNATURE_HEADER)
        timestamp = header(headers, self.TIMESTAMP_HEADER)
        if not secret or not signature or not timestamp:
            raise InvalidSignature(
                "missing WHOOP signature, timestamp or secret", provider=self.SOURCE_ID
            )
        expected = b64_signature(secret, timestamp.encode("utf-8") + body)
        if not signatures_match(expected, signature):
            raise InvalidSignature("WHOOP signature mismatch", provider=self.SOURCE_ID)

    def parse_webhook(self, body: bytes, received_at: datetime) -> list[WebhookNotice]:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("WHOOP webhook body must be a JSON object")
        event_type = str(payload.get("type") or "")
        resource, _, action = event_type.partition(".")
        object_id = payload.get("id")
        if not resource or object_id is None:
            raise ValueError("WHOOP webhook is missing type or id")
        user_id = payload.get("user_id")
        trace_id = payload.get("trace_id")
        return [
            WebhookNotice(
                provider=self.SOURCE_ID,
                provider_user_id=str(user_id) if user_id is not None else None,
                data_type=resource,
                event_type=event_type,
                object_id=str(object_id),
                event_id=str(trace_id) if trace_id else None,
                kind=NoticeKind.DELETE if action == "deleted" else NoticeKind.DATA,
                payload=payload,
            )
        ]

    async def fetch_notice_documents(
        self, client: ProviderRequestClient, user_id: str, notice: WebhookNotice
    ) -> list[FetchedDocument]:
        kind = self._data_type(notice.data_type)
        if kind == WhoopDataType.RECOVERY:
            sleep = await client.get_json(
                f"{_COLLECTIONS[WhoopDataType.SLEEP]}/{notice.object_id}", user_id=user_id
            )
            cycle_id = sleep.get("cycle_id") if isinstance(sleep, dict) else None
            if cycle_id is None:
                raise ValueError(f"WHOOP sleep {notice.object_id} has no cycle_id")
            recovery = await client.get_json(f"/v2/cycle/{cycle_id}/recovery", user_id=user_id)
            return [FetchedDocument(kind.value, recovery, fallback_id=str(cycle_id))]
        if kind == WhoopDataType.BODY_MEASUREMENT:
            body = await client.get_json(_BODY_MEASUREMENT_PATH, user_id=user_id)
            return [FetchedDocument(kind.value, body, fallback_id=kind.value)]
        document = await client.get_json(
            f"{_COLLECTIONS[kind]}/{notice.object_id}", user_id=user_id
        )
        return [FetchedDocument(kind.value, document, fallback_id=notice.object_id)]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document_span(self, data_type: str, payload: dict) -> DocumentSpan:
        if data_type == WhoopDataType.BODY_MEASUREMENT.value:
            return DocumentSpan()
        start = parse_timestamp(payload.get("start"))
        end = parse_timestamp(payload.get("end"))
        if data_type == WhoopDataType.RECOVERY.value:
            return DocumentSpan(day=parse_day(payload.get("created_at")))
        anchor = end or start
        return DocumentSpan(
            day=anchor.date() if anchor else None, start_time=start, end_time=end
        )

    def summary_value(self, data_type: str, payload: dict) -> float | None:
        score = payload.get("score") or {}
        for key in ("recovery_score", "sleep_performance_percentage", "strain"):
            value = safe_float(dig(score, key))
            if value is not None:
                return value
        return safe_float(payload.get("weight_kilogram"))

    async def fetch_range(
        self,
        client: ProviderRequestClient,
        user_id: str,
        data_type: str,
        start_date: date,
        end_date: date,
    ) -> list[FetchedDocument]:
        kind = self._data_type(data_type)
        if kind == WhoopDataType.BODY_MEASUREMENT:
            body = await client.get_json(_BODY_MEASUREMENT_PATH, user_id=user_id)
            return [FetchedDocument(kind.value, body, fallback_id=kind.value)] if body else []

        records = await client.paginate(
            _COLLECTIONS[kind],
            user_id=user_id,
            pagination=self.PAGINATION,
            params={
                "start": f"{start_date.isoformat()}T00:00:00.000Z",
                "end": f"{end_date.isoformat()}T23:59:59.999Z",
            },
        )
        return [FetchedDocument(kind.value, record) for record in records]

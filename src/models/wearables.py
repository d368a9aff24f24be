"""Pydantic models for the wearable connection, sync and event endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import Field, model_validator

from src.models.base import WearsyncBase


# ---------- Connections ----------

class ConnectionRead(WearsyncBase):
    provider: str
    display_name: str | None = None
    provider_user_id: str | None = None
    scope: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    connected_at: datetime | None = None
    updated_at: datetime | None = None


class ConnectionStatus(ConnectionRead):
    configured: bool
    connected: bool
    webhook_configured: bool
    pull_configured: bool
    token_expired: bool | None = None


class AuthorizeResponse(WearsyncBase):
    url: str


class CallbackResponse(WearsyncBase):
    provider: str
    connected: bool = True
    provider_user_id: str | None = None
    backfill_scheduled: bool = False


# ---------- Sync ----------

class SyncRequest(WearsyncBase):
    """Manual sync: either a ``days`` window or an explicit date range."""

    days: int | None = Field(default=None, ge=1)
    start_date: date | None = None
    end_date: date | None = None
    data_types: list[str] | None = None

    @model_validator(mode="after")
    def _check_range(self) -> SyncRequest:
        if (self.start_date is None) != (self.end_date is None):
            raise ValueError("start_date and end_date must be given together")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class DataTypeSyncRead(WearsyncBase):
    data_type: str
    success: bool
    documents_processed: int = 0
    metrics_inserted: int = 0
    error: str | None = None


class SyncResponse(WearsyncBase):
    provider: str
    results: list[DataTypeSyncRead]


# ---------- Webhook events ----------

class WebhookEventRead(WearsyncBase):
    event_key: str
    data_type: str
    event_type: str
    object_id: str | None = None
    event_time: datetime | None = None
    processed: bool
    error: str | None = None
    received_at: datetime
    processed_at: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

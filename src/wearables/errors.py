"""Exception taxonomy for the wearable sync engine.

Every error carries the provider it came from and the HTTP status the API
layer maps it to.  The webhook pipeline and backfill catch these by class to
decide between "reject", "drop", "record and move on" and "surface to user".
"""

from __future__ import annotations


class WearableSyncError(Exception):
    """Base class for all sync engine errors."""

    status_code: int = 500

    def __init__(self, message: str = "", *, provider: str | None = None) -> None:
        self.message = message or self.__class__.__name__
        self.provider = provider
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict = {"detail": self.message, "error": self.__class__.__name__}
        if self.provider:
            body["provider"] = self.provider
        return body


class ConfigurationError(WearableSyncError):
    """Client credentials, redirect URI or signing secret are not configured."""

    status_code = 503


class InvalidState(WearableSyncError):
    """OAuth state token is expired, tampered, or issued for another provider."""

    status_code = 400


class InvalidSignature(WearableSyncError):
    """Webhook signature missing or mismatched.  Nothing is processed."""

    status_code = 401


class NotConnected(WearableSyncError):
    """The user has no connection for this provider."""

    status_code = 404


class ReauthRequired(WearableSyncError):
    """Stored credentials can no longer be refreshed; the user must reconnect."""

    status_code = 409

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["action"] = "reconnect"
        return body


class RateLimitExceeded(WearableSyncError):
    """Provider kept answering 429 after the bounded retry budget."""

    status_code = 429

    def __init__(
        self,
        message: str = "",
        *,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class ServiceUnavailable(WearableSyncError):
    """Provider unreachable, timed out, or kept answering 5xx."""

    status_code = 503


class ProviderRequestError(WearableSyncError):
    """Permanent non-2xx response (400, 403, 404, ...).  Not retried."""

    status_code = 502

    def __init__(
        self,
        message: str = "",
        *,
        provider: str | None = None,
        response_status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.response_status = response_status
        self.body = body


class UnmappableUser(WearableSyncError):
    """Webhook names a provider user with no local connection."""

    status_code = 200


class DuplicateEvent(WearableSyncError):
    """The webhook event key was already recorded.  An explicit no-op."""

    status_code = 200

    def __init__(self, event_key: str, *, provider: str | None = None) -> None:
        super().__init__(f"duplicate event {event_key}", provider=provider)
        self.event_key = event_key

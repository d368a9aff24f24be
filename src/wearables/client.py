"""Rate-limited, serialized HTTP client for one provider.

Every outbound provider call goes through ``ProviderRequestClient.request``:

    queue lock -> token -> rate-limit slot -> HTTP -> classify -> (retry)

The queue lock serializes a provider's calls, so a mid-flight token refresh
is never raced by a second refresh.  Transient failures (429, 502-504,
transport errors) are retried with exponential backoff plus jitter, honoring
any server-requested wait.  A 401 refreshes the user's token once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping, Protocol

import httpx

from src.wearables.base import Pagination, utc_now
from src.wearables.errors import (
    ConfigurationError,
    ProviderRequestError,
    RateLimitExceeded,
    ReauthRequired,
    ServiceUnavailable,
)
from src.wearables.ratelimit import SlidingWindowRateLimiter

if TYPE_CHECKING:
    from src.config import Settings
    from src.wearables.base import WearableProvider

logger = logging.getLogger("wearsync.wearables.client")

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})

AuthMode = Literal["user", "client", "none"]


class TokenSource(Protocol):
    """What the client needs from the OAuth flow manager."""

    async def get_valid_access_token(self, user_id: str) -> str: ...

    async def force_refresh(self, user_id: str, rejected_token: str | None = None) -> str: ...


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After value: delta-seconds or an HTTP-date.

    Returns:
        Seconds to wait (never negative), or None if absent or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when - (now or utc_now())).total_seconds())


class ProviderRequestClient:
    """One instance per provider; owns the provider's rate budget and queue.

    Args:
        provider: The provider whose API this client calls.
        settings: Global settings (timeouts and retry policy).
        http:     Shared httpx.AsyncClient.
        tokens:   Token source, normally the provider's OAuthFlowManager.
        limiter:  Optional pre-built limiter (tests).
        sleep:    Coroutine used for backoff waits (tests).
        jitter:   ``random.uniform``-compatible jitter source (tests).
    """

    def __init__(
        self,
        provider: WearableProvider,
        settings: Settings,
        http: httpx.AsyncClient,
        tokens: TokenSource | None = None,
        *,
        limiter: SlidingWindowRateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.provider = provider
        self.name = provider.SOURCE_ID
        self._settings = settings
        self._http = http
        self._tokens = tokens
        self._sleep = sleep
        self._jitter = jitter
        self.limiter = limiter or SlidingWindowRateLimiter(
            provider.settings.rate_limit_max_requests,
            provider.settings.rate_limit_window_seconds,
            name=self.name,
        )
        self._queue = asyncio.Lock()

    def bind_tokens(self, tokens: TokenSource) -> None:
        self._tokens = tokens

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def url_for(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.provider.settings.api_base_url}/{path_or_url.lstrip('/')}"

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for retry number ``attempt`` (0-based), plus jitter."""
        s = self._settings
        delay = min(s.retry_base_delay_seconds * (2**attempt), s.retry_max_delay_seconds)
        return delay + self._jitter(0, s.retry_max_jitter_seconds)

    def _server_wait(self, response: httpx.Response) -> float | None:
        for header in self.provider.RETRY_AFTER_HEADERS:
            wait = parse_retry_after(response.headers.get(header))
            if wait is not None:
                return wait
        return None

    def page_size(self, requested: int | None = None) -> int | None:
        cap = self.provider.settings.max_page_size
        if requested is None:
            return cap
        return min(requested, cap) if cap else requested

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path_or_url: str,
        *,
        user_id: str | None = None,
        auth: AuthMode = "user",
        access_token: str | None = None,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Send one provider request through the queue, budget and retry policy.

        Args:
            method:       HTTP method.
            path_or_url:  API path relative to the provider base URL, or an absolute URL.
            user_id:      Local user whose token authenticates the call (auth="user").
            auth:         "user" bearer token, "client" app credentials in ``headers``,
                          or "none".
            access_token: Explicit bearer token (right after a code exchange).

        Returns:
            The successful (2xx) response.

        Raises:
            ReauthRequired:       Second 401 for a user-authenticated call.
            ConfigurationError:   401 for an app-authenticated call.
            RateLimitExceeded:    429 after the retry budget, or a server wait
                                  longer than the configured maximum.
            ServiceUnavailable:   Timeout, or 5xx / transport errors after the budget.
            ProviderRequestError: Any other non-2xx response.
        """
        if auth == "user" and user_id is None and access_token is None:
            raise ValueError("user-authenticated request needs user_id or access_token")
        url = self.url_for(path_or_url)
        async with self._queue:
            return await self._send(
                method,
                url,
                user_id=user_id,
                auth=auth,
                access_token=access_token,
                params=params,
                json=json,
                data=data,
                headers=headers,
            )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        user_id: str | None,
        auth: AuthMode,
        access_token: str | None,
        params: Mapping[str, Any] | None,
        json: Any,
        data: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
    ) -> httpx.Response:
        s = self._settings
        refreshed = False
        failures = 0
        token = access_token

        while True:
            request_headers = {"Accept": "application/json", **(headers or {})}
            if auth == "user":
                if token is None:
                    token = await self._require_tokens().get_valid_access_token(user_id)
                request_headers["Authorization"] = f"Bearer {token}"

            await self.limiter.acquire()
            logger.debug("%s %s %s", self.name, method, url)
            try:
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    data=data,
                    headers=request_headers,
                    timeout=s.http_timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                raise ServiceUnavailable(
                    f"{method} {url} timed out after {s.http_timeout_seconds:.0f}s",
                    provider=self.name,
                ) from exc
            except httpx.TransportError as exc:
                failures += 1
                if failures >= s.retry_max_attempts:
                    raise ServiceUnavailable(
                        f"{method} {url} failed after {failures} attempts: {exc}",
                        provider=self.name,
                    ) from exc
                delay = self.backoff_delay(failures - 1)
                logger.warning(
                    "%s transport error (%s), retry %d in %.2fs",
                    self.name,
                    exc.__class__.__name__,
                    failures,
                    delay,
                )
                await self._sleep(delay)
                continue

            status = response.status_code

            if status == 401:
                if auth == "client":
                    raise ConfigurationError(
                        f"{self.name} rejected the app credentials", provider=self.name
                    )
                if auth == "user" and not refreshed and user_id is not None:
                    logger.info("%s 401 for user %s, refreshing once", self.name, user_id)
                    token = await self._require_tokens().force_refresh(user_id, token)
                    refreshed = True
                    continue
                raise ReauthRequired(
                    f"{self.name} rejected the access token", provider=self.name
                )

            if status in RETRYABLE_STATUSES:
                failures += 1
                server_wait = self._server_wait(response)
                if failures >= s.retry_max_attempts:
                    if status == 429:
                        raise RateLimitExceeded(
                            f"{self.name} still rate limited after {failures} attempts",
                            provider=self.name,
                            retry_after=server_wait,
                        )
                    raise ServiceUnavailable(
                        f"{self.name} returned {status} after {failures} attempts",
                        provider=self.name,
                    )
                if server_wait is not None and server_wait > s.retry_max_wait_seconds:
                    raise RateLimitExceeded(
                        f"{self.name} asked to wait {server_wait:.0f}s",
                        provider=self.name,
                        retry_after=server_wait,
                    )
                delay = server_wait if server_wait is not None else self.backoff_delay(failures - 1)
                logger.warning(
                    "%s returned %d, retry %d/%d in %.2fs",
                    self.name,
                    status,
                    failures,
                    s.retry_max_attempts - 1,
                    delay,
                )
                await self._sleep(delay)
                continue

            if status >= 400:
                raise ProviderRequestError(
                    f"{self.name} {method} {url} returned {status}",
                    provider=self.name,
                    response_status=status,
                    body=response.text[:2000],
                )

            return response

    def _require_tokens(self) -> TokenSource:
        if self._tokens is None:
            raise ConfigurationError("no token source bound", provider=self.name)
        return self._tokens

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    async def get_json(self, path_or_url: str, **kwargs: Any) -> Any:
        """GET and decode JSON.  Empty bodies decode to an empty dict."""
        response = await self.request("GET", path_or_url, **kwargs)
        if not response.content:
            return {}
        return response.json()

    async def paginate(
        self,
        path: str,
        *,
        user_id: str,
        pagination: Pagination,
        params: Mapping[str, Any] | None = None,
        page_size: int | None = None,
    ) -> list[dict]:
        """Follow continuation tokens and return every record, in order.

        Stops when the response carries no cursor, or repeats one.
        """
        query = dict(params or {})
        limit = self.page_size(page_size)
        if pagination.limit_param and limit:
            query[pagination.limit_param] = limit

        records: list[dict] = []
        cursor: str | None = None
        seen: set[str] = set()
        pages = 0
        while True:
            page_params = dict(query)
            if cursor:
                page_params[pagination.cursor_param] = cursor
            body = await self.get_json(path, user_id=user_id, params=page_params)
            pages += 1
            items = body.get(pagination.items_key) if isinstance(body, dict) else body
            records.extend(item for item in items or [] if isinstance(item, dict))

            cursor = None
            if isinstance(body, dict):
                for name in pagination.cursor_fields:
                    if body.get(name):
                        cursor = str(body[name])
                        break
            if not cursor or cursor in seen:
                break
            seen.add(cursor)

        logger.debug("%s %s: %d records in %d page(s)", self.name, path, len(records), pages)
        return records

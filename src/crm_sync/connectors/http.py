"""httpx-based base class for the REST vendor adapters.

HTTPConnector owns one httpx.AsyncClient per connector and implements the
parts of the connector contract that are identical across vendors:

- OAuth token exchange (authorization code and refresh grants)
- authenticated requests with status-code -> CRMError mapping
- rate-limit header parsing
- validate_token / health_check
- a paginated sync_clients() walk that pauses when the vendor's rate-limit
  window is nearly exhausted

Vendor subclasses supply endpoints and payload translation only.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from src.crm_sync.config import get_settings
from src.crm_sync.connectors.adapter import CRMConnector
from src.crm_sync.connectors.exceptions import CRMApiError, CRMAuthError, CRMError, CRMRateLimitError
from src.crm_sync.connectors.schemas import (
    AuthTokens,
    CRMConfig,
    QueryOptions,
    RateLimitInfo,
    SyncErrorDetail,
    SyncResult,
)

logger = structlog.get_logger(__name__)

SYNC_PAGE_SIZE = 100
RATE_LIMIT_LOW_WATERMARK = 10
DEFAULT_RATE_LIMIT_RESET_SECONDS = 60

_RESET_HEADERS = ("x-ratelimit-reset", "x-rate-limit-reset", "retry-after")
_REMAINING_HEADERS = ("x-ratelimit-remaining", "x-rate-limit-remaining")
_LIMIT_HEADERS = ("x-ratelimit-limit", "x-rate-limit-limit")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_rate_limit_reset(headers: httpx.Headers, now: datetime | None = None) -> datetime:
    """Resolve the reset time advertised by a throttled response.

    Values above 1e12 are epoch milliseconds, above 1e9 epoch seconds, and
    anything smaller is seconds from now. Falls back to 60 seconds when no
    usable header is present.
    """
    now = now or _utcnow()
    for name in _RESET_HEADERS:
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            value = float(raw)
            if value > 1e12:
                return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
            if value > 1e9:
                return datetime.fromtimestamp(value, tz=timezone.utc)
            return now + timedelta(seconds=value)
        except (ValueError, OverflowError, OSError):
            continue
    return now + timedelta(seconds=DEFAULT_RATE_LIMIT_RESET_SECONDS)


def parse_rate_limit(headers: httpx.Headers, now: datetime | None = None) -> RateLimitInfo | None:
    """Build RateLimitInfo from response headers, or None if not reported."""
    remaining = next((headers[h] for h in _REMAINING_HEADERS if h in headers), None)
    limit = next((headers[h] for h in _LIMIT_HEADERS if h in headers), None)
    if remaining is None or limit is None:
        return None
    try:
        return RateLimitInfo(
            remaining=int(remaining),
            limit=int(limit),
            reset_time=parse_rate_limit_reset(headers, now),
        )
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return str(body[0].get("message", body[0]))
    return response.text or response.reason_phrase


class HTTPConnector(CRMConnector):
    """Shared REST plumbing for vendor adapters.

    Args:
        config: Connection configuration.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        timeout: Request timeout in seconds; defaults to CRM_HTTP_TIMEOUT_SECONDS.
        sleep: Awaitable sleep used for rate-limit pauses during sync.
    """

    system: str = "unknown"
    token_path: str = "/oauth/token"
    health_path: str = "/"

    def __init__(
        self,
        config: CRMConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._tokens: AuthTokens | None = None
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.api_base_url(),
            timeout=timeout or get_settings().CRM_HTTP_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    # ── Endpoint hooks ──────────────────────────────────────────────────────

    def api_base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def token_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}{self.token_path}"

    def _on_token_payload(self, payload: dict[str, Any]) -> None:
        """Hook for vendors that return extra connection data with tokens."""
        return None

    # ── Token handling ──────────────────────────────────────────────────────

    @property
    def tokens(self) -> AuthTokens | None:
        return self._tokens

    def set_tokens(self, tokens: AuthTokens | None) -> None:
        self._tokens = tokens

    async def _exchange_token(self, grant: dict[str, str], fallback_refresh: str | None = None) -> AuthTokens:
        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            **grant,
        }
        try:
            response = await self._client.post(self.token_url(), data=form)
        except httpx.TransportError as exc:
            logger.error("crm.token_exchange_failed", system=self.system, error=str(exc))
            raise CRMAuthError(f"Token exchange failed: {exc}", self.system) from exc

        if response.is_error:
            message = _error_message(response)
            logger.warning(
                "crm.token_exchange_rejected",
                system=self.system,
                status_code=response.status_code,
                error=message,
            )
            raise CRMAuthError(
                f"Authentication failed: {message}",
                self.system,
                status_code=response.status_code,
            )

        payload = response.json()
        expires_in = payload.get("expires_in")
        tokens = AuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh,
            expires_at=_utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope"),
        )
        self._on_token_payload(payload)
        self._tokens = tokens
        logger.info("crm.authenticated", system=self.system, grant=grant["grant_type"])
        return tokens

    async def authenticate(self, auth_code: str) -> AuthTokens:
        return await self._exchange_token(
            {
                "grant_type": "authorization_code",
                "code": auth_code,
                "redirect_uri": self.config.redirect_uri,
            }
        )

    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        return await self._exchange_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            fallback_refresh=refresh_token,
        )

    async def validate_token(self, tokens: AuthTokens) -> bool:
        if not tokens.access_token:
            return False
        if tokens.expires_at is not None and tokens.expires_at <= _utcnow():
            return False
        previous = self._tokens
        self._tokens = tokens
        try:
            await self._request("GET", self.health_path)
        except CRMError:
            self._tokens = previous
            return False
        return True

    async def health_check(self) -> bool:
        if self._tokens is None:
            return False
        try:
            await self._request("GET", self.health_path)
        except CRMError as exc:
            logger.warning("crm.health_check_failed", system=self.system, error=exc.message)
            return False
        return True

    # ── Requests ────────────────────────────────────────────────────────────

    def _authorization(self, tokens: AuthTokens) -> str:
        return f"{tokens.token_type} {tokens.access_token}"

    def _map_error(self, response: httpx.Response) -> CRMError:
        status = response.status_code
        message = _error_message(response)
        if status == 401:
            return CRMAuthError(f"Unauthorized: {message}", self.system, status_code=status)
        if status == 429:
            return CRMRateLimitError(
                f"Rate limit exceeded: {message}",
                self.system,
                reset_time=parse_rate_limit_reset(response.headers),
                status_code=status,
            )
        if status == 400:
            return CRMApiError(message, self.system, "BAD_REQUEST", retryable=False, status_code=status)
        if status == 404:
            return CRMApiError(message, self.system, "NOT_FOUND", retryable=False, status_code=status)
        if status in (500, 502, 503, 504):
            return CRMApiError(message, self.system, "SERVER_ERROR", retryable=True, status_code=status)
        return CRMApiError(message, self.system, "UNKNOWN_ERROR", retryable=True, status_code=status)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if self._tokens is None:
            raise CRMAuthError("Not authenticated", self.system)
        headers = {
            **(headers or {}),
            "Authorization": self._authorization(self._tokens),
        }
        try:
            response = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.TransportError as exc:
            raise CRMApiError(
                f"Network error: {exc}", self.system, "NETWORK_ERROR", retryable=True
            ) from exc

        if response.is_error:
            error = self._map_error(response)
            logger.warning(
                "crm.request_failed",
                system=self.system,
                method=method,
                path=path,
                status_code=response.status_code,
                code=error.code,
            )
            raise error
        return response

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync_clients(self, last_sync_time: datetime | None = None) -> SyncResult:
        result = SyncResult(success=True)
        options = QueryOptions(page=1, page_size=SYNC_PAGE_SIZE, modified_since=last_sync_time)

        while True:
            try:
                page = await self.get_clients(options)
            except CRMError as exc:
                result.success = False
                result.errors.append(
                    SyncErrorDetail(
                        message=f"Failed to sync page {options.page}: {exc.message}",
                        code=exc.code,
                        retryable=not isinstance(exc, CRMAuthError),
                    )
                )
                logger.warning("crm.sync_page_failed", system=self.system, page=options.page, code=exc.code)
                break

            result.clients_processed += len(page.data)

            if page.rate_limit is not None and page.rate_limit.remaining < RATE_LIMIT_LOW_WATERMARK:
                wait = max((page.rate_limit.reset_time - _utcnow()).total_seconds(), 1.0)
                wait = min(wait, get_settings().RATE_LIMIT_MAX_WAIT_SECONDS)
                logger.info("crm.rate_limit_pause", system=self.system, wait_seconds=wait)
                await self._sleep(wait)

            if page.pagination is None or not page.pagination.has_next:
                break
            options = options.model_copy(
                update={
                    "page": options.page + 1,
                    "page_token": page.pagination.next_page_token,
                }
            )

        result.last_sync_time = _utcnow()
        logger.info(
            "crm.sync_walk_completed",
            system=self.system,
            processed=result.clients_processed,
            errors=len(result.errors),
        )
        return result

    async def aclose(self) -> None:
        await self._client.aclose()

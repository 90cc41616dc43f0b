"""OAuth 2.0 authorization-code state tracking for CRM connections.

OAuthStateTracker issues single-use anti-forgery ``state`` tokens bound to
the (system, user, redirect) that requested an authorization URL, and checks
them again when the vendor redirects back. OAuthStateSweeper periodically
reaps expired states on an APScheduler interval job.

State tokens are only ever logged as an 8-character prefix.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from src.crm_sync.config import get_settings
from src.crm_sync.connectors.exceptions import UnsupportedSystemError
from src.crm_sync.connectors.schemas import AuthTokens, CRMConfig, CRMSystem
from src.crm_sync.core.logging import mask_token

logger = structlog.get_logger(__name__)

REFRESH_WINDOW = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthorizationState(BaseModel):
    state: str
    system: str
    user_id: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime


class AuthorizationUrl(BaseModel):
    url: str
    state: str


class OAuthCallbackResult(BaseModel):
    is_valid: bool
    error: str | None = None
    state: AuthorizationState | None = None


class OAuthEndpoints(BaseModel):
    auth_url: str
    token_url: str
    revoke_url: str | None = None


# ── Vendor tables ───────────────────────────────────────────────────────────

# system -> (authorization path, extra query params)
_AUTHORIZE: dict[str, tuple[str, dict[str, str]]] = {
    CRMSystem.ZOHO.value: ("/oauth/v2/auth", {"access_type": "offline"}),
    CRMSystem.SALESFORCE.value: ("/services/oauth2/authorize", {"prompt": "consent"}),
    CRMSystem.HUBSPOT.value: (
        "/oauth/authorize",
        {"optional_scope": "crm.objects.contacts.read crm.objects.contacts.write"},
    ),
    CRMSystem.AGENCYBLOC.value: ("/oauth/authorize", {}),
}

_DEFAULT_SCOPES: dict[str, list[str]] = {
    CRMSystem.ZOHO.value: ["ZohoCRM.modules.ALL", "ZohoCRM.settings.ALL"],
    CRMSystem.SALESFORCE.value: ["api", "refresh_token", "offline_access"],
    CRMSystem.HUBSPOT.value: ["contacts", "crm.objects.contacts.read", "crm.objects.contacts.write"],
    CRMSystem.AGENCYBLOC.value: ["contacts:read", "contacts:write"],
}

_ENDPOINTS: dict[str, OAuthEndpoints] = {
    CRMSystem.ZOHO.value: OAuthEndpoints(
        auth_url="https://accounts.zoho.com/oauth/v2/auth",
        token_url="https://accounts.zoho.com/oauth/v2/token",
        revoke_url="https://accounts.zoho.com/oauth/v2/token/revoke",
    ),
    CRMSystem.SALESFORCE.value: OAuthEndpoints(
        auth_url="https://login.salesforce.com/services/oauth2/authorize",
        token_url="https://login.salesforce.com/services/oauth2/token",
        revoke_url="https://login.salesforce.com/services/oauth2/revoke",
    ),
    CRMSystem.HUBSPOT.value: OAuthEndpoints(
        auth_url="https://app.hubspot.com/oauth/authorize",
        token_url="https://api.hubapi.com/oauth/v1/token",
    ),
    CRMSystem.AGENCYBLOC.value: OAuthEndpoints(
        auth_url="https://api.agencybloc.com/oauth/authorize",
        token_url="https://api.agencybloc.com/oauth/token",
    ),
}


def _tag(system: CRMSystem | str) -> str:
    return system.value if isinstance(system, CRMSystem) else str(system)


def get_default_scopes(system: CRMSystem | str) -> list[str]:
    return list(_DEFAULT_SCOPES.get(_tag(system), []))


def get_oauth_endpoints(system: CRMSystem | str) -> OAuthEndpoints:
    try:
        return _ENDPOINTS[_tag(system)]
    except KeyError:
        raise UnsupportedSystemError(_tag(system)) from None


# ── State tracker ───────────────────────────────────────────────────────────


class OAuthStateTracker:
    """Issues and validates short-lived OAuth ``state`` tokens.

    Args:
        state_ttl_seconds: Lifetime of an issued state (default OAUTH_STATE_TTL_SECONDS).
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        state_ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        ttl = state_ttl_seconds if state_ttl_seconds is not None else get_settings().OAUTH_STATE_TTL_SECONDS
        self._ttl = timedelta(seconds=ttl)
        self._clock = clock
        self._states: dict[str, AuthorizationState] = {}

    def generate_auth_url(self, config: CRMConfig, user_id: str) -> AuthorizationUrl:
        """Mint a state token and build the vendor's authorization URL."""
        system = config.system_tag
        if system not in _AUTHORIZE:
            raise UnsupportedSystemError(system, context="CRM system for OAuth")

        state = secrets.token_hex(32)
        now = self._clock()
        self._states[state] = AuthorizationState(
            state=state,
            system=system,
            user_id=user_id,
            redirect_uri=config.redirect_uri,
            created_at=now,
            expires_at=now + self._ttl,
        )

        path, extra = _AUTHORIZE[system]
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "state": state,
            "response_type": "code",
        }
        if config.scopes:
            params["scope"] = " ".join(config.scopes)
        params.update(extra)

        url = httpx.URL(f"{config.base_url.rstrip('/')}{path}", params=params)
        logger.info("oauth.state_issued", system=system, user_id=user_id, state=mask_token(state))
        return AuthorizationUrl(url=str(url), state=state)

    def validate_state(self, state: str) -> AuthorizationState | None:
        """Return the stored state if present and unexpired. Does not consume it."""
        stored = self._states.get(state)
        if stored is None:
            logger.warning("oauth.state_unknown", state=mask_token(state))
            return None
        if self._clock() > stored.expires_at:
            del self._states[state]
            logger.warning("oauth.state_expired", state=mask_token(state))
            return None
        return stored

    def complete_oauth(self, state: str) -> None:
        """Consume a state after a successful flow."""
        self._states.pop(state, None)
        logger.info("oauth.flow_completed", state=mask_token(state))

    def validate_callback(
        self,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> OAuthCallbackResult:
        if error:
            return OAuthCallbackResult(
                is_valid=False,
                error=f"OAuth error: {error} - {error_description or 'Unknown error'}",
            )
        if not code:
            return OAuthCallbackResult(is_valid=False, error="Missing authorization code in OAuth callback")
        if not state:
            return OAuthCallbackResult(is_valid=False, error="Missing state parameter in OAuth callback")
        stored = self.validate_state(state)
        if stored is None:
            return OAuthCallbackResult(is_valid=False, error="Invalid or expired OAuth state")
        return OAuthCallbackResult(is_valid=True, state=stored)

    def cleanup_expired_states(self) -> int:
        now = self._clock()
        expired = [key for key, stored in self._states.items() if now > stored.expires_at]
        for key in expired:
            del self._states[key]
        if expired:
            logger.info("oauth.states_cleaned", count=len(expired))
        return len(expired)

    def get_pending_states(self) -> list[AuthorizationState]:
        return list(self._states.values())

    def clear_all_states(self) -> None:
        self._states.clear()
        logger.info("oauth.states_cleared")

    def needs_refresh(self, tokens: AuthTokens) -> bool:
        """True when the tokens expire within five minutes. Unknown expiry never needs refresh."""
        if tokens.expires_at is None:
            return False
        return tokens.expires_at <= self._clock() + REFRESH_WINDOW

    get_default_scopes = staticmethod(get_default_scopes)
    get_oauth_endpoints = staticmethod(get_oauth_endpoints)


# ── Periodic sweep ──────────────────────────────────────────────────────────


class OAuthStateSweeper:
    """Runs tracker.cleanup_expired_states() on an APScheduler interval job.

    Disabled in the test environment: start() then returns False without
    creating a scheduler.

    Args:
        tracker: Tracker whose expired states are reaped.
        interval_seconds: Sweep interval (default OAUTH_CLEANUP_INTERVAL_SECONDS).
        enabled: Override for the environment check.
    """

    def __init__(
        self,
        tracker: OAuthStateTracker,
        interval_seconds: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._tracker = tracker
        self._interval = interval_seconds or settings.OAUTH_CLEANUP_INTERVAL_SECONDS
        self._enabled = (not settings.is_test) if enabled is None else enabled
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the sweep. Returns False when disabled or the scheduler fails to start."""
        if not self._enabled:
            logger.info("oauth_sweeper.disabled")
            return False

        try:
            self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
            self._scheduler.add_job(
                self._tracker.cleanup_expired_states,
                trigger=IntervalTrigger(seconds=self._interval),
                id="oauth_state_cleanup",
                name="Reap expired OAuth authorization states",
                replace_existing=True,
            )
            self._scheduler.start()
            self._started = True
            logger.info("oauth_sweeper.started", interval_seconds=self._interval)
            return True
        except Exception as exc:
            logger.warning("oauth_sweeper.start_failed", error=str(exc))
            return False

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("oauth_sweeper.stopped")

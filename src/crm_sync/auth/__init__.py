"""OAuth authorization-code support for CRM connections."""

from src.crm_sync.auth.oauth import (
    AuthorizationState,
    AuthorizationUrl,
    OAuthCallbackResult,
    OAuthEndpoints,
    OAuthStateSweeper,
    OAuthStateTracker,
    get_default_scopes,
    get_oauth_endpoints,
)

__all__ = [
    "AuthorizationState",
    "AuthorizationUrl",
    "OAuthCallbackResult",
    "OAuthEndpoints",
    "OAuthStateSweeper",
    "OAuthStateTracker",
    "get_default_scopes",
    "get_oauth_endpoints",
]

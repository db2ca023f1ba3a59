"""Authentication for Microsoft Graph.

Provides the OAuth2 flows (PKCE authorization code and device code), the
token broker that turns a stored refresh token into a live access token,
and the interactive login orchestration used by `mo auth add`.

Usage:
    from mocli.auth import OAuthFlow, TokenBroker
    from mocli.config import load_credentials
    from mocli.vault import open_token_store

    flow = OAuthFlow(load_credentials("default"))
    store, backend = open_token_store()
    broker = TokenBroker(store, flow)

    token = broker.get_access_token("default", "user@example.com")
"""

from mocli.auth.broker import IdentityContext, TokenBroker, resolve_identity
from mocli.auth.oauth import (
    DEFAULT_SCOPES,
    AuthorizationSession,
    DeviceCodeSession,
    OAuthFlow,
    TokenResponse,
    parse_redirect_callback,
)

__all__ = [
    "DEFAULT_SCOPES",
    "AuthorizationSession",
    "DeviceCodeSession",
    "IdentityContext",
    "OAuthFlow",
    "TokenBroker",
    "TokenResponse",
    "parse_redirect_callback",
    "resolve_identity",
]

"""Access token broker.

Turns the stored refresh token for (client, account) into a live access
token. Every call performs a refresh-grant round trip; access tokens are not
cached between calls. When the provider rotates the refresh token, the new
one is written back before the access token is returned.

Usage:
    from mocli.auth.broker import resolve_identity

    identity = resolve_identity()
    token = identity.broker().get_access_token(identity.client, identity.account)
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from mocli.auth.oauth import DEFAULT_SCOPES, OAuthFlow
from mocli.config import EnvLookup, load_app_config, load_credentials
from mocli.config_schema import DEFAULT_CLIENT, AppConfig, Credentials, normalize_email
from mocli.core.errors import (
    AuthenticationRequired,
    ConfigLoadError,
    ConfigValidationError,
    PasswordRequiredError,
    SecretBackendError,
    SecretNotFoundError,
    TokenPersistenceError,
    UsageError,
)
from mocli.core.logging import get_logger
from mocli.vault.base import StoredToken
from mocli.vault.store import TokenStore, open_token_store, password_required_hint

logger = get_logger(__name__)

REFRESH_TIMEOUT = 30.0


class TokenBroker:
    """Produces access tokens from stored refresh tokens.

    Attributes:
        store: TokenStore holding refresh tokens
        flow: OAuthFlow for the client the accounts belong to
        scopes: Scopes requested on refresh
    """

    def __init__(self, store: TokenStore, flow: OAuthFlow, scopes: list[str] | None = None):
        self.store = store
        self.flow = flow
        self.scopes = scopes or DEFAULT_SCOPES

    def get_access_token(self, client: str, account: str) -> str:
        """Refresh and return an access token for the account.

        Args:
            client: Client name the account was authorized under
            account: Account email

        Returns:
            Access token string

        Raises:
            AuthenticationRequired: If no refresh token is stored
            OAuthError: If the provider rejects the refresh (code preserved)
            TransientFailure: If the identity provider is unreachable
            TokenPersistenceError: If a rotated refresh token cannot be saved
            SecretBackendError: If the vault cannot be read
        """
        try:
            stored = self.store.get_token(client, account)
        except SecretNotFoundError as e:
            raise AuthenticationRequired(
                f"no stored token for {account}",
                hint="Run 'mo auth add <email>' to authorize.",
            ) from e

        refreshed = self.flow.refresh_access_token(
            stored.refresh_token, self.scopes, timeout=REFRESH_TIMEOUT
        )

        if refreshed.refresh_token and refreshed.refresh_token != stored.refresh_token:
            try:
                self.store.put_token(
                    client,
                    account,
                    StoredToken(refresh_token=refreshed.refresh_token, scope=refreshed.scope),
                )
            except (SecretBackendError, UsageError, OSError) as e:
                logger.error("Rotated refresh token could not be saved", error=str(e))
                raise TokenPersistenceError(
                    "could not persist refreshed token",
                    hint=(
                        f"Refresh token rotated but save failed ({e}). Re-authenticate with "
                        f"'mo auth add {account}' after fixing the secrets backend."
                    ),
                ) from e
            logger.debug("Refresh token rotated")

        return refreshed.access_token


@dataclass(frozen=True, slots=True)
class IdentityContext:
    """Everything needed to act as one account of one client."""

    account: str
    client: str
    credentials: Credentials
    store: TokenStore
    config: AppConfig
    lookup: EnvLookup | None = os.environ.get

    def broker(self) -> TokenBroker:
        return TokenBroker(self.store, OAuthFlow(self.credentials, lookup=self.lookup))


def select_client(config: AppConfig, client: str = "") -> str:
    """Explicit client, else the configured default, else "default"."""
    return client.strip() or config.default_client.strip() or DEFAULT_CLIENT


def select_account(config: AppConfig, client: str, account: str = "") -> str:
    """Explicit account, else the default account, else the client's only account."""
    if normalize_email(account):
        return normalize_email(account)
    if config.default_account:
        return config.default_account
    accounts = config.accounts_for_client(client)
    if len(accounts) == 1:
        return accounts[0].email
    return ""


def resolve_identity(
    lookup: EnvLookup | None = os.environ.get,
    client: str = "",
    account: str = "",
) -> IdentityContext:
    """Resolve the client, account, credentials and token store for a call.

    Raises:
        AuthenticationRequired: If no account is selected, credentials are
            missing or the secrets backend cannot be opened
        ConfigLoadError / ConfigValidationError: If config.yaml is invalid
    """
    config = load_app_config(lookup=lookup)
    client = select_client(config, client)
    account = select_account(config, client, account)
    if not account:
        raise AuthenticationRequired(
            "no account selected",
            hint="Use --account or run 'mo auth add <email>' first.",
        )

    try:
        credentials = load_credentials(client, lookup)
    except (ConfigLoadError, ConfigValidationError) as e:
        raise AuthenticationRequired(
            f"missing credentials for client {client!r}",
            hint="Run 'mo --client <name> auth credentials <path>' first.",
        ) from e

    try:
        store, _ = open_token_store(lookup, config)
    except PasswordRequiredError as e:
        raise AuthenticationRequired(
            "could not open secrets backend", hint=password_required_hint()
        ) from e
    except (SecretBackendError, UsageError) as e:
        raise AuthenticationRequired("could not open secrets backend", hint=e.message) from e

    return IdentityContext(
        account=account,
        client=client,
        credentials=credentials,
        store=store,
        config=config,
        lookup=lookup,
    )

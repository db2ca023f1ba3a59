"""Account lifecycle: sign in, inspect and remove authorized accounts.

These are the operations behind `mo auth add|status|list|remove`. Each one
loads config, credentials and the token store fresh, does its work and
returns a JSON-serializable summary.
"""

from __future__ import annotations

import os
import threading
import uuid
from collections.abc import Callable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from mocli.auth.browser import DEFAULT_LOGIN_TIMEOUT, run_browser_authorization
from mocli.auth.broker import select_account, select_client
from mocli.auth.oauth import DeviceCodeSession, OAuthFlow, TokenResponse
from mocli.config import (
    EnvLookup,
    load_app_config,
    load_credentials,
    save_app_config,
)
from mocli.config_schema import AppConfig, normalize_email
from mocli.core.errors import (
    AuthenticationRequired,
    ConfigLoadError,
    ConfigValidationError,
    MocliError,
    PasswordRequiredError,
    SecretBackendError,
    SecretNotFoundError,
    UsageError,
)
from mocli.core.logging import get_logger, set_auth_session_id
from mocli.graph.client import fetch_profile_email
from mocli.vault.base import BackendInfo, StoredToken
from mocli.vault.store import TokenStore, open_token_store, password_required_hint, resolve_backend

logger = get_logger(__name__)
console = Console(stderr=True)

ProfileLookup = Callable[[str, EnvLookup | None], str]


def _display_device_prompt(session: DeviceCodeSession) -> None:
    """Show the verification URL and user code, plus the provider's own instructions."""
    panel_content = (
        f"To authenticate, open a browser and go to:\n\n"
        f"  [bold blue]{session.verification_uri}[/bold blue]\n\n"
        f"Enter this code: [bold green]{session.user_code}[/bold green]\n\n"
    )
    if session.message:
        panel_content += f"{escape(session.message)}\n\n"
    elif session.verification_uri_complete:
        panel_content += (
            f"Or open this link to skip entering the code:\n\n"
            f"  [bold blue]{session.verification_uri_complete}[/bold blue]\n\n"
        )
    panel_content += "Waiting for authentication..."
    console.print()
    console.print(
        Panel(panel_content, title="Microsoft Authentication Required", border_style="bright_blue")
    )
    console.print()


def run_device_authorization(
    flow: OAuthFlow,
    scopes: list[str] | None = None,
    cancel_event: threading.Event | None = None,
) -> TokenResponse:
    """Start a device-code login, prompt the user and poll until done."""
    session = flow.start_device_code_session(scopes)
    _display_device_prompt(session)
    return flow.poll_device_code_until_authorized(session, scopes, cancel_event=cancel_event)


def _open_store(lookup: EnvLookup | None, config: AppConfig) -> tuple[TokenStore, BackendInfo]:
    try:
        return open_token_store(lookup, config)
    except PasswordRequiredError as e:
        raise AuthenticationRequired(
            "could not open secrets backend", hint=password_required_hint()
        ) from e
    except (SecretBackendError, UsageError) as e:
        raise AuthenticationRequired("could not open secrets backend", hint=e.message) from e


def complete_login(
    store: TokenStore,
    backend_info: BackendInfo,
    client: str,
    requested_email: str,
    token: TokenResponse,
    lookup: EnvLookup | None = os.environ.get,
    profile_lookup: ProfileLookup | None = None,
) -> dict:
    """Persist a fresh login and record the account in config.

    The account email is taken from the Graph profile when available, so a
    login_hint that differs from the signed-in user is corrected.

    Raises:
        AuthenticationRequired: If the provider returned no refresh token
        SecretBackendError: If the token cannot be stored
    """
    if not token.refresh_token:
        raise AuthenticationRequired(
            "token response did not include a refresh token",
            hint="Re-run with --force-consent and ensure offline_access scope is granted.",
        )

    profile_lookup = profile_lookup or fetch_profile_email
    resolved_email = requested_email
    try:
        resolved_email = profile_lookup(token.access_token, lookup)
    except MocliError as e:
        logger.warning("Profile lookup failed, using requested email", error=str(e))

    store.put_token(
        client, resolved_email, StoredToken(refresh_token=token.refresh_token, scope=token.scope)
    )

    config = load_app_config(lookup=lookup)
    config.upsert_account(client, resolved_email)
    if not config.default_client:
        config.default_client = client
    if not config.default_account:
        config.default_account = resolved_email
    save_app_config(config, lookup=lookup)

    logger.info("Account authorized", client=client, backend=backend_info.resolved)
    return {
        "authorized": True,
        "account": resolved_email,
        "client": client,
        "scope": token.scope,
        "backend": backend_info.to_dict(),
    }


def add_account(
    email: str,
    client: str = "",
    device: bool = False,
    timeout: float = DEFAULT_LOGIN_TIMEOUT,
    force_consent: bool = False,
    lookup: EnvLookup | None = os.environ.get,
    open_browser: Callable[[str], bool] | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """Sign an account in with the browser (default) or device-code flow.

    Raises:
        UsageError: For an invalid email or a failed browser handshake
        AuthenticationRequired: For missing credentials, an unusable secrets
            backend, or a failed/declined/cancelled login
    """
    email = normalize_email(email)
    if not email or "@" not in email:
        raise UsageError("invalid email", hint="Use a valid account email.")

    config = load_app_config(lookup=lookup)
    client = select_client(config, client)
    try:
        credentials = load_credentials(client, lookup)
    except (ConfigLoadError, ConfigValidationError) as e:
        raise AuthenticationRequired(
            f"missing credentials for client {client!r}",
            hint="Run 'mo auth credentials <path>' first.",
        ) from e
    store, backend_info = _open_store(lookup, config)

    flow = OAuthFlow(credentials, lookup=lookup)
    set_auth_session_id(str(uuid.uuid4()))
    try:
        logger.info("Starting login", client=client, device=device)
        if device:
            token = run_device_authorization(flow, cancel_event=cancel_event)
        else:
            kwargs = {"open_browser": open_browser} if open_browser is not None else {}
            token = run_browser_authorization(
                flow,
                email,
                client=client,
                timeout=timeout,
                force_consent=force_consent,
                shutdown_event=cancel_event,
                **kwargs,
            )
        return complete_login(store, backend_info, client, email, token, lookup=lookup)
    finally:
        set_auth_session_id(None)


def remove_account(email: str, client: str = "", lookup: EnvLookup | None = os.environ.get) -> dict:
    """Delete an account's stored token and forget it in config."""
    email = normalize_email(email)
    if not email:
        raise UsageError("invalid email", hint="Usage: mo auth remove <email>")

    config = load_app_config(lookup=lookup)
    client = select_client(config, client)
    store, _ = _open_store(lookup, config)
    store.delete_token(client, email)

    config.remove_account(client, email)
    save_app_config(config, lookup=lookup)
    logger.info("Account removed", client=client)
    return {"removed": True, "email": email, "client": client}


def auth_status(
    client: str = "", account: str = "", lookup: EnvLookup | None = os.environ.get
) -> dict:
    """Report credentials, backend and token availability without failing."""
    config = load_app_config(lookup=lookup)
    client = select_client(config, client)
    account = select_account(config, client, account)

    has_credentials = True
    try:
        load_credentials(client, lookup)
    except (ConfigLoadError, ConfigValidationError):
        has_credentials = False

    result: dict = {
        "client": client,
        "account": account,
        "default_account": config.default_account,
        "default_client": config.default_client,
        "has_credentials": has_credentials,
        "credentials_source": "file" if has_credentials else "missing",
        "token_available": False,
        "accounts": [a.model_dump() for a in config.accounts],
    }

    try:
        result["keyring_backend"] = resolve_backend(lookup, config).to_dict()
    except MocliError as e:
        result["keyring_backend_error"] = e.message

    if account:
        try:
            store, _ = open_token_store(lookup, config)
            store.get_token(client, account)
            result["token_available"] = True
        except SecretNotFoundError:
            pass
        except MocliError as e:
            result["store_error"] = e.message
    return result


def list_accounts(client: str = "", lookup: EnvLookup | None = os.environ.get) -> dict:
    config = load_app_config(lookup=lookup)
    items = [
        {"email": a.email, "client": a.client, "default": a.email == config.default_account}
        for a in config.accounts
    ]
    return {"items": items, "selected_client": select_client(config, client)}

"""OAuth2 flows against the Microsoft identity platform (v2.0 endpoints).

Implements the two interactive grants mocli supports plus refresh:
- Authorization code with PKCE (S256), completed through a loopback redirect
- Device code, polled until the user finishes signing in elsewhere
- Refresh token, used on every Graph call to mint a fresh access token

All token-endpoint calls are form-encoded POSTs with a bounded timeout.
Provider error bodies (``{"error", "error_description"}``) become OAuthError
with the code and description preserved; anything else that goes wrong on the
wire is a TransientFailure.

Usage:
    from mocli.auth.oauth import OAuthFlow
    from mocli.config import load_credentials

    flow = OAuthFlow(load_credentials("default"))
    session = flow.start_device_code_session()
    token = flow.poll_device_code_until_authorized(session)
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, quote, urlencode, urlparse

import requests

from mocli.config import EnvLookup, env_str
from mocli.config_schema import DEFAULT_TENANT, Credentials
from mocli.core.errors import (
    AuthorizationDenied,
    DeviceCodeCancelled,
    DeviceCodeDeclined,
    DeviceCodeExpired,
    DeviceCodeRejected,
    OAuthError,
    TransientFailure,
    UsageError,
)
from mocli.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AUTH_BASE_URL = "https://login.microsoftonline.com"

DEFAULT_SCOPES = [
    "openid",
    "profile",
    "offline_access",
    "User.Read",
    "Mail.Read",
    "Mail.Send",
    "Calendars.ReadWrite",
    "Tasks.ReadWrite",
    "Files.ReadWrite",
]

TOKEN_REQUEST_TIMEOUT = 20.0
SESSION_TTL = timedelta(minutes=10)

# Random bytes before base64url encoding
STATE_BYTES = 24
VERIFIER_BYTES = 48

DEFAULT_DEVICE_INTERVAL = 5
DEFAULT_DEVICE_EXPIRES_IN = 900
SLOW_DOWN_INCREMENT = 5

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

# Device polling outcomes that end the flow, keyed by provider error code
_TERMINAL_DEVICE_ERRORS: dict[str, tuple[type[OAuthError], str]] = {
    "authorization_declined": (
        DeviceCodeDeclined,
        "Run 'mo auth add <email> --device' again and approve the request.",
    ),
    "expired_token": (
        DeviceCodeExpired,
        "The code expired before sign-in completed. Start a new device login.",
    ),
    "bad_verification_code": (
        DeviceCodeRejected,
        "The device code was rejected. Start a new device login.",
    ),
}


@dataclass(frozen=True, slots=True)
class AuthorizationSession:
    """One PKCE authorization attempt.

    The verifier stays on this machine; only its S256 challenge is placed in
    ``auth_url``. A session is valid for a single callback.
    """

    state: str
    verifier: str
    redirect_uri: str
    auth_url: str
    email: str
    client: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at


@dataclass(frozen=True, slots=True)
class DeviceCodeSession:
    """Device authorization response from the devicecode endpoint."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str = ""
    expires_in: int = DEFAULT_DEVICE_EXPIRES_IN
    interval: int = DEFAULT_DEVICE_INTERVAL
    message: str = ""

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> DeviceCodeSession:
        """Build a session, applying defaults for a missing interval or expiry.

        Raises:
            OAuthError: If device_code or user_code is missing
        """
        device_code = str(data.get("device_code") or "").strip()
        user_code = str(data.get("user_code") or "").strip()
        if not device_code or not user_code:
            raise OAuthError(
                "invalid_device_code_response",
                "device code response missing required fields",
            )
        return cls(
            device_code=device_code,
            user_code=user_code,
            verification_uri=str(data.get("verification_uri") or ""),
            verification_uri_complete=str(data.get("verification_uri_complete") or ""),
            expires_in=_positive_int(data.get("expires_in"), DEFAULT_DEVICE_EXPIRES_IN),
            interval=_positive_int(data.get("interval"), DEFAULT_DEVICE_INTERVAL),
            message=str(data.get("message") or ""),
        )


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Successful token endpoint response. ``refresh_token`` may be empty."""

    access_token: str
    refresh_token: str = ""
    scope: str = ""
    expires_in: int = 0
    token_type: str = ""

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> TokenResponse:
        """Build a token response.

        Raises:
            OAuthError: If access_token is missing or blank
        """
        access_token = str(data.get("access_token") or "").strip()
        if not access_token:
            raise OAuthError("invalid_token_response", "token response missing access_token")
        return cls(
            access_token=access_token,
            refresh_token=str(data.get("refresh_token") or "").strip(),
            scope=str(data.get("scope") or ""),
            expires_in=_positive_int(data.get("expires_in"), 0),
            token_type=str(data.get("token_type") or ""),
        )


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def random_token(num_bytes: int) -> str:
    """Return ``num_bytes`` of CSPRNG output as unpadded base64url."""
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode().rstrip("=")


def code_challenge(verifier: str) -> str:
    """Compute the PKCE S256 challenge: base64url(SHA256(verifier)), unpadded."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def parse_redirect_callback(raw_url: str) -> tuple[str, str]:
    """Extract (code, state) from the URL the provider redirected to.

    Args:
        raw_url: Full redirect URL or request path with query string

    Returns:
        Tuple of (authorization code, state)

    Raises:
        AuthorizationDenied: If the callback carries ``error``
        UsageError: If code or state is missing
    """
    query = parse_qs(urlparse(raw_url.strip()).query)

    def first(name: str) -> str:
        return query.get(name, [""])[0].strip()

    error = first("error")
    if error:
        raise AuthorizationDenied(
            error,
            first("error_description"),
            hint="Sign-in was not completed in the browser. Re-run 'mo auth add'.",
        )
    code = first("code")
    state = first("state")
    if not code:
        raise UsageError("redirect URL does not include authorization code")
    if not state:
        raise UsageError("redirect URL does not include state")
    return code, state


def _oauth_hint(error_code: str, description: str) -> str:
    """Map common provider errors to actionable guidance."""
    if "AADSTS7000218" in description:
        return (
            "Public client flows are not enabled for this application. In Azure Portal: "
            "App registrations → Your app → Authentication → Advanced settings → "
            "set 'Allow public client flows' to Yes."
        )
    if error_code == "invalid_grant":
        return "The stored sign-in is no longer valid. Run 'mo auth add <email>' to sign in again."
    if error_code in ("consent_required", "interaction_required", "invalid_scope"):
        return "Re-run 'mo auth add <email> --force-consent' and grant the requested permissions."
    if error_code in ("invalid_client", "unauthorized_client"):
        return "Check the client_id and tenant with 'mo auth list-credentials'."
    return ""


class OAuthFlow:
    """OAuth2 grants for one registered client.

    Endpoint base URLs are resolved on every call from ``lookup`` so a changed
    MO_AUTH_BASE_URL takes effect without rebuilding the object.

    Attributes:
        credentials: Client ID and tenant
        lookup: Environment lookup used for MO_AUTH_BASE_URL
        session: requests session used for token-endpoint calls
    """

    def __init__(
        self,
        credentials: Credentials,
        lookup: EnvLookup | None = os.environ.get,
        session: requests.Session | None = None,
    ):
        self.credentials = credentials
        self.lookup = lookup
        self.session = session or requests.Session()

    def endpoint(self, name: str) -> str:
        """Build ``{authBase}/{tenant}/oauth2/v2.0/{name}``."""
        auth_base = env_str(self.lookup, "MO_AUTH_BASE_URL", DEFAULT_AUTH_BASE_URL).rstrip("/")
        tenant = self.credentials.tenant.strip() or DEFAULT_TENANT
        return f"{auth_base}/{quote(tenant, safe='')}/oauth2/v2.0/{name}"

    def start_authorization_session(
        self,
        account_hint: str,
        redirect_uri: str,
        force_consent: bool = False,
        scopes: list[str] | None = None,
        client: str = "",
    ) -> AuthorizationSession:
        """Create a PKCE authorization session and its authorize URL.

        Args:
            account_hint: Email passed as login_hint
            redirect_uri: Loopback URI the provider will redirect to
            force_consent: Add prompt=consent to re-show the consent screen
            scopes: Scopes to request (DEFAULT_SCOPES when empty)
            client: Client name the session belongs to

        Raises:
            UsageError: If redirect_uri is empty
        """
        if not redirect_uri.strip():
            raise UsageError("redirect URI is required")
        scopes = scopes or DEFAULT_SCOPES

        state = random_token(STATE_BYTES)
        verifier = random_token(VERIFIER_BYTES)

        params = {
            "client_id": self.credentials.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
            "login_hint": account_hint,
        }
        if force_consent:
            params["prompt"] = "consent"

        return AuthorizationSession(
            state=state,
            verifier=verifier,
            redirect_uri=redirect_uri,
            auth_url=f"{self.endpoint('authorize')}?{urlencode(params)}",
            email=account_hint.strip().lower(),
            client=client.strip(),
            expires_at=datetime.now(UTC) + SESSION_TTL,
        )

    def exchange_authorization_code(
        self,
        code: str,
        redirect_uri: str,
        verifier: str,
        scopes: list[str] | None = None,
    ) -> TokenResponse:
        """Redeem an authorization code together with its PKCE verifier."""
        if not code.strip():
            raise UsageError("authorization code is required")
        if not verifier.strip():
            raise UsageError("code verifier is required")
        form = {
            "grant_type": "authorization_code",
            "client_id": self.credentials.client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
        }
        return TokenResponse.from_response(self._post_form("token", form))

    def start_device_code_session(self, scopes: list[str] | None = None) -> DeviceCodeSession:
        """Request a device code and user code from the devicecode endpoint."""
        form = {
            "client_id": self.credentials.client_id,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
        }
        session = DeviceCodeSession.from_response(self._post_form("devicecode", form))
        logger.info(
            "Device code issued",
            verification_uri=session.verification_uri,
            interval=session.interval,
            expires_in=session.expires_in,
        )
        return session

    def exchange_device_code(
        self, device_code: str, scopes: list[str] | None = None
    ) -> TokenResponse:
        """Make a single device-code token request."""
        if not device_code.strip():
            raise UsageError("device code is required")
        form = {
            "grant_type": DEVICE_CODE_GRANT_TYPE,
            "client_id": self.credentials.client_id,
            "device_code": device_code,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
        }
        return TokenResponse.from_response(self._post_form("token", form))

    def poll_device_code_until_authorized(
        self,
        session: DeviceCodeSession,
        scopes: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TokenResponse:
        """Poll the token endpoint until the device code is authorized.

        ``authorization_pending`` keeps polling and ``slow_down`` adds five
        seconds to the interval. Declined, expired and rejected codes end the
        flow with their own error types. Any other provider error is raised
        unchanged without retrying.

        Args:
            session: Session returned by start_device_code_session
            scopes: Scopes to request
            cancel_event: Set by the caller to stop waiting; observed during
                the sleep between attempts

        Raises:
            DeviceCodeCancelled: On cancellation or when the session's expiry
                window passes (reason "cancelled" or "deadline")
            DeviceCodeDeclined / DeviceCodeExpired / DeviceCodeRejected
            OAuthError: For unrecognized provider errors
            TransientFailure: For network failures
        """
        cancel_event = cancel_event or threading.Event()
        interval = session.interval if session.interval > 0 else DEFAULT_DEVICE_INTERVAL
        expires_in = session.expires_in if session.expires_in > 0 else DEFAULT_DEVICE_EXPIRES_IN
        deadline = time.monotonic() + expires_in
        attempts = 0

        while True:
            if cancel_event.is_set():
                raise DeviceCodeCancelled("device authorization was cancelled", reason="cancelled")
            if time.monotonic() >= deadline:
                raise DeviceCodeCancelled(
                    "device code expired before authorization completed",
                    reason="deadline",
                    hint="Start a new device login and finish signing in within the time limit.",
                )

            attempts += 1
            try:
                token = self.exchange_device_code(session.device_code, scopes)
            except OAuthError as e:
                if e.error_code == "authorization_pending":
                    pass
                elif e.error_code == "slow_down":
                    interval += SLOW_DOWN_INCREMENT
                    logger.debug("Device polling slowed down", interval=interval)
                elif e.error_code in _TERMINAL_DEVICE_ERRORS:
                    error_cls, hint = _TERMINAL_DEVICE_ERRORS[e.error_code]
                    logger.warning(
                        "Device authorization ended",
                        error=e.error_code,
                        attempts=attempts,
                    )
                    raise error_cls(e.error_code, e.description, hint=hint) from e
                else:
                    raise
            else:
                logger.info("Device authorization complete", attempts=attempts)
                return token

            if cancel_event.wait(interval):
                raise DeviceCodeCancelled("device authorization was cancelled", reason="cancelled")

    def refresh_access_token(
        self,
        refresh_token: str,
        scopes: list[str] | None = None,
        timeout: float = TOKEN_REQUEST_TIMEOUT,
    ) -> TokenResponse:
        """Redeem a refresh token for a new access token.

        The response may carry a rotated refresh token; persisting it is the
        caller's job.
        """
        if not refresh_token.strip():
            raise UsageError("refresh token is required")
        form = {
            "grant_type": "refresh_token",
            "client_id": self.credentials.client_id,
            "refresh_token": refresh_token,
            "scope": " ".join(scopes or DEFAULT_SCOPES),
        }
        return TokenResponse.from_response(self._post_form("token", form, timeout=timeout))

    def _post_form(
        self, name: str, form: dict[str, str], timeout: float = TOKEN_REQUEST_TIMEOUT
    ) -> dict[str, Any]:
        """POST form data to an identity endpoint and return the JSON body.

        Raises:
            OAuthError: If the provider returned an OAuth error body
            TransientFailure: For network errors, unexpected statuses or bodies
        """
        url = self.endpoint(name)
        logger.debug(
            "Identity endpoint request",
            endpoint=name,
            grant_type=form.get("grant_type"),
            client_id=self.credentials.client_id[:8] + "...",
        )

        try:
            response = self.session.post(
                url,
                data=form,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                timeout=timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientFailure(
                f"{name} request failed: {e}",
                hint="Check your network connection and try again.",
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not 200 <= response.status_code < 300:
            if isinstance(body, dict) and body.get("error"):
                error_code = str(body["error"])
                description = str(body.get("error_description") or "")
                # authorization_pending is routine during device polling
                if error_code not in ("authorization_pending", "slow_down"):
                    logger.warning(
                        "Identity provider returned an error",
                        endpoint=name,
                        status_code=response.status_code,
                        error=error_code,
                    )
                raise OAuthError(error_code, description, hint=_oauth_hint(error_code, description))
            raise TransientFailure(
                f"{name} request failed with status {response.status_code}",
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            raise TransientFailure(f"could not parse {name} response")
        return body

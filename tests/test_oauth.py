"""Tests for the OAuth2 flows in mocli.auth.oauth.

Covers PKCE material, redirect parsing, device-code polling and the
refresh grant. HTTP is mocked at the requests.Session level.
"""

import base64
import hashlib
import threading
from urllib.parse import parse_qs, urlparse
from unittest.mock import MagicMock, patch

import pytest
import requests

from mocli.auth.oauth import (
    DEFAULT_SCOPES,
    DEVICE_CODE_GRANT_TYPE,
    DeviceCodeSession,
    OAuthFlow,
    TokenResponse,
    code_challenge,
    parse_redirect_callback,
    random_token,
)
from mocli.core.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    DeviceCodeCancelled,
    DeviceCodeDeclined,
    DeviceCodeExpired,
    DeviceCodeRejected,
    OAuthError,
    TransientFailure,
    UsageError,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _b64_len(num_bytes: int) -> int:
    """Length of unpadded base64url text for num_bytes of input."""
    return len(base64.urlsafe_b64encode(b"\0" * num_bytes).rstrip(b"="))


def _device_session(interval: int = 5, expires_in: int = 900) -> DeviceCodeSession:
    return DeviceCodeSession(
        device_code="device-code-1",
        user_code="ABCD-EFGH",
        verification_uri="https://microsoft.com/devicelogin",
        interval=interval,
        expires_in=expires_in,
    )


def _never_cancelled() -> MagicMock:
    """A threading.Event stand-in whose wait returns immediately."""
    event = MagicMock(spec=threading.Event)
    event.is_set.return_value = False
    event.wait.return_value = False
    return event


@pytest.fixture
def flow(credentials, mock_session) -> OAuthFlow:
    return OAuthFlow(credentials, lookup={}.get, session=mock_session)


# ---------------------------------------------------------------------------
# Tests: PKCE material and authorize URL
# ---------------------------------------------------------------------------


class TestPkce:
    """Tests for state, verifier and challenge generation."""

    def test_random_token_lengths(self):
        """State uses 24 random bytes and verifier 48, base64url without padding."""
        state = random_token(24)
        verifier = random_token(48)
        assert len(state) == _b64_len(24)
        assert len(verifier) == _b64_len(48)
        assert "=" not in state and "=" not in verifier

    def test_random_tokens_are_unique(self):
        """Each call draws fresh randomness."""
        tokens = {random_token(24) for _ in range(50)}
        assert len(tokens) == 50

    def test_code_challenge_is_s256(self):
        """Challenge is base64url(SHA256(verifier)) without padding."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .decode()
            .rstrip("=")
        )
        assert code_challenge(verifier) == expected
        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_authorization_session_url(self, flow: OAuthFlow):
        """Authorize URL carries the challenge, state and login hint."""
        session = flow.start_authorization_session(
            "User@Example.com", "http://127.0.0.1:5000/oauth2/callback", client="work"
        )
        parsed = urlparse(session.auth_url)
        query = parse_qs(parsed.query)

        assert parsed.netloc == "login.microsoftonline.com"
        assert parsed.path == "/common/oauth2/v2.0/authorize"
        assert query["state"] == [session.state]
        assert query["code_challenge"] == [code_challenge(session.verifier)]
        assert query["code_challenge_method"] == ["S256"]
        assert query["login_hint"] == ["User@Example.com"]
        assert query["scope"] == [" ".join(DEFAULT_SCOPES)]
        assert "prompt" not in query
        assert session.verifier not in session.auth_url
        assert session.email == "user@example.com"
        assert session.client == "work"
        assert not session.is_expired()

    def test_force_consent_adds_prompt(self, flow: OAuthFlow):
        session = flow.start_authorization_session(
            "user@example.com", "http://127.0.0.1:5000/oauth2/callback", force_consent=True
        )
        assert parse_qs(urlparse(session.auth_url).query)["prompt"] == ["consent"]

    def test_sessions_are_unique(self, flow: OAuthFlow):
        """Two sessions never share state or verifier."""
        a = flow.start_authorization_session("a@example.com", "http://127.0.0.1:1/cb")
        b = flow.start_authorization_session("a@example.com", "http://127.0.0.1:1/cb")
        assert a.state != b.state
        assert a.verifier != b.verifier

    def test_empty_redirect_uri_rejected(self, flow: OAuthFlow):
        with pytest.raises(UsageError):
            flow.start_authorization_session("user@example.com", "  ")

    def test_auth_base_url_override(self, credentials, mock_session):
        """MO_AUTH_BASE_URL replaces the identity host."""
        lookup = {"MO_AUTH_BASE_URL": "http://localhost:9999/"}.get
        flow = OAuthFlow(credentials, lookup=lookup, session=mock_session)
        assert flow.endpoint("token") == "http://localhost:9999/common/oauth2/v2.0/token"


# ---------------------------------------------------------------------------
# Tests: redirect callback parsing
# ---------------------------------------------------------------------------


class TestParseRedirectCallback:
    """Tests for parse_redirect_callback()."""

    def test_code_and_state(self):
        url = "http://127.0.0.1:5000/oauth2/callback?code=abc&state=xyz"
        assert parse_redirect_callback(url) == ("abc", "xyz")

    def test_access_denied(self):
        """A callback carrying error fails with the provider's code."""
        url = (
            "http://127.0.0.1:5000/oauth2/callback"
            "?error=access_denied&error_description=User+cancelled&state=xyz"
        )
        with pytest.raises(AuthorizationDenied) as exc_info:
            parse_redirect_callback(url)
        assert exc_info.value.error_code == "access_denied"
        assert exc_info.value.description == "User cancelled"

    def test_missing_state(self):
        with pytest.raises(UsageError, match="state"):
            parse_redirect_callback("http://127.0.0.1/oauth2/callback?code=abc")

    def test_missing_code(self):
        with pytest.raises(UsageError, match="authorization code"):
            parse_redirect_callback("http://127.0.0.1/oauth2/callback?state=xyz")


# ---------------------------------------------------------------------------
# Tests: token endpoint responses
# ---------------------------------------------------------------------------


class TestTokenRequests:
    """Tests for code exchange, refresh and error mapping."""

    def test_exchange_authorization_code(self, flow, mock_session, make_response):
        """Code exchange posts the verifier and returns the tokens."""
        mock_session.post.return_value = make_response(
            200, {"access_token": "at-1", "refresh_token": "rt-1", "scope": "User.Read"}
        )

        token = flow.exchange_authorization_code("code-1", "http://127.0.0.1:1/cb", "verifier-1")

        assert token == TokenResponse(access_token="at-1", refresh_token="rt-1", scope="User.Read")
        form = mock_session.post.call_args.kwargs["data"]
        assert form["grant_type"] == "authorization_code"
        assert form["code_verifier"] == "verifier-1"
        assert form["redirect_uri"] == "http://127.0.0.1:1/cb"

    def test_refresh_returns_access_token(self, flow, mock_session, make_response):
        mock_session.post.return_value = make_response(200, {"access_token": "at-2"})

        token = flow.refresh_access_token("rt-1", timeout=30)

        assert token.access_token == "at-2"
        assert token.refresh_token == ""
        form = mock_session.post.call_args.kwargs["data"]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "rt-1"
        assert mock_session.post.call_args.kwargs["timeout"] == 30

    def test_empty_access_token_rejected(self, flow, mock_session, make_response):
        mock_session.post.return_value = make_response(200, {"access_token": ""})
        with pytest.raises(OAuthError) as exc_info:
            flow.refresh_access_token("rt-1")
        assert exc_info.value.error_code == "invalid_token_response"

    def test_invalid_grant_keeps_code_and_description(self, flow, mock_session, make_response):
        """Provider errors become OAuthError with code, description and a hint."""
        mock_session.post.return_value = make_response(
            400, {"error": "invalid_grant", "error_description": "AADSTS70008: expired"}
        )
        with pytest.raises(OAuthError) as exc_info:
            flow.refresh_access_token("rt-1")

        error = exc_info.value
        assert isinstance(error, AuthenticationRequired)
        assert error.error_code == "invalid_grant"
        assert "AADSTS70008" in error.description
        assert "mo auth add" in error.hint
        assert error.exit_code == 3

    def test_public_client_hint(self, flow, mock_session, make_response):
        mock_session.post.return_value = make_response(
            401,
            {"error": "invalid_client", "error_description": "AADSTS7000218: client_assertion"},
        )
        with pytest.raises(OAuthError) as exc_info:
            flow.refresh_access_token("rt-1")
        assert "Allow public client flows" in exc_info.value.hint

    def test_network_error_is_transient(self, flow, mock_session):
        mock_session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransientFailure):
            flow.refresh_access_token("rt-1")

    def test_non_json_error_is_transient(self, flow, mock_session, make_response):
        mock_session.post.return_value = make_response(502, text="<html>Bad gateway</html>")
        with pytest.raises(TransientFailure) as exc_info:
            flow.refresh_access_token("rt-1")
        assert exc_info.value.status_code == 502

    def test_empty_refresh_token_rejected(self, flow, mock_session):
        with pytest.raises(UsageError):
            flow.refresh_access_token("  ")
        mock_session.post.assert_not_called()


# ---------------------------------------------------------------------------
# Tests: device-code flow
# ---------------------------------------------------------------------------


class TestDeviceCodeSession:
    """Tests for the devicecode endpoint response."""

    def test_start_applies_defaults(self, flow, mock_session, make_response):
        """Missing interval and expires_in fall back to 5 s and 900 s."""
        mock_session.post.return_value = make_response(
            200,
            {
                "device_code": "dc",
                "user_code": "UC-1",
                "verification_uri": "https://microsoft.com/devicelogin",
            },
        )

        session = flow.start_device_code_session()

        assert session.device_code == "dc"
        assert session.interval == 5
        assert session.expires_in == 900
        assert mock_session.post.call_args.args[0].endswith("/oauth2/v2.0/devicecode")

    def test_missing_user_code(self, flow, mock_session, make_response):
        mock_session.post.return_value = make_response(200, {"device_code": "dc"})
        with pytest.raises(OAuthError) as exc_info:
            flow.start_device_code_session()
        assert exc_info.value.error_code == "invalid_device_code_response"


class TestDevicePolling:
    """Tests for poll_device_code_until_authorized()."""

    def test_pending_then_success(self, flow, mock_session, make_response):
        """authorization_pending keeps polling until the token arrives."""
        mock_session.post.side_effect = [
            make_response(400, {"error": "authorization_pending"}),
            make_response(400, {"error": "authorization_pending"}),
            make_response(200, {"access_token": "at", "refresh_token": "rt"}),
        ]
        cancel = _never_cancelled()

        token = flow.poll_device_code_until_authorized(_device_session(), cancel_event=cancel)

        assert token.access_token == "at"
        assert token.refresh_token == "rt"
        assert mock_session.post.call_count == 3
        assert [c.args[0] for c in cancel.wait.call_args_list] == [5, 5]
        form = mock_session.post.call_args.kwargs["data"]
        assert form["grant_type"] == DEVICE_CODE_GRANT_TYPE
        assert form["device_code"] == "device-code-1"

    def test_declined_stops_immediately(self, flow, mock_session, make_response):
        """A declined request ends the flow without further polling."""
        mock_session.post.side_effect = [
            make_response(400, {"error": "authorization_declined"}),
            make_response(200, {"access_token": "never"}),
        ]
        cancel = _never_cancelled()

        with pytest.raises(DeviceCodeDeclined) as exc_info:
            flow.poll_device_code_until_authorized(_device_session(), cancel_event=cancel)

        assert exc_info.value.error_code == "authorization_declined"
        assert mock_session.post.call_count == 1
        cancel.wait.assert_not_called()

    @pytest.mark.parametrize(
        ("error_code", "error_cls"),
        [("expired_token", DeviceCodeExpired), ("bad_verification_code", DeviceCodeRejected)],
    )
    def test_terminal_provider_errors(self, flow, mock_session, make_response, error_code, error_cls):
        mock_session.post.return_value = make_response(400, {"error": error_code})
        with pytest.raises(error_cls):
            flow.poll_device_code_until_authorized(
                _device_session(), cancel_event=_never_cancelled()
            )
        assert mock_session.post.call_count == 1

    def test_slow_down_increases_interval(self, flow, mock_session, make_response):
        """slow_down adds five seconds to every following wait."""
        mock_session.post.side_effect = [
            make_response(400, {"error": "slow_down"}),
            make_response(400, {"error": "authorization_pending"}),
            make_response(200, {"access_token": "at"}),
        ]
        cancel = _never_cancelled()

        flow.poll_device_code_until_authorized(_device_session(interval=5), cancel_event=cancel)

        assert [c.args[0] for c in cancel.wait.call_args_list] == [10, 10]

    def test_unknown_error_raised_without_retry(self, flow, mock_session, make_response):
        mock_session.post.return_value = make_response(400, {"error": "invalid_client"})
        with pytest.raises(OAuthError) as exc_info:
            flow.poll_device_code_until_authorized(
                _device_session(), cancel_event=_never_cancelled()
            )
        assert exc_info.value.error_code == "invalid_client"
        assert mock_session.post.call_count == 1

    def test_cancelled_before_first_attempt(self, flow, mock_session):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DeviceCodeCancelled) as exc_info:
            flow.poll_device_code_until_authorized(_device_session(), cancel_event=cancel)
        assert exc_info.value.reason == "cancelled"
        mock_session.post.assert_not_called()

    def test_cancelled_during_wait(self, flow, mock_session, make_response):
        """Cancellation is observed while sleeping between attempts."""
        mock_session.post.return_value = make_response(400, {"error": "authorization_pending"})
        cancel = _never_cancelled()
        cancel.wait.return_value = True

        with pytest.raises(DeviceCodeCancelled) as exc_info:
            flow.poll_device_code_until_authorized(_device_session(), cancel_event=cancel)

        assert exc_info.value.reason == "cancelled"
        assert mock_session.post.call_count == 1

    def test_deadline_expiry(self, flow, mock_session):
        """Polling stops once the session's expiry window has passed."""
        with patch("mocli.auth.oauth.time.monotonic", side_effect=[0.0, 1000.0]):
            with pytest.raises(DeviceCodeCancelled) as exc_info:
                flow.poll_device_code_until_authorized(
                    _device_session(expires_in=900), cancel_event=_never_cancelled()
                )
        assert exc_info.value.reason == "deadline"
        mock_session.post.assert_not_called()

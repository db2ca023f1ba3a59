"""Tests for the account lifecycle in mocli.auth.login.

Interactive flows are patched out; the token store is a real encrypted file
backend inside the temp config directory.
"""

from io import StringIO
from unittest.mock import MagicMock, patch

import pytest
from rich.console import Console

from mocli.auth.login import (
    _display_device_prompt,
    add_account,
    auth_status,
    complete_login,
    list_accounts,
    remove_account,
)
from mocli.auth.oauth import DeviceCodeSession, TokenResponse
from mocli.config import load_app_config
from mocli.core.errors import (
    AuthenticationRequired,
    SecretNotFoundError,
    TransientFailure,
    UsageError,
)
from mocli.core.logging import get_auth_session_id
from mocli.vault.base import BackendInfo, StoredToken
from mocli.vault.store import open_token_store

TOKEN = TokenResponse(access_token="at-1", refresh_token="rt-1", scope="User.Read")


@pytest.fixture
def store(env):
    store, _ = open_token_store(env.get)
    return store


class TestCompleteLogin:
    """Tests for complete_login()."""

    def test_profile_email_wins(self, env, store):
        """The signed-in user's address replaces the login hint."""
        result = complete_login(
            store,
            BackendInfo("file", "file"),
            "default",
            "hint@example.com",
            TOKEN,
            lookup=env.get,
            profile_lookup=lambda token, lookup: "real@example.com",
        )

        assert result == {
            "authorized": True,
            "account": "real@example.com",
            "client": "default",
            "scope": "User.Read",
            "backend": {"requested": "file", "resolved": "file"},
        }
        assert store.get_token("default", "real@example.com").refresh_token == "rt-1"
        config = load_app_config(lookup=env.get)
        assert config.default_account == "real@example.com"
        assert config.default_client == "default"
        assert [a.email for a in config.accounts] == ["real@example.com"]

    def test_profile_failure_falls_back(self, env, store):
        def failing(token, lookup):
            raise TransientFailure("profile request failed")

        result = complete_login(
            store,
            BackendInfo("auto", "file"),
            "default",
            "hint@example.com",
            TOKEN,
            lookup=env.get,
            profile_lookup=failing,
        )

        assert result["account"] == "hint@example.com"
        assert store.get_token("default", "hint@example.com").refresh_token == "rt-1"

    def test_refresh_token_required(self, env, store):
        with pytest.raises(AuthenticationRequired, match="refresh token"):
            complete_login(
                store,
                BackendInfo("file", "file"),
                "default",
                "a@example.com",
                TokenResponse(access_token="at-only"),
                lookup=env.get,
            )
        assert load_app_config(lookup=env.get).accounts == []

    def test_existing_defaults_kept(self, env, store):
        profile = MagicMock(side_effect=["first@example.com", "second@example.com"])
        for hint in ("x@example.com", "y@example.com"):
            complete_login(
                store,
                BackendInfo("file", "file"),
                "default",
                hint,
                TOKEN,
                lookup=env.get,
                profile_lookup=profile,
            )

        config = load_app_config(lookup=env.get)
        assert config.default_account == "first@example.com"
        assert len(config.accounts) == 2


class TestAddAccount:
    """Tests for add_account()."""

    def test_device_flow(self, env, credentials_file):
        """Device login runs with a correlation id bound, then clears it."""
        seen_session_ids = []

        def fake_device(flow, cancel_event=None):
            seen_session_ids.append(get_auth_session_id())
            return TOKEN

        with (
            patch("mocli.auth.login.run_device_authorization", side_effect=fake_device),
            patch("mocli.auth.login.fetch_profile_email", return_value="user@example.com"),
        ):
            result = add_account("User@Example.com", device=True, lookup=env.get)

        assert result["account"] == "user@example.com"
        assert seen_session_ids[0]
        assert get_auth_session_id() is None

    def test_browser_flow_options(self, env, credentials_file):
        opener = MagicMock(return_value=True)
        with (
            patch("mocli.auth.login.run_browser_authorization", return_value=TOKEN) as browser,
            patch("mocli.auth.login.fetch_profile_email", return_value="user@example.com"),
        ):
            add_account(
                "user@example.com",
                timeout=30,
                force_consent=True,
                lookup=env.get,
                open_browser=opener,
            )

        kwargs = browser.call_args.kwargs
        assert browser.call_args.args[1] == "user@example.com"
        assert kwargs["timeout"] == 30
        assert kwargs["force_consent"] is True
        assert kwargs["open_browser"] is opener
        assert kwargs["client"] == "default"

    def test_invalid_email(self, env):
        with pytest.raises(UsageError, match="invalid email"):
            add_account("not-an-email", lookup=env.get)

    def test_missing_credentials(self, env):
        with pytest.raises(AuthenticationRequired, match="missing credentials"):
            add_account("user@example.com", lookup=env.get)

    def test_missing_password(self, env, credentials_file):
        env.pop("MO_KEYRING_PASSWORD")
        with pytest.raises(AuthenticationRequired) as exc_info:
            add_account("user@example.com", device=True, lookup=env.get)
        assert "MO_KEYRING_PASSWORD" in exc_info.value.hint


class TestAccountQueries:
    """Tests for remove_account(), auth_status() and list_accounts()."""

    def _login(self, env, store, email: str, client: str = "default") -> None:
        complete_login(
            store,
            BackendInfo("file", "file"),
            client,
            email,
            TOKEN,
            lookup=env.get,
            profile_lookup=lambda token, lookup: email,
        )

    def test_status_with_token(self, env, store, credentials_file):
        self._login(env, store, "user@example.com")

        status = auth_status(lookup=env.get)

        assert status["account"] == "user@example.com"
        assert status["has_credentials"] is True
        assert status["token_available"] is True
        assert status["keyring_backend"] == {"requested": "file", "resolved": "file"}

    def test_status_without_anything(self, env):
        status = auth_status(lookup=env.get)
        assert status["account"] == ""
        assert status["has_credentials"] is False
        assert status["credentials_source"] == "missing"
        assert status["token_available"] is False

    def test_status_reports_store_error(self, env, store):
        self._login(env, store, "user@example.com")
        env["MO_KEYRING_PASSWORD"] = "wrong password"

        status = auth_status(lookup=env.get)

        assert status["token_available"] is False
        assert "decrypt" in status["store_error"]

    def test_remove(self, env, store):
        self._login(env, store, "user@example.com")
        self._login(env, store, "other@example.com")

        result = remove_account("USER@example.com", lookup=env.get)

        assert result == {"removed": True, "email": "user@example.com", "client": "default"}
        config = load_app_config(lookup=env.get)
        assert [a.email for a in config.accounts] == ["other@example.com"]
        assert config.default_account == ""
        with pytest.raises(SecretNotFoundError):
            store.get_token("default", "user@example.com")

    def test_remove_unknown_account_is_quiet(self, env):
        result = remove_account("ghost@example.com", lookup=env.get)
        assert result["removed"] is True

    def test_list(self, env, store):
        self._login(env, store, "a@example.com")
        self._login(env, store, "b@example.com", client="work")

        result = list_accounts(lookup=env.get)

        assert result["selected_client"] == "default"
        assert result["items"] == [
            {"email": "a@example.com", "client": "default", "default": True},
            {"email": "b@example.com", "client": "work", "default": False},
        ]

    def test_stored_token_format(self, env, store):
        self._login(env, store, "a@example.com")
        token = store.get_token("default", "a@example.com")
        assert isinstance(token, StoredToken)
        assert token.scope == "User.Read"


class TestDevicePrompt:
    """Tests for the device-code prompt panel."""

    def _render(self, session: DeviceCodeSession) -> str:
        output = StringIO()
        with patch("mocli.auth.login.console", Console(file=output, width=200)):
            _display_device_prompt(session)
        return output.getvalue()

    def test_shows_code_and_uri(self):
        text = self._render(
            DeviceCodeSession(
                device_code="dc",
                user_code="ABCD-1234",
                verification_uri="https://microsoft.com/devicelogin",
            )
        )
        assert "ABCD-1234" in text
        assert "https://microsoft.com/devicelogin" in text

    def test_shows_provider_message(self):
        text = self._render(
            DeviceCodeSession(
                device_code="dc",
                user_code="ABCD-1234",
                verification_uri="https://microsoft.com/devicelogin",
                message="Enter [ABCD-1234] at the sign-in page.",
            )
        )
        assert "Enter [ABCD-1234] at the sign-in page." in text

    def test_shows_complete_uri_without_message(self):
        text = self._render(
            DeviceCodeSession(
                device_code="dc",
                user_code="ABCD-1234",
                verification_uri="https://microsoft.com/devicelogin",
                verification_uri_complete="https://microsoft.com/devicelogin?otc=ABCD-1234",
            )
        )
        assert "https://microsoft.com/devicelogin?otc=ABCD-1234" in text

"""Pytest fixtures and configuration for mocli tests.

Provides common fixtures for the config directory, environment lookups,
credentials and mocked HTTP responses.
"""

import json
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from mocli.config_schema import Credentials
from mocli.core.logging import set_auth_session_id
from mocli.vault import file_backend


@pytest.fixture(autouse=True)
def reset_auth_session() -> Generator[None, None, None]:
    """Clear the login correlation ID around each test."""
    set_auth_session_id(None)
    yield
    set_auth_session_id(None)


@pytest.fixture(autouse=True)
def fast_argon2(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> None:
    """Use cheap Argon2 parameters so encrypted vault tests stay fast."""
    if request.node.get_closest_marker("kdf_params"):
        return
    monkeypatch.setattr(file_backend, "ARGON2_MEMORY_KIB", 1024)
    monkeypatch.setattr(file_backend, "ARGON2_TIME_COST", 1)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Create a temporary mocli config directory."""
    directory = tmp_path / "mocli"
    directory.mkdir(mode=0o700)
    return directory


@pytest.fixture
def env(config_dir: Path) -> dict[str, str]:
    """Environment values for the file backend inside the temp config dir.

    Tests pass ``env.get`` as the lookup; mutate the dict to change values.
    """
    return {
        "MO_CONFIG_DIR": str(config_dir),
        "MO_KEYRING_BACKEND": "file",
        "MO_KEYRING_PASSWORD": "correct horse battery staple",
    }


@pytest.fixture
def credentials() -> Credentials:
    """Return credentials for a test app registration."""
    return Credentials(client_id="11111111-2222-3333-4444-555555555555", tenant="common")


@pytest.fixture
def credentials_file(config_dir: Path, credentials: Credentials) -> Path:
    """Write credentials.json for the default client with mode 600."""
    path = config_dir / "credentials.json"
    path.write_text(json.dumps(credentials.model_dump()))
    path.chmod(0o600)
    return path


@pytest.fixture
def make_response() -> Callable[..., requests.Response]:
    """Factory for real requests.Response objects with a JSON or raw body."""

    def _make(
        status_code: int = 200,
        json_body: Any = None,
        text: str = "",
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        response = requests.Response()
        response.status_code = status_code
        if json_body is not None:
            response._content = json.dumps(json_body).encode("utf-8")
            response.headers["Content-Type"] = "application/json"
        else:
            response._content = text.encode("utf-8")
        for key, value in (headers or {}).items():
            response.headers[key] = value
        response.encoding = "utf-8"
        return response

    return _make


@pytest.fixture
def mock_session() -> MagicMock:
    """Return a MagicMock standing in for requests.Session."""
    return MagicMock(spec=requests.Session)

"""Token store: refresh tokens on top of a pluggable secret backend.

Backend selection (first non-empty wins): MO_KEYRING_BACKEND, the
``keyring_backend`` config value, then ``auto``.

- ``auto``: the keychain when secret-tool is available, else the file backend
- ``keychain``: fails if secret-tool is unavailable
- ``file``: encrypted files; requires MO_KEYRING_PASSWORD and never falls
  back to the keychain
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime

from mocli.config import EnvLookup, env_str, keyring_dir
from mocli.config_schema import DEFAULT_CLIENT, AppConfig
from mocli.core.errors import (
    BackendUnavailableError,
    PasswordRequiredError,
    SecretBackendError,
    SecretNotFoundError,
    UsageError,
)
from mocli.core.logging import get_logger
from mocli.vault.base import AUTO, FILE, KEYCHAIN, BackendInfo, SecretBackend, StoredToken
from mocli.vault.file_backend import EncryptedFileBackend
from mocli.vault.keychain import SecretToolBackend, keychain_available

logger = get_logger(__name__)

BACKEND_MODES = (AUTO, KEYCHAIN, FILE)


def token_key(client: str, email: str) -> str:
    """Vault key for one account: ``token:<client>:<lower-cased email>``."""
    client = client.strip() or DEFAULT_CLIENT
    return f"token:{client}:{email.strip().lower()}"


def resolve_backend(lookup: EnvLookup | None, config: AppConfig) -> BackendInfo:
    """Decide which backend to use without opening it.

    Raises:
        BackendUnavailableError: If keychain is requested but unavailable
        UsageError: If the requested mode is not auto, keychain or file
    """
    requested = (
        env_str(lookup, "MO_KEYRING_BACKEND").lower()
        or config.keyring_backend.strip().lower()
        or AUTO
    )

    if requested == AUTO:
        resolved = KEYCHAIN if keychain_available() else FILE
        return BackendInfo(requested=requested, resolved=resolved)
    if requested == KEYCHAIN:
        if not keychain_available():
            raise BackendUnavailableError(
                "keychain backend requested but secret-tool is not available",
                hint=(
                    "Install libsecret-tools, or set MO_KEYRING_BACKEND=file "
                    "and MO_KEYRING_PASSWORD."
                ),
            )
        return BackendInfo(requested=requested, resolved=KEYCHAIN)
    if requested == FILE:
        return BackendInfo(requested=requested, resolved=FILE)
    raise UsageError(
        f"invalid MO_KEYRING_BACKEND value {requested!r}",
        hint="Allowed values: auto, keychain, file.",
    )


def open_token_store(
    lookup: EnvLookup | None = os.environ.get, config: AppConfig | None = None
) -> tuple[TokenStore, BackendInfo]:
    """Resolve and open the configured backend.

    Returns:
        Tuple of (TokenStore, BackendInfo)

    Raises:
        PasswordRequiredError: If the file backend is selected without a password
        BackendUnavailableError / UsageError: From resolve_backend
        SecretBackendError: If the keyring directory cannot be created
    """
    config = config or AppConfig()
    info = resolve_backend(lookup, config)

    backend: SecretBackend
    if info.resolved == KEYCHAIN:
        backend = SecretToolBackend()
    else:
        password = env_str(lookup, "MO_KEYRING_PASSWORD")
        if not password:
            raise PasswordRequiredError(
                "file keyring backend requires MO_KEYRING_PASSWORD",
                hint=password_required_hint(),
            )
        directory = keyring_dir(lookup)
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise SecretBackendError(f"Failed to create keyring directory {directory}: {e}") from e
        backend = EncryptedFileBackend(directory, password)

    logger.debug("Token store opened", requested=info.requested, resolved=info.resolved)
    return TokenStore(backend), info


def password_required_hint() -> str:
    return (
        "File keyring backend is active, but MO_KEYRING_PASSWORD is not set.\n"
        "Set a password and retry:\n"
        "  export MO_KEYRING_BACKEND=file\n"
        "  export MO_KEYRING_PASSWORD='choose-a-strong-password'\n"
        "\n"
        "If your system keychain is available, you can also use:\n"
        "  export MO_KEYRING_BACKEND=auto"
    )


class TokenStore:
    """Reads and writes StoredToken records through a SecretBackend."""

    def __init__(self, backend: SecretBackend):
        self.backend = backend

    def put_token(self, client: str, email: str, token: StoredToken) -> None:
        """Persist a refresh token, stamping updated_at.

        Raises:
            UsageError: If the refresh token is empty
            SecretBackendError: If the backend write fails
        """
        if not token.refresh_token.strip():
            raise UsageError("missing refresh token")
        token.updated_at = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        payload = {"refresh_token": token.refresh_token, "updated_at": token.updated_at}
        if token.scope:
            payload["scope"] = token.scope
        self.backend.put(token_key(client, email), json.dumps(payload).encode("utf-8"))
        logger.info("Refresh token stored", client=client.strip() or DEFAULT_CLIENT)

    def get_token(self, client: str, email: str) -> StoredToken:
        """Load the refresh token for an account.

        Raises:
            SecretNotFoundError: If nothing is stored for the account
            SecretBackendError: If the stored value is unreadable or empty
        """
        raw = self.backend.get(token_key(client, email))
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise SecretBackendError(f"Failed to parse stored token: {e}") from e
        if not isinstance(data, dict):
            raise SecretBackendError("Failed to parse stored token: not an object")
        refresh_token = str(data.get("refresh_token") or "").strip()
        if not refresh_token:
            raise SecretBackendError("stored refresh token is empty")
        return StoredToken(
            refresh_token=refresh_token,
            scope=str(data.get("scope") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def delete_token(self, client: str, email: str) -> None:
        """Remove an account's refresh token; a missing entry is not an error."""
        try:
            self.backend.delete(token_key(client, email))
        except SecretNotFoundError:
            logger.debug("No stored token to delete", client=client.strip() or DEFAULT_CLIENT)

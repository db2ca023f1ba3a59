"""Secret vault for refresh tokens.

Two interchangeable backends implement the same put/get/delete contract:
- SecretToolBackend: the desktop keyring via the secret-tool utility
- EncryptedFileBackend: Argon2id + AES-256-GCM envelopes on disk

Usage:
    from mocli.vault import open_token_store

    store, backend = open_token_store()
    token = store.get_token("default", "user@example.com")
"""

from mocli.vault.base import BackendInfo, SecretBackend, StoredToken
from mocli.vault.file_backend import EncryptedFileBackend
from mocli.vault.keychain import SecretToolBackend, keychain_available
from mocli.vault.store import (
    TokenStore,
    open_token_store,
    password_required_hint,
    resolve_backend,
    token_key,
)

__all__ = [
    "BackendInfo",
    "EncryptedFileBackend",
    "SecretBackend",
    "SecretToolBackend",
    "StoredToken",
    "TokenStore",
    "keychain_available",
    "open_token_store",
    "password_required_hint",
    "resolve_backend",
    "token_key",
]

"""Shared types for secret vault backends."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Protocol

KEYCHAIN = "keychain"
FILE = "file"
AUTO = "auto"


class SecretBackend(Protocol):
    """Opaque secret storage keyed by string.

    ``get`` and ``delete`` raise SecretNotFoundError for a missing key; any
    other failure is a SecretBackendError.
    """

    def put(self, key: str, value: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...


@dataclass(frozen=True, slots=True)
class BackendInfo:
    """Configured versus actually used backend (e.g. auto → file)."""

    requested: str
    resolved: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(slots=True)
class StoredToken:
    """The durable secret kept per (client, account)."""

    refresh_token: str
    scope: str = ""
    updated_at: str = ""

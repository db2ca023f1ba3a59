"""Password-encrypted file backend.

Each secret is a small JSON envelope in its own file:

    {"salt": "...", "nonce": "...", "ciphertext": "..."}   (base64url, unpadded)

The key is derived per write with Argon2id from the user's password and a
fresh 16-byte salt, and the value is sealed with AES-256-GCM under a fresh
12-byte nonce. File names are the hex SHA-256 of the logical key, so the
directory listing does not reveal which accounts are stored.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import stat
import tempfile
from pathlib import Path

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mocli.core.errors import (
    DecryptionError,
    PasswordRequiredError,
    SecretBackendError,
    SecretNotFoundError,
)
from mocli.core.logging import get_logger

logger = get_logger(__name__)

ARGON2_TIME_COST = 2
ARGON2_MEMORY_KIB = 64 * 1024
ARGON2_PARALLELISM = 1
KEY_LENGTH = 32
SALT_LENGTH = 16
NONCE_LENGTH = 12
FILE_SUFFIX = ".enc"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 32-byte AES key with Argon2id (t=2, m=64 MiB, p=1)."""
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_KIB,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_LENGTH,
        type=Type.ID,
    )


class EncryptedFileBackend:
    """Stores each secret as an Argon2id/AES-GCM envelope under ``directory``.

    Attributes:
        directory: Directory holding the ``<sha256>.enc`` files
    """

    def __init__(self, directory: Path, password: str):
        """Initialize the backend.

        Raises:
            PasswordRequiredError: If password is empty
        """
        if not password or not password.strip():
            raise PasswordRequiredError(
                "file keyring backend requires MO_KEYRING_PASSWORD",
                hint="export MO_KEYRING_PASSWORD='choose-a-strong-password'",
            )
        self.directory = Path(directory)
        self._password = password

    def path_for_key(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}{FILE_SUFFIX}"

    def put(self, key: str, value: bytes) -> None:
        salt = os.urandom(SALT_LENGTH)
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(derive_key(self._password, salt)).encrypt(nonce, value, None)
        envelope = {
            "salt": _b64encode(salt),
            "nonce": _b64encode(nonce),
            "ciphertext": _b64encode(ciphertext),
        }
        self._write_atomic(self.path_for_key(key), json.dumps(envelope).encode("utf-8"))
        logger.debug("Encrypted secret written", directory=str(self.directory))

    def get(self, key: str) -> bytes:
        path = self.path_for_key(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise SecretNotFoundError("secret not found") from e
        except OSError as e:
            raise SecretBackendError(f"Failed to read encrypted secret {path.name}: {e}") from e

        try:
            envelope = json.loads(raw)
            salt = _b64decode(envelope["salt"])
            nonce = _b64decode(envelope["nonce"])
            ciphertext = _b64decode(envelope["ciphertext"])
        except (ValueError, KeyError, TypeError) as e:
            raise SecretBackendError(f"Malformed encrypted secret {path.name}: {e}") from e

        if len(nonce) != NONCE_LENGTH:
            raise SecretBackendError(f"Malformed encrypted secret {path.name}: bad nonce length")

        try:
            return AESGCM(derive_key(self._password, salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError(
                f"Failed to decrypt secret {path.name}",
                hint="Check MO_KEYRING_PASSWORD; the password is wrong or the file was modified.",
            ) from e

    def delete(self, key: str) -> None:
        path = self.path_for_key(key)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise SecretNotFoundError("secret not found") from e
        except OSError as e:
            raise SecretBackendError(f"Failed to delete encrypted secret {path.name}: {e}") from e

    def _write_atomic(self, path: Path, data: bytes) -> None:
        """Write via a temp file in the same directory, then rename over the target."""
        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=FILE_SUFFIX)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise SecretBackendError(f"Failed to write encrypted secret {path.name}: {e}") from e

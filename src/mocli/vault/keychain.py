"""Keychain backend backed by the freedesktop ``secret-tool`` utility.

Each operation runs one ``secret-tool`` process with a 10 second timeout.
Secrets are stored under the attributes ``service=mocli key=<key>``.
"""

from __future__ import annotations

import shutil
import subprocess
import sys

from mocli.core.errors import SecretBackendError, SecretNotFoundError
from mocli.core.logging import get_logger

logger = get_logger(__name__)

SECRET_TOOL = "secret-tool"
SERVICE_NAME = "mocli"
SECRET_LABEL = "mocli token"
COMMAND_TIMEOUT = 10.0

_NOT_FOUND_MARKERS = ("not found", "no such")


def keychain_available() -> bool:
    """True when secret-tool can be used on this host (Linux with it on PATH)."""
    if not sys.platform.startswith("linux"):
        return False
    return shutil.which(SECRET_TOOL) is not None


def _looks_not_found(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


class SecretToolBackend:
    """Stores secrets in the desktop keyring through secret-tool."""

    def __init__(self, executable: str = SECRET_TOOL, timeout: float = COMMAND_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def _run(self, operation: str, args: list[str], stdin: str | None = None) -> tuple[int, str]:
        """Run one secret-tool operation, returning (exit code, combined output).

        Raises:
            SecretBackendError: If the process cannot be started or times out
        """
        try:
            result = subprocess.run(
                [self.executable, operation, *args],
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SecretBackendError(
                f"{SECRET_TOOL} {operation} timed out after {self.timeout:.0f}s",
                hint="Unlock your keyring and try again.",
            ) from e
        except OSError as e:
            raise SecretBackendError(f"{SECRET_TOOL} {operation} failed: {e}") from e
        return result.returncode, (result.stdout or "").strip()

    def put(self, key: str, value: bytes) -> None:
        try:
            secret = value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SecretBackendError(f"{SECRET_TOOL} can only store UTF-8 text: {e}") from e
        code, output = self._run(
            "store",
            ["--label", SECRET_LABEL, "service", SERVICE_NAME, "key", key],
            stdin=secret,
        )
        if code != 0:
            raise SecretBackendError(f"{SECRET_TOOL} store failed (exit {code}): {output}")
        logger.debug("Secret stored in keychain")

    def get(self, key: str) -> bytes:
        code, output = self._run("lookup", ["service", SERVICE_NAME, "key", key])
        if code != 0:
            # secret-tool exits 1 without output when nothing matches
            if not output or _looks_not_found(output):
                raise SecretNotFoundError("secret not found")
            raise SecretBackendError(f"{SECRET_TOOL} lookup failed (exit {code}): {output}")
        if not output:
            raise SecretNotFoundError("secret not found")
        return output.encode("utf-8")

    def delete(self, key: str) -> None:
        code, output = self._run("clear", ["service", SERVICE_NAME, "key", key])
        if code != 0:
            if _looks_not_found(output):
                raise SecretNotFoundError("secret not found")
            raise SecretBackendError(f"{SECRET_TOOL} clear failed (exit {code}): {output}")

"""Custom exception types for mocli.

Every error carries a machine-readable ``code``, a process ``exit_code`` and
an optional ``hint`` telling the user how to recover. The CLI renders them as
a JSON error object and exits with the class exit code.

Taxonomy (exit code):
- UsageError (2): bad input, state mismatch, timed-out interactive login
- AuthenticationRequired (3): no token, refresh failed, OAuth failures
- PermissionDenied (4): Graph returned 403
- NotFoundError (5): Graph 404, missing vault secret
- TransientFailure (10): network errors, 429, 5xx
- FeatureNotImplemented (12)
"""

from __future__ import annotations

EXIT_GENERIC = 1
EXIT_USAGE = 2
EXIT_AUTH_REQUIRED = 3
EXIT_PERMISSION_DENIED = 4
EXIT_NOT_FOUND = 5
EXIT_TRANSIENT = 10
EXIT_NOT_IMPLEMENTED = 12


class MocliError(Exception):
    """Base exception for all mocli errors.

    Attributes:
        message: Human-readable description of what failed
        hint: Actionable guidance for fixing it (may be empty)
        status_code: HTTP status code when the error came from an HTTP call
    """

    code = "error"
    exit_code = EXIT_GENERIC

    def __init__(self, message: str, hint: str = "", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        """Render the error as the CLI's JSON error payload."""
        return {"code": self.code, "message": self.message, "hint": self.hint}


class UsageError(MocliError):
    """Raised for invalid input or an interactive flow the user must restart."""

    code = "usage_error"
    exit_code = EXIT_USAGE


class AuthenticationRequired(MocliError):
    """Raised when no usable credential exists and the user must sign in again."""

    code = "auth_required"
    exit_code = EXIT_AUTH_REQUIRED


class PermissionDenied(MocliError):
    code = "permission_denied"
    exit_code = EXIT_PERMISSION_DENIED


class NotFoundError(MocliError):
    code = "not_found"
    exit_code = EXIT_NOT_FOUND


class TransientFailure(MocliError):
    """Raised for network failures, rate limiting (429) and server errors (5xx)."""

    code = "transient_error"
    exit_code = EXIT_TRANSIENT


class FeatureNotImplemented(MocliError):
    code = "not_implemented"
    exit_code = EXIT_NOT_IMPLEMENTED


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthError(AuthenticationRequired):
    """Raised when the identity provider returns an OAuth error body.

    The provider's machine-readable code and description are kept so callers
    can tell a declined consent from an expired code from a misconfigured app.

    Attributes:
        error_code: OAuth ``error`` value (e.g. ``invalid_grant``)
        description: OAuth ``error_description`` value (may be empty)
    """

    def __init__(self, error_code: str, description: str = "", hint: str = ""):
        message = f"oauth error: {error_code}"
        if description.strip():
            message = f"{message} ({description})"
        super().__init__(message, hint=hint)
        self.error_code = error_code
        self.description = description


class AuthorizationDenied(OAuthError):
    """Raised when the redirect callback carries ``error=...`` instead of a code."""


class DeviceCodeDeclined(OAuthError):
    """Raised when the user declined the device authorization request."""


class DeviceCodeExpired(OAuthError):
    """Raised when the provider reports the device code as expired."""


class DeviceCodeRejected(OAuthError):
    """Raised when the provider rejects the device code (bad_verification_code)."""


class DeviceCodeCancelled(AuthenticationRequired):
    """Raised when device-code polling stops on the client side.

    Distinct from DeviceCodeExpired, which is signaled by the provider.

    Attributes:
        reason: ``"cancelled"`` for caller cancellation, ``"deadline"`` when the
            session's expiry window elapsed before authorization completed
    """

    def __init__(self, message: str, reason: str, hint: str = ""):
        super().__init__(message, hint=hint)
        self.reason = reason


class AuthorizationCancelled(AuthenticationRequired):
    """Raised when a browser login is interrupted by process shutdown."""


class AuthorizationTimeout(UsageError):
    """Raised when no browser callback arrives within the login timeout."""


class StateMismatchError(UsageError):
    """Raised when the callback ``state`` does not match the session state."""


class TokenPersistenceError(AuthenticationRequired):
    """Raised when a rotated refresh token could not be written back.

    The previous refresh token may already be invalidated server-side, so the
    user has to sign in again once the secrets backend is fixed.
    """


# ---------------------------------------------------------------------------
# Secret vault
# ---------------------------------------------------------------------------


class SecretNotFoundError(NotFoundError):
    """Raised when a vault backend holds no secret for the requested key."""


class SecretBackendError(MocliError):
    """Raised when a vault backend fails (process error, I/O error, bad data)."""

    code = "secrets_backend_error"


class DecryptionError(SecretBackendError):
    """Raised when an encrypted vault entry fails authentication.

    Either the password is wrong or the ciphertext was tampered with.
    """

    code = "decryption_failed"


class PasswordRequiredError(SecretBackendError):
    """Raised when the file backend is selected but no password is configured."""

    code = "password_required"


class BackendUnavailableError(SecretBackendError):
    """Raised when the keychain backend is requested but not available."""

    code = "backend_unavailable"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigLoadError(MocliError):
    """Raised when a config or credentials file cannot be read or parsed."""

    code = "config_error"


class ConfigValidationError(MocliError):
    """Raised when a config or credentials file fails Pydantic validation."""

    code = "config_invalid"

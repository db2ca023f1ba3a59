"""Configuration and credentials loading.

Everything here is read fresh from disk or the environment on every call;
there is no module-level config cache. Components receive an ``EnvLookup``
(``os.environ.get`` by default) instead of reading ``os.environ`` directly so
flows can be exercised with a plain dict in tests.

Environment overrides:
    MO_CONFIG_DIR        Base directory for config, credentials and keyring
    MO_AUTH_BASE_URL     Identity provider base URL
    MO_GRAPH_BASE_URL    Graph API base URL
    MO_KEYRING_BACKEND   auto | keychain | file
    MO_KEYRING_PASSWORD  Password for the encrypted file backend

Usage:
    from mocli.config import load_app_config, load_credentials

    config = load_app_config()
    creds = load_credentials("default")
"""

from __future__ import annotations

import json
import os
import stat
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mocli.config_schema import DEFAULT_CLIENT, AppConfig, Credentials, normalize_client_name
from mocli.core.errors import ConfigLoadError, ConfigValidationError
from mocli.core.logging import get_logger

logger = get_logger(__name__)

APP_DIR_NAME = "mocli"
CONFIG_FILENAME = "config.yaml"

EnvLookup = Callable[[str], str | None]

# Keys accepted for the client ID / tenant in credentials files, most specific first
_CLIENT_ID_KEYS = ("client_id", "clientId", "appId", "app_id")
_TENANT_KEYS = ("tenant", "tenant_id", "tenantId")


def env_str(lookup: EnvLookup | None, key: str, default: str = "") -> str:
    """Read a trimmed environment value, falling back to default when unset or blank."""
    if lookup is None:
        return default
    value = lookup(key)
    if value is None:
        return default
    value = value.strip()
    return value or default


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def _user_config_dir() -> Path:
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata)
        return Path.home() / "AppData" / "Roaming"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    if xdg:
        return Path(xdg)
    return Path.home() / ".config"


def base_dir(lookup: EnvLookup | None = os.environ.get) -> Path:
    """Get the mocli config directory (MO_CONFIG_DIR or the user config dir)."""
    override = env_str(lookup, "MO_CONFIG_DIR")
    if override:
        return Path(override)
    return _user_config_dir() / APP_DIR_NAME


def ensure_base_dir(lookup: EnvLookup | None = os.environ.get) -> Path:
    directory = base_dir(lookup)
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigLoadError(f"Failed to create config directory {directory}: {e}") from e
    return directory


def config_path(lookup: EnvLookup | None = os.environ.get) -> Path:
    return base_dir(lookup) / CONFIG_FILENAME


def credentials_path(client: str, lookup: EnvLookup | None = os.environ.get) -> Path:
    """Get the credentials file for a client.

    The default client uses ``credentials.json``; named clients use
    ``credentials-<name>.json``.
    """
    name = normalize_client_name(client)
    if name == DEFAULT_CLIENT:
        return base_dir(lookup) / "credentials.json"
    return base_dir(lookup) / f"credentials-{name}.json"


def keyring_dir(lookup: EnvLookup | None = os.environ.get) -> Path:
    """Directory holding encrypted vault entries for the file backend."""
    return base_dir(lookup) / "keyring"


def validate_private_file(path: Path) -> None:
    """Reject files readable or writable by group/other.

    Credentials and config must be mode 600. Skipped on Windows where POSIX
    modes are not meaningful.

    Raises:
        ConfigLoadError: If the file has group/other permission bits set
    """
    if sys.platform == "win32":
        return
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & 0o077:
        raise ConfigLoadError(
            f"Insecure file permissions on {path} (mode {mode:o}); run chmod 600 {path}"
        )


def _write_private(path: Path, content: str) -> None:
    """Write a file and restrict it to owner read/write."""
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into one line per field."""
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        if err["type"] == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(messages)


# ---------------------------------------------------------------------------
# App config (config.yaml)
# ---------------------------------------------------------------------------


def load_app_config(
    path: Path | None = None, lookup: EnvLookup | None = os.environ.get
) -> AppConfig:
    """Load config.yaml, returning defaults when the file does not exist.

    Raises:
        ConfigLoadError: If the file is unreadable, insecure or not valid YAML
        ConfigValidationError: If the content fails schema validation
    """
    path = path or config_path(lookup)
    if not path.exists():
        logger.debug("No config file, using defaults", path=str(path))
        return AppConfig()

    validate_private_file(path)

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigLoadError(f"Failed to read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return AppConfig()
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e


def save_app_config(
    config: AppConfig, path: Path | None = None, lookup: EnvLookup | None = os.environ.get
) -> Path:
    """Write config.yaml with mode 600.

    Returns:
        The path written
    """
    if path is None:
        ensure_base_dir(lookup)
        path = config_path(lookup)
    # Re-validate so normalization (dedupe, sort, lower-case) is applied
    normalized = AppConfig(**config.model_dump())
    content = yaml.safe_dump(normalized.model_dump(), sort_keys=False, default_flow_style=False)
    try:
        _write_private(path, content)
    except OSError as e:
        raise ConfigLoadError(f"Failed to write config {path}: {e}") from e
    logger.debug("Config saved", path=str(path), accounts=len(normalized.accounts))
    return path


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def _pick_string(data: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def parse_credentials_json(raw: str | bytes) -> Credentials:
    """Parse a credentials file, accepting several common JSON shapes.

    Accepts ``{"client_id", "tenant"}`` as written by mocli, Azure CLI style
    ``{"appId", "tenantId"}`` exports, and ``installed``/``web`` nested
    objects as produced by some app-registration downloads.

    Raises:
        ConfigLoadError: If the content is not a JSON object
        ConfigValidationError: If no client ID can be found
    """
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise ConfigLoadError(f"Failed to parse credentials JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigLoadError("Credentials file must contain a JSON object")

    client_id = _pick_string(data, _CLIENT_ID_KEYS)
    tenant = _pick_string(data, _TENANT_KEYS)
    if not client_id:
        for nested_key in ("installed", "web"):
            nested = data.get(nested_key)
            if isinstance(nested, dict):
                client_id = _pick_string(nested, ("client_id",))
                if client_id:
                    break

    try:
        return Credentials(client_id=client_id, tenant=tenant)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid credentials:\n{_format_validation_errors(e)}",
            hint="The file must contain a client_id (or appId).",
        ) from e


def load_credentials(client: str, lookup: EnvLookup | None = os.environ.get) -> Credentials:
    """Load the stored credentials for a client.

    Raises:
        ConfigLoadError: If the file is missing, unreadable or insecure
        ConfigValidationError: If it does not contain a client ID
    """
    path = credentials_path(client, lookup)
    try:
        validate_private_file(path)
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(f"Credentials not found: {path}") from e
    except OSError as e:
        raise ConfigLoadError(f"Failed to read credentials {path}: {e}") from e
    return parse_credentials_json(raw)


def save_credentials(
    client: str, credentials: Credentials, lookup: EnvLookup | None = os.environ.get
) -> Path:
    """Write a client's credentials file with mode 600."""
    ensure_base_dir(lookup)
    path = credentials_path(client, lookup)
    content = json.dumps(credentials.model_dump(), indent=2) + "\n"
    try:
        _write_private(path, content)
    except OSError as e:
        raise ConfigLoadError(f"Failed to write credentials {path}: {e}") from e
    logger.info(
        "Credentials saved",
        client=normalize_client_name(client),
        client_id=credentials.client_id[:8] + "...",
    )
    return path


def list_credentials(lookup: EnvLookup | None = os.environ.get) -> list[dict[str, str]]:
    """List stored credentials files; unreadable or invalid files are skipped."""
    directory = base_dir(lookup)
    paths = [p for p in [directory / "credentials.json"] if p.exists()]
    paths += sorted(directory.glob("credentials-*.json"))
    items = []
    for path in paths:
        try:
            creds = parse_credentials_json(path.read_text(encoding="utf-8"))
        except (OSError, ConfigLoadError, ConfigValidationError) as e:
            logger.debug("Skipping unreadable credentials file", path=str(path), error=str(e))
            continue
        client = DEFAULT_CLIENT
        if path.name.startswith("credentials-"):
            client = path.name.removeprefix("credentials-").removesuffix(".json")
        items.append(
            {
                "client": client,
                "client_id": creds.client_id,
                "tenant": creds.tenant,
                "path": str(path),
            }
        )
    return items

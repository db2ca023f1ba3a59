"""Pydantic models for mocli's on-disk configuration.

Two kinds of files live in the config directory:
- ``credentials.json`` / ``credentials-<client>.json``: the registered app
  (client) ID and tenant for one named client
- ``config.yaml``: keychain backend choice, default client/account and the
  list of authorized accounts

Usage:
    from mocli.config_schema import AppConfig, Credentials

    creds = Credentials(client_id="00000000-0000-0000-0000-000000000000")
    creds.tenant  # "common"
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CLIENT = "default"
DEFAULT_TENANT = "common"

_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def normalize_client_name(value: str) -> str:
    """Reduce a client name to filesystem-safe characters.

    Returns "default" for an empty name.
    """
    value = _SAFE_NAME_RE.sub("-", value.strip())
    return value or DEFAULT_CLIENT


def normalize_email(value: str) -> str:
    return value.strip().lower()


class Credentials(BaseModel):
    """Registered application identity for one client."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant: str = Field(
        default=DEFAULT_TENANT,
        description="Directory (tenant) ID or 'common' for any account type",
    )

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("missing client_id/appId")
        return v

    @field_validator("tenant")
    @classmethod
    def default_tenant(cls, v: str) -> str:
        return v.strip() or DEFAULT_TENANT


class AccountRecord(BaseModel):
    """An account that completed `auth add` for a client."""

    email: str
    client: str = DEFAULT_CLIENT
    created_at: str = ""

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return normalize_email(v)

    @field_validator("client")
    @classmethod
    def safe_client(cls, v: str) -> str:
        return normalize_client_name(v)


class AppConfig(BaseModel):
    """Top-level application configuration (config.yaml)."""

    keyring_backend: str = Field(
        default="",
        description="Secrets backend: auto, keychain or file (empty means auto)",
    )
    default_account: str = ""
    default_client: str = ""
    accounts: list[AccountRecord] = Field(default_factory=list)

    @field_validator("keyring_backend", "default_account")
    @classmethod
    def lower_strip(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("default_client")
    @classmethod
    def safe_default_client(cls, v: str) -> str:
        return normalize_client_name(v) if v.strip() else ""

    @model_validator(mode="after")
    def dedupe_accounts(self) -> AppConfig:
        """Drop blank and duplicate (client, email) accounts and sort the rest."""
        seen: set[tuple[str, str]] = set()
        clean: list[AccountRecord] = []
        for account in self.accounts:
            key = (account.client, account.email)
            if not account.email or key in seen:
                continue
            seen.add(key)
            clean.append(account)
        clean.sort(key=lambda a: (a.client, a.email))
        self.accounts = clean
        return self

    def upsert_account(self, client: str, email: str) -> None:
        """Record an authorized account, keeping the original created_at."""
        client = normalize_client_name(client)
        email = normalize_email(email)
        if not email:
            return
        for account in self.accounts:
            if account.client == client and account.email == email:
                if not account.created_at:
                    account.created_at = _utc_now()
                return
        self.accounts.append(AccountRecord(email=email, client=client, created_at=_utc_now()))
        self.accounts.sort(key=lambda a: (a.client, a.email))

    def remove_account(self, client: str, email: str) -> None:
        """Forget an account; clears the default account if it was this one."""
        client = normalize_client_name(client)
        email = normalize_email(email)
        if not email:
            return
        self.accounts = [
            a for a in self.accounts if not (a.client == client and a.email == email)
        ]
        if self.default_account == email:
            self.default_account = ""

    def accounts_for_client(self, client: str) -> list[AccountRecord]:
        client = normalize_client_name(client)
        return [a for a in self.accounts if a.client == client]


def _utc_now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")

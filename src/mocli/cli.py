"""Command-line interface for mocli's identity commands.

Every command writes a JSON document to stdout. Failures are written to
stderr as ``{"error": {"code", "message", "hint"}}`` and the process exits
with the error's exit code.

Usage:
    mo auth credentials ./app-registration.json
    mo auth add user@example.com
    mo auth add user@example.com --device
    mo auth status
    mo --client work auth list
    mo auth remove user@example.com
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from mocli.config_schema import Credentials
from mocli.core.errors import MocliError, UsageError
from mocli.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _write_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


def _fail(error: MocliError) -> None:
    click.echo(json.dumps({"error": error.to_dict()}, indent=2), err=True)
    sys.exit(error.exit_code)


def _run(action: Callable[[], Any]) -> None:
    """Run a command body, rendering its result or its error."""
    try:
        result = action()
    except KeyboardInterrupt:
        click.echo(json.dumps({"error": {"code": "cancelled", "message": "cancelled"}}), err=True)
        sys.exit(130)
    except MocliError as e:
        logger.debug("Command failed", error_code=e.code, error=e.message)
        _fail(e)
    else:
        _write_json(result)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON on stderr")
@click.option("--client", default="", help="Client (app registration) name")
@click.option("--account", default="", help="Account email to act as")
@click.pass_context
def cli(ctx: click.Context, debug: bool, json_logs: bool, client: str, account: str) -> None:
    """mo - Microsoft Graph from the command line."""
    configure_logging(log_level="DEBUG" if debug else "WARNING", json_output=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["client"] = client.strip()
    ctx.obj["account"] = account.strip()


@cli.group()
def auth() -> None:
    """Manage app credentials and authorized accounts."""


@auth.command("credentials")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--client-id", default="", help="Override the client ID from the file")
@click.option("--tenant", default="", help="Override the tenant from the file")
@click.pass_context
def auth_credentials(ctx: click.Context, path: Path, client_id: str, tenant: str) -> None:
    """Store app registration credentials from a JSON file."""
    from mocli.auth.broker import select_client
    from mocli.config import (
        load_app_config,
        parse_credentials_json,
        save_app_config,
        save_credentials,
    )

    def action() -> dict:
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise UsageError("failed to read credentials file", hint=str(e)) from e
        creds = parse_credentials_json(raw)
        if client_id.strip() or tenant.strip():
            creds = Credentials(
                client_id=client_id.strip() or creds.client_id,
                tenant=tenant.strip() or creds.tenant,
            )

        config = load_app_config()
        client = select_client(config, ctx.obj["client"])
        save_credentials(client, creds)
        if not config.default_client:
            config.default_client = client
            save_app_config(config)
        return {
            "saved": True,
            "client": client,
            "client_id": creds.client_id,
            "tenant": creds.tenant,
        }

    _run(action)


@auth.command("list-credentials")
def auth_list_credentials() -> None:
    """List stored app credentials."""
    from mocli.config import list_credentials

    _run(lambda: {"items": list_credentials()})


@auth.command("add")
@click.argument("email")
@click.option("--device", is_flag=True, help="Use the device-code flow (headless systems)")
@click.option(
    "--timeout",
    default=120.0,
    type=float,
    show_default=True,
    help="Seconds to wait for the browser sign-in",
)
@click.option("--force-consent", is_flag=True, help="Show the consent screen again")
@click.pass_context
def auth_add(
    ctx: click.Context, email: str, device: bool, timeout: float, force_consent: bool
) -> None:
    """Sign in an account and store its refresh token."""
    from mocli.auth.login import add_account

    _run(
        lambda: add_account(
            email,
            client=ctx.obj["client"],
            device=device,
            timeout=timeout,
            force_consent=force_consent,
        )
    )


@auth.command("status")
@click.pass_context
def auth_status(ctx: click.Context) -> None:
    """Show credentials, secrets backend and token availability."""
    from mocli.auth.login import auth_status as status

    _run(lambda: status(client=ctx.obj["client"], account=ctx.obj["account"]))


@auth.command("list")
@click.pass_context
def auth_list(ctx: click.Context) -> None:
    """List authorized accounts."""
    from mocli.auth.login import list_accounts

    _run(lambda: list_accounts(client=ctx.obj["client"]))


@auth.command("remove")
@click.argument("email")
@click.pass_context
def auth_remove(ctx: click.Context, email: str) -> None:
    """Forget an account and delete its stored token."""
    from mocli.auth.login import remove_account

    _run(lambda: remove_account(email, client=ctx.obj["client"]))


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()

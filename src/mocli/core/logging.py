"""Structured logging configuration for mocli.

Uses structlog on top of stdlib logging. Logs go to stderr so that stdout
stays reserved for the CLI's JSON results. An interactive login binds an
``auth_session_id`` via contextvars so every entry of one login attempt can
be correlated. Values under credential-bearing keys are masked before
rendering.

Usage:
    from mocli.core.logging import get_logger, set_auth_session_id

    logger = get_logger(__name__)

    set_auth_session_id(str(uuid.uuid4()))
    logger.info("Device code issued", interval=5)
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

REDACTED = "[redacted]"

# Event keys whose values must never reach a log sink
SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "code",
        "code_verifier",
        "device_code",
        "password",
        "authorization",
    }
)

_auth_session_id: ContextVar[str | None] = ContextVar("auth_session_id", default=None)


def set_auth_session_id(session_id: str | None) -> None:
    """Set the login correlation ID for the current context.

    Args:
        session_id: UUID string for this login attempt, or None to clear
    """
    _auth_session_id.set(session_id)


def get_auth_session_id() -> str | None:
    return _auth_session_id.get()


def add_auth_session_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor to add the login correlation ID to log entries."""
    session_id = _auth_session_id.get()
    if session_id is not None:
        event_dict["auth_session_id"] = session_id
    return event_dict


def redact_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that masks values logged under SECRET_KEYS."""
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(log_level: str = "WARNING", json_output: bool = False) -> None:
    """Configure structlog for the CLI.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, render JSON lines; otherwise the console renderer
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_auth_session_id,
        redact_secrets,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        processors = shared_processors + [structlog.processors.format_exc_info, renderer]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        processors = shared_processors + [renderer]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)
    """
    return structlog.get_logger(name)

"""Microsoft Graph API client module.

Provides the resilient, authenticated request primitive used by resource
commands: retries with backoff, Retry-After handling, error classification
and page-token extraction.

Usage:
    from mocli.auth import resolve_identity
    from mocli.graph import GraphClient

    identity = resolve_identity()
    client = GraphClient(identity.broker(), identity.client, identity.account)
    page = client.get("/v1.0/me/messages")
"""

from mocli.graph.client import (
    GraphClient,
    GraphResponse,
    backoff_duration,
    extract_page_token,
    fetch_profile_email,
    map_graph_error,
    retry_delay,
)

__all__ = [
    "GraphClient",
    "GraphResponse",
    "backoff_duration",
    "extract_page_token",
    "fetch_profile_email",
    "map_graph_error",
    "retry_delay",
]

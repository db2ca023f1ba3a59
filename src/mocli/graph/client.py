"""Microsoft Graph API client with retry logic and error classification.

This module provides the one request primitive mocli's resource commands
build on:
- A fresh access token from the TokenBroker for every request
- Bounded retries (3 attempts) for 429, 5xx and network failures
- Retry-After compliance, capped at 60 seconds, else exponential backoff
- Mapping of terminal statuses onto the mocli error taxonomy
- Extraction of a short page token from @odata.nextLink

Usage:
    from mocli.auth.broker import resolve_identity
    from mocli.graph.client import GraphClient

    identity = resolve_identity()
    client = GraphClient(identity.broker(), identity.client, identity.account)

    result = client.get("/v1.0/me/messages", params={"$top": 10})
    result.body["value"], result.next_page
"""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlparse

import requests

from mocli.auth.broker import TokenBroker
from mocli.auth.oauth import DEFAULT_AUTH_BASE_URL
from mocli.config import EnvLookup, env_str
from mocli.core.errors import (
    AuthenticationRequired,
    MocliError,
    NotFoundError,
    PermissionDenied,
    TransientFailure,
    UsageError,
)
from mocli.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com"

MAX_ATTEMPTS = 3
MAX_RETRY_AFTER = 60.0
BASE_BACKOFF = 0.3
REQUEST_TIMEOUT = 30.0
PROFILE_TIMEOUT = 20.0


@dataclass(slots=True)
class GraphResponse:
    """Result of a successful Graph call.

    Attributes:
        status_code: HTTP status of the final attempt
        body: Parsed JSON body ({} for empty responses)
        next_page: Continuation token extracted from @odata.nextLink ("" if none)
    """

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    next_page: str = ""


def should_retry_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def backoff_duration(attempt: int) -> float:
    """Exponential backoff in seconds: 0.3, 0.6, 1.2, ... for attempt 1, 2, 3."""
    attempt = max(attempt, 1)
    return BASE_BACKOFF * (2 ** (attempt - 1))


def retry_delay(headers: Mapping[str, str] | None, attempt: int) -> float:
    """Delay before the next attempt.

    An integer Retry-After header (seconds, > 0) wins, capped at 60 seconds;
    otherwise exponential backoff for the attempt that just failed.
    """
    if headers:
        value = (headers.get("Retry-After") or "").strip()
        if value:
            try:
                seconds = int(value)
            except ValueError:
                seconds = 0
            if seconds > 0:
                return min(float(seconds), MAX_RETRY_AFTER)
    return backoff_duration(attempt)


def extract_page_token(next_link: str | None) -> str:
    """Extract the continuation token from an @odata.nextLink URL.

    Returns the ``$skiptoken`` value, else the ``$skip`` value, else the link
    itself. An empty link yields "".
    """
    next_link = (next_link or "").strip()
    if not next_link:
        return ""
    try:
        query = parse_qs(urlparse(next_link).query)
    except ValueError:
        return next_link
    for name in ("$skiptoken", "$skip"):
        value = query.get(name, [""])[0].strip()
        if value:
            return value
    return next_link


def map_graph_error(status_code: int, error_code: str, message: str) -> MocliError:
    """Classify a terminal Graph error response."""
    if status_code == 401:
        return AuthenticationRequired(
            "graph request unauthorized", hint=message, status_code=status_code
        )
    if status_code == 403:
        return PermissionDenied("graph request forbidden", hint=message, status_code=status_code)
    if status_code == 404:
        return NotFoundError("graph resource not found", hint=message, status_code=status_code)
    if should_retry_status(status_code):
        return TransientFailure("graph transient failure", hint=message, status_code=status_code)
    message = message.strip() or f"graph request failed with status {status_code}"
    return UsageError(message, hint=error_code, status_code=status_code)


def _parse_error(response: requests.Response) -> tuple[str, str]:
    """Get (error code, message) from a Graph error body."""
    try:
        error_info = response.json().get("error", {})
        error_code = str(error_info.get("code") or "").strip()
        error_message = str(error_info.get("message") or "").strip()
    except (ValueError, AttributeError):
        error_code, error_message = "", ""
    if not error_message:
        error_message = (response.text or "").strip()
    return error_code, error_message


class GraphClient:
    """Microsoft Graph API client bound to one account.

    Attributes:
        broker: TokenBroker supplying access tokens
        client: Client name of the account
        account: Account email
        lookup: Environment lookup used for MO_GRAPH_BASE_URL
        max_attempts: Total attempts per request, including the first

    Example:
        client = GraphClient(broker, "default", "user@example.com")

        page = client.get("/v1.0/me/messages", params={"$top": 25})
        if page.next_page:
            client.get("/v1.0/me/messages", params={"$top": 25, "$skiptoken": page.next_page})
    """

    def __init__(
        self,
        broker: TokenBroker,
        client: str,
        account: str,
        lookup: EnvLookup | None = os.environ.get,
        session: requests.Session | None = None,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.broker = broker
        self.client = client
        self.account = account
        self.lookup = lookup
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self._override_warning_shown = False

    @property
    def base_url(self) -> str:
        return env_str(self.lookup, "MO_GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL).rstrip("/")

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint  # Already a full URL (e.g., @odata.nextLink)
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _warn_endpoint_overrides(self) -> None:
        """Log once per client when identity or Graph endpoints are overridden."""
        if self._override_warning_shown:
            return
        self._override_warning_shown = True
        for env_key, default in (
            ("MO_AUTH_BASE_URL", DEFAULT_AUTH_BASE_URL),
            ("MO_GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL),
        ):
            current = env_str(self.lookup, env_key, default)
            if current.rstrip("/") != default.rstrip("/"):
                logger.warning("Non-default endpoint configured", env=env_key, url=current)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> GraphResponse:
        """Make an HTTP request to the Graph API with retry logic.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: Path relative to the Graph base URL (e.g. "/v1.0/me")
                or an absolute URL
            params: URL query parameters
            json: JSON body for POST/PATCH requests
            timeout: Per-attempt timeout in seconds

        Returns:
            GraphResponse with the parsed body and next page token

        Raises:
            AuthenticationRequired: 401, or no usable token
            PermissionDenied: 403
            NotFoundError: 404
            TransientFailure: 429/5xx/network failure after all attempts
            UsageError: Any other 4xx
        """
        self._warn_endpoint_overrides()

        access_token = self.broker.get_access_token(self.client, self.account)
        url = self._make_url(endpoint)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        for attempt in range(1, self.max_attempts + 1):
            logger.debug(
                "Graph API request",
                method=method,
                endpoint=endpoint,
                attempt=attempt,
                params=list(params.keys()) if params else None,
            )

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except requests.exceptions.RequestException as e:
                if attempt >= self.max_attempts:
                    raise TransientFailure("graph request failed", hint=str(e)) from e
                delay = backoff_duration(attempt)
                logger.warning(
                    "Graph API connection error, retrying",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt,
                    error=str(e),
                    delay=delay,
                )
                time.sleep(delay)
                continue

            if 200 <= response.status_code < 300:
                return self._build_response(response)

            if should_retry_status(response.status_code) and attempt < self.max_attempts:
                delay = retry_delay(response.headers, attempt)
                logger.warning(
                    "Retrying Graph API request",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            error_code, error_message = _parse_error(response)
            logger.error(
                "Graph API error",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                error_code=error_code,
                error_message=error_message[:200],
            )
            raise map_graph_error(response.status_code, error_code, error_message)

        raise TransientFailure(f"Request to {endpoint} failed after {self.max_attempts} attempts")

    @staticmethod
    def _build_response(response: requests.Response) -> GraphResponse:
        if response.status_code == 204 or not response.content:
            return GraphResponse(status_code=response.status_code)
        try:
            body = response.json()
        except ValueError as e:
            raise TransientFailure("could not parse graph response", hint=str(e)) from e
        if not isinstance(body, dict):
            body = {"value": body}
        return GraphResponse(
            status_code=response.status_code,
            body=body,
            next_page=extract_page_token(body.get("@odata.nextLink")),
        )

    def get(
        self, endpoint: str, params: dict[str, Any] | None = None, timeout: float = REQUEST_TIMEOUT
    ) -> GraphResponse:
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def post(
        self,
        endpoint: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> GraphResponse:
        return self.request("POST", endpoint, params=params, json=json, timeout=timeout)

    def patch(
        self, endpoint: str, json: Any = None, timeout: float = REQUEST_TIMEOUT
    ) -> GraphResponse:
        return self.request("PATCH", endpoint, json=json, timeout=timeout)

    def delete(self, endpoint: str, timeout: float = REQUEST_TIMEOUT) -> GraphResponse:
        return self.request("DELETE", endpoint, timeout=timeout)

    def get_user_email(self) -> str:
        """Get the signed-in user's email address.

        Returns:
            Lower-cased userPrincipalName, else mail

        Raises:
            UsageError: If the profile has neither field
        """
        profile = self.get(
            "/v1.0/me", params={"$select": "userPrincipalName,mail"}, timeout=PROFILE_TIMEOUT
        ).body
        return _profile_email(profile)


def _profile_email(profile: dict[str, Any]) -> str:
    email = str(profile.get("userPrincipalName") or "").strip().lower()
    if not email:
        email = str(profile.get("mail") or "").strip().lower()
    if not email:
        raise UsageError(
            "profile response missing email",
            hint="Check that the User.Read permission is granted.",
        )
    return email


def fetch_profile_email(
    access_token: str,
    lookup: EnvLookup | None = os.environ.get,
    session: requests.Session | None = None,
) -> str:
    """Get the signed-in user's email straight from /me with a given token.

    Used right after a login, before any refresh token is stored, so it does
    not go through the TokenBroker.

    Returns:
        Lower-cased userPrincipalName, else mail

    Raises:
        TransientFailure: If the request fails or returns a non-2xx status
        UsageError: If the profile has no email
    """
    base = env_str(lookup, "MO_GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL).rstrip("/")
    session = session or requests.Session()
    try:
        response = session.get(
            f"{base}/v1.0/me",
            params={"$select": "userPrincipalName,mail"},
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=PROFILE_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        raise TransientFailure("profile request failed", hint=str(e)) from e
    if not 200 <= response.status_code < 300:
        raise TransientFailure(
            f"profile request failed with status {response.status_code}",
            status_code=response.status_code,
        )
    try:
        profile = response.json()
    except ValueError as e:
        raise TransientFailure("could not parse profile response", hint=str(e)) from e

    if not isinstance(profile, dict):
        raise TransientFailure("could not parse profile response")

    email = _profile_email(profile)
    logger.info("User email detected", email=email)
    return email

"""Browser-based PKCE login through a loopback redirect listener.

A one-shot HTTP server on 127.0.0.1 (OS-assigned port) receives the
provider's redirect, serving each connection on its own thread, and hands
the result to the waiting caller through a single-slot queue. Only the
first callback is kept; later ones are dropped without blocking the handler.
Idle connections time out on their own threads and never hold up the
callback. The caller waits for whichever comes first: the callback, the
timeout, or a shutdown signal. The server is stopped on every exit path.
"""

from __future__ import annotations

import queue
import secrets
import threading
import time
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

from mocli.auth.oauth import OAuthFlow, TokenResponse, parse_redirect_callback
from mocli.core.errors import (
    AuthenticationRequired,
    AuthorizationCancelled,
    AuthorizationTimeout,
    MocliError,
    StateMismatchError,
)
from mocli.core.logging import get_logger

logger = get_logger(__name__)

CALLBACK_PATH = "/oauth2/callback"
LOOPBACK_HOST = "127.0.0.1"
DEFAULT_LOGIN_TIMEOUT = 120.0
SHUTDOWN_TIMEOUT = 2.0
REQUEST_TIMEOUT = 5.0
WAIT_SLICE = 0.2

SUCCESS_PAGE = b"Authorization complete. You can close this tab.\n"
FAILURE_PAGE = b"Authorization failed. Return to the terminal for details.\n"


@dataclass(frozen=True, slots=True)
class CallbackResult:
    """What the redirect carried: a code and state, or an error."""

    code: str = ""
    state: str = ""
    error: MocliError | None = None


class _CallbackHandler(BaseHTTPRequestHandler):
    server_version = "mocli-callback/1.0"
    # Idle or half-open connections are dropped after this many seconds
    timeout = REQUEST_TIMEOUT
    server: CallbackServer

    def do_GET(self) -> None:
        if urlparse(self.path).path != CALLBACK_PATH:
            self.send_error(404)
            return

        try:
            code, state = parse_redirect_callback(f"http://{LOOPBACK_HOST}{self.path}")
        except MocliError as e:
            self.server.offer(CallbackResult(error=e))
            self._respond(400, FAILURE_PAGE)
            return

        self.server.offer(CallbackResult(code=code, state=state))
        self._respond(200, SUCCESS_PAGE)

    def _respond(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:
        # Query strings carry the authorization code; keep them out of logs.
        # Timed-out connections have no parsed request line.
        path = urlparse(getattr(self, "path", "") or "").path
        logger.debug("Callback request", method=getattr(self, "command", None), path=path)


class CallbackServer(ThreadingHTTPServer):
    """Loopback server that captures a single OAuth redirect.

    Attributes:
        results: Capacity-1 queue receiving the first CallbackResult
    """

    daemon_threads = True

    def __init__(self, host: str = LOOPBACK_HOST, port: int = 0):
        super().__init__((host, port), _CallbackHandler)
        self.results: queue.Queue[CallbackResult] = queue.Queue(maxsize=1)
        self._thread: threading.Thread | None = None

    @property
    def redirect_uri(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}{CALLBACK_PATH}"

    def offer(self, result: CallbackResult) -> bool:
        """Hand a result to the waiter without blocking; False if one is already queued."""
        try:
            self.results.put_nowait(result)
        except queue.Full:
            logger.debug("Dropping duplicate callback")
            return False
        return True

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.serve_forever,
            kwargs={"poll_interval": WAIT_SLICE},
            name="oauth-callback",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop serving and release the port."""
        if self._thread is not None:
            self.shutdown()
            self._thread.join(SHUTDOWN_TIMEOUT)
            self._thread = None
        self.server_close()


def wait_for_callback(
    results: queue.Queue[CallbackResult],
    timeout: float,
    shutdown_event: threading.Event | None = None,
) -> CallbackResult:
    """Wait for the first callback, the timeout, or a shutdown signal.

    Raises:
        AuthorizationTimeout: If no callback arrives within timeout seconds
        AuthorizationCancelled: If shutdown_event is set first
    """
    deadline = time.monotonic() + timeout
    while True:
        if shutdown_event is not None and shutdown_event.is_set():
            raise AuthorizationCancelled("authorization was cancelled")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AuthorizationTimeout(
                "authorization timed out",
                hint="Re-run auth add and complete browser sign-in, or use --device.",
            )
        try:
            return results.get(timeout=min(remaining, WAIT_SLICE))
        except queue.Empty:
            continue


def _open_in_browser(url: str) -> bool:
    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning("Could not open browser", error=str(e))
        return False


def run_browser_authorization(
    flow: OAuthFlow,
    email: str,
    client: str = "",
    timeout: float = DEFAULT_LOGIN_TIMEOUT,
    force_consent: bool = False,
    scopes: list[str] | None = None,
    open_browser: Callable[[str], bool] = _open_in_browser,
    shutdown_event: threading.Event | None = None,
) -> TokenResponse:
    """Run the full PKCE browser login and return the token response.

    Args:
        flow: OAuthFlow for the client
        email: Account email used as login_hint
        client: Client name recorded on the session
        timeout: Seconds to wait for the browser callback
        force_consent: Ask the provider to show the consent screen again
        scopes: Scopes to request
        open_browser: Opens a URL in the user's browser, returning success
        shutdown_event: Set to abandon the wait (e.g. on process shutdown)

    Raises:
        AuthenticationRequired: If the browser cannot be opened
        AuthorizationDenied: If the callback carries an error
        StateMismatchError: If the callback state does not match
        AuthorizationTimeout / AuthorizationCancelled
        OAuthError / TransientFailure: From the code exchange
    """
    server = CallbackServer()
    server.start()
    try:
        session = flow.start_authorization_session(
            email, server.redirect_uri, force_consent=force_consent, scopes=scopes, client=client
        )
        logger.info("Waiting for browser sign-in", redirect_uri=session.redirect_uri)

        if not open_browser(session.auth_url):
            raise AuthenticationRequired(
                "browser open failed",
                hint="Use --device on headless systems, or open a browser-capable environment.",
            )

        result = wait_for_callback(server.results, timeout, shutdown_event)
        if result.error is not None:
            raise result.error
        if not secrets.compare_digest(result.state.encode(), session.state.encode()):
            logger.warning("Callback state mismatch")
            raise StateMismatchError(
                "state mismatch",
                hint="Restart auth flow and use the latest redirect URL.",
            )
        if session.is_expired():
            raise AuthorizationTimeout(
                "authorization session expired",
                hint="Re-run auth add and complete browser sign-in sooner.",
            )

        return flow.exchange_authorization_code(
            result.code, session.redirect_uri, session.verifier, scopes
        )
    finally:
        server.stop()

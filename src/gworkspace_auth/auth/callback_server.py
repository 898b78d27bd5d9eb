"""Loopback HTTP listener for the OAuth2 redirect.

The server runs in a daemon thread and records the first callback it
receives. The OAuth2 provider polls ``result`` and decides what the
callback means; the listener itself only answers the browser.
"""

import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

from gworkspace_auth.errors import GoogleOAuth2NetworkError

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PATH = "/oauth2callback"

_SUCCESS_PAGE = (
    b"<html><head><title>Authorization Successful</title></head><body>"
    b"<h1>Authorization Successful</h1>"
    b"<p>You can close this tab and return to the application.</p>"
    b"</body></html>"
)
_DENIED_PAGE = (
    b"<html><head><title>Authorization Failed</title></head><body>"
    b"<h1>Authorization Failed</h1>"
    b"<p>You can close this tab and try again.</p>"
    b"</body></html>"
)
_NO_CODE_PAGE = (
    b"<html><head><title>Authorization Error</title></head><body>"
    b"<h1>Authorization Error</h1>"
    b"<p>No authorization code received.</p>"
    b"</body></html>"
)


@dataclass
class CallbackResult:
    """What the browser redirect carried."""

    code: str | None = None
    error: str | None = None
    state: str | None = None

    @property
    def received(self) -> bool:
        return self.code is not None or self.error is not None


class OAuthCallbackServer:
    """Single-use redirect listener bound to the redirect URI's host and port.

    Attributes:
        host: Interface the listener binds to.
        port: Listening port.
        callback_path: Path that carries the authorization response.
        result: First callback received, filled in by the handler thread.

    Example:
        ```python
        server = OAuthCallbackServer("http://localhost:3000/oauth2callback")
        server.start()
        try:
            while not server.result.received:
                await asyncio.sleep(0.1)
        finally:
            server.close()
        ```
    """

    def __init__(self, redirect_uri: str, port: int | None = None) -> None:
        parsed = urlparse(redirect_uri)
        self.host = parsed.hostname or "localhost"
        if port is None:
            port = parsed.port if parsed.port is not None else 80
        self.port = port
        self.callback_path = parsed.path or DEFAULT_CALLBACK_PATH
        self.result = CallbackResult()
        self._lock = threading.Lock()
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Bind the listener and serve in a background thread.

        Raises:
            GoogleOAuth2NetworkError: If the port cannot be bound.
        """
        try:
            self._server = HTTPServer((self.host, self.port), self._make_handler())
        except OSError as e:
            raise GoogleOAuth2NetworkError(
                f"Failed to start callback server on port {self.port}",
                e,
                {"port": self.port, "operation": "start_callback_server"},
            ) from e

        # Port 0 binds an ephemeral port
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="oauth2-callback", daemon=True
        )
        self._thread.start()
        logger.debug("OAuth2 callback server listening on %s:%d", self.host, self.port)

    def close(self) -> None:
        """Stop the listener. Safe to call more than once."""
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)
            self._thread = None
        logger.debug("OAuth2 callback server closed")

    def _record(self, code: str | None, error: str | None, state: str | None) -> None:
        with self._lock:
            if self.result.received:
                return
            self.result = CallbackResult(code=code, error=error, state=state)

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        owner = self
        accepted_paths = {owner.callback_path, DEFAULT_CALLBACK_PATH}

        class OAuthCallbackHandler(BaseHTTPRequestHandler):
            """HTTP handler for the OAuth2 redirect."""

            def log_message(self, format: str, *args) -> None:
                """Suppress HTTP server logs."""
                pass

            def do_GET(self) -> None:
                request_parsed = urlparse(self.path)
                if request_parsed.path not in accepted_paths:
                    self.send_response(404)
                    self.end_headers()
                    self.wfile.write(b"Not Found")
                    return

                query_params = parse_qs(request_parsed.query)
                code = query_params.get("code", [None])[0]
                error = query_params.get("error", [None])[0]
                state = query_params.get("state", [None])[0]

                if error:
                    owner._record(None, error, state)
                    self._respond(400, _DENIED_PAGE)
                elif code:
                    owner._record(code, None, state)
                    self._respond(200, _SUCCESS_PAGE)
                else:
                    self._respond(400, _NO_CODE_PAGE)

            def _respond(self, status: int, body: bytes) -> None:
                self.send_response(status)
                self.send_header("Content-type", "text/html")
                self.end_headers()
                self.wfile.write(body)

        return OAuthCallbackHandler

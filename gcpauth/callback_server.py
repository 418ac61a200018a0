"""Ephemeral localhost HTTP listener for OAuth2 redirect capture.

The listener binds a ``http.server.HTTPServer`` on a daemon thread and
holds at most one PendingExchange: an asyncio future waiting for the
``code`` that belongs to a given ``state`` nonce. Request handling runs
on the server thread and settles the future on its event loop.
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103

from __future__ import annotations

import asyncio
import contextlib
import errno
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from .exceptions import AuthenticationError, ListenerStopped, NetworkError, ProtocolError


logger = logging.getLogger("gcpauth.auth")

CALLBACK_PATH = "/callback"

_ADDR_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}

_PAGE_STYLE = """<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  h1.error { color: #cc0000; }
  p { color: #666; }
</style>"""

_SUCCESS_HTML = (
    "<!DOCTYPE html>\n<html>\n<head><title>Authentication Successful</title>\n"
    + _PAGE_STYLE
    + """</head>
<body><div class="card">
  <h1>&#x2705; Authentication Successful</h1>
  <p>You have signed in to Google Cloud. You can close this window.</p>
</div>
<script>setTimeout(function () { window.close(); }, 3000);</script>
</body></html>"""
)

_ERROR_HTML = (
    "<!DOCTYPE html>\n<html>\n<head><title>Authentication Failed</title>\n"
    + _PAGE_STYLE
    + """</head>
<body><div class="card">
  <h1 class="error">&#x274C; Authentication Failed</h1>
  <p>{error}</p>
  <p>You can close this window and try again.</p>
</div></body></html>"""
)

_INVALID_STATE_HTML = (
    "<!DOCTYPE html>\n<html>\n<head><title>Invalid Request</title>\n"
    + _PAGE_STYLE
    + """</head>
<body><div class="card">
  <h1 class="error">Invalid authentication state</h1>
  <p>This sign-in link is not the one this application is waiting for.</p>
</div></body></html>"""
)


class PendingExchange:
    """The single outstanding wait for an authorization code.

    Parameters
    ----------
    nonce : str
        The ``state`` value the redirect must echo.
    loop : asyncio.AbstractEventLoop
        Loop that owns ``future``.
    """

    def __init__(self, nonce: str, loop: asyncio.AbstractEventLoop) -> None:
        self.nonce = nonce
        self._loop = loop
        self.future: asyncio.Future[str] = loop.create_future()
        # Rejections nobody awaits must not be reported as unretrieved
        self.future.add_done_callback(_consume_exception)

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, code: str) -> None:
        """Complete the wait with ``code``. Safe to call from any thread."""
        self._call(self._set_result, code)

    def reject(self, exc: BaseException) -> None:
        """Fail the wait with ``exc``. Safe to call from any thread."""
        self._call(self._set_exception, exc)

    def cancel(self) -> None:
        self._call(self._cancel, None)

    def _call(self, callback: Any, arg: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            callback(arg)
            return
        # A closed loop has no remaining waiters
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(callback, arg)

    def _set_result(self, code: str) -> None:
        if not self.future.done():
            self.future.set_result(code)

    def _set_exception(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)

    def _cancel(self, _: Any) -> None:
        if not self.future.done():
            self.future.cancel()


def _consume_exception(future: asyncio.Future[str]) -> None:
    if not future.cancelled():
        future.exception()


class CallbackListener:
    """Localhost HTTP listener that captures one OAuth2 redirect at a time.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    redirect_host : str
        Host name placed in the redirect URI (default ``"localhost"``).
    port_retry_limit : int
        How many consecutive ports to try when the preferred one is taken.
    shutdown_grace : float
        Seconds ``stop()`` waits for the server to close before
        discarding it.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        redirect_host: str = "localhost",
        port_retry_limit: int = 10,
        shutdown_grace: float = 5.0,
    ) -> None:
        self._host = host
        self._redirect_host = redirect_host
        self._port_retry_limit = max(1, port_retry_limit)
        self._shutdown_grace = shutdown_grace
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._pending: PendingExchange | None = None
        self._lock = threading.Lock()
        self._actual_port: int = 0

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """The bound port, or 0 when not running."""
        return self._actual_port if self._server is not None else 0

    @property
    def redirect_uri(self) -> str:
        """Get the redirect URI registered with the provider.

        Returns
        -------
        str
            ``http://localhost:<port>/callback``.
        """
        return f"http://{self._redirect_host}:{self._actual_port}{CALLBACK_PATH}"

    @property
    def pending(self) -> PendingExchange | None:
        return self._pending

    def start(self, preferred_port: int = 0) -> str:
        """Bind the listener and serve on a daemon thread.

        Tries ``preferred_port`` first and increments on
        ``EADDRINUSE``. Calling ``start`` on a running listener returns
        the current redirect URI.

        Parameters
        ----------
        preferred_port : int
            First port to try (``0`` lets the OS choose).

        Returns
        -------
        str
            The redirect URI to use with the OAuth2 provider.

        Raises
        ------
        NetworkError
            If no port could be bound.
        """
        if self._server is not None:
            logger.debug("Callback listener already running on %s", self.redirect_uri)
            return self.redirect_uri

        handler = self._make_handler()
        attempts = 1 if preferred_port == 0 else self._port_retry_limit
        port = preferred_port
        server: HTTPServer | None = None

        for attempt in range(attempts):
            try:
                server = HTTPServer((self._host, port), handler)
                break
            except OSError as exc:
                if exc.errno in _ADDR_IN_USE and attempt + 1 < attempts:
                    logger.debug("Port %d in use, trying %d", port, port + 1)
                    port += 1
                    continue
                msg = f"Could not bind the OAuth callback listener on {self._host}:{port}"
                raise NetworkError(msg, reason=str(exc)) from exc

        if server is None:
            msg = "Could not bind the OAuth callback listener"
            raise NetworkError(msg, port=preferred_port)

        self._server = server
        self._actual_port = server.server_address[1]
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="gcpauth-callback",
            daemon=True,
        )
        self._thread.start()

        logger.debug("OAuth callback listener started on %s", self.redirect_uri)
        return self.redirect_uri

    def expect(self, nonce: str) -> PendingExchange:
        """Install the PendingExchange for ``nonce``.

        Must be called from the event loop that will await the code.

        Raises
        ------
        AuthenticationError
            If another exchange is still waiting on this listener.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._pending is not None and not self._pending.done:
                msg = "A sign-in attempt is already waiting for a redirect"
                raise AuthenticationError(msg)
            pending = PendingExchange(nonce, loop)
            self._pending = pending
        return pending

    def discard(self, pending: PendingExchange) -> None:
        """Drop ``pending`` if it is still installed and cancel its wait."""
        with self._lock:
            if self._pending is pending:
                self._pending = None
        pending.cancel()

    def _take_pending(self, nonce: str | None = None) -> PendingExchange | None:
        """Remove and return the pending exchange, optionally only if ``nonce`` matches."""
        with self._lock:
            pending = self._pending
            if pending is None or (nonce is not None and pending.nonce != nonce):
                return None
            self._pending = None
            return pending

    def handle_callback(self, params: dict[str, str | None]) -> tuple[int, str]:
        """Apply a ``/callback`` request to the pending exchange.

        Returns
        -------
        tuple[int, str]
            HTTP status and page body.
        """
        error = params.get("error")
        if error:
            description = params.get("error_description") or error
            pending = self._take_pending()
            if pending is not None:
                pending.reject(ProtocolError(f"OAuth error: {description}", error=error))
            logger.warning("OAuth provider returned an error: %s", description)
            return 400, _ERROR_HTML.replace("{error}", html.escape(str(description), quote=True))

        code = params.get("code")
        state = params.get("state")
        if code and state:
            pending = self._take_pending(state)
            if pending is not None:
                pending.resolve(code)
                logger.debug("Authorization code received")
                return 200, _SUCCESS_HTML

        logger.warning("Rejected OAuth callback with missing or unknown state")
        return 400, _INVALID_STATE_HTML

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        listener_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 callbacks."""

            def do_OPTIONS(self) -> None:
                """Answer the CORS preflight for the callback route."""
                if urlparse(self.path).path != CALLBACK_PATH:
                    self.send_error(404)
                    return
                self.send_response(200)
                self._send_cors_headers()
                self.send_header("Content-Length", "0")
                self.end_headers()

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)
                if parsed.path != CALLBACK_PATH:
                    self.send_error(404)
                    return

                query = parse_qs(parsed.query)
                params = {
                    name: query.get(name, [None])[0]
                    for name in ("code", "state", "error", "error_description")
                }
                status, body = listener_ref.handle_callback(params)
                self._send_html(status, body)

            def do_POST(self) -> None:
                if urlparse(self.path).path != CALLBACK_PATH:
                    self.send_error(404)
                    return
                self.send_error(405)

            def _send_cors_headers(self) -> None:
                self.send_header("Access-Control-Allow-Origin", "*")
                self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
                self.send_header("Access-Control-Allow-Headers", "Content-Type")

            def _send_html(self, status: int, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(status)
                self._send_cors_headers()
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'; script-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the gcpauth logger."""
                if args:
                    logger.debug("OAuth callback listener: %s", args[0] % args[1:])

        return _CallbackHandler

    async def stop(self) -> None:
        """Stop the listener.

        Rejects a still-pending exchange with ``ListenerStopped`` and
        closes the socket. The server handle is discarded even if the
        close does not finish within the grace period. Safe to call
        repeatedly.
        """
        with self._lock:
            pending, self._pending = self._pending, None
            server, self._server = self._server, None
            thread, self._thread = self._thread, None

        if pending is not None:
            pending.reject(ListenerStopped("OAuth listener stopped"))

        if server is None:
            return

        try:
            await asyncio.wait_for(
                asyncio.to_thread(_close_server, server, thread),
                timeout=self._shutdown_grace,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Callback listener did not close within %.1fs; discarding it",
                self._shutdown_grace,
            )
        else:
            logger.debug("OAuth callback listener stopped")


def _close_server(server: HTTPServer, thread: threading.Thread | None) -> None:
    server.shutdown()
    server.server_close()
    if thread is not None and thread.is_alive():
        thread.join(timeout=1)

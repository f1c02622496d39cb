"""Interactive OAuth consent.

The browser is sent to Google's consent screen and redirected back to a
one-shot HTTP listener on the loopback interface. In manual mode the user
pastes the redirect URL instead, for machines without a local browser.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

from gmail_accounts import config
from gmail_accounts.google.exceptions import ConsentError
from gmail_accounts.google.oauth import GoogleOAuth, TokenGrant

logger = logging.getLogger(__name__)

_DONE_PAGE = (
    b"<html><body><h3>Authorization received.</h3>"
    b"<p>You can close this window and return to your application.</p></body></html>"
)


class _CallbackHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        parsed = urlparse(self.path)
        if "code" not in parse_qs(parsed.query) and "error" not in parse_qs(parsed.query):
            self.send_response(404)
            self.end_headers()
            return
        self.server.callback_path = self.path
        self.send_response(200)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(_DONE_PAGE)

    def log_message(self, format, *args):
        logger.debug("consent callback: " + format, *args)


class LoopbackConsentFlow:
    """Runs the consent flow and returns the initial token grant.

    Example:
        >>> flow = LoopbackConsentFlow(GoogleOAuth())
        >>> grant = await flow.run()
    """

    def __init__(
        self,
        oauth: GoogleOAuth,
        port: int | None = None,
        open_browser: bool = True,
        manual: bool = False,
        timeout: float = 300.0,
    ):
        self.oauth = oauth
        self.port = port or config.redirect_port()
        self.open_browser = open_browser
        self.manual = manual
        self.timeout = timeout

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}/"

    async def run(self, login_hint: str | None = None) -> TokenGrant:
        """Perform consent and exchange the authorization code.

        Raises:
            ConsentError: If the user denies access, the flow times out,
                or the code exchange fails.
        """
        return await asyncio.to_thread(self._run, login_hint)

    def _run(self, login_hint: str | None) -> TokenGrant:
        url, state = self.oauth.get_authorization_url(self.redirect_uri, login_hint=login_hint)

        if self.manual:
            response_url = self._prompt_for_redirect(url)
        else:
            response_url = self._wait_for_redirect(url)

        params = parse_qs(urlparse(response_url).query)
        if "error" in params:
            raise ConsentError(f"Consent was not granted: {params['error'][0]}")

        return self.oauth.fetch_token(response_url, self.redirect_uri, state)

    def _prompt_for_redirect(self, url: str) -> str:
        print(f"Authorization URL:\n{url}\n", file=sys.stderr)
        if self.open_browser:
            webbrowser.open(url)
        response_url = input("Paste redirect URL: ").strip()
        if not response_url:
            raise ConsentError("No redirect URL provided")
        return response_url

    def _wait_for_redirect(self, url: str) -> str:
        try:
            server = HTTPServer(("127.0.0.1", self.port), _CallbackHandler)
        except OSError as e:
            raise ConsentError(
                f"Cannot listen on port {self.port} for the OAuth redirect: {e}",
                action="Free the port or set GMAIL_OAUTH_REDIRECT_PORT.",
            ) from e

        server.callback_path = None
        server.timeout = 1.0
        logger.info(f"Waiting for OAuth redirect on {self.redirect_uri}")
        print(f"Open this URL to authorize Gmail access:\n{url}\n", file=sys.stderr)
        if self.open_browser and not webbrowser.open(url):
            logger.warning("Could not open a browser; open the URL manually")

        deadline = time.monotonic() + self.timeout
        try:
            while server.callback_path is None and time.monotonic() < deadline:
                server.handle_request()
        finally:
            server.server_close()

        if server.callback_path is None:
            raise ConsentError(f"No OAuth redirect received within {self.timeout:g}s")
        return f"http://localhost:{self.port}{server.callback_path}"

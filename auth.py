# auth.py
import logging
import threading
import time
import webbrowser
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qsl, urlparse

import msal
import requests

from errors import CsrfTokenError, RefreshTokenError

logger = logging.getLogger(__name__)

# Default expiry when the token endpoint omits expires_in
_DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class Credentials:
    """One consistent token snapshot. Replaced as a whole, never mutated."""

    access_token: str
    refresh_token: str
    expires_at: float

    def expires_in(self, now):
        return self.expires_at - now


def _credentials_from_result(result, previous_refresh_token=None, now=None):
    if not result or "access_token" not in result:
        detail = (result or {}).get("error_description") or (result or {}).get("error") or result
        raise RefreshTokenError(str(detail))
    now = time.time() if now is None else now
    try:
        expires_in = int(result.get("expires_in") or _DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError) as e:
        raise RefreshTokenError(f"invalid expires_in {result.get('expires_in')!r}", source=e) from e
    refresh_token = result.get("refresh_token") or previous_refresh_token
    if not refresh_token:
        raise RefreshTokenError("token response carries no refresh token")
    return Credentials(
        access_token=result["access_token"],
        refresh_token=refresh_token,
        expires_at=now + expires_in,
    )


class TokenClient:
    """Token endpoint access through msal for one registered application."""

    def __init__(self, config, app=None, clock=time.time):
        self.config = config
        self._app = app
        self._clock = clock

    @property
    def app(self):
        # msal contacts the authority on construction, so build it on first use
        if self._app is None:
            self._app = msal.ConfidentialClientApplication(
                client_id=self.config.client_id,
                client_credential=self.config.client_secret,
                authority=self.config.api_type.authority,
            )
        return self._app

    def exchange_refresh_token(self, refresh_token):
        try:
            result = self.app.acquire_token_by_refresh_token(
                refresh_token, scopes=list(self.config.scopes)
            )
        except (requests.RequestException, ValueError) as e:
            raise RefreshTokenError(str(e), source=e) from e
        return _credentials_from_result(result, refresh_token, now=self._clock())

    def initiate_auth_code_flow(self, redirect_uri):
        return self.app.initiate_auth_code_flow(
            scopes=list(self.config.scopes), redirect_uri=redirect_uri
        )

    def exchange_auth_code(self, flow, auth_response):
        try:
            result = self.app.acquire_token_by_auth_code_flow(flow, auth_response)
        except ValueError as e:
            # msal raises ValueError when the returned state does not match
            raise CsrfTokenError() from e
        except requests.RequestException as e:
            raise RefreshTokenError(str(e), source=e) from e
        return _credentials_from_result(result, now=self._clock())


def _auth_response_from_path(path):
    """Query of an authorization redirect, or None for unrelated requests such as favicons."""
    query = dict(parse_qsl(urlparse(path).query))
    if "code" in query or "error" in query:
        return query
    return None


class _RedirectHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        auth_response = _auth_response_from_path(self.path)
        if auth_response is not None:
            self.server.auth_response = auth_response
        message = b"Go back to your terminal :)"
        self.send_response(200)
        self.send_header("Content-Length", str(len(message)))
        self.end_headers()
        self.wfile.write(message)

    def log_message(self, format, *args):
        logger.debug("redirect server: " + format, *args)


def _wait_for_redirect(redirect_uri):
    """Serve requests on the redirect URI's port until the authorization redirect arrives."""
    parsed = urlparse(redirect_uri)
    server = HTTPServer((parsed.hostname or "localhost", parsed.port or 80), _RedirectHandler)
    server.auth_response = None
    try:
        while server.auth_response is None:
            server.handle_request()
    finally:
        server.server_close()
    return server.auth_response


def authorize_interactive(token_client, redirect_uri, open_browser=webbrowser.open,
                          wait_for_redirect=_wait_for_redirect):
    """Run the browser authorization-code flow and return the first Credentials."""
    flow = token_client.initiate_auth_code_flow(redirect_uri)
    auth_uri = flow["auth_uri"]
    logger.info("Open this URL in your browser:\n%s", auth_uri)
    try:
        open_browser(auth_uri)
    except webbrowser.Error as e:
        logger.debug("Could not open a browser: %s", e)
    auth_response = wait_for_redirect(redirect_uri)
    if auth_response.get("state") != flow.get("state"):
        raise CsrfTokenError()
    return token_client.exchange_auth_code(flow, auth_response)


class CredentialManager:
    """Holds the current token snapshot and keeps it fresh in the background.

    Readers take ``credentials`` without locking; ``refresh()`` builds a new
    ``Credentials`` and swaps it in with a single assignment, so a reader sees
    either the old pair or the new one. The lock only keeps two refreshes
    from spending the same refresh token at once.
    """

    def __init__(self, token_client, credentials, poll_interval=60.0,
                 refresh_margin=120.0, clock=time.time):
        self.token_client = token_client
        self._credentials = credentials
        self.poll_interval = poll_interval
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._refresh_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    @classmethod
    def from_refresh_token(cls, token_client, refresh_token, **kwargs):
        return cls(token_client, token_client.exchange_refresh_token(refresh_token), **kwargs)

    @classmethod
    def from_authorization_code(cls, token_client, redirect_uri, **kwargs):
        return cls(token_client, authorize_interactive(token_client, redirect_uri), **kwargs)

    @property
    def credentials(self):
        return self._credentials

    def current_access_token(self):
        return self._credentials.access_token

    def needs_refresh(self):
        return self._credentials.expires_in(self._clock()) < self.refresh_margin

    def refresh(self):
        with self._refresh_lock:
            current = self._credentials
            fresh = self.token_client.exchange_refresh_token(current.refresh_token)
            self._credentials = fresh
        logger.debug("OneDrive token refreshed, expires at %s", int(fresh.expires_at))

    def _run(self):
        while not self._stop.is_set():
            if self.needs_refresh():
                try:
                    self.refresh()
                except RefreshTokenError as e:
                    logger.warning("Failed to refresh onedrive token: %s", e)
                except Exception:
                    logger.exception("Unexpected error while refreshing onedrive token")
            if self._stop.wait(self.poll_interval):
                break

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="token-refresher", daemon=True)
        self._thread.start()

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def close(self, timeout=None):
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

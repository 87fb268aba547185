"""Authenticated Bookface session: cookie rotation, XSRF bootstrap and expiry detection."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import httpx

from .config import Settings, get_settings
from .credentials import CredentialPair, CredentialStore, SecretStore
from .errors import SessionExpired

logger = logging.getLogger(__name__)

_XSRF_PATTERN = re.compile(r"XSRF-TOKEN=([^;]+)")
_SESSION_KEY_PATTERN = re.compile(r"_bf_session_key=([^;]+)")

# Redirect targets that mean the session is no longer valid
_AUTH_REDIRECT_MARKERS = ("authenticate", "account.ycombinator.com", "login")

_READ_METHODS = frozenset({"GET", "HEAD"})

SHELL_PATH = "/messages/application_shell.json"


class BookfaceSession:
    """Holds the mutable session state and issues authenticated requests.

    A single instance models one logical session. Concurrent tool calls share it
    without locking; token rotation is last-writer-wins.

    Usage:
        session = BookfaceSession(settings)
        response = await session.authenticated_request("GET", f"{base}/user/current_user.json")
    """

    def __init__(
        self,
        settings: Settings,
        *,
        credentials: CredentialStore | None = None,
        keychain: SecretStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.credentials = credentials or CredentialStore(settings.credentials, keychain=keychain)
        self.xsrf_token: Optional[str] = None
        self._transport = transport

    @property
    def messages_base(self) -> str:
        return self.settings.bookface.messages_base_url

    def http_client(self) -> httpx.AsyncClient:
        """Open a short-lived client; no cookie jar or pool survives the call."""
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.bookface.request_timeout_seconds,
            follow_redirects=False,
        )

    def _base_headers(self, cookie: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
            "Origin": self.messages_base,
            "Referer": f"{self.messages_base}/messages",
            "Cookie": cookie,
        }

    def capture_tokens(self, response: httpx.Response) -> None:
        """Record any rotated session key or XSRF token from ``Set-Cookie`` headers."""
        for header in response.headers.get_list("set-cookie"):
            xsrf_match = _XSRF_PATTERN.search(header)
            if xsrf_match:
                self.xsrf_token = xsrf_match.group(1)
            session_match = _SESSION_KEY_PATTERN.search(header)
            if session_match:
                self.credentials.rotate_session_key(session_match.group(1))

    def clear(self) -> None:
        self.credentials.clear()
        self.xsrf_token = None

    async def ensure_xsrf_token(self, pair: CredentialPair) -> None:
        """Bootstrap the XSRF token with a plain GET of the application shell.

        Must not go through ``authenticated_request``: that method calls back here
        for every state-mutating request.
        """
        if self.xsrf_token:
            return
        headers = self._base_headers(pair.cookie_header())
        headers.pop("Origin")
        async with self.http_client() as client:
            response = await client.get(f"{self.messages_base}{SHELL_PATH}", headers=headers)
        self.capture_tokens(response)
        logger.debug(
            "session.xsrf_bootstrap",
            extra={"status": response.status_code, "obtained": self.xsrf_token is not None},
        )

    async def authenticated_request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Issue one request with the session cookies attached.

        Non-2xx responses are returned unchanged; only expiry is raised here.

        Raises
        ------
        MissingCredentials
            If no credential pair can be resolved.
        SessionExpired
            On a 401, or a redirect to an authentication page. Session state is cleared first.
        """
        pair = self.credentials.resolve()
        method = method.upper()
        mutating = method not in _READ_METHODS

        if mutating:
            await self.ensure_xsrf_token(pair)
            # The bootstrap may have rotated the session key
            pair = self.credentials.resolve()

        request_headers = self._base_headers(pair.cookie_header(self.xsrf_token))
        request_headers.update(headers or {})
        if mutating:
            request_headers["Content-Type"] = "application/json"
            if self.xsrf_token:
                request_headers["X-CSRF-Token"] = self.xsrf_token

        async with self.http_client() as client:
            response = await client.request(method, url, json=json, params=params, headers=request_headers)

        self.capture_tokens(response)

        if response.status_code == 401:
            self.clear()
            logger.warning("session.expired", extra={"reason": "401", "url": url})
            raise SessionExpired("401")

        if 300 <= response.status_code < 400:
            location = response.headers.get("location", "")
            if any(marker in location for marker in _AUTH_REDIRECT_MARKERS):
                self.clear()
                logger.warning("session.expired", extra={"reason": "redirect", "url": url})
                raise SessionExpired("redirect")

        return response

    async def verify_credentials(self, pair: CredentialPair) -> int:
        """Probe the application shell with an explicit pair and return the status code."""
        headers = self._base_headers(pair.cookie_header())
        async with self.http_client() as client:
            response = await client.get(f"{self.messages_base}{SHELL_PATH}", headers=headers)
        return response.status_code


_session: BookfaceSession | None = None


def init_session(
    settings: Settings | None = None,
    *,
    keychain: SecretStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BookfaceSession:
    """Initialise the process-wide session once."""
    global _session
    if _session is not None:
        return _session
    _session = BookfaceSession(settings or get_settings(), keychain=keychain, transport=transport)
    return _session


def get_session() -> BookfaceSession:
    if _session is None:
        init_session()
    assert _session is not None
    return _session


def reset_session_state() -> None:
    """Test helper to drop the process-wide session."""
    global _session
    _session = None

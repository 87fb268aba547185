from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional

import httpx
import pytest

from bookface_mcp.config import (
    BookfaceSettings,
    CredentialSettings,
    HttpSettings,
    ReplyWaitSettings,
    SearchSettings,
    Settings,
    clear_settings_cache,
)
from bookface_mcp.session import BookfaceSession, init_session, reset_session_state

MESSAGES = "https://messages.test"
BOOKFACE = "https://bookface.test"

_ENV_VARS = (
    "YC_SESSION_COOKIE",
    "YC_SSO_KEY",
    "YC_BF_SESSION_KEY",
    "YC_USER_ID",
    "TOOLS_LOG_ENABLED",
)


def make_settings(**credential_overrides: Any) -> Settings:
    credentials = CredentialSettings(
        session_cookie=None,
        sso_key="sso-1",
        session_key="sess-1",
        keychain_service="yc-bookface-mcp",
        keychain_account_sso="sso-key",
        keychain_account_session="session-key",
    )
    return Settings(
        environment="test",
        http=HttpSettings(host="127.0.0.1", port=8766, path="/mcp/"),
        credentials=replace(credentials, **credential_overrides),
        bookface=BookfaceSettings(
            messages_base_url=MESSAGES,
            bookface_base_url=BOOKFACE,
            agent_user_id=3241775,
            default_user_id=None,
            request_timeout_seconds=5.0,
        ),
        reply_wait=ReplyWaitSettings(timeout_seconds=120.0, poll_interval_seconds=3.0),
        search=SearchSettings(
            algolia_app_id="APPID",
            algolia_deals_index="Deals",
            deals_page_path="/deals",
            key_ttl_seconds=1500.0,
        ),
        log_rich_enabled=False,
        log_level="INFO",
        tools_log_enabled=False,
    )


class FakeKeychain:
    """In-memory stand-in for MacKeychain."""

    def __init__(self, items: Optional[dict[str, str]] = None, *, available: bool = True):
        self.items = dict(items or {})
        self._available = available
        self.reads: list[str] = []

    @property
    def available(self) -> bool:
        return self._available

    def read(self, account: str) -> Optional[str]:
        self.reads.append(account)
        if not self._available:
            return None
        return self.items.get(account)

    def write(self, account: str, value: str) -> None:
        from bookface_mcp.errors import UnsupportedPlatform

        if not self._available:
            raise UnsupportedPlatform("linux")
        self.items[account] = value

    def delete(self, account: str) -> None:
        from bookface_mcp.errors import UnsupportedPlatform

        if not self._available:
            raise UnsupportedPlatform("linux")
        self.items.pop(account, None)


class Router:
    """httpx.MockTransport handler keyed by (method, url-without-query).

    Each route holds a queue of canned responses; the last one repeats.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        *,
        json: Any = None,
        text: Optional[str] = None,
        headers: Optional[list[tuple[str, str]]] = None,
    ) -> "Router":
        self.routes.setdefault((method, url), []).append(
            {"status": status, "json": json, "text": text, "headers": headers or []}
        )
        return self

    def add_error(self, method: str, url: str, exc: Exception) -> "Router":
        self.routes.setdefault((method, url), []).append(exc)
        return self

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and _route_url(r) == url]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, _route_url(request))
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, text=f"no route for {key}")
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        kwargs: dict[str, Any] = {"headers": entry["headers"]}
        if entry["json"] is not None:
            kwargs["json"] = entry["json"]
        elif entry["text"] is not None:
            kwargs["text"] = entry["text"]
        return httpx.Response(entry["status"], **kwargs)


def _route_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Any:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    reset_session_state()
    yield
    reset_session_state()
    clear_settings_cache()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def keychain() -> FakeKeychain:
    return FakeKeychain()


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def session(settings: Settings, keychain: FakeKeychain, router: Router) -> BookfaceSession:
    return BookfaceSession(settings, keychain=keychain, transport=httpx.MockTransport(router))


@pytest.fixture
def global_session(settings: Settings, keychain: FakeKeychain, router: Router) -> BookfaceSession:
    """Install the process-wide session the tool surface uses."""
    return init_session(settings, keychain=keychain, transport=httpx.MockTransport(router))

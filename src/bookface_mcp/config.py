"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import (  # type: ignore[import-untyped,attr-defined]
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

# Use .env from bookface_mcp's dedicated config directory, NOT from CWD
_BOOKFACE_MCP_CONFIG_DIR: Final[Path] = Path.home() / ".bookface_mcp"
_DOTENV_PATH: Final[Path] = _BOOKFACE_MCP_CONFIG_DIR / ".env"

# Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository
try:
    _decouple_config: Final[DecoupleConfig] = DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
except FileNotFoundError:
    # Reads only os.environ; all .env lookups use defaults
    _decouple_config = DecoupleConfig(RepositoryEmpty())  # type: ignore[arg-type,misc]


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport settings for `serve --transport http`."""

    host: str
    port: int
    path: str


@dataclass(slots=True, frozen=True)
class CredentialSettings:
    """Inline/environment credential sources and the Keychain slot names."""

    session_cookie: str | None
    sso_key: str | None
    session_key: str | None
    keychain_service: str
    keychain_account_sso: str
    keychain_account_session: str


@dataclass(slots=True, frozen=True)
class BookfaceSettings:
    """Remote endpoints and request behaviour."""

    messages_base_url: str
    bookface_base_url: str
    agent_user_id: int
    default_user_id: str | None
    request_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class ReplyWaitSettings:
    """Defaults for the send-then-poll tools; each call may override them."""

    timeout_seconds: float
    poll_interval_seconds: float


@dataclass(slots=True, frozen=True)
class SearchSettings:
    """Deal search index and secured-key caching."""

    algolia_app_id: str
    algolia_deals_index: str
    deals_page_path: str
    key_ttl_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    credentials: CredentialSettings
    bookface: BookfaceSettings
    reply_wait: ReplyWaitSettings
    search: SearchSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    # Tools logging
    tools_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _optional(name: str) -> str | None:
    raw = _decouple_config(name, default="")
    return raw.strip() or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8766"), default=8766),
        path=_decouple_config("HTTP_PATH", default="/mcp/"),
    )

    credential_settings = CredentialSettings(
        session_cookie=_optional("YC_SESSION_COOKIE"),
        sso_key=_optional("YC_SSO_KEY"),
        session_key=_optional("YC_BF_SESSION_KEY"),
        keychain_service=_decouple_config("BOOKFACE_KEYCHAIN_SERVICE", default="yc-bookface-mcp"),
        keychain_account_sso="sso-key",
        keychain_account_session="session-key",
    )

    bookface_settings = BookfaceSettings(
        messages_base_url=_decouple_config(
            "BOOKFACE_MESSAGES_BASE_URL", default="https://messages.ycombinator.com"
        ).rstrip("/"),
        bookface_base_url=_decouple_config("BOOKFACE_BASE_URL", default="https://bookface.ycombinator.com").rstrip("/"),
        agent_user_id=_int(_decouple_config("BOOKFACE_AGENT_USER_ID", default="3241775"), default=3241775),
        default_user_id=_optional("YC_USER_ID"),
        request_timeout_seconds=_float(_decouple_config("HTTP_TIMEOUT_SECONDS", default="30"), default=30.0),
    )

    reply_wait_settings = ReplyWaitSettings(
        timeout_seconds=_float(_decouple_config("REPLY_TIMEOUT_SECONDS", default="120"), default=120.0),
        poll_interval_seconds=_float(_decouple_config("REPLY_POLL_INTERVAL_SECONDS", default="3"), default=3.0),
    )

    search_settings = SearchSettings(
        algolia_app_id=_decouple_config("ALGOLIA_APP_ID", default="45BWZJ1SGC"),
        algolia_deals_index=_decouple_config("ALGOLIA_DEALS_INDEX", default="BookfaceDealsProduction"),
        deals_page_path=_decouple_config("BOOKFACE_DEALS_PATH", default="/deals"),
        # Platform-side lifetime is ~30 minutes; refresh before it lapses
        key_ttl_seconds=_float(_decouple_config("SEARCH_KEY_TTL_SECONDS", default="1500"), default=1500.0),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        credentials=credential_settings,
        bookface=bookface_settings,
        reply_wait=reply_wait_settings,
        search=search_settings,
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        tools_log_enabled=_bool(_decouple_config("TOOLS_LOG_ENABLED", default="false"), default=False),
    )


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a mypy-friendly way."""
    cache_clear = getattr(get_settings, "cache_clear", None)
    if callable(cache_clear):
        cache_clear()

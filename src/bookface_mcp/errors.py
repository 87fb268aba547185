"""Domain errors raised by the session, search and reply-wait layers.

Each error carries the machine-readable ``error_type`` and ``recoverable`` flag that the
tool instrumentation copies onto the ``ToolExecutionError`` payload returned to MCP clients.
"""

from __future__ import annotations

from typing import Any, Optional

_REAUTH_HINT = "Run `bookface-mcp auth save` with fresh _sso.key and _bf_session_key cookies."


class BookfaceError(Exception):
    error_type = "BOOKFACE_ERROR"
    recoverable = False

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data = data or {}


class MissingCredentials(BookfaceError):
    """Neither inline config, environment nor Keychain yielded both session cookies."""

    error_type = "MISSING_CREDENTIALS"

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Missing Bookface credentials ({', '.join(missing)}). Need both _sso.key and _bf_session_key. "
            + _REAUTH_HINT,
            data={"missing": missing},
        )


class SessionExpired(BookfaceError):
    """The remote answered 401 or redirected to a login page."""

    error_type = "SESSION_EXPIRED"

    def __init__(self, reason: str):
        super().__init__(f"Session expired ({reason}). {_REAUTH_HINT}", data={"reason": reason})


class UpstreamError(BookfaceError):
    """Any other non-2xx response; callers decide the wording."""

    error_type = "UPSTREAM_ERROR"
    recoverable = True

    def __init__(self, action: str, status_code: int, body: str = ""):
        snippet = body[:500]
        message = f"{action} failed ({status_code})"
        if snippet:
            message = f"{message}: {snippet}"
        super().__init__(message, data={"status_code": status_code, "body": snippet})
        self.status_code = status_code
        self.body = snippet


class KeyExtractionFailed(BookfaceError):
    """Every strategy for scraping the secured search key came up empty."""

    error_type = "KEY_EXTRACTION_FAILED"
    recoverable = True


class UnsupportedPlatform(BookfaceError):
    """A Keychain write/delete was attempted on a host without macOS Keychain."""

    error_type = "UNSUPPORTED_PLATFORM"

    def __init__(self, platform: str):
        super().__init__(
            f"Keychain storage is only supported on macOS (running on {platform}). "
            "Set YC_SESSION_COOKIE or YC_SSO_KEY/YC_BF_SESSION_KEY instead.",
            data={"platform": platform},
        )


class KeychainError(BookfaceError):
    """The ``security`` tool refused a Keychain write or delete (locked Keychain, denied access)."""

    error_type = "KEYCHAIN_ERROR"

    def __init__(self, operation: str, account: str, returncode: int, stderr: str = ""):
        detail = stderr.strip()
        message = f"Keychain {operation} failed for {account} (exit {returncode})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, data={"operation": operation, "account": account, "returncode": returncode})
        self.returncode = returncode

"""Credential resolution and Keychain storage for the Bookface session cookies.

Bookface needs two cookies on every request:

- ``_sso.key``: the stable SSO token, rarely rotates
- ``_bf_session_key``: the session key, reissued by the server on most responses

Each is resolved lazily from (in order) the in-memory cache, a raw cookie string,
individual environment values, and finally the macOS Keychain.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .config import CredentialSettings
from .errors import KeychainError, MissingCredentials, UnsupportedPlatform

logger = logging.getLogger(__name__)

SSO_COOKIE = "_sso.key"
SESSION_COOKIE = "_bf_session_key"

_SSO_PATTERN = re.compile(r"_sso\.key=([^;]+)")
_SESSION_PATTERN = re.compile(r"_bf_session_key=([^;]+)")

# `security` exit status when the requested item does not exist
_ITEM_NOT_FOUND = 44


@dataclass
class CredentialPair:
    """The two cookies that make up an authenticated Bookface session."""

    sso_key: str
    session_key: str

    def cookie_header(self, xsrf_token: Optional[str] = None) -> str:
        parts = [f"{SSO_COOKIE}={self.sso_key}", f"{SESSION_COOKIE}={self.session_key}"]
        if xsrf_token:
            parts.append(f"XSRF-TOKEN={xsrf_token}")
        return "; ".join(parts)


def parse_cookie_string(raw: str) -> dict[str, str]:
    """Parse a browser "copy all cookies" string into the two tokens we care about."""
    result: dict[str, str] = {}
    sso_match = _SSO_PATTERN.search(raw)
    if sso_match:
        result["sso_key"] = sso_match.group(1).strip()
    session_match = _SESSION_PATTERN.search(raw)
    if session_match:
        result["session_key"] = session_match.group(1).strip()
    return result


def strip_cookie_prefix(value: str, name: str) -> str:
    """Drop a pasted ``name=`` prefix so both ``abc`` and ``_sso.key=abc`` are accepted."""
    value = value.strip()
    prefix = f"{name}="
    if value.startswith(prefix):
        return value[len(prefix):]
    return value


class SecretStore(Protocol):
    @property
    def available(self) -> bool: ...

    def read(self, account: str) -> Optional[str]: ...

    def write(self, account: str, value: str) -> None: ...

    def delete(self, account: str) -> None: ...


class MacKeychain:
    """Generic-password items in the login Keychain, driven through ``security``."""

    def __init__(self, service: str, *, runner: Callable[..., Any] = subprocess.run, platform: str | None = None):
        self.service = service
        self._runner = runner
        self._platform = platform or sys.platform

    @property
    def available(self) -> bool:
        return self._platform == "darwin" and shutil.which("security") is not None

    def _security(self, *args: str) -> subprocess.CompletedProcess[str]:
        return self._runner(["security", *args], capture_output=True, text=True, check=False)

    def read(self, account: str) -> Optional[str]:
        if not self.available:
            return None
        result = self._security("find-generic-password", "-s", self.service, "-a", account, "-w")
        if result.returncode != 0:
            return None
        value = (result.stdout or "").strip()
        return value or None

    def write(self, account: str, value: str) -> None:
        if not self.available:
            raise UnsupportedPlatform(self._platform)
        result = self._security("add-generic-password", "-s", self.service, "-a", account, "-w", value, "-U")
        if result.returncode != 0:
            raise KeychainError("write", account, result.returncode, result.stderr or "")

    def delete(self, account: str) -> None:
        if not self.available:
            raise UnsupportedPlatform(self._platform)
        result = self._security("delete-generic-password", "-s", self.service, "-a", account)
        if result.returncode not in (0, _ITEM_NOT_FOUND):
            raise KeychainError("delete", account, result.returncode, result.stderr or "")


class CredentialStore:
    """Resolves and caches the credential pair for one logical session."""

    def __init__(self, settings: CredentialSettings, keychain: SecretStore | None = None):
        self._settings = settings
        self._keychain: SecretStore = keychain or MacKeychain(settings.keychain_service)
        self._sso_key: Optional[str] = None
        self._session_key: Optional[str] = None

    def resolve(self) -> CredentialPair:
        """Return the current pair, loading missing tokens from the configured sources.

        Raises
        ------
        MissingCredentials
            If any token is still missing after every source was consulted.
        """
        if self._sso_key and self._session_key:
            return CredentialPair(self._sso_key, self._session_key)

        if self._settings.session_cookie:
            parsed = parse_cookie_string(self._settings.session_cookie)
            self._sso_key = self._sso_key or parsed.get("sso_key")
            self._session_key = self._session_key or parsed.get("session_key")

        self._sso_key = self._sso_key or self._settings.sso_key
        self._session_key = self._session_key or self._settings.session_key

        if not self._sso_key:
            self._sso_key = self._read_keychain(self._settings.keychain_account_sso)
        if not self._session_key:
            self._session_key = self._read_keychain(self._settings.keychain_account_session)

        missing = []
        if not self._sso_key:
            missing.append(SSO_COOKIE)
        if not self._session_key:
            missing.append(SESSION_COOKIE)
        if missing:
            raise MissingCredentials(missing)
        assert self._sso_key is not None and self._session_key is not None
        return CredentialPair(self._sso_key, self._session_key)

    def _read_keychain(self, account: str) -> Optional[str]:
        value = self._keychain.read(account)
        if value:
            logger.debug("credentials.keychain_loaded", extra={"account": account})
        return value

    def rotate_session_key(self, value: str) -> None:
        if value and value != self._session_key:
            logger.debug("credentials.session_key_rotated")
            self._session_key = value

    def clear(self) -> None:
        self._sso_key = None
        self._session_key = None

    def persist(self, pair: CredentialPair) -> None:
        """Write both tokens to the Keychain, replacing existing items."""
        self._keychain.write(self._settings.keychain_account_sso, pair.sso_key)
        self._keychain.write(self._settings.keychain_account_session, pair.session_key)
        logger.info("credentials.persisted", extra={"service": self._settings.keychain_service})

    def erase(self) -> None:
        """Remove both Keychain items; items that are already gone are not an error."""
        for account in (self._settings.keychain_account_sso, self._settings.keychain_account_session):
            self._keychain.delete(account)
        self.clear()

    def describe_sources(self) -> dict[str, list[str]]:
        """Report which sources currently supply each token, without revealing values."""
        parsed = parse_cookie_string(self._settings.session_cookie or "")
        report: dict[str, list[str]] = {}
        for field, cached, individual, account in (
            ("sso_key", self._sso_key, self._settings.sso_key, self._settings.keychain_account_sso),
            ("session_key", self._session_key, self._settings.session_key, self._settings.keychain_account_session),
        ):
            sources = []
            if cached:
                sources.append("cache")
            if parsed.get(field):
                sources.append("cookie_string")
            if individual:
                sources.append("environment")
            if self._keychain.read(account):
                sources.append("keychain")
            report[field] = sources
        return report

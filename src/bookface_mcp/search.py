"""Deal search against the hosted Algolia index using a scraped secured key.

Bookface never hands out the search key through an API. The deals page embeds a
short-lived, permission-scoped Algolia key somewhere in its payload, so we try a
chain of extraction strategies against the raw page and cache whatever works
for less than the key's real lifetime.
"""

from __future__ import annotations

import html
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

import httpx

from .bookface import BookfaceClient
from .config import SearchSettings
from .errors import KeyExtractionFailed, UpstreamError
from .session import BookfaceSession

logger = logging.getLogger(__name__)

KEY_ALIASES: tuple[str, ...] = (
    "algoliaSearchKey",
    "algolia_search_key",
    "searchApiKey",
    "search_api_key",
    "algoliaApiKey",
    "algolia_api_key",
    "securedApiKey",
    "secured_api_key",
)

MIN_STRUCTURED_KEY_LENGTH = 20
MAX_LIMIT = 100
MAX_TAG_SUMMARY = 30

_PROPS_ATTRIBUTE = re.compile(r"""data-(?:page|react-props|props)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_ASSIGNMENT = re.compile(
    r"""(?:%s)["']?\s*[:=]\s*["']([A-Za-z0-9+/=_\-]{100,})["']""" % "|".join(re.escape(a) for a in KEY_ALIASES)
)
_BASE64_RUN = re.compile(r"[A-Za-z0-9+/]{200,}={0,2}")


def find_key_field(data: Any, aliases: Sequence[str] = KEY_ALIASES) -> Optional[str]:
    """Depth-first search of nested dicts/lists for a plausible key under any alias."""
    if isinstance(data, dict):
        for name, value in data.items():
            if name in aliases and isinstance(value, str) and len(value) >= MIN_STRUCTURED_KEY_LENGTH:
                return value
        for value in data.values():
            found = find_key_field(value, aliases)
            if found:
                return found
    elif isinstance(data, list):
        for item in data:
            found = find_key_field(item, aliases)
            if found:
                return found
    return None


def key_from_json_body(text: str) -> Optional[str]:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return find_key_field(data)


def key_from_props_attribute(text: str) -> Optional[str]:
    for match in _PROPS_ATTRIBUTE.finditer(text):
        raw = match.group(1) if match.group(1) is not None else match.group(2)
        try:
            data = json.loads(html.unescape(raw))
        except ValueError:
            continue
        found = find_key_field(data)
        if found:
            return found
    return None


def key_from_assignment(text: str) -> Optional[str]:
    match = _ASSIGNMENT.search(text)
    return match.group(1) if match else None


def key_from_base64_run(text: str) -> Optional[str]:
    match = _BASE64_RUN.search(text)
    return match.group(0) if match else None


Strategy = tuple[str, Callable[[str], Optional[str]]]

STRATEGIES: tuple[Strategy, ...] = (
    ("json_body", key_from_json_body),
    ("props_attribute", key_from_props_attribute),
    ("assignment", key_from_assignment),
    ("base64_run", key_from_base64_run),
)


def extract_search_key(text: str, strategies: Iterable[Strategy] = STRATEGIES) -> Optional[str]:
    """Run each strategy in order and return the first non-empty key."""
    for name, strategy in strategies:
        key = strategy(text)
        if key:
            logger.debug("search_key.extracted", extra={"strategy": name})
            return key
    return None


@dataclass
class SearchCredential:
    key: str
    acquired_at: float


class SearchKeyProvider:
    """Caches the secured key for ``ttl_seconds`` and re-scrapes when it lapses."""

    def __init__(
        self,
        client: BookfaceClient,
        *,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        extractor: Callable[[str], Optional[str]] = extract_search_key,
    ):
        self._client = client
        self._ttl = ttl_seconds
        self._clock = clock
        self._extractor = extractor
        self._credential: Optional[SearchCredential] = None

    @property
    def cached(self) -> Optional[SearchCredential]:
        return self._credential

    async def get_search_key(self) -> str:
        credential = self._credential
        if credential is not None and self._clock() - credential.acquired_at < self._ttl:
            return credential.key
        page = await self._client.deals_page()
        key = self._extractor(page)
        if not key:
            raise KeyExtractionFailed(
                "Could not find the deals search key in the deals page. The page structure may have changed.",
                data={"page_length": len(page)},
            )
        self._credential = SearchCredential(key=key, acquired_at=self._clock())
        logger.info("search_key.acquired")
        return key

    def invalidate(self) -> None:
        self._credential = None


def clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), MAX_LIMIT))


def summarize_tags(facets: Any, cap: int = MAX_TAG_SUMMARY) -> list[dict[str, Any]]:
    """Turn Algolia's ``{"tags": {name: count}}`` facet block into a ranked list."""
    counts = (facets or {}).get("tags") or {}
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{"tag": name, "count": count} for name, count in ranked[:cap]]


def normalize_hit(hit: dict[str, Any], bookface_base: str) -> dict[str, Any]:
    deal_id = hit.get("id") or hit.get("objectID")
    company = hit.get("company")
    return {
        "id": deal_id,
        "title": hit.get("title") or hit.get("name"),
        "company": company.get("name") if isinstance(company, dict) else (company or hit.get("company_name")),
        "description": hit.get("description") or hit.get("short_description"),
        "tags": hit.get("tags") or [],
        "url": f"{bookface_base}/deals/{deal_id}",
    }


class DealSearch:
    """Query the deals index with the secured key from ``SearchKeyProvider``."""

    def __init__(self, session: BookfaceSession, provider: SearchKeyProvider, settings: SearchSettings):
        self._session = session
        self._provider = provider
        self._settings = settings

    @property
    def query_url(self) -> str:
        app_id = self._settings.algolia_app_id
        return f"https://{app_id.lower()}-dsn.algolia.net/1/indexes/{self._settings.algolia_deals_index}/query"

    async def search(self, query: str = "", tag: Optional[str] = None, limit: int = 20) -> dict[str, Any]:
        key = await self._provider.get_search_key()
        body: dict[str, Any] = {"query": query, "hitsPerPage": clamp_limit(limit)}
        if tag:
            body["facetFilters"] = [[f"tags:{tag}"]]
        else:
            body["facets"] = ["tags"]
        headers = {
            "X-Algolia-Application-Id": self._settings.algolia_app_id,
            "X-Algolia-API-Key": key,
            "Content-Type": "application/json",
        }
        try:
            async with self._session.http_client() as client:
                response = await client.post(self.query_url, json=body, headers=headers)
        except httpx.HTTPError:
            self._provider.invalidate()
            raise
        if not response.is_success:
            # The key may have expired early or lost its scope; re-scrape next time
            self._provider.invalidate()
            raise UpstreamError("Deal search", response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            self._provider.invalidate()
            raise UpstreamError("Deal search", response.status_code, response.text) from exc
        bookface_base = self._session.settings.bookface.bookface_base_url
        result: dict[str, Any] = {
            "query": query,
            "tag": tag,
            "total": data.get("nbHits", 0),
            "hits": [normalize_hit(hit, bookface_base) for hit in data.get("hits", [])],
        }
        if not tag:
            result["tags"] = summarize_tags(data.get("facets"))
        return result

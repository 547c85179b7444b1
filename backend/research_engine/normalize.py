"""Pure normalization of search payloads into one `SearchResult` shape.

Search providers (our own HTML crawler, vendor JSON APIs, provider-native
search tools) nest their result rows differently. Everything here is free of
I/O so it can be tested directly against fixture payloads.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

# Fixed precedence for wrappers around result rows.
NESTING_KEYS = ("results", "sources", "items", "data", "value")

URL_KEYS = ("url", "link", "href")
TITLE_KEYS = ("title", "name")
SNIPPET_KEYS = ("snippet", "description", "text", "content")
PUBLISHED_KEYS = ("publishedAt", "published_at", "published_date", "pageAge", "date")
SCORE_KEYS = ("score", "relevance", "rank")


@dataclass
class SearchResult:
    url: str
    title: str | None
    domain: str | None
    snippet: str | None
    published_at: str | None
    score: float | None
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_domain(url: str) -> str | None:
    try:
        domain = (urlparse(url).hostname or "").lower().strip()
    except ValueError:
        return None
    if domain.startswith("www."):
        domain = domain[4:]
    return domain or None


def normalize_url(url: str) -> str:
    """Identity key for a URL: case, trailing slash, fragment and utm_* insensitive."""

    raw = str(url or "").strip()
    try:
        parsed = urlparse(raw)
    except ValueError:
        return raw.lower().rstrip("/")
    host = (parsed.netloc or "").lower()
    if host.startswith("www."):
        host = host[4:]
    query = urlencode(sorted((k, v) for k, v in parse_qsl(parsed.query) if not k.lower().startswith("utm_")))
    path = parsed.path.rstrip("/")
    normalized = urlunparse((parsed.scheme.lower(), host, path, "", query, ""))
    return normalized.lower()


def _to_record(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    return None


def _to_record_list(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]

    record = _to_record(value)
    if record is None:
        return []

    for key in NESTING_KEYS:
        if key in record:
            nested = _to_record_list(record[key])
            if nested:
                return nested

    return [record]


def _first_string(record: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_number(record: dict[str, Any], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and math.isfinite(value):
            return float(value)
        if isinstance(value, str):
            try:
                parsed = float(value)
            except ValueError:
                continue
            if math.isfinite(parsed):
                return parsed
    return None


def to_search_results(raw: Any, provider: str = "native_web_search") -> list[SearchResult]:
    rows = _to_record_list(raw)
    results: list[SearchResult] = []
    seen: set[str] = set()

    for row in rows:
        url = _first_string(row, URL_KEYS)
        if not url:
            continue
        key = normalize_url(url)
        if key in seen:
            continue
        seen.add(key)

        results.append(
            SearchResult(
                url=url,
                title=_first_string(row, TITLE_KEYS),
                domain=extract_domain(url),
                snippet=_first_string(row, SNIPPET_KEYS),
                published_at=_first_string(row, PUBLISHED_KEYS),
                score=_first_number(row, SCORE_KEYS),
                metadata={"provider": provider, "raw": row},
            )
        )

    return results


def dedupe_results(results: list[SearchResult], limit: int) -> list[SearchResult]:
    seen: set[str] = set()
    deduped: list[SearchResult] = []
    for item in results:
        key = normalize_url(item.url)
        if not item.url or key in seen:
            continue
        seen.add(key)
        deduped.append(item)
        if len(deduped) >= limit:
            break
    return deduped

from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from urllib.parse import parse_qs, urlparse

import httpx

from .errors import SearchFailed
from .normalize import SearchResult, dedupe_results, extract_domain, normalize_url, to_search_results

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

LANDING_PAGE_MARKERS = ("/search?", "keyword.php", "?keyword=", "/ideas/", "/tag/")

MIN_QUALITY = 0.3
RECOMMENDATION_MIN_QUALITY = 0.45
RECOMMENDATION_QUERY_HINTS = ("best", "recommend", "options", "buy", "budget", "under $", "price", "review", "compare")
LOW_SIGNAL_RECOMMENDATION_DOMAINS = ("pinterest.com", "reddit.com")

DDG_RESULT_RE = re.compile(
    r'<a[^>]*class="result__a"[^>]*href="([^"]+)"[^>]*>([\s\S]*?)</a>[\s\S]*?'
    r'<a[^>]*class="result__snippet"[^>]*>([\s\S]*?)</a>',
    re.IGNORECASE,
)
TITLE_RE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)


@dataclass
class FetchedSource:
    url: str
    title: str | None
    text: str | None
    retrieved_at: str


class WebSearch(Protocol):
    async def search(
        self, query: str, recency_days: int | None = None, limit: int = 8, rotation: int = 0
    ) -> list[SearchResult]: ...


class PageFetcher(Protocol):
    async def fetch(self, url: str) -> FetchedSource: ...


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def strip_html(text: str) -> str:
    cleaned = re.sub(r"<script[\s\S]*?</script>", " ", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"<style[\s\S]*?</style>", " ", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"<noscript[\s\S]*?</noscript>", " ", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"<[^>]+>", " ", cleaned)
    cleaned = html.unescape(cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def regex_page_to_text(markup: str) -> tuple[str | None, str]:
    """Default page-to-text strategy: (title, plain text)."""

    title_match = TITLE_RE.search(markup)
    title = strip_html(title_match.group(1)) if title_match else None
    return title or None, strip_html(markup)


PageToText = Callable[[str], "tuple[str | None, str]"]


def _domain_match(domain: str, rule: str) -> bool:
    rule = rule.lower().strip()
    if not rule or not domain:
        return False
    if domain == rule:
        return True
    return domain.endswith(f".{rule}")


def is_search_landing_page(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in LANDING_PAGE_MARKERS)


def source_quality_score(item: SearchResult, trusted_domains: list[str]) -> float:
    quality = min(1.0, max(0.0, item.score)) if item.score is not None else 0.35
    domain = item.domain or ""

    if any(_domain_match(domain, rule) for rule in trusted_domains):
        quality += 0.2
    if is_search_landing_page(item.url):
        quality -= 0.3
    if item.snippet and len(item.snippet) > 40:
        quality += 0.05

    return min(1.0, max(0.0, quality))


def diversify_by_domain(
    ranked: list[tuple[SearchResult, float]],
    limit: int,
    max_per_domain: int = 2,
) -> list[tuple[SearchResult, float]]:
    selected: list[tuple[SearchResult, float]] = []
    per_domain: dict[str, int] = {}
    skipped: list[tuple[SearchResult, float]] = []

    for entry in ranked:
        domain = entry[0].domain or "unknown"
        count = per_domain.get(domain, 0)
        if count >= max_per_domain:
            skipped.append(entry)
            continue
        selected.append(entry)
        per_domain[domain] = count + 1
        if len(selected) >= limit:
            return selected

    for entry in skipped:
        if len(selected) >= limit:
            break
        selected.append(entry)
    return selected[:limit]


def is_recommendation_query(query: str | None) -> bool:
    lowered = (query or "").lower()
    return any(hint in lowered for hint in RECOMMENDATION_QUERY_HINTS)


def select_search_results(
    results: list[SearchResult],
    seen_keys: set[str],
    limit: int,
    trusted_domains: list[str],
    blocked_domains: list[str],
    query: str | None = None,
) -> list[tuple[SearchResult, float]]:
    """Rank unseen, non-blocked results by source quality and spread them across domains.

    Recommendation-style queries ("best ... under $500") use a stricter quality
    floor and skip landing pages and low-signal forums.
    """

    recommendation_mode = is_recommendation_query(query)
    min_quality = RECOMMENDATION_MIN_QUALITY if recommendation_mode else MIN_QUALITY

    scored: list[tuple[SearchResult, float]] = []
    for item in results:
        if not item.url or normalize_url(item.url) in seen_keys:
            continue
        if any(_domain_match(item.domain or "", rule) for rule in blocked_domains):
            continue
        scored.append((item, source_quality_score(item, trusted_domains)))
    scored.sort(key=lambda entry: entry[1], reverse=True)

    kept: list[tuple[SearchResult, float]] = []
    for item, quality in scored:
        if quality < min_quality:
            continue
        if recommendation_mode:
            if any(_domain_match(item.domain or "", rule) for rule in LOW_SIGNAL_RECOMMENDATION_DOMAINS):
                continue
            if is_search_landing_page(item.url):
                continue
        kept.append((item, quality))
    if not kept:
        # Strict filtering removed everything; fall back to best available.
        kept = scored
    return diversify_by_domain(kept, limit=limit)


def rotate_providers(providers: list[str], offset: int) -> list[str]:
    if len(providers) <= 1:
        return list(providers)
    offset %= len(providers)
    return providers[offset:] + providers[:offset]


def _recency_token(recency_days: int | None) -> str | None:
    if not recency_days:
        return None
    if recency_days <= 1:
        return "d"
    if recency_days <= 7:
        return "w"
    if recency_days <= 31:
        return "m"
    return "y"


_TAVILY_TIME_RANGE = {"d": "day", "w": "week", "m": "month", "y": "year"}


class ResearchToolkit:
    """Web search across configured providers plus page fetching."""

    def __init__(
        self,
        tavily_api_key: str = "",
        serper_api_key: str = "",
        provider_order: list[str] | None = None,
        search_retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.5,
        fetch_timeout_seconds: float = 10.0,
        fetch_max_chars: int = 12_000,
        page_to_text: PageToText = regex_page_to_text,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.tavily_api_key = tavily_api_key
        self.serper_api_key = serper_api_key
        self.provider_order = provider_order or ["tavily", "serper", "duckduckgo"]
        self.search_retry_attempts = max(1, search_retry_attempts)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.fetch_max_chars = fetch_max_chars
        self.page_to_text = page_to_text
        self._transport = transport

    def _client(self, timeout: float, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, **kwargs)

    def available_providers(self) -> list[str]:
        available = {"duckduckgo"}
        if self.tavily_api_key:
            available.add("tavily")
        if self.serper_api_key:
            available.add("serper")
        order = [name for name in self.provider_order if name in available]
        return order or ["duckduckgo"]

    async def search(
        self,
        query: str,
        recency_days: int | None = None,
        limit: int = 8,
        rotation: int = 0,
    ) -> list[SearchResult]:
        """Merge provider results until enough are found.

        `rotation` shifts the provider order so concurrent sub-questions and
        re-queries do not all hit the same provider first.
        """

        combined: list[SearchResult] = []
        errors: list[str] = []
        providers = rotate_providers(self.available_providers(), rotation)

        for provider in providers:
            try:
                rows = await self._search_with_retry(provider, query, recency_days, limit)
            except SearchFailed as exc:
                logger.warning("Search provider %s failed for %r: %s", provider, query, exc)
                errors.append(f"{provider}: {exc}")
                continue
            combined.extend(rows)
            deduped = dedupe_results(combined, limit)
            if len(deduped) >= min(limit, 6):
                return deduped

        if errors and len(errors) == len(providers):
            raise SearchFailed("All search providers failed", context={"query": query, "errors": errors})
        return dedupe_results(combined, limit)

    async def _search_with_retry(
        self,
        provider: str,
        query: str,
        recency_days: int | None,
        limit: int,
    ) -> list[SearchResult]:
        attempt = 1
        while True:
            try:
                if provider == "tavily":
                    return await self._search_tavily(query, recency_days, limit)
                if provider == "serper":
                    return await self._search_serper(query, recency_days, limit)
                return await self._search_duckduckgo(query, recency_days, limit)
            except SearchFailed:
                if attempt >= self.search_retry_attempts:
                    raise
            if self.retry_backoff_seconds:
                await asyncio.sleep(self.retry_backoff_seconds * attempt)
            attempt += 1

    async def _search_tavily(self, query: str, recency_days: int | None, limit: int) -> list[SearchResult]:
        payload: dict[str, Any] = {
            "api_key": self.tavily_api_key,
            "query": query,
            "search_depth": "advanced",
            "max_results": limit,
            "include_raw_content": False,
            "include_answer": False,
        }
        token = _recency_token(recency_days)
        if token:
            payload["time_range"] = _TAVILY_TIME_RANGE[token]

        data = await self._post_json("https://api.tavily.com/search", payload, provider="tavily")
        return to_search_results(data, provider="tavily")[:limit]

    async def _search_serper(self, query: str, recency_days: int | None, limit: int) -> list[SearchResult]:
        payload: dict[str, Any] = {"q": query, "num": limit}
        token = _recency_token(recency_days)
        if token:
            payload["tbs"] = f"qdr:{token}"
        headers = {"X-API-KEY": self.serper_api_key, "Content-Type": "application/json"}

        data = await self._post_json("https://google.serper.dev/search", payload, provider="serper", headers=headers)
        organic = data.get("organic") if isinstance(data, dict) else None
        return to_search_results(organic or [], provider="serper")[:limit]

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        provider: str,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            async with self._client(timeout=35.0) as client:
                response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise SearchFailed(
                f"{provider} search returned {exc.response.status_code}",
                context={"provider": provider},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SearchFailed(f"{provider} search failed: {exc}", context={"provider": provider}) from exc

    async def _search_duckduckgo(self, query: str, recency_days: int | None, limit: int) -> list[SearchResult]:
        params = {"q": query}
        token = _recency_token(recency_days)
        if token:
            params["df"] = token

        try:
            async with self._client(timeout=20.0, follow_redirects=True) as client:
                response = await client.get(
                    "https://html.duckduckgo.com/html/",
                    params=params,
                    headers={"user-agent": BROWSER_USER_AGENT},
                )
            response.raise_for_status()
            markup = response.text
        except httpx.HTTPStatusError as exc:
            raise SearchFailed(
                f"duckduckgo search returned {exc.response.status_code}",
                context={"provider": "duckduckgo"},
            ) from exc
        except httpx.HTTPError as exc:
            raise SearchFailed(f"duckduckgo search failed: {exc}", context={"provider": "duckduckgo"}) from exc

        return to_search_results(parse_duckduckgo_html(markup), provider="duckduckgo_html")[:limit]

    async def fetch(self, url: str) -> FetchedSource:
        try:
            async with self._client(timeout=self.fetch_timeout_seconds, follow_redirects=True) as client:
                response = await client.get(url, headers={"user-agent": BROWSER_USER_AGENT})
            response.raise_for_status()
            title, text = self.page_to_text(response.text)
        except Exception as exc:
            logger.warning("Fetch failed for %s: %s", url, exc)
            return FetchedSource(url=url, title=None, text=None, retrieved_at=utc_now_iso())

        text = (text or "")[: self.fetch_max_chars].strip()
        return FetchedSource(url=url, title=title, text=text or None, retrieved_at=utc_now_iso())


def _unwrap_ddg_redirect(href: str) -> str:
    raw = html.unescape(href).strip()
    if raw.startswith("//"):
        raw = f"https:{raw}"
    parsed = urlparse(raw)
    if "duckduckgo.com" in (parsed.netloc or "") and parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    return raw


def parse_duckduckgo_html(markup: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for match in DDG_RESULT_RE.finditer(markup):
        url = _unwrap_ddg_redirect(match.group(1))
        if not url:
            continue
        rows.append(
            {
                "url": url,
                "title": strip_html(match.group(2)) or None,
                "snippet": strip_html(match.group(3)) or None,
                "domain": extract_domain(url),
            }
        )
    return rows

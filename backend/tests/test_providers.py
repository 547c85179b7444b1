import json

import httpx
import pytest

from research_engine.errors import SearchFailed
from research_engine.normalize import normalize_url, to_search_results
from research_engine.providers import (
    ResearchToolkit,
    is_recommendation_query,
    parse_duckduckgo_html,
    regex_page_to_text,
    rotate_providers,
    select_search_results,
    source_quality_score,
)

DDG_HTML = """
<div class="result">
  <a rel="nofollow" class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fwww.seriouseats.com%2Fespresso&amp;rut=abc">Best <b>Espresso</b> Machines</a>
  <a class="result__snippet" href="#">We tested espresso machines &amp; grinders.</a>
</div>
<div class="result">
  <a class="result__a" href="https://coffeegeek.com/reviews/">CoffeeGeek reviews</a>
  <a class="result__snippet" href="#">Long-term reviews.</a>
</div>
"""


def _toolkit(handler, **kwargs) -> ResearchToolkit:
    return ResearchToolkit(transport=httpx.MockTransport(handler), retry_backoff_seconds=0, **kwargs)


def test_parse_duckduckgo_html_unwraps_redirects():
    rows = parse_duckduckgo_html(DDG_HTML)

    assert [row["url"] for row in rows] == ["https://www.seriouseats.com/espresso", "https://coffeegeek.com/reviews/"]
    assert rows[0]["title"] == "Best Espresso Machines"
    assert rows[0]["snippet"] == "We tested espresso machines & grinders."
    assert rows[0]["domain"] == "seriouseats.com"


def test_regex_page_to_text_strips_markup():
    title, text = regex_page_to_text(
        "<html><head><title>Guide &amp; Tips</title><style>p{}</style></head>"
        "<body><script>var x = 1;</script><p>Hello <b>espresso</b>\n\n world</p></body></html>"
    )
    assert title == "Guide & Tips"
    assert text == "Guide & Tips Hello espresso world"


def test_quality_score_rewards_trusted_and_penalizes_landing_pages():
    rows = to_search_results(
        [
            {"url": "https://www.consumerreports.org/espresso", "score": 0.5},
            {"url": "https://shop.example/search?q=espresso", "score": 0.5},
            {"url": "https://data.nih.gov/caffeine", "score": 0.5},
        ]
    )
    trusted = ["consumerreports.org", "gov"]
    scores = [source_quality_score(row, trusted) for row in rows]
    assert scores[0] == pytest.approx(0.7)
    assert scores[1] == pytest.approx(0.2)
    assert scores[2] == pytest.approx(0.7)


def test_select_search_results_filters_and_diversifies():
    rows = to_search_results(
        [{"url": f"https://big.example/{index}", "score": 0.9} for index in range(4)]
        + [
            {"url": "https://pinterest.com/pin/1", "score": 1.0},
            {"url": "https://small.example/a", "score": 0.6},
            {"url": "https://seen.example/a", "score": 0.9},
        ]
    )

    selected = select_search_results(
        rows,
        seen_keys={normalize_url("https://seen.example/a")},
        limit=4,
        trusted_domains=[],
        blocked_domains=["pinterest.com"],
    )

    urls = [row.url for row, _ in selected]
    assert "https://pinterest.com/pin/1" not in urls
    assert "https://seen.example/a" not in urls
    assert urls[:3] == ["https://big.example/0", "https://big.example/1", "https://small.example/a"]
    assert len(urls) == 4


def test_select_search_results_keeps_low_quality_when_nothing_else():
    rows = to_search_results([{"url": "https://shop.example/search?q=x", "score": 0.1}])
    selected = select_search_results(rows, set(), limit=3, trusted_domains=[], blocked_domains=[])
    assert len(selected) == 1


@pytest.mark.asyncio
async def test_fetch_returns_truncated_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<title>T</title><p>" + "word " * 100 + "</p>")

    page = await _toolkit(handler, fetch_max_chars=50).fetch("https://example.com/page")

    assert page.title == "T"
    assert page.text is not None and len(page.text) <= 50
    assert page.retrieved_at


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", ["status", "network"])
async def test_fetch_failures_return_null_text(failure):
    def handler(request: httpx.Request) -> httpx.Response:
        if failure == "network":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(503)

    page = await _toolkit(handler).fetch("https://example.com/down")
    assert page.text is None
    assert page.url == "https://example.com/down"


@pytest.mark.asyncio
async def test_search_uses_tavily_with_recency_filter():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        rows = [{"url": f"https://site{index}.example/a", "title": "t", "content": "c", "score": 0.7} for index in range(6)]
        return httpx.Response(200, json={"results": rows})

    results = await _toolkit(handler, tavily_api_key="key").search("espresso", recency_days=5, limit=6)

    assert seen["url"] == "https://api.tavily.com/search"
    assert seen["body"]["time_range"] == "week"
    assert len(results) == 6
    assert results[0].metadata["provider"] == "tavily"


@pytest.mark.asyncio
async def test_search_falls_through_providers_and_merges():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "google.serper.dev":
            return httpx.Response(500)
        assert request.url.params["df"] == "m"
        return httpx.Response(200, text=DDG_HTML)

    results = await _toolkit(handler, serper_api_key="key", search_retry_attempts=2).search("espresso", recency_days=30)

    assert calls == ["google.serper.dev", "google.serper.dev", "html.duckduckgo.com"]
    assert [result.domain for result in results] == ["seriouseats.com", "coffeegeek.com"]


@pytest.mark.asyncio
async def test_search_raises_when_every_provider_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    with pytest.raises(SearchFailed):
        await _toolkit(handler).search("espresso")


@pytest.mark.asyncio
async def test_search_tolerates_zero_results():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>no results</html>")

    assert await _toolkit(handler).search("espresso") == []


def test_providers_without_keys_are_skipped():
    assert ResearchToolkit().available_providers() == ["duckduckgo"]
    assert ResearchToolkit(serper_api_key="k", provider_order=["serper", "tavily"]).available_providers() == ["serper"]


@pytest.mark.asyncio
async def test_fetch_of_malformed_url_returns_null_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<p>unreachable</p>")

    page = await _toolkit(handler).fetch("http://[::1/bad")

    assert page.text is None
    assert page.url == "http://[::1/bad"


@pytest.mark.asyncio
async def test_fetch_survives_a_failing_page_converter():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<p>espresso</p>")

    def explode(markup):
        raise RuntimeError("parser crashed")

    page = await _toolkit(handler, page_to_text=explode).fetch("https://example.com/page")

    assert page.text is None
    assert page.title is None


def test_recommendation_queries_are_detected():
    assert is_recommendation_query("best espresso machines under $500")
    assert is_recommendation_query("Compare stroller options")
    assert not is_recommendation_query("history of the espresso machine")
    assert not is_recommendation_query(None)


def test_recommendation_mode_raises_floor_and_drops_low_signal_results():
    rows = to_search_results(
        [
            {"url": "https://www.reddit.com/r/espresso/1", "score": 0.9},
            {"url": "https://wirecutter.com/espresso", "score": 0.7},
            {"url": "https://shop.example/search?q=espresso", "score": 0.9},
            {"url": "https://blog.example/espresso", "score": 0.4},
        ]
    )
    options = {"seen_keys": set(), "limit": 5, "trusted_domains": [], "blocked_domains": []}

    plain = select_search_results(rows, **options, query="history of espresso")
    recommended = select_search_results(rows, **options, query="best espresso machines under $500")

    assert [row.url for row, _ in plain] == [
        "https://www.reddit.com/r/espresso/1",
        "https://wirecutter.com/espresso",
        "https://shop.example/search?q=espresso",
        "https://blog.example/espresso",
    ]
    assert [row.url for row, _ in recommended] == ["https://wirecutter.com/espresso"]


def test_recommendation_mode_falls_back_when_everything_is_filtered():
    rows = to_search_results([{"url": "https://reddit.com/r/espresso/2", "score": 0.9}])
    selected = select_search_results(
        rows, set(), limit=3, trusted_domains=[], blocked_domains=[], query="best espresso grinder"
    )
    assert [row.url for row, _ in selected] == ["https://reddit.com/r/espresso/2"]


def test_rotate_providers_wraps_offset():
    providers = ["tavily", "serper", "duckduckgo"]
    assert rotate_providers(providers, 0) == providers
    assert rotate_providers(providers, 1) == ["serper", "duckduckgo", "tavily"]
    assert rotate_providers(providers, 5) == ["duckduckgo", "tavily", "serper"]
    assert rotate_providers(["duckduckgo"], 3) == ["duckduckgo"]


@pytest.mark.asyncio
async def test_search_rotation_changes_first_provider():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        rows = [{"url": f"https://site{index}.example/a", "title": "t", "score": 0.7} for index in range(6)]
        if request.url.host == "google.serper.dev":
            return httpx.Response(200, json={"organic": rows})
        return httpx.Response(200, json={"results": rows})

    toolkit = _toolkit(handler, tavily_api_key="key", serper_api_key="key")

    await toolkit.search("espresso", limit=6, rotation=0)
    await toolkit.search("espresso", limit=6, rotation=1)

    assert calls == ["api.tavily.com", "google.serper.dev"]

from research_engine.normalize import dedupe_results, extract_domain, normalize_url, to_search_results


def test_flat_list_with_alternate_field_names():
    raw = [
        {"link": "https://www.Example.com/a", "name": "A", "description": "alpha", "pageAge": "2025-01-01", "rank": "3"},
        {"href": "https://other.org/b", "title": "B", "content": "beta", "relevance": 0.4},
    ]

    results = to_search_results(raw, provider="serper")

    assert [result.url for result in results] == ["https://www.Example.com/a", "https://other.org/b"]
    first = results[0]
    assert first.title == "A"
    assert first.domain == "example.com"
    assert first.snippet == "alpha"
    assert first.published_at == "2025-01-01"
    assert first.score == 3.0
    assert first.metadata["provider"] == "serper"
    assert first.metadata["raw"] is raw[0]
    assert results[1].snippet == "beta"


def test_nested_payloads_follow_fixed_key_precedence():
    raw = {
        "value": [{"url": "https://ignored.example/v"}],
        "results": [{"url": "https://first.example/r", "title": "from results"}],
    }
    assert [result.url for result in to_search_results(raw)] == ["https://first.example/r"]


def test_deeply_nested_wrappers_are_flattened():
    raw = {"data": {"items": [{"url": "https://deep.example/x", "snippet": "deep"}]}}
    results = to_search_results(raw)
    assert len(results) == 1
    assert results[0].snippet == "deep"
    assert results[0].metadata["provider"] == "native_web_search"


def test_empty_wrapper_falls_through_to_next_key():
    raw = {"results": [], "sources": [{"url": "https://fallback.example/s"}]}
    assert [result.url for result in to_search_results(raw)] == ["https://fallback.example/s"]


def test_rows_without_url_are_skipped_and_duplicates_collapse():
    raw = {
        "results": [
            {"title": "no url"},
            {"url": "https://dup.example/page/"},
            {"url": "https://DUP.example/page#section"},
            {"url": "https://dup.example/page?utm_source=feed"},
            "not a record",
        ]
    }
    results = to_search_results(raw)
    assert [result.url for result in results] == ["https://dup.example/page/"]


def test_non_finite_and_boolean_scores_are_ignored():
    raw = [{"url": "https://a.example", "score": True}, {"url": "https://b.example", "score": "nan"}]
    assert [result.score for result in to_search_results(raw)] == [None, None]


def test_garbage_input_yields_no_results():
    assert to_search_results(None) == []
    assert to_search_results("text") == []
    assert to_search_results({"results": "oops"}) == []


def test_normalize_url_identity_key():
    assert normalize_url("HTTPS://www.Example.com/Path/?b=2&a=1&utm_medium=x#frag") == "https://example.com/path?a=1&b=2"
    assert normalize_url("https://example.com/path") == normalize_url("https://example.com/path/")


def test_extract_domain_strips_www():
    assert extract_domain("https://www.nih.gov/health") == "nih.gov"
    assert extract_domain("not a url") is None


def test_dedupe_results_respects_limit():
    results = to_search_results([{"url": f"https://site{i}.example"} for i in range(5)])
    assert len(dedupe_results(results + results, limit=3)) == 3

import pytest

from conftest import FakeLLM, always_invalid
from research_engine.models import parse_presentation_blocks
from research_engine.normalize import normalize_url
from research_engine.report import (
    REPORT_FALLBACK_WARNING,
    ReportSynthesizer,
    build_report_actions,
    sanitize_markdown_links,
    strip_preamble,
)

SOURCES = [
    {"id": "s1", "url": "https://wirecutter.com/espresso", "title": "Wirecutter"},
    {"id": "s2", "url": "https://seriouseats.com/espresso", "title": "Serious Eats"},
]
FINDINGS = [
    {
        "id": "f1",
        "sub_question": "Which machines are best?",
        "claim": "The Bambino Plus is the best value.",
        "confidence": 0.8,
        "status": "sufficient",
        "supporting_source_ids": ["s1", "s2"],
        "evidence": [{"source_id": "s1", "excerpt": "Bambino Plus heats in three seconds."}],
        "notes": None,
    },
    {
        "id": "f2",
        "sub_question": "How reliable are they?",
        "claim": "No usable evidence was found.",
        "confidence": 0.0,
        "status": "unknown",
        "supporting_source_ids": [],
        "evidence": [],
        "notes": "No usable evidence was retrieved for this sub-question.",
    },
]


async def _synthesize(llm):
    return await ReportSynthesizer(llm).synthesize(
        query="best espresso machines under $500",
        objective="Find the best espresso machines.",
        findings=FINDINGS,
        sources=SOURCES,
        unknowns=["How reliable are they?", "How reliable are they?"],
        raw_actions=[
            {"title": "Compare grinder prices", "related_source_ids": ["s2"]},
            {"title": "compare grinder prices", "related_source_ids": []},
            {"title": "Check warranty terms", "description": "Two years is typical.", "related_source_ids": []},
        ],
        quality_warnings=["Only 1 of 2 sub-questions have usable findings."],
        total_sub_questions=2,
    )


def test_sanitize_markdown_links_keeps_only_known_sources():
    keys = {normalize_url(source["url"]) for source in SOURCES}
    markdown = "See [Wirecutter](https://www.wirecutter.com/espresso/) and [a blog](https://made-up.example/post)."
    assert sanitize_markdown_links(markdown, keys) == "See [Wirecutter](https://www.wirecutter.com/espresso/) and a blog."


def test_strip_preamble():
    assert strip_preamble("Based on my research, the Bambino wins.") == "the Bambino wins."
    assert strip_preamble("The Bambino wins.") == "The Bambino wins."


def test_build_report_actions_dedupes_and_links_findings():
    actions = build_report_actions(
        [
            {"title": "Compare grinder prices", "related_source_ids": ["s2"]},
            {"title": " COMPARE GRINDER PRICES ", "related_source_ids": ["s1"]},
            {"title": "", "related_source_ids": []},
        ],
        FINDINGS,
    )
    assert actions == [{"title": "Compare grinder prices", "related_finding_ids": ["f1"]}]


def test_parse_presentation_blocks_drops_invalid_entries():
    blocks, dropped = parse_presentation_blocks(
        [
            {"type": "callout", "content": "Budget for a grinder."},
            {"type": "comparison_table", "columns": [], "rows": []},
            {"type": "hologram"},
            {"type": "sources", "items": [{"label": "Wirecutter", "url": "https://wirecutter.com/espresso"}]},
        ]
    )
    assert dropped == 2
    assert [block["type"] for block in blocks] == ["callout", "sources"]
    assert blocks[0]["variant"] == "info"


@pytest.mark.asyncio
async def test_report_without_model_is_deterministic_fallback():
    draft = await _synthesize(None)

    assert draft.fallback
    assert draft.presentation is None
    assert draft.warnings == [REPORT_FALLBACK_WARNING]
    assert draft.summary.startswith('Research on "best espresso machines under $500" produced 1 usable findings')
    for heading in ["## Executive summary", "## Quality warnings", "## Findings", "## Unknowns / evidence gaps", "## Suggested next actions", "## Source list"]:
        assert heading in draft.report_markdown
    assert "## Analyst synthesis" not in draft.report_markdown
    assert draft.report_markdown.count("How reliable are they?") == 2
    assert [action["title"] for action in draft.actions] == ["Compare grinder prices", "Check warranty terms"]
    assert draft.actions[0]["related_finding_ids"] == ["f1"]


@pytest.mark.asyncio
async def test_report_with_model_cleans_presentation():
    def presentation(prompt):
        return {
            "executive_summary": "The Bambino Plus is the best value.",
            "markdown": "Based on my research, the [Bambino](https://wirecutter.com/espresso) beats [this](https://spam.example).",
            "blocks": [
                {"type": "ranked_list", "items": [{"title": "Bambino", "url": "https://spam.example/x"}]},
                {"type": "sources", "items": [{"label": "Spam", "url": "https://spam.example/x"}]},
                {"type": "callout", "variant": "neon", "content": "bad variant"},
            ],
        }

    llm = FakeLLM(presentation=presentation)
    draft = await _synthesize(llm)

    assert not draft.fallback
    assert draft.presentation["markdown"] == "the [Bambino](https://wirecutter.com/espresso) beats this."
    assert draft.presentation["blocks"] == [{"type": "ranked_list", "items": [{"title": "Bambino"}]}]
    assert "## Analyst synthesis" in draft.report_markdown
    assert "https://wirecutter.com/espresso" in llm.calls[0][1]


@pytest.mark.asyncio
async def test_report_falls_back_when_model_keeps_failing():
    llm = FakeLLM(presentation=always_invalid)
    draft = await _synthesize(llm)

    assert llm.count("presentation") == 2
    assert draft.fallback
    assert REPORT_FALLBACK_WARNING in draft.report_markdown

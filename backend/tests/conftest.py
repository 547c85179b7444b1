import re
from typing import Any, Callable

import pytest

from research_engine.config import Settings
from research_engine.db import ResearchStore
from research_engine.errors import StructuredOutputError
from research_engine.models import EXECUTION_JSON_CONTRACT, PLAN_JSON_CONTRACT, PRESENTATION_JSON_CONTRACT
from research_engine.normalize import SearchResult, to_search_results
from research_engine.providers import FetchedSource
from research_engine.scoring import EvidenceScore, LexicalEvidenceScorer

SOURCE_ID_RE = re.compile(r'"source_id": "([0-9a-f]{32})"')

ESPRESSO_PAGE = (
    "The best espresso machines under $500 include the Breville Bambino Plus and the Gaggia Classic Pro. "
    "Both espresso machines deliver stable temperature and good steam pressure for the price. "
    "Reviewers recommend a separate burr grinder for the best espresso results."
)


class FakeSearch:
    """Returns canned rows; `results_for(query)` may be replaced per test."""

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = rows if rows is not None else []
        self.calls: list[str] = []
        self.rotations: list[int] = []

    def results_for(self, query: str) -> list[dict[str, Any]]:
        return self.rows

    async def search(
        self, query: str, recency_days: int | None = None, limit: int = 8, rotation: int = 0
    ) -> list[SearchResult]:
        self.calls.append(query)
        self.rotations.append(rotation)
        return to_search_results(self.results_for(query), provider="fake")[:limit]


class FakeFetcher:
    def __init__(self, text: str | None = ESPRESSO_PAGE) -> None:
        self.text = text
        self.calls: list[str] = []

    async def fetch(self, url: str) -> FetchedSource:
        self.calls.append(url)
        return FetchedSource(url=url, title=f"Page {url}", text=self.text, retrieved_at="2026-01-01T00:00:00+00:00")


class RecordingScorer:
    def __init__(self) -> None:
        self.inner = LexicalEvidenceScorer()
        self.texts: list[Any] = []

    def score(self, source_text: str, sub_question: str) -> EvidenceScore:
        self.texts.append(source_text)
        return self.inner.score(source_text, sub_question)


class FakeLLM:
    """Structured completion double routed by the contract it is asked for."""

    def __init__(
        self,
        plan: Callable[[str], dict[str, Any]] | None = None,
        execution: Callable[[str], dict[str, Any]] | None = None,
        presentation: Callable[[str], dict[str, Any]] | None = None,
    ) -> None:
        self.plan = plan or (lambda prompt: espresso_plan())
        self.execution = execution or cite_all_sources
        self.presentation = presentation or (
            lambda prompt: {
                "executive_summary": "Two machines stand out under $500.",
                "markdown": "The Breville Bambino Plus and Gaggia Classic Pro are the strongest picks.",
                "blocks": [{"type": "callout", "variant": "tip", "content": "Budget for a grinder."}],
            }
        )
        self.calls: list[tuple[str, str]] = []

    async def complete_json(self, prompt, contract, *, model=None, max_tokens=1600):
        if contract is PLAN_JSON_CONTRACT:
            kind, handler = "plan", self.plan
        elif contract is EXECUTION_JSON_CONTRACT:
            kind, handler = "execution", self.execution
        elif contract is PRESENTATION_JSON_CONTRACT:
            kind, handler = "presentation", self.presentation
        else:
            raise AssertionError("unexpected contract")
        self.calls.append((kind, prompt))
        return handler(prompt)

    def count(self, kind: str) -> int:
        return sum(1 for call_kind, _ in self.calls if call_kind == kind)


def espresso_plan() -> dict[str, Any]:
    return {
        "objective": "Find the best espresso machines under $500.",
        "sub_questions": [
            "Which espresso machines under $500 are rated best by reviewers?",
            "How do espresso machines under $500 compare on temperature stability?",
            "Which espresso machines under $500 need a separate grinder?",
        ],
        "assumptions": ["Prices are in US dollars."],
        "output_format": "Summary, findings, unknowns, actions, sources",
        "effort_rationale": "Quick comparison.",
        "stop_criteria": {"confidence_target": 0.6, "diminishing_returns_delta": 0.05, "diminishing_returns_window": 2},
    }


def cite_all_sources(prompt: str) -> dict[str, Any]:
    source_ids = list(dict.fromkeys(SOURCE_ID_RE.findall(prompt)))
    return {
        "findings": [
            {
                "claim": "The Breville Bambino Plus and Gaggia Classic Pro are top picks under $500.",
                "confidence": 0.85,
                "source_ids": source_ids,
                "status": "sufficient",
                "notes": "",
            }
        ],
        "unknowns": ["Long-term reliability data is thin."],
        "actions": [{"title": "Compare grinder prices", "description": "", "related_source_ids": source_ids[:1]}],
    }


def always_invalid(prompt: str) -> dict[str, Any]:
    raise StructuredOutputError("LLM output is not a JSON object")


def espresso_rows(count: int = 6) -> list[dict[str, Any]]:
    domains = ["wirecutter.com", "consumerreports.org", "seriouseats.com", "coffeegeek.com", "reddit.com", "homegrounds.co"]
    return [
        {
            "url": f"https://{domains[index % len(domains)]}/espresso-{index}",
            "title": f"Espresso machine review {index}",
            "snippet": "A detailed look at espresso machines under $500 and how they perform.",
            "score": 0.8,
        }
        for index in range(count)
    ]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        llm_api_key="",
        db_path=str(tmp_path / "research.db"),
        sub_question_concurrency=2,
        trusted_domains=["consumerreports.org"],
        blocked_domains=["pinterest.com"],
    )


@pytest.fixture
def store(tmp_path):
    research_store = ResearchStore(tmp_path / "store.db")
    yield research_store
    research_store.close()


@pytest.fixture
def make_run(store):
    def _make_run(conversation_id: str = "conv-1", household_id: str = "house-1") -> dict[str, Any]:
        return store.create_run(
            conversation_id=conversation_id,
            household_id=household_id,
            created_by_id="user-1",
            query="best espresso machines under $500",
            effort="quick",
            recency_days=None,
            plan=espresso_plan(),
            metrics={},
        )

    return _make_run

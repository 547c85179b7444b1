from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from .budget import Budget
from .db import ResearchStore
from .errors import LLMError, SearchFailed
from .llm import StructuredLLM, restate_contract
from .models import EXECUTION_JSON_CONTRACT, ExecutionOutput, StopCriteria
from .normalize import normalize_url
from .providers import PageFetcher, WebSearch, select_search_results
from .scoring import EvidenceScorer, tokenize

logger = logging.getLogger(__name__)

MIN_EVIDENCE_RELEVANCE = 0.08
MAX_ATTEMPT_CONFIDENCE = 0.95
SALIENT_QUERY_TERMS = 6
NO_EVIDENCE_NOTE = "No usable evidence was retrieved for this sub-question."

EmitFn = Callable[..., Awaitable[None]]


class StepLedger:
    """Run-wide search step counter shared by concurrent sub-questions.

    Reservations happen without awaiting, so they are atomic on the event loop.
    """

    def __init__(self, max_steps: int, used: int = 0) -> None:
        self.max_steps = max_steps
        self.used = used

    @property
    def remaining(self) -> int:
        return max(0, self.max_steps - self.used)

    def try_reserve(self) -> bool:
        if self.used >= self.max_steps:
            return False
        self.used += 1
        return True


@dataclass
class SubQuestionOutcome:
    sub_question: str
    steps: int = 0
    source_ids: list[str] = field(default_factory=list)
    finding_ids: list[str] = field(default_factory=list)
    findings: list[dict[str, Any]] = field(default_factory=list)
    unknowns: list[str] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_soft: bool = False
    confidence: float = 0.0


def build_search_query(query: str, sub_question: str, attempt: int) -> str:
    sub_question = " ".join(sub_question.split())
    if attempt <= 0:
        return sub_question
    if attempt == 1:
        question_tokens = set(tokenize(sub_question))
        salient: list[str] = []
        for token in tokenize(query):
            if token not in question_tokens and token not in salient:
                salient.append(token)
        extra = " ".join(salient[:SALIENT_QUERY_TERMS])
        return f"{sub_question} {extra}".strip()
    return f"{' '.join(query.split())} {sub_question} evidence data analysis"


def _evidence_confidence(blocks: list[dict[str, Any]]) -> float:
    if not blocks:
        return 0.0
    avg_relevance = sum(block["relevance_score"] for block in blocks) / len(blocks)
    domains = {block.get("domain") for block in blocks if block.get("domain")}
    return avg_relevance * 0.75 + min(0.2, len(domains) * 0.05)


def build_synthesis_prompt(objective: str, query: str, sub_question: str, blocks: list[dict[str, Any]]) -> str:
    evidence = [
        {
            "source_id": block["source_id"],
            "title": block.get("title"),
            "url": block["url"],
            "snippet": block.get("snippet"),
            "extracted_text": block.get("excerpt"),
            "relevance_score": round(block["relevance_score"], 3),
        }
        for block in blocks
    ]
    return f"""You are synthesizing one sub-question of a research run.

Research objective: {objective}
Original user query: {query}
Sub-question: {sub_question}

Evidence blocks:
{json.dumps(evidence, indent=2)}

Rules:
- every finding must cite at least one source_id taken from the evidence blocks
- confidence reflects source quality and agreement between sources
- use status "unknown" when evidence is weak, absent or conflicting beyond resolution
- use status "conflicted" when credible sources disagree
- list open questions in unknowns and concrete follow-ups in actions
- answer the sub-question directly, without preamble"""


class SubQuestionExecutor:
    """Search, fetch, score and synthesize evidence for a single sub-question."""

    def __init__(
        self,
        store: ResearchStore,
        search: WebSearch,
        fetcher: PageFetcher,
        scorer: EvidenceScorer,
        llm: StructuredLLM | None = None,
        model: str | None = None,
        llm_attempts: int = 2,
        search_limit: int = 8,
        max_fetch_per_attempt: int = 3,
        trusted_domains: list[str] | None = None,
        blocked_domains: list[str] | None = None,
        emit: EmitFn | None = None,
    ) -> None:
        self.store = store
        self.search = search
        self.fetcher = fetcher
        self.scorer = scorer
        self.llm = llm
        self.model = model
        self.llm_attempts = max(1, llm_attempts)
        self.search_limit = search_limit
        self.max_fetch_per_attempt = max(1, max_fetch_per_attempt)
        self.trusted_domains = trusted_domains or []
        self.blocked_domains = blocked_domains or []
        self._emit_fn = emit

    async def _emit(self, run_id: str, stage: str, status: str, message: str, **kwargs: Any) -> None:
        if self._emit_fn is not None:
            await self._emit_fn(run_id, stage, status, message, **kwargs)

    async def execute(
        self,
        run_id: str,
        sub_question: str,
        query: str,
        objective: str,
        budget: Budget,
        stop_criteria: StopCriteria,
        ledger: StepLedger,
        recency_days: int | None = None,
        deadline: float | None = None,
        sub_question_index: int = 0,
    ) -> SubQuestionOutcome:
        """Research one sub-question. The caller has already reserved its first step.

        `deadline` is a `time.monotonic()` value after which no re-query starts.
        `sub_question_index` offsets the search provider rotation.
        """

        outcome = SubQuestionOutcome(sub_question=sub_question)
        evidence: dict[str, dict[str, Any]] = {}
        seen_keys: set[str] = set()
        history: list[float] = []
        confidence = 0.0
        min_sources = budget.min_sources_per_sub_question

        await self._emit(run_id, "subquestion", "started", "Sub-question research started.", sub_question=sub_question)

        for attempt in range(budget.max_requeries_per_sub_question + 1):
            if attempt > 0 and deadline is not None and time.monotonic() >= deadline:
                outcome.warnings.append(f"Runtime budget exhausted before re-query {attempt} of: {sub_question}")
                break
            if attempt > 0 and not ledger.try_reserve():
                outcome.warnings.append(f"Step budget exhausted before re-query {attempt} of: {sub_question}")
                break
            outcome.steps += 1

            search_query = build_search_query(query, sub_question, attempt)
            await self._emit(
                run_id,
                "search",
                "started",
                f"Searching sources (attempt {attempt + 1}).",
                sub_question=sub_question,
                payload={"search_query": search_query, "attempt": attempt},
            )
            try:
                results = await self.search.search(
                    search_query,
                    recency_days=recency_days,
                    limit=self.search_limit,
                    rotation=sub_question_index + attempt,
                )
            except SearchFailed as exc:
                logger.warning("Search failed for %r: %s", search_query, exc)
                outcome.warnings.append(f"Search failed for '{sub_question}' (attempt {attempt + 1}).")
                results = []

            selected = select_search_results(
                results,
                seen_keys,
                limit=self.max_fetch_per_attempt + 2,
                trusted_domains=self.trusted_domains,
                blocked_domains=self.blocked_domains,
                query=query,
            )
            await self._emit(
                run_id,
                "search",
                "progress",
                f"Search produced {len(selected)} fresh candidates.",
                sub_question=sub_question,
                payload={"attempt": attempt, "candidate_count": len(selected), "top_urls": [r.url for r, _ in selected[:3]]},
            )

            sources: list[dict[str, Any]] = []
            for result, quality in selected:
                seen_keys.add(normalize_url(result.url))
                result.metadata = {**result.metadata, "search_query": search_query, "attempt": attempt, "quality_score": quality}
                source = self.store.upsert_source(run_id, result)
                sources.append(source)
                if source["id"] not in outcome.source_ids:
                    outcome.source_ids.append(source["id"])

            to_fetch = sources[: self.max_fetch_per_attempt]
            fetched_pages = await asyncio.gather(
                *(self.fetcher.fetch(source["url"]) for source in to_fetch),
                return_exceptions=True,
            )
            for source, page in zip(to_fetch, fetched_pages):
                if isinstance(page, Exception):
                    logger.warning("Fetch raised for %s: %s", source["url"], page)
                    continue
                if isinstance(page, BaseException):
                    raise page
                if page.text is None:
                    continue
                scored = self.scorer.score(page.text, sub_question)
                if scored.relevance_score < MIN_EVIDENCE_RELEVANCE:
                    continue
                previous = evidence.get(source["id"])
                if previous is not None and previous["relevance_score"] >= scored.relevance_score:
                    continue
                evidence[source["id"]] = {
                    "source_id": source["id"],
                    "url": source["url"],
                    "title": source["title"] or page.title,
                    "domain": source["domain"],
                    "snippet": source["snippet"],
                    "excerpt": scored.excerpt,
                    "relevance_score": scored.relevance_score,
                    "notes": scored.notes,
                }

            await self._emit(
                run_id,
                "evidence",
                "progress",
                f"Evidence blocks captured: {len(evidence)}",
                sub_question=sub_question,
                payload={"attempt": attempt, "evidence_count": len(evidence)},
            )

            confidence = min(MAX_ATTEMPT_CONFIDENCE, max(confidence, _evidence_confidence(list(evidence.values()))))
            history.append(confidence)

            if len(evidence) < min_sources:
                continue
            reached_target = confidence >= stop_criteria.confidence_target
            flat = len(history) >= 2 and abs(history[-1] - history[-2]) < stop_criteria.diminishing_returns_delta
            if reached_target or flat:
                await self._emit(
                    run_id,
                    "search",
                    "completed",
                    "Stopped after reaching confidence target." if reached_target else "Stopped due to diminishing returns.",
                    sub_question=sub_question,
                    payload={"confidence": confidence, "evidence_count": len(evidence), "steps": outcome.steps},
                )
                break

        if len(evidence) < min_sources:
            outcome.warnings.append(
                f"Only {len(evidence)} of {min_sources} usable sources found for: {sub_question}"
            )
        outcome.confidence = confidence

        blocks = sorted(evidence.values(), key=lambda block: block["relevance_score"], reverse=True)
        await self._synthesize(run_id, sub_question, query, objective, stop_criteria, blocks, outcome)

        await self._emit(
            run_id,
            "subquestion",
            "completed",
            "Sub-question research completed.",
            sub_question=sub_question,
            payload={
                "steps": outcome.steps,
                "source_count": len(outcome.source_ids),
                "finding_count": len(outcome.findings),
                "failed_soft": outcome.failed_soft,
            },
        )
        return outcome

    async def _synthesize(
        self,
        run_id: str,
        sub_question: str,
        query: str,
        objective: str,
        stop_criteria: StopCriteria,
        blocks: list[dict[str, Any]],
        outcome: SubQuestionOutcome,
    ) -> None:
        await self._emit(run_id, "synthesis", "started", "Synthesizing sub-question findings.", sub_question=sub_question)

        if not blocks:
            self._record_finding(
                run_id,
                outcome,
                claim=f"No usable evidence was found for: {sub_question}",
                confidence=0.0,
                source_ids=[],
                blocks=[],
                status="unknown",
                notes=NO_EVIDENCE_NOTE,
            )
            outcome.unknowns.append(sub_question)
            await self._emit(run_id, "synthesis", "completed", "No usable evidence; recorded unknown.", sub_question=sub_question)
            return

        if self.llm is None:
            best = blocks[0]
            confidence = min(MAX_ATTEMPT_CONFIDENCE, 0.45 + best["relevance_score"] * 0.45)
            self._record_finding(
                run_id,
                outcome,
                claim=best["excerpt"] or best.get("snippet") or best.get("title") or best["url"],
                confidence=confidence,
                source_ids=[best["source_id"]],
                blocks=[best],
                status="sufficient" if confidence >= stop_criteria.confidence_target else "partial",
                notes="Extractive finding; no synthesis model is configured.",
            )
            await self._emit(run_id, "synthesis", "completed", "Recorded extractive finding.", sub_question=sub_question)
            return

        by_id = {block["source_id"]: block for block in blocks}
        prompt = build_synthesis_prompt(objective, query, sub_question, blocks)
        last_error: str | None = None
        for attempt in range(1, self.llm_attempts + 1):
            try:
                raw = await self.llm.complete_json(
                    restate_contract(prompt, attempt, self.llm_attempts, last_error),
                    EXECUTION_JSON_CONTRACT,
                    model=self.model,
                    max_tokens=1600,
                )
                output = ExecutionOutput.model_validate(raw)
            except ValidationError as exc:
                last_error = f"output failed validation ({exc.error_count()} errors)"
                logger.warning("Synthesis attempt %s/%s invalid for %r", attempt, self.llm_attempts, sub_question)
                continue
            except LLMError as exc:
                last_error = str(exc)
                logger.warning("Synthesis attempt %s/%s failed for %r: %s", attempt, self.llm_attempts, sub_question, exc)
                continue

            self._record_output(run_id, outcome, output, by_id)
            await self._emit(
                run_id,
                "synthesis",
                "completed",
                f"Synthesized {len(output.findings)} findings.",
                sub_question=sub_question,
                payload={"finding_count": len(outcome.findings)},
            )
            return

        outcome.failed_soft = True
        outcome.warnings.append(f"Synthesis failed for: {sub_question}")
        self._record_finding(
            run_id,
            outcome,
            claim=f"Findings could not be synthesized for: {sub_question}",
            confidence=0.0,
            source_ids=[],
            blocks=[],
            status="unknown",
            notes=f"Synthesis failed after {self.llm_attempts} attempts: {last_error}",
        )
        outcome.unknowns.append(sub_question)
        await self._emit(
            run_id,
            "synthesis",
            "failed",
            "Synthesis failed; recorded unknown finding.",
            sub_question=sub_question,
            payload={"error": last_error},
        )

    def _record_output(
        self,
        run_id: str,
        outcome: SubQuestionOutcome,
        output: ExecutionOutput,
        by_id: dict[str, dict[str, Any]],
    ) -> None:
        for item in output.findings:
            cited = [source_id for source_id in item.source_ids if source_id in by_id]
            status = item.status
            notes = item.notes or None
            if status != "unknown" and not cited:
                status = "unknown"
                notes = f"{notes} Cited no retrieved source.".strip() if notes else "Cited no retrieved source."
            self._record_finding(
                run_id,
                outcome,
                claim=item.claim,
                confidence=item.confidence,
                source_ids=cited,
                blocks=[by_id[source_id] for source_id in cited],
                status=status,
                notes=notes,
            )

        if not output.findings:
            self._record_finding(
                run_id,
                outcome,
                claim=f"No finding could be drawn for: {outcome.sub_question}",
                confidence=0.0,
                source_ids=[],
                blocks=[],
                status="unknown",
                notes="Synthesis returned no findings.",
            )

        outcome.unknowns.extend(text.strip() for text in output.unknowns if text.strip())
        for action in output.actions:
            outcome.actions.append(
                {
                    "title": action.title.strip(),
                    "description": action.description.strip() or None,
                    "related_source_ids": [source_id for source_id in action.related_source_ids if source_id in by_id],
                }
            )

    def _record_finding(
        self,
        run_id: str,
        outcome: SubQuestionOutcome,
        claim: str,
        confidence: float,
        source_ids: list[str],
        blocks: list[dict[str, Any]],
        status: str,
        notes: str | None,
    ) -> None:
        finding = self.store.insert_finding(
            run_id=run_id,
            sub_question=outcome.sub_question,
            claim=claim,
            confidence=confidence,
            supporting_source_ids=source_ids,
            evidence=[
                {
                    "source_id": block["source_id"],
                    "excerpt": block.get("excerpt"),
                    "relevance_score": block["relevance_score"],
                    "url": block["url"],
                    "title": block.get("title"),
                }
                for block in blocks
            ],
            status=status,
            notes=notes,
        )
        outcome.findings.append(finding)
        outcome.finding_ids.append(finding["id"])

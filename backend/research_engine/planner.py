from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .budget import Budget
from .errors import LLMError
from .llm import StructuredLLM, restate_contract
from .models import PLAN_JSON_CONTRACT, CreatePlanRequest, Plan, StopCriteria

logger = logging.getLogger(__name__)

MAX_SUB_QUESTIONS = 8
MIN_SUB_QUESTIONS = 3
FALLBACK_QUERY_CHARS = 120

DEFAULT_OUTPUT_FORMAT = "Executive summary, findings with citations, unknowns, suggested actions, and source list."
FALLBACK_ASSUMPTIONS = [
    "Publicly available web sources are representative of current information.",
    "Recent reporting may be incomplete for rapidly changing topics.",
]


@dataclass
class PlanResult:
    plan: Plan
    planner: dict[str, Any] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return self.planner.get("status") == "fallback"


def fallback_sub_questions(query: str) -> list[str]:
    trimmed = query.strip()
    prefix = f"{trimmed[:FALLBACK_QUERY_CHARS]}..." if len(trimmed) > FALLBACK_QUERY_CHARS else trimmed
    return [
        f"What is the current state of {prefix}?",
        f"What are the most credible recent sources about {prefix}?",
        f"What evidence supports or contradicts key claims about {prefix}?",
        f"What open questions still remain for {prefix}?",
    ]


def fallback_plan(query: str, effort: str, budget: Budget) -> Plan:
    return Plan(
        objective=f"Research {query.strip()[:400]} and produce evidence-backed conclusions.",
        sub_questions=fallback_sub_questions(query),
        assumptions=list(FALLBACK_ASSUMPTIONS),
        output_format=DEFAULT_OUTPUT_FORMAT,
        effort_rationale=(
            f"Using {effort} effort with budget {budget.max_steps} steps / {budget.max_runtime_seconds}s."
        ),
        stop_criteria=StopCriteria(),
    )


def _clean_strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(value).strip() for value in values if str(value or "").strip()]


def normalize_plan(raw: dict[str, Any], query: str) -> Plan:
    """Trim, de-duplicate and cap a plan payload, then validate it.

    Raises `ValidationError` when the payload cannot be turned into a plan
    (for example a stop criterion out of range).
    """

    objective = str(raw.get("objective") or "").strip() or f"Research {query.strip()[:400]}"

    sub_questions: list[str] = []
    seen: set[str] = set()
    for item in _clean_strings(raw.get("sub_questions")):
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        sub_questions.append(item)
    sub_questions = sub_questions[:MAX_SUB_QUESTIONS]
    if len(sub_questions) < MIN_SUB_QUESTIONS:
        sub_questions = fallback_sub_questions(query)

    payload: dict[str, Any] = {
        "objective": objective,
        "sub_questions": sub_questions,
        "assumptions": _clean_strings(raw.get("assumptions")),
        "output_format": str(raw.get("output_format") or "").strip() or DEFAULT_OUTPUT_FORMAT,
        "effort_rationale": str(raw.get("effort_rationale") or "").strip() or None,
    }
    stop_criteria = raw.get("stop_criteria")
    if isinstance(stop_criteria, dict):
        payload["stop_criteria"] = stop_criteria
    return Plan.model_validate(payload)


def build_plan_prompt(request: CreatePlanRequest, budget: Budget) -> str:
    recency = f"{request.recency_days} days" if request.recency_days else "none"
    return f"""You are generating a pre-run deep research plan.

User query: {request.query.strip()}
Effort preset: {request.effort}
Recency preference: {recency}
Budget:
- max search steps: {budget.max_steps}
- max runtime seconds: {budget.max_runtime_seconds}
- minimum sources: {budget.min_sources}
- max re-queries per sub-question: {budget.max_requeries_per_sub_question}

Return strict JSON only with this shape:
{json.dumps(PLAN_JSON_CONTRACT, indent=2)}

Rules:
- objective must be one sentence
- produce {MIN_SUB_QUESTIONS}-{MAX_SUB_QUESTIONS} sub_questions
- avoid duplicate or overlapping sub_questions
- assumptions should be explicit and testable
- output_format should describe the final sections: summary, findings, unknowns, actions, sources
- stop_criteria should be practical for the provided effort budget"""


class PlanGenerator:
    def __init__(self, llm: StructuredLLM | None, model: str | None = None, attempts: int = 2) -> None:
        self.llm = llm
        self.model = model
        self.attempts = max(1, attempts)

    async def generate(self, request: CreatePlanRequest, budget: Budget) -> PlanResult:
        if self.llm is None:
            return PlanResult(
                plan=fallback_plan(request.query, request.effort, budget),
                planner={"status": "fallback", "reason": "No planner model is configured on the server."},
            )

        prompt = build_plan_prompt(request, budget)
        last_error: str | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                raw = await self.llm.complete_json(
                    restate_contract(prompt, attempt, self.attempts, last_error),
                    PLAN_JSON_CONTRACT,
                    model=self.model,
                    max_tokens=1200,
                )
                plan = normalize_plan(raw, request.query)
            except ValidationError as exc:
                last_error = f"plan failed validation ({exc.error_count()} errors)"
                logger.warning("Plan attempt %s/%s invalid: %s", attempt, self.attempts, last_error)
                continue
            except LLMError as exc:
                last_error = str(exc)
                logger.warning("Plan attempt %s/%s failed: %s", attempt, self.attempts, exc)
                continue
            return PlanResult(plan=plan, planner={"status": "generated", "reason": None})

        return PlanResult(
            plan=fallback_plan(request.query, request.effort, budget),
            planner={"status": "fallback", "reason": last_error or "Planner generation failed"},
        )

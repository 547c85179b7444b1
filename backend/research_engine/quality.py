from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from .budget import Budget

STATUS_WEIGHTS = {
    "sufficient": 1.0,
    "partial": 0.85,
    "conflicted": 0.5,
    "unknown": 0.0,
}
LOW_CONFIDENCE = 0.4


@dataclass
class QualityAssessment:
    score: float
    warnings: list[str] = field(default_factory=list)
    answered_sub_questions: int = 0
    usable_findings: int = 0
    source_shortfall: bool = False


def is_usable(finding: dict[str, Any]) -> bool:
    return finding.get("status") != "unknown"


def aggregate_confidence(findings: list[dict[str, Any]], sub_questions: list[str]) -> float:
    """Mean over all plan sub-questions of each one's best usable finding confidence."""

    if not sub_questions:
        return 0.0
    best: dict[str, float] = {}
    for finding in findings:
        if not is_usable(finding):
            continue
        key = finding["sub_question"]
        best[key] = max(best.get(key, 0.0), float(finding["confidence"]))
    return sum(best.get(sub_question, 0.0) for sub_question in sub_questions) / len(sub_questions)


def assess_run_quality(
    findings: list[dict[str, Any]],
    source_count: int,
    total_sub_questions: int,
    budget: Budget,
    failed_soft: int = 0,
) -> QualityAssessment:
    warnings: list[str] = []
    usable = [finding for finding in findings if is_usable(finding)]
    answered = len({finding["sub_question"] for finding in usable})

    if findings:
        base = sum(float(f["confidence"]) * STATUS_WEIGHTS.get(f["status"], 0.0) for f in findings) / len(findings)
    else:
        base = 0.0

    shortfall = source_count < budget.min_sources
    if shortfall:
        base *= 0.5 + 0.5 * (source_count / budget.min_sources)
        warnings.append(f"Minimum source count not reached ({source_count} of {budget.min_sources}).")

    if total_sub_questions and answered < math.ceil(total_sub_questions / 2):
        warnings.append(f"Only {answered} of {total_sub_questions} sub-questions have usable findings.")

    if usable and not any(len(f.get("supporting_source_ids") or []) >= 2 for f in usable):
        warnings.append("No finding is corroborated by more than one source.")

    if failed_soft:
        warnings.append(f"Synthesis fell back to an unknown finding for {failed_soft} sub-question(s).")

    weak = [f for f in findings if not is_usable(f) or float(f["confidence"]) < LOW_CONFIDENCE]
    if findings and len(weak) > len(findings) / 2:
        warnings.append("More than half of findings are unknown or low-confidence.")

    return QualityAssessment(
        score=min(1.0, max(0.0, base)),
        warnings=warnings,
        answered_sub_questions=answered,
        usable_findings=len(usable),
        source_shortfall=shortfall,
    )


def classify(
    assessment: QualityAssessment,
    confidence_target: float,
    failed_soft: int,
    skipped: int,
    report_fallback: bool,
) -> str:
    if assessment.usable_findings == 0:
        return "failed"
    if (
        assessment.score >= confidence_target
        and not failed_soft
        and not assessment.source_shortfall
        and not skipped
        and not report_fallback
    ):
        return "completed"
    return "completed_with_warnings"

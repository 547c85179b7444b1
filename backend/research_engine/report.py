from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .errors import LLMError
from .llm import StructuredLLM, restate_contract
from .models import PRESENTATION_JSON_CONTRACT, PresentationOutput, parse_presentation_blocks
from .normalize import normalize_url

logger = logging.getLogger(__name__)

MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
PREAMBLE_RE = re.compile(r"^\s*(based on (my|the|our) research|after researching)[^.:,\n]*[.:,]\s*", re.IGNORECASE)
REPORT_FALLBACK_WARNING = "Report synthesis fell back to a deterministic summary."


@dataclass
class ReportDraft:
    summary: str
    report_markdown: str
    actions: list[dict[str, Any]]
    presentation: dict[str, Any] | None = None
    fallback: bool = False
    warnings: list[str] = field(default_factory=list)


def build_report_actions(raw_actions: list[dict[str, Any]], findings: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """De-duplicate actions by title and link them to findings that cite the same sources."""

    actions: list[dict[str, Any]] = []
    seen: set[str] = set()
    for raw in raw_actions:
        title = str(raw.get("title") or "").strip()
        key = title.lower()
        if not title or key in seen:
            continue
        seen.add(key)

        related_sources = set(raw.get("related_source_ids") or [])
        related_findings = [
            finding["id"]
            for finding in findings
            if related_sources.intersection(finding.get("supporting_source_ids") or [])
        ]
        action: dict[str, Any] = {"title": title}
        if raw.get("description"):
            action["description"] = str(raw["description"]).strip()
        if related_findings:
            action["related_finding_ids"] = related_findings
        actions.append(action)
    return actions


def sanitize_markdown_links(markdown: str, source_keys: set[str]) -> str:
    def replace(match: re.Match[str]) -> str:
        label, url = match.group(1), match.group(2)
        if normalize_url(url) in source_keys:
            return match.group(0)
        return label

    return MARKDOWN_LINK_RE.sub(replace, markdown)


def strip_preamble(markdown: str) -> str:
    return PREAMBLE_RE.sub("", markdown, count=1).lstrip()


def _restrict_block_urls(blocks: list[dict[str, Any]], source_keys: set[str]) -> list[dict[str, Any]]:
    kept: list[dict[str, Any]] = []
    for block in blocks:
        if block["type"] == "sources":
            items = [item for item in block["items"] if normalize_url(item["url"]) in source_keys]
            if not items:
                continue
            block = {**block, "items": items}
        elif block["type"] == "ranked_list":
            items = []
            for item in block["items"]:
                if item.get("url") and normalize_url(item["url"]) not in source_keys:
                    item = {key: value for key, value in item.items() if key != "url"}
                items.append(item)
            block = {**block, "items": items}
        kept.append(block)
    return kept


def fallback_summary(query: str, findings: list[dict[str, Any]], total_sub_questions: int, source_count: int) -> str:
    usable = [finding for finding in findings if finding.get("status") != "unknown"]
    answered = len({finding["sub_question"] for finding in usable})
    if not usable:
        return (
            f"No usable findings were produced for \"{query}\". "
            f"{source_count} sources were consulted across {total_sub_questions} sub-questions."
        )
    return (
        f"Research on \"{query}\" produced {len(usable)} usable findings covering {answered} of "
        f"{total_sub_questions} sub-questions, drawn from {source_count} sources."
    )


def build_report_markdown(
    summary: str,
    findings: list[dict[str, Any]],
    unknowns: list[str],
    actions: list[dict[str, Any]],
    sources: list[dict[str, Any]],
    quality_warnings: list[str] | None = None,
    analyst_narrative: str | None = None,
) -> str:
    lines: list[str] = ["## Executive summary", summary, ""]

    if quality_warnings:
        lines.append("## Quality warnings")
        lines.extend(f"{index}. {warning}" for index, warning in enumerate(quality_warnings, start=1))
        lines.append("")

    if analyst_narrative:
        lines.extend(["## Analyst synthesis", analyst_narrative, ""])

    lines.append("## Findings")
    if findings:
        blocks: list[str] = []
        for index, finding in enumerate(findings, start=1):
            source_ids = finding.get("supporting_source_ids") or []
            citations = ", ".join(f"[{source_id}]" for source_id in source_ids) if source_ids else "No citations"
            entry = [
                f"{index}. **{finding['sub_question']}**",
                f"   - Claim: {finding['claim']}",
                f"   - Confidence: {float(finding['confidence']):.2f} ({finding['status']})",
                f"   - Citations: {citations}",
            ]
            for evidence in (finding.get("evidence") or [])[:2]:
                excerpt = " ".join(str(evidence.get("excerpt") or "").split()) or "No excerpt captured."
                entry.append(f"   - Evidence [{evidence['source_id']}]: \"{excerpt[:220]}\"")
            if finding.get("notes"):
                entry.append(f"   - Notes: {finding['notes']}")
            blocks.append("\n".join(entry))
        lines.append("\n\n".join(blocks))
    else:
        lines.append("No findings were generated.")
    lines.append("")

    lines.append("## Unknowns / evidence gaps")
    if unknowns:
        lines.extend(f"{index}. {unknown}" for index, unknown in enumerate(unknowns, start=1))
    else:
        lines.append("No explicit unknowns recorded.")
    lines.append("")

    lines.append("## Suggested next actions")
    if actions:
        for index, action in enumerate(actions, start=1):
            suffix = f" - {action['description']}" if action.get("description") else ""
            lines.append(f"{index}. {action['title']}{suffix}")
    else:
        lines.append("No suggested actions.")
    lines.append("")

    lines.append("## Source list")
    if sources:
        lines.extend(f"- [{source['id']}] [{source.get('title') or source['url']}]({source['url']})" for source in sources)
    else:
        lines.append("No sources collected.")

    return "\n".join(lines)


def build_presentation_prompt(
    query: str,
    objective: str,
    findings: list[dict[str, Any]],
    unknowns: list[str],
    actions: list[dict[str, Any]],
    sources: list[dict[str, Any]],
    quality_warnings: list[str],
) -> str:
    source_by_id = {source["id"]: source for source in sources}
    finding_rows = [
        {
            "sub_question": finding["sub_question"],
            "claim": finding["claim"],
            "confidence": round(float(finding["confidence"]), 2),
            "status": finding["status"],
            "sources": [
                {"title": source_by_id[source_id].get("title") or source_by_id[source_id]["url"], "url": source_by_id[source_id]["url"]}
                for source_id in finding.get("supporting_source_ids") or []
                if source_id in source_by_id
            ],
        }
        for finding in findings
    ]
    return f"""Write the final answer for a completed research run.

User query: {query}
Objective: {objective}

Findings:
{json.dumps(finding_rows, indent=2)}

Unknowns:
{json.dumps(unknowns, indent=2)}

Suggested actions:
{json.dumps([action["title"] for action in actions], indent=2)}

Quality warnings:
{json.dumps(quality_warnings, indent=2)}

Rules:
- answer the user query directly in markdown; never open with "Based on my research" or similar preamble
- cite sources inline as [title](url) using only URLs listed in the findings
- add presentation blocks only when they are clearer than prose, and never repeat the markdown content in them
- allowed block types: comparison_table, ranked_list, sources, callout, action_items
- mention important quality warnings plainly"""


class ReportSynthesizer:
    def __init__(self, llm: StructuredLLM | None, model: str | None = None, attempts: int = 2) -> None:
        self.llm = llm
        self.model = model
        self.attempts = max(1, attempts)

    async def synthesize(
        self,
        query: str,
        objective: str,
        findings: list[dict[str, Any]],
        sources: list[dict[str, Any]],
        unknowns: list[str],
        raw_actions: list[dict[str, Any]],
        quality_warnings: list[str],
        total_sub_questions: int,
    ) -> ReportDraft:
        actions = build_report_actions(raw_actions, findings)
        unknowns = list(dict.fromkeys(unknowns))

        presentation = await self._present(query, objective, findings, unknowns, actions, sources, quality_warnings)
        if presentation is None:
            warnings = [*quality_warnings, REPORT_FALLBACK_WARNING]
            summary = fallback_summary(query, findings, total_sub_questions, len(sources))
            return ReportDraft(
                summary=summary,
                report_markdown=build_report_markdown(summary, findings, unknowns, actions, sources, warnings),
                actions=actions,
                presentation=None,
                fallback=True,
                warnings=[REPORT_FALLBACK_WARNING],
            )

        summary = presentation.executive_summary.strip()
        return ReportDraft(
            summary=summary,
            report_markdown=build_report_markdown(
                summary,
                findings,
                unknowns,
                actions,
                sources,
                quality_warnings,
                analyst_narrative=presentation.markdown,
            ),
            actions=actions,
            presentation={"markdown": presentation.markdown, "blocks": presentation.blocks},
        )

    async def _present(
        self,
        query: str,
        objective: str,
        findings: list[dict[str, Any]],
        unknowns: list[str],
        actions: list[dict[str, Any]],
        sources: list[dict[str, Any]],
        quality_warnings: list[str],
    ) -> PresentationOutput | None:
        if self.llm is None:
            return None

        source_keys = {normalize_url(source["url"]) for source in sources}
        prompt = build_presentation_prompt(query, objective, findings, unknowns, actions, sources, quality_warnings)
        last_error: str | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                raw = await self.llm.complete_json(
                    restate_contract(prompt, attempt, self.attempts, last_error),
                    PRESENTATION_JSON_CONTRACT,
                    model=self.model,
                    max_tokens=2400,
                )
                output = PresentationOutput.model_validate(raw)
            except ValidationError as exc:
                last_error = f"presentation failed validation ({exc.error_count()} errors)"
                logger.warning("Presentation attempt %s/%s invalid", attempt, self.attempts)
                continue
            except LLMError as exc:
                last_error = str(exc)
                logger.warning("Presentation attempt %s/%s failed: %s", attempt, self.attempts, exc)
                continue

            blocks, dropped = parse_presentation_blocks(output.blocks)
            if dropped:
                logger.info("Dropped %s invalid presentation blocks", dropped)
            markdown = sanitize_markdown_links(strip_preamble(output.markdown), source_keys)
            if not markdown.strip():
                last_error = "markdown was empty after cleanup"
                continue
            return PresentationOutput(
                executive_summary=output.executive_summary,
                markdown=markdown,
                blocks=_restrict_block_urls(blocks, source_keys),
            )
        return None

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

Effort = Literal["quick", "standard", "deep"]
FindingStatus = Literal["partial", "sufficient", "conflicted", "unknown"]
EventStatus = Literal["started", "progress", "completed", "failed", "info"]
RunStatus = Literal["planning", "running", "completed", "completed_with_warnings", "failed", "canceled"]

TERMINAL_STATUSES = {"completed", "completed_with_warnings", "failed", "canceled"}
FINDING_STATUSES = ("partial", "sufficient", "conflicted", "unknown")
EVENT_STATUSES = ("started", "progress", "completed", "failed", "info")


# === Plan ===

class StopCriteria(BaseModel):
    confidence_target: float = Field(default=0.75, ge=0, le=1)
    diminishing_returns_delta: float = Field(default=0.05, ge=0, le=1)
    diminishing_returns_window: int = Field(default=2, ge=1, le=5)


class Plan(BaseModel):
    objective: str = Field(min_length=1, max_length=500)
    sub_questions: list[Annotated[str, Field(min_length=1, max_length=500)]] = Field(min_length=3, max_length=8)
    assumptions: list[Annotated[str, Field(min_length=1, max_length=500)]] = Field(default_factory=list, max_length=20)
    output_format: str = Field(min_length=1, max_length=500)
    effort_rationale: Optional[str] = Field(default=None, max_length=1500)
    stop_criteria: StopCriteria = Field(default_factory=StopCriteria)

    @field_validator("sub_questions")
    @classmethod
    def _distinct_sub_questions(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        for item in value:
            key = item.strip().lower()
            if key in seen:
                raise ValueError(f"duplicate sub-question: {item}")
            seen.add(key)
        return value


PLAN_JSON_CONTRACT: dict[str, Any] = {
    "objective": "string (one sentence)",
    "sub_questions": ["string"],
    "assumptions": ["string"],
    "output_format": "string",
    "effort_rationale": "string",
    "stop_criteria": {
        "confidence_target": "number between 0 and 1",
        "diminishing_returns_delta": "number between 0 and 1",
        "diminishing_returns_window": "integer >= 1",
    },
}


# === Sub-question synthesis contract ===

class ExecutionFinding(BaseModel):
    claim: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    source_ids: list[str] = Field(default_factory=list)
    status: FindingStatus
    notes: str = ""


class ExecutionAction(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    related_source_ids: list[str] = Field(default_factory=list)


class ExecutionOutput(BaseModel):
    findings: list[ExecutionFinding]
    unknowns: list[str] = Field(default_factory=list)
    actions: list[ExecutionAction] = Field(default_factory=list)


EXECUTION_JSON_CONTRACT: dict[str, Any] = {
    "findings": [
        {
            "claim": "string",
            "confidence": "number between 0 and 1",
            "source_ids": ["source-id"],
            "status": "partial | sufficient | conflicted | unknown",
            "notes": "string",
        }
    ],
    "unknowns": ["string"],
    "actions": [
        {
            "title": "string",
            "description": "string",
            "related_source_ids": ["source-id"],
        }
    ],
}


# === Presentation blocks ===

class ComparisonRow(BaseModel):
    label: str
    values: list[str]


class ComparisonTableBlock(BaseModel):
    type: Literal["comparison_table"]
    caption: Optional[str] = None
    columns: list[str] = Field(min_length=1)
    rows: list[ComparisonRow] = Field(min_length=1)


class RankedItem(BaseModel):
    title: str
    subtitle: Optional[str] = None
    detail: Optional[str] = None
    url: Optional[str] = None


class RankedListBlock(BaseModel):
    type: Literal["ranked_list"]
    title: Optional[str] = None
    items: list[RankedItem] = Field(min_length=1)


class SourceLink(BaseModel):
    label: str
    url: str


class SourcesBlock(BaseModel):
    type: Literal["sources"]
    items: list[SourceLink] = Field(min_length=1)


class CalloutBlock(BaseModel):
    type: Literal["callout"]
    variant: Literal["info", "warning", "tip"] = "info"
    content: str = Field(min_length=1)


class ActionItem(BaseModel):
    text: str
    detail: Optional[str] = None


class ActionItemsBlock(BaseModel):
    type: Literal["action_items"]
    title: Optional[str] = None
    items: list[ActionItem] = Field(min_length=1)


PresentationBlock = Annotated[
    Union[ComparisonTableBlock, RankedListBlock, SourcesBlock, CalloutBlock, ActionItemsBlock],
    Field(discriminator="type"),
]
presentation_block_adapter: TypeAdapter[Any] = TypeAdapter(PresentationBlock)


class PresentationOutput(BaseModel):
    executive_summary: str = Field(min_length=1)
    markdown: str = Field(min_length=1)
    blocks: list[dict[str, Any]] = Field(default_factory=list)


PRESENTATION_JSON_CONTRACT: dict[str, Any] = {
    "executive_summary": "string (2-4 sentences)",
    "markdown": "string markdown answer with inline [title](url) citations",
    "blocks": [
        {"type": "comparison_table", "caption": "string?", "columns": ["string"], "rows": [{"label": "string", "values": ["string"]}]},
        {"type": "ranked_list", "title": "string?", "items": [{"title": "string", "subtitle": "string?", "detail": "string?", "url": "string?"}]},
        {"type": "sources", "items": [{"label": "string", "url": "string"}]},
        {"type": "callout", "variant": "info | warning | tip", "content": "string"},
        {"type": "action_items", "title": "string?", "items": [{"text": "string", "detail": "string?"}]},
    ],
}


def parse_presentation_blocks(raw_blocks: list[Any]) -> tuple[list[dict[str, Any]], int]:
    """Validate blocks one by one; returns (valid blocks, dropped count)."""

    blocks: list[dict[str, Any]] = []
    dropped = 0
    for raw in raw_blocks:
        try:
            block = presentation_block_adapter.validate_python(raw)
        except ValidationError:
            dropped += 1
            continue
        blocks.append(block.model_dump(exclude_none=True))
    return blocks, dropped


# === API request bodies ===

class CreatePlanRequest(BaseModel):
    query: str = Field(min_length=1, max_length=4000)
    effort: Effort = "standard"
    recency_days: Optional[int] = Field(default=None, ge=1, le=3650)

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value


class StartRunRequest(BaseModel):
    plan: Optional[Plan] = None


class TaskActionInput(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    due_date: Optional[str] = None
    assigned_to_id: Optional[str] = None
    priority: int = Field(default=0, ge=0, le=2)


class CreateTasksRequest(BaseModel):
    finding_ids: list[str] = Field(default_factory=list)
    action_items: list[TaskActionInput] = Field(default_factory=list)

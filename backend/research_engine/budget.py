from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class Budget:
    max_steps: int
    max_runtime_seconds: int
    min_sources: int
    max_requeries_per_sub_question: int

    @property
    def min_sources_per_sub_question(self) -> int:
        return max(1, math.ceil(self.min_sources / 2))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Budget":
        return cls(
            max_steps=int(data["max_steps"]),
            max_runtime_seconds=int(data["max_runtime_seconds"]),
            min_sources=int(data["min_sources"]),
            max_requeries_per_sub_question=int(data["max_requeries_per_sub_question"]),
        )


# max_steps counts search attempts across the whole run.
EFFORT_BUDGETS: dict[str, Budget] = {
    "quick": Budget(max_steps=8, max_runtime_seconds=30, min_sources=2, max_requeries_per_sub_question=1),
    "standard": Budget(max_steps=16, max_runtime_seconds=90, min_sources=4, max_requeries_per_sub_question=2),
    "deep": Budget(max_steps=28, max_runtime_seconds=180, min_sources=6, max_requeries_per_sub_question=3),
}


def budget_for(effort: str) -> Budget:
    return EFFORT_BUDGETS.get(str(effort or "").strip().lower(), EFFORT_BUDGETS["standard"])

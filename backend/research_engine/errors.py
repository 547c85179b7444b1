"""
Exception hierarchy for the research engine.

Lower layers (search, fetch, scoring) return empty or null sentinels for
"no data" conditions; the classes below are reserved for the conditions a
caller has to act on.
"""

from __future__ import annotations

from typing import Any


class ResearchError(Exception):
    """Base exception for all research engine errors"""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        base = super().__str__()
        if self.context:
            return f"{base} Context: {self.context}"
        return base


# === Run lifecycle ===

class RunNotFound(ResearchError):
    """No run matches the id within the caller's conversation/household"""


class RunStateConflict(ResearchError):
    """The requested transition is not allowed from the run's current status"""


# === Collaborators ===

class SearchFailed(ResearchError):
    """Web search returned a non-2xx response or could not be reached (retryable)"""


class LLMError(ResearchError):
    """LLM completion failed or is not configured"""


class StructuredOutputError(LLMError):
    """LLM answered, but the payload does not satisfy the requested JSON contract"""


class PersistenceError(ResearchError):
    """The research store could not read or write a record"""

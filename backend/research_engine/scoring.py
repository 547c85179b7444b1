"""Deterministic lexical relevance between fetched text and a sub-question.

Relevance is token overlap normalized by question size; the excerpt is the
first sentence that shares a token with the question. Anything implementing
`EvidenceScorer` can replace it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

MAX_EXCERPT_CHARS = 400
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


@dataclass(frozen=True)
class EvidenceScore:
    excerpt: str | None
    relevance_score: float
    notes: str


class EvidenceScorer(Protocol):
    def score(self, source_text: str, sub_question: str) -> EvidenceScore: ...


def tokenize(text: str) -> list[str]:
    lowered = NON_ALNUM_RE.sub(" ", (text or "").lower())
    return [token for token in lowered.split() if len(token) > 2]


def overlap_band(relevance: float) -> str:
    if relevance >= 0.7:
        return "High lexical overlap with sub-question"
    if relevance >= 0.4:
        return "Moderate lexical overlap with sub-question"
    return "Weak lexical overlap with sub-question"


class LexicalEvidenceScorer:
    def score(self, source_text: str, sub_question: str) -> EvidenceScore:
        source_tokens = tokenize(source_text)
        question_tokens = set(tokenize(sub_question))

        if not source_tokens or not question_tokens:
            return EvidenceScore(excerpt=None, relevance_score=0.0, notes="No usable evidence extracted")

        overlap = sum(1 for token in source_tokens if token in question_tokens)
        relevance = min(1.0, overlap / max(6, len(question_tokens) * 3))

        sentences = [line.strip() for line in SENTENCE_SPLIT_RE.split(source_text) if line.strip()]
        excerpt: str | None = None
        for sentence in sentences:
            if question_tokens.intersection(tokenize(sentence)):
                excerpt = sentence
                break
        if excerpt is None and sentences:
            excerpt = sentences[0]

        return EvidenceScore(
            excerpt=excerpt[:MAX_EXCERPT_CHARS] if excerpt else None,
            relevance_score=relevance,
            notes=overlap_band(relevance),
        )

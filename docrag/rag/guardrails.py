from __future__ import annotations

from dataclasses import dataclass

from docrag.rag.types import SearchResult


DEFAULT_REFUSAL = (
    "I couldn't find any relevant information in the knowledge base to answer your "
    "question. You may want to try rephrasing your question or checking if the "
    "information exists in the documents."
)


@dataclass(frozen=True)
class GuardrailResult:
    allowed: bool
    reason: str


def require_context(results: list[SearchResult]) -> GuardrailResult:
    if not results:
        return GuardrailResult(allowed=False, reason="no_context")
    if all(not result.content.strip() for result in results):
        return GuardrailResult(allowed=False, reason="empty_context")
    return GuardrailResult(allowed=True, reason="ok")

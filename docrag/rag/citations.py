from __future__ import annotations

"""Citation helpers for attaching sources to answers."""

import re
from dataclasses import dataclass

from docrag.rag.types import SearchResult

DEFAULT_DOCS_BASE_URL = "https://developer.mozilla.org/en-US/docs/"

_PUNCTUATION_RE = re.compile(r"[^\w\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Citation:
    """Citation metadata for a single source chunk."""
    label: str
    title: str
    url: str
    snippet: str
    score: float
    source_file_path: str
    chunk_id: str


def heading_to_slug(heading: str | None) -> str:
    """Fragment id for a heading: lowercase, punctuation stripped, spaces to ``_``."""
    if not heading:
        return ""
    cleaned = _PUNCTUATION_RE.sub("", heading.lower()).strip()
    return _WHITESPACE_RE.sub("_", cleaned)


def build_doc_url(
    slug: str | None,
    heading: str | None = None,
    base_url: str = DEFAULT_DOCS_BASE_URL,
) -> str:
    """Resolve a document slug and optional heading to a public URL."""
    url = f"{base_url}{slug}" if slug else base_url
    fragment = heading_to_slug(heading)
    if fragment:
        return f"{url}#{fragment}"
    return url


def make_snippet(content: str, length: int = 200) -> str:
    if len(content) <= length:
        return content
    return f"{content[:length]}..."


def build_citations(
    results: list[SearchResult], base_url: str = DEFAULT_DOCS_BASE_URL
) -> list[Citation]:
    """Build numbered citations for results in answer order."""
    citations: list[Citation] = []
    for idx, result in enumerate(results, start=1):
        citations.append(
            Citation(
                label=f"[{idx}]",
                title=result.document_title,
                url=build_doc_url(result.document_slug, result.heading_context, base_url),
                snippet=make_snippet(result.content),
                score=result.rerank_score if result.rerank_score is not None else result.score,
                source_file_path=result.source_file_path,
                chunk_id=result.chunk_id,
            )
        )
    return citations


def append_citation_footer(answer: str, citations: list[Citation]) -> str:
    """Append citation labels and URLs to the answer."""
    if not citations:
        return answer
    lines = [f"{citation.label} {citation.title}: {citation.url}" for citation in citations]
    return answer + "\n\nSources:\n" + "\n".join(lines)

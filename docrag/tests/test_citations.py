from __future__ import annotations

from docrag.rag.citations import (
    append_citation_footer,
    build_citations,
    build_doc_url,
    heading_to_slug,
    make_snippet,
)
from docrag.rag.types import SearchResult


def test_heading_slug_and_doc_url() -> None:
    assert heading_to_slug("Basic usage") == "basic_usage"
    assert heading_to_slug("Using fetch()!  Now") == "using_fetch_now"
    assert heading_to_slug(None) == ""
    assert (
        build_doc_url("Web/API/Fetch", "Basic usage")
        == "https://developer.mozilla.org/en-US/docs/Web/API/Fetch#basic_usage"
    )
    assert build_doc_url("Web/API/Fetch") == "https://developer.mozilla.org/en-US/docs/Web/API/Fetch"
    assert build_doc_url("Guide", "Intro", base_url="https://docs.example.com/") == (
        "https://docs.example.com/Guide#intro"
    )


def test_snippet_truncation() -> None:
    assert make_snippet("short") == "short"
    snippet = make_snippet("a" * 250)
    assert snippet == "a" * 200 + "..."


def test_build_citations_labels_and_scores() -> None:
    results = [
        SearchResult(
            chunk_id="fetch.md_chunk_0",
            document_title="Fetch API",
            source_file_path="fetch.md",
            document_slug="Web/API/Fetch",
            content="fetch() returns a promise.",
            heading_context="Basic usage",
            score=0.03,
        ),
        SearchResult(
            chunk_id="grid.md_chunk_0",
            document_title="CSS Grid",
            source_file_path="grid.md",
            document_slug="Web/CSS/grid",
            content="Grid layout.",
            score=0.02,
            rerank_score=0.8,
        ),
    ]

    citations = build_citations(results)

    assert [citation.label for citation in citations] == ["[1]", "[2]"]
    assert citations[0].url.endswith("Web/API/Fetch#basic_usage")
    assert citations[0].score == 0.03
    assert citations[1].score == 0.8
    footer = append_citation_footer("Answer.", citations)
    assert footer.startswith("Answer.\n\nSources:\n[1] Fetch API: ")
    assert append_citation_footer("Answer.", []) == "Answer."

from __future__ import annotations

from collections import Counter

import pytest

from docrag.rag.fusion import reciprocal_rank_fusion, rrf_contribution, select_results
from docrag.rag.lexical import bm25_scores, build_or_query, normalize_query_terms
from docrag.rag.types import SearchResult


def _result(chunk_id: str, **scores: float) -> SearchResult:
    return SearchResult(
        chunk_id=chunk_id,
        document_title=f"Doc {chunk_id}",
        source_file_path=f"{chunk_id}.md",
        document_slug=chunk_id,
        content=f"content {chunk_id}",
        **scores,
    )


def test_rrf_orders_by_summed_contributions() -> None:
    dense = [_result("A", vector_score=0.9), _result("B", vector_score=0.8), _result("C", vector_score=0.7)]
    lexical = [_result("C", lexical_score=3.0), _result("A", lexical_score=2.0), _result("D", lexical_score=1.0)]

    fused = reciprocal_rank_fusion(dense, lexical, k=60)

    assert [result.chunk_id for result in fused] == ["A", "C", "B", "D"]
    scores = {result.chunk_id: result.score for result in fused}
    assert scores["A"] == pytest.approx(1 / 61 + 1 / 62)
    assert scores["C"] == pytest.approx(1 / 63 + 1 / 61)
    assert scores["B"] == pytest.approx(1 / 62)
    assert scores["D"] == pytest.approx(1 / 63)


def test_rrf_keeps_both_raw_scores() -> None:
    fused = reciprocal_rank_fusion(
        [_result("A", vector_score=0.9)], [_result("A", lexical_score=2.5)]
    )

    assert fused[0].vector_score == 0.9
    assert fused[0].lexical_score == 2.5


def test_rrf_ties_keep_dense_first() -> None:
    fused = reciprocal_rank_fusion([_result("X")], [_result("Y")])

    assert [result.chunk_id for result in fused] == ["X", "Y"]
    assert fused[0].score == fused[1].score == rrf_contribution(0)


def test_rrf_with_one_empty_leg() -> None:
    fused = reciprocal_rank_fusion([], [_result("L1"), _result("L2")])

    assert [result.chunk_id for result in fused] == ["L1", "L2"]


def test_threshold_filters_fused_scores() -> None:
    results = [_result("a", score=0.9), _result("b", score=0.4), _result("c", score=0.2)]

    selected = select_results(results, threshold=0.5, limit=5)

    assert [result.chunk_id for result in selected] == ["a"]


def test_limit_truncates_after_threshold() -> None:
    results = [_result(str(idx), score=1.0 - idx * 0.1) for idx in range(6)]

    assert len(select_results(results, threshold=0.0, limit=3)) == 3
    assert select_results(results, threshold=0.0, limit=0) == []


def test_normalize_query_terms() -> None:
    assert normalize_query_terms("How do I use fetch()? async/await!") == [
        "how",
        "do",
        "i",
        "use",
        "fetch",
        "async",
        "await",
    ]
    assert normalize_query_terms("?!") == []
    assert build_or_query(["fetch", "api"]) == "fetch | api"


def test_bm25_ranks_matching_documents_only() -> None:
    documents = [
        ("fetch", Counter({"fetch": 3, "api": 1}), 4),
        ("other", Counter({"css": 2}), 2),
        ("mention", Counter({"fetch": 1, "css": 3}), 4),
    ]

    ranked = bm25_scores(["fetch"], documents)

    assert [key for key, _ in ranked] == ["fetch", "mention"]
    assert ranked[0][1] > ranked[1][1] > 0

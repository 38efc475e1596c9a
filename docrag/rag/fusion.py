from __future__ import annotations

"""Reciprocal Rank Fusion of dense and lexical rankings."""

from dataclasses import replace

from docrag.rag.types import SearchResult

DEFAULT_RRF_K = 60


def rrf_contribution(rank: int, k: int = DEFAULT_RRF_K) -> float:
    """Contribution of a 0-based rank: ``1 / (k + rank + 1)``."""
    return 1.0 / (k + rank + 1)


def reciprocal_rank_fusion(
    dense: list[SearchResult],
    lexical: list[SearchResult],
    k: int = DEFAULT_RRF_K,
) -> list[SearchResult]:
    """Fuse two rankings by summing reciprocal-rank contributions.

    Raw scores from either leg are kept on the fused result; ``score`` holds
    the fused value. The sort is stable, so equal fused scores keep the order
    in which chunks were first seen (dense leg first).
    """
    order: list[str] = []
    fused: dict[str, SearchResult] = {}

    for rank, result in enumerate(dense):
        if result.chunk_id in fused:
            continue
        order.append(result.chunk_id)
        fused[result.chunk_id] = replace(result, score=rrf_contribution(rank, k))

    for rank, result in enumerate(lexical):
        existing = fused.get(result.chunk_id)
        if existing is None:
            order.append(result.chunk_id)
            fused[result.chunk_id] = replace(result, score=rrf_contribution(rank, k))
            continue
        fused[result.chunk_id] = replace(
            existing,
            score=existing.score + rrf_contribution(rank, k),
            lexical_score=result.lexical_score,
        )

    ranked = [fused[chunk_id] for chunk_id in order]
    ranked.sort(key=lambda item: item.score, reverse=True)
    return ranked


def select_results(
    results: list[SearchResult], threshold: float, limit: int
) -> list[SearchResult]:
    """Keep results whose fused score reaches threshold, then truncate to limit."""
    if limit <= 0:
        return []
    return [result for result in results if result.score >= threshold][:limit]

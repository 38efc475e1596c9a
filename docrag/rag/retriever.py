from __future__ import annotations

"""Hybrid dense + lexical retrieval fused with Reciprocal Rank Fusion."""

import asyncio
import logging
from dataclasses import dataclass

from docrag.index.base import IndexStore
from docrag.rag.embeddings import EmbeddingProvider
from docrag.rag.fusion import DEFAULT_RRF_K, reciprocal_rank_fusion, select_results
from docrag.rag.lexical import normalize_query_terms
from docrag.rag.types import SearchResult

logger = logging.getLogger(__name__)


@dataclass
class HybridRetriever:
    """Run dense and lexical search concurrently and fuse the rankings.

    ``candidate_k`` bounds each leg and is larger than typical result limits so
    fusion has enough candidates. ``dense_floor`` drops near-noise vector hits
    before fusion; the caller's threshold applies to the fused score only.
    """
    store: IndexStore
    embedder: EmbeddingProvider
    candidate_k: int = 20
    dense_floor: float = 0.1
    rrf_k: int = DEFAULT_RRF_K

    async def search(
        self,
        query: str,
        limit: int = 5,
        similarity_threshold: float = 0.01,
    ) -> list[SearchResult]:
        dense, lexical = await asyncio.gather(
            self.dense_search(query),
            self.lexical_search(query),
        )
        fused = reciprocal_rank_fusion(dense, lexical, k=self.rrf_k)
        results = select_results(fused, similarity_threshold, limit)
        logger.info(
            "hybrid_search_complete",
            extra={
                "query_length": len(query),
                "dense_results": len(dense),
                "lexical_results": len(lexical),
                "fused_results": len(fused),
                "returned": len(results),
                "threshold": similarity_threshold,
            },
        )
        return results

    async def dense_search(self, query: str) -> list[SearchResult]:
        vector = await self.embedder.embed(query)
        results = await self.store.dense_search(vector, self.candidate_k)
        return [
            result
            for result in results
            if (result.vector_score or 0.0) >= self.dense_floor
        ]

    async def lexical_search(self, query: str) -> list[SearchResult]:
        terms = normalize_query_terms(query)
        if not terms:
            return []
        return await self.store.lexical_search(terms, self.candidate_k)

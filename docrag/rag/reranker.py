from __future__ import annotations

"""Cross-encoder reranking as an optional precision filter."""

import logging
from dataclasses import dataclass, field, replace
from typing import Protocol

import httpx

from docrag.rag.types import SearchResult

logger = logging.getLogger(__name__)


class RerankError(RuntimeError):
    """Raised when the rerank provider fails or returns an invalid payload."""
    pass


@dataclass(frozen=True)
class RerankScore:
    index: int
    relevance_score: float


class RerankProvider(Protocol):
    """Scores documents against a query; results reference inputs by index."""

    async def rerank(self, query: str, documents: list[str]) -> list[RerankScore]:
        raise NotImplementedError


@dataclass
class VoyageRerankClient:
    """Voyage AI rerank endpoint over httpx."""
    api_key: str
    model: str = "rerank-2.5"
    base_url: str = "https://api.voyageai.com/v1"
    timeout: float = 30.0
    client: httpx.AsyncClient | None = field(default=None, repr=False)

    async def rerank(self, query: str, documents: list[str]) -> list[RerankScore]:
        payload = {
            "query": query,
            "documents": documents,
            "model": self.model,
            "top_k": len(documents),
            "return_documents": False,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url.rstrip('/')}/rerank"
        try:
            if self.client is not None:
                response = await self.client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
                    response.raise_for_status()
                    data = response.json()
        except httpx.HTTPError as exc:
            raise RerankError(str(exc)) from exc

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise RerankError("Invalid rerank response")
        scores: list[RerankScore] = []
        for item in items:
            index = item.get("index")
            score = item.get("relevance_score")
            if not isinstance(index, int) or not isinstance(score, (int, float)):
                raise RerankError("Invalid rerank response item")
            scores.append(RerankScore(index=index, relevance_score=float(score)))
        return scores


@dataclass
class Reranker:
    """Re-order retrieved results by cross-encoder relevance.

    Passthrough when no provider is configured. Provider failures are logged
    and the input is returned unchanged; reranking never fails a request.
    """
    provider: RerankProvider | None = None
    cutoff: float = 0.5

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def rerank(self, query: str, results: list[SearchResult]) -> list[SearchResult]:
        if self.provider is None or not results:
            return results
        try:
            scores = await self.provider.rerank(query, [result.content for result in results])
            reranked = self._apply_scores(results, scores)
        except Exception as exc:
            logger.warning(
                "rerank_failed",
                extra={"error": type(exc).__name__, "results": len(results)},
            )
            return results
        kept = [result for result in reranked if (result.rerank_score or 0.0) >= self.cutoff]
        logger.info(
            "rerank_complete",
            extra={
                "input": len(results),
                "kept": len(kept),
                "top_score": reranked[0].rerank_score if reranked else None,
            },
        )
        return kept

    def _apply_scores(
        self, results: list[SearchResult], scores: list[RerankScore]
    ) -> list[SearchResult]:
        reranked: list[SearchResult] = []
        seen: set[int] = set()
        for item in scores:
            if item.index < 0 or item.index >= len(results) or item.index in seen:
                raise RerankError(f"Rerank index out of range: {item.index}")
            seen.add(item.index)
            reranked.append(replace(results[item.index], rerank_score=item.relevance_score))
        reranked.sort(key=lambda result: result.rerank_score or 0.0, reverse=True)
        return reranked

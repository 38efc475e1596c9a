from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from docrag.metadata.usage import TokenUsage, TokenUsageStore, UsageMetadata
from docrag.rag.citations import DEFAULT_DOCS_BASE_URL, Citation, build_citations
from docrag.rag.guardrails import DEFAULT_REFUSAL, require_context
from docrag.rag.llm import LLMProvider, build_context_block, build_rag_prompt
from docrag.rag.reranker import Reranker
from docrag.rag.retriever import HybridRetriever
from docrag.rag.types import SearchResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnswerOptions:
    limit: int = 5
    similarity_threshold: float = 0.01
    model: str | None = None
    rerank: bool = True
    timeout: float | None = None


@dataclass
class RAGResponse:
    answer: str
    sources: list[SearchResult]
    citations: list[Citation]
    usage: TokenUsage | None = None
    refusal_reason: str | None = None


@dataclass
class StreamingAnswer:
    """Sources resolved up front; answer text arrives through ``tokens``."""
    sources: list[SearchResult]
    citations: list[Citation]
    tokens: AsyncIterator[str]
    refusal_reason: str | None = None


async def _single_chunk(text: str) -> AsyncIterator[str]:
    yield text


@dataclass
class RAGPipeline:
    """Retrieve, optionally rerank, then answer from the retrieved context."""
    retriever: HybridRetriever
    llm: LLMProvider
    reranker: Reranker = field(default_factory=Reranker)
    usage_store: TokenUsageStore | None = None
    temperature: float = 0.1
    context_max_chars: int = 12000
    docs_base_url: str = DEFAULT_DOCS_BASE_URL

    async def retrieve(self, question: str, options: AnswerOptions) -> list[SearchResult]:
        if not question.strip():
            raise ValueError("Question must not be empty")
        if options.limit <= 0:
            raise ValueError("limit must be positive")
        results = await self.retriever.search(
            question,
            limit=options.limit,
            similarity_threshold=options.similarity_threshold,
        )
        if options.rerank and self.reranker.enabled:
            results = await self.reranker.rerank(question, results)
        logger.info(
            "retrieval_complete",
            extra={
                "results": len(results),
                "query_length": len(question),
                "reranked": options.rerank and self.reranker.enabled,
            },
        )
        return results

    async def answer(self, question: str, options: AnswerOptions | None = None) -> RAGResponse:
        """Answer a question; no results short-circuits to a fixed reply without an LLM call."""
        options = options or AnswerOptions()
        if options.timeout is not None:
            return await asyncio.wait_for(self._answer(question, options), options.timeout)
        return await self._answer(question, options)

    async def _answer(self, question: str, options: AnswerOptions) -> RAGResponse:
        results = await self.retrieve(question, options)
        guardrail = require_context(results)
        if not guardrail.allowed:
            logger.info("answer_refused", extra={"reason": guardrail.reason})
            return RAGResponse(
                answer=DEFAULT_REFUSAL,
                sources=[],
                citations=[],
                refusal_reason=guardrail.reason,
            )

        prompt = self._build_prompt(question, results)
        result = await self.llm.generate(
            prompt, model=options.model, temperature=self.temperature
        )
        usage = None
        if result.total_tokens is not None:
            usage = TokenUsage(
                operation="generate",
                model=result.model,
                tokens=result.total_tokens,
                metadata=UsageMetadata(
                    chunk_ids=tuple(source.chunk_id for source in results)
                ),
            )
            await self._record_usage(usage)
        logger.info(
            "answer_generated",
            extra={
                "sources": len(results),
                "model": result.model,
                "tokens": result.total_tokens,
            },
        )
        return RAGResponse(
            answer=result.text,
            sources=results,
            citations=build_citations(results, self.docs_base_url),
            usage=usage,
        )

    async def stream(
        self, question: str, options: AnswerOptions | None = None
    ) -> StreamingAnswer:
        """Retrieve now and stream the answer; timeout covers retrieval only."""
        options = options or AnswerOptions()
        if options.timeout is not None:
            results = await asyncio.wait_for(
                self.retrieve(question, options), options.timeout
            )
        else:
            results = await self.retrieve(question, options)
        guardrail = require_context(results)
        if not guardrail.allowed:
            return StreamingAnswer(
                sources=[],
                citations=[],
                tokens=_single_chunk(DEFAULT_REFUSAL),
                refusal_reason=guardrail.reason,
            )
        prompt = self._build_prompt(question, results)
        return StreamingAnswer(
            sources=results,
            citations=build_citations(results, self.docs_base_url),
            tokens=self.llm.stream(prompt, model=options.model, temperature=self.temperature),
        )

    def _build_prompt(self, question: str, results: list[SearchResult]) -> str:
        context = build_context_block(results, max_chars=self.context_max_chars)
        return build_rag_prompt(question, context)

    async def _record_usage(self, usage: TokenUsage) -> None:
        if self.usage_store is None:
            return
        try:
            await asyncio.to_thread(self.usage_store.record, usage)
        except Exception as exc:
            logger.warning("usage_record_failed", extra={"error": str(exc)})

from __future__ import annotations

"""FastAPI application entrypoint for the documentation RAG service."""

import asyncio
import json
import logging
import uuid
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from docrag.app.dependencies import (
    ConfigError,
    get_embedding_config_report,
    get_pipeline,
    get_retriever,
    get_store,
)
from docrag.app.metrics import (
    ANSWER_COUNT,
    PROVIDER_ERRORS,
    RETRIEVED_RESULTS,
    metrics_middleware,
    metrics_response,
)
from docrag.app.schemas import (
    ChatRequest,
    ChatResponse,
    EmbeddingHealthResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    SourceItem,
    StatsResponse,
)
from docrag.app.settings import settings
from docrag.index.base import IndexStore, IndexStoreError
from docrag.rag.citations import Citation
from docrag.rag.embeddings import EmbeddingError
from docrag.rag.llm import LLMError
from docrag.rag.pipeline import AnswerOptions, RAGPipeline
from docrag.rag.retriever import HybridRetriever
from docrag.rag.types import SearchResult

logger = logging.getLogger(__name__)

app = FastAPI(title="Docs RAG", version="0.1.0")


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def _safe_error_message(exc: Exception) -> str:
    """Return a safe error type name for logs and responses."""
    return type(exc).__name__


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _options(limit: int | None, threshold: float | None, model: str | None, rerank: bool) -> AnswerOptions:
    return AnswerOptions(
        limit=limit or settings.default_limit,
        similarity_threshold=settings.similarity_threshold if threshold is None else threshold,
        model=model,
        rerank=rerank,
        timeout=settings.request_timeout,
    )


def _source_items(citations: list[Citation]) -> list[SourceItem]:
    return [
        SourceItem(
            id=str(idx),
            title=citation.title,
            snippet=citation.snippet,
            url=citation.url,
            similarity=citation.score,
            source_file_path=citation.source_file_path,
            chunk_id=citation.chunk_id,
        )
        for idx, citation in enumerate(citations, start=1)
    ]


def _result_item(result: SearchResult) -> SearchResultItem:
    return SearchResultItem(
        chunk_id=result.chunk_id,
        title=result.document_title,
        source_file_path=result.source_file_path,
        slug=result.document_slug,
        heading=result.heading_context,
        content=result.content,
        score=result.score,
        vector_score=result.vector_score,
        lexical_score=result.lexical_score,
        rerank_score=result.rerank_score,
    )


@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("config_error", extra={"request_id": _request_id(request), "detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(EmbeddingError)
async def embedding_error_handler(request: Request, exc: EmbeddingError) -> JSONResponse:
    PROVIDER_ERRORS.labels("embedding").inc()
    logger.error(
        "embedding_failed",
        extra={"request_id": _request_id(request), "detail": _safe_error_message(exc)},
    )
    return JSONResponse(status_code=502, content={"detail": "Embedding provider failed"})


@app.exception_handler(LLMError)
async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
    PROVIDER_ERRORS.labels("llm").inc()
    logger.error(
        "llm_failed",
        extra={"request_id": _request_id(request), "detail": _safe_error_message(exc)},
    )
    return JSONResponse(status_code=502, content={"detail": "LLM provider failed"})


@app.exception_handler(IndexStoreError)
async def index_error_handler(request: Request, exc: IndexStoreError) -> JSONResponse:
    logger.error(
        "index_unavailable",
        extra={"request_id": _request_id(request), "detail": str(exc)},
    )
    return JSONResponse(status_code=503, content={"detail": "Index unavailable"})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    logger.warning(
        "invalid_request",
        extra={"request_id": _request_id(request), "detail": str(exc)},
    )
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(asyncio.TimeoutError)
async def timeout_handler(request: Request, exc: asyncio.TimeoutError) -> JSONResponse:
    logger.warning("request_timeout", extra={"request_id": _request_id(request)})
    return JSONResponse(status_code=504, content={"detail": "Request timed out"})


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Simple health probe for uptime checks."""
    return {"status": "ok"}


@app.get("/stats", response_model=StatsResponse)
async def stats(store: IndexStore = Depends(get_store)) -> StatsResponse:
    """Return document and chunk counts for the index."""
    return StatsResponse(**(await store.stats()))


@app.get("/health/embeddings", response_model=EmbeddingHealthResponse)
async def embedding_health() -> EmbeddingHealthResponse:
    """Return embedding configuration health checks."""
    report = get_embedding_config_report()
    return EmbeddingHealthResponse(**report.__dict__)


@app.post("/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    http_request: Request,
    retriever: HybridRetriever = Depends(get_retriever),
) -> SearchResponse:
    """Hybrid retrieval without answer generation."""
    request_id = _request_id(http_request)
    options = _options(request.limit, request.threshold, None, False)
    coro = retriever.search(
        request.query, limit=options.limit, similarity_threshold=options.similarity_threshold
    )
    if options.timeout is not None:
        results = await asyncio.wait_for(coro, options.timeout)
    else:
        results = await coro
    RETRIEVED_RESULTS.observe(len(results))
    logger.info("search_complete", extra={"request_id": request_id, "results": len(results)})
    return SearchResponse(results=[_result_item(result) for result in results], request_id=request_id)


@app.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    http_request: Request,
    pipeline: RAGPipeline = Depends(get_pipeline),
) -> ChatResponse:
    """Answer a question from the indexed documentation."""
    request_id = _request_id(http_request)
    options = _options(request.limit, request.threshold, request.model, request.rerank)
    response = await pipeline.answer(request.message, options)
    RETRIEVED_RESULTS.observe(len(response.sources))
    ANSWER_COUNT.labels("refused" if response.refusal_reason else "answered").inc()
    logger.info(
        "chat_complete",
        extra={
            "request_id": request_id,
            "sources": len(response.sources),
            "refusal_reason": response.refusal_reason,
        },
    )
    return ChatResponse(
        content=response.answer,
        sources=_source_items(response.citations),
        tokens_used=response.usage.tokens if response.usage else None,
        refusal_reason=response.refusal_reason,
        request_id=request_id,
    )


@app.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    pipeline: RAGPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """Stream an answer as newline-delimited JSON events.

    The first event carries the sources, followed by ``token`` events and a
    final ``done`` event. Provider failures after streaming starts are
    reported as an ``error`` event.
    """
    request_id = _request_id(http_request)
    options = _options(request.limit, request.threshold, request.model, request.rerank)
    streaming = await pipeline.stream(request.message, options)
    ANSWER_COUNT.labels("refused" if streaming.refusal_reason else "answered").inc()

    async def events() -> AsyncIterator[str]:
        sources = [item.model_dump() for item in _source_items(streaming.citations)]
        yield json.dumps({"type": "sources", "sources": sources, "request_id": request_id}) + "\n"
        try:
            async for token in streaming.tokens:
                yield json.dumps({"type": "token", "content": token}) + "\n"
        except LLMError as exc:
            PROVIDER_ERRORS.labels("llm").inc()
            logger.error(
                "llm_stream_failed",
                extra={"request_id": request_id, "detail": _safe_error_message(exc)},
            )
            yield json.dumps({"type": "error", "detail": "LLM provider failed"}) + "\n"
            return
        yield json.dumps({"type": "done"}) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")

from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from docrag.app.dependencies import (
    get_pipeline,
    get_retriever,
    get_store,
    reset_pipeline_cache,
    validate_credentials,
)
from docrag.app.main import app
from docrag.app.settings import settings
from docrag.index.indexer import EmbeddingIndexer
from docrag.index.memory import InMemoryIndexStore
from docrag.loaders.chunking import Chunker
from docrag.loaders.markdown import parse_markdown
from docrag.rag.embeddings import HashEmbedder
from docrag.rag.guardrails import DEFAULT_REFUSAL
from docrag.rag.llm import LLMError, LLMResult
from docrag.rag.pipeline import RAGPipeline
from docrag.rag.retriever import HybridRetriever

pytestmark = pytest.mark.anyio

FETCH_DOC = (
    "---\ntitle: Fetch API\nslug: Web/API/Fetch\n---\n"
    "# Fetch API\n\nThe fetch function starts a request and returns a promise.\n"
)


def get_client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture
async def indexed_app(fake_llm, anyio_backend):
    reset_pipeline_cache()
    store = InMemoryIndexStore(dimension=64)
    embedder = HashEmbedder(dimension=64)
    chunks = Chunker().chunk(parse_markdown(FETCH_DOC, "web/api/fetch/index.md"))
    await EmbeddingIndexer(store, embedder, use_tiktoken=False).index(chunks)
    retriever = HybridRetriever(store=store, embedder=embedder)
    pipeline = RAGPipeline(retriever=retriever, llm=fake_llm)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_retriever] = lambda: retriever
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield fake_llm
    app.dependency_overrides.clear()


async def test_health_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


async def test_stats_endpoint(indexed_app) -> None:
    async with get_client() as client:
        response = await client.get("/stats")
    assert response.status_code == 200
    assert response.json() == {
        "backend": "memory",
        "document_count": 1,
        "chunk_count": 1,
        "embedded_count": 1,
        "embedding_dimension": 64,
    }


async def test_embedding_health_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/health/embeddings")
    assert response.status_code == 200
    data = response.json()
    assert data["provider"] == "hash"
    assert data["ok"] is True


async def test_search_returns_fused_results(indexed_app) -> None:
    async with get_client() as client:
        response = await client.post("/search", json={"query": "fetch request", "threshold": 0.0})
    assert response.status_code == 200
    payload = response.json()
    assert payload["request_id"]
    assert payload["results"][0]["title"] == "Fetch API"
    assert payload["results"][0]["slug"] == "Web/API/Fetch"


async def test_chat_answers_with_sources(indexed_app) -> None:
    async with get_client() as client:
        response = await client.post(
            "/chat",
            json={"message": "fetch request promise", "threshold": 0.0},
            headers={"x-request-id": "req-1"},
        )
    assert response.status_code == 200
    payload = response.json()
    assert payload["content"] == indexed_app.answer
    assert payload["request_id"] == "req-1"
    assert payload["tokens_used"] == 42
    assert payload["sources"][0]["id"] == "1"
    assert payload["sources"][0]["url"] == "https://developer.mozilla.org/en-US/docs/Web/API/Fetch#fetch_api"


async def test_chat_refuses_without_context(indexed_app) -> None:
    async with get_client() as client:
        response = await client.post("/chat", json={"message": "?!"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["content"] == DEFAULT_REFUSAL
    assert payload["sources"] == []
    assert payload["refusal_reason"] == "no_context"
    assert indexed_app.calls == 0


async def test_chat_stream_emits_ndjson_events(indexed_app) -> None:
    async with get_client() as client:
        response = await client.post(
            "/chat/stream", json={"message": "fetch request", "threshold": 0.0}
        )
    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events[0]["type"] == "sources"
    assert events[0]["sources"][0]["title"] == "Fetch API"
    assert events[-1] == {"type": "done"}
    text = "".join(event["content"] for event in events if event["type"] == "token")
    assert text.strip() == indexed_app.answer


async def test_chat_missing_keys_returns_500() -> None:
    def missing_keys() -> RAGPipeline:
        validate_credentials(replace(settings, llm_provider="openai", openai_api_key=None))
        raise AssertionError("credentials should be rejected")

    app.dependency_overrides[get_pipeline] = missing_keys
    try:
        async with get_client() as client:
            response = await client.post("/chat", json={"message": "hello"})
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 500
    assert response.json()["detail"] == "Missing required API keys: OPENAI_API_KEY"


async def test_chat_llm_failure_returns_502(indexed_app) -> None:
    class FailingLLM:
        model = "failing"

        async def generate(self, prompt: str, model: str | None = None, temperature: float = 0.1) -> LLMResult:
            raise LLMError("upstream 503")

    retriever = app.dependency_overrides[get_retriever]()
    app.dependency_overrides[get_pipeline] = lambda: RAGPipeline(retriever=retriever, llm=FailingLLM())
    async with get_client() as client:
        response = await client.post("/chat", json={"message": "fetch request", "threshold": 0.0})
    assert response.status_code == 502
    assert response.json() == {"detail": "LLM provider failed"}


async def test_chat_rejects_empty_message() -> None:
    async with get_client() as client:
        response = await client.post("/chat", json={"message": ""})
    assert response.status_code == 422


async def test_blank_queries_are_rejected_as_invalid() -> None:
    async with get_client() as client:
        chat = await client.post("/chat", json={"message": "   "})
        search = await client.post("/search", json={"query": "\t \n"})
    assert chat.status_code == 422
    assert search.status_code == 422


async def test_metrics_endpoint() -> None:
    async with get_client() as client:
        await client.get("/health")
        response = await client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text

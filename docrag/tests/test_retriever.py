from __future__ import annotations

import pytest

from docrag.index.indexer import EmbeddingIndexer
from docrag.index.memory import InMemoryIndexStore
from docrag.loaders.chunking import Chunker
from docrag.loaders.markdown import parse_markdown
from docrag.rag.embeddings import EmbeddingBatch, EmbeddingError, HashEmbedder
from docrag.rag.retriever import HybridRetriever

pytestmark = pytest.mark.anyio

DOCS = {
    "web/api/fetch/index.md": (
        "---\ntitle: Fetch API\nslug: Web/API/Fetch\n---\n"
        "# Fetch API\n\n## Basic usage\n\nThe fetch function starts a request and returns a promise.\n"
    ),
    "css/grid.md": "# CSS Grid\n\nGrid layout arranges elements in rows and columns.\n",
}


async def build_index(dimension: int = 64) -> tuple[InMemoryIndexStore, HashEmbedder]:
    store = InMemoryIndexStore(dimension=dimension)
    embedder = HashEmbedder(dimension=dimension)
    chunker = Chunker()
    chunks = []
    for path, text in DOCS.items():
        chunks.extend(chunker.chunk(parse_markdown(text, path)))
    report = await EmbeddingIndexer(store, embedder, use_tiktoken=False).index(chunks)
    assert report.ok
    return store, embedder


async def test_hybrid_search_ranks_matching_document_first() -> None:
    store, embedder = await build_index()
    retriever = HybridRetriever(store=store, embedder=embedder)

    results = await retriever.search("fetch request promise", limit=5, similarity_threshold=0.0)

    assert results
    top = results[0]
    assert top.source_file_path == "web/api/fetch/index.md"
    assert top.document_title == "Fetch API"
    assert top.heading_context == "Fetch API"
    assert top.vector_score is not None
    assert top.lexical_score is not None
    assert top.score == pytest.approx(2 / 61)


async def test_threshold_applies_to_fused_score() -> None:
    store, embedder = await build_index()
    retriever = HybridRetriever(store=store, embedder=embedder)

    results = await retriever.search("fetch request promise", limit=5, similarity_threshold=0.02)

    assert [result.source_file_path for result in results] == ["web/api/fetch/index.md"]


async def test_punctuation_only_query_returns_nothing() -> None:
    store, embedder = await build_index()
    retriever = HybridRetriever(store=store, embedder=embedder)

    assert await retriever.search("?!", limit=5, similarity_threshold=0.0) == []


async def test_dense_leg_error_propagates() -> None:
    class BrokenEmbedder:
        dimension = 64
        model = "broken"

        async def embed(self, text: str) -> list[float]:
            raise EmbeddingError("provider unreachable")

        async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
            raise EmbeddingError("provider unreachable")

    store, _ = await build_index()
    retriever = HybridRetriever(store=store, embedder=BrokenEmbedder())

    with pytest.raises(EmbeddingError):
        await retriever.search("fetch", limit=5)

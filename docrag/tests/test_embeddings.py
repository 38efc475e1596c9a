from __future__ import annotations

import json
import math

import httpx
import pytest

from docrag.rag.embeddings import (
    EmbeddingConfigError,
    EmbeddingError,
    HashEmbedder,
    VoyageEmbedder,
    build_embedding_config_report,
    validate_vector,
)


@pytest.mark.anyio
async def test_hash_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashEmbedder(dimension=32)

    first = await embedder.embed("Fetch API basics")
    second = await embedder.embed("Fetch API basics")
    batch = await embedder.embed_batch(["Fetch API basics", ""])

    assert first == second == batch.vectors[0]
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0)
    assert batch.vectors[1] == [0.0] * 32
    assert batch.total_tokens == 3


def test_validate_vector_rejects_bad_values() -> None:
    with pytest.raises(EmbeddingError):
        validate_vector([0.1, 0.2], 3)
    with pytest.raises(EmbeddingError):
        validate_vector([0.1, float("nan"), 0.3], 3)
    with pytest.raises(EmbeddingError):
        validate_vector([0.1, "x", 0.3], 3)  # type: ignore[list-item]
    assert validate_vector([1, 0, 0], 3) == [1.0, 0.0, 0.0]


def test_voyage_embedder_requires_key() -> None:
    with pytest.raises(EmbeddingConfigError):
        VoyageEmbedder(api_key="")


@pytest.mark.anyio
async def test_voyage_embedder_batches_documents() -> None:
    captured: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0, 0.0]},
                    {"index": 0, "embedding": [1.0, 0.0, 0.0]},
                ],
                "usage": {"total_tokens": 17},
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = VoyageEmbedder(api_key="vk", dimension=3, client=client)
        batch = await embedder.embed_batch(["first", "second"])

    assert batch.vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    assert batch.total_tokens == 17
    assert captured == [
        {"input": ["first", "second"], "model": "voyage-code-3", "input_type": "document"}
    ]


@pytest.mark.anyio
async def test_voyage_embedder_query_input_type_and_dimension_check() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["input_type"] == "query"
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.5, 0.5]}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = VoyageEmbedder(api_key="vk", dimension=3, client=client)
        with pytest.raises(EmbeddingError):
            await embedder.embed("how do I fetch?")


@pytest.mark.anyio
async def test_voyage_embedder_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"detail": "boom"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = VoyageEmbedder(api_key="vk", dimension=3, client=client)
        with pytest.raises(EmbeddingError):
            await embedder.embed_batch(["text"])


def test_embedding_config_report() -> None:
    ok = build_embedding_config_report("voyage", "voyage-code-3", 1024, api_key="vk")
    mismatch = build_embedding_config_report("voyage", "voyage-code-3", 256, api_key="vk")
    missing_key = build_embedding_config_report("voyage", "voyage-code-3", 1024)
    unknown = build_embedding_config_report("openai", None, 1024)

    assert ok.ok and ok.status == "ok"
    assert not mismatch.ok and mismatch.action == "Set EMBEDDING_DIMENSION to 1024."
    assert not missing_key.ok
    assert not unknown.ok
    assert build_embedding_config_report("hash", None, 64).ok


@pytest.mark.anyio
async def test_voyage_embedder_non_json_body_raises_embedding_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = VoyageEmbedder(api_key="vk", dimension=3, client=client)
        with pytest.raises(EmbeddingError):
            await embedder.embed_batch(["text"])


@pytest.mark.anyio
async def test_voyage_embedder_malformed_items_raise_embedding_error() -> None:
    payloads = [
        {"data": ["not-an-object"]},
        {"data": [{"index": "0", "embedding": [1.0, 0.0, 0.0]}]},
    ]

    for payload in payloads:
        transport = httpx.MockTransport(lambda request, body=payload: httpx.Response(200, json=body))
        async with httpx.AsyncClient(transport=transport) as client:
            embedder = VoyageEmbedder(api_key="vk", dimension=3, client=client)
            with pytest.raises(EmbeddingError):
                await embedder.embed_batch(["text"])

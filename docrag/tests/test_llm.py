from __future__ import annotations

import json

import httpx
import pytest

from docrag.rag.llm import (
    LLMError,
    OllamaChatClient,
    OpenAIChatClient,
    build_context_block,
    build_llm_client,
    build_rag_prompt,
)
from docrag.rag.types import SearchResult


def _result(idx: int, content: str = "fetch() returns a promise.", **kwargs) -> SearchResult:
    values = {
        "chunk_id": f"fetch.md_chunk_{idx}",
        "document_title": "Fetch API",
        "source_file_path": "fetch.md",
        "document_slug": "Web/API/Fetch",
        "content": content,
        "heading_context": "Basic usage",
        "score": 0.0328,
    }
    values.update(kwargs)
    return SearchResult(**values)


def test_context_block_tags_each_document() -> None:
    block = build_context_block([_result(0), _result(1, heading_context=None, rerank_score=0.87)])

    assert block.startswith("Here are the relevant documents to help answer the question:")
    assert '<document index="1">' in block
    assert '<document index="2">' in block
    assert "<section>Basic usage</section>" in block
    assert block.count("<section>") == 1
    assert "<similarity>3.3%</similarity>" in block
    assert "<similarity>87.0%</similarity>" in block
    assert "<content><![CDATA[fetch() returns a promise.]]></content>" in block


def test_context_block_respects_character_budget() -> None:
    results = [_result(idx, content="x" * 500) for idx in range(10)]

    block = build_context_block(results, max_chars=1000)

    assert len(block) <= 1000
    assert '<document index="1">' in block
    assert '<document index="10">' not in block


def test_empty_context_block() -> None:
    assert build_context_block([]) == "No relevant context found."


def test_rag_prompt_layout() -> None:
    prompt = build_rag_prompt("How do I fetch?", "CONTEXT", system_prompt="SYSTEM")

    assert prompt == "SYSTEM\n\nContext Documents:\nCONTEXT\n\nQuestion: How do I fetch?\n\nAnswer:"


@pytest.mark.anyio
async def test_openai_generate_posts_chat_completion() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-mini",
                "choices": [{"message": {"content": " Use fetch(). "}}],
                "usage": {"total_tokens": 120},
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        llm = OpenAIChatClient(api_key="sk", client=client)
        result = await llm.generate("prompt")

    assert result.text == "Use fetch()."
    assert result.total_tokens == 120
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    body = captured["body"]
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.1
    assert body["messages"] == [{"role": "user", "content": "prompt"}]


@pytest.mark.anyio
async def test_openai_stream_reads_sse_deltas() -> None:
    events = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Use "}}]},
        {"choices": [{"delta": {"content": "fetch()."}}]},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        llm = OpenAIChatClient(api_key="sk", client=client)
        tokens = [token async for token in llm.stream("prompt")]

    assert tokens == ["Use ", "fetch()."]


@pytest.mark.anyio
async def test_openai_http_error_raises_llm_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "overloaded"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        llm = OpenAIChatClient(api_key="sk", client=client)
        with pytest.raises(LLMError):
            await llm.generate("prompt")


@pytest.mark.anyio
async def test_ollama_generate_and_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert request.url.path == "/api/chat"
        if payload["stream"]:
            lines = [
                {"message": {"content": "Use "}, "done": False},
                {"message": {"content": "fetch()."}, "done": False},
                {"message": {"content": ""}, "done": True},
            ]
            return httpx.Response(200, text="\n".join(json.dumps(line) for line in lines))
        return httpx.Response(
            200,
            json={
                "message": {"content": "Use fetch()."},
                "prompt_eval_count": 30,
                "eval_count": 12,
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        llm = OllamaChatClient(client=client)
        result = await llm.generate("prompt", model="llama3.2")
        tokens = [token async for token in llm.stream("prompt")]

    assert result.text == "Use fetch()."
    assert result.model == "llama3.2"
    assert result.total_tokens == 42
    assert tokens == ["Use ", "fetch()."]


def test_build_llm_client() -> None:
    common = {
        "openai_base_url": "https://api.openai.com/v1/",
        "openai_model": "gpt-4o-mini",
        "ollama_base_url": "http://localhost:11434/",
        "ollama_model": "llama3.1",
        "max_tokens": 256,
        "timeout": 10.0,
    }

    openai = build_llm_client("OpenAI", openai_api_key="sk", **common)
    ollama = build_llm_client("ollama", openai_api_key=None, **common)

    assert isinstance(openai, OpenAIChatClient)
    assert openai.base_url == "https://api.openai.com/v1"
    assert isinstance(ollama, OllamaChatClient)
    assert ollama.max_tokens == 256
    with pytest.raises(LLMError):
        build_llm_client("openai", openai_api_key=None, **common)
    with pytest.raises(LLMError):
        build_llm_client("anthropic", openai_api_key="sk", **common)


@pytest.mark.anyio
async def test_non_json_responses_raise_llm_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(LLMError):
            await OpenAIChatClient(api_key="sk", client=client).generate("prompt")
        with pytest.raises(LLMError):
            await OllamaChatClient(client=client).generate("prompt")


@pytest.mark.anyio
async def test_openai_malformed_choices_raise_llm_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": ["oops"]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(LLMError):
            await OpenAIChatClient(api_key="sk", client=client).generate("prompt")

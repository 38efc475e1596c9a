from __future__ import annotations

"""LLM chat clients and RAG prompt construction."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

from docrag.rag.types import SearchResult


class LLMError(RuntimeError):
    """Raised when LLM requests fail or responses are invalid."""
    pass


logger = logging.getLogger(__name__)


_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that answers questions based on the provided "
    "context documents. Please follow these guidelines:\n\n"
    "1. Answer the question using primarily the information from the provided context documents\n"
    "2. If the context doesn't contain enough information to fully answer the question, "
    "clearly state what information is missing\n"
    "3. Be specific and cite which documents you're referencing when possible\n"
    "4. If the context is contradictory or unclear, acknowledge this\n"
    "5. Keep your answer concise but comprehensive\n"
    "6. Use markdown formatting for better readability\n"
    "7. Stick to the provided context as closely as possible and do NOT add any other information"
)


def base_system_prompt() -> str:
    """Return the default system prompt for answer generation."""
    return _SYSTEM_PROMPT


def build_context_block(results: list[SearchResult], max_chars: int = 12000) -> str:
    """Format retrieved chunks as tagged documents for the prompt.

    Each document carries its title, optional section heading, similarity as a
    percentage (rerank score when present, fused score otherwise) and content.
    Documents past the character budget are dropped; the one that crosses it
    is truncated.
    """
    if not results:
        return "No relevant context found."
    parts = ["Here are the relevant documents to help answer the question:\n\n"]
    total = len(parts[0])
    for idx, result in enumerate(results, start=1):
        similarity = result.rerank_score if result.rerank_score is not None else result.score
        header = f'<document index="{idx}">\n  <title>{result.document_title}</title>\n'
        if result.heading_context:
            header += f"  <section>{result.heading_context}</section>\n"
        header += f"  <similarity>{similarity * 100:.1f}%</similarity>\n"
        content = result.content
        footer = "]]></content>\n</document>\n\n"
        size = len(header) + len("  <content><![CDATA[") + len(content) + len(footer)
        if total + size > max_chars:
            remaining = max_chars - total - (size - len(content))
            if remaining <= 0:
                break
            content = content[:remaining]
        snippet = f"{header}  <content><![CDATA[{content}{footer}"
        parts.append(snippet)
        total += len(snippet)
        if total >= max_chars:
            break
    return "".join(parts)


def build_rag_prompt(question: str, context: str, system_prompt: str | None = None) -> str:
    """Combine system instructions, context documents and the question."""
    return (
        f"{system_prompt or _SYSTEM_PROMPT}\n\n"
        f"Context Documents:\n{context}\n\n"
        f"Question: {question}\n\n"
        "Answer:"
    )


@dataclass(frozen=True)
class LLMResult:
    """Generated text and token accounting."""
    text: str
    model: str
    total_tokens: int | None = None


class LLMProvider(Protocol):
    """Protocol for chat providers used downstream of retrieval."""
    model: str

    async def generate(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> LLMResult:
        raise NotImplementedError

    def stream(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> AsyncIterator[str]:
        raise NotImplementedError


@dataclass
class OpenAIChatClient:
    """LLM client backed by OpenAI chat completions."""
    api_key: str
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    timeout: float = 60.0
    client: httpx.AsyncClient | None = field(default=None, repr=False)

    def _payload(self, prompt: str, model: str | None, temperature: float, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            payload["stream"] = True
        return payload

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def generate(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> LLMResult:
        """Generate a completion for the prompt."""
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        payload = self._payload(prompt, model, temperature, stream=False)
        try:
            if self.client is not None:
                response = await self.client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
                    response.raise_for_status()
                    data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc
        except ValueError as exc:
            raise LLMError("OpenAI response is not valid JSON") from exc

        if not isinstance(data, dict):
            raise LLMError("Invalid OpenAI response")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise LLMError("Invalid OpenAI response")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise LLMError("Invalid OpenAI response content")
        usage = data.get("usage")
        total_tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return LLMResult(
            text=content.strip(),
            model=str(data.get("model") or payload["model"]),
            total_tokens=total_tokens if isinstance(total_tokens, int) else None,
        )

    async def stream(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> AsyncIterator[str]:
        """Yield text deltas from a streamed completion."""
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        payload = self._payload(prompt, model, temperature, stream=True)
        try:
            if self.client is not None:
                async for delta in self._stream_lines(self.client, url, payload):
                    yield delta
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    async for delta in self._stream_lines(client, url, payload):
                        yield delta
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc

    async def _stream_lines(
        self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]
    ) -> AsyncIterator[str]:
        async with client.stream("POST", url, json=payload, headers=self._headers()) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    event = json.loads(data)
                except json.JSONDecodeError as exc:
                    raise LLMError("Invalid OpenAI stream event") from exc
                if not isinstance(event, dict):
                    raise LLMError("Invalid OpenAI stream event")
                for choice in event.get("choices") or []:
                    delta = choice.get("delta") if isinstance(choice, dict) else None
                    content = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(content, str) and content:
                        yield content


@dataclass
class OllamaChatClient:
    """LLM client backed by the Ollama chat API."""
    base_url: str = "http://localhost:11434"
    model: str = "llama3.1"
    max_tokens: int = 1024
    timeout: float = 120.0
    client: httpx.AsyncClient | None = field(default=None, repr=False)

    def _payload(self, prompt: str, model: str | None, temperature: float, stream: bool) -> dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
            "options": {
                "temperature": temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def generate(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> LLMResult:
        """Generate a completion for the prompt."""
        url = f"{self.base_url.rstrip('/')}/api/chat"
        payload = self._payload(prompt, model, temperature, stream=False)
        try:
            if self.client is not None:
                response = await self.client.post(url, json=payload)
                response.raise_for_status()
                data = response.json()
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
                    response.raise_for_status()
                    data = response.json()
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc
        except ValueError as exc:
            raise LLMError("Ollama response is not valid JSON") from exc
        if not isinstance(data, dict):
            raise LLMError("Invalid LLM response")
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise LLMError("Invalid LLM response")
        prompt_tokens = data.get("prompt_eval_count")
        output_tokens = data.get("eval_count")
        total = None
        if isinstance(prompt_tokens, int) and isinstance(output_tokens, int):
            total = prompt_tokens + output_tokens
        return LLMResult(text=content.strip(), model=payload["model"], total_tokens=total)

    async def stream(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> AsyncIterator[str]:
        """Yield text deltas from a streamed chat response (NDJSON)."""
        url = f"{self.base_url.rstrip('/')}/api/chat"
        payload = self._payload(prompt, model, temperature, stream=True)
        try:
            if self.client is not None:
                async for delta in self._stream_lines(self.client, url, payload):
                    yield delta
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    async for delta in self._stream_lines(client, url, payload):
                        yield delta
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc

    async def _stream_lines(
        self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]
    ) -> AsyncIterator[str]:
        async with client.stream("POST", url, json=payload) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise LLMError("Invalid Ollama stream event") from exc
                if not isinstance(event, dict):
                    raise LLMError("Invalid Ollama stream event")
                message = event.get("message")
                delta = message.get("content") if isinstance(message, dict) else None
                if isinstance(delta, str) and delta:
                    yield delta
                if event.get("done"):
                    break


def build_llm_client(
    provider: str,
    *,
    openai_api_key: str | None,
    openai_base_url: str,
    openai_model: str,
    ollama_base_url: str,
    ollama_model: str,
    max_tokens: int,
    timeout: float,
) -> OpenAIChatClient | OllamaChatClient:
    """Factory for LLM clients based on provider."""
    normalized = provider.strip().lower()
    if normalized == "openai":
        if not openai_api_key:
            raise LLMError("OPENAI_API_KEY is required for OpenAI provider")
        return OpenAIChatClient(
            api_key=openai_api_key,
            base_url=openai_base_url.rstrip("/"),
            model=openai_model,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    if normalized == "ollama":
        return OllamaChatClient(
            base_url=ollama_base_url.rstrip("/"),
            model=ollama_model,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise LLMError(f"Unsupported LLM provider: {provider}")

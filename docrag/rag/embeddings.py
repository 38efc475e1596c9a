from __future__ import annotations

"""Embedding providers and configuration validation."""

import asyncio
import hashlib
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

_TOKEN_RE = re.compile(r"[a-z0-9]+")

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when embeddings fail or are invalid."""
    pass


class EmbeddingConfigError(RuntimeError):
    """Raised when embedding configuration is invalid."""
    pass


@dataclass(frozen=True)
class EmbeddingBatch:
    """Vectors for a batch of inputs plus the provider-reported token count."""
    vectors: list[list[float]]
    total_tokens: int | None = None


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""
    dimension: int
    model: str

    async def embed(self, text: str) -> list[float]:
        """Return a query embedding for the provided text."""
        raise NotImplementedError

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """Return document embeddings for the provided texts, in order."""
        raise NotImplementedError


def validate_vector(vector: list[float], dimension: int) -> list[float]:
    """Validate and normalize embedding vectors."""
    if len(vector) != dimension:
        raise EmbeddingError(
            f"Embedding dimension mismatch: expected {dimension}, got {len(vector)}"
        )
    cleaned: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value")
        if not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-finite value")
        cleaned.append(float(value))
    return cleaned


@dataclass
class HashEmbedder:
    """Deterministic hash-based embedder for testing or offline use."""
    dimension: int = 1024
    model: str = "hash"

    async def embed(self, text: str) -> list[float]:
        """Embed text using token hashing and L2 normalization."""
        return self._embed_sync(text)

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        vectors = [self._embed_sync(text) for text in texts]
        tokens = sum(len(_TOKEN_RE.findall(text.lower())) for text in texts)
        return EmbeddingBatch(vectors=vectors, total_tokens=tokens)

    def _embed_sync(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return validate_vector([0.0] * self.dimension, self.dimension)
        vector = [0.0] * self.dimension
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dimension
            vector[idx] += 1.0
        return validate_vector(self._l2_normalize(vector), self.dimension)

    def _l2_normalize(self, vector: list[float]) -> list[float]:
        """Normalize vector magnitude to 1.0."""
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0.0:
            return vector
        return [value / norm for value in vector]


def resolve_voyage_dimension(model: str) -> int | None:
    """Return the default output dimension for a Voyage embedding model."""
    mapping = {
        "voyage-code-3": 1024,
        "voyage-3": 1024,
        "voyage-3-large": 1024,
        "voyage-3.5": 1024,
        "voyage-3-lite": 512,
        "voyage-3.5-lite": 1024,
        "voyage-code-2": 1536,
    }
    return mapping.get(model)


@dataclass(frozen=True)
class EmbeddingConfigReport:
    """Validation report for embedding configuration."""
    provider: str
    model: str | None
    configured_dimension: int
    expected_dimension: int | None
    ok: bool
    status: str
    detail: str | None = None
    action: str | None = None


def build_embedding_config_report(
    provider: str, model: str | None, dimension: int, api_key: str | None = None
) -> EmbeddingConfigReport:
    """Build a validation report for embedding settings."""
    normalized = provider.lower().strip()

    if normalized in {"", "hash"}:
        if dimension <= 0:
            return EmbeddingConfigReport(
                provider="hash",
                model=None,
                configured_dimension=dimension,
                expected_dimension=None,
                ok=False,
                status="error",
                detail="EMBEDDING_DIMENSION must be greater than zero for hash embeddings.",
                action="Set EMBEDDING_DIMENSION to a positive integer.",
            )
        return EmbeddingConfigReport(
            provider="hash",
            model=None,
            configured_dimension=dimension,
            expected_dimension=dimension,
            ok=True,
            status="ok",
        )

    if normalized == "voyage":
        if not api_key:
            return EmbeddingConfigReport(
                provider="voyage",
                model=model,
                configured_dimension=dimension,
                expected_dimension=None,
                ok=False,
                status="error",
                detail="VOYAGE_API_KEY is required for Voyage embeddings.",
                action="Set VOYAGE_API_KEY in .env.",
            )
        if not model:
            return EmbeddingConfigReport(
                provider="voyage",
                model=None,
                configured_dimension=dimension,
                expected_dimension=None,
                ok=False,
                status="error",
                detail="VOYAGE_EMBEDDING_MODEL is required for Voyage embeddings.",
                action="Set VOYAGE_EMBEDDING_MODEL in .env.",
            )
        expected = resolve_voyage_dimension(model)
        if expected is not None and dimension != expected:
            return EmbeddingConfigReport(
                provider="voyage",
                model=model,
                configured_dimension=dimension,
                expected_dimension=expected,
                ok=False,
                status="error",
                detail="EMBEDDING_DIMENSION does not match the Voyage model dimension.",
                action=f"Set EMBEDDING_DIMENSION to {expected}.",
            )
        if expected is None:
            return EmbeddingConfigReport(
                provider="voyage",
                model=model,
                configured_dimension=dimension,
                expected_dimension=None,
                ok=True,
                status="warning",
                detail="Model dimension cannot be auto-validated. Confirm EMBEDDING_DIMENSION manually.",
            )
        return EmbeddingConfigReport(
            provider="voyage",
            model=model,
            configured_dimension=dimension,
            expected_dimension=expected,
            ok=True,
            status="ok",
        )

    return EmbeddingConfigReport(
        provider=normalized,
        model=model,
        configured_dimension=dimension,
        expected_dimension=None,
        ok=False,
        status="error",
        detail="Unsupported embedding provider.",
        action="Set EMBEDDING_PROVIDER to hash or voyage.",
    )


@dataclass
class VoyageEmbedder:
    """Embedding provider using the Voyage AI embeddings API over httpx.

    Requests are spaced at least ``min_interval`` seconds apart to stay under
    the provider's rate limit. A client may be injected; otherwise one is
    opened per request.
    """
    api_key: str
    model: str = "voyage-code-3"
    dimension: int = 1024
    base_url: str = "https://api.voyageai.com/v1"
    timeout: float = 30.0
    min_interval: float = 0.0
    client: httpx.AsyncClient | None = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _last_request: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate Voyage configuration."""
        if not self.api_key:
            raise EmbeddingConfigError("VOYAGE_API_KEY is required for VoyageEmbedder")
        if not self.model:
            raise EmbeddingConfigError("VOYAGE_EMBEDDING_MODEL is required for VoyageEmbedder")
        if self.dimension <= 0:
            resolved = resolve_voyage_dimension(self.model)
            if resolved is None:
                raise EmbeddingConfigError(
                    "EMBEDDING_DIMENSION must be set for Voyage embeddings when model is unknown"
                )
            self.dimension = resolved
        self.base_url = self.base_url.rstrip("/")

    async def embed(self, text: str) -> list[float]:
        """Embed a query string."""
        batch = await self._request([text], input_type="query")
        return batch.vectors[0]

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """Embed document texts in one request."""
        if not texts:
            return EmbeddingBatch(vectors=[], total_tokens=0)
        return await self._request(texts, input_type="document")

    async def _throttle(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            wait = self._last_request + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _request(self, texts: list[str], input_type: str) -> EmbeddingBatch:
        await self._throttle()
        payload = {"input": texts, "model": self.model, "input_type": input_type}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/embeddings"
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
            raise EmbeddingError(f"Voyage embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingError("Voyage embedding response is not valid JSON") from exc
        return self._parse(data, len(texts))

    def _parse(self, data: Any, expected: int) -> EmbeddingBatch:
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != expected:
            raise EmbeddingError("Voyage embedding response has an unexpected shape")
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("index", 0), int):
                raise EmbeddingError("Voyage embedding response item is malformed")
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        vectors: list[list[float]] = []
        for item in ordered:
            embedding = item.get("embedding")
            if not isinstance(embedding, list):
                raise EmbeddingError("Voyage embedding response missing embedding vector")
            vectors.append(validate_vector(embedding, self.dimension))
        usage = data.get("usage")
        total_tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return EmbeddingBatch(
            vectors=vectors,
            total_tokens=int(total_tokens) if isinstance(total_tokens, (int, float)) else None,
        )

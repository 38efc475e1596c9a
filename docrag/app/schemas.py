from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SearchRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    query: str = Field(min_length=1)
    limit: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class ChatRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    message: str = Field(min_length=1)
    limit: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    model: str | None = None
    rerank: bool = True


class SearchResultItem(BaseModel):
    chunk_id: str
    title: str
    source_file_path: str
    slug: str | None = None
    heading: str | None = None
    content: str
    score: float
    vector_score: float | None = None
    lexical_score: float | None = None
    rerank_score: float | None = None


class SearchResponse(BaseModel):
    results: list[SearchResultItem]
    request_id: str


class SourceItem(BaseModel):
    id: str
    title: str
    snippet: str
    url: str
    similarity: float
    source_file_path: str
    chunk_id: str


class ChatResponse(BaseModel):
    content: str
    sources: list[SourceItem]
    tokens_used: int | None = None
    refusal_reason: str | None = None
    request_id: str


class StatsResponse(BaseModel):
    backend: str
    document_count: int
    chunk_count: int
    embedded_count: int
    embedding_dimension: int


class EmbeddingHealthResponse(BaseModel):
    provider: str
    model: str | None
    configured_dimension: int
    expected_dimension: int | None = None
    ok: bool
    status: str
    detail: str | None = None
    action: str | None = None

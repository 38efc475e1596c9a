from __future__ import annotations

"""Core data types for documents, chunks and retrieval."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class HeadingContext:
    """Nearest heading preceding a chunk."""
    text: str
    level: int
    line_number: int


@dataclass(frozen=True)
class DocumentRecord:
    """Source document with structural metadata."""
    source_path: str
    title: str
    slug: str | None = None
    page_type: str | None = None
    sidebar: str | None = None
    total_chunks: int = 0


@dataclass(frozen=True)
class ParsedDocument:
    """Markdown document split into frontmatter and body."""
    source_path: str
    raw: str
    body: str
    frontmatter: dict[str, Any] = field(default_factory=dict)
    frontmatter_lines: int = 0


@dataclass(frozen=True)
class ChunkRecord:
    """Chunk of a document with positional and heading metadata."""
    chunk_id: str
    document: DocumentRecord
    content: str
    chunk_index: int
    start_line: int
    end_line: int
    heading: HeadingContext | None
    character_count: int
    word_count: int
    content_hash: str

    @property
    def source_path(self) -> str:
        return self.document.source_path


@dataclass(frozen=True)
class ChunkState:
    """Persisted state of a chunk used to diff before indexing."""
    chunk_id: str
    content_hash: str | None
    has_embedding: bool


@dataclass(frozen=True)
class SearchResult:
    """Retrieved chunk with denormalized document fields and scores."""
    chunk_id: str
    document_title: str
    source_file_path: str
    document_slug: str | None
    content: str
    heading_context: str | None = None
    character_count: int = 0
    word_count: int = 0
    score: float = 0.0
    vector_score: float | None = None
    lexical_score: float | None = None
    rerank_score: float | None = None


@dataclass(frozen=True)
class IndexReport:
    """Outcome of an indexing run."""
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_batches: int = 0
    documents: int = 0
    stale_deleted: int = 0
    documents_deleted: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0

from __future__ import annotations

"""Index store protocol shared by the in-memory and PostgreSQL backends."""

from dataclasses import dataclass
from typing import Protocol

from docrag.rag.types import ChunkRecord, ChunkState, DocumentRecord, SearchResult


class IndexStoreError(RuntimeError):
    """Raised when the index store cannot complete an operation."""
    pass


@dataclass(frozen=True)
class ChunkUpsert:
    """A chunk row written in one atomic upsert together with its embedding."""
    document_id: str
    chunk: ChunkRecord
    embedding: list[float] | None


class IndexStore(Protocol):
    """Persistent index of documents and chunks.

    Every method is a suspension point. Chunk upserts overwrite existing rows
    with the same id, so applying the same upsert twice yields the same state.
    """
    dimension: int

    async def upsert_document(self, document: DocumentRecord) -> str:
        """Insert or update a document matched by source path; return its id."""
        raise NotImplementedError

    async def get_chunk_states(self, chunk_ids: list[str]) -> dict[str, ChunkState]:
        """Return persisted states for the chunk ids that exist."""
        raise NotImplementedError

    async def upsert_chunks(self, rows: list[ChunkUpsert]) -> int:
        """Insert or overwrite chunk rows; return the number written."""
        raise NotImplementedError

    async def delete_stale_chunks(self, document_id: str, total_chunks: int) -> int:
        """Delete a document's chunks whose index is >= total_chunks."""
        raise NotImplementedError

    async def delete_document(self, source_path: str) -> bool:
        """Delete a document and, by cascade, its chunks."""
        raise NotImplementedError

    async def list_document_paths(self) -> list[str]:
        """Return the source paths of all stored documents."""
        raise NotImplementedError

    async def dense_search(self, vector: list[float], limit: int) -> list[SearchResult]:
        """Return up to limit embedded chunks by descending cosine similarity."""
        raise NotImplementedError

    async def lexical_search(self, terms: list[str], limit: int) -> list[SearchResult]:
        """Return up to limit chunks matching any term, by descending relevance."""
        raise NotImplementedError

    async def stats(self) -> dict[str, int | str]:
        raise NotImplementedError

    async def health(self) -> dict[str, str | bool]:
        raise NotImplementedError

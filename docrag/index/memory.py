from __future__ import annotations

"""In-memory index store for local testing and small corpora."""

import asyncio
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from docrag.index.base import ChunkUpsert, IndexStoreError
from docrag.rag.lexical import bm25_scores, tokenize
from docrag.rag.types import ChunkRecord, ChunkState, DocumentRecord, SearchResult


@dataclass(frozen=True)
class StoredDocument:
    document_id: str
    record: DocumentRecord
    processed_at: datetime


@dataclass(frozen=True)
class StoredChunk:
    document_id: str
    chunk: ChunkRecord
    embedding: list[float] | None
    term_frequencies: Counter[str]
    length: int
    updated_at: datetime


@dataclass
class InMemoryIndexStore:
    """Documents and chunks kept in process memory.

    Documents are held as an ordered list with a source-path lookup index.
    Chunk rows are replaced whole under a lock, so readers never observe a
    partially written row.
    """
    dimension: int = 1024
    documents: list[StoredDocument] = field(default_factory=list)
    chunks: dict[str, StoredChunk] = field(default_factory=dict)
    _document_index: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._document_index = {
            stored.record.source_path: idx for idx, stored in enumerate(self.documents)
        }

    async def upsert_document(self, document: DocumentRecord) -> str:
        """Reuse the document id for a known source path, otherwise create one."""
        async with self._lock:
            now = datetime.now(timezone.utc)
            position = self._document_index.get(document.source_path)
            if position is not None:
                existing = self.documents[position]
                self.documents[position] = StoredDocument(
                    document_id=existing.document_id, record=document, processed_at=now
                )
                return existing.document_id
            stored = StoredDocument(
                document_id=str(uuid.uuid4()), record=document, processed_at=now
            )
            self._document_index[document.source_path] = len(self.documents)
            self.documents.append(stored)
            return stored.document_id

    async def get_chunk_states(self, chunk_ids: list[str]) -> dict[str, ChunkState]:
        states: dict[str, ChunkState] = {}
        for chunk_id in chunk_ids:
            stored = self.chunks.get(chunk_id)
            if stored is None:
                continue
            states[chunk_id] = ChunkState(
                chunk_id=chunk_id,
                content_hash=stored.chunk.content_hash,
                has_embedding=stored.embedding is not None,
            )
        return states

    async def upsert_chunks(self, rows: list[ChunkUpsert]) -> int:
        known_ids = {stored.document_id for stored in self.documents}
        for row in rows:
            if row.document_id not in known_ids:
                raise IndexStoreError(f"Unknown document id for chunk {row.chunk.chunk_id}")
            if row.embedding is not None and len(row.embedding) != self.dimension:
                raise IndexStoreError(
                    f"Embedding dimension mismatch: {len(row.embedding)} vs {self.dimension}"
                )
        async with self._lock:
            now = datetime.now(timezone.utc)
            for row in rows:
                tokens = tokenize(row.chunk.content)
                self.chunks[row.chunk.chunk_id] = StoredChunk(
                    document_id=row.document_id,
                    chunk=row.chunk,
                    embedding=list(row.embedding) if row.embedding is not None else None,
                    term_frequencies=Counter(tokens),
                    length=len(tokens),
                    updated_at=now,
                )
        return len(rows)

    async def delete_stale_chunks(self, document_id: str, total_chunks: int) -> int:
        async with self._lock:
            stale = [
                chunk_id
                for chunk_id, stored in self.chunks.items()
                if stored.document_id == document_id and stored.chunk.chunk_index >= total_chunks
            ]
            for chunk_id in stale:
                del self.chunks[chunk_id]
        return len(stale)

    async def delete_document(self, source_path: str) -> bool:
        async with self._lock:
            position = self._document_index.get(source_path)
            if position is None:
                return False
            removed = self.documents.pop(position)
            self._document_index = {
                stored.record.source_path: idx for idx, stored in enumerate(self.documents)
            }
            self.chunks = {
                chunk_id: stored
                for chunk_id, stored in self.chunks.items()
                if stored.document_id != removed.document_id
            }
        return True

    async def list_document_paths(self) -> list[str]:
        return [stored.record.source_path for stored in self.documents]

    async def dense_search(self, vector: list[float], limit: int) -> list[SearchResult]:
        if limit <= 0:
            return []
        scored = [
            (stored, self._cosine_similarity(vector, stored.embedding))
            for stored in self.chunks.values()
            if stored.embedding is not None
        ]
        scored.sort(key=lambda item: item[1], reverse=True)
        return [
            replace(self._to_result(stored), vector_score=score)
            for stored, score in scored[:limit]
        ]

    async def lexical_search(self, terms: list[str], limit: int) -> list[SearchResult]:
        if limit <= 0 or not terms:
            return []
        rows = list(self.chunks.values())
        ranked = bm25_scores(
            terms,
            [(stored.chunk.chunk_id, stored.term_frequencies, stored.length) for stored in rows],
        )
        by_id = {stored.chunk.chunk_id: stored for stored in rows}
        return [
            replace(self._to_result(by_id[chunk_id]), lexical_score=score)
            for chunk_id, score in ranked[:limit]
        ]

    def _to_result(self, stored: StoredChunk) -> SearchResult:
        document = stored.chunk.document
        position = self._document_index.get(document.source_path)
        if position is not None:
            document = self.documents[position].record
        heading = stored.chunk.heading
        return SearchResult(
            chunk_id=stored.chunk.chunk_id,
            document_title=document.title,
            source_file_path=document.source_path,
            document_slug=document.slug,
            content=stored.chunk.content,
            heading_context=heading.text if heading else None,
            character_count=stored.chunk.character_count,
            word_count=stored.chunk.word_count,
        )

    def _cosine_similarity(self, a: list[float], b: list[float]) -> float:
        """Compute cosine similarity between two vectors."""
        dot = sum(x * y for x, y in zip(a, b))
        norm_a = math.sqrt(sum(x * x for x in a))
        norm_b = math.sqrt(sum(y * y for y in b))
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        return dot / (norm_a * norm_b)

    async def stats(self) -> dict[str, int | str]:
        """Return basic stats for the index."""
        return {
            "backend": "memory",
            "document_count": len(self.documents),
            "chunk_count": len(self.chunks),
            "embedded_count": sum(
                1 for stored in self.chunks.values() if stored.embedding is not None
            ),
            "embedding_dimension": self.dimension,
        }

    async def health(self) -> dict[str, str | bool]:
        """Return health information for the index."""
        return {
            "backend": "memory",
            "ok": True,
        }

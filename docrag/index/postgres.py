from __future__ import annotations

"""PostgreSQL index store with pgvector (dense) and tsvector (lexical) search."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Column,
    Computed,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    cast,
    create_engine,
    delete,
    func,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import REGCONFIG, TSVECTOR, insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from docrag.index.base import ChunkUpsert, IndexStoreError
from docrag.rag.embeddings import EmbeddingConfigError
from docrag.rag.lexical import build_or_query
from docrag.rag.types import ChunkState, DocumentRecord, SearchResult

logger = logging.getLogger(__name__)


def build_tables(
    metadata: MetaData, dimension: int, ts_config: str = "english"
) -> tuple[Table, Table]:
    """Define the documents and chunks tables for the given embedding dimension."""
    documents = Table(
        "documents",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("title", Text, nullable=False),
        Column("slug", Text, nullable=True),
        Column("source_file_path", Text, nullable=False, unique=True),
        Column("page_type", Text, nullable=True),
        Column("sidebar", Text, nullable=True),
        Column("total_chunks", Integer, nullable=False, default=0),
        Column("processed_at", DateTime(timezone=True), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    )
    chunks = Table(
        "chunks",
        metadata,
        Column("id", Text, primary_key=True),
        Column(
            "document_id",
            String(36),
            ForeignKey("documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("content", Text, nullable=False),
        Column("chunk_index", Integer, nullable=False),
        Column("start_line", Integer, nullable=True),
        Column("end_line", Integer, nullable=True),
        Column("heading_context_text", Text, nullable=True),
        Column("heading_context_level", Integer, nullable=True),
        Column("heading_line_number", Integer, nullable=True),
        Column("character_count", Integer, nullable=False),
        Column("word_count", Integer, nullable=False),
        Column("content_hash", String(64), nullable=True),
        Column("embedding", Vector(dimension), nullable=True),
        Column(
            "search_vector",
            TSVECTOR,
            Computed(f"to_tsvector('{ts_config}', content)", persisted=True),
        ),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Index("chunks_document_id_idx", "document_id"),
    )
    Index(
        "chunks_embedding_hnsw_idx",
        chunks.c.embedding,
        postgresql_using="hnsw",
        postgresql_with={"m": 16, "ef_construction": 64},
        postgresql_ops={"embedding": "vector_cosine_ops"},
    )
    Index("chunks_search_vector_gin_idx", chunks.c.search_vector, postgresql_using="gin")
    return documents, chunks


@dataclass
class PostgresConfig:
    """Connection settings for the PostgreSQL index."""
    url: str
    dimension: int = 1024
    ts_config: str = "english"
    pool_size: int = 5


class PostgresIndexStore:
    """Index store backed by PostgreSQL with the pgvector extension.

    SQLAlchemy calls are blocking and run in worker threads. Each chunk batch
    is written in a single transaction with ``ON CONFLICT DO UPDATE``.
    """

    def __init__(self, config: PostgresConfig) -> None:
        """Connect, create the extension and tables, and check the dimension."""
        self.config = config
        self.dimension = config.dimension
        self._engine = create_engine(
            config.url, pool_pre_ping=True, pool_size=config.pool_size
        )
        self._metadata = MetaData()
        self.documents, self.chunks = build_tables(
            self._metadata, config.dimension, config.ts_config
        )
        try:
            with self._engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise IndexStoreError(f"Failed to initialize index schema: {exc}") from exc
        existing_dim = self._existing_embedding_dim()
        if existing_dim is not None and existing_dim != self.dimension:
            raise EmbeddingConfigError(
                "Index embedding dimension mismatch: "
                f"{existing_dim} (table) vs {self.dimension} (embedder). "
                "Update EMBEDDING_DIMENSION or reset the index."
            )

    def _existing_embedding_dim(self) -> int | None:
        """Read the vector dimension from the chunks.embedding column type."""
        query = text(
            "SELECT atttypmod FROM pg_attribute "
            "WHERE attrelid = 'chunks'::regclass AND attname = 'embedding'"
        )
        try:
            with self._engine.connect() as conn:
                value = conn.execute(query).scalar()
        except SQLAlchemyError:
            return None
        if value is None or int(value) <= 0:
            return None
        return int(value)

    async def _run(self, fn, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise IndexStoreError(str(exc)) from exc

    async def upsert_document(self, document: DocumentRecord) -> str:
        return await self._run(self._upsert_document, document)

    def _upsert_document(self, document: DocumentRecord) -> str:
        values = {
            "title": document.title,
            "slug": document.slug,
            "page_type": document.page_type,
            "sidebar": document.sidebar,
            "total_chunks": document.total_chunks,
            "processed_at": func.now(),
        }
        stmt = pg_insert(self.documents).values(
            id=str(uuid.uuid4()), source_file_path=document.source_path, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.documents.c.source_file_path],
            set_={**values, "updated_at": func.now()},
        ).returning(self.documents.c.id)
        with self._engine.begin() as conn:
            return str(conn.execute(stmt).scalar_one())

    async def get_chunk_states(self, chunk_ids: list[str]) -> dict[str, ChunkState]:
        if not chunk_ids:
            return {}
        return await self._run(self._get_chunk_states, chunk_ids)

    def _get_chunk_states(self, chunk_ids: list[str]) -> dict[str, ChunkState]:
        stmt = select(
            self.chunks.c.id,
            self.chunks.c.content_hash,
            self.chunks.c.embedding.isnot(None).label("has_embedding"),
        ).where(self.chunks.c.id.in_(chunk_ids))
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return {
            row.id: ChunkState(
                chunk_id=row.id,
                content_hash=row.content_hash,
                has_embedding=bool(row.has_embedding),
            )
            for row in rows
        }

    async def upsert_chunks(self, rows: list[ChunkUpsert]) -> int:
        if not rows:
            return 0
        return await self._run(self._upsert_chunks, rows)

    def _upsert_chunks(self, rows: list[ChunkUpsert]) -> int:
        payload = []
        for row in rows:
            chunk = row.chunk
            heading = chunk.heading
            payload.append(
                {
                    "id": chunk.chunk_id,
                    "document_id": row.document_id,
                    "content": chunk.content,
                    "chunk_index": chunk.chunk_index,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                    "heading_context_text": heading.text if heading else None,
                    "heading_context_level": heading.level if heading else None,
                    "heading_line_number": heading.line_number if heading else None,
                    "character_count": chunk.character_count,
                    "word_count": chunk.word_count,
                    "content_hash": chunk.content_hash,
                    "embedding": row.embedding,
                }
            )
        stmt = pg_insert(self.chunks).values(payload)
        updatable = {
            name: stmt.excluded[name]
            for name in payload[0]
            if name != "id"
        }
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.chunks.c.id],
            set_={**updatable, "updated_at": func.now()},
        )
        with self._engine.begin() as conn:
            conn.execute(stmt)
        return len(payload)

    async def delete_stale_chunks(self, document_id: str, total_chunks: int) -> int:
        return await self._run(self._delete_stale_chunks, document_id, total_chunks)

    def _delete_stale_chunks(self, document_id: str, total_chunks: int) -> int:
        stmt = delete(self.chunks).where(
            self.chunks.c.document_id == document_id,
            self.chunks.c.chunk_index >= total_chunks,
        )
        with self._engine.begin() as conn:
            return int(conn.execute(stmt).rowcount or 0)

    async def delete_document(self, source_path: str) -> bool:
        return await self._run(self._delete_document, source_path)

    def _delete_document(self, source_path: str) -> bool:
        stmt = delete(self.documents).where(self.documents.c.source_file_path == source_path)
        with self._engine.begin() as conn:
            return bool(conn.execute(stmt).rowcount)

    async def list_document_paths(self) -> list[str]:
        return await self._run(self._list_document_paths)

    def _list_document_paths(self) -> list[str]:
        stmt = select(self.documents.c.source_file_path).order_by(
            self.documents.c.source_file_path
        )
        with self._engine.connect() as conn:
            return [str(path) for path in conn.execute(stmt).scalars()]

    def _result_columns(self) -> list[Any]:
        return [
            self.chunks.c.id.label("chunk_id"),
            self.documents.c.title.label("document_title"),
            self.chunks.c.content,
            self.chunks.c.heading_context_text,
            self.chunks.c.character_count,
            self.chunks.c.word_count,
            self.documents.c.source_file_path,
            self.documents.c.slug.label("document_slug"),
        ]

    def _to_result(self, row: Any, **scores: float) -> SearchResult:
        return SearchResult(
            chunk_id=row.chunk_id,
            document_title=row.document_title,
            source_file_path=row.source_file_path,
            document_slug=row.document_slug,
            content=row.content,
            heading_context=row.heading_context_text,
            character_count=row.character_count,
            word_count=row.word_count,
            **scores,
        )

    async def dense_search(self, vector: list[float], limit: int) -> list[SearchResult]:
        if limit <= 0:
            return []
        return await self._run(self._dense_search, vector, limit)

    def build_dense_query(self, vector: list[float], limit: int):
        distance = self.chunks.c.embedding.cosine_distance(vector)
        return (
            select(*self._result_columns(), (1 - distance).label("vector_score"))
            .select_from(self.chunks.join(self.documents))
            .where(self.chunks.c.embedding.isnot(None))
            .order_by(distance)
            .limit(limit)
        )

    def _dense_search(self, vector: list[float], limit: int) -> list[SearchResult]:
        with self._engine.connect() as conn:
            rows = conn.execute(self.build_dense_query(vector, limit)).all()
        return [self._to_result(row, vector_score=float(row.vector_score)) for row in rows]

    async def lexical_search(self, terms: list[str], limit: int) -> list[SearchResult]:
        if limit <= 0 or not terms:
            return []
        return await self._run(self._lexical_search, terms, limit)

    def build_lexical_query(self, terms: list[str], limit: int):
        tsquery = func.to_tsquery(
            cast(self.config.ts_config, REGCONFIG), build_or_query(terms)
        )
        rank = func.ts_rank(self.chunks.c.search_vector, tsquery)
        return (
            select(*self._result_columns(), rank.label("lexical_score"))
            .select_from(self.chunks.join(self.documents))
            .where(self.chunks.c.search_vector.op("@@")(tsquery))
            .order_by(rank.desc())
            .limit(limit)
        )

    def _lexical_search(self, terms: list[str], limit: int) -> list[SearchResult]:
        with self._engine.connect() as conn:
            rows = conn.execute(self.build_lexical_query(terms, limit)).all()
        return [self._to_result(row, lexical_score=float(row.lexical_score)) for row in rows]

    async def stats(self) -> dict[str, int | str]:
        """Return table counts."""
        return await self._run(self._stats)

    def _stats(self) -> dict[str, int | str]:
        with self._engine.connect() as conn:
            documents = conn.execute(select(func.count()).select_from(self.documents)).scalar_one()
            chunks = conn.execute(select(func.count()).select_from(self.chunks)).scalar_one()
            embedded = conn.execute(
                select(func.count())
                .select_from(self.chunks)
                .where(self.chunks.c.embedding.isnot(None))
            ).scalar_one()
        return {
            "backend": "postgres",
            "document_count": int(documents),
            "chunk_count": int(chunks),
            "embedded_count": int(embedded),
            "embedding_dimension": self.dimension,
        }

    async def health(self) -> dict[str, str | bool]:
        """Return database health info."""
        try:
            await asyncio.to_thread(self._ping)
        except SQLAlchemyError as exc:
            return {"backend": "postgres", "ok": False, "detail": str(exc)}
        return {"backend": "postgres", "ok": True}

    def _ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    @classmethod
    def reset(cls, config: PostgresConfig) -> PostgresIndexStore:
        """Drop the index tables and recreate them for the configured dimension."""
        engine = create_engine(config.url)
        metadata = MetaData()
        build_tables(metadata, config.dimension, config.ts_config)
        try:
            metadata.drop_all(engine)
        except SQLAlchemyError as exc:
            raise IndexStoreError(f"Failed to drop index tables: {exc}") from exc
        finally:
            engine.dispose()
        logger.info("index_tables_dropped", extra={"dimension": config.dimension})
        return cls(config)

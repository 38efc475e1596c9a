from __future__ import annotations

"""Embedding indexer: diff chunks against the store and embed what changed."""

import asyncio
import logging
from dataclasses import dataclass, field, replace

from docrag.index.base import ChunkUpsert, IndexStore, IndexStoreError
from docrag.loaders.chunking import count_tokens
from docrag.metadata.store import IndexRunMeta, IndexRunStore
from docrag.metadata.usage import TokenUsage, TokenUsageStore, UsageMetadata
from docrag.rag.embeddings import EmbeddingError, EmbeddingProvider
from docrag.rag.types import ChunkRecord, DocumentRecord, IndexReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PendingChunk:
    document_id: str
    chunk: ChunkRecord
    is_update: bool


@dataclass(frozen=True)
class _BatchOutcome:
    inserted: int = 0
    updated: int = 0
    failed: int = 0


@dataclass
class EmbeddingIndexer:
    """Embed and persist chunks idempotently.

    A chunk is skipped when its id is stored with an embedding and an
    unchanged content hash. Failed batches are logged and counted; the run
    continues, and a later run picks the failed chunks up again.
    """
    store: IndexStore
    embedder: EmbeddingProvider
    usage_store: TokenUsageStore | None = None
    run_store: IndexRunStore | None = None
    batch_size: int = 64
    concurrency: int = 1
    use_tiktoken: bool = True
    _semaphore: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self._semaphore = asyncio.Semaphore(self.concurrency)

    async def index(
        self,
        chunks: list[ChunkRecord],
        source: str = "chunks",
        documents: list[DocumentRecord] | None = None,
        prune_missing: bool = False,
    ) -> IndexReport:
        """Index chunks and return counts of inserted, updated, skipped and failed.

        ``documents`` lists every ingested document, including those that
        produced no chunks; their stored chunks are removed. With
        ``prune_missing`` any stored document absent from this run is deleted.
        """
        run_id = None
        if self.run_store is not None:
            run_id = await asyncio.to_thread(
                self.run_store.record_start,
                IndexRunMeta(source=source, chunk_count=len(chunks)),
            )
        try:
            report = await self._index(chunks, documents or [], prune_missing)
        except Exception as exc:
            if self.run_store is not None and run_id is not None:
                await asyncio.to_thread(self.run_store.record_failure, run_id, str(exc))
            raise
        if self.run_store is not None and run_id is not None:
            await asyncio.to_thread(
                self.run_store.record_complete,
                run_id,
                report.inserted,
                report.updated,
                report.skipped,
                report.failed,
            )
        return report

    async def _index(
        self,
        chunks: list[ChunkRecord],
        declared: list[DocumentRecord],
        prune_missing: bool,
    ) -> IndexReport:
        documents, grouped = self._group_by_document(chunks, declared)

        document_ids: dict[str, str] = {}
        stale_deleted = 0
        for document in documents:
            document_id = await self.store.upsert_document(document)
            document_ids[document.source_path] = document_id
            stale_deleted += await self.store.delete_stale_chunks(
                document_id, document.total_chunks
            )
        documents_deleted = 0
        if prune_missing:
            documents_deleted = await self._prune_documents(set(document_ids))

        states = await self.store.get_chunk_states([chunk.chunk_id for chunk in chunks])
        pending: list[_PendingChunk] = []
        skipped = 0
        for document in documents:
            for chunk in grouped[document.source_path]:
                state = states.get(chunk.chunk_id)
                if state is None:
                    pending.append(
                        _PendingChunk(document_ids[document.source_path], chunk, is_update=False)
                    )
                elif state.has_embedding and state.content_hash == chunk.content_hash:
                    skipped += 1
                else:
                    pending.append(
                        _PendingChunk(document_ids[document.source_path], chunk, is_update=True)
                    )

        batches = [
            pending[start:start + self.batch_size]
            for start in range(0, len(pending), self.batch_size)
        ]
        logger.info(
            "index_started",
            extra={
                "documents": len(documents),
                "chunks": len(chunks),
                "pending": len(pending),
                "skipped": skipped,
                "batches": len(batches),
            },
        )
        tasks = [
            asyncio.ensure_future(self._run_batch(idx, batch))
            for idx, batch in enumerate(batches)
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        report = IndexReport(
            inserted=sum(outcome.inserted for outcome in outcomes),
            updated=sum(outcome.updated for outcome in outcomes),
            skipped=skipped,
            failed=sum(outcome.failed for outcome in outcomes),
            failed_batches=sum(1 for outcome in outcomes if outcome.failed),
            documents=len(documents),
            stale_deleted=stale_deleted,
            documents_deleted=documents_deleted,
        )
        logger.info(
            "index_complete",
            extra={
                "inserted": report.inserted,
                "updated": report.updated,
                "skipped": report.skipped,
                "failed": report.failed,
                "failed_batches": report.failed_batches,
                "stale_deleted": report.stale_deleted,
                "documents_deleted": report.documents_deleted,
            },
        )
        return report

    def _group_by_document(
        self, chunks: list[ChunkRecord], declared: list[DocumentRecord]
    ) -> tuple[list[DocumentRecord], dict[str, list[ChunkRecord]]]:
        """Group chunks by source path.

        Declared documents come first in their given order; a declared
        document without chunks is kept with ``total_chunks=0``. Documents
        only known through their chunks follow in first-seen order.
        """
        from_chunks: dict[str, DocumentRecord] = {}
        grouped: dict[str, list[ChunkRecord]] = {}
        for chunk in chunks:
            source_path = chunk.source_path
            if source_path not in grouped:
                grouped[source_path] = []
                from_chunks[source_path] = chunk.document
            grouped[source_path].append(chunk)

        documents: list[DocumentRecord] = []
        seen: set[str] = set()
        for document in declared:
            if document.source_path in seen:
                continue
            seen.add(document.source_path)
            if document.source_path in from_chunks:
                documents.append(from_chunks[document.source_path])
            else:
                grouped[document.source_path] = []
                documents.append(replace(document, total_chunks=0))
        for source_path, document in from_chunks.items():
            if source_path not in seen:
                documents.append(document)
        return documents, grouped

    async def _prune_documents(self, keep: set[str]) -> int:
        deleted = 0
        for source_path in await self.store.list_document_paths():
            if source_path in keep:
                continue
            if await self.store.delete_document(source_path):
                deleted += 1
                logger.info("document_removed", extra={"source": source_path})
        return deleted

    async def _run_batch(self, batch_index: int, batch: list[_PendingChunk]) -> _BatchOutcome:
        async with self._semaphore:
            texts = [item.chunk.content for item in batch]
            try:
                embedded = await self.embedder.embed_batch(texts)
                if len(embedded.vectors) != len(batch):
                    raise EmbeddingError(
                        f"Expected {len(batch)} embeddings, got {len(embedded.vectors)}"
                    )
                await self.store.upsert_chunks(
                    [
                        ChunkUpsert(document_id=item.document_id, chunk=item.chunk, embedding=vector)
                        for item, vector in zip(batch, embedded.vectors)
                    ]
                )
            except (EmbeddingError, IndexStoreError) as exc:
                logger.error(
                    "index_batch_failed",
                    extra={
                        "batch_index": batch_index,
                        "batch_size": len(batch),
                        "error": str(exc),
                    },
                )
                return _BatchOutcome(failed=len(batch))

            await self._record_usage(batch_index, batch, texts, embedded.total_tokens)
            updated = sum(1 for item in batch if item.is_update)
            logger.info(
                "index_batch_complete",
                extra={
                    "batch_index": batch_index,
                    "chunks": len(batch),
                    "tokens": embedded.total_tokens,
                },
            )
            return _BatchOutcome(inserted=len(batch) - updated, updated=updated)

    async def _record_usage(
        self,
        batch_index: int,
        batch: list[_PendingChunk],
        texts: list[str],
        tokens: int | None,
    ) -> None:
        """Record embedding usage; failures are logged and never fail the batch."""
        if self.usage_store is None:
            return
        try:
            if tokens is None:
                tokens = sum(count_tokens(text, self.use_tiktoken) for text in texts)
            usage = TokenUsage(
                operation="embed",
                model=self.embedder.model,
                tokens=tokens,
                metadata=UsageMetadata(
                    chunk_ids=tuple(item.chunk.chunk_id for item in batch),
                    batch_index=batch_index,
                ),
            )
            await asyncio.to_thread(self.usage_store.record, usage)
        except Exception as exc:
            logger.warning(
                "usage_record_failed",
                extra={"batch_index": batch_index, "error": str(exc)},
            )

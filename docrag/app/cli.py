from __future__ import annotations

"""Command line interface: ask questions, run retrieval, index a docs directory."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from docrag.app.dependencies import (
    ConfigError,
    build_chunker,
    build_embedder,
    build_indexer,
    build_pipeline,
    build_retriever,
    build_run_store,
    build_store,
    build_usage_store,
    validate_credentials,
)
from docrag.app.settings import Settings, settings
from docrag.index.base import IndexStoreError
from docrag.loaders.markdown import (
    MarkdownLoaderError,
    build_document_record,
    find_markdown_files,
    load_markdown_file,
)
from docrag.rag.citations import append_citation_footer
from docrag.rag.embeddings import EmbeddingConfigError, EmbeddingError
from docrag.rag.llm import LLMError
from docrag.rag.pipeline import AnswerOptions, RAGPipeline
from docrag.rag.retriever import HybridRetriever

logger = logging.getLogger(__name__)


def build_parser(config: Settings = settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docrag", description="Question answering over a markdown documentation corpus."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    query = subparsers.add_parser("query", help="Answer a question from the index.")
    query.add_argument("question", nargs="*", help="Question text; prompts when omitted.")
    query.add_argument("--limit", type=int, default=config.default_limit)
    query.add_argument("--threshold", type=float, default=config.similarity_threshold)
    query.add_argument("--model", default=None, help="LLM model override.")
    query.add_argument("--no-rerank", action="store_true", help="Skip reranking.")

    search = subparsers.add_parser("search", help="Run hybrid retrieval only.")
    search.add_argument("question", nargs="*")
    search.add_argument("--limit", type=int, default=config.default_limit)
    search.add_argument("--threshold", type=float, default=config.similarity_threshold)

    index = subparsers.add_parser("index", help="Chunk and index a markdown directory.")
    index.add_argument("docs_dir", type=Path)
    return parser


def _read_question(words: list[str]) -> str:
    question = " ".join(words).strip()
    if question:
        return question
    try:
        return input("Question: ").strip()
    except EOFError:
        return ""


async def run_query(pipeline: RAGPipeline, question: str, options: AnswerOptions) -> int:
    print(f'Searching for: "{question}"\n')
    response = await pipeline.answer(question, options)
    print(append_citation_footer(response.answer, response.citations))
    if response.usage is not None:
        print(f"\nTokens used: {response.usage.tokens}")
    return 0


async def run_search(retriever: HybridRetriever, question: str, limit: int, threshold: float) -> int:
    results = await retriever.search(question, limit=limit, similarity_threshold=threshold)
    if not results:
        print("No results.")
        return 0
    for idx, result in enumerate(results, start=1):
        heading = f" > {result.heading_context}" if result.heading_context else ""
        print(f"{idx}. {result.document_title}{heading} [{result.score:.4f}]")
        print(f"   {result.source_file_path} ({result.chunk_id})")
    return 0


async def run_index(docs_dir: Path, config: Settings) -> int:
    files = find_markdown_files(docs_dir)
    chunker = build_chunker(config)
    chunks = []
    documents = []
    for path in files:
        parsed = load_markdown_file(path, root=docs_dir)
        document_chunks = chunker.chunk(parsed)
        documents.append(build_document_record(parsed, total_chunks=len(document_chunks)))
        chunks.extend(document_chunks)
    print(f"Found {len(files)} markdown files, {len(chunks)} chunks")

    store = build_store(config)
    indexer = build_indexer(
        store,
        build_embedder(config),
        config,
        usage_store=build_usage_store(config),
        run_store=build_run_store(config),
    )
    report = await indexer.index(
        chunks, source=str(docs_dir), documents=documents, prune_missing=True
    )
    print(
        f"Indexed {report.documents} documents: {report.inserted} inserted, "
        f"{report.updated} updated, {report.skipped} skipped, {report.failed} failed "
        f"({report.failed_batches} failed batches), {report.stale_deleted} stale removed, "
        f"{report.documents_deleted} documents removed"
    )
    return 0 if report.ok else 1


def main(argv: Sequence[str] | None = None, config: Settings | None = None) -> int:
    config = config or settings
    logging.basicConfig(
        level=getattr(logging, config.log_level.strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = build_parser(config).parse_args(argv)

    try:
        if args.command == "index":
            validate_credentials(config, require_llm=False)
            return asyncio.run(run_index(args.docs_dir, config))

        validate_credentials(config, require_llm=args.command == "query")
        question = _read_question(args.question)
        if not question:
            print("Error: a question is required", file=sys.stderr)
            return 1

        store = build_store(config)
        embedder = build_embedder(config)
        if args.command == "search":
            return asyncio.run(
                run_search(build_retriever(store, embedder, config), question, args.limit, args.threshold)
            )
        pipeline = build_pipeline(store, embedder, config, usage_store=build_usage_store(config))
        options = AnswerOptions(
            limit=args.limit,
            similarity_threshold=args.threshold,
            model=args.model,
            rerank=not args.no_rerank,
            timeout=config.request_timeout,
        )
        return asyncio.run(run_query(pipeline, question, options))
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (
        EmbeddingConfigError,
        EmbeddingError,
        LLMError,
        IndexStoreError,
        MarkdownLoaderError,
        asyncio.TimeoutError,
    ) as exc:
        logger.error("command_failed", extra={"command": args.command, "error": type(exc).__name__})
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

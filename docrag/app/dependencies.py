from __future__ import annotations

from functools import lru_cache

from docrag.app.settings import Settings, settings
from docrag.index.base import IndexStore
from docrag.index.indexer import EmbeddingIndexer
from docrag.index.memory import InMemoryIndexStore
from docrag.index.postgres import PostgresConfig, PostgresIndexStore
from docrag.loaders.chunking import Chunker
from docrag.metadata.store import IndexRunStore
from docrag.metadata.usage import TokenUsageStore
from docrag.rag.embeddings import (
    EmbeddingConfigError,
    EmbeddingConfigReport,
    EmbeddingProvider,
    HashEmbedder,
    VoyageEmbedder,
    build_embedding_config_report,
)
from docrag.rag.llm import LLMProvider, build_llm_client
from docrag.rag.pipeline import RAGPipeline
from docrag.rag.reranker import Reranker, VoyageRerankClient
from docrag.rag.retriever import HybridRetriever


class ConfigError(RuntimeError):
    """Raised when required credentials or settings are missing."""
    pass


def missing_credentials(config: Settings, require_llm: bool = True) -> list[str]:
    """Return names of required environment variables that are unset."""
    missing: list[str] = []
    if config.uses_voyage and not config.voyage_api_key:
        missing.append("VOYAGE_API_KEY")
    if require_llm and config.llm_provider.lower().strip() == "openai" and not config.openai_api_key:
        missing.append("OPENAI_API_KEY")
    return missing


def validate_credentials(config: Settings = settings, require_llm: bool = True) -> None:
    missing = missing_credentials(config, require_llm=require_llm)
    if missing:
        raise ConfigError(f"Missing required API keys: {', '.join(missing)}")


def build_embedder(config: Settings = settings) -> EmbeddingProvider:
    provider = config.embedding_provider.lower().strip()
    if provider == "hash":
        return HashEmbedder(dimension=config.embedding_dimension)
    if provider == "voyage":
        return VoyageEmbedder(
            api_key=config.voyage_api_key or "",
            model=config.voyage_embedding_model,
            dimension=config.embedding_dimension,
            base_url=config.voyage_base_url,
            timeout=config.voyage_timeout,
            min_interval=config.voyage_min_interval,
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")


def build_store(config: Settings = settings) -> IndexStore:
    backend = config.index_backend.lower().strip()
    if backend == "postgres":
        return PostgresIndexStore(
            PostgresConfig(
                url=config.database_url,
                dimension=config.embedding_dimension,
                ts_config=config.ts_config,
                pool_size=config.database_pool_size,
            )
        )
    if backend == "memory":
        return InMemoryIndexStore(dimension=config.embedding_dimension)
    raise ConfigError(f"Unsupported index backend: {backend}")


def build_reranker(config: Settings = settings) -> Reranker:
    """Reranking is a passthrough without a Voyage key or when disabled."""
    if not config.rerank_enabled or not config.voyage_api_key:
        return Reranker(provider=None, cutoff=config.rerank_cutoff)
    client = VoyageRerankClient(
        api_key=config.voyage_api_key,
        model=config.rerank_model,
        base_url=config.voyage_base_url,
        timeout=config.voyage_timeout,
    )
    return Reranker(provider=client, cutoff=config.rerank_cutoff)


def build_llm(config: Settings = settings) -> LLMProvider:
    return build_llm_client(
        config.llm_provider,
        openai_api_key=config.openai_api_key,
        openai_base_url=config.openai_base_url,
        openai_model=config.openai_model,
        ollama_base_url=config.ollama_base_url,
        ollama_model=config.ollama_model,
        max_tokens=config.llm_max_tokens,
        timeout=config.llm_timeout,
    )


def build_usage_store(config: Settings = settings) -> TokenUsageStore | None:
    if not config.usage_db_uri:
        return None
    return TokenUsageStore(config.usage_db_uri)


def build_run_store(config: Settings = settings) -> IndexRunStore | None:
    if not config.metadata_db_uri:
        return None
    return IndexRunStore(config.metadata_db_uri)


def build_retriever(
    store: IndexStore, embedder: EmbeddingProvider, config: Settings = settings
) -> HybridRetriever:
    return HybridRetriever(
        store=store,
        embedder=embedder,
        candidate_k=config.candidate_k,
        dense_floor=config.dense_floor,
        rrf_k=config.rrf_k,
    )


def build_pipeline(
    store: IndexStore,
    embedder: EmbeddingProvider,
    config: Settings = settings,
    usage_store: TokenUsageStore | None = None,
) -> RAGPipeline:
    return RAGPipeline(
        retriever=build_retriever(store, embedder, config),
        llm=build_llm(config),
        reranker=build_reranker(config),
        usage_store=usage_store,
        temperature=config.llm_temperature,
        context_max_chars=config.llm_context_max_chars,
        docs_base_url=config.docs_base_url,
    )


def build_indexer(
    store: IndexStore,
    embedder: EmbeddingProvider,
    config: Settings = settings,
    usage_store: TokenUsageStore | None = None,
    run_store: IndexRunStore | None = None,
) -> EmbeddingIndexer:
    return EmbeddingIndexer(
        store=store,
        embedder=embedder,
        usage_store=usage_store,
        run_store=run_store,
        batch_size=config.embed_batch_size,
        concurrency=config.embed_concurrency,
        use_tiktoken=config.use_tiktoken,
    )


def build_chunker(config: Settings = settings) -> Chunker:
    return Chunker(chunk_size=config.chunk_size, chunk_overlap=config.chunk_overlap)


@lru_cache
def get_embedder() -> EmbeddingProvider:
    return build_embedder()


@lru_cache
def get_store() -> IndexStore:
    return build_store()


@lru_cache
def get_usage_store() -> TokenUsageStore | None:
    return build_usage_store()


@lru_cache
def get_retriever() -> HybridRetriever:
    validate_credentials(require_llm=False)
    return build_retriever(get_store(), get_embedder())


@lru_cache
def get_pipeline() -> RAGPipeline:
    validate_credentials()
    return build_pipeline(get_store(), get_embedder(), usage_store=get_usage_store())


def reset_pipeline_cache() -> None:
    get_pipeline.cache_clear()
    get_retriever.cache_clear()
    get_store.cache_clear()
    get_embedder.cache_clear()
    get_usage_store.cache_clear()


def get_embedding_config_report() -> EmbeddingConfigReport:
    provider = settings.embedding_provider
    model = None
    if provider.lower().strip() == "voyage":
        model = settings.voyage_embedding_model
    return build_embedding_config_report(
        provider, model, settings.embedding_dimension, api_key=settings.voyage_api_key
    )

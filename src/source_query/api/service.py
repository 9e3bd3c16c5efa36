"""Service container wiring storage, providers, ingestion and querying."""

from dataclasses import dataclass

import structlog
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from source_query.config import Settings, get_settings
from source_query.ingestion import IngestionOrchestrator, SourceFetcher, TextChunker, WorkerPool
from source_query.retrieval import (
    ChatCompletionGenerator,
    Embedder,
    EmbeddingClient,
    FaissVectorIndex,
    Generator,
    QueryEngine,
    VectorIndex,
    create_embedder,
)
from source_query.security import RateLimiter, RateLimitRule
from source_query.storage import create_engine_for, get_session_factory

logger = structlog.get_logger()

# Rate-limited route names
ROUTE_ASK = "ask"
ROUTE_INGEST = "ingest"
ROUTE_REINGEST_ALL = "reingest_all"
ROUTE_DELETE_ALL = "delete_all"


@dataclass
class Services:
    """Everything a request handler or CLI command needs."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    pool: WorkerPool
    index: VectorIndex
    orchestrator: IngestionOrchestrator
    query_engine: QueryEngine
    rate_limiter: RateLimiter


def build_rate_limiter(settings: Settings) -> RateLimiter:
    bulk = RateLimitRule.from_tuple(settings.rate_limit_bulk)
    return RateLimiter(
        rules={
            ROUTE_ASK: RateLimitRule.from_tuple(settings.rate_limit_ask),
            ROUTE_INGEST: RateLimitRule.from_tuple(settings.rate_limit_scrape),
            ROUTE_REINGEST_ALL: bulk,
            ROUTE_DELETE_ALL: bulk,
        },
        purge_interval=settings.rate_limit_purge_interval_seconds,
    )


def build_services(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    embedder: Embedder | None = None,
    generator: Generator | None = None,
    index: VectorIndex | None = None,
    fetcher: SourceFetcher | None = None,
    rate_limiter: RateLimiter | None = None,
) -> Services:
    """
    Build the service graph from settings.

    Any component can be passed in to replace the configured one.
    """
    settings = settings or get_settings()
    engine = engine or create_engine_for(settings.database_url, settings.debug)
    session_factory = get_session_factory(engine)

    embeddings = EmbeddingClient(
        embedder or create_embedder(settings),
        batch_size=settings.embedding_batch_size,
        max_retries=settings.embedding_max_retries,
        retry_delay=settings.embedding_retry_delay_seconds,
    )
    index = index or FaissVectorIndex(embeddings.model_name, settings.index_dir)
    pool = WorkerPool(settings.ingest_workers)

    orchestrator = IngestionOrchestrator(
        session_factory=session_factory,
        fetcher=fetcher or SourceFetcher(),
        embeddings=embeddings,
        index=index,
        pool=pool,
        chunker=TextChunker(settings.chunk_size, settings.chunk_overlap),
        upsert_batch_size=settings.vector_upsert_batch_size,
        bulk_concurrency=settings.bulk_concurrency,
        bulk_batch_delay=settings.bulk_batch_delay_seconds,
    )
    query_engine = QueryEngine(
        embeddings=embeddings,
        index=index,
        generator=generator or ChatCompletionGenerator(),
        max_top_k=settings.max_top_k,
        context_char_budget=settings.context_char_budget,
        embedding_timeout=settings.query_embedding_timeout_seconds,
        query_timeout=settings.vector_query_timeout_seconds,
        generation_timeout=settings.llm_timeout_seconds,
    )

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        pool=pool,
        index=index,
        orchestrator=orchestrator,
        query_engine=query_engine,
        rate_limiter=rate_limiter or build_rate_limiter(settings),
    )


# Set by the app lifespan
_services: Services | None = None


def get_services() -> Services:
    """Dependency to get the service container."""
    if _services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _services


def set_services(services: Services | None):
    """Set the service container instance."""
    global _services
    _services = services

"""
Service wiring.

Builds the object graph shared by the API and the Celery workers. Engines,
Redis clients and HTTP clients are bound to the event loop that first uses
them, so a container lives inside one loop:

- API: one pooled container for the lifetime of the app (see main.lifespan)
- Workers: one unpooled container per task run (worker_container)

The local sentence-transformers model is loop-independent and expensive to
load, so it is kept once per process.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator, Optional

from openai import AsyncOpenAI
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chronos.core.config import Settings, settings as default_settings
from chronos.db.redis import close_redis, create_redis
from chronos.db.session import create_engine, create_session_factory, dispose_engine
from chronos.services.cache import RedisCacheStore, SearchCache
from chronos.services.object_store import LocalObjectStore
from chronos.services.pipeline.locks import ItemLock, OwnerLimiter
from chronos.services.pipeline.orchestrator import PipelineOrchestrator
from chronos.services.pipeline.transport import CeleryEventPublisher, EventPublisher
from chronos.services.processors.chunker import ChunkingConfig, TranscriptChunker
from chronos.services.processors.embedder import (
    EmbeddingClient,
    EmbeddingProvider,
    SentenceTransformerProvider,
    build_embedding_provider,
    build_openai_client,
)
from chronos.services.rag.retriever import RetrievalEngine
from chronos.services.repository import ContentRepository
from chronos.services.transcript_service import build_transcript_adapter
from chronos.services.usage_tracker import UsageTracker
from chronos.services.vector_store import PgVectorStore

_local_provider: Optional[SentenceTransformerProvider] = None


def get_embedding_provider(cfg: Settings, openai_client: Optional[AsyncOpenAI] = None) -> EmbeddingProvider:
    """Process-wide local model, or a hosted provider on this loop's client."""
    global _local_provider

    if cfg.EMBEDDING_PROVIDER != "sentence_transformers":
        return build_embedding_provider(cfg, openai_client)

    if _local_provider is None:
        _local_provider = build_embedding_provider(cfg)
    return _local_provider


async def shutdown_embedding_provider() -> None:
    global _local_provider

    if _local_provider is not None:
        await _local_provider.shutdown()
        _local_provider = None


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    redis: Redis
    session_factory: async_sessionmaker[AsyncSession]
    repository: ContentRepository
    cache: SearchCache
    usage: UsageTracker
    embedder: EmbeddingClient
    orchestrator: PipelineOrchestrator
    retrieval: RetrievalEngine
    openai_client: Optional[AsyncOpenAI] = None

    async def aclose(self) -> None:
        if self.openai_client is not None:
            await self.openai_client.close()
        await close_redis(self.redis)
        await dispose_engine(self.engine)


def build_container(
    cfg: Optional[Settings] = None,
    pooled: bool = True,
    publisher: Optional[EventPublisher] = None,
) -> Container:
    cfg = cfg or default_settings

    engine = create_engine(cfg, pooled=pooled)
    session_factory = create_session_factory(engine)
    redis = create_redis(cfg)

    # One hosted client per container, shared by embeddings and Whisper
    openai_client = None
    if cfg.OPENAI_API_KEY or cfg.EMBEDDING_PROVIDER == "openai":
        openai_client = build_openai_client(cfg)

    repository = ContentRepository(session_factory)
    cache = SearchCache(RedisCacheStore(redis))
    usage = UsageTracker(session_factory)
    embedder = EmbeddingClient.from_settings(get_embedding_provider(cfg, openai_client), cfg)

    if publisher is None:
        from chronos.workers.celery_app import celery_app

        publisher = CeleryEventPublisher(celery_app)

    orchestrator = PipelineOrchestrator(
        repository=repository,
        transcripts=build_transcript_adapter(
            LocalObjectStore(cfg.OBJECT_STORE_ROOT), cfg, openai_client=openai_client
        ),
        chunker=TranscriptChunker(ChunkingConfig.from_settings(cfg)),
        embedder=embedder,
        cache=cache,
        publisher=publisher,
        item_locks=ItemLock(redis, timeout=cfg.ITEM_LOCK_TIMEOUT_SECONDS, wait=cfg.ITEM_LOCK_WAIT_SECONDS),
        owner_limiter=OwnerLimiter(
            redis,
            max_concurrent=cfg.OWNER_MAX_CONCURRENT_JOBS,
            slot_ttl=cfg.OWNER_SLOT_TTL_SECONDS,
        ),
        usage=usage,
        stuck_after=timedelta(minutes=cfg.STUCK_CONTENT_MINUTES),
    )

    retrieval = RetrievalEngine.from_settings(
        embedder=embedder,
        vector_store=PgVectorStore(session_factory),
        signals=repository,
        cache=cache,
        cfg=cfg,
    )

    return Container(
        settings=cfg,
        engine=engine,
        redis=redis,
        session_factory=session_factory,
        repository=repository,
        cache=cache,
        usage=usage,
        embedder=embedder,
        orchestrator=orchestrator,
        retrieval=retrieval,
        openai_client=openai_client,
    )


@asynccontextmanager
async def worker_container(cfg: Optional[Settings] = None) -> AsyncIterator[Container]:
    """Short-lived container for one task run."""
    container = build_container(cfg, pooled=False)
    try:
        yield container
    finally:
        await container.aclose()

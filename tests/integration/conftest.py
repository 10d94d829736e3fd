"""
Integration fixtures: a real PostgreSQL (with pgvector) at DATABASE_URL.

Tables are created with metadata.create_all and truncated after each test.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import text

from chronos.core.config import settings
from chronos.db.session import create_engine, create_session_factory, init_db
from chronos.services.cache import SearchCache
from chronos.services.pipeline.orchestrator import PipelineOrchestrator
from chronos.services.processors.chunker import ChunkingConfig, TranscriptChunker
from chronos.services.processors.embedder import EmbeddingClient
from chronos.services.repository import ContentRepository
from chronos.services.usage_tracker import UsageTracker
from chronos.services.vector_store import PgVectorStore
from tests.fakes import (
    FakeEmbeddingProvider,
    FakeItemLock,
    FakeOwnerLimiter,
    FakeTranscripts,
    InMemoryCacheStore,
    RecordingPublisher,
)


@pytest_asyncio.fixture
async def engine():
    engine = create_engine(settings, pooled=False)
    await init_db(engine, create_tables=True)
    yield engine
    async with engine.begin() as conn:
        await conn.execute(text(
            "TRUNCATE content_views, content_chunks, content_items, usage_metrics RESTART IDENTITY CASCADE"
        ))
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_repository(session_factory) -> ContentRepository:
    return ContentRepository(session_factory)


@pytest.fixture
def vector_store(session_factory) -> PgVectorStore:
    return PgVectorStore(session_factory)


@pytest.fixture
def usage_tracker(session_factory) -> UsageTracker:
    return UsageTracker(session_factory)


@pytest.fixture
def db_embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider(dimension=settings.EMBEDDING_DIMENSION)


@pytest.fixture
def db_orchestrator(db_repository, db_embedding_provider, usage_tracker):
    async def no_sleep(_seconds):
        return None

    publisher = RecordingPublisher()
    orchestrator = PipelineOrchestrator(
        repository=db_repository,
        transcripts=FakeTranscripts(),
        chunker=TranscriptChunker(ChunkingConfig(min_words=20, max_words=40, overlap_words=5, sentence_lookback_words=10)),
        embedder=EmbeddingClient(db_embedding_provider, batch_size=8, sleep=no_sleep),
        cache=SearchCache(InMemoryCacheStore()),
        publisher=publisher,
        item_locks=FakeItemLock(),
        owner_limiter=FakeOwnerLimiter(max_concurrent=2),
        usage=usage_tracker,
        stuck_after=timedelta(minutes=60),
    )
    return orchestrator, publisher

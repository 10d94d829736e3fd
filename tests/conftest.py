"""
Pytest configuration and fixtures.

Unit tests run against in-memory fakes (tests/fakes.py). Tests marked
``integration`` need PostgreSQL with pgvector at DATABASE_URL and only run
with ``--run-integration``.
"""

from datetime import timedelta

import pytest

from chronos.services.cache import SearchCache
from chronos.services.pipeline.orchestrator import PipelineOrchestrator
from chronos.services.processors.chunker import ChunkingConfig, TranscriptChunker
from chronos.services.processors.embedder import EmbeddingClient
from tests.fakes import (
    FakeEmbeddingProvider,
    FakeItemLock,
    FakeOwnerLimiter,
    FakeRepository,
    FakeTranscripts,
    FakeUsage,
    InMemoryCacheStore,
    RecordingPublisher,
)


# ================================
# Pytest Configuration
# ================================

def pytest_addoption(parser):
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests that need PostgreSQL with pgvector",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ================================
# Pipeline Fixtures
# ================================

@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def cache_store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def search_cache(cache_store) -> SearchCache:
    return SearchCache(cache_store)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def transcripts() -> FakeTranscripts:
    return FakeTranscripts()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(embedding_provider) -> EmbeddingClient:
    async def no_sleep(_seconds):
        return None

    return EmbeddingClient(embedding_provider, batch_size=4, max_retries=1, retry_delay_ms=1, sleep=no_sleep)


@pytest.fixture
def chunker() -> TranscriptChunker:
    return TranscriptChunker(ChunkingConfig(min_words=20, max_words=40, overlap_words=5, sentence_lookback_words=10))


@pytest.fixture
def item_locks() -> FakeItemLock:
    return FakeItemLock()


@pytest.fixture
def owner_limiter() -> FakeOwnerLimiter:
    return FakeOwnerLimiter(max_concurrent=2)


@pytest.fixture
def usage() -> FakeUsage:
    return FakeUsage()


@pytest.fixture
def orchestrator(
    repository,
    transcripts,
    chunker,
    embedder,
    search_cache,
    publisher,
    item_locks,
    owner_limiter,
    usage,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        repository=repository,
        transcripts=transcripts,
        chunker=chunker,
        embedder=embedder,
        cache=search_cache,
        publisher=publisher,
        item_locks=item_locks,
        owner_limiter=owner_limiter,
        usage=usage,
        stuck_after=timedelta(minutes=60),
    )

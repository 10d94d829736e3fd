"""
API test fixtures.

The app is created without running its lifespan; services come from the
in-memory fakes through dependency overrides.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chronos.api.deps import get_orchestrator, get_repository, get_retrieval_engine, get_usage_tracker
from chronos.main import create_app


@pytest.fixture
def retrieval_engine():
    engine = MagicMock()
    engine.search = AsyncMock()
    engine.metrics = AsyncMock(return_value={"cache_hits": 3, "cache_misses": 1, "hit_rate": 0.75})
    return engine


@pytest.fixture
def app(orchestrator, repository, usage, retrieval_engine):
    application = create_app()
    application.dependency_overrides[get_orchestrator] = lambda: orchestrator
    application.dependency_overrides[get_repository] = lambda: repository
    application.dependency_overrides[get_usage_tracker] = lambda: usage
    application.dependency_overrides[get_retrieval_engine] = lambda: retrieval_engine
    return application


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

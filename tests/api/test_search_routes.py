"""
Tests for the search endpoints and app-level handlers.
"""

import pytest

from chronos.core.config import settings
from chronos.core.exceptions import SearchError
from chronos.services.rag.retriever import SearchOutcome
from tests.services.helpers import make_result

PREFIX = settings.API_V1_PREFIX


@pytest.mark.asyncio
class TestSearchEndpoint:
    """POST /search"""

    async def test_search(self, client, retrieval_engine):
        retrieval_engine.search.return_value = SearchOutcome(
            results=[make_result(rank=1, chunk_id=4), make_result(rank=2, chunk_id=9)],
            cached=False,
        )

        response = await client.post(f"{PREFIX}/search", json={
            "query": "refund policy",
            "options": {"match_count": 2, "owner_id": "creator-1"},
        })

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["cached"] is False
        assert [r["chunk_id"] for r in data["results"]] == [4, 9]
        query, options = retrieval_engine.search.await_args.args
        assert query == "refund policy"
        assert options.match_count == 2
        assert options.owner_id == "creator-1"

    async def test_unknown_option_rejected(self, client):
        response = await client.post(f"{PREFIX}/search", json={"query": "q", "options": {"top_k": 3}})
        assert response.status_code == 422

    async def test_blank_query_is_bad_request(self, client, retrieval_engine):
        retrieval_engine.search.side_effect = ValueError("query must not be empty")

        response = await client.post(f"{PREFIX}/search", json={"query": "   "})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"

    async def test_search_failure_is_503_not_empty(self, client, retrieval_engine):
        retrieval_engine.search.side_effect = SearchError("Query embedding failed")

        response = await client.post(f"{PREFIX}/search", json={"query": "q"})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "search_failed"

    async def test_metrics(self, client):
        response = await client.get(f"{PREFIX}/search/metrics")

        assert response.status_code == 200
        assert response.json() == {"cache_hits": 3, "cache_misses": 1, "hit_rate": 0.75}


@pytest.mark.asyncio
class TestAppEndpoints:
    """Root and health without a running container."""

    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert "version" in response.json()

    async def test_health_without_container(self, client):
        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

"""
Search API Routes

Semantic search over completed content, plus cache metrics.
"""

from fastapi import APIRouter, Depends

from chronos.api.deps import get_retrieval_engine
from chronos.schemas.search import CacheMetricsResponse, SearchRequest, SearchResponse
from chronos.services.rag.retriever import RetrievalEngine

router = APIRouter(prefix="/search", tags=["search"])


@router.post("", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """
    Ranked semantic search.

    Only fully processed items are searched. Results are cached per owner
    for ``options.cache_ttl`` seconds unless ``options.enable_cache`` is off.
    """
    outcome = await engine.search(request.query, request.options)
    return SearchResponse(
        query=request.query,
        results=outcome.results,
        total=len(outcome.results),
        cached=outcome.cached,
    )


@router.get("/metrics", response_model=CacheMetricsResponse)
async def cache_metrics(
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """Search cache hit/miss counters."""
    return await engine.metrics()

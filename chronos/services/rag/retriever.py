"""
Retrieval Engine

search(query, options) -> ranked SearchResult list

Pipeline:
---------
1. Cache lookup under a key derived from the normalized query and the
   result-affecting options. A hit is returned as-is.
2. Miss: embed the query (single-item batch through the Embedding Client)
   and fetch match_count x SEARCH_CANDIDATE_MULTIPLIER candidates above the
   similarity threshold, bounded by SEARCH_MAX_CANDIDATES.
3. Rank by similarity + recency + popularity + personalization.
4. Deduplicate near-identical chunks.
5. Truncate to match_count, cache, return.

Errors:
-------
- Query embedding failure or vector search failure/timeout: SearchError.
  Never an empty list, which would read as "nothing relevant".
- Cache failures: logged; reads degrade to a miss, writes are dropped.
- No candidates: [] (a normal outcome).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError

from chronos.core.config import Settings, settings as default_settings
from chronos.core.exceptions import CacheUnavailableError, EmbeddingError, SearchError
from chronos.core.logging import get_logger
from chronos.schemas.search import SearchOptions, SearchResult
from chronos.services.cache import SearchCache
from chronos.services.rag.ranking import Ranker, RankedCandidate, deduplicate
from chronos.services.repository import ContentSignals
from chronos.services.vector_store import VectorCandidate

logger = get_logger(__name__)


class QueryEmbedder(Protocol):
    async def embed_query(self, text: str) -> List[float]:
        ...


class VectorSearcher(Protocol):
    async def similarity_search(
        self,
        query_embedding: Sequence[float],
        limit: int,
        similarity_threshold: float = 0.0,
        owner_id: Optional[str] = None,
        content_ids: Optional[Sequence[int]] = None,
    ) -> List[VectorCandidate]:
        ...


class SignalSource(Protocol):
    async def get_ranking_signals(
        self,
        content_ids: Sequence[int],
        viewer_id: Optional[str] = None,
    ) -> Dict[int, ContentSignals]:
        ...


@dataclass
class SearchOutcome:
    results: List[SearchResult]
    cached: bool


class RetrievalEngine:
    """
    Cached, ranked semantic search.

    Safe for any number of concurrent callers; the only shared mutable state
    is the cache, whose writes are idempotent.

    Usage:
    ------
    engine = RetrievalEngine(embedder, vector_store, repository, cache)
    outcome = await engine.search("refund policy", SearchOptions(match_count=5))
    """

    def __init__(
        self,
        embedder: QueryEmbedder,
        vector_store: VectorSearcher,
        signals: SignalSource,
        cache: SearchCache,
        ranker: Optional[Ranker] = None,
        candidate_multiplier: int = 3,
        max_candidates: int = 20,
        search_timeout: float = 10.0,
    ):
        if candidate_multiplier < 1:
            raise ValueError("candidate_multiplier must be >= 1")

        self.embedder = embedder
        self.vector_store = vector_store
        self.signals = signals
        self.cache = cache
        self.ranker = ranker or Ranker()
        self.candidate_multiplier = candidate_multiplier
        self.max_candidates = max_candidates
        self.search_timeout = search_timeout

    @classmethod
    def from_settings(
        cls,
        embedder: QueryEmbedder,
        vector_store: VectorSearcher,
        signals: SignalSource,
        cache: SearchCache,
        cfg: Optional[Settings] = None,
    ) -> "RetrievalEngine":
        cfg = cfg or default_settings
        return cls(
            embedder,
            vector_store,
            signals,
            cache,
            ranker=Ranker.from_settings(cfg),
            candidate_multiplier=cfg.SEARCH_CANDIDATE_MULTIPLIER,
            max_candidates=cfg.SEARCH_MAX_CANDIDATES,
            search_timeout=cfg.SEARCH_TIMEOUT_SECONDS,
        )

    def candidate_limit(self, match_count: int) -> int:
        """match_count x k, never fewer than match_count."""
        return min(match_count * self.candidate_multiplier, max(self.max_candidates, match_count))

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchOutcome:
        """
        Run a search.

        Raises:
            ValueError: blank query
            SearchError: the search could not be performed
        """
        options = options or SearchOptions()
        if not query or not query.strip():
            raise ValueError("query must not be empty")

        started = time.perf_counter()

        cache_key: Optional[str] = None
        if options.enable_cache:
            cache_key, cached = await self._cache_lookup(query, options)
            if cached is not None:
                await self._count(self.cache.record_hit)
                logger.info("search_cache_hit", result_count=len(cached))
                return SearchOutcome(results=cached, cached=True)

        candidates = await self._candidates(query, options)

        results: List[SearchResult] = []
        if candidates:
            signals = await self._signals(candidates, options)
            ranked = self.ranker.rank(
                candidates,
                signals,
                boost_recent=options.boost_recent,
                boost_popular=options.boost_popular,
                personalize=options.boost_for_owner is not None,
            )
            if options.deduplicate:
                ranked = deduplicate(ranked, options.dedup_threshold)
            results = to_results(ranked[:options.match_count])

        if options.enable_cache:
            if cache_key is not None:
                try:
                    await self.cache.set_results(cache_key, results, options.cache_ttl)
                except CacheUnavailableError as e:
                    logger.warning("search_cache_write_failed", error=str(e))
            await self._count(self.cache.record_miss)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "search_completed",
            result_count=len(results),
            candidate_count=len(candidates),
            elapsed_ms=elapsed_ms,
        )
        return SearchOutcome(results=results, cached=False)

    async def metrics(self) -> dict:
        """Cache hit/miss counters (zeros when the cache is unreachable)."""
        try:
            return await self.cache.metrics()
        except CacheUnavailableError as e:
            logger.warning("search_metrics_unavailable", error=str(e))
            return {"cache_hits": 0, "cache_misses": 0, "hit_rate": 0.0}

    # ========================================
    # Steps
    # ========================================

    async def _cache_lookup(self, query: str, options: SearchOptions):
        """(key, results); key is None when the cache cannot be used at all."""
        try:
            key = await self.cache.key_for(query, options)
        except CacheUnavailableError as e:
            logger.warning("search_cache_unavailable", error=str(e))
            return None, None
        try:
            return key, await self.cache.get_results(key)
        except CacheUnavailableError as e:
            logger.warning("search_cache_read_failed", error=str(e))
            return key, None

    async def _candidates(self, query: str, options: SearchOptions) -> List[VectorCandidate]:
        try:
            query_vector = await self.embedder.embed_query(query)
        except EmbeddingError as e:
            logger.error("query_embedding_failed", kind=e.kind, error=str(e))
            raise SearchError(f"Query embedding failed: {e}") from e

        try:
            return await asyncio.wait_for(
                self.vector_store.similarity_search(
                    query_vector,
                    limit=self.candidate_limit(options.match_count),
                    similarity_threshold=options.similarity_threshold,
                    owner_id=options.owner_id,
                    content_ids=options.filter_ids,
                ),
                timeout=self.search_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("similarity_search_timeout", timeout_seconds=self.search_timeout)
            raise SearchError(f"Similarity search timed out after {self.search_timeout}s") from e
        except SQLAlchemyError as e:
            logger.error("similarity_search_failed", error=str(e))
            raise SearchError(f"Similarity search failed: {e}") from e

    async def _signals(self, candidates: Sequence[VectorCandidate], options: SearchOptions) -> Dict[int, ContentSignals]:
        if not options.boost_popular and options.boost_for_owner is None:
            return {}
        content_ids = sorted({c.content_id for c in candidates})
        try:
            return await self.signals.get_ranking_signals(content_ids, viewer_id=options.boost_for_owner)
        except SQLAlchemyError as e:
            # Ranking quality only; similarity ordering still holds
            logger.warning("ranking_signals_unavailable", error=str(e))
            return {}

    @staticmethod
    async def _count(counter) -> None:
        try:
            await counter()
        except CacheUnavailableError as e:
            logger.warning("search_metrics_update_failed", error=str(e))


def to_results(ranked: Sequence[RankedCandidate]) -> List[SearchResult]:
    return [
        SearchResult(
            rank=position,
            chunk_id=item.candidate.chunk_id,
            content_id=item.candidate.content_id,
            owner_id=item.candidate.owner_id,
            content_title=item.candidate.content_title,
            chunk_index=item.candidate.chunk_index,
            chunk_text=item.candidate.chunk_text,
            start_time_seconds=item.candidate.start_time_seconds,
            end_time_seconds=item.candidate.end_time_seconds,
            similarity=round(item.candidate.similarity, 6),
            rank_score=item.rank_score,
            signals=item.signals,
            content_created_at=item.candidate.content_created_at,
        )
        for position, item in enumerate(ranked, 1)
    ]

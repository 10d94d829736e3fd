"""
Pydantic schemas for semantic search.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chronos.core.config import settings


# ========================================
# Options
# ========================================

class SearchOptions(BaseModel):
    """
    Knobs for one search call.

    Everything except enable_cache and cache_ttl affects the result list and
    therefore goes into the cache key.
    """

    model_config = ConfigDict(extra="forbid")

    match_count: int = Field(
        default_factory=lambda: settings.SEARCH_MATCH_COUNT,
        ge=1,
        le=50,
        description="Number of results to return"
    )
    similarity_threshold: float = Field(
        default_factory=lambda: settings.SEARCH_SIMILARITY_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for a candidate"
    )
    owner_id: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Restrict to one owner's content set"
    )
    filter_ids: Optional[List[int]] = Field(
        default=None,
        description="Restrict to these content item ids"
    )
    boost_recent: bool = True
    boost_popular: bool = True
    boost_for_owner: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Viewer whose history drives the personalization boost"
    )
    enable_cache: bool = True
    cache_ttl: int = Field(
        default_factory=lambda: settings.SEARCH_CACHE_TTL_SECONDS,
        ge=1,
        le=86400,
    )
    deduplicate: bool = True
    dedup_threshold: float = Field(
        default_factory=lambda: settings.SEARCH_DEDUP_THRESHOLD,
        gt=0.0,
        le=1.0,
    )

    @field_validator("filter_ids")
    @classmethod
    def canonical_filter_ids(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        """Sort and de-duplicate so equivalent filters share a cache key."""
        if v is None:
            return None
        return sorted(set(v))


# ========================================
# Results
# ========================================

class RankBreakdown(BaseModel):
    """Individual ranking signals, each in [0, 1]."""

    similarity: float
    recency: float = 0.0
    popularity: float = 0.0
    personalization: float = 0.0


class SearchResult(BaseModel):
    """One ranked chunk."""

    rank: int = Field(ge=1)
    chunk_id: int
    content_id: int
    owner_id: str
    content_title: str
    chunk_index: int
    chunk_text: str
    start_time_seconds: float
    end_time_seconds: float
    similarity: float
    rank_score: float
    signals: RankBreakdown
    content_created_at: datetime


# ========================================
# API
# ========================================

class SearchRequest(BaseModel):
    """Request schema for POST /search."""

    query: str = Field(min_length=1, max_length=2000)
    options: SearchOptions = Field(default_factory=SearchOptions)


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResult]
    total: int
    cached: bool = Field(description="Served from the result cache")


class CacheMetricsResponse(BaseModel):
    cache_hits: int
    cache_misses: int
    hit_rate: float

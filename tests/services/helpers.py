"""Builders shared by the search tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import numpy as np

from chronos.schemas.search import RankBreakdown, SearchResult
from chronos.services.vector_store import VectorCandidate

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def make_candidate(
    chunk_id: int = 1,
    content_id: int = 1,
    similarity: float = 0.8,
    chunk_index: int = 0,
    owner_id: str = "creator-1",
    age_days: float = 0.0,
    embedding: Optional[Sequence[float]] = None,
) -> VectorCandidate:
    if embedding is None:
        # Distinct unit axis per chunk so nothing deduplicates by accident
        embedding = np.zeros(64, dtype=np.float32)
        embedding[chunk_id % 64] = 1.0
    return VectorCandidate(
        chunk_id=chunk_id,
        content_id=content_id,
        owner_id=owner_id,
        content_title=f"Video {content_id}",
        content_created_at=NOW - timedelta(days=age_days),
        chunk_index=chunk_index,
        chunk_text=f"chunk {chunk_id} of content {content_id}",
        start_time_seconds=float(chunk_index * 30),
        end_time_seconds=float(chunk_index * 30 + 30),
        similarity=similarity,
        embedding=np.asarray(embedding, dtype=np.float32),
    )


def make_result(rank: int = 1, chunk_id: int = 1, content_id: int = 1, rank_score: float = 0.5) -> SearchResult:
    return SearchResult(
        rank=rank,
        chunk_id=chunk_id,
        content_id=content_id,
        owner_id="creator-1",
        content_title=f"Video {content_id}",
        chunk_index=0,
        chunk_text="some text",
        start_time_seconds=0.0,
        end_time_seconds=30.0,
        similarity=0.8,
        rank_score=rank_score,
        signals=RankBreakdown(similarity=0.8),
        content_created_at=NOW,
    )

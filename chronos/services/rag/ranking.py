"""
Multi-factor ranking and deduplication of search candidates.

Signals (each in [0, 1]):
-------------------------
1. Similarity: cosine similarity from the vector store
2. Recency: exp(-age_days / RECENCY_DECAY_DAYS) on the content item's age
3. Popularity: views and AI interactions across all viewers, capped
4. Personalization: exp(-days / PERSONALIZATION_DECAY_DAYS) since the
   requesting viewer last consumed the content item; 0 if never

rank_score = weighted sum, weights normalized to 1.0. Ties are broken by
raw similarity, then chunk index (then ids), so equal input always yields
the same order.

Deduplication walks the ranked list greedily and drops a candidate whose
embedding has cosine similarity >= dedup_threshold with one already kept.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from chronos.core.config import Settings, settings as default_settings
from chronos.core.logging import get_logger
from chronos.db.base import utcnow
from chronos.schemas.search import RankBreakdown, SearchResult
from chronos.services.repository import ContentSignals
from chronos.services.vector_store import VectorCandidate

logger = get_logger(__name__)


SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RankingWeights:
    similarity: float = 0.6
    recency: float = 0.15
    popularity: float = 0.15
    personalization: float = 0.1

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "RankingWeights":
        cfg = cfg or default_settings
        return cls(
            similarity=cfg.RANK_WEIGHT_SIMILARITY,
            recency=cfg.RANK_WEIGHT_RECENCY,
            popularity=cfg.RANK_WEIGHT_POPULARITY,
            personalization=cfg.RANK_WEIGHT_PERSONALIZATION,
        )

    def normalized(self) -> "RankingWeights":
        total = self.similarity + self.recency + self.popularity + self.personalization
        if total <= 0:
            # Nothing configured: rank purely by similarity
            return RankingWeights(1.0, 0.0, 0.0, 0.0)
        if abs(total - 1.0) > 0.01:
            logger.warning("ranking_weights_normalized", total=round(total, 3))
        return RankingWeights(
            similarity=self.similarity / total,
            recency=self.recency / total,
            popularity=self.popularity / total,
            personalization=self.personalization / total,
        )


@dataclass
class RankedCandidate:
    candidate: VectorCandidate
    rank_score: float
    signals: RankBreakdown


# ========================================
# Signals
# ========================================

def _days_between(earlier: Optional[datetime], now: datetime) -> Optional[float]:
    if earlier is None:
        return None
    return max(0.0, (now - earlier).total_seconds() / SECONDS_PER_DAY)


def recency_score(created_at: Optional[datetime], now: datetime, decay_days: float) -> float:
    age = _days_between(created_at, now)
    if age is None or decay_days <= 0:
        return 0.0
    return max(0.0, min(1.0, math.exp(-age / decay_days)))


def popularity_score(views: int, interactions: int, cap: int) -> float:
    """
    Blend of view and interaction volume.

    Views saturate at ``cap``, interactions (rarer, stronger intent) at half
    of it; interactions carry the larger share.
    """
    if cap <= 0:
        return 0.0
    view_score = min(views / cap, 1.0)
    interaction_score = min(interactions / max(cap / 2, 1), 1.0)
    return max(0.0, min(1.0, (3 * view_score + 4 * interaction_score) / 7))


def personalization_score(last_viewed_at: Optional[datetime], now: datetime, decay_days: float) -> float:
    days = _days_between(last_viewed_at, now)
    if days is None or decay_days <= 0:
        return 0.0
    return max(0.0, min(1.0, math.exp(-days / decay_days)))


# ========================================
# Ranker
# ========================================

class Ranker:
    """
    Turns raw candidates into an ordered, scored list.

    Usage:
    ------
    ranker = Ranker.from_settings()
    ranked = ranker.rank(candidates, signals, boost_recent=True, boost_popular=True, personalize=False)
    """

    def __init__(
        self,
        weights: Optional[RankingWeights] = None,
        recency_decay_days: float = 90.0,
        popularity_cap: int = 1000,
        personalization_decay_days: float = 7.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.weights = (weights or RankingWeights()).normalized()
        self.recency_decay_days = recency_decay_days
        self.popularity_cap = popularity_cap
        self.personalization_decay_days = personalization_decay_days
        self._clock = clock

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "Ranker":
        cfg = cfg or default_settings
        return cls(
            weights=RankingWeights.from_settings(cfg),
            recency_decay_days=cfg.RECENCY_DECAY_DAYS,
            popularity_cap=cfg.POPULARITY_CAP,
            personalization_decay_days=cfg.PERSONALIZATION_DECAY_DAYS,
        )

    def rank(
        self,
        candidates: Sequence[VectorCandidate],
        signals: Dict[int, ContentSignals],
        boost_recent: bool = True,
        boost_popular: bool = True,
        personalize: bool = False,
    ) -> List[RankedCandidate]:
        now = self._clock()
        w = self.weights
        ranked: List[RankedCandidate] = []

        for candidate in candidates:
            content_signals = signals.get(candidate.content_id) or ContentSignals()
            breakdown = RankBreakdown(
                similarity=candidate.similarity,
                recency=(
                    recency_score(candidate.content_created_at, now, self.recency_decay_days)
                    if boost_recent else 0.0
                ),
                popularity=(
                    popularity_score(
                        content_signals.total_views,
                        content_signals.total_interactions,
                        self.popularity_cap,
                    )
                    if boost_popular else 0.0
                ),
                personalization=(
                    personalization_score(
                        content_signals.viewer_last_viewed_at,
                        now,
                        self.personalization_decay_days,
                    )
                    if personalize else 0.0
                ),
            )
            score = (
                w.similarity * breakdown.similarity
                + w.recency * breakdown.recency
                + w.popularity * breakdown.popularity
                + w.personalization * breakdown.personalization
            )
            ranked.append(RankedCandidate(candidate=candidate, rank_score=round(score, 6), signals=breakdown))

        ranked.sort(key=sort_key)
        return ranked


def sort_key(item: RankedCandidate):
    c = item.candidate
    return (-item.rank_score, -c.similarity, c.chunk_index, c.content_id, c.chunk_id)


# ========================================
# Deduplication
# ========================================

def _unit(vector: np.ndarray) -> Optional[np.ndarray]:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return None
    return vector / norm


def deduplicate(ranked: Sequence[RankedCandidate], threshold: float) -> List[RankedCandidate]:
    """Greedy near-duplicate suppression in rank order."""
    kept: List[RankedCandidate] = []
    kept_vectors: List[np.ndarray] = []

    for item in ranked:
        vector = _unit(np.asarray(item.candidate.embedding, dtype=np.float32))
        if vector is not None and kept_vectors:
            similarities = np.stack(kept_vectors) @ vector
            if float(similarities.max()) >= threshold:
                continue
        kept.append(item)
        if vector is not None:
            kept_vectors.append(vector)

    dropped = len(ranked) - len(kept)
    if dropped:
        logger.debug("near_duplicates_dropped", dropped=dropped)
    return kept


# ========================================
# Result-list helpers
# ========================================

def _renumber(results: List[SearchResult]) -> List[SearchResult]:
    return [r.model_copy(update={"rank": i}) for i, r in enumerate(results, 1)]


def _result_key(result: SearchResult):
    return (-result.rank_score, -result.similarity, result.chunk_index, result.content_id, result.chunk_id)


def boost_content(results: Sequence[SearchResult], content_id: int, factor: float = 1.2) -> List[SearchResult]:
    """Scale one content item's scores (follow-up questions about the same video)."""
    boosted = [
        r.model_copy(update={"rank_score": round(r.rank_score * factor, 6)}) if r.content_id == content_id else r
        for r in results
    ]
    boosted.sort(key=_result_key)
    return _renumber(boosted)


def limit_per_content(results: Sequence[SearchResult], max_per_content: int = 2) -> List[SearchResult]:
    """Keep at most ``max_per_content`` results per content item, in order."""
    counts: Dict[int, int] = {}
    diverse: List[SearchResult] = []
    for result in results:
        count = counts.get(result.content_id, 0)
        if count < max_per_content:
            diverse.append(result)
            counts[result.content_id] = count + 1
    return _renumber(diverse)


def filter_by_rank_score(results: Sequence[SearchResult], min_score: float) -> List[SearchResult]:
    return _renumber([r for r in results if r.rank_score >= min_score])

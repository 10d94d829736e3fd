"""
Tests for multi-factor ranking and deduplication.
"""

import math
from datetime import timedelta

import numpy as np
import pytest

from chronos.services.rag.ranking import (
    Ranker,
    RankingWeights,
    boost_content,
    deduplicate,
    filter_by_rank_score,
    limit_per_content,
    personalization_score,
    popularity_score,
    recency_score,
)
from chronos.services.repository import ContentSignals
from tests.services.helpers import NOW, make_candidate, make_result


def similarity_only() -> Ranker:
    return Ranker(weights=RankingWeights(1.0, 0.0, 0.0, 0.0), clock=lambda: NOW)


class TestSignals:
    """Individual signal functions."""

    def test_recency_decays_exponentially(self):
        assert recency_score(NOW, NOW, 90) == 1.0
        assert recency_score(NOW - timedelta(days=90), NOW, 90) == pytest.approx(math.exp(-1))
        assert recency_score(None, NOW, 90) == 0.0

    def test_recency_future_dates_clamp_to_one(self):
        assert recency_score(NOW + timedelta(days=3), NOW, 90) == 1.0

    def test_popularity_bounds(self):
        assert popularity_score(0, 0, 1000) == 0.0
        assert popularity_score(5000, 5000, 1000) == 1.0
        assert popularity_score(10, 10, 0) == 0.0

    def test_interactions_weigh_more_than_views(self):
        assert popularity_score(0, 100, 1000) > popularity_score(100, 0, 1000)

    def test_personalization(self):
        assert personalization_score(None, NOW, 7) == 0.0
        assert personalization_score(NOW, NOW, 7) == 1.0
        assert personalization_score(NOW - timedelta(days=7), NOW, 7) == pytest.approx(math.exp(-1))


class TestWeights:
    """Weight normalization."""

    def test_defaults_sum_to_one(self):
        w = RankingWeights().normalized()
        assert w.similarity + w.recency + w.popularity + w.personalization == pytest.approx(1.0)

    def test_normalizes_arbitrary_weights(self):
        w = RankingWeights(2.0, 1.0, 1.0, 0.0).normalized()
        assert w.similarity == pytest.approx(0.5)
        assert w.recency == pytest.approx(0.25)

    def test_all_zero_falls_back_to_similarity(self):
        w = RankingWeights(0.0, 0.0, 0.0, 0.0).normalized()
        assert w == RankingWeights(1.0, 0.0, 0.0, 0.0)


class TestRanker:
    """Ordering and score composition."""

    def test_orders_by_score(self):
        candidates = [
            make_candidate(chunk_id=1, similarity=0.6),
            make_candidate(chunk_id=2, similarity=0.9),
            make_candidate(chunk_id=3, similarity=0.75),
        ]
        ranked = similarity_only().rank(candidates, {})
        assert [r.candidate.chunk_id for r in ranked] == [2, 3, 1]
        assert ranked[0].rank_score == pytest.approx(0.9)

    def test_scores_stay_in_unit_interval(self):
        candidates = [make_candidate(chunk_id=i, similarity=s) for i, s in enumerate([0.2, 0.5, 1.0], 1)]
        signals = {1: ContentSignals(total_views=10**6, total_interactions=10**6, viewer_last_viewed_at=NOW)}
        ranked = Ranker(clock=lambda: NOW).rank(candidates, signals, personalize=True)
        for item in ranked:
            assert 0.0 <= item.rank_score <= 1.0

    def test_recent_content_beats_old_at_equal_similarity(self):
        ranker = Ranker(weights=RankingWeights(0.5, 0.5, 0.0, 0.0), clock=lambda: NOW)
        candidates = [
            make_candidate(chunk_id=1, content_id=1, similarity=0.8, age_days=365),
            make_candidate(chunk_id=2, content_id=2, similarity=0.8, age_days=1),
        ]
        ranked = ranker.rank(candidates, {})
        assert ranked[0].candidate.content_id == 2

    def test_disabled_boosts_zero_their_signals(self):
        ranker = Ranker(clock=lambda: NOW)
        signals = {1: ContentSignals(total_views=500, total_interactions=50)}
        ranked = ranker.rank([make_candidate()], signals, boost_recent=False, boost_popular=False)
        assert ranked[0].signals.recency == 0.0
        assert ranked[0].signals.popularity == 0.0
        assert ranked[0].signals.personalization == 0.0

    def test_personalization_uses_viewer_history(self):
        ranker = Ranker(weights=RankingWeights(0.5, 0.0, 0.0, 0.5), clock=lambda: NOW)
        candidates = [
            make_candidate(chunk_id=1, content_id=1, similarity=0.8),
            make_candidate(chunk_id=2, content_id=2, similarity=0.8),
        ]
        signals = {2: ContentSignals(viewer_last_viewed_at=NOW - timedelta(days=1))}
        ranked = ranker.rank(candidates, signals, personalize=True)
        assert ranked[0].candidate.content_id == 2
        assert ranked[0].signals.personalization > 0

    def test_ties_break_by_chunk_index_then_ids(self):
        candidates = [
            make_candidate(chunk_id=5, content_id=2, similarity=0.7, chunk_index=3),
            make_candidate(chunk_id=4, content_id=1, similarity=0.7, chunk_index=1),
            make_candidate(chunk_id=3, content_id=2, similarity=0.7, chunk_index=1),
        ]
        ranked = similarity_only().rank(candidates, {})
        assert [r.candidate.chunk_id for r in ranked] == [4, 3, 5]

    def test_same_input_same_order(self):
        candidates = [make_candidate(chunk_id=i, similarity=0.5) for i in range(1, 8)]
        first = [r.candidate.chunk_id for r in similarity_only().rank(candidates, {})]
        second = [r.candidate.chunk_id for r in similarity_only().rank(list(reversed(candidates)), {})]
        assert first == second


class TestDeduplicate:
    """Greedy cosine-similarity suppression."""

    def test_drops_near_identical_lower_ranked(self):
        vector = np.ones(8, dtype=np.float32)
        candidates = [
            make_candidate(chunk_id=1, similarity=0.9, embedding=vector),
            make_candidate(chunk_id=2, similarity=0.8, embedding=vector * 2),
            make_candidate(chunk_id=3, similarity=0.7, embedding=np.arange(8, dtype=np.float32)),
        ]
        ranked = similarity_only().rank(candidates, {})

        kept = deduplicate(ranked, threshold=0.95)

        assert [r.candidate.chunk_id for r in kept] == [1, 3]

    def test_keeps_distinct_chunks(self):
        candidates = [make_candidate(chunk_id=i, similarity=0.9 - i / 100) for i in range(1, 5)]
        ranked = similarity_only().rank(candidates, {})
        assert len(deduplicate(ranked, threshold=0.95)) == 4

    def test_zero_vectors_are_kept(self):
        zero = np.zeros(8, dtype=np.float32)
        candidates = [
            make_candidate(chunk_id=1, embedding=zero),
            make_candidate(chunk_id=2, embedding=zero),
        ]
        ranked = similarity_only().rank(candidates, {})
        assert len(deduplicate(ranked, threshold=0.95)) == 2


class TestResultHelpers:
    """Post-processing of result lists."""

    def test_limit_per_content(self):
        results = [
            make_result(rank=1, chunk_id=1, content_id=1),
            make_result(rank=2, chunk_id=2, content_id=1),
            make_result(rank=3, chunk_id=3, content_id=1),
            make_result(rank=4, chunk_id=4, content_id=2),
        ]
        diverse = limit_per_content(results, max_per_content=2)
        assert [r.chunk_id for r in diverse] == [1, 2, 4]
        assert [r.rank for r in diverse] == [1, 2, 3]

    def test_boost_content_reorders(self):
        results = [
            make_result(rank=1, chunk_id=1, content_id=1, rank_score=0.6),
            make_result(rank=2, chunk_id=2, content_id=2, rank_score=0.55),
        ]
        boosted = boost_content(results, content_id=2, factor=1.2)
        assert boosted[0].content_id == 2
        assert boosted[0].rank == 1
        assert boosted[0].rank_score == pytest.approx(0.66)

    def test_filter_by_rank_score(self):
        results = [
            make_result(rank=1, chunk_id=1, rank_score=0.7),
            make_result(rank=2, chunk_id=2, rank_score=0.3),
        ]
        assert [r.chunk_id for r in filter_by_rank_score(results, 0.5)] == [1]

"""
Retrieval: ranked, deduplicated, cached semantic search over chunk embeddings.
"""

from chronos.services.rag.ranking import (
    Ranker,
    RankingWeights,
    boost_content,
    deduplicate,
    filter_by_rank_score,
    limit_per_content,
)
from chronos.services.rag.retriever import RetrievalEngine, SearchOutcome

__all__ = [
    "RetrievalEngine",
    "SearchOutcome",
    "Ranker",
    "RankingWeights",
    "deduplicate",
    "boost_content",
    "limit_per_content",
    "filter_by_rank_score",
]

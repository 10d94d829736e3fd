"""
Vector Store

Chunk rows and their pgvector embeddings in PostgreSQL.

Writes (chunk-set replacement, vector writes) take the caller's session so the
repository can run them in the same transaction as the status change they
belong to. Reads open their own session.

Visibility:
-----------
Similarity search only considers chunks of COMPLETED items with a non-null
embedding. An item being reprocessed leaves COMPLETED before its chunk set is
touched and re-enters it in the same transaction that writes the last vector,
so a reader sees either the old complete set or the new complete set, and
never a mix.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronos.core.logging import get_logger
from chronos.models.content import ContentChunk, ContentItem, ContentStatus
from chronos.schemas.transcripts import TranscriptChunk

logger = get_logger(__name__)


@dataclass
class VectorCandidate:
    """One raw nearest-neighbour hit, before ranking."""

    chunk_id: int
    content_id: int
    owner_id: str
    content_title: str
    content_created_at: datetime
    chunk_index: int
    chunk_text: str
    start_time_seconds: float
    end_time_seconds: float
    similarity: float
    embedding: np.ndarray


async def replace_chunk_rows(
    session: AsyncSession,
    content_id: int,
    chunks: Sequence[TranscriptChunk],
) -> int:
    """
    Delete the item's chunk set and insert the new one.

    Must run inside the caller's transaction. New rows have no embedding.
    """
    await session.execute(
        delete(ContentChunk).where(ContentChunk.content_item_id == content_id)
    )
    session.add_all([
        ContentChunk(
            content_item_id=content_id,
            chunk_index=chunk.chunk_index,
            chunk_text=chunk.chunk_text,
            start_time_seconds=chunk.start_time_seconds,
            end_time_seconds=chunk.end_time_seconds,
            word_count=chunk.word_count,
            chunk_metadata=chunk.metadata,
        )
        for chunk in chunks
    ])
    await session.flush()
    return len(chunks)


async def write_vectors(
    session: AsyncSession,
    vectors: Dict[int, List[float]],
) -> int:
    """Set embeddings by chunk id (bulk UPDATE by primary key)."""
    if not vectors:
        return 0
    await session.execute(
        update(ContentChunk),
        [{"id": chunk_id, "embedding": vector} for chunk_id, vector in vectors.items()],
    )
    return len(vectors)


async def chunk_ids_for(session: AsyncSession, content_id: int) -> List[int]:
    result = await session.execute(
        select(ContentChunk.id)
        .where(ContentChunk.content_item_id == content_id)
        .order_by(ContentChunk.chunk_index)
    )
    return list(result.scalars().all())


class PgVectorStore:
    """
    Nearest-neighbour search over chunk embeddings (cosine).

    Usage:
    ------
    store = PgVectorStore(session_factory)
    candidates = await store.similarity_search(query_vector, limit=15, similarity_threshold=0.7)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def similarity_search(
        self,
        query_embedding: Sequence[float],
        limit: int,
        similarity_threshold: float = 0.0,
        owner_id: Optional[str] = None,
        content_ids: Optional[Sequence[int]] = None,
    ) -> List[VectorCandidate]:
        """
        Top ``limit`` chunks by cosine similarity, at or above the threshold.

        Args:
            query_embedding: Query vector
            limit: Maximum candidates
            similarity_threshold: Minimum cosine similarity
            owner_id: Restrict to one owner's content
            content_ids: Restrict to these content items

        Returns:
            Candidates ordered by descending similarity (empty if none match)
        """
        if content_ids is not None and not content_ids:
            return []

        # pgvector cosine distance = 1 - cosine similarity
        distance = ContentChunk.embedding.cosine_distance(list(query_embedding)).label("distance")

        query = (
            select(
                ContentChunk.id.label("chunk_id"),
                ContentChunk.content_item_id,
                ContentChunk.chunk_index,
                ContentChunk.chunk_text,
                ContentChunk.start_time_seconds,
                ContentChunk.end_time_seconds,
                ContentChunk.embedding,
                ContentItem.owner_id,
                ContentItem.title.label("content_title"),
                ContentItem.created_at.label("content_created_at"),
                distance,
            )
            .select_from(ContentChunk)
            .join(ContentItem, ContentChunk.content_item_id == ContentItem.id)
            .where(
                and_(
                    ContentItem.status == ContentStatus.COMPLETED,
                    ContentChunk.embedding.isnot(None),
                    distance <= 1.0 - similarity_threshold,
                )
            )
        )

        if owner_id is not None:
            query = query.where(ContentItem.owner_id == owner_id)
        if content_ids is not None:
            query = query.where(ContentChunk.content_item_id.in_(list(content_ids)))

        query = query.order_by(distance, ContentChunk.id).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            rows = result.all()

        candidates = [
            VectorCandidate(
                chunk_id=row.chunk_id,
                content_id=row.content_item_id,
                owner_id=row.owner_id,
                content_title=row.content_title,
                content_created_at=row.content_created_at,
                chunk_index=row.chunk_index,
                chunk_text=row.chunk_text,
                start_time_seconds=row.start_time_seconds,
                end_time_seconds=row.end_time_seconds,
                # Distance is in [0, 2]; clamp similarity to [0, 1]
                similarity=max(0.0, min(1.0, 1.0 - float(row.distance))),
                embedding=np.asarray(row.embedding, dtype=np.float32),
            )
            for row in rows
        ]

        logger.debug("similarity_search_finished", candidates=len(candidates), limit=limit)
        return candidates

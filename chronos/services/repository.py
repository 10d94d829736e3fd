"""
Content Repository

The relational metadata store for content items, their chunk sets and their
view records.

Guarantees:
-----------
- Every status change is conditional: the row must be at the expected
  generation and the move must be legal in the state machine table
  (pipeline.state.can_transition), checked under a row lock
  (SELECT ... FOR UPDATE). A guard miss returns None/False instead of
  raising; the caller decides whether that means "already done" or "stale".
- Transcript write + TRANSCRIBING → PROCESSING commit together.
- Chunk-set replacement (delete + insert) + PROCESSING → EMBEDDING commit
  together.
- All vectors + EMBEDDING → COMPLETED commit together.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronos.core.exceptions import ContentNotFoundError, PermanentStageError
from chronos.core.logging import get_logger
from chronos.db.base import utcnow
from chronos.models.content import (
    ContentChunk,
    ContentItem,
    ContentSourceType,
    ContentStatus,
    ContentView,
)
from chronos.schemas.transcripts import TranscriptChunk, TranscriptResult
from chronos.services import vector_store
from chronos.services.pipeline.state import can_transition

logger = get_logger(__name__)


IN_FLIGHT_STATUSES = (
    ContentStatus.TRANSCRIBING,
    ContentStatus.PROCESSING,
    ContentStatus.EMBEDDING,
)


@dataclass
class ContentSignals:
    """Ranking inputs for one content item."""

    total_views: int = 0
    total_interactions: int = 0
    viewer_last_viewed_at: Optional[datetime] = None


@dataclass
class StuckItem:
    content_id: int
    owner_id: str
    generation: int
    status: ContentStatus


class ContentRepository:
    """
    Async repository over content_items / content_chunks / content_views.

    Each method is one unit of work with its own session and transaction.

    Usage:
    ------
    repo = ContentRepository(session_factory)
    item = await repo.create_content(owner_id="creator-1", title="Intro", source_type="youtube", source_ref="dQw4w9WgXcQ")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ========================================
    # Helpers
    # ========================================

    @staticmethod
    async def _lock_item(
        session: AsyncSession,
        content_id: int,
        generation: Optional[int] = None,
    ) -> Optional[ContentItem]:
        """Row-lock the item (at ``generation`` if given), else None."""
        query = select(ContentItem).where(ContentItem.id == content_id)
        if generation is not None:
            query = query.where(ContentItem.generation == generation)
        result = await session.execute(query.with_for_update())
        return result.scalar_one_or_none()

    @classmethod
    async def _lock_for_transition(
        cls,
        session: AsyncSession,
        content_id: int,
        generation: int,
        target: ContentStatus,
        reentrant: bool = False,
    ) -> Optional[ContentItem]:
        """
        Row-lock the item if ``current → target`` is legal at this generation.

        With reentrant=True an item already in ``target`` also matches, so a
        redelivered event can resume the stage it started.
        """
        item = await cls._lock_item(session, content_id, generation)
        if item is None:
            return None
        current = ContentStatus(item.status)
        if reentrant and current == target:
            return item
        if not can_transition(current, target):
            return None
        return item

    @staticmethod
    def _set_status(item: ContentItem, status: ContentStatus) -> None:
        item.status = status
        item.status_changed_at = utcnow()

    @staticmethod
    def _merge_stage_metadata(item: ContentItem, stage: str, values: Dict[str, Any]) -> None:
        # Reassign so the JSONB column is flagged dirty
        item.stage_metadata = {**(item.stage_metadata or {}), stage: values}

    # ========================================
    # Reads
    # ========================================

    async def get(self, content_id: int) -> Optional[ContentItem]:
        async with self.session_factory() as session:
            return await session.get(ContentItem, content_id)

    async def get_chunks(self, content_id: int) -> List[ContentChunk]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ContentChunk)
                .where(ContentChunk.content_item_id == content_id)
                .order_by(ContentChunk.chunk_index)
            )
            return list(result.scalars().all())

    async def count_chunks(self, content_id: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(ContentChunk.id)).where(ContentChunk.content_item_id == content_id)
            )
            return int(result.scalar_one())

    # ========================================
    # Registration & Deletion
    # ========================================

    async def create_content(
        self,
        owner_id: str,
        title: str,
        source_type: ContentSourceType | str,
        source_ref: str = "",
        duration_seconds: Optional[float] = None,
        transcript: Optional[str] = None,
    ) -> ContentItem:
        """Insert a new item in PENDING at generation 0."""
        async with self.session_factory() as session:
            async with session.begin():
                item = ContentItem(
                    owner_id=owner_id,
                    title=title,
                    source_type=ContentSourceType(source_type),
                    source_ref=source_ref,
                    duration_seconds=duration_seconds,
                    transcript=transcript,
                    status=ContentStatus.PENDING,
                    generation=0,
                    status_changed_at=utcnow(),
                )
                session.add(item)
            return item

    async def delete_content(self, content_id: int) -> Optional[str]:
        """
        Delete an item; chunks and views go with it (ON DELETE CASCADE).

        Returns:
            The owner id of the deleted item, or None if it did not exist
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ContentItem)
                    .where(ContentItem.id == content_id)
                    .returning(ContentItem.owner_id)
                )
                return result.scalar_one_or_none()

    # ========================================
    # Stage transitions
    # ========================================

    async def transition_status(
        self,
        content_id: int,
        generation: int,
        to_status: ContentStatus,
    ) -> Optional[ContentItem]:
        """
        Conditional status update along the state machine.

        Re-entering the current status is allowed (a no-op), so redelivery
        of the event that started a stage still matches.

        Returns:
            The updated item, or None if the guard did not match
        """
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_for_transition(
                    session, content_id, generation, to_status, reentrant=True
                )
                if item is None:
                    return None
                if item.status != to_status:
                    self._set_status(item, to_status)
                if to_status == ContentStatus.TRANSCRIBING and item.processing_started_at is None:
                    item.processing_started_at = utcnow()
            return item

    async def save_transcript_and_advance(
        self,
        content_id: int,
        generation: int,
        transcript: TranscriptResult,
        stage_values: Dict[str, Any],
    ) -> bool:
        """Persist the transcript and move TRANSCRIBING → PROCESSING in one commit."""
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_for_transition(
                    session, content_id, generation, ContentStatus.PROCESSING
                )
                if item is None:
                    return False

                item.transcript = transcript.text
                item.transcript_segments = [s.model_dump() for s in transcript.segments]
                item.transcript_language = transcript.language
                item.transcription_method = transcript.method
                if transcript.duration_seconds:
                    item.duration_seconds = transcript.duration_seconds
                self._merge_stage_metadata(item, "transcription", stage_values)
                self._set_status(item, ContentStatus.PROCESSING)
            return True

    async def replace_chunks_and_advance(
        self,
        content_id: int,
        generation: int,
        chunks: Sequence[TranscriptChunk],
        stage_values: Dict[str, Any],
    ) -> bool:
        """Swap the chunk set and move PROCESSING → EMBEDDING in one commit."""
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_for_transition(
                    session, content_id, generation, ContentStatus.EMBEDDING
                )
                if item is None:
                    return False

                await vector_store.replace_chunk_rows(session, content_id, chunks)
                self._merge_stage_metadata(item, "chunking", stage_values)
                self._set_status(item, ContentStatus.EMBEDDING)
            return True

    async def write_embeddings_and_complete(
        self,
        content_id: int,
        generation: int,
        vectors: Dict[int, List[float]],
        stage_values: Dict[str, Any],
    ) -> bool:
        """
        Write every chunk vector and move EMBEDDING → COMPLETED in one commit.

        Raises:
            PermanentStageError: vectors do not cover the item's chunk set
        """
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_for_transition(
                    session, content_id, generation, ContentStatus.COMPLETED
                )
                if item is None:
                    return False

                chunk_ids = await vector_store.chunk_ids_for(session, content_id)
                if not chunk_ids:
                    raise PermanentStageError(f"Content item {content_id} has no chunks to embed")
                if set(chunk_ids) != set(vectors):
                    raise PermanentStageError(
                        f"Embedding set mismatch for content {content_id}: "
                        f"{len(vectors)} vectors for {len(chunk_ids)} chunks"
                    )

                await vector_store.write_vectors(session, vectors)
                self._merge_stage_metadata(item, "embedding", stage_values)
                item.error_message = None
                item.processing_completed_at = utcnow()
                self._set_status(item, ContentStatus.COMPLETED)
            return True

    async def complete_if_embedded(
        self,
        content_id: int,
        generation: int,
    ) -> bool:
        """EMBEDDING → COMPLETED when every chunk already has a vector."""
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_for_transition(
                    session, content_id, generation, ContentStatus.COMPLETED
                )
                if item is None:
                    return False

                result = await session.execute(
                    select(
                        func.count(ContentChunk.id),
                        func.count(ContentChunk.embedding),
                    ).where(ContentChunk.content_item_id == content_id)
                )
                total, embedded = result.one()
                if total == 0 or total != embedded:
                    return False

                item.error_message = None
                item.processing_completed_at = utcnow()
                self._set_status(item, ContentStatus.COMPLETED)
            return True

    async def mark_failed(
        self,
        content_id: int,
        generation: int,
        stage: str,
        error: str,
    ) -> bool:
        """Any non-terminal status → FAILED, with the reason persisted."""
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_for_transition(
                    session, content_id, generation, ContentStatus.FAILED
                )
                if item is None:
                    return False

                item.error_message = error[:2000]
                self._merge_stage_metadata(item, "failure", {
                    "stage": stage,
                    "error": error[:2000],
                    "failed_at": utcnow().isoformat(),
                })
                self._set_status(item, ContentStatus.FAILED)
            return True

    async def begin_reprocess(
        self,
        content_id: int,
        regenerate_transcript: bool = False,
    ) -> ContentItem:
        """
        Start a new generation of the item.

        Works from any status and supersedes whatever run is in flight: the
        generation bump makes every outstanding event for the old run stale.
        The item goes to PROCESSING (re-chunk + re-embed) or, when the
        transcript is regenerated or missing, to PENDING.

        Raises:
            ContentNotFoundError: no such item
        """
        async with self.session_factory() as session:
            async with session.begin():
                item = await self._lock_item(session, content_id)
                if item is None:
                    raise ContentNotFoundError(content_id)

                item.generation += 1
                item.error_message = None
                item.processing_started_at = utcnow()
                item.processing_completed_at = None
                if regenerate_transcript or not item.has_transcript:
                    self._set_status(item, ContentStatus.PENDING)
                else:
                    self._set_status(item, ContentStatus.PROCESSING)
            return item

    async def claim_stuck(self, older_than: timedelta, limit: int = 100) -> List[StuckItem]:
        """
        Items sitting in an in-flight status since before the cutoff.

        The claim refreshes status_changed_at so concurrent recovery runs
        do not pick up the same rows.
        """
        cutoff = utcnow() - older_than
        async with self.session_factory() as session:
            async with session.begin():
                candidates = (
                    select(ContentItem.id)
                    .where(
                        ContentItem.status.in_(list(IN_FLIGHT_STATUSES)),
                        ContentItem.status_changed_at < cutoff,
                    )
                    .order_by(ContentItem.status_changed_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                    .scalar_subquery()
                )
                result = await session.execute(
                    update(ContentItem)
                    .where(ContentItem.id.in_(candidates))
                    .values(status_changed_at=utcnow())
                    .returning(
                        ContentItem.id,
                        ContentItem.owner_id,
                        ContentItem.generation,
                        ContentItem.status,
                    )
                )
                return [
                    StuckItem(
                        content_id=row.id,
                        owner_id=row.owner_id,
                        generation=row.generation,
                        status=ContentStatus(row.status),
                    )
                    for row in result.all()
                ]

    async def processing_stats(self) -> Dict[str, int]:
        """Item counts per status (every status present, zero if none)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ContentItem.status, func.count(ContentItem.id)).group_by(ContentItem.status)
            )
            counts = {str(status): 0 for status in ContentStatus}
            for status, count in result.all():
                counts[str(ContentStatus(status))] = int(count)
            return counts

    # ========================================
    # Views & ranking signals
    # ========================================

    async def record_view(self, viewer_id: str, content_id: int, interaction: bool = False) -> None:
        """
        Count a view (or an interaction) for a viewer.

        Raises:
            ContentNotFoundError: no such item
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                exists = await session.execute(
                    select(ContentItem.id).where(ContentItem.id == content_id)
                )
                if exists.scalar_one_or_none() is None:
                    raise ContentNotFoundError(content_id)

                stmt = insert(ContentView).values(
                    viewer_id=viewer_id,
                    content_item_id=content_id,
                    view_count=0 if interaction else 1,
                    interaction_count=1 if interaction else 0,
                    last_viewed_at=now,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_content_view_viewer_item",
                    set_={
                        "view_count": ContentView.view_count + (0 if interaction else 1),
                        "interaction_count": ContentView.interaction_count + (1 if interaction else 0),
                        "last_viewed_at": now,
                        "updated_at": now,
                    },
                )
                await session.execute(stmt)

    async def get_ranking_signals(
        self,
        content_ids: Sequence[int],
        viewer_id: Optional[str] = None,
    ) -> Dict[int, ContentSignals]:
        """Popularity totals per item plus the viewer's own last view."""
        ids = sorted(set(content_ids))
        if not ids:
            return {}

        signals = {content_id: ContentSignals() for content_id in ids}
        async with self.session_factory() as session:
            totals = await session.execute(
                select(
                    ContentView.content_item_id,
                    func.coalesce(func.sum(ContentView.view_count), 0),
                    func.coalesce(func.sum(ContentView.interaction_count), 0),
                )
                .where(ContentView.content_item_id.in_(ids))
                .group_by(ContentView.content_item_id)
            )
            for content_id, views, interactions in totals.all():
                signals[content_id].total_views = int(views)
                signals[content_id].total_interactions = int(interactions)

            if viewer_id:
                own = await session.execute(
                    select(ContentView.content_item_id, ContentView.last_viewed_at).where(
                        ContentView.content_item_id.in_(ids),
                        ContentView.viewer_id == viewer_id,
                    )
                )
                for content_id, last_viewed_at in own.all():
                    signals[content_id].viewer_last_viewed_at = last_viewed_at

        return signals

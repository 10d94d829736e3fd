"""
Pipeline Orchestrator

Event-driven state machine that takes a content item from PENDING to
COMPLETED:

    transcript.extract   PENDING|TRANSCRIBING → TRANSCRIBING → PROCESSING
    transcript.chunk     PROCESSING → EMBEDDING
    embedding.generate   EMBEDDING → COMPLETED

Each handler:
-------------
1. Re-reads the item; the event only names it. An event for a deleted
   item, an older generation or a stage the item has already left is
   SKIPPED. This is what makes at-least-once redelivery safe.
2. Does its work under the per-owner slot (paid stages) and the per-item
   lock (stages that rewrite the chunk set). A busy slot or lock DEFERS the
   event without consuming its retry budget.
3. Commits its output together with the status change (see
   ContentRepository), then emits the next event.
4. Returns a StageResult; it never raises to the transport. Typed errors
   are mapped in one place (_run_stage):
     RunSupersededError                               → SKIPPED
     PermanentStageError, NoTranscriptAvailable, UnsupportedSourceError,
     EmbeddingError(retryable=False)                  → PERMANENT
     RetryableStageError, TranscriptError, SQLAlchemyError,
     EmbeddingError(retryable=True), anything else    → RETRYABLE

If emitting the next event fails, the item stays in its new status and the
stuck-content sweep re-emits it after STUCK_CONTENT_MINUTES.

Cache:
------
Search results are invalidated for the item's owner and for unscoped
searches when an item is reprocessed or deleted, and on both sides of the
commit that marks it COMPLETED.
"""

import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from chronos.core.exceptions import (
    CacheUnavailableError,
    ContentNotFoundError,
    EmbeddingError,
    NoTranscriptAvailable,
    PermanentStageError,
    RetryableStageError,
    RunSupersededError,
    TranscriptError,
    UnsupportedSourceError,
)
from chronos.core.logging import get_logger
from chronos.db.base import utcnow
from chronos.models.content import ContentItem, ContentStatus
from chronos.schemas.content import ContentCreate, ProcessResponse, ReprocessItemResult
from chronos.schemas.events import (
    ChunkTranscriptRequested,
    ContentFailed,
    ContentStageEvent,
    ExtractTranscriptRequested,
    GenerateEmbeddingsRequested,
    PipelineEvent,
    ReprocessRequested,
)
from chronos.services.cache import SearchCache
from chronos.services.pipeline.locks import ItemLock, OwnerLimiter
from chronos.services.pipeline.state import Stage, StageOutcome, StageResult, stage_for_status
from chronos.services.pipeline.transport import EventPublisher
from chronos.services.processors.chunker import TranscriptChunker, chunking_stats, validate_chunks
from chronos.services.processors.embedder import EmbeddingClient
from chronos.services.repository import ContentRepository
from chronos.services.transcript_service import TranscriptSourceAdapter, segments_from_json
from chronos.services.usage_tracker import UsageTracker

logger = get_logger(__name__)

# Event that (re)starts each stage
STAGE_EVENTS = {
    Stage.EXTRACT: ExtractTranscriptRequested,
    Stage.CHUNK: ChunkTranscriptRequested,
    Stage.EMBED: GenerateEmbeddingsRequested,
}


class PipelineOrchestrator:
    """
    Usage:
    ------
    orchestrator = PipelineOrchestrator(repository, transcripts, chunker, embedder, cache,
                                        publisher, item_locks, owner_limiter, usage)
    item = await orchestrator.register_content(ContentCreate(...))
    await orchestrator.submit_for_processing(item.id)

    # inside the transport
    result = await orchestrator.handle_extract(event)
    """

    def __init__(
        self,
        repository: ContentRepository,
        transcripts: TranscriptSourceAdapter,
        chunker: TranscriptChunker,
        embedder: EmbeddingClient,
        cache: SearchCache,
        publisher: EventPublisher,
        item_locks: ItemLock,
        owner_limiter: OwnerLimiter,
        usage: UsageTracker,
        stuck_after: timedelta = timedelta(minutes=60),
    ):
        self.repository = repository
        self.transcripts = transcripts
        self.chunker = chunker
        self.embedder = embedder
        self.cache = cache
        self.publisher = publisher
        self.item_locks = item_locks
        self.owner_limiter = owner_limiter
        self.usage = usage
        self.stuck_after = stuck_after

    # ========================================
    # Entry points
    # ========================================

    async def register_content(self, data: ContentCreate) -> ContentItem:
        """Create a PENDING item. Nothing is enqueued until it is submitted."""
        item = await self.repository.create_content(
            owner_id=data.owner_id,
            title=data.title,
            source_type=data.source_type,
            source_ref=data.source_ref,
            duration_seconds=data.duration_seconds,
            transcript=data.transcript,
        )
        logger.info(
            "content_registered",
            content_id=item.id,
            owner_id=item.owner_id,
            source_type=str(item.source_type),
        )
        return item

    async def submit_for_processing(self, content_id: int) -> ProcessResponse:
        """
        Enqueue transcript extraction for a PENDING item (fire and forget).

        Items already in flight or finished are not re-submitted; finished
        items go through reprocess().

        Raises:
            ContentNotFoundError: no such item
        """
        item = await self.repository.get(content_id)
        if item is None:
            raise ContentNotFoundError(content_id)

        if item.status != ContentStatus.PENDING:
            message = (
                "Processing already in progress"
                if item.status in (ContentStatus.TRANSCRIBING, ContentStatus.PROCESSING, ContentStatus.EMBEDDING)
                else f"Content is {item.status}; use reprocess"
            )
            return ProcessResponse(content_id=content_id, accepted=False, status=item.status, message=message)

        await self.publisher.publish(ExtractTranscriptRequested(
            content_id=item.id,
            owner_id=item.owner_id,
            generation=item.generation,
        ))
        logger.info("content_submitted", content_id=item.id, owner_id=item.owner_id, generation=item.generation)
        return ProcessResponse(
            content_id=content_id, accepted=True, status=item.status, message="Queued for processing",
        )

    async def reprocess(
        self,
        content_ids: Sequence[int],
        regenerate_transcript: bool = False,
        requested_by: Optional[str] = None,
    ) -> List[ReprocessItemResult]:
        """
        Restart processing for a batch of items.

        Each item gets a new generation (superseding any run in flight), is
        removed from cached search results, and gets its first stage
        enqueued: chunking, or extraction when the transcript is regenerated
        or missing. Items are independent: one failure is reported for that
        item and the rest of the batch continues.
        """
        results: List[ReprocessItemResult] = []

        for content_id in dict.fromkeys(content_ids):
            try:
                item = await self.repository.begin_reprocess(content_id, regenerate_transcript)
                await self._invalidate(item.id, item.owner_id)

                if item.status == ContentStatus.PENDING:
                    event: ContentStageEvent = ExtractTranscriptRequested(
                        content_id=item.id, owner_id=item.owner_id, generation=item.generation,
                    )
                else:
                    event = ChunkTranscriptRequested(
                        content_id=item.id, owner_id=item.owner_id, generation=item.generation,
                    )
                await self.publisher.publish(event)

                logger.info(
                    "content_reprocess_started",
                    content_id=item.id,
                    owner_id=item.owner_id,
                    generation=item.generation,
                    regenerate_transcript=regenerate_transcript,
                    requested_by=requested_by,
                )
                results.append(ReprocessItemResult(content_id=content_id, accepted=True))

            except ContentNotFoundError as e:
                results.append(ReprocessItemResult(content_id=content_id, accepted=False, error=str(e)))
            except Exception as e:
                logger.error(
                    "content_reprocess_failed",
                    content_id=content_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                results.append(ReprocessItemResult(content_id=content_id, accepted=False, error=str(e)))

        accepted = sum(1 for r in results if r.accepted)
        logger.info("reprocess_batch_finished", requested=len(results), accepted=accepted)
        return results

    async def delete_content(self, content_id: int) -> None:
        """
        Delete an item with its chunks, then drop affected cached searches.

        Raises:
            ContentNotFoundError: no such item
        """
        owner_id = await self.repository.delete_content(content_id)
        if owner_id is None:
            raise ContentNotFoundError(content_id)
        await self._invalidate(content_id, owner_id)
        logger.info("content_deleted", content_id=content_id, owner_id=owner_id)

    async def mark_failed(self, event: ContentStageEvent, stage: Stage, error: str) -> bool:
        """Terminal failure: persist the reason and notify."""
        failed = await self.repository.mark_failed(event.content_id, event.generation, str(stage), error)
        if not failed:
            # Superseded or already terminal
            logger.info(
                "mark_failed_skipped",
                content_id=event.content_id,
                generation=event.generation,
                stage=str(stage),
            )
            return False

        logger.error(
            "content_failed",
            content_id=event.content_id,
            owner_id=event.owner_id,
            generation=event.generation,
            stage=str(stage),
            error=error,
        )
        await self._emit(ContentFailed(
            content_id=event.content_id,
            owner_id=event.owner_id,
            generation=event.generation,
            stage=str(stage),
            error=error[:2000],
        ))
        return True

    async def recover_stuck(self, limit: int = 100) -> Dict[str, Any]:
        """Re-emit the pending stage event for items stuck in flight."""
        stuck = await self.repository.claim_stuck(self.stuck_after, limit=limit)
        recovered = 0

        for item in stuck:
            event_type = STAGE_EVENTS[stage_for_status(item.status)]
            event = event_type(content_id=item.content_id, owner_id=item.owner_id, generation=item.generation)

            if await self._emit(event):
                recovered += 1
            logger.warning(
                "stuck_content_recovered",
                content_id=item.content_id,
                status=str(item.status),
                generation=item.generation,
            )

        return {"found": len(stuck), "recovered": recovered}

    async def processing_stats(self) -> Dict[str, int]:
        return await self.repository.processing_stats()

    async def handle_reprocess(self, event: ReprocessRequested) -> List[ReprocessItemResult]:
        return await self.reprocess(
            event.content_ids,
            regenerate_transcript=event.regenerate_transcript,
            requested_by=event.requested_by,
        )

    # ========================================
    # Stage handlers
    # ========================================

    async def handle_extract(self, event: ExtractTranscriptRequested) -> StageResult:
        return await self._run_stage(Stage.EXTRACT, event, self._extract)

    async def handle_chunk(self, event: ChunkTranscriptRequested) -> StageResult:
        return await self._run_stage(Stage.CHUNK, event, self._chunk)

    async def handle_embed(self, event: GenerateEmbeddingsRequested) -> StageResult:
        return await self._run_stage(Stage.EMBED, event, self._embed)

    async def _extract(self, event: ExtractTranscriptRequested) -> StageResult:
        stage = Stage.EXTRACT
        item = await self.repository.get(event.content_id)
        skip = self._skip_reason(item, event, stage)
        if skip:
            return self._result(StageOutcome.SKIPPED, stage, event, skip)

        async with self.owner_limiter.slot(event.owner_id) as acquired:
            if not acquired:
                return self._result(StageOutcome.DEFERRED, stage, event, "Owner concurrency limit reached")

            item = await self.repository.transition_status(
                event.content_id, event.generation, ContentStatus.TRANSCRIBING,
            )
            if item is None:
                return self._result(StageOutcome.SKIPPED, stage, event, "Superseded before extraction")

            transcript = await self.transcripts.extract(item)
            if not transcript.text.strip():
                raise PermanentStageError("Transcript is empty")

            stage_values = {
                "method": transcript.method,
                "language": transcript.language,
                "word_count": transcript.word_count,
                "segment_count": len(transcript.segments),
                "duration_seconds": transcript.duration_seconds,
                "cost_usd": round(transcript.cost_usd, 6),
                "source": transcript.metadata,
                "completed_at": utcnow().isoformat(),
            }
            saved = await self.repository.save_transcript_and_advance(
                event.content_id, event.generation, transcript, stage_values,
            )
            if not saved:
                return self._result(StageOutcome.SKIPPED, stage, event, "Superseded during extraction")

        await self.usage.record(
            event.owner_id,
            transcription_minutes=transcript.minutes,
            transcription_cost_usd=transcript.cost_usd,
        )
        await self._emit(ChunkTranscriptRequested(
            content_id=event.content_id,
            owner_id=event.owner_id,
            generation=event.generation,
        ))
        return self._result(
            StageOutcome.SUCCESS, stage, event, "Transcript extracted",
            method=transcript.method, word_count=transcript.word_count, cost_usd=transcript.cost_usd,
        )

    async def _chunk(self, event: ChunkTranscriptRequested) -> StageResult:
        stage = Stage.CHUNK
        item = await self.repository.get(event.content_id)
        skip = self._skip_reason(item, event, stage)
        if skip:
            return self._result(StageOutcome.SKIPPED, stage, event, skip)

        async with self.item_locks.hold(event.content_id) as locked:
            if not locked:
                return self._result(StageOutcome.DEFERRED, stage, event, "Content is locked by another run")

            # State may have moved while waiting for the lock
            item = await self.repository.get(event.content_id)
            skip = self._skip_reason(item, event, stage)
            if skip:
                return self._result(StageOutcome.SKIPPED, stage, event, skip)
            if not item.has_transcript:
                raise PermanentStageError("Content has no transcript to chunk")

            started = time.perf_counter()
            chunks = self.chunker.chunk(
                item.transcript,
                segments=segments_from_json(item.transcript_segments),
                duration_seconds=item.duration_seconds,
            )
            if not chunks:
                raise PermanentStageError("Transcript produced no chunks")

            word_count = len(item.transcript.split())
            issues = validate_chunks(chunks, word_count, self.chunker.config)
            if issues:
                logger.warning("chunk_validation_issues", content_id=item.id, issues=issues[:10])

            stage_values = {
                **chunking_stats(chunks),
                "issues": issues[:10],
                "processing_time_ms": int((time.perf_counter() - started) * 1000),
                "completed_at": utcnow().isoformat(),
            }
            replaced = await self.repository.replace_chunks_and_advance(
                event.content_id, event.generation, chunks, stage_values,
            )
            if not replaced:
                return self._result(StageOutcome.SKIPPED, stage, event, "Superseded during chunking")

        await self._emit(GenerateEmbeddingsRequested(
            content_id=event.content_id,
            owner_id=event.owner_id,
            generation=event.generation,
        ))
        return self._result(StageOutcome.SUCCESS, stage, event, "Transcript chunked", chunk_count=len(chunks))

    async def _embed(self, event: GenerateEmbeddingsRequested) -> StageResult:
        stage = Stage.EMBED
        item = await self.repository.get(event.content_id)
        skip = self._skip_reason(item, event, stage)
        if skip:
            return self._result(StageOutcome.SKIPPED, stage, event, skip)

        async with self.owner_limiter.slot(event.owner_id) as acquired:
            if not acquired:
                return self._result(StageOutcome.DEFERRED, stage, event, "Owner concurrency limit reached")

            async with self.item_locks.hold(event.content_id) as locked:
                if not locked:
                    return self._result(StageOutcome.DEFERRED, stage, event, "Content is locked by another run")

                item = await self.repository.get(event.content_id)
                skip = self._skip_reason(item, event, stage)
                if skip:
                    return self._result(StageOutcome.SKIPPED, stage, event, skip)

                chunks = await self.repository.get_chunks(event.content_id)
                if not chunks:
                    raise PermanentStageError("Content has no chunks to embed")

                await self._invalidate(event.content_id, event.owner_id)

                if event.skip_if_exists and all(c.is_embedded for c in chunks):
                    completed = await self.repository.complete_if_embedded(event.content_id, event.generation)
                    if completed:
                        await self._invalidate(event.content_id, event.owner_id)
                        return self._result(
                            StageOutcome.SUCCESS, stage, event, "Embeddings already present",
                            chunk_count=len(chunks), embedded=0,
                        )

                # Re-checked before every provider batch so a superseded run stops paying
                embedding = await self.embedder.embed(
                    [c.chunk_text for c in chunks],
                    before_batch=lambda: self._ensure_current(event),
                )
                vectors = {chunk.id: vector for chunk, vector in zip(chunks, embedding.embeddings)}

                stage_values = {**embedding.as_metadata(), "completed_at": utcnow().isoformat()}
                written = await self.repository.write_embeddings_and_complete(
                    event.content_id, event.generation, vectors, stage_values,
                )
                if not written:
                    return self._result(StageOutcome.SKIPPED, stage, event, "Superseded during embedding")

        await self._invalidate(event.content_id, event.owner_id)
        await self.usage.record(
            event.owner_id,
            embedding_tokens=embedding.total_tokens,
            embedding_cost_usd=embedding.total_cost_usd,
        )
        return self._result(
            StageOutcome.SUCCESS, stage, event, "Embeddings written",
            chunk_count=len(chunks),
            embedded=len(vectors),
            tokens=embedding.total_tokens,
            cost_usd=round(embedding.total_cost_usd, 6),
        )

    # ========================================
    # Helpers
    # ========================================

    async def _run_stage(
        self,
        stage: Stage,
        event: ContentStageEvent,
        handler: Callable[[Any], Awaitable[StageResult]],
    ) -> StageResult:
        """Run one handler and map its errors onto a typed outcome."""
        log = logger.bind(
            stage=str(stage),
            content_id=event.content_id,
            owner_id=event.owner_id,
            generation=event.generation,
        )
        log.info("stage_started", event_id=event.event_id)
        started = time.perf_counter()

        try:
            result = await handler(event)
        except RunSupersededError as e:
            result = self._result(StageOutcome.SKIPPED, stage, event, str(e))
        except (PermanentStageError, NoTranscriptAvailable, UnsupportedSourceError) as e:
            result = self._result(StageOutcome.PERMANENT, stage, event, str(e))
        except (RetryableStageError, TranscriptError, SQLAlchemyError) as e:
            result = self._result(StageOutcome.RETRYABLE, stage, event, str(e), error_type=type(e).__name__)
        except EmbeddingError as e:
            outcome = StageOutcome.RETRYABLE if e.retryable else StageOutcome.PERMANENT
            result = self._result(outcome, stage, event, str(e), error_kind=e.kind)
        except Exception as e:
            log.exception("stage_unexpected_error", error=str(e))
            result = self._result(StageOutcome.RETRYABLE, stage, event, f"Unexpected error: {e}")

        duration_ms = int((time.perf_counter() - started) * 1000)
        if result.is_failure:
            log.warning("stage_failed", outcome=result.outcome.value, error=result.message, duration_ms=duration_ms)
        else:
            log.info("stage_finished", outcome=result.outcome.value, message=result.message, duration_ms=duration_ms)
        return result

    @staticmethod
    def _skip_reason(
        item: Optional[ContentItem],
        event: ContentStageEvent,
        stage: Stage,
    ) -> Optional[str]:
        if item is None:
            return "Content no longer exists"
        if item.generation != event.generation:
            return f"Stale event (generation {event.generation}, current {item.generation})"
        if stage_for_status(item.status) != stage:
            return f"Content is {item.status}, nothing to do"
        return None

    async def _ensure_current(self, event: ContentStageEvent) -> None:
        item = await self.repository.get(event.content_id)
        if item is None or item.generation != event.generation:
            raise RunSupersededError(
                f"Content {event.content_id} moved past generation {event.generation}"
            )

    @staticmethod
    def _result(
        outcome: StageOutcome,
        stage: Stage,
        event: ContentStageEvent,
        message: str = "",
        **details: Any,
    ) -> StageResult:
        return StageResult(
            outcome=outcome,
            stage=stage,
            content_id=event.content_id,
            generation=event.generation,
            message=message,
            details=details,
        )

    async def _invalidate(self, content_id: int, owner_id: str) -> None:
        # Bounded by the entry TTL if the cache is down
        try:
            await self.cache.invalidate_content(content_id, owner_id)
        except CacheUnavailableError as e:
            logger.warning("cache_invalidation_failed", content_id=content_id, owner_id=owner_id, error=str(e))

    async def _emit(self, event: PipelineEvent) -> bool:
        try:
            await self.publisher.publish(event)
            return True
        except Exception as e:
            # The stuck-content sweep re-emits stage events
            logger.error(
                "event_publish_failed",
                event_type=event.type,
                event_id=event.event_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

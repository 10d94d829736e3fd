"""
Celery tasks for the content processing pipeline.

This module contains the transport side of the pipeline:
- One task per stage event (extract, chunk, embed)
- Batch reprocessing and failure notifications
- Periodic recovery of stuck items and status monitoring

Tasks are thin: they validate the payload, build a per-run container, hand
the event to the PipelineOrchestrator and turn its StageResult into Celery
behaviour:

    SUCCESS / SKIPPED     → return result dict
    DEFERRED              → retry after OWNER_BUSY_RETRY_SECONDS, same attempt
    RETRYABLE             → retry with exponential backoff, attempt + 1
    RETRYABLE (exhausted) → mark item FAILED, return result dict
    PERMANENT             → mark item FAILED, return result dict
    malformed payload     → log and drop, never retried
"""

import asyncio
from typing import Any, Dict, Type

from celery import Task

from chronos.container import worker_container
from chronos.core.config import settings
from chronos.core.exceptions import InvalidEventError
from chronos.core.logging import get_logger
from chronos.schemas.events import (
    ChunkTranscriptRequested,
    ContentFailed,
    ContentStageEvent,
    ExtractTranscriptRequested,
    GenerateEmbeddingsRequested,
    ReprocessRequested,
    parse_event,
)
from chronos.services.pipeline.state import StageOutcome, StageResult, retry_backoff
from chronos.workers.celery_app import celery_app

logger = get_logger(__name__)


# ========================================
# Async Helper
# ========================================

def run_async(coro):
    """
    Run async coroutine, handling both event loop and no event loop scenarios.

    This helper allows tasks to work in both:
    - Production (Celery worker with no event loop) - uses asyncio.run()
    - Tests (pytest with existing event loop) - runs in thread pool
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No event loop running - we're in production Celery worker
        return asyncio.run(coro)
    else:
        # Event loop is running - run in a new thread to avoid "loop already running"
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as executor:
            future = executor.submit(asyncio.run, coro)
            return future.result()


# ========================================
# Base Task Class
# ========================================

class PipelineTask(Task):
    """
    Base task class for pipeline stages.

    Retries are driven by stage outcomes rather than exceptions, and the
    retry budget is tracked in the ``attempt`` kwarg so that deferrals do not
    consume it.
    """

    acks_late = True
    max_retries = None


# ========================================
# Helper Functions
# ========================================

def _parse(payload: Any, expected: Type) -> Any:
    event = parse_event(payload)
    if not isinstance(event, expected):
        raise InvalidEventError(f"Expected {expected.__name__}, got {type(event).__name__}")
    return event


def _is_terminal(result: StageResult, attempt: int) -> bool:
    exhausted = result.outcome == StageOutcome.RETRYABLE and attempt >= settings.PIPELINE_MAX_RETRIES
    return result.outcome == StageOutcome.PERMANENT or exhausted


def _event_context(event: ContentStageEvent, attempt: int, result: StageResult) -> Dict[str, Any]:
    return {
        'content_id': event.content_id,
        'owner_id': event.owner_id,
        'generation': event.generation,
        'attempt': attempt,
        'stage': str(result.stage),
    }


async def _process_stage(event: ContentStageEvent, attempt: int) -> StageResult:
    async with worker_container() as container:
        orchestrator = container.orchestrator

        if isinstance(event, ExtractTranscriptRequested):
            result = await orchestrator.handle_extract(event)
        elif isinstance(event, ChunkTranscriptRequested):
            result = await orchestrator.handle_chunk(event)
        else:
            result = await orchestrator.handle_embed(event)

        if _is_terminal(result, attempt):
            await orchestrator.mark_failed(event, result.stage, result.message)

        return result


def _run_stage_task(task: Task, payload: Any, attempt: int, expected: Type) -> Dict[str, Any]:
    try:
        event = _parse(payload, expected)
    except InvalidEventError as e:
        logger.error("pipeline_event_dropped", task=task.name, error=str(e))
        return {'success': False, 'outcome': 'invalid', 'error': str(e)}

    result = run_async(_process_stage(event, attempt))
    context = _event_context(event, attempt, result)

    if result.outcome == StageOutcome.DEFERRED:
        logger.info(
            "pipeline_stage_deferred",
            **context,
            countdown=settings.OWNER_BUSY_RETRY_SECONDS,
            reason=result.message,
        )
        raise task.retry(
            kwargs={'event': payload, 'attempt': attempt},
            countdown=settings.OWNER_BUSY_RETRY_SECONDS,
        )

    if result.outcome == StageOutcome.RETRYABLE and attempt < settings.PIPELINE_MAX_RETRIES:
        countdown = retry_backoff(
            attempt,
            settings.PIPELINE_RETRY_BACKOFF_SECONDS,
            settings.PIPELINE_RETRY_BACKOFF_MAX_SECONDS,
        )
        logger.warning(
            "pipeline_stage_retrying",
            **context,
            max_retries=settings.PIPELINE_MAX_RETRIES,
            countdown=countdown,
            error=result.message,
        )
        raise task.retry(
            kwargs={'event': payload, 'attempt': attempt + 1},
            countdown=countdown,
        )

    if _is_terminal(result, attempt):
        logger.error(
            "pipeline_stage_failed",
            **context,
            outcome=result.outcome.value,
            error=result.message,
        )

    return {**result.as_dict(), 'attempt': attempt}


# ========================================
# Stage Tasks
# ========================================

@celery_app.task(
    base=PipelineTask,
    name='pipeline.extract_transcript',
    bind=True,
)
def extract_transcript(self, event: dict, attempt: int = 0) -> dict:
    """
    Extract the transcript for a content item (PENDING → PROCESSING).

    Args:
        event: Serialized ExtractTranscriptRequested
        attempt: 0-based retry attempt

    Returns:
        StageResult dict
    """
    return _run_stage_task(self, event, attempt, ExtractTranscriptRequested)


@celery_app.task(
    base=PipelineTask,
    name='pipeline.chunk_transcript',
    bind=True,
)
def chunk_transcript(self, event: dict, attempt: int = 0) -> dict:
    """Replace the item's chunk set from its transcript (PROCESSING → EMBEDDING)."""
    return _run_stage_task(self, event, attempt, ChunkTranscriptRequested)


@celery_app.task(
    base=PipelineTask,
    name='pipeline.generate_embeddings',
    bind=True,
)
def generate_embeddings(self, event: dict, attempt: int = 0) -> dict:
    """Embed every chunk of the item (EMBEDDING → COMPLETED)."""
    return _run_stage_task(self, event, attempt, GenerateEmbeddingsRequested)


@celery_app.task(
    base=PipelineTask,
    name='pipeline.reprocess_batch',
    bind=True,
)
def reprocess_batch(self, event: dict) -> dict:
    """
    Restart processing for a batch of content items.

    Items are handled independently; the result lists which were accepted.

    Returns:
        {'success': bool, 'accepted': int, 'rejected': int, 'items': [...]}
    """
    try:
        request = _parse(event, ReprocessRequested)
    except InvalidEventError as e:
        logger.error("reprocess_request_dropped", error=str(e))
        return {'success': False, 'outcome': 'invalid', 'error': str(e)}

    async def _reprocess():
        async with worker_container() as container:
            return await container.orchestrator.handle_reprocess(request)

    items = run_async(_reprocess())
    accepted = sum(1 for item in items if item.accepted)

    logger.info("reprocess_batch_processed", event_id=request.event_id, accepted=accepted, requested=len(items))
    return {
        'success': True,
        'accepted': accepted,
        'rejected': len(items) - accepted,
        'items': [item.model_dump() for item in items],
    }


@celery_app.task(
    name='pipeline.content_failed',
    bind=True,
)
def content_failed(self, event: dict) -> dict:
    """Terminal failure notification. Logged for alerting consumers."""
    try:
        failure = _parse(event, ContentFailed)
    except InvalidEventError as e:
        logger.error("failure_notification_dropped", error=str(e))
        return {'success': False, 'outcome': 'invalid', 'error': str(e)}

    logger.error(
        "content_failed_notification",
        content_id=failure.content_id,
        owner_id=failure.owner_id,
        generation=failure.generation,
        stage=failure.stage,
        error=failure.error,
    )
    return {
        'success': True,
        'content_id': failure.content_id,
        'stage': failure.stage,
    }


# ========================================
# Periodic Tasks
# ========================================

@celery_app.task(
    name='pipeline.recover_stuck_content',
    bind=True,
)
def recover_stuck_content(self, limit: int = 100) -> dict:
    """
    Re-emit stage events for items stuck in flight longer than
    STUCK_CONTENT_MINUTES (lost messages, crashed workers).

    Scheduled to run every 10 minutes.
    """

    async def _recover():
        async with worker_container() as container:
            return await container.orchestrator.recover_stuck(limit=limit)

    summary = run_async(_recover())
    if summary['found']:
        logger.warning("stuck_content_sweep", found=summary['found'], recovered=summary['recovered'])
    return {'success': True, **summary}


@celery_app.task(
    name='pipeline.get_processing_stats',
    bind=True,
)
def get_processing_stats(self) -> dict:
    """
    Content counts per pipeline status.

    Scheduled to run every 15 minutes for monitoring.
    """

    async def _stats():
        async with worker_container() as container:
            return await container.orchestrator.processing_stats()

    stats = run_async(_stats())
    logger.info("pipeline_status_counts", counts=stats)
    return {'success': True, 'stats': stats}

"""
Tests for the pipeline Celery tasks.

Tasks are called directly (no broker). The orchestrator side is patched:
these tests cover how stage outcomes become Celery behaviour.
"""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from celery.exceptions import Retry

from chronos.core.config import settings
from chronos.schemas.events import (
    ChunkTranscriptRequested,
    ContentFailed,
    ExtractTranscriptRequested,
    GenerateEmbeddingsRequested,
    ReprocessRequested,
    serialize_event,
)
from chronos.schemas.content import ReprocessItemResult
from chronos.services.pipeline.state import Stage, StageOutcome, StageResult
from chronos.tasks import pipeline_tasks
from chronos.tasks.pipeline_tasks import (
    _process_stage,
    chunk_transcript,
    content_failed,
    extract_transcript,
    generate_embeddings,
    get_processing_stats,
    recover_stuck_content,
    reprocess_batch,
)


def stage_result(outcome: StageOutcome, stage: Stage = Stage.EXTRACT, **details) -> StageResult:
    return StageResult(outcome=outcome, stage=stage, content_id=7, generation=1, message="msg", details=details)


def extract_payload() -> dict:
    return serialize_event(ExtractTranscriptRequested(content_id=7, owner_id="creator-1", generation=1))


@pytest.fixture
def process_stage():
    with patch("chronos.tasks.pipeline_tasks._process_stage", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def fake_orchestrator():
    orchestrator = MagicMock()
    orchestrator.handle_extract = AsyncMock()
    orchestrator.handle_chunk = AsyncMock()
    orchestrator.handle_embed = AsyncMock()
    orchestrator.mark_failed = AsyncMock(return_value=True)
    orchestrator.handle_reprocess = AsyncMock()
    orchestrator.recover_stuck = AsyncMock()
    orchestrator.processing_stats = AsyncMock()

    @asynccontextmanager
    async def container():
        yield SimpleNamespace(orchestrator=orchestrator)

    with patch("chronos.tasks.pipeline_tasks.worker_container", container):
        yield orchestrator


class TestStageTasks:
    """Outcome → Celery behaviour."""

    def test_success_returns_result(self, process_stage):
        process_stage.return_value = stage_result(StageOutcome.SUCCESS, chunk_count=3)

        result = extract_transcript(extract_payload())

        assert result["success"] is True
        assert result["outcome"] == "success"
        assert result["chunk_count"] == 3
        assert result["attempt"] == 0

    def test_skipped_is_success(self, process_stage):
        process_stage.return_value = stage_result(StageOutcome.SKIPPED)
        result = extract_transcript(extract_payload())
        assert result["success"] is True
        assert result["outcome"] == "skipped"

    def test_deferred_retries_without_consuming_budget(self, process_stage):
        process_stage.return_value = stage_result(StageOutcome.DEFERRED)
        payload = extract_payload()

        with patch.object(extract_transcript, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                extract_transcript(payload, attempt=1)

        retry.assert_called_once_with(
            kwargs={"event": payload, "attempt": 1},
            countdown=settings.OWNER_BUSY_RETRY_SECONDS,
        )

    def test_retryable_retries_with_backoff(self, process_stage):
        process_stage.return_value = stage_result(StageOutcome.RETRYABLE, Stage.CHUNK)
        payload = serialize_event(ChunkTranscriptRequested(content_id=7, owner_id="creator-1", generation=1))

        with patch.object(chunk_transcript, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                chunk_transcript(payload, attempt=1)

        retry.assert_called_once_with(
            kwargs={"event": payload, "attempt": 2},
            countdown=settings.PIPELINE_RETRY_BACKOFF_SECONDS * 2,
        )

    def test_retryable_exhausted_returns_failure(self, process_stage):
        process_stage.return_value = stage_result(StageOutcome.RETRYABLE, Stage.EMBED)
        payload = serialize_event(GenerateEmbeddingsRequested(content_id=7, owner_id="creator-1", generation=1))

        with patch.object(generate_embeddings, "retry") as retry:
            result = generate_embeddings(payload, attempt=settings.PIPELINE_MAX_RETRIES)

        retry.assert_not_called()
        assert result["success"] is False
        assert result["outcome"] == "retryable"

    def test_permanent_is_not_retried(self, process_stage):
        process_stage.return_value = stage_result(StageOutcome.PERMANENT)

        with patch.object(extract_transcript, "retry") as retry:
            result = extract_transcript(extract_payload())

        retry.assert_not_called()
        assert result["outcome"] == "permanent"

    def test_malformed_payload_is_dropped(self, process_stage):
        result = extract_transcript({"type": "transcript.extract", "content_id": "seven"})

        assert result["success"] is False
        assert result["outcome"] == "invalid"
        process_stage.assert_not_awaited()

    def test_wrong_event_type_is_dropped(self, process_stage):
        payload = serialize_event(ChunkTranscriptRequested(content_id=7, owner_id="creator-1", generation=1))

        result = extract_transcript(payload)

        assert result["outcome"] == "invalid"
        process_stage.assert_not_awaited()


EVENT_CONTEXT = {"content_id": 7, "owner_id": "creator-1", "generation": 1}


@pytest.fixture
def task_logger():
    with patch("chronos.tasks.pipeline_tasks.logger") as mock:
        yield mock


class TestStageTaskLogging:
    """Retry, deferral and failure logs identify the run."""

    def test_deferral_log(self, process_stage, task_logger):
        process_stage.return_value = stage_result(StageOutcome.DEFERRED)

        with patch.object(extract_transcript, "retry", side_effect=Retry()):
            with pytest.raises(Retry):
                extract_transcript(extract_payload(), attempt=2)

        event, kwargs = task_logger.info.call_args.args[0], task_logger.info.call_args.kwargs
        assert event == "pipeline_stage_deferred"
        assert kwargs.items() >= {**EVENT_CONTEXT, "attempt": 2, "stage": "transcription"}.items()

    def test_retry_log(self, process_stage, task_logger):
        process_stage.return_value = stage_result(StageOutcome.RETRYABLE, Stage.CHUNK)
        payload = serialize_event(ChunkTranscriptRequested(content_id=7, owner_id="creator-1", generation=1))

        with patch.object(chunk_transcript, "retry", side_effect=Retry()):
            with pytest.raises(Retry):
                chunk_transcript(payload, attempt=0)

        task_logger.warning.assert_called_once()
        assert task_logger.warning.call_args.args == ("pipeline_stage_retrying",)
        kwargs = task_logger.warning.call_args.kwargs
        assert kwargs.items() >= {**EVENT_CONTEXT, "attempt": 0, "stage": "chunking", "error": "msg"}.items()

    @pytest.mark.parametrize("outcome,attempt", [
        (StageOutcome.PERMANENT, 0),
        (StageOutcome.RETRYABLE, settings.PIPELINE_MAX_RETRIES),
    ])
    def test_terminal_failure_log(self, process_stage, task_logger, outcome, attempt):
        process_stage.return_value = stage_result(outcome, Stage.EMBED)
        payload = serialize_event(GenerateEmbeddingsRequested(content_id=7, owner_id="creator-1", generation=1))

        with patch.object(generate_embeddings, "retry"):
            generate_embeddings(payload, attempt=attempt)

        task_logger.error.assert_called_once()
        assert task_logger.error.call_args.args == ("pipeline_stage_failed",)
        kwargs = task_logger.error.call_args.kwargs
        assert kwargs.items() >= {
            **EVENT_CONTEXT, "attempt": attempt, "stage": "embedding", "outcome": outcome.value,
        }.items()

    def test_success_logs_nothing(self, process_stage, task_logger):
        process_stage.return_value = stage_result(StageOutcome.SUCCESS)
        extract_transcript(extract_payload())
        task_logger.error.assert_not_called()
        task_logger.warning.assert_not_called()


@pytest.mark.asyncio
class TestProcessStage:
    """Dispatch and terminal failure marking."""

    async def test_dispatches_by_event_type(self, fake_orchestrator):
        fake_orchestrator.handle_chunk.return_value = stage_result(StageOutcome.SUCCESS, Stage.CHUNK)
        event = ChunkTranscriptRequested(content_id=7, owner_id="creator-1", generation=1)

        result = await _process_stage(event, attempt=0)

        assert result.stage == Stage.CHUNK
        fake_orchestrator.handle_chunk.assert_awaited_once_with(event)
        fake_orchestrator.mark_failed.assert_not_awaited()

    async def test_permanent_marks_failed(self, fake_orchestrator):
        fake_orchestrator.handle_extract.return_value = stage_result(StageOutcome.PERMANENT)
        event = ExtractTranscriptRequested(content_id=7, owner_id="creator-1", generation=1)

        await _process_stage(event, attempt=0)

        fake_orchestrator.mark_failed.assert_awaited_once_with(event, Stage.EXTRACT, "msg")

    async def test_retryable_marks_failed_only_when_exhausted(self, fake_orchestrator):
        fake_orchestrator.handle_embed.return_value = stage_result(StageOutcome.RETRYABLE, Stage.EMBED)
        event = GenerateEmbeddingsRequested(content_id=7, owner_id="creator-1", generation=1)

        await _process_stage(event, attempt=0)
        fake_orchestrator.mark_failed.assert_not_awaited()

        await _process_stage(event, attempt=settings.PIPELINE_MAX_RETRIES)
        fake_orchestrator.mark_failed.assert_awaited_once()

    async def test_deferred_never_marks_failed(self, fake_orchestrator):
        fake_orchestrator.handle_extract.return_value = stage_result(StageOutcome.DEFERRED)
        event = ExtractTranscriptRequested(content_id=7, owner_id="creator-1", generation=1)

        await _process_stage(event, attempt=99)

        fake_orchestrator.mark_failed.assert_not_awaited()


class TestBatchAndPeriodicTasks:
    """Reprocess, failure notifications, recovery, stats."""

    def test_reprocess_batch(self, fake_orchestrator):
        fake_orchestrator.handle_reprocess.return_value = [
            ReprocessItemResult(content_id=1, accepted=True),
            ReprocessItemResult(content_id=2, accepted=False, error="Content item 2 not found"),
        ]
        payload = serialize_event(ReprocessRequested(content_ids=[1, 2]))

        result = reprocess_batch(payload)

        assert result["success"] is True
        assert result["accepted"] == 1
        assert result["rejected"] == 1
        assert result["items"][1]["error"] == "Content item 2 not found"

    def test_reprocess_batch_rejects_empty(self, fake_orchestrator):
        result = reprocess_batch({"type": "content.reprocess", "content_ids": []})
        assert result["outcome"] == "invalid"
        fake_orchestrator.handle_reprocess.assert_not_awaited()

    def test_content_failed_notification(self):
        payload = serialize_event(ContentFailed(
            content_id=7, owner_id="creator-1", generation=1, stage="embedding", error="boom",
        ))

        result = content_failed(payload)

        assert result == {"success": True, "content_id": 7, "stage": "embedding"}

    def test_recover_stuck(self, fake_orchestrator):
        fake_orchestrator.recover_stuck.return_value = {"found": 3, "recovered": 2}

        result = recover_stuck_content(limit=50)

        assert result == {"success": True, "found": 3, "recovered": 2}
        fake_orchestrator.recover_stuck.assert_awaited_once_with(limit=50)

    def test_processing_stats(self, fake_orchestrator):
        fake_orchestrator.processing_stats.return_value = {"pending": 1, "completed": 4}

        result = get_processing_stats()

        assert result == {"success": True, "stats": {"pending": 1, "completed": 4}}


class TestRunAsync:
    """run_async works with and without a running loop."""

    def test_without_loop(self):
        async def answer():
            return 42

        assert pipeline_tasks.run_async(answer()) == 42

    @pytest.mark.asyncio
    async def test_inside_loop(self):
        async def answer():
            return 42

        assert pipeline_tasks.run_async(answer()) == 42

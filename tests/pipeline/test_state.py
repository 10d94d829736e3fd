"""
Tests for the pipeline state machine and stage outcomes.
"""

import pytest

from chronos.models.content import ContentStatus
from chronos.services.pipeline.state import (
    Stage,
    StageOutcome,
    StageResult,
    can_transition,
    retry_backoff,
    stage_for_status,
)
from chronos.services.pipeline.orchestrator import STAGE_EVENTS
from chronos.services.repository import IN_FLIGHT_STATUSES


class TestTransitions:
    """Test legal and illegal status moves."""

    @pytest.mark.parametrize("current,target", [
        (ContentStatus.PENDING, ContentStatus.TRANSCRIBING),
        (ContentStatus.TRANSCRIBING, ContentStatus.PROCESSING),
        (ContentStatus.PROCESSING, ContentStatus.EMBEDDING),
        (ContentStatus.EMBEDDING, ContentStatus.COMPLETED),
        (ContentStatus.EMBEDDING, ContentStatus.FAILED),
        (ContentStatus.PENDING, ContentStatus.FAILED),
    ])
    def test_forward_moves_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (ContentStatus.PENDING, ContentStatus.COMPLETED),
        (ContentStatus.PROCESSING, ContentStatus.TRANSCRIBING),
        (ContentStatus.COMPLETED, ContentStatus.PROCESSING),
        (ContentStatus.FAILED, ContentStatus.PENDING),
        (ContentStatus.COMPLETED, ContentStatus.FAILED),
    ])
    def test_skips_and_backward_moves_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_reprocess_resets_terminal_items(self):
        """Only an explicit reprocess leaves a terminal status."""
        assert can_transition(ContentStatus.COMPLETED, ContentStatus.PROCESSING, reprocess=True)
        assert can_transition(ContentStatus.FAILED, ContentStatus.PENDING, reprocess=True)
        assert not can_transition(ContentStatus.FAILED, ContentStatus.EMBEDDING, reprocess=True)

    def test_terminal_statuses_have_no_forward_moves(self):
        for status in ContentStatus:
            assert not can_transition(ContentStatus.COMPLETED, status)
            assert not can_transition(ContentStatus.FAILED, status)

    def test_stage_for_status(self):
        assert stage_for_status(ContentStatus.PENDING) == Stage.EXTRACT
        assert stage_for_status(ContentStatus.PROCESSING) == Stage.CHUNK
        assert stage_for_status(ContentStatus.EMBEDDING) == Stage.EMBED
        assert stage_for_status(ContentStatus.COMPLETED) is None
        assert stage_for_status(ContentStatus.FAILED) is None

    def test_every_in_flight_status_has_a_stage(self):
        """The stuck-content sweep can restart any in-flight item."""
        for status in IN_FLIGHT_STATUSES:
            assert stage_for_status(status) in STAGE_EVENTS


class TestStageResult:
    """Test outcome helpers."""

    def test_skipped_counts_as_success(self):
        result = StageResult(StageOutcome.SKIPPED, Stage.CHUNK, content_id=1, generation=0)

        assert result.is_failure is False
        assert result.as_dict()["success"] is True
        assert result.as_dict()["stage"] == "chunking"

    def test_details_flattened(self):
        result = StageResult(
            StageOutcome.PERMANENT, Stage.EMBED, content_id=9, generation=2,
            message="bad input", details={"error_kind": "invalid_input"},
        )

        payload = result.as_dict()

        assert result.is_failure is True
        assert payload["success"] is False
        assert payload["outcome"] == "permanent"
        assert payload["error_kind"] == "invalid_input"

    def test_retry_backoff_doubles_and_caps(self):
        assert [retry_backoff(a, 30, 600) for a in range(6)] == [30, 60, 120, 240, 480, 600]

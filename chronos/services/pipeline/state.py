"""
Pipeline state machine and stage outcomes.

    PENDING → TRANSCRIBING → PROCESSING → EMBEDDING → COMPLETED
       any non-terminal state → FAILED
       COMPLETED / FAILED / any → PROCESSING or PENDING   (reprocess only)
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from chronos.models.content import ContentStatus


TRANSITIONS: Dict[ContentStatus, FrozenSet[ContentStatus]] = {
    ContentStatus.PENDING: frozenset({ContentStatus.TRANSCRIBING, ContentStatus.FAILED}),
    ContentStatus.TRANSCRIBING: frozenset({ContentStatus.PROCESSING, ContentStatus.FAILED}),
    ContentStatus.PROCESSING: frozenset({ContentStatus.EMBEDDING, ContentStatus.FAILED}),
    ContentStatus.EMBEDDING: frozenset({ContentStatus.COMPLETED, ContentStatus.FAILED}),
    ContentStatus.COMPLETED: frozenset(),
    ContentStatus.FAILED: frozenset(),
}

# Targets an explicit reprocess may reset an item to, from any status
REPROCESS_TARGETS = frozenset({ContentStatus.PROCESSING, ContentStatus.PENDING})


def can_transition(current: ContentStatus, target: ContentStatus, reprocess: bool = False) -> bool:
    """True if ``current → target`` is a legal move."""
    if reprocess:
        return target in REPROCESS_TARGETS
    return target in TRANSITIONS[current]


class Stage(str, enum.Enum):
    """Pipeline stage names, as used in logs, metadata and failure events."""

    EXTRACT = "transcription"
    CHUNK = "chunking"
    EMBED = "embedding"

    def __str__(self) -> str:
        return self.value


class StageOutcome(str, enum.Enum):
    """
    Typed result of one stage-handler run.

    - SUCCESS: work done, next event emitted
    - SKIPPED: nothing to do (stale generation, already past this stage)
    - DEFERRED: owner slot or item lock unavailable; redeliver later without
      consuming the retry budget
    - RETRYABLE: transient failure; redeliver with backoff
    - PERMANENT: will never succeed; mark the item failed
    """

    SUCCESS = "success"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass
class StageResult:
    outcome: StageOutcome
    stage: Stage
    content_id: int
    generation: int
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        return self.outcome in (StageOutcome.RETRYABLE, StageOutcome.PERMANENT)

    def as_dict(self) -> Dict[str, Any]:
        """Celery task return value."""
        return {
            "success": self.outcome in (StageOutcome.SUCCESS, StageOutcome.SKIPPED),
            "outcome": self.outcome.value,
            "stage": self.stage.value,
            "content_id": self.content_id,
            "generation": self.generation,
            "message": self.message,
            **self.details,
        }


def retry_backoff(attempt: int, base_seconds: int, max_seconds: int) -> int:
    """Exponential redelivery delay for the given (0-based) attempt."""
    return int(min(base_seconds * (2 ** attempt), max_seconds))


def stage_for_status(status: ContentStatus) -> Optional[Stage]:
    """The stage an item in ``status`` is waiting on (None if terminal)."""
    return {
        ContentStatus.PENDING: Stage.EXTRACT,
        ContentStatus.TRANSCRIBING: Stage.EXTRACT,
        ContentStatus.PROCESSING: Stage.CHUNK,
        ContentStatus.EMBEDDING: Stage.EMBED,
    }.get(status)

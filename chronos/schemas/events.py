"""
Pipeline events.

Each stage trigger is its own immutable, strictly validated variant,
discriminated by ``type``. Payloads coming off the transport go through
``parse_event`` before any handler sees them; a malformed payload raises
InvalidEventError and is never retried.

Events carry identifiers only, never transcripts or chunk sets: the stage
handler re-reads current state from the metadata store, which is what makes
redelivery safe.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from chronos.core.exceptions import InvalidEventError


def _event_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PipelineEvent(BaseModel):
    """Fields shared by every event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(default_factory=_event_id)
    emitted_at: datetime = Field(default_factory=_now)


class ContentStageEvent(PipelineEvent):
    """An event addressed to one content item at one generation."""

    content_id: int = Field(gt=0)
    owner_id: str = Field(min_length=1, max_length=100)
    generation: int = Field(ge=0)


class ExtractTranscriptRequested(ContentStageEvent):
    type: Literal["transcript.extract"] = "transcript.extract"


class ChunkTranscriptRequested(ContentStageEvent):
    type: Literal["transcript.chunk"] = "transcript.chunk"


class GenerateEmbeddingsRequested(ContentStageEvent):
    type: Literal["embedding.generate"] = "embedding.generate"
    skip_if_exists: bool = True


class ReprocessRequested(PipelineEvent):
    type: Literal["content.reprocess"] = "content.reprocess"
    content_ids: List[int] = Field(min_length=1, max_length=500)
    regenerate_transcript: bool = False
    requested_by: str | None = None


class ContentFailed(ContentStageEvent):
    """Terminal failure notification for external consumers."""

    type: Literal["content.failed"] = "content.failed"
    stage: str
    error: str


PipelineEventUnion = Annotated[
    Union[
        ExtractTranscriptRequested,
        ChunkTranscriptRequested,
        GenerateEmbeddingsRequested,
        ReprocessRequested,
        ContentFailed,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[PipelineEventUnion] = TypeAdapter(PipelineEventUnion)


def parse_event(payload: Any) -> PipelineEvent:
    """
    Validate a raw transport payload into its event variant.

    Raises:
        InvalidEventError: unknown type or schema violation
    """
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidEventError(f"Malformed pipeline event: {e.errors(include_url=False)}") from e


def serialize_event(event: PipelineEvent) -> dict:
    """JSON-safe dict suitable for the Celery json serializer."""
    return event.model_dump(mode="json")

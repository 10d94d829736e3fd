"""
Pydantic schemas for transcripts and chunks.

These are the values passed between the Transcript Source Adapter, the
Chunker and the repository. They are independent of the ORM so the chunker
stays a pure function.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class TimedSegment(BaseModel):
    """A time-aligned piece of a transcript (one caption line, one STT segment)."""

    text: str
    start: float = Field(ge=0.0, description="Segment start (seconds)")
    end: float = Field(ge=0.0, description="Segment end (seconds)")

    @model_validator(mode="after")
    def end_not_before_start(self) -> "TimedSegment":
        if self.end < self.start:
            self.end = self.start
        return self


class TranscriptResult(BaseModel):
    """Output of a transcript extraction, with its cost tag."""

    text: str
    segments: List[TimedSegment] = Field(default_factory=list)
    language: Optional[str] = None
    method: str = Field(description="youtube_captions, whisper or inline")
    duration_seconds: Optional[float] = None
    cost_usd: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def minutes(self) -> float:
        return (self.duration_seconds or 0.0) / 60.0


class TranscriptChunk(BaseModel):
    """One chunk produced by the chunker, ready to be persisted."""

    chunk_index: int = Field(ge=0)
    chunk_text: str
    start_time_seconds: float = Field(ge=0.0)
    end_time_seconds: float = Field(ge=0.0)
    word_count: int = Field(ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def body_word_count(self) -> int:
        """Words this chunk owns, i.e. excluding the overlap prefix."""
        return self.word_count - int(self.metadata.get("overlap_word_count", 0))

"""
Pydantic schemas for the content pipeline API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chronos.models.content import ContentSourceType, ContentStatus


class ContentCreate(BaseModel):
    """Request schema for registering a content item."""

    owner_id: str = Field(min_length=1, max_length=100)
    title: str = Field(min_length=1, max_length=255)
    source_type: ContentSourceType
    source_ref: str = Field(default="", max_length=1000, description="Video id/URL or object-store key")
    duration_seconds: Optional[float] = Field(default=None, ge=0.0)
    transcript: Optional[str] = Field(default=None, description="Required for source_type=text")

    @model_validator(mode="after")
    def check_source(self) -> "ContentCreate":
        if self.source_type == ContentSourceType.TEXT:
            if not self.transcript or not self.transcript.strip():
                raise ValueError("transcript is required for text sources")
        elif not self.source_ref:
            raise ValueError("source_ref is required for youtube and upload sources")
        return self


class ContentResponse(BaseModel):
    """Response schema for a content item's pipeline state."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    title: str
    source_type: ContentSourceType
    status: ContentStatus
    generation: int
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    transcription_method: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    stage_metadata: Optional[Dict[str, Any]] = None
    chunk_count: int = 0
    created_at: datetime
    updated_at: datetime


class ProcessResponse(BaseModel):
    content_id: int
    accepted: bool
    status: ContentStatus
    message: str


class ReprocessRequest(BaseModel):
    content_ids: List[int] = Field(min_length=1, max_length=500)
    regenerate_transcript: bool = False


class ReprocessItemResult(BaseModel):
    content_id: int
    accepted: bool
    error: Optional[str] = None


class ReprocessResponse(BaseModel):
    accepted: int
    rejected: int
    items: List[ReprocessItemResult]


class ViewCreate(BaseModel):
    """Record that a viewer consumed (or interacted with) a content item."""

    viewer_id: str = Field(min_length=1, max_length=100)
    interaction: bool = Field(default=False, description="Count as an AI interaction instead of a view")

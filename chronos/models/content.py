"""
Content Models

Models Included:
----------------
1. ContentStatus (Enum) - Pipeline state machine states
2. ContentSourceType (Enum) - Where a transcript comes from
3. ContentItem - One ingested unit of material (a video, an upload)
4. ContentChunk - An ordered, embedded slice of a ContentItem's transcript
5. ContentView - Per-viewer consumption record feeding ranking signals

Database Tables:
----------------
- content_items
- content_chunks (CASCADE-deleted with their content item)
- content_views (CASCADE-deleted with their content item)

Relationships:
--------------
- ContentItem (1) ←→ (Many) ContentChunk
- ContentItem (1) ←→ (Many) ContentView
"""

import enum
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chronos.core.config import settings
from chronos.db.base import BaseModel, String50, String100, String255, String1000, utcnow


# ================================
# Enums
# ================================

class ContentStatus(str, enum.Enum):
    """
    Pipeline status of a content item.

    Status Flow:
    ------------
    PENDING → TRANSCRIBING → PROCESSING → EMBEDDING → COMPLETED
        ↓           ↓             ↓            ↓
        └───────────┴─────── FAILED ───────────┘

    COMPLETED and FAILED are terminal. Only an explicit reprocess moves an
    item out of them (back to PROCESSING, or to PENDING when the transcript
    is regenerated).
    """

    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    PROCESSING = "processing"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        """Return the string value of the enum."""
        return self.value


class ContentSourceType(str, enum.Enum):
    """
    Transcript source of a content item.

    - YOUTUBE: source_ref is a video id or URL; captions are free
    - UPLOAD: source_ref is an object-store key; paid speech-to-text
    - TEXT: transcript supplied at registration time
    """

    YOUTUBE = "youtube"
    UPLOAD = "upload"
    TEXT = "text"

    def __str__(self) -> str:
        return self.value


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# ================================
# ContentItem Model
# ================================

class ContentItem(BaseModel):
    """
    One ingested unit of material tracked through the pipeline.

    Key Fields:
    -----------
    - owner_id: the creator who owns the item; scopes search and caching
    - status: current ContentStatus (see state machine above)
    - generation: bumped on every reprocess. Pipeline events carry the
      generation they were issued for; handlers drop events whose generation
      no longer matches, so a superseded run can never overwrite a newer one.
    - transcript / transcript_segments: set atomically with the
      TRANSCRIBING → PROCESSING transition
    - stage_metadata: JSONB with one key per stage (transcription,
      chunking, embedding) holding cost, tokens, timings and stats
    """

    __tablename__ = "content_items"

    owner_id: Mapped[str] = mapped_column(
        String100,
        nullable=False,
        index=True,
        comment="Owner (creator) identifier"
    )

    title: Mapped[str] = mapped_column(
        String255,
        nullable=False,
        comment="Display title"
    )

    source_type: Mapped[ContentSourceType] = mapped_column(
        SAEnum(
            ContentSourceType,
            name="content_source_type",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        comment="Transcript source type"
    )

    source_ref: Mapped[str] = mapped_column(
        String1000,
        nullable=False,
        default="",
        comment="Video id/URL or object-store key"
    )

    status: Mapped[ContentStatus] = mapped_column(
        SAEnum(
            ContentStatus,
            name="content_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ContentStatus.PENDING,
        index=True,
        comment="Pipeline status"
    )

    generation: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Incremented on every reprocess"
    )

    # ================================
    # Transcript
    # ================================

    transcript: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Full transcript text (NULL until extracted)"
    )

    transcript_segments: Mapped[Optional[list]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Time-aligned segments: [{text, start, end}, ...]"
    )

    transcript_language: Mapped[Optional[str]] = mapped_column(
        String50,
        nullable=True,
    )

    transcription_method: Mapped[Optional[str]] = mapped_column(
        String50,
        nullable=True,
        comment="youtube_captions, whisper or inline"
    )

    duration_seconds: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
    )

    # ================================
    # Processing & Metadata
    # ================================

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Human-readable reason if processing failed"
    )

    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Last status transition; used to find stuck items"
    )

    stage_metadata: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Per-stage cost, token counts, timings"
    )

    # ================================
    # Relationships
    # ================================

    # Never loaded implicitly; chunks are read through the repository.
    chunks: Mapped[list["ContentChunk"]] = relationship(
        "ContentChunk",
        back_populates="content_item",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise_on_sql",
        order_by="ContentChunk.chunk_index",
    )

    __table_args__ = (
        Index("ix_content_items_status_changed", "status", "status_changed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"ContentItem(id={self.id}, owner_id={self.owner_id}, "
            f"status={self.status}, generation={self.generation})"
        )

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript and self.transcript.strip())


# ================================
# ContentChunk Model
# ================================

class ContentChunk(BaseModel):
    """
    An ordered slice of a content item's transcript.

    Invariants:
    -----------
    - chunk_index is contiguous from 0 per content item
      (enforced by delete-then-insert replacement + unique constraint)
    - end_time_seconds >= start_time_seconds
    - embedding is NULL between the chunking and embedding stages; a
      COMPLETED item has a vector on every chunk
    """

    __tablename__ = "content_chunks"

    content_item_id: Mapped[int] = mapped_column(
        ForeignKey("content_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Foreign key to content_items table"
    )

    chunk_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Order of this chunk within the content item (0-indexed)"
    )

    chunk_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    start_time_seconds: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
    )

    end_time_seconds: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
    )

    word_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    chunk_metadata: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Overlap info and word span"
    )

    embedding = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=True,
        comment="Embedding vector for semantic search (NULL until embedded)"
    )

    content_item: Mapped["ContentItem"] = relationship(
        "ContentItem",
        back_populates="chunks",
        lazy="raise_on_sql",
    )

    __table_args__ = (
        UniqueConstraint(
            "content_item_id",
            "chunk_index",
            name="uq_content_item_chunk_index"
        ),
    )

    def __repr__(self) -> str:
        preview = self.chunk_text[:50] + "..." if self.chunk_text else ""
        return (
            f"ContentChunk(id={self.id}, content_item_id={self.content_item_id}, "
            f"index={self.chunk_index}, text='{preview}')"
        )

    @property
    def is_embedded(self) -> bool:
        return self.embedding is not None


# ================================
# ContentView Model
# ================================

class ContentView(BaseModel):
    """
    Consumption record for one viewer and one content item.

    Aggregated over viewers it gives the popularity signal; the requesting
    viewer's own row gives the personalization signal.
    """

    __tablename__ = "content_views"

    viewer_id: Mapped[str] = mapped_column(
        String100,
        nullable=False,
        index=True,
    )

    content_item_id: Mapped[int] = mapped_column(
        ForeignKey("content_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    interaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_viewed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("viewer_id", "content_item_id", name="uq_content_view_viewer_item"),
    )

"""
Exception hierarchy.

Everything raised on purpose by chronos derives from ChronosError so callers
at the edges (HTTP handlers, Celery tasks) can tell expected failures apart
from bugs.

    ChronosError
    ├── PipelineError
    │   ├── PermanentStageError    fail now, no retry
    │   ├── RetryableStageError    redeliver with backoff
    │   └── RunSupersededError     a newer generation took over; stop quietly
    ├── InvalidEventError          rejected at ingestion
    ├── EmbeddingError             carries retryable + provider error kind
    ├── TranscriptError            transient extraction failure
    │   ├── NoTranscriptAvailable  permanent
    │   └── UnsupportedSourceError permanent
    ├── CacheUnavailableError      always degraded to a cache miss
    ├── SearchError                failed search, distinct from "no results"
    └── ContentNotFoundError
"""

from typing import Optional


class ChronosError(Exception):
    """Base exception for all chronos errors."""

    code = "chronos_error"


# ========================================
# Pipeline
# ========================================

class PipelineError(ChronosError):
    code = "pipeline_error"


class PermanentStageError(PipelineError):
    """Input problem that will not go away on retry (empty transcript, bad format)."""

    code = "permanent_stage_error"


class RetryableStageError(PipelineError):
    """Transient problem; the stage should be redelivered."""

    code = "retryable_stage_error"


class RunSupersededError(PipelineError):
    """The item moved to a newer generation while this run was working."""

    code = "run_superseded"


class InvalidEventError(ChronosError):
    """Pipeline event payload failed schema validation."""

    code = "invalid_event"


class ContentNotFoundError(ChronosError):
    code = "content_not_found"

    def __init__(self, content_id: int):
        super().__init__(f"Content item {content_id} not found")
        self.content_id = content_id


# ========================================
# Providers
# ========================================

class EmbeddingError(ChronosError):
    """
    Embedding provider failure.

    kind is one of: rate_limit, timeout, server, invalid_input.
    Only invalid_input is permanent.
    """

    code = "embedding_error"

    def __init__(self, message: str, kind: str = "server", retryable: Optional[bool] = None):
        super().__init__(message)
        self.kind = kind
        self.retryable = (kind != "invalid_input") if retryable is None else retryable


class TranscriptError(ChronosError):
    """Base exception for transcript-related errors."""

    code = "transcript_error"


class NoTranscriptAvailable(TranscriptError):
    """Raised when no transcript can ever be obtained for a source."""

    code = "no_transcript"


class UnsupportedSourceError(TranscriptError):
    code = "unsupported_source"


# ========================================
# Retrieval
# ========================================

class CacheUnavailableError(ChronosError):
    code = "cache_unavailable"


class SearchError(ChronosError):
    """Search could not be performed (query embedding or vector search failed)."""

    code = "search_failed"

"""
Celery tasks for background processing.
"""

from chronos.tasks.pipeline_tasks import (
    chunk_transcript,
    content_failed,
    extract_transcript,
    generate_embeddings,
    get_processing_stats,
    recover_stuck_content,
    reprocess_batch,
)

__all__ = [
    "extract_transcript",
    "chunk_transcript",
    "generate_embeddings",
    "reprocess_batch",
    "content_failed",
    "recover_stuck_content",
    "get_processing_stats",
]

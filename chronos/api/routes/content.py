"""
Content API Routes

This module provides REST API endpoints for the processing pipeline:
- Register content items and submit them for processing
- Inspect pipeline status
- Reprocess or delete items
- Record views and interactions (ranking signals)
- Pipeline and usage statistics

Processing is asynchronous: these endpoints enqueue work and return
immediately. Poll GET /content/{id} for status.
"""

from datetime import date
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from chronos.api.deps import get_orchestrator, get_repository, get_usage_tracker
from chronos.core.exceptions import ContentNotFoundError
from chronos.core.logging import get_logger
from chronos.db.base import utcnow
from chronos.schemas.content import (
    ContentCreate,
    ContentResponse,
    ProcessResponse,
    ReprocessRequest,
    ReprocessResponse,
    ViewCreate,
)
from chronos.services.pipeline.orchestrator import PipelineOrchestrator
from chronos.services.repository import ContentRepository
from chronos.services.usage_tracker import UsageTracker

logger = get_logger(__name__)

router = APIRouter(prefix="/content", tags=["content"])


async def _to_response(repository: ContentRepository, item) -> ContentResponse:
    response = ContentResponse.model_validate(item)
    return response.model_copy(update={"chunk_count": await repository.count_chunks(item.id)})


# ========================================
# Registration and Processing
# ========================================

@router.post("", response_model=ContentResponse, status_code=status.HTTP_201_CREATED)
async def create_content(
    data: ContentCreate,
    process: bool = Query(True, description="Submit for processing right away"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    repository: ContentRepository = Depends(get_repository),
):
    """
    Register a content item.

    Args:
        data: Owner, title and source
        process: Enqueue transcript extraction immediately

    Returns:
        The created item (status PENDING)
    """
    item = await orchestrator.register_content(data)
    if process:
        await orchestrator.submit_for_processing(item.id)
    return await _to_response(repository, item)


@router.get("/stats", response_model=Dict[str, int])
async def get_processing_stats(
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Content counts per pipeline status."""
    return await orchestrator.processing_stats()


@router.get("/{content_id}", response_model=ContentResponse)
async def get_content(
    content_id: int,
    repository: ContentRepository = Depends(get_repository),
):
    item = await repository.get(content_id)
    if item is None:
        raise ContentNotFoundError(content_id)
    return await _to_response(repository, item)


@router.post("/{content_id}/process", response_model=ProcessResponse, status_code=status.HTTP_202_ACCEPTED)
async def process_content(
    content_id: int,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Submit a PENDING item for processing.

    Items already in flight or finished are reported as not accepted;
    use POST /content/reprocess for those.
    """
    return await orchestrator.submit_for_processing(content_id)


@router.post("/reprocess", response_model=ReprocessResponse, status_code=status.HTTP_202_ACCEPTED)
async def reprocess_content(
    request: ReprocessRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Restart processing for a batch of items.

    Each item is handled independently. Cached search results for the
    affected owners are dropped before this endpoint returns.
    """
    items = await orchestrator.reprocess(
        request.content_ids,
        regenerate_transcript=request.regenerate_transcript,
    )
    accepted = sum(1 for item in items if item.accepted)
    return ReprocessResponse(accepted=accepted, rejected=len(items) - accepted, items=items)


@router.delete("/{content_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_content(
    content_id: int,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.delete_content(content_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========================================
# Signals
# ========================================

@router.post("/{content_id}/views", status_code=status.HTTP_204_NO_CONTENT)
async def record_view(
    content_id: int,
    view: ViewCreate,
    repository: ContentRepository = Depends(get_repository),
):
    """Record a view (or AI interaction) for popularity and personalization."""
    await repository.record_view(view.viewer_id, content_id, interaction=view.interaction)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/usage/{owner_id}")
async def get_usage(
    owner_id: str,
    usage_date: Optional[date] = None,
    usage: UsageTracker = Depends(get_usage_tracker),
):
    """Daily transcription and embedding usage for an owner."""
    try:
        totals = await usage.get_daily_usage(owner_id, usage_date)
    except Exception as e:
        logger.error("usage_load_failed", owner_id=owner_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load usage",
        )
    return {"owner_id": owner_id, "usage_date": (usage_date or utcnow().date()).isoformat(), **totals}

"""
Dependencies for FastAPI routes.

The application container is built once in the lifespan and stored on
``app.state``. Routes declare the service they need; tests override these
functions with ``app.dependency_overrides``.
"""

from fastapi import Depends, HTTPException, Request, status

from chronos.container import Container
from chronos.services.pipeline.orchestrator import PipelineOrchestrator
from chronos.services.rag.retriever import RetrievalEngine
from chronos.services.repository import ContentRepository
from chronos.services.usage_tracker import UsageTracker


def get_container(request: Request) -> Container:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return container


def get_orchestrator(container: Container = Depends(get_container)) -> PipelineOrchestrator:
    return container.orchestrator


def get_repository(container: Container = Depends(get_container)) -> ContentRepository:
    return container.repository


def get_retrieval_engine(container: Container = Depends(get_container)) -> RetrievalEngine:
    return container.retrieval


def get_usage_tracker(container: Container = Depends(get_container)) -> UsageTracker:
    return container.usage

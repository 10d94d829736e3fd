"""
Event transport.

The orchestrator only knows ``EventPublisher.publish(event)``. In production
that is CeleryEventPublisher, which maps every event variant to its Celery
task and queue; the task body hands the payload back to the orchestrator.

Delivery is at-least-once. Nothing here assumes ordering across content
items; within one item, stages are sequential because each stage emits the
next one only after its own commit.
"""

import asyncio
from typing import Dict, Protocol, Tuple

from celery import Celery

from chronos.core.logging import get_logger
from chronos.schemas.events import PipelineEvent, serialize_event

logger = get_logger(__name__)


PIPELINE_QUEUE = "pipeline"
NOTIFICATIONS_QUEUE = "notifications"

# event type -> (task name, queue)
EVENT_ROUTES: Dict[str, Tuple[str, str]] = {
    "transcript.extract": ("pipeline.extract_transcript", PIPELINE_QUEUE),
    "transcript.chunk": ("pipeline.chunk_transcript", PIPELINE_QUEUE),
    "embedding.generate": ("pipeline.generate_embeddings", PIPELINE_QUEUE),
    "content.reprocess": ("pipeline.reprocess_batch", PIPELINE_QUEUE),
    "content.failed": ("pipeline.content_failed", NOTIFICATIONS_QUEUE),
}


class EventPublisher(Protocol):
    async def publish(self, event: PipelineEvent) -> None:
        ...


class CeleryEventPublisher:
    """Publishes events as Celery task messages."""

    def __init__(self, app: Celery):
        self.app = app

    async def publish(self, event: PipelineEvent) -> None:
        task_name, queue = EVENT_ROUTES[event.type]
        payload = serialize_event(event)
        # send_task talks to the broker synchronously
        await asyncio.to_thread(
            self.app.send_task,
            task_name,
            kwargs={"event": payload},
            queue=queue,
        )
        logger.debug("pipeline_event_published", event_type=event.type, event_id=str(event.event_id), task=task_name)


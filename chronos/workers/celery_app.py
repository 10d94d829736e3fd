"""
Celery application instance and configuration.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from chronos.core.config import settings
from chronos.core.logging import setup_logging
from chronos.services.pipeline.transport import NOTIFICATIONS_QUEUE, PIPELINE_QUEUE

# Create Celery application
celery_app = Celery(
    "chronos",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["chronos.tasks.pipeline_tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer=settings.CELERY_TASK_SERIALIZER,
    result_serializer=settings.CELERY_RESULT_SERIALIZER,
    accept_content=settings.celery_accept_content_list,
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=settings.CELERY_ENABLE_UTC,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    result_expires=3600,  # 1 hour
    # Redeliver if a worker dies mid-stage; handlers are idempotent
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

# Celery Beat Schedule (Periodic Tasks)
celery_app.conf.beat_schedule = {
    'recover-stuck-content': {
        'task': 'pipeline.recover_stuck_content',
        'schedule': crontab(minute='*/10'),  # Every 10 minutes
        'options': {'queue': PIPELINE_QUEUE},
    },
    'get-processing-stats': {
        'task': 'pipeline.get_processing_stats',
        'schedule': crontab(minute='*/15'),  # Every 15 minutes
        'options': {'queue': 'monitoring'},
    },
}

# Task routing
celery_app.conf.task_routes = {
    'pipeline.content_failed': {'queue': NOTIFICATIONS_QUEUE},
    'pipeline.get_processing_stats': {'queue': 'monitoring'},
    'pipeline.*': {'queue': PIPELINE_QUEUE},
}

# Auto-discover tasks from chronos.tasks
celery_app.autodiscover_tasks(['chronos.tasks'])


@worker_process_init.connect
def configure_worker_logging(**kwargs):
    setup_logging()

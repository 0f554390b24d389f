"""
Celery Application Configuration

Configures Celery with:
- Task routing for the analysis queue
- Priority mapping for analysis requests
- Result backend for task tracking
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "analysis_pipeline",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

# Request priority -> Celery task priority (redis transport: 0 is highest)
TASK_PRIORITIES = {
    "high": 0,
    "normal": 5,
    "low": 9,
}

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit

    # Result expiration
    result_expires=settings.RUN_TTL_SECONDS,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("analysis_queue", routing_key="analysis.#"),
    ),

    # Task routing
    task_routes={
        "src.pipeline.tasks.run_analysis": {"queue": "analysis_queue"},
    },

    # Priorities on the redis transport
    broker_transport_options={
        "priority_steps": list(range(10)),
        "queue_order_strategy": "priority",
    },

    # Stage retries happen inside the orchestrator; the task itself is not retried
    task_max_retries=0,

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

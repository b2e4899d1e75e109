"""
CalcBase Celery Worker Application.

This module creates and configures the Celery application instance used
for external dispatch of the computed outbox.
"""

import logging

from celery import Celery

from calcbase.core.config import settings
from calcbase.core.logging import setup_logging

# Setup logging
setup_logging(
    log_level=settings.log_level,
    json_logs=settings.json_logs or settings.environment == "production",
)

logger = logging.getLogger(__name__)

# Create Celery app with configuration from settings
app = Celery(
    "calcbase",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)


def build_beat_schedule(dispatch_mode: str) -> dict:
    """Beat entries; the outbox drain is scheduled only for external dispatch."""
    if dispatch_mode != "external":
        return {}
    return {
        "drain-computed-outbox": {
            "task": "computed.run_once",
            "schedule": settings.computed_poll_interval_seconds,
            "options": {
                "expires": max(settings.computed_poll_interval_seconds * 2, 1.0),
            },
        },
    }


# Configure Celery
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=int(settings.computed_task_timeout_seconds * 4),
    task_soft_time_limit=int(settings.computed_task_timeout_seconds * 3),
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    include=["calcbase.computed.tasks"],
    beat_schedule=build_beat_schedule(settings.computed_dispatch_mode),
)

logger.info(
    f"Celery worker initialized for {settings.app_name} "
    f"(Environment: {settings.environment}, dispatch: {settings.computed_dispatch_mode})"
)

# Import task module so tasks are registered when just importing the app
import calcbase.computed.tasks  # noqa: E402, F401

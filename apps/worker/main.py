"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q default --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

This module imports the Celery app and explicitly registers all tasks.
Task definitions are in chorus.tasks package - no autodiscovery.

Logging Convention:
- All task log entries include request_id, task_name, task_id when available
- Tasks call configure_task_logging() at start and clear_task_context() at end
"""

from celery.signals import worker_process_init

from chorus.celery import celery_app
from chorus.logging import configure_logging, get_logger

# =============================================================================
# Task Registration (explicit imports - no autodiscovery)
# =============================================================================

from chorus.tasks import sweep_stale_turns  # noqa: F401

# =============================================================================
# Worker Lifecycle
# =============================================================================


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when a worker process starts."""
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queue="default")


# Export celery_app for Celery to find
__all__ = ["celery_app"]

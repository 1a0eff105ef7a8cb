"""Celery application configuration.

Central configuration for Celery used by the worker and beat.

Usage:
    from chorus.celery import celery_app

    # Run the sweeper once by hand:
    from chorus.tasks import sweep_stale_turns
    sweep_stale_turns.apply_async(queue="default")
"""

from celery import Celery

from chorus.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery("chorus")

# Configure from settings
celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Maintenance tasks run on the default queue
celery_app.conf.task_routes = {
    "sweep_stale_turns": {"queue": "default"},
}
celery_app.conf.task_default_queue = "default"

# Periodic sweep of turns that never settled (process crash, hard kill)
SWEEP_INTERVAL_S = 300.0

celery_app.conf.beat_schedule = {
    "sweep-stale-turns": {
        "task": "sweep_stale_turns",
        "schedule": SWEEP_INTERVAL_S,
    },
}

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False


def get_celery_app() -> Celery:
    """Get the Celery application instance.

    Returns:
        Configured Celery application.
    """
    return celery_app

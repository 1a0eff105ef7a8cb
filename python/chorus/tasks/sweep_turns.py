"""Stale turn sweeper.

A turn settles its reservation and finalizes its assistant placeholder
itself. When the process dies mid-turn neither happens; this beat job
cleans up after it:

- active credit reservations older than SWEEP_STALE_AFTER_S are released
- assistant messages still partial after the same age are marked complete
  with whatever content they hold

Both are conditional updates, so a live turn's own settle and the sweeper
never both take effect.
"""

from datetime import datetime

from chorus.celery import celery_app
from chorus.config import get_settings
from chorus.db.session import get_session_factory
from chorus.logging import clear_task_context, configure_task_logging, get_logger
from chorus.services.chats import finalize_stale_partial_messages
from chorus.services.credits import release_stale_reservations, stale_cutoff

logger = get_logger(__name__)


def run_sweep(max_age_s: int, now: datetime | None = None) -> dict:
    """Release stale reservations and finalize stale placeholders.

    Returns:
        Dict with the number of reservations released and messages finalized.
    """
    cutoff = stale_cutoff(max_age_s, now)
    session_factory = get_session_factory()
    db = session_factory()

    try:
        released = release_stale_reservations(db, cutoff)
        finalized = finalize_stale_partial_messages(db, cutoff)
    finally:
        db.close()

    if released or finalized:
        logger.info(
            "sweeper_complete",
            reservations_released=released,
            messages_finalized=finalized,
            cutoff=cutoff.isoformat(),
        )
    return {"reservations_released": released, "messages_finalized": finalized}


@celery_app.task(bind=True, max_retries=0, name="sweep_stale_turns")
def sweep_stale_turns(self, request_id: str | None = None) -> dict:
    """Beat entrypoint for run_sweep."""
    configure_task_logging(request_id, task_name="sweep_stale_turns", task_id=self.request.id)
    try:
        return run_sweep(get_settings().sweep_stale_after_s)
    except Exception as e:
        logger.error("sweeper_error", error=str(e))
        raise
    finally:
        clear_task_context()

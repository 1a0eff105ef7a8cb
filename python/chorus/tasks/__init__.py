"""Celery tasks for Chorus.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.
"""

from chorus.tasks.sweep_turns import run_sweep, sweep_stale_turns

__all__ = ["run_sweep", "sweep_stale_turns"]

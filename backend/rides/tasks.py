"""Celery tasks for ride-related background processing."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def run_matching_task(ride_id: int, reason: str = "retry"):
    """
    Deferred matching pass: an offer recheck or a backoff retry.

    Scheduled by CeleryDispatchScheduler. The pass re-reads the ride, so
    a task that arrives after the ride was accepted or cancelled does
    nothing.
    """
    from services.matching import handle_scheduled_matching

    outcome = handle_scheduled_matching(ride_id, reason)
    if outcome is None:
        return None
    logger.info(f"Matching for ride {ride_id} ({reason}): {outcome.action}")
    return outcome.action


@shared_task
def run_janitor_task():
    """Periodic repair sweep, scheduled by celery beat."""
    from services.janitor import run_janitor_sweep

    report = run_janitor_sweep()
    return report.as_dict()

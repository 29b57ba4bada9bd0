"""
Deferred matching passes.

Offer rechecks and backoff retries are "run matching for ride X after N
seconds". The default scheduler hands that to Celery once the current
transaction commits; the janitor sweep covers any pass that never runs.
"""

import logging

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

RETRY = "retry"
OFFER_RECHECK = "offer_recheck"
DRIVER_ONLINE = "driver_online"
OFFER_DECLINED = "offer_declined"
JANITOR = "janitor"


class DispatchScheduler:
    def schedule_matching(self, ride_id: int, delay_seconds: float = 0, reason: str = RETRY) -> None:
        raise NotImplementedError


class CeleryDispatchScheduler(DispatchScheduler):
    """Queues ``run_matching_task`` with a countdown."""

    def schedule_matching(self, ride_id, delay_seconds=0, reason=RETRY):
        from rides.tasks import run_matching_task

        countdown = max(0, round(delay_seconds, 3))

        def _enqueue():
            run_matching_task.apply_async((ride_id,), {"reason": reason}, countdown=countdown)

        logger.debug("Scheduling matching for ride %s in %ss (%s)", ride_id, countdown, reason)
        transaction.on_commit(_enqueue)


def get_dispatch_scheduler() -> DispatchScheduler:
    path = getattr(settings, 'DISPATCH_SCHEDULER_CLASS', 'services.matching.scheduler.CeleryDispatchScheduler')
    return import_string(path)()

"""
Driver matching and offer dispatch service.

This module handles:
    - Selecting eligible drivers for a ride
    - Sending batches of time-boxed offers
    - Expiring offers, retrying with backoff and giving up
    - The driver-online nudge
"""

from .offer_builder import (
    BlockList,
    DatabaseBlockList,
    create_offer_batch,
    select_eligible_drivers,
)
from .offer_dispatch import (
    CANCELLED,
    OFFERED,
    RETRY_SCHEDULED,
    SKIPPED,
    WAITING,
    MatchingOutcome,
    compute_backoff,
    expire_offer,
    expire_overdue_offers,
    handle_scheduled_matching,
    nudge_oldest_searching_ride,
    overdue_offers,
    run_matching,
)
from .scheduler import DispatchScheduler, get_dispatch_scheduler

__all__ = [
    "BlockList",
    "DatabaseBlockList",
    "create_offer_batch",
    "select_eligible_drivers",
    "CANCELLED",
    "OFFERED",
    "RETRY_SCHEDULED",
    "SKIPPED",
    "WAITING",
    "MatchingOutcome",
    "compute_backoff",
    "expire_offer",
    "expire_overdue_offers",
    "handle_scheduled_matching",
    "nudge_oldest_searching_ride",
    "overdue_offers",
    "run_matching",
    "DispatchScheduler",
    "get_dispatch_scheduler",
]

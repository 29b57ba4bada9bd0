"""
Offer dispatch, expiry and retry handling.

One matching pass for a ride:
1. Expire the ride's overdue offers
2. Offer the ride to the next batch of eligible drivers
3. If nobody is eligible, retry later with jittered exponential backoff
4. Give up (cancel, no driver available) after the attempt ceiling or
   the search deadline

A sent batch schedules one recheck at TTL + buffer; the janitor sweep
covers rechecks that never fire.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from rides.models import Ride, RideEvent, RideOffer, SEARCHING_STATUSES
from services.event_log import log_ride_event
from services.ride_management.exceptions import RideNotFoundError
from services.ride_management.transitions import CancelReason, transition_ride
from .offer_builder import BlockList, DatabaseBlockList, create_offer_batch, select_eligible_drivers
from .scheduler import OFFER_RECHECK, RETRY, get_dispatch_scheduler

logger = logging.getLogger(__name__)

EventType = RideEvent.EventType

OFFERED = "offered"
RETRY_SCHEDULED = "retry_scheduled"
CANCELLED = "cancelled"
WAITING = "waiting"
SKIPPED = "skipped"


@dataclass
class MatchingOutcome:
    """What one matching pass did."""
    ride_id: int
    action: str
    offers: List[RideOffer] = field(default_factory=list)
    delay_seconds: Optional[float] = None


def compute_backoff(attempt: int, rng=random) -> float:
    """Delay before retry ``attempt`` (0-based): base doubling, capped, +/-20% jitter."""
    base = getattr(settings, 'MATCHING_RETRY_BASE_SECONDS', 5)
    cap = getattr(settings, 'MATCHING_RETRY_MAX_SECONDS', 60)
    return min(base * (2 ** attempt), cap) * rng.uniform(0.8, 1.2)


def _notify_driver_after_commit(event_type: str, ride_id: int, driver_id: int, message: str = "", extra=None):
    def _send():
        from realtime.notifications import notify_driver_event
        ride = Ride.objects.filter(pk=ride_id).first()
        if ride is not None:
            notify_driver_event(event_type, ride, driver_id, message, extra)

    transaction.on_commit(_send)


def expire_offer(offer: RideOffer, now) -> bool:
    """Expire one pending offer and tell its driver. False if it was already answered."""
    updated = RideOffer.objects.filter(pk=offer.pk, status=RideOffer.Status.PENDING).update(
        status=RideOffer.Status.EXPIRED,
        responded_at=now,
    )
    if not updated:
        return False
    offer.status = RideOffer.Status.EXPIRED
    offer.responded_at = now
    log_ride_event(offer.ride_id, EventType.OFFER_EXPIRED, offer_id=offer.pk, driver_id=offer.driver_id)
    _notify_driver_after_commit(
        "offer_expired", offer.ride_id, offer.driver_id, "Your ride offer has timed out."
    )
    return True


def overdue_offers(now, ride_id: int = None, limit: int = None):
    overdue = RideOffer.objects.filter(status=RideOffer.Status.PENDING, expires_at__lte=now)
    if ride_id is not None:
        overdue = overdue.filter(ride_id=ride_id)
    overdue = overdue.order_by('expires_at')
    if limit:
        overdue = overdue[:limit]
    return overdue


def expire_overdue_offers(now=None, ride_id: int = None, limit: int = None) -> List[RideOffer]:
    """
    Mark pending offers past their deadline as expired.

    Args:
        now: Reference time
        ride_id: Restrict to one ride
        limit: Maximum offers to expire in this call

    Returns:
        The offers this call expired
    """
    now = now or timezone.now()
    expired = [offer for offer in overdue_offers(now, ride_id, limit) if expire_offer(offer, now)]

    if expired:
        logger.info("Expired %d overdue offers%s", len(expired), f" for ride {ride_id}" if ride_id else "")
    return expired


def run_matching(
    ride_id: int,
    *,
    scheduler=None,
    block_list: BlockList = None,
    now=None,
    rng=random,
) -> MatchingOutcome:
    """
    Run one matching pass for a ride in a searching status.

    Args:
        ride_id: Ride to match
        scheduler: DispatchScheduler for the recheck/retry; defaults to settings
        block_list: BlockList consulted for rider blocks; defaults to the database
        now: Reference time
        rng: Source of jitter

    Returns:
        MatchingOutcome describing what happened
    """
    scheduler = scheduler or get_dispatch_scheduler()
    block_list = block_list or DatabaseBlockList()
    now = now or timezone.now()

    with transaction.atomic():
        ride = Ride.objects.select_for_update().filter(pk=ride_id).first()
        if ride is None:
            raise RideNotFoundError("Ride not found")

        if ride.status not in SEARCHING_STATUSES:
            logger.info("Ride %s is %s, skipping matching", ride.pk, ride.status)
            return MatchingOutcome(ride.pk, SKIPPED)

        expire_overdue_offers(now=now, ride_id=ride.pk)
        candidates = select_eligible_drivers(ride, now, block_list)
        has_live_offers = ride.offers.filter(
            status=RideOffer.Status.PENDING, expires_at__gt=now
        ).exists()

        if not candidates and has_live_offers:
            # Current batch still has time; its recheck will run the next pass.
            return MatchingOutcome(ride.pk, WAITING)

        attempt = ride.dispatch_attempts
        ride.dispatch_attempts = attempt + 1
        if ride.search_deadline is None:
            ride.search_deadline = now + timedelta(
                seconds=getattr(settings, 'RIDE_SEARCH_TIMEOUT_SECONDS', 300)
            )
        log_ride_event(
            ride,
            EventType.MATCHING_STARTED,
            attempt=ride.dispatch_attempts,
            candidates=len(candidates),
        )

        offers = create_offer_batch(ride, candidates, now, ride.dispatch_attempts) if candidates else []
        if offers:
            return _send_batch(ride, offers, scheduler)

        ride.save(update_fields=['dispatch_attempts', 'search_deadline', 'updated_at'])
        if has_live_offers:
            return MatchingOutcome(ride.pk, WAITING)

        max_attempts = getattr(settings, 'MATCHING_MAX_ATTEMPTS', 8)
        if ride.dispatch_attempts >= max_attempts or now >= ride.search_deadline:
            _give_up(ride, now)
            return MatchingOutcome(ride.pk, CANCELLED)

        delay = compute_backoff(attempt, rng)
        if ride.status != Ride.Status.DISPATCHING:
            transition_ride(ride, Ride.Status.DISPATCHING, offer_expires_at=None)
        scheduler.schedule_matching(ride.pk, delay, reason=RETRY)
        logger.info(
            "No drivers for ride %s (attempt %s), retrying in %.1fs",
            ride.pk, ride.dispatch_attempts, delay
        )
        return MatchingOutcome(ride.pk, RETRY_SCHEDULED, delay_seconds=delay)


def _send_batch(ride: Ride, offers: List[RideOffer], scheduler) -> MatchingOutcome:
    ttl = getattr(settings, 'RIDE_OFFER_TTL_SECONDS', 60)
    buffer = getattr(settings, 'RIDE_OFFER_RECHECK_BUFFER_SECONDS', 5)

    attempted = set(ride.attempted_driver_ids or [])
    attempted.update(offer.driver_id for offer in offers)
    ride.attempted_driver_ids = sorted(attempted)
    ride.offer_expires_at = max(offer.expires_at for offer in offers)
    ride.save(update_fields=[
        'dispatch_attempts', 'search_deadline', 'attempted_driver_ids', 'offer_expires_at', 'updated_at',
    ])
    if ride.status != Ride.Status.OFFERED:
        transition_ride(ride, Ride.Status.OFFERED)

    for offer in offers:
        log_ride_event(
            ride,
            EventType.OFFER_CREATED,
            offer_id=offer.pk,
            driver_id=offer.driver_id,
            expires_at=offer.expires_at.isoformat(),
            distance_meters=offer.distance_meters,
        )
        _notify_driver_after_commit(
            "ride_offer",
            ride.pk,
            offer.driver_id,
            extra={"offer_id": offer.pk, "expires_at": offer.expires_at.isoformat()},
        )

    scheduler.schedule_matching(ride.pk, ttl + buffer, reason=OFFER_RECHECK)
    return MatchingOutcome(ride.pk, OFFERED, offers=offers)


def _give_up(ride: Ride, now) -> None:
    from services.ride_management.ride_lifecycle import apply_cancellation

    logger.info(
        "Giving up on ride %s after %s attempts (deadline %s)",
        ride.pk, ride.dispatch_attempts, ride.search_deadline
    )
    log_ride_event(
        ride,
        EventType.SEARCH_TIMEOUT,
        attempts=ride.dispatch_attempts,
        search_deadline=ride.search_deadline.isoformat(),
    )
    apply_cancellation(ride, CancelReason.NO_DRIVER_AVAILABLE, Ride.CancelledBy.SYSTEM, now=now)


def handle_scheduled_matching(ride_id: int, reason: str = RETRY) -> Optional[MatchingOutcome]:
    """
    Entry point for deferred passes. Re-reads the ride and does nothing
    if it has moved on since the pass was scheduled.
    """
    ride = Ride.objects.filter(pk=ride_id).first()
    if ride is None:
        logger.warning("Scheduled matching for missing ride %s", ride_id)
        return None

    if reason == OFFER_RECHECK and (ride.status != Ride.Status.OFFERED or ride.driver_id):
        logger.info("Recheck for ride %s skipped, status %s", ride_id, ride.status)
        return None
    if ride.status not in SEARCHING_STATUSES:
        return None

    return run_matching(ride_id)


def nudge_oldest_searching_ride(driver_id: int = None, scheduler=None, block_list: BlockList = None):
    """
    Re-run matching right away for the single oldest ride still searching.
    Called when a driver comes online.
    """
    ride = (
        Ride.objects.filter(status__in=SEARCHING_STATUSES)
        .order_by('created_at', 'id')
        .first()
    )
    if ride is None:
        return None

    log_ride_event(ride, EventType.DRIVER_ONLINE_TRIGGERED_MATCH, driver_id=driver_id)
    return run_matching(ride.pk, scheduler=scheduler, block_list=block_list)

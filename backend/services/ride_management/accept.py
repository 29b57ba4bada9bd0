"""
Offer acceptance and decline.

Accept is the one place two drivers race for the same ride. The ride,
the driver profile and the offer are locked in that order and each is
moved with a conditional update; if any of the three updates misses,
the whole transaction rolls back and the caller gets a precondition
error. Exactly one driver can end up on the ride.
"""

import logging

from django.db import transaction
from django.utils import timezone

from rides.models import Ride, RideEvent, RideOffer
from drivers.models import DriverProfile
from services.event_log import log_ride_event
from .exceptions import (
    Reason,
    RideNotFoundError,
    RideNotAvailableError,
    OfferExpiredError,
    OfferNotFoundError,
    DriverNotAvailableError,
    FailedPreconditionError,
    PermissionDeniedError,
)
from .ride_lifecycle import RideResult

logger = logging.getLogger(__name__)

EventType = RideEvent.EventType


def _lock_profile(driver) -> DriverProfile:
    profile = DriverProfile.objects.select_for_update().filter(user_id=driver.id).first()
    if profile is None:
        raise PermissionDeniedError("Driver profile not found")
    return profile


def accept_offer(driver, ride_id: int, now=None) -> RideResult:
    """
    Accept a ride that was offered to this driver.

    Args:
        driver: User model instance (driver)
        ride_id: ID of the ride to accept

    Returns:
        RideResult with the accepted ride
    """
    now = now or timezone.now()

    with transaction.atomic():
        # Ride before profile, the same order cancel and complete take them in.
        ride = Ride.objects.select_for_update().select_related('rider').filter(pk=ride_id).first()
        if ride is None:
            raise RideNotFoundError("Ride not found")
        profile = _lock_profile(driver)

        if ride.driver_id == driver.id and ride.status != Ride.Status.CANCELLED:
            return RideResult(
                success=True, ride=ride, message="You already accepted this ride",
                extra={"already_applied": True},
            )

        if ride.status == Ride.Status.CANCELLED:
            raise RideNotAvailableError("This ride was cancelled", reason=Reason.RIDE_CANCELLED)
        if ride.status == Ride.Status.COMPLETED:
            raise RideNotAvailableError("This ride is already completed", reason=Reason.RIDE_COMPLETED)
        if ride.driver_id is not None:
            raise RideNotAvailableError("Another driver already took this ride", reason=Reason.RIDE_TAKEN)
        if ride.status not in (Ride.Status.REQUESTED, Ride.Status.OFFERED):
            raise RideNotAvailableError(f"Ride is {ride.status} and cannot be accepted")

        offer = RideOffer.objects.select_for_update().filter(ride=ride, driver_id=driver.id).first()
        if offer is None:
            raise OfferNotFoundError("You do not have an offer for this ride")
        if offer.status == RideOffer.Status.EXPIRED or (
            offer.status == RideOffer.Status.PENDING and offer.expires_at <= now
        ):
            raise OfferExpiredError("This ride offer has timed out")
        if offer.status != RideOffer.Status.PENDING:
            raise OfferNotFoundError("This ride offer is no longer active for you")

        if not profile.is_approved:
            raise FailedPreconditionError("Your driver account is not approved", reason=Reason.DRIVER_NOT_APPROVED)
        if not profile.is_online:
            raise DriverNotAvailableError("Go online before accepting rides", reason=Reason.DRIVER_OFFLINE)
        if profile.is_busy or profile.current_ride_id is not None:
            raise DriverNotAvailableError("You already have an active ride")

        ride_updated = Ride.objects.filter(
            pk=ride.pk,
            status__in=[Ride.Status.REQUESTED, Ride.Status.OFFERED],
            driver__isnull=True,
        ).update(
            driver_id=driver.id,
            status=Ride.Status.ACCEPTED,
            accepted_at=now,
            offer_expires_at=None,
            updated_at=now,
        )
        if not ride_updated:
            raise RideNotAvailableError("Another driver already took this ride", reason=Reason.RIDE_TAKEN)

        driver_updated = DriverProfile.objects.filter(pk=profile.pk, is_busy=False).update(
            is_busy=True,
            current_ride_id=ride.pk,
            current_ride_status=Ride.Status.ACCEPTED,
        )
        if not driver_updated:
            raise DriverNotAvailableError("You already have an active ride")

        offer_updated = RideOffer.objects.filter(pk=offer.pk, status=RideOffer.Status.PENDING).update(
            status=RideOffer.Status.ACCEPTED,
            responded_at=now,
        )
        if not offer_updated:
            raise OfferNotFoundError("This ride offer is no longer active for you")

        ride.refresh_from_db()
        log_ride_event(ride, EventType.OFFER_ACCEPTED, offer_id=offer.pk, driver_id=driver.id)
        log_ride_event(ride, EventType.RIDE_ACCEPTED, driver_id=driver.id)
        logger.info("Driver %s accepted ride %s", driver.id, ride.pk)

    closed = close_sibling_offers(ride, now)
    _notify_accepted(ride, closed)

    return RideResult(
        success=True,
        ride=ride,
        message="Ride Accepted Successfully! Navigate to pickup location.",
        extra={"offer_id": offer.pk},
    )


def close_sibling_offers(ride: Ride, now=None):
    """
    Mark the other drivers' pending offers on an assigned ride as taken.
    Best effort: the janitor sweeps anything left behind.
    """
    now = now or timezone.now()
    try:
        siblings = RideOffer.objects.filter(ride=ride, status=RideOffer.Status.PENDING).exclude(
            driver_id=ride.driver_id
        )
        driver_ids = list(siblings.values_list('driver_id', flat=True))
        siblings.update(status=RideOffer.Status.TAKEN_BY_OTHER, responded_at=now)
    except Exception:
        logger.exception("Failed to close sibling offers for ride %s", ride.pk)
        return []
    return driver_ids


def _notify_accepted(ride: Ride, other_driver_ids):
    from realtime.notifications import notify_driver_event, notify_rider_event

    notify_rider_event(
        'ride_accepted',
        ride,
        'Your Ride has been Accepted! The Driver is on the way.',
        {"driver_id": ride.driver_id},
    )
    for driver_id in other_driver_ids:
        notify_driver_event('offer_taken', ride, driver_id, 'Another driver accepted this ride.')


def decline_offer(driver, ride_id: int, scheduler=None, now=None) -> RideResult:
    """
    Decline a pending offer. Declining twice, or declining an offer that
    already closed, succeeds without changes.

    When the declined offer was the ride's last live one, matching runs
    again right away instead of waiting for the recheck.
    """
    now = now or timezone.now()

    with transaction.atomic():
        ride = Ride.objects.select_for_update().filter(pk=ride_id).first()
        if ride is None:
            raise RideNotFoundError("Ride not found")

        offer = RideOffer.objects.select_for_update().filter(ride=ride, driver_id=driver.id).first()
        if offer is None:
            raise OfferNotFoundError("You do not have an offer for this ride")
        if offer.status != RideOffer.Status.PENDING:
            return RideResult(
                success=True, ride=ride, message="Offer already closed",
                extra={"already_applied": True, "offer_status": offer.status},
            )

        RideOffer.objects.filter(pk=offer.pk, status=RideOffer.Status.PENDING).update(
            status=RideOffer.Status.DECLINED,
            responded_at=now,
        )
        log_ride_event(ride, EventType.OFFER_DECLINED, offer_id=offer.pk, driver_id=driver.id)

        rematch = (
            ride.status == Ride.Status.OFFERED
            and ride.driver_id is None
            and not ride.offers.filter(status=RideOffer.Status.PENDING, expires_at__gt=now).exists()
        )

    outcome = None
    if rematch:
        from services.matching import run_matching
        outcome = run_matching(ride.pk, scheduler=scheduler)

    return RideResult(
        success=True,
        ride=ride,
        message="Offer declined." + (" We will notify the next available driver." if rematch else ""),
        extra={"queued_next_driver": bool(outcome and outcome.offers)},
    )

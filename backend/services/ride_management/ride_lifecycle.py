"""
Core ride lifecycle operations.

Request, start, progress, complete and cancel. Every mutation locks the
ride row and moves it with a conditional update through the transition
table, so two callers racing on the same ride cannot both win. Gateway
calls for capture and release happen after the ride's transaction has
committed.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from rides.models import Ride, RideEvent, RideOffer, ServiceTier, ACTIVE_STATUSES, SEARCHING_STATUSES
from drivers.models import DriverProfile, DriverLedgerEntry
from common.utils import calculate_distance
from services.event_log import log_ride_event
from services.payments.fees import compute_fee_breakdown
from .exceptions import (
    Reason,
    RideNotFoundError,
    RideNotAvailableError,
    PermissionDeniedError,
    InvalidArgumentError,
    FailedPreconditionError,
    ActiveRideExistsError,
)
from .transitions import CancelReason, transition_ride

logger = logging.getLogger(__name__)

EventType = RideEvent.EventType


@dataclass
class RideResult:
    """Result object for ride operations."""
    success: bool
    ride: Optional[Ride] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None

    @property
    def already_applied(self) -> bool:
        return bool(self.extra and self.extra.get("already_applied"))


# ===================== Helpers =====================

def _lock_ride(ride_id: int) -> Ride:
    ride = Ride.objects.select_for_update().filter(pk=ride_id).first()
    if ride is None:
        raise RideNotFoundError("Ride not found")
    return ride


def _already(ride: Ride, message: str, **extra) -> RideResult:
    return RideResult(success=True, ride=ride, message=message, extra={"already_applied": True, **extra})


def _require_assigned_driver(ride: Ride, driver, action: str):
    if ride.driver_id is None or ride.driver_id != driver.id:
        raise PermissionDeniedError(f"Only the assigned driver can {action} this ride")


def _ensure_not_terminal(ride: Ride):
    if ride.status == Ride.Status.CANCELLED:
        raise RideNotAvailableError("Ride was cancelled", reason=Reason.RIDE_CANCELLED)
    if ride.status == Ride.Status.COMPLETED:
        raise RideNotAvailableError("Ride is already completed", reason=Reason.RIDE_COMPLETED)


def _check_driver_position(driver, latitude, longitude, radius_setting: str, far_reason: str, now) -> DriverProfile:
    """
    The driver's last fix must exist, be fresh, and lie within the
    start/complete radius of the given point.
    """
    profile = DriverProfile.objects.filter(user_id=driver.id).first()
    if profile is None or not profile.has_location or profile.last_location_at is None:
        raise FailedPreconditionError(
            "No location reported by the driver",
            reason=Reason.MISSING_DRIVER_LOCATION,
        )

    max_age = getattr(settings, 'DRIVER_LOCATION_MAX_AGE_SECONDS', 60)
    age = (now - profile.last_location_at).total_seconds()
    if age > max_age:
        raise FailedPreconditionError(
            "Driver location is out of date",
            reason=Reason.STALE_DRIVER_LOCATION,
            details={"age_seconds": int(age), "max_age_seconds": max_age},
        )

    radius = getattr(settings, radius_setting, 200)
    distance = calculate_distance(profile.current_latitude, profile.current_longitude, latitude, longitude)
    if distance > radius:
        raise FailedPreconditionError(
            "Driver is too far away",
            reason=far_reason,
            details={"distance_meters": round(distance), "radius_meters": radius},
        )
    return profile


def _set_driver_ride_status(ride: Ride):
    DriverProfile.objects.filter(user_id=ride.driver_id, current_ride_id=ride.pk).update(
        current_ride_status=ride.status
    )


def release_driver(ride: Ride) -> bool:
    """Clear the busy lock, but only if it still points at this ride."""
    if ride.driver_id is None:
        return False
    return bool(
        DriverProfile.objects.filter(user_id=ride.driver_id, current_ride_id=ride.pk).update(
            is_busy=False,
            current_ride=None,
            current_ride_status='',
        )
    )


def _notify_rider_after_commit(ride_id: int, event_type: str, message: str):
    def _send():
        from realtime.notifications import notify_rider_event
        ride = Ride.objects.filter(pk=ride_id).first()
        if ride is not None:
            notify_rider_event(event_type, ride, message)

    transaction.on_commit(_send)


def parse_coordinate(name: str, value, bound: int) -> Decimal:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgumentError(f"{name} must be a number", details={"field": name})
    if not number.is_finite() or abs(number) > bound:
        raise InvalidArgumentError(f"{name} is out of range", details={"field": name})
    return number.quantize(Decimal("0.000001"))


# ===================== Rider Operations =====================

def check_active_ride(user) -> Optional[Ride]:
    """The rider's searching or in-flight ride, if any."""
    return Ride.objects.filter(
        rider=user,
        status__in=SEARCHING_STATUSES + ACTIVE_STATUSES,
    ).first()


def request_ride(
    rider,
    pickup_latitude,
    pickup_longitude,
    dropoff_latitude,
    dropoff_longitude,
    estimated_fare_cents: int,
    service_tier: str = ServiceTier.STANDARD,
    pickup_address: str = "",
    dropoff_address: str = "",
    scheduler=None,
    block_list=None,
) -> RideResult:
    """
    Create a ride and run its first matching pass.

    Args:
        rider: User model instance (rider)
        pickup_latitude, pickup_longitude: Pickup point
        dropoff_latitude, dropoff_longitude: Dropoff point
        estimated_fare_cents: Quoted fare before fees, positive integer cents
        service_tier: Requested tier
        pickup_address, dropoff_address: Human-readable addresses
        scheduler: DispatchScheduler override
        block_list: BlockList override

    Returns:
        RideResult with the created ride and what matching did

    Raises:
        PermissionDeniedError: Caller is not a rider
        InvalidArgumentError: Bad coordinates, tier or fare
        ActiveRideExistsError: Rider already has a ride in flight
    """
    if getattr(rider, 'role', None) != 'rider':
        raise PermissionDeniedError("Only riders can request rides")

    coords = {
        'pickup_latitude': parse_coordinate('pickup_latitude', pickup_latitude, 90),
        'pickup_longitude': parse_coordinate('pickup_longitude', pickup_longitude, 180),
        'dropoff_latitude': parse_coordinate('dropoff_latitude', dropoff_latitude, 90),
        'dropoff_longitude': parse_coordinate('dropoff_longitude', dropoff_longitude, 180),
    }
    if service_tier not in ServiceTier.values:
        raise InvalidArgumentError("Unknown service tier", details={"field": "service_tier"})
    if isinstance(estimated_fare_cents, bool) or not isinstance(estimated_fare_cents, int) or estimated_fare_cents <= 0:
        raise InvalidArgumentError(
            "estimated_fare_cents must be a positive integer", details={"field": "estimated_fare_cents"}
        )

    now = timezone.now()
    with transaction.atomic():
        if check_active_ride(rider):
            raise ActiveRideExistsError("You already have an active ride")

        breakdown = compute_fee_breakdown(estimated_fare_cents)
        ride = Ride.objects.create(
            rider=rider,
            pickup_address=pickup_address or '',
            dropoff_address=dropoff_address or '',
            service_tier=service_tier,
            status=Ride.Status.REQUESTED,
            search_deadline=now + timedelta(seconds=getattr(settings, 'RIDE_SEARCH_TIMEOUT_SECONDS', 300)),
            created_at=now,
            **coords,
            **breakdown.as_ride_fields(),
        )
        log_ride_event(
            ride,
            EventType.RIDE_CREATED,
            rider_id=rider.id,
            service_tier=service_tier,
            estimated_fare_cents=estimated_fare_cents,
            total_charge_cents=breakdown.total_charge_cents,
        )

    from services.matching import run_matching

    outcome = run_matching(ride.pk, scheduler=scheduler, block_list=block_list)
    ride.refresh_from_db()

    if outcome.offers:
        message = "Notifying nearby drivers..."
    elif ride.status == Ride.Status.CANCELLED:
        message = "No drivers available. Please try again later."
    else:
        message = "No available drivers found nearby yet."

    return RideResult(
        success=True,
        ride=ride,
        message=message,
        extra={"matching": outcome.action, "offers_sent": len(outcome.offers)},
    )


# ===================== Driver Operations =====================

def start_ride(driver, ride_id: int, now=None) -> RideResult:
    """
    Pick the rider up. Requires an authorized payment and a fresh driver
    fix within the proximity radius of pickup.
    """
    now = now or timezone.now()
    with transaction.atomic():
        ride = _lock_ride(ride_id)
        _require_assigned_driver(ride, driver, "start")

        if ride.started_at is not None and ride.status != Ride.Status.CANCELLED:
            return _already(ride, "Ride already started")
        _ensure_not_terminal(ride)
        if ride.status != Ride.Status.ACCEPTED:
            raise RideNotAvailableError(f"Cannot start a ride that is {ride.status}")
        if ride.payment_status != Ride.PaymentStatus.AUTHORIZED:
            raise FailedPreconditionError(
                "Payment has not been authorized yet", reason=Reason.PAYMENT_NOT_AUTHORIZED
            )

        _check_driver_position(
            driver, ride.pickup_latitude, ride.pickup_longitude, "START_RADIUS_METERS", Reason.TOO_FAR_FROM_PICKUP, now
        )

        if not transition_ride(ride, Ride.Status.STARTED, started_at=now):
            raise RideNotAvailableError("Ride changed while starting, try again")
        _set_driver_ride_status(ride)
        log_ride_event(ride, EventType.RIDE_STARTED, driver_id=driver.id)
        _notify_rider_after_commit(ride.pk, 'ride_started', 'Your driver has picked you up.')

    return RideResult(success=True, ride=ride, message="Ride started")


def progress_ride(driver, ride_id: int, now=None) -> RideResult:
    """Mark a started ride as under way."""
    now = now or timezone.now()
    with transaction.atomic():
        ride = _lock_ride(ride_id)
        _require_assigned_driver(ride, driver, "update")

        if ride.in_progress_at is not None and ride.status != Ride.Status.CANCELLED:
            return _already(ride, "Ride already in progress")
        _ensure_not_terminal(ride)
        if ride.status != Ride.Status.STARTED:
            raise RideNotAvailableError(f"Cannot progress a ride that is {ride.status}")

        if not transition_ride(ride, Ride.Status.IN_PROGRESS, in_progress_at=now):
            raise RideNotAvailableError("Ride changed while updating, try again")
        _set_driver_ride_status(ride)
        log_ride_event(ride, EventType.RIDE_IN_PROGRESS, driver_id=driver.id)

    return RideResult(success=True, ride=ride, message="Ride in progress")


def complete_ride(driver, ride_id: int, gateway=None, now=None) -> RideResult:
    """
    Drop the rider off, release the driver, record the payout and capture
    the hold.

    A failed capture does not undo the completion; the ride is left with
    ``capture_failed`` for the janitor to reconcile.
    """
    from services.payments.orchestrator import capture_payment

    now = now or timezone.now()
    with transaction.atomic():
        ride = _lock_ride(ride_id)
        _require_assigned_driver(ride, driver, "complete")

        if ride.status == Ride.Status.COMPLETED:
            return _already(ride, "Ride already completed", payment_status=ride.payment_status)
        if ride.status == Ride.Status.CANCELLED:
            raise RideNotAvailableError("Ride was cancelled", reason=Reason.RIDE_CANCELLED)
        if ride.payment_status == Ride.PaymentStatus.CAPTURED:
            raise FailedPreconditionError(
                "Payment was already captured", reason=Reason.PAYMENT_ALREADY_CAPTURED
            )
        if ride.status not in (Ride.Status.STARTED, Ride.Status.IN_PROGRESS):
            raise RideNotAvailableError(f"Cannot complete a ride that is {ride.status}")
        if ride.payment_status != Ride.PaymentStatus.AUTHORIZED:
            raise FailedPreconditionError(
                "Payment has not been authorized", reason=Reason.PAYMENT_NOT_AUTHORIZED
            )

        _check_driver_position(
            driver, ride.dropoff_latitude, ride.dropoff_longitude, "COMPLETE_RADIUS_METERS", Reason.TOO_FAR_FROM_DROPOFF, now
        )

        if not transition_ride(ride, Ride.Status.COMPLETED, completed_at=now):
            raise RideNotAvailableError("Ride changed while completing, try again")
        release_driver(ride)

        entry, _ = DriverLedgerEntry.objects.get_or_create(
            ride=ride,
            entry_type=DriverLedgerEntry.EntryType.TRIP_EARNING,
            defaults={
                'driver_id': ride.driver_id,
                'amount_cents': ride.driver_payout_cents,
                'created_at': now,
            },
        )
        log_ride_event(
            ride,
            EventType.RIDE_COMPLETED,
            driver_id=driver.id,
            driver_payout_cents=ride.driver_payout_cents,
        )
        _notify_rider_after_commit(
            ride.pk, 'ride_completed', 'Your ride has been completed. Thank you for riding with us!'
        )

    capture = capture_payment(ride.pk, gateway=gateway)
    ride.refresh_from_db()

    return RideResult(
        success=True,
        ride=ride,
        message="Ride completed successfully",
        extra={
            "payment_status": ride.payment_status,
            "captured": capture.captured,
            "needs_reauthorization": capture.needs_reauthorization,
            "capture_error": capture.error,
            "ledger_entry_id": entry.pk,
        },
    )


def get_current_driver_ride(driver) -> Optional[Ride]:
    """Get driver's current active ride."""
    return Ride.objects.filter(
        driver=driver,
        status__in=ACTIVE_STATUSES,
    ).select_related('rider').first()


# ===================== Cancellation =====================

def apply_cancellation(
    ride: Ride,
    reason: str,
    cancelled_by: str,
    user=None,
    now=None,
    note: str = "",
) -> bool:
    """
    Move a locked ride to cancelled and unwind everything hanging off it:
    the driver's busy lock and any offers still pending.

    Must be called inside the transaction that holds the ride's row lock.
    The payment hold is released separately, after commit.
    """
    now = now or timezone.now()
    previous_status = ride.status
    if not transition_ride(
        ride,
        Ride.Status.CANCELLED,
        cancelled_at=now,
        cancel_reason=reason,
        cancelled_by=cancelled_by,
        cancelled_by_user=user,
        offer_expires_at=None,
    ):
        return False

    release_driver(ride)

    open_offers = RideOffer.objects.filter(ride=ride, status=RideOffer.Status.PENDING)
    offered_driver_ids = list(open_offers.values_list('driver_id', flat=True))
    open_offers.update(status=RideOffer.Status.REJECTED, responded_at=now)

    metadata = {"reason": reason, "cancelled_by": cancelled_by, "previous_status": previous_status}
    if note:
        metadata["note"] = note[:500]
    log_ride_event(ride, EventType.RIDE_CANCELLED, **metadata)
    logger.info("Ride %s cancelled by %s (%s)", ride.pk, cancelled_by, reason)

    driver_ids = set(offered_driver_ids)
    if ride.driver_id:
        driver_ids.add(ride.driver_id)

    def _notify():
        from realtime.notifications import notify_driver_event, notify_rider_event
        fresh = Ride.objects.filter(pk=ride.pk).first()
        if fresh is None:
            return
        if cancelled_by != Ride.CancelledBy.RIDER:
            notify_rider_event('ride_cancelled', fresh, 'Your ride was cancelled.', {"reason": reason})
        for driver_id in driver_ids:
            if driver_id != getattr(user, 'id', None):
                notify_driver_event('ride_cancelled', fresh, driver_id, 'Ride request cancelled.')

    transaction.on_commit(_notify)
    return True


def cancel_ride(user, ride_id: int, reason: str = "", gateway=None, now=None) -> RideResult:
    """
    Cancel a ride as its rider or its assigned driver.

    Riders may cancel until the ride starts; the assigned driver may
    cancel until it completes. Repeating a cancellation you already made
    succeeds without doing anything.
    """
    from services.payments.orchestrator import release_payment

    now = now or timezone.now()
    with transaction.atomic():
        ride = _lock_ride(ride_id)
        is_rider = ride.rider_id == user.id
        is_driver = ride.driver_id is not None and ride.driver_id == user.id
        if not (is_rider or is_driver):
            raise PermissionDeniedError("Only the rider or the assigned driver can cancel this ride")

        if ride.status == Ride.Status.CANCELLED:
            if ride.cancelled_by_user_id == user.id:
                return _already(ride, "Ride already cancelled", payment_status=ride.payment_status)
            raise RideNotAvailableError("Ride was already cancelled", reason=Reason.RIDE_ALREADY_CANCELLED)
        if ride.status == Ride.Status.COMPLETED:
            raise RideNotAvailableError("Ride is already completed", reason=Reason.RIDE_COMPLETED)
        if is_rider and ride.status in (Ride.Status.STARTED, Ride.Status.IN_PROGRESS):
            raise RideNotAvailableError("Ride has already started", reason=Reason.RIDE_STARTED)

        cancelled_by = Ride.CancelledBy.RIDER if is_rider else Ride.CancelledBy.DRIVER
        code = CancelReason.RIDER_CANCELLED if is_rider else CancelReason.DRIVER_CANCELLED
        had_driver = ride.driver_id is not None
        if not apply_cancellation(ride, code, cancelled_by, user=user, now=now, note=reason):
            raise RideNotAvailableError("Ride changed while cancelling, try again")

    payment_status = release_payment(ride.pk, cancelled_by=cancelled_by, gateway=gateway)
    ride.refresh_from_db()

    return RideResult(
        success=True,
        ride=ride,
        message="Ride cancelled successfully",
        extra={"was_assigned": had_driver, "payment_status": payment_status},
    )


def cancel_ride_by_system(
    ride_id: int,
    reason: str,
    guard=None,
    event_type: str = None,
    gateway=None,
    now=None,
    **event_metadata,
) -> bool:
    """
    Cancel on behalf of the platform (timeouts, janitor).

    Args:
        ride_id: Ride to cancel
        reason: Stored cancel reason
        guard: Callable run on the locked ride; returning False aborts
        event_type: Optional event logged just before the cancellation
        gateway: PaymentGateway override
        now: Reference time

    Returns:
        True if this call cancelled the ride
    """
    from services.payments.orchestrator import release_payment

    with transaction.atomic():
        ride = Ride.objects.select_for_update().filter(pk=ride_id).first()
        if ride is None or ride.is_terminal:
            return False
        if guard is not None and not guard(ride):
            return False
        if event_type:
            log_ride_event(ride, event_type, **event_metadata)
        if not apply_cancellation(ride, reason, Ride.CancelledBy.SYSTEM, now=now):
            return False

    release_payment(ride_id, cancelled_by=Ride.CancelledBy.SYSTEM, gateway=gateway)
    return True


# ===================== Queries =====================

def get_ride_history(user, limit=None) -> List[Ride]:
    """Most recent rides the user took part in, newest first."""
    default_limit = getattr(settings, 'RIDE_HISTORY_DEFAULT_LIMIT', 10)
    max_limit = getattr(settings, 'RIDE_HISTORY_MAX_LIMIT', 50)

    if limit in (None, ''):
        limit = default_limit
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise InvalidArgumentError("limit must be an integer", details={"field": "limit"})
    if limit < 1:
        raise InvalidArgumentError("limit must be positive", details={"field": "limit"})
    limit = min(limit, max_limit)

    return list(
        Ride.objects.filter(Q(rider=user) | Q(driver=user))
        .select_related('rider', 'driver')
        .order_by('-created_at', '-id')[:limit]
    )

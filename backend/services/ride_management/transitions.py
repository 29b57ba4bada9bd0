"""
Closed transition tables for ride status and payment status.

Every status value has an entry; terminal statuses map to an empty set.
Writes go through conditional UPDATEs keyed on the legal predecessors,
so a concurrent writer that already moved the row makes the update a
no-op instead of a regression.
"""

import logging

from django.utils import timezone

from rides.models import Ride

logger = logging.getLogger(__name__)

RideStatus = Ride.Status
PaymentStatus = Ride.PaymentStatus


class CancelReason:
    """Values stored in ``Ride.cancel_reason``."""
    RIDER_CANCELLED = "rider_cancelled"
    DRIVER_CANCELLED = "driver_cancelled"
    NO_DRIVER_AVAILABLE = "no_driver_available"
    SEARCH_TIMEOUT = "search_timeout"
    PAYMENT_TIMEOUT = "payment_timeout"
    DRIVER_NO_START_TIMEOUT = "driver_no_start_timeout"


RIDE_TRANSITIONS = {
    RideStatus.REQUESTED: {RideStatus.DISPATCHING, RideStatus.OFFERED, RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.DISPATCHING: {RideStatus.OFFERED, RideStatus.CANCELLED},
    RideStatus.OFFERED: {RideStatus.ACCEPTED, RideStatus.DISPATCHING, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {RideStatus.STARTED, RideStatus.CANCELLED},
    RideStatus.STARTED: {RideStatus.IN_PROGRESS, RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

# NONE is also reachable from non-captured states when a vanished hold is cleared.
PAYMENT_TRANSITIONS = {
    PaymentStatus.NONE: {
        PaymentStatus.REQUIRES_AUTHORIZATION, PaymentStatus.AUTHORIZED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.REQUIRES_AUTHORIZATION: {
        PaymentStatus.AUTHORIZED, PaymentStatus.CANCELLED, PaymentStatus.NONE,
    },
    PaymentStatus.AUTHORIZED: {
        PaymentStatus.CAPTURED, PaymentStatus.CAPTURE_FAILED, PaymentStatus.CANCELLED, PaymentStatus.NONE,
    },
    PaymentStatus.CAPTURE_FAILED: {
        PaymentStatus.CAPTURED, PaymentStatus.CANCELLED, PaymentStatus.NONE,
    },
    PaymentStatus.CAPTURED: {PaymentStatus.REFUNDED, PaymentStatus.REFUND_FAILED},
    PaymentStatus.REFUND_FAILED: {PaymentStatus.REFUNDED},
    PaymentStatus.CANCELLED: {PaymentStatus.NONE},
    PaymentStatus.REFUNDED: set(),
}


def can_transition_ride(current, target) -> bool:
    return target in RIDE_TRANSITIONS[RideStatus(current)]


def can_transition_payment(current, target) -> bool:
    return target in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def payment_predecessors(target):
    return [status for status, targets in PAYMENT_TRANSITIONS.items() if target in targets]


def transition_ride(ride: Ride, target, **fields) -> bool:
    """
    Move ``ride`` to ``target`` if it is still in the status we read.

    Returns False when the transition is illegal or another writer moved
    the ride first. On success the in-memory instance is updated too.
    """
    current = ride.status
    if not can_transition_ride(current, target):
        return False

    fields.setdefault('updated_at', timezone.now())
    updated = Ride.objects.filter(pk=ride.pk, status=current).update(status=target, **fields)
    if not updated:
        logger.info("Ride %s left %s before transition to %s", ride.pk, current, target)
        return False

    ride.status = target
    for name, value in fields.items():
        setattr(ride, name, value)
    return True


def advance_payment_status(ride: Ride, target, **fields) -> bool:
    """Conditionally move the ride's payment status along the table."""
    fields.setdefault('updated_at', timezone.now())
    updated = Ride.objects.filter(
        pk=ride.pk,
        payment_status__in=payment_predecessors(target),
    ).update(payment_status=target, **fields)
    if not updated:
        logger.info(
            "Payment status for ride %s not advanced to %s (currently %s)",
            ride.pk, target, ride.payment_status,
        )
        return False

    ride.payment_status = target
    for name, value in fields.items():
        setattr(ride, name, value)
    return True

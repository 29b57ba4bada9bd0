"""
Payment orchestration for rides.

A ride carries at most one hold at a time. The hold is opened on the
rider's first payment request, authorized client-side, captured when the
ride completes, and cancelled or refunded when it is cancelled. The
gateway is the source of truth for the hold's state; the ride's
``payment_status`` is a monotonic mirror of it.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple

from django.conf import settings
from django.utils import timezone

from rides.models import Ride, RideEvent, ACTIVE_STATUSES
from services.event_log import log_ride_event
from services.ride_management.exceptions import (
    RideNotFoundError,
    PermissionDeniedError,
    InvalidArgumentError,
    RideNotAvailableError,
    Reason,
)
from services.ride_management.transitions import advance_payment_status
from .fees import compute_fee_breakdown
from .gateway import GatewayError, HoldNotFoundError, HoldSnapshot, get_payment_gateway

logger = logging.getLogger(__name__)

PaymentStatus = Ride.PaymentStatus
EventType = RideEvent.EventType

# gateway status -> (ride payment status, client confirmation needed)
GATEWAY_STATUS_MAP = {
    'requires_payment_method': (PaymentStatus.REQUIRES_AUTHORIZATION, True),
    'requires_confirmation': (PaymentStatus.REQUIRES_AUTHORIZATION, True),
    'requires_action': (PaymentStatus.REQUIRES_AUTHORIZATION, True),
    'processing': (PaymentStatus.REQUIRES_AUTHORIZATION, False),
    'requires_capture': (PaymentStatus.AUTHORIZED, False),
    'succeeded': (PaymentStatus.CAPTURED, False),
    'canceled': (PaymentStatus.CANCELLED, False),
}

GATEWAY_TERMINAL_STATUSES = {'succeeded', 'canceled'}

STATUS_EVENTS = {
    PaymentStatus.AUTHORIZED: EventType.PAYMENT_AUTHORIZED,
    PaymentStatus.CAPTURED: EventType.PAYMENT_CAPTURED,
    PaymentStatus.CANCELLED: EventType.PAYMENT_CANCELLED,
}


@dataclass
class PaymentState:
    """What getPaymentState reports to the client."""
    ride_id: int
    payment_status: str
    needs_confirmation: bool = False
    hold_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount_cents: int = 0
    recovered: bool = False
    error: Optional[str] = None
    breakdown: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    captured: bool
    payment_status: str
    needs_reauthorization: bool = False
    already_captured: bool = False
    error: Optional[str] = None


def map_gateway_status(gateway_status: str) -> Tuple[str, bool]:
    """Translate a gateway hold status; unknown values pass through."""
    mapped = GATEWAY_STATUS_MAP.get(gateway_status)
    if mapped is None:
        logger.warning("Unknown gateway hold status %r, passing through", gateway_status)
        return gateway_status, False
    return mapped


def _breakdown(ride: Ride) -> Dict[str, Any]:
    return {
        "fare_cents": ride.estimated_fare_cents,
        "rider_fee_cents": ride.rider_fee_cents,
        "driver_fee_cents": ride.driver_fee_cents,
        "total_charge_cents": ride.total_charge_cents,
        "driver_payout_cents": ride.driver_payout_cents,
        "platform_fee_cents": ride.platform_fee_cents,
    }


def _get_ride(ride_id) -> Ride:
    ride = Ride.objects.filter(pk=ride_id).first()
    if ride is None:
        raise RideNotFoundError("Ride not found")
    return ride


def _currency() -> str:
    return getattr(settings, 'PAYMENT_CURRENCY', 'usd')


def _state(ride: Ride, snapshot: Optional[HoldSnapshot] = None, **kwargs) -> PaymentState:
    return PaymentState(
        ride_id=ride.pk,
        payment_status=kwargs.pop('payment_status', ride.payment_status),
        hold_id=ride.payment_intent_id or None,
        client_secret=snapshot.client_secret if snapshot else None,
        amount_cents=snapshot.amount if snapshot else ride.total_charge_cents,
        breakdown=_breakdown(ride),
        **kwargs,
    )


def sync_from_snapshot(ride: Ride, snapshot: HoldSnapshot) -> PaymentState:
    """
    Write the gateway's hold status back onto the ride when it moves the
    ride forward. Regressions are refused by the transition table.
    """
    mapped, needs_confirmation = map_gateway_status(snapshot.status)
    if mapped in PaymentStatus.values and mapped != ride.payment_status:
        now = timezone.now()
        extra = {}
        if mapped == PaymentStatus.AUTHORIZED and ride.payment_authorized_at is None:
            extra['payment_authorized_at'] = now
        elif mapped == PaymentStatus.CAPTURED and ride.payment_captured_at is None:
            extra['payment_captured_at'] = now

        if advance_payment_status(ride, mapped, **extra):
            event_type = STATUS_EVENTS.get(mapped)
            if event_type:
                log_ride_event(ride, event_type, hold_id=snapshot.id, source='gateway_sync')
        else:
            # Another writer may have moved it; report what is stored.
            ride.refresh_from_db()

    return _state(
        ride,
        snapshot,
        payment_status=ride.payment_status if mapped in PaymentStatus.values else mapped,
        needs_confirmation=needs_confirmation,
    )


def clear_stale_hold(ride: Ride, reason: str = "hold_missing") -> bool:
    """
    Forget a hold the gateway no longer knows about so a new one can be
    opened. Captured and refunded holds are never cleared.
    """
    stale_id = ride.payment_intent_id
    cleared = Ride.objects.filter(
        pk=ride.pk,
        payment_intent_id=stale_id,
        payment_status__in=[
            PaymentStatus.NONE,
            PaymentStatus.REQUIRES_AUTHORIZATION,
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURE_FAILED,
            PaymentStatus.CANCELLED,
        ],
    ).update(
        payment_intent_id='',
        payment_status=PaymentStatus.NONE,
        payment_authorized_at=None,
        updated_at=timezone.now(),
    )
    if not cleared:
        return False

    logger.warning("Cleared stale payment hold %s on ride %s (%s)", stale_id, ride.pk, reason)
    ride.payment_intent_id = ''
    ride.payment_status = PaymentStatus.NONE
    ride.payment_authorized_at = None
    log_ride_event(ride, EventType.PAYMENT_RECONCILED, action='stale_hold_cleared', hold_id=stale_id, reason=reason)
    return True


def _transfer_destination(ride: Ride) -> Optional[str]:
    if not getattr(settings, 'REVENUE_SPLIT_ENABLED', False) or ride.driver_id is None:
        return None

    from drivers.models import DriverProfile

    profile = DriverProfile.objects.filter(user_id=ride.driver_id).first()
    if profile is None or not profile.payout_account_id:
        return None
    if profile.payout_account_status != DriverProfile.PayoutStatus.ACTIVE:
        return None
    return profile.payout_account_id


# ===================== Rider Operations =====================

def request_payment(user, ride_id: int, gateway=None) -> PaymentState:
    """
    Open the ride's hold, or report the existing one.

    Args:
        user: The rider
        ride_id: Ride to pay for
        gateway: PaymentGateway override

    Returns:
        PaymentState with the client secret needed to authorize
    """
    gateway = gateway or get_payment_gateway()
    ride = _get_ride(ride_id)

    if ride.rider_id != user.id:
        raise PermissionDeniedError("Only the rider can pay for this ride")
    # A completed ride whose hold vanished at capture may be re-authorized.
    reauthorizing = ride.status == Ride.Status.COMPLETED and ride.payment_status == PaymentStatus.NONE
    if ride.status not in ACTIVE_STATUSES and not reauthorizing:
        raise RideNotAvailableError(f"Cannot pay for a ride that is {ride.status}")
    if ride.estimated_fare_cents <= 0:
        raise InvalidArgumentError("Ride has no fare to charge")

    if ride.payment_intent_id:
        try:
            snapshot = gateway.retrieve_hold(ride.payment_intent_id)
        except HoldNotFoundError:
            clear_stale_hold(ride)
        except GatewayError as exc:
            logger.error("Could not retrieve hold for ride %s: %s", ride.pk, exc)
            return _state(ride, error=str(exc))
        else:
            if snapshot.status != 'canceled':
                return sync_from_snapshot(ride, snapshot)
            clear_stale_hold(ride, reason="hold_cancelled")

    return _open_hold(ride, gateway)


def _open_hold(ride: Ride, gateway) -> PaymentState:
    breakdown = compute_fee_breakdown(ride.estimated_fare_cents)
    # Nothing to split when the whole charge is platform margin.
    destination = _transfer_destination(ride) if breakdown.driver_payout_cents > 0 else None

    try:
        snapshot = gateway.create_hold(
            amount_cents=breakdown.total_charge_cents,
            currency=_currency(),
            metadata={
                "ride_id": ride.pk,
                "rider_id": ride.rider_id,
                "driver_id": ride.driver_id,
                "driver_payout_cents": breakdown.driver_payout_cents,
                "platform_fee_cents": breakdown.platform_fee_cents,
            },
            application_fee_cents=breakdown.platform_fee_cents if destination else None,
            destination=destination,
        )
    except GatewayError as exc:
        logger.error("Could not open hold for ride %s: %s", ride.pk, exc)
        return _state(ride, error=str(exc))

    mapped, needs_confirmation = map_gateway_status(snapshot.status)
    if mapped not in PaymentStatus.values:
        mapped = PaymentStatus.REQUIRES_AUTHORIZATION

    now = timezone.now()
    stored = Ride.objects.filter(
        pk=ride.pk,
        payment_intent_id='',
        payment_status=PaymentStatus.NONE,
    ).update(
        payment_intent_id=snapshot.id,
        payment_status=mapped,
        transfer_destination=destination or '',
        payment_authorized_at=now if mapped == PaymentStatus.AUTHORIZED else None,
        updated_at=now,
        **breakdown.as_ride_fields(),
    )

    if not stored:
        # Another request stored its hold first; release ours and report theirs.
        logger.info("Lost hold race on ride %s, cancelling %s", ride.pk, snapshot.id)
        try:
            gateway.cancel_hold(snapshot.id, reason='duplicate')
        except GatewayError:
            logger.exception("Failed to cancel duplicate hold %s", snapshot.id)
        ride.refresh_from_db()
        if not ride.payment_intent_id:
            return _state(ride, error="Payment hold is being reset, try again")
        try:
            return sync_from_snapshot(ride, gateway.retrieve_hold(ride.payment_intent_id))
        except GatewayError as exc:
            return _state(ride, error=str(exc))

    ride.refresh_from_db()
    log_ride_event(
        ride,
        EventType.PAYMENT_INTENT_CREATED,
        hold_id=snapshot.id,
        amount_cents=breakdown.total_charge_cents,
        split=bool(destination),
    )
    if mapped == PaymentStatus.AUTHORIZED:
        log_ride_event(ride, EventType.PAYMENT_AUTHORIZED, hold_id=snapshot.id)

    return _state(ride, snapshot, needs_confirmation=needs_confirmation)


def get_payment_state(user, ride_id: int, gateway=None) -> PaymentState:
    """Idempotent read and reconcile of the ride's hold."""
    gateway = gateway or get_payment_gateway()
    ride = _get_ride(ride_id)

    if not (user.is_staff or ride.is_participant(user)):
        raise PermissionDeniedError("You are not part of this ride")

    if not ride.payment_intent_id:
        return _state(ride)

    try:
        snapshot = gateway.retrieve_hold(ride.payment_intent_id)
    except HoldNotFoundError:
        clear_stale_hold(ride)
        return _state(ride, recovered=True)
    except GatewayError as exc:
        logger.error("Could not retrieve hold for ride %s: %s", ride.pk, exc)
        return _state(ride, error=str(exc))

    return sync_from_snapshot(ride, snapshot)


# ===================== Lifecycle Hooks =====================

def capture_payment(ride_id: int, gateway=None) -> CaptureResult:
    """
    Capture the ride's hold after completion.

    A gateway failure marks the payment ``capture_failed`` instead of
    undoing the completion. A hold the gateway no longer knows about is
    cleared and the caller is told to re-authorize.
    """
    gateway = gateway or get_payment_gateway()
    ride = _get_ride(ride_id)

    if ride.payment_status == PaymentStatus.CAPTURED:
        return CaptureResult(True, ride.payment_status, already_captured=True)
    if not ride.payment_intent_id:
        return CaptureResult(False, ride.payment_status, needs_reauthorization=True)

    try:
        snapshot = gateway.capture_hold(ride.payment_intent_id)
    except HoldNotFoundError:
        clear_stale_hold(ride)
        return CaptureResult(False, ride.payment_status, needs_reauthorization=True)
    except GatewayError as exc:
        logger.error("Capture failed for ride %s: %s", ride.pk, exc)
        if advance_payment_status(ride, PaymentStatus.CAPTURE_FAILED, payment_error=str(exc)[:1000]):
            log_ride_event(ride, EventType.PAYMENT_CAPTURE_FAILED, hold_id=ride.payment_intent_id, error=str(exc))
        return CaptureResult(False, ride.payment_status, error=str(exc))

    return _record_capture(ride, snapshot, gateway)


def _record_capture(ride: Ride, snapshot: HoldSnapshot, gateway) -> CaptureResult:
    if not advance_payment_status(
        ride,
        PaymentStatus.CAPTURED,
        payment_captured_at=timezone.now(),
        payment_error='',
    ):
        ride.refresh_from_db()
        return CaptureResult(ride.payment_status == PaymentStatus.CAPTURED, ride.payment_status)

    log_ride_event(
        ride,
        EventType.PAYMENT_CAPTURED,
        hold_id=snapshot.id,
        amount_cents=snapshot.amount_received or snapshot.amount,
    )
    logger.info("Captured %s for ride %s", snapshot.amount_received or snapshot.amount, ride.pk)

    if snapshot.transfer_id:
        Ride.objects.filter(pk=ride.pk, transfer_id='').update(transfer_id=snapshot.transfer_id)
        ride.transfer_id = snapshot.transfer_id
    elif not snapshot.has_destination:
        destination = ride.transfer_destination or _transfer_destination(ride)
        if destination and ride.driver_payout_cents > 0:
            _create_fallback_transfer(ride, snapshot, destination, gateway)

    return CaptureResult(True, PaymentStatus.CAPTURED)


def _create_fallback_transfer(ride: Ride, snapshot: HoldSnapshot, destination: str, gateway) -> None:
    """Pay the driver out explicitly when the hold had no destination charge."""
    try:
        transfer_id = gateway.create_transfer(
            amount_cents=ride.driver_payout_cents,
            currency=_currency(),
            destination=destination,
            source_transaction=snapshot.latest_charge,
            metadata={"ride_id": ride.pk, "driver_id": ride.driver_id},
        )
    except GatewayError:
        logger.exception("Fallback transfer failed for ride %s", ride.pk)
        return

    Ride.objects.filter(pk=ride.pk, transfer_id='').update(transfer_id=transfer_id, transfer_destination=destination)
    ride.transfer_id = transfer_id
    ride.transfer_destination = destination


def release_payment(ride_id: int, cancelled_by: str = Ride.CancelledBy.SYSTEM, gateway=None) -> str:
    """
    Cancel an uncaptured hold or refund a captured one.

    Gateway errors are logged and left for the janitor; they are never
    raised to the caller that cancelled the ride.

    Returns:
        The ride's payment status afterwards
    """
    gateway = gateway or get_payment_gateway()
    ride = Ride.objects.get(pk=ride_id)

    if not ride.payment_intent_id:
        return ride.payment_status
    if ride.payment_status in (PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
        return ride.payment_status

    if ride.payment_status in (PaymentStatus.CAPTURED, PaymentStatus.REFUND_FAILED):
        try:
            refund_id = gateway.refund_hold(ride.payment_intent_id)
        except GatewayError as exc:
            logger.exception("Refund failed for ride %s", ride.pk)
            advance_payment_status(ride, PaymentStatus.REFUND_FAILED, payment_error=str(exc)[:1000])
            return ride.payment_status

        if advance_payment_status(ride, PaymentStatus.REFUNDED, refund_id=refund_id):
            log_ride_event(ride, EventType.PAYMENT_REFUNDED, hold_id=ride.payment_intent_id, refund_id=refund_id)
        return ride.payment_status

    reason = 'requested_by_customer' if cancelled_by == Ride.CancelledBy.RIDER else 'abandoned'
    try:
        gateway.cancel_hold(ride.payment_intent_id, reason=reason)
    except HoldNotFoundError:
        logger.warning("Hold %s for ride %s already gone at cancel", ride.payment_intent_id, ride.pk)
    except GatewayError:
        logger.exception("Failed to cancel hold for ride %s", ride.pk)
        return ride.payment_status

    if advance_payment_status(ride, PaymentStatus.CANCELLED):
        log_ride_event(ride, EventType.PAYMENT_CANCELLED, hold_id=ride.payment_intent_id, reason=reason)
    return ride.payment_status


# ===================== Reconciliation =====================

def reconcile_stale_hold(ride: Ride, gateway=None) -> str:
    """
    Resolve a hold that has sat in a non-terminal state too long.

    Returns one of ``cleared`` (gateway lost it), ``synced`` (gateway
    reached a terminal state; mirrored onto the ride) or ``cancelled``
    (still pending at the gateway, so we cancelled it).
    """
    gateway = gateway or get_payment_gateway()
    try:
        snapshot = gateway.retrieve_hold(ride.payment_intent_id)
    except HoldNotFoundError:
        clear_stale_hold(ride, reason="stale_hold_missing")
        return 'cleared'

    if snapshot.status in GATEWAY_TERMINAL_STATUSES:
        sync_from_snapshot(ride, snapshot)
        return 'synced'

    gateway.cancel_hold(snapshot.id, reason='abandoned')
    if advance_payment_status(ride, PaymentStatus.CANCELLED):
        log_ride_event(ride, EventType.PAYMENT_CANCELLED, hold_id=snapshot.id, reason='stale_hold')
    return 'cancelled'


def reconcile_capture_failed(ride: Ride, gateway=None) -> str:
    """Re-read a failed capture and either mirror the gateway or retry once."""
    gateway = gateway or get_payment_gateway()
    try:
        snapshot = gateway.retrieve_hold(ride.payment_intent_id)
    except HoldNotFoundError:
        clear_stale_hold(ride, reason="capture_failed_missing")
        return 'cleared'

    if snapshot.status == 'requires_capture':
        result = capture_payment(ride.pk, gateway=gateway)
        return 'captured' if result.captured else 'failed'

    sync_from_snapshot(ride, snapshot)
    if snapshot.status == 'succeeded':
        return 'captured'
    return 'synced'


def reconcile_missing_transfer(ride: Ride, gateway=None) -> bool:
    """
    One reconciliation read for a captured ride whose driver transfer is
    not recorded. Returns True if the transfer was found, otherwise flags
    the ride for operator follow-up and returns False.
    """
    gateway = gateway or get_payment_gateway()
    try:
        snapshot = gateway.retrieve_hold(ride.payment_intent_id)
    except GatewayError as exc:
        logger.warning("Transfer reconciliation read failed for ride %s: %s", ride.pk, exc)
        snapshot = None

    if snapshot is not None and snapshot.transfer_id:
        Ride.objects.filter(pk=ride.pk, transfer_id='').update(transfer_id=snapshot.transfer_id)
        ride.transfer_id = snapshot.transfer_id
        log_ride_event(ride, EventType.PAYMENT_RECONCILED, action='transfer_found', transfer_id=snapshot.transfer_id)
        return True

    now = timezone.now()
    flagged = Ride.objects.filter(pk=ride.pk, transfer_missing_flagged_at__isnull=True).update(
        transfer_missing_flagged_at=now
    )
    if flagged:
        ride.transfer_missing_flagged_at = now
        logger.warning(
            "Ride %s captured without transfer to %s; flagged for follow-up",
            ride.pk, ride.transfer_destination,
        )
        log_ride_event(ride, EventType.TRANSFER_MISSING, destination=ride.transfer_destination)
    return False

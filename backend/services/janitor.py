"""
Periodic sweep that repairs whatever a crashed or skipped path left behind.

Each step handles at most ``JANITOR_BATCH_SIZE`` rows per run and each row
is handled on its own, so one bad ride is logged and skipped instead of
stopping the sweep. Every step is safe to run again on the same rows.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from drivers.models import DriverProfile
from rides.models import Ride, RideEvent, RideOffer, ACTIVE_STATUSES, SEARCHING_STATUSES
from services.matching import expire_offer, get_dispatch_scheduler, overdue_offers
from services.matching.scheduler import JANITOR
from services.payments.gateway import get_payment_gateway
from services.payments.orchestrator import (
    capture_payment,
    release_payment,
    reconcile_capture_failed,
    reconcile_missing_transfer,
    reconcile_stale_hold,
)
from services.ride_management.ride_lifecycle import cancel_ride_by_system
from services.ride_management.transitions import CancelReason

logger = logging.getLogger(__name__)

PaymentStatus = Ride.PaymentStatus
EventType = RideEvent.EventType


@dataclass
class JanitorReport:
    searches_timed_out: int = 0
    offers_expired: int = 0
    rides_requeued: int = 0
    offers_closed: int = 0
    drivers_offlined: int = 0
    unpaid_rides_cancelled: int = 0
    unstarted_rides_cancelled: int = 0
    holds_reconciled: int = 0
    holds_released: int = 0
    captures_reconciled: int = 0
    transfers_flagged: int = 0
    errors: int = 0

    def as_dict(self):
        return asdict(self)


def _seconds(name, default):
    return timedelta(seconds=getattr(settings, name, default))


def run_janitor_sweep(now=None, gateway=None, scheduler=None) -> JanitorReport:
    """Run every repair step once."""
    now = now or timezone.now()
    gateway = gateway or get_payment_gateway()
    scheduler = scheduler or get_dispatch_scheduler()
    batch = getattr(settings, 'JANITOR_BATCH_SIZE', 50)
    report = JanitorReport()

    _timeout_searches(report, now, batch, gateway)
    _expire_offers(report, now, batch, scheduler)
    _offline_ghost_drivers(report, now, batch)
    _cancel_unpaid_rides(report, now, batch, gateway)
    _cancel_unstarted_rides(report, now, batch, gateway)
    _reconcile_holds(report, now, batch, gateway)
    _release_orphaned_holds(report, now, batch, gateway)
    _reconcile_transfers(report, now, batch, gateway)

    logger.info("Janitor sweep finished: %s", report.as_dict())
    return report


def _timeout_searches(report, now, batch, gateway):
    overdue = (
        Ride.objects.filter(status__in=SEARCHING_STATUSES, search_deadline__lte=now)
        .order_by('search_deadline')
        .values_list('pk', flat=True)[:batch]
    )
    for ride_id in list(overdue):
        try:
            if cancel_ride_by_system(
                ride_id,
                CancelReason.SEARCH_TIMEOUT,
                guard=lambda ride: ride.status in SEARCHING_STATUSES,
                event_type=EventType.SEARCH_TIMEOUT,
                gateway=gateway,
                now=now,
                source='janitor',
            ):
                report.searches_timed_out += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to time out search for ride %s", ride_id)


def _expire_offers(report, now, batch, scheduler):
    for offer in list(overdue_offers(now, limit=batch)):
        try:
            with transaction.atomic():
                if expire_offer(offer, now):
                    report.offers_expired += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to expire offer %s", offer.pk)

    # Rides whose whole batch lapsed without the recheck firing.
    stranded = (
        Ride.objects.filter(status=Ride.Status.OFFERED, driver__isnull=True)
        .exclude(pk__in=RideOffer.objects.filter(
            status=RideOffer.Status.PENDING, expires_at__gt=now
        ).values('ride_id'))
        .order_by('updated_at')
        .values_list('pk', flat=True)[:batch]
    )
    for ride_id in list(stranded):
        try:
            scheduler.schedule_matching(ride_id, 0, reason=JANITOR)
            report.rides_requeued += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to requeue ride %s", ride_id)

    # Pending offers on rides another driver already took.
    leftovers = (
        RideOffer.objects.filter(status=RideOffer.Status.PENDING, ride__driver__isnull=False)
        .order_by('created_at')
        .values_list('pk', flat=True)[:batch]
    )
    leftover_ids = list(leftovers)
    if leftover_ids:
        report.offers_closed += RideOffer.objects.filter(
            pk__in=leftover_ids, status=RideOffer.Status.PENDING
        ).update(status=RideOffer.Status.TAKEN_BY_OTHER, responded_at=now)


def _offline_ghost_drivers(report, now, batch):
    cutoff = now - _seconds('DRIVER_HEARTBEAT_TIMEOUT_SECONDS', 120)
    ghosts = (
        DriverProfile.objects.filter(is_online=True)
        .exclude(last_heartbeat_at__gte=cutoff)
        .order_by('last_heartbeat_at')
        .values_list('pk', flat=True)[:batch]
    )
    for profile_id in list(ghosts):
        try:
            with transaction.atomic():
                profile = DriverProfile.objects.select_for_update().get(pk=profile_id)
                if profile.has_fresh_heartbeat(now):
                    continue
                profile.is_online = False
                fields = ['is_online', 'updated_at']
                has_active_ride = (
                    profile.current_ride_id is not None
                    and Ride.objects.filter(pk=profile.current_ride_id, status__in=ACTIVE_STATUSES).exists()
                )
                if not has_active_ride and (profile.is_busy or profile.current_ride_id is not None):
                    profile.is_busy = False
                    profile.current_ride = None
                    profile.current_ride_status = ''
                    fields.extend(['is_busy', 'current_ride', 'current_ride_status'])
                profile.save(update_fields=fields)
            report.drivers_offlined += 1
            logger.info("Driver profile %s went silent, marked offline", profile_id)
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to offline driver profile %s", profile_id)


def _cancel_unpaid_rides(report, now, batch, gateway):
    cutoff = now - _seconds('PAYMENT_AUTH_TIMEOUT_SECONDS', 600)
    unpaid = (
        Ride.objects.filter(status=Ride.Status.ACCEPTED, accepted_at__lte=cutoff)
        .exclude(payment_status=PaymentStatus.AUTHORIZED)
        .order_by('accepted_at')
        .values_list('pk', flat=True)[:batch]
    )
    for ride_id in list(unpaid):
        try:
            if cancel_ride_by_system(
                ride_id,
                CancelReason.PAYMENT_TIMEOUT,
                guard=lambda ride: (
                    ride.status == Ride.Status.ACCEPTED and ride.payment_status != PaymentStatus.AUTHORIZED
                ),
                gateway=gateway,
                now=now,
            ):
                report.unpaid_rides_cancelled += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to cancel unpaid ride %s", ride_id)


def _cancel_unstarted_rides(report, now, batch, gateway):
    cutoff = now - _seconds('DRIVER_START_TIMEOUT_SECONDS', 600)
    unstarted = (
        Ride.objects.filter(
            status=Ride.Status.ACCEPTED,
            payment_status=PaymentStatus.AUTHORIZED,
            payment_authorized_at__lte=cutoff,
            started_at__isnull=True,
        )
        .order_by('payment_authorized_at')
        .values_list('pk', flat=True)[:batch]
    )
    for ride_id in list(unstarted):
        try:
            if cancel_ride_by_system(
                ride_id,
                CancelReason.DRIVER_NO_START_TIMEOUT,
                guard=lambda ride: ride.status == Ride.Status.ACCEPTED and ride.started_at is None,
                gateway=gateway,
                now=now,
            ):
                report.unstarted_rides_cancelled += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to cancel unstarted ride %s", ride_id)


def _reconcile_holds(report, now, batch, gateway):
    cutoff = now - _seconds('PAYMENT_AUTH_TIMEOUT_SECONDS', 600)
    stale = (
        Ride.objects.filter(payment_status=PaymentStatus.REQUIRES_AUTHORIZATION, updated_at__lte=cutoff)
        .exclude(payment_intent_id='')
        .order_by('updated_at')[:batch]
    )
    for ride in list(stale):
        try:
            outcome = reconcile_stale_hold(ride, gateway=gateway)
            report.holds_reconciled += 1
            if outcome == 'cancelled' and not ride.is_terminal:
                cancel_ride_by_system(
                    ride.pk,
                    CancelReason.PAYMENT_TIMEOUT,
                    guard=lambda locked: (
                        locked.status == Ride.Status.ACCEPTED
                        and locked.payment_status != PaymentStatus.AUTHORIZED
                    ),
                    gateway=gateway,
                    now=now,
                )
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to reconcile hold for ride %s", ride.pk)

    # Completed rides whose capture failed, or whose hold was re-authorized after completion.
    uncaptured = (
        Ride.objects.filter(
            status=Ride.Status.COMPLETED,
            payment_status__in=[PaymentStatus.CAPTURE_FAILED, PaymentStatus.AUTHORIZED],
        )
        .exclude(payment_intent_id='')
        .order_by('updated_at')[:batch]
    )
    for ride in list(uncaptured):
        try:
            if ride.payment_status == PaymentStatus.CAPTURE_FAILED:
                reconcile_capture_failed(ride, gateway=gateway)
            else:
                capture_payment(ride.pk, gateway=gateway)
            report.captures_reconciled += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to reconcile capture for ride %s", ride.pk)


def _release_orphaned_holds(report, now, batch, gateway):
    """Cancelled rides whose hold release or refund failed at the gateway."""
    cutoff = now - _seconds('PAYMENT_RELEASE_GRACE_SECONDS', 120)
    orphaned = (
        Ride.objects.filter(
            status=Ride.Status.CANCELLED,
            payment_status__in=[
                PaymentStatus.AUTHORIZED,
                PaymentStatus.CAPTURE_FAILED,
                PaymentStatus.REFUND_FAILED,
            ],
            cancelled_at__lte=cutoff,
        )
        .exclude(payment_intent_id='')
        .order_by('cancelled_at')
        .values_list('pk', 'cancelled_by')[:batch]
    )
    for ride_id, cancelled_by in list(orphaned):
        try:
            released = release_payment(ride_id, cancelled_by=cancelled_by or Ride.CancelledBy.SYSTEM, gateway=gateway)
            if released in (PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
                report.holds_released += 1
                logger.info("Released orphaned hold on cancelled ride %s (%s)", ride_id, released)
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to release hold for ride %s", ride_id)


def _reconcile_transfers(report, now, batch, gateway):
    cutoff = now - _seconds('TRANSFER_GRACE_SECONDS', 120)
    missing = (
        Ride.objects.filter(
            payment_status=PaymentStatus.CAPTURED,
            payment_captured_at__lte=cutoff,
            transfer_id='',
            transfer_missing_flagged_at__isnull=True,
        )
        .exclude(transfer_destination='')
        .order_by('payment_captured_at')[:batch]
    )
    for ride in list(missing):
        try:
            if not reconcile_missing_transfer(ride, gateway=gateway):
                report.transfers_flagged += 1
        except Exception:
            report.errors += 1
            logger.exception("Janitor failed to reconcile transfer for ride %s", ride.pk)

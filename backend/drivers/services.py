"""
Driver presence, heartbeats, ledger and rider blocks.
"""

import logging
from datetime import timedelta

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Count, Sum
from django.utils import timezone

from drivers.models import BlockedRider, DriverLedgerEntry, DriverProfile
from rides.models import Ride, ACTIVE_STATUSES
from services.ride_management.exceptions import (
    Reason,
    DriverNotAvailableError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from services.ride_management.ride_lifecycle import parse_coordinate

logger = logging.getLogger(__name__)


def get_driver_profile(user, lock: bool = False) -> DriverProfile:
    if getattr(user, 'role', None) != 'driver':
        raise PermissionDeniedError("Only drivers allowed")

    profiles = DriverProfile.objects.select_related('user')
    if lock:
        profiles = profiles.select_for_update()
    profile = profiles.filter(user_id=user.id).first()
    if profile is None:
        raise NotFoundError("Driver profile not found")
    return profile


def _parse_location(latitude, longitude):
    """Both coordinates or neither."""
    if latitude is None and longitude is None:
        return None
    if latitude is None or longitude is None:
        raise InvalidArgumentError(
            "latitude and longitude must be sent together", details={"field": "latitude"}
        )
    return (
        parse_coordinate('latitude', latitude, 90),
        parse_coordinate('longitude', longitude, 180),
    )


def _apply_location(profile: DriverProfile, location, now, fields):
    if location is None:
        return
    profile.current_latitude, profile.current_longitude = location
    profile.last_location_at = now
    fields.extend(['current_latitude', 'current_longitude', 'last_location_at'])


# DRIVER ONLINE / OFFLINE
def set_driver_online(user, online: bool, latitude=None, longitude=None, now=None, scheduler=None) -> DriverProfile:
    """
    Toggle a driver's availability.

    Going online counts as a heartbeat. A driver who comes online (and
    was not already) triggers an immediate matching pass for the oldest
    ride still searching.
    """
    now = now or timezone.now()
    location = _parse_location(latitude, longitude)

    with transaction.atomic():
        profile = get_driver_profile(user, lock=True)

        if online and not profile.is_approved:
            raise FailedPreconditionError(
                "Your driver account is not approved yet", reason=Reason.DRIVER_NOT_APPROVED
            )
        if not online and (profile.is_busy or profile.current_ride_id is not None):
            raise DriverNotAvailableError("Finish or cancel your current ride before going offline")

        was_online = profile.is_online
        profile.is_online = online
        fields = ['is_online', 'updated_at']
        if online:
            profile.last_heartbeat_at = now
            fields.append('last_heartbeat_at')
            _apply_location(profile, location, now, fields)
        profile.save(update_fields=fields)

    logger.info("Driver %s is now %s", user.id, "online" if online else "offline")

    if online and not was_online:
        from services.matching import nudge_oldest_searching_ride
        try:
            nudge_oldest_searching_ride(driver_id=user.id, scheduler=scheduler)
        except Exception:
            logger.exception("Matching nudge failed after driver %s came online", user.id)

    return profile


# HEARTBEAT
def record_heartbeat(user, latitude=None, longitude=None, now=None) -> DriverProfile:
    """
    Refresh the driver's liveness and, optionally, their location. The
    location is mirrored onto the driver's in-flight ride.
    """
    now = now or timezone.now()
    location = _parse_location(latitude, longitude)

    with transaction.atomic():
        profile = get_driver_profile(user, lock=True)
        profile.last_heartbeat_at = now
        fields = ['last_heartbeat_at', 'updated_at']
        _apply_location(profile, location, now, fields)
        profile.save(update_fields=fields)

    # Written after the profile lock is released; ride rows are never locked after a profile.
    if location is not None and profile.current_ride_id is not None:
        Ride.objects.filter(pk=profile.current_ride_id, status__in=ACTIVE_STATUSES).update(
            driver_latitude=location[0],
            driver_longitude=location[1],
        )

    return profile


def update_vehicle(user, vehicle_number: str) -> DriverProfile:
    profile = get_driver_profile(user)
    profile.vehicle_number = vehicle_number
    profile.save(update_fields=['vehicle_number', 'updated_at'])
    return profile


# LEDGER
def get_ledger_summary(user, now=None, recent_limit: int = 20) -> dict:
    """Earnings for today, the last seven days and all time, plus recent entries."""
    get_driver_profile(user)
    now = now or timezone.now()
    start_of_day = timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)
    entries = DriverLedgerEntry.objects.filter(driver_id=user.id)

    def _totals(qs):
        agg = qs.aggregate(total=Sum('amount_cents'), rides=Count('id'))
        return agg['total'] or 0, agg['rides']

    today_cents, today_rides = _totals(entries.filter(created_at__gte=start_of_day))
    week_cents, week_rides = _totals(entries.filter(created_at__gte=now - timedelta(days=7)))
    lifetime_cents, lifetime_rides = _totals(entries)

    return {
        "today_cents": today_cents,
        "today_rides": today_rides,
        "week_cents": week_cents,
        "week_rides": week_rides,
        "lifetime_cents": lifetime_cents,
        "lifetime_rides": lifetime_rides,
        "recent": list(entries.order_by('-created_at', '-id')[:recent_limit]),
    }


# RIDER BLOCKS
def block_rider(user, rider_id):
    get_driver_profile(user)
    User = get_user_model()
    rider = User.objects.filter(pk=rider_id, role='rider').first()
    if rider is None:
        raise NotFoundError("Rider not found")

    entry, created = BlockedRider.objects.get_or_create(driver_id=user.id, rider=rider)
    if created:
        logger.info("Driver %s blocked rider %s", user.id, rider.pk)
    return entry, created


def unblock_rider(user, rider_id) -> bool:
    get_driver_profile(user)
    deleted, _ = BlockedRider.objects.filter(driver_id=user.id, rider_id=rider_id).delete()
    return bool(deleted)


def list_blocked_riders(user):
    get_driver_profile(user)
    return list(BlockedRider.objects.filter(driver_id=user.id).select_related('rider').order_by('-created_at'))

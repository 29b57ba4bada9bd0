"""
Select eligible drivers for a ride and write their offers.

Candidates are ordered by distance from pickup (closest first).
"""

import logging
from datetime import timedelta
from typing import List, Set, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction

from drivers.models import BlockedRider, DriverProfile
from rides.models import Ride, RideOffer, ServiceTier
from common.utils import calculate_distance

logger = logging.getLogger(__name__)

# driver tier -> ride tiers that driver may serve
TIER_COMPATIBILITY = {
    ServiceTier.PREMIUM: {ServiceTier.PREMIUM, ServiceTier.COMFORT, ServiceTier.STANDARD},
    ServiceTier.COMFORT: {ServiceTier.COMFORT, ServiceTier.STANDARD},
    ServiceTier.STANDARD: {ServiceTier.STANDARD},
}


def driver_tiers_for(ride_tier: str) -> List[str]:
    return [tier for tier, served in TIER_COMPATIBILITY.items() if ride_tier in served]


class BlockList:
    """Answers which drivers must never be offered a given rider."""

    def blocked_driver_ids(self, rider_id: int) -> Set[int]:
        raise NotImplementedError


class DatabaseBlockList(BlockList):
    def blocked_driver_ids(self, rider_id):
        return set(
            BlockedRider.objects.filter(rider_id=rider_id).values_list('driver_id', flat=True)
        )


def select_eligible_drivers(
    ride: Ride,
    now,
    block_list: BlockList,
    limit: int = None,
) -> List[Tuple[DriverProfile, float]]:
    """
    Pick up to ``limit`` drivers for the next offer batch.

    Eligible means online, approved, not busy, heartbeat fresh, located
    within the matching radius, tier-compatible, not already offered this
    ride and not blocking the rider.

    Returns:
        (profile, distance_meters) pairs sorted closest first
    """
    limit = limit or getattr(settings, 'MATCHING_BATCH_SIZE', 3)
    radius = float(getattr(settings, 'MATCHING_MAX_RADIUS_METERS', 16000))
    heartbeat_timeout = getattr(settings, 'DRIVER_HEARTBEAT_TIMEOUT_SECONDS', 120)

    excluded = set(ride.attempted_driver_ids or [])
    excluded.update(ride.offers.values_list('driver_id', flat=True))
    excluded.update(block_list.blocked_driver_ids(ride.rider_id))
    excluded.add(ride.rider_id)

    available_drivers = (
        DriverProfile.objects.select_related("user")
        .filter(
            is_online=True,
            is_busy=False,
            is_approved=True,
            current_ride__isnull=True,
            last_heartbeat_at__gte=now - timedelta(seconds=heartbeat_timeout),
            current_latitude__isnull=False,
            current_longitude__isnull=False,
            service_tier__in=driver_tiers_for(ride.service_tier),
        )
        .exclude(user_id__in=excluded)
    )

    candidates: List[Tuple[DriverProfile, float]] = []
    for profile in available_drivers:
        distance = calculate_distance(
            ride.pickup_latitude,
            ride.pickup_longitude,
            profile.current_latitude,
            profile.current_longitude,
        )
        if distance <= radius:
            candidates.append((profile, distance))

    candidates.sort(key=lambda item: item[1])
    return candidates[:limit]


def create_offer_batch(ride: Ride, candidates, now, batch_number: int) -> List[RideOffer]:
    """
    Write one pending offer per candidate.

    The (ride, driver) unique constraint means a pair that already has an
    offer in any state is skipped rather than offered twice.
    """
    ttl = getattr(settings, 'RIDE_OFFER_TTL_SECONDS', 60)
    expires_at = now + timedelta(seconds=ttl)

    offers: List[RideOffer] = []
    for profile, distance in candidates:
        try:
            with transaction.atomic():
                offer = RideOffer.objects.create(
                    ride=ride,
                    driver_id=profile.user_id,
                    status=RideOffer.Status.PENDING,
                    batch_number=batch_number,
                    distance_meters=round(distance, 1),
                    created_at=now,
                    expires_at=expires_at,
                )
        except IntegrityError:
            logger.info("Ride %s already offered to driver %s, skipping", ride.id, profile.user_id)
            continue
        offers.append(offer)

    logger.info(
        "Created %d offers for ride %s (batch %s)",
        len(offers), ride.id, batch_number
    )
    return offers

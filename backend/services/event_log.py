"""
Append-only ride timeline.

Every component writes here; clients only read. Each entry is also
mirrored to the ride's websocket group once the surrounding transaction
commits.
"""

import logging
from typing import List

from django.db import transaction

from rides.models import Ride, RideEvent, RideOffer
from services.ride_management.exceptions import RideNotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)

EventType = RideEvent.EventType


def log_ride_event(ride, event_type: str, **metadata) -> RideEvent:
    """
    Append an event to a ride's timeline.

    Args:
        ride: Ride instance or primary key
        event_type: One of RideEvent.EventType
        **metadata: JSON-serializable facts about the event

    Returns:
        The created RideEvent
    """
    ride_id = getattr(ride, 'pk', ride)
    event = RideEvent.objects.create(
        ride_id=ride_id,
        event_type=EventType(event_type),
        metadata=metadata,
    )
    logger.debug("Ride %s event %s %s", ride_id, event_type, metadata)

    from realtime.notifications import publish_ride_event
    transaction.on_commit(lambda: publish_ride_event(event))
    return event


def can_view_ride(user, ride: Ride) -> bool:
    if user.is_staff or ride.is_participant(user):
        return True
    # Drivers who were offered the ride can follow what happened to it
    return RideOffer.objects.filter(ride=ride, driver_id=user.id).exists()


def get_ride_events(user, ride_id: int) -> List[RideEvent]:
    """Return the ride's timeline, oldest first, for an authorized viewer."""
    ride = Ride.objects.filter(pk=ride_id).first()
    if ride is None:
        raise RideNotFoundError("Ride not found")
    if not can_view_ride(user, ride):
        raise PermissionDeniedError("You are not part of this ride")
    return list(ride.events.all())

"""
Notification helpers for sending WebSocket messages to connected clients.

Messages are fanned out over the channel layer to three kinds of groups:
    - driver_<user_id>: offers and offer outcomes for one driver
    - user_<user_id>: ride updates for the rider
    - ride_<ride_id>: the ride's event timeline, for anyone tracking it
"""

from __future__ import annotations

import logging
from typing import Dict, Any

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)


def _group_send(group: str, payload: Dict[str, Any]) -> bool:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer available for %s", group)
        return False

    try:
        async_to_sync(channel_layer.group_send)(group, payload)
    except Exception:
        logger.exception("Failed to send %s to %s", payload.get("type"), group)
        return False

    logger.debug("WS -> %s: %s", group, payload.get("type"))
    return True


def _ride_data(ride) -> Dict[str, Any]:
    from rides.serializers import RideSerializer
    return RideSerializer(ride).data


# ---------------------- Ride Event Notifications ----------------------

def notify_driver_event(
    event_type: str,
    ride,
    driver_id: int | None,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send an event to a specific driver using their personal group: driver_<driver_id>

    Args:
        event_type: Handler name in consumer (ride_offer, offer_expired, offer_taken, ride_cancelled)
        ride: Ride model instance
        driver_id: Target driver's user ID
        message: Optional message to include
        extra: Additional payload data

    Returns:
        True if sent successfully, False otherwise
    """
    if not driver_id:
        return False

    payload = {
        "type": event_type,
        "ride_id": ride.id,
        "driver_id": driver_id,
        "ride_data": _ride_data(ride),
        **(extra or {}),
    }
    if message:
        payload["message"] = message

    return _group_send(f"driver_{driver_id}", payload)


def notify_rider_event(
    event_type: str,
    ride,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send ride-related event to the rider through: user_<rider_id>
    """
    if not ride.rider_id:
        return False

    payload = {
        "type": event_type,
        "ride_id": ride.id,
        "status": ride.status,
        "ride_data": _ride_data(ride),
        **(extra or {}),
    }
    if message:
        payload["message"] = message

    return _group_send(f"user_{ride.rider_id}", payload)


def publish_ride_event(event) -> bool:
    """Mirror one event-log entry onto the ride_<id> group."""
    return _group_send(f"ride_{event.ride_id}", {
        "type": "ride_event",
        "ride_id": event.ride_id,
        "event_type": event.event_type,
        "metadata": event.metadata,
        "created_at": event.created_at.isoformat(),
    })

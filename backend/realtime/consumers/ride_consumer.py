"""Ride WebSocket consumer shared by riders and drivers."""

import logging
from typing import Dict, Any

from channels.db import database_sync_to_async

from .base import BaseConsumer

logger = logging.getLogger(__name__)


class RideConsumer(BaseConsumer):
    """
    One connection per client.

        - Drivers also join driver_<id> to receive offers and offer outcomes
        - Either role may subscribe to ride_<id> for a ride they can view
        - Drivers may send heartbeats (optionally with a location) over the socket
    """

    async def on_connect(self):
        if self.role == "driver":
            await self._join_group(f"driver_{self.user_id}")

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Ride connection established",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "subscribe_ride":
            await self._handle_subscribe(data)
        elif msg_type == "unsubscribe_ride":
            await self._handle_unsubscribe(data)
        elif msg_type == "heartbeat":
            await self._handle_heartbeat(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Message Handlers ----------------------

    async def _handle_subscribe(self, data: Dict[str, Any]):
        ride_id = data.get("ride_id")
        if ride_id is None:
            await self.send_error("subscribe_ride requires ride_id")
            return

        if not await self._can_view_ride(ride_id):
            await self.send_error("You are not authorized to follow this ride", code="permission-denied")
            return

        await self._join_group(f"ride_{ride_id}")
        await self.send_success("ride_subscribed", ride_id=ride_id)

    async def _handle_unsubscribe(self, data: Dict[str, Any]):
        ride_id = data.get("ride_id")
        if ride_id is None:
            return

        await self._leave_group(f"ride_{ride_id}")
        await self.send_success("ride_unsubscribed", ride_id=ride_id)

    async def _handle_heartbeat(self, data: Dict[str, Any]):
        if self.role != "driver":
            await self.send_error("Only drivers send heartbeats", code="permission-denied")
            return

        from services.ride_management.exceptions import RideServiceError

        try:
            last_heartbeat_at = await self._record_heartbeat(data.get("latitude"), data.get("longitude"))
        except RideServiceError as exc:
            await self.send_error(exc.message, code=exc.code, reason=exc.reason)
            return

        await self.send_success("heartbeat_ack", last_heartbeat_at=last_heartbeat_at.isoformat())

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _can_view_ride(self, ride_id) -> bool:
        from rides.models import Ride
        from services.event_log import can_view_ride

        ride = Ride.objects.filter(pk=ride_id).first()
        return ride is not None and can_view_ride(self.user, ride)

    @database_sync_to_async
    def _record_heartbeat(self, latitude, longitude):
        from drivers.services import record_heartbeat

        profile = record_heartbeat(self.user, latitude=latitude, longitude=longitude)
        return profile.last_heartbeat_at

"""Base WebSocket consumer with connection management and server-push handlers."""

import logging
from typing import Dict, Any, Set

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer with shared connection management and helper methods.

    Subclasses should override:
        - on_connect(): join extra groups, greet the client
        - handle_message(msg_type, data): handle incoming messages
    """

    async def connect(self):
        self.user = self.scope["user"]

        if self.user.is_anonymous:
            await self.close()
            return

        self.user_id = getattr(self.user, "id", None)
        self.role = getattr(self.user, "role", None)

        # Track joined groups for cleanup
        self.joined_groups: Set[str] = set()

        # Personal group; rider notifications arrive here
        self.user_group = f"user_{self.user_id}"
        await self._join_group(self.user_group)

        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
        })

    async def disconnect(self, close_code):
        """Leave all joined groups on disconnect."""
        try:
            for group in list(getattr(self, "joined_groups", ())):
                await self._leave_group(group)
        except Exception:
            logger.exception("Error during disconnect for user %s", getattr(self, 'user_id', 'unknown'))

    async def receive_json(self, data: Dict[str, Any]):
        """Route incoming messages to appropriate handlers."""
        msg_type = data.get("type")
        if not msg_type:
            await self.send_error("Message type is required")
            return

        try:
            await self.handle_message(msg_type, data)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Group Management Helpers ----------------------

    async def _join_group(self, group_name: str):
        await self.channel_layer.group_add(group_name, self.channel_name)
        self.joined_groups.add(group_name)

    async def _leave_group(self, group_name: str):
        await self.channel_layer.group_discard(group_name, self.channel_name)
        self.joined_groups.discard(group_name)

    # ---------------------- Response Helpers ----------------------

    async def send_error(self, message: str, code: str = None, reason: str = None):
        payload = {"type": "error", "message": message}
        if code:
            payload["code"] = code
        if reason:
            payload["reason"] = reason
        await self.send_json(payload)

    async def send_success(self, event_type: str, **kwargs):
        await self.send_json({
            "type": event_type,
            **kwargs,
        })

    async def _forward(self, event):
        """Relay a group_send payload to the client, minus the routing key."""
        payload = {key: value for key, value in event.items() if key != "type"}
        await self.send_json({"type": event["type"], **payload})

    # ---------------------- Server Push Handlers ----------------------
    # Method names match the "type" used by realtime.notifications

    async def ride_offer(self, event):
        """A new offer for this driver; carries offer_id and expires_at."""
        await self._forward(event)

    async def offer_expired(self, event):
        await self._forward(event)

    async def offer_taken(self, event):
        await self._forward(event)

    async def ride_accepted(self, event):
        await self._forward(event)

    async def ride_started(self, event):
        await self._forward(event)

    async def ride_completed(self, event):
        await self._forward(event)

    async def ride_cancelled(self, event):
        await self._forward(event)

    async def ride_event(self, event):
        """One entry of a subscribed ride's timeline."""
        await self._forward(event)

"""
Realtime fan-out of ride updates over Django Channels.

Key Components:
    - consumers/: the single ride WebSocket consumer shared by riders and drivers
    - notifications.py: helpers that push offers, outcomes and timeline events to groups
    - middleware.py: JWT query-string authentication for WebSocket connections
    - routing.py: WebSocket URL patterns

Usage:
    from realtime.consumers import RideConsumer
    from realtime.notifications import notify_driver_event, notify_rider_event
"""

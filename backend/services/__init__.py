"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - ride_management: Ride lifecycle, acceptance and the transition tables
    - matching: Driver selection, offer batches and retries
    - payments: Fees, the payment gateway and hold orchestration
    - event_log: Append-only ride timeline
    - janitor: Periodic sweep that repairs anything a crashed path left behind
"""

"""
Payment orchestration - two-phase holds tied to the ride lifecycle.

This package handles:
    - Fee split computation
    - Opening, reusing and reconciling payment holds
    - Capturing on completion, cancelling or refunding on cancellation
"""

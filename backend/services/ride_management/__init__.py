"""
Ride management service - Core ride lifecycle operations.

This module handles:
    - Requesting rides
    - Accepting/declining offers
    - Starting, progressing and completing rides
    - Cancelling rides
    - Querying ride history

The operations live in ``ride_lifecycle`` and ``accept``; import them
from there. Only the error types are re-exported here so that low-level
modules can raise them without importing the lifecycle.
"""

from .exceptions import (
    Reason,
    RideServiceError,
    UnauthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    InvalidArgumentError,
    FailedPreconditionError,
    RideNotFoundError,
    RideNotAvailableError,
    OfferExpiredError,
    OfferNotFoundError,
    DriverNotAvailableError,
    ActiveRideExistsError,
)

__all__ = [
    "Reason",
    "RideServiceError",
    "UnauthenticatedError",
    "NotFoundError",
    "PermissionDeniedError",
    "InvalidArgumentError",
    "FailedPreconditionError",
    "RideNotFoundError",
    "RideNotAvailableError",
    "OfferExpiredError",
    "OfferNotFoundError",
    "DriverNotAvailableError",
    "ActiveRideExistsError",
]

"""Custom exceptions for ride management.

Every error carries a machine-readable ``code`` from a small taxonomy
(unauthenticated, not-found, permission-denied, invalid-argument,
failed-precondition) and, for precondition failures, a ``reason`` the
client can branch on.
"""


class Reason:
    """Sub-reasons attached to failed-precondition errors."""
    RIDE_TAKEN = "RIDE_TAKEN"
    RIDE_CANCELLED = "RIDE_CANCELLED"
    RIDE_COMPLETED = "RIDE_COMPLETED"
    RIDE_STARTED = "RIDE_STARTED"
    RIDE_ALREADY_CANCELLED = "RIDE_ALREADY_CANCELLED"
    INVALID_STATUS = "INVALID_STATUS"
    ACTIVE_RIDE_EXISTS = "ACTIVE_RIDE_EXISTS"
    DRIVER_BUSY = "DRIVER_BUSY"
    DRIVER_OFFLINE = "DRIVER_OFFLINE"
    DRIVER_NOT_APPROVED = "DRIVER_NOT_APPROVED"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    OFFER_NOT_AVAILABLE = "OFFER_NOT_AVAILABLE"
    PAYMENT_NOT_AUTHORIZED = "PAYMENT_NOT_AUTHORIZED"
    PAYMENT_ALREADY_CAPTURED = "PAYMENT_ALREADY_CAPTURED"
    MISSING_DRIVER_LOCATION = "MISSING_DRIVER_LOCATION"
    STALE_DRIVER_LOCATION = "STALE_DRIVER_LOCATION"
    TOO_FAR_FROM_PICKUP = "TOO_FAR_FROM_PICKUP"
    TOO_FAR_FROM_DROPOFF = "TOO_FAR_FROM_DROPOFF"


class RideServiceError(Exception):
    """Base class for errors surfaced to RPC callers."""
    code = "failed-precondition"
    default_reason = None

    def __init__(self, message="", reason=None, details=None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.details = details or {}


class UnauthenticatedError(RideServiceError):
    code = "unauthenticated"


class NotFoundError(RideServiceError):
    code = "not-found"


class PermissionDeniedError(RideServiceError):
    """Raised when the caller is the wrong actor for this record."""
    code = "permission-denied"


class InvalidArgumentError(RideServiceError):
    code = "invalid-argument"


class FailedPreconditionError(RideServiceError):
    code = "failed-precondition"


class RideNotFoundError(NotFoundError):
    """Raised when a ride cannot be found."""
    pass


class RideNotAvailableError(FailedPreconditionError):
    """Raised when a ride is not in an available state for the operation."""
    default_reason = Reason.INVALID_STATUS


class OfferExpiredError(FailedPreconditionError):
    """Raised when a ride offer has expired."""
    default_reason = Reason.OFFER_EXPIRED


class OfferNotFoundError(FailedPreconditionError):
    """Raised when the driver holds no live offer for the ride."""
    default_reason = Reason.OFFER_NOT_AVAILABLE


class DriverNotAvailableError(FailedPreconditionError):
    """Raised when driver is not available to accept rides."""
    default_reason = Reason.DRIVER_BUSY


class ActiveRideExistsError(FailedPreconditionError):
    """Raised when user already has an active ride."""
    default_reason = Reason.ACTIVE_RIDE_EXISTS

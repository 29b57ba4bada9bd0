"""DRF exception handler rendering service errors as {error, code, reason}."""

from rest_framework import status
from rest_framework.exceptions import (
    AuthenticationFailed,
    NotAuthenticated,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler

from services.ride_management.exceptions import RideServiceError

STATUS_BY_CODE = {
    "unauthenticated": status.HTTP_401_UNAUTHORIZED,
    "not-found": status.HTTP_404_NOT_FOUND,
    "permission-denied": status.HTTP_403_FORBIDDEN,
    "invalid-argument": status.HTTP_400_BAD_REQUEST,
    "failed-precondition": status.HTTP_409_CONFLICT,
}


def ride_exception_handler(exc, context):
    if isinstance(exc, RideServiceError):
        body = {"error": exc.message or str(exc), "code": exc.code}
        if exc.reason:
            body["reason"] = exc.reason
        if exc.details:
            body["details"] = exc.details
        return Response(body, status=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST))

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, (NotAuthenticated, AuthenticationFailed)):
        response.data = {"error": str(exc.detail), "code": "unauthenticated"}
    elif isinstance(exc, PermissionDenied):
        response.data = {"error": str(exc.detail), "code": "permission-denied"}
    elif isinstance(exc, NotFound):
        response.data = {"error": str(exc.detail), "code": "not-found"}
    elif isinstance(exc, ValidationError):
        response.data = {"error": "Invalid request", "code": "invalid-argument", "details": response.data}
    return response

from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import AllowAny, IsAuthenticated

from services.event_log import get_ride_events
from services.payments.orchestrator import get_payment_state, request_payment
from services.payments.webhooks import handle_event, verify_event
from services.ride_management.accept import accept_offer, decline_offer
from services.ride_management.ride_lifecycle import (
    cancel_ride,
    complete_ride,
    get_ride_history,
    progress_ride,
    request_ride,
    start_ride,
)
from .permissions import IsDriver, IsRider
from .serializers import (
    PaymentStateSerializer,
    RideCancelSerializer,
    RideEventSerializer,
    RideRequestCreateSerializer,
    RideSerializer,
)


def _ride_response(result, http_status=status.HTTP_200_OK, **extra):
    body = {
        'ride': RideSerializer(result.ride).data,
        'message': result.message,
        'already_applied': result.already_applied,
        **(result.extra or {}),
        **extra,
    }
    return Response(body, status=http_status)


# ==================== Rider APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated, IsRider])
def create_ride_request(request):
    """Request a ride and start matching"""
    serializer = RideRequestCreateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = request_ride(request.user, **serializer.validated_data)
    return _ride_response(result, status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cancel_ride_view(request, ride_id):
    """
    Cancel a ride as its rider (until it starts) or its assigned driver
    (until it completes)
    """
    serializer = RideCancelSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = cancel_ride(request.user, ride_id, serializer.validated_data['reason'])
    return _ride_response(result)


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def payment_view(request, ride_id):
    """
    GET: read and reconcile the ride's payment hold.
    POST: open (or re-report) the hold; rider only.
    """
    if request.method == 'POST':
        state = request_payment(request.user, ride_id)
    else:
        state = get_payment_state(request.user, ride_id)
    return Response(PaymentStateSerializer(state).data)


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def payment_webhook(request):
    """Signed payment gateway events; unsigned or tampered payloads get a 400"""
    event = verify_event(request.body, request.META.get('HTTP_STRIPE_SIGNATURE', ''))
    handled = handle_event(event)
    return Response({'received': True, 'handled': handled})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_events(request, ride_id):
    """The ride's timeline, oldest first"""
    events = get_ride_events(request.user, ride_id)
    return Response({
        'ride_id': ride_id,
        'events': RideEventSerializer(events, many=True).data,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_history(request):
    """Recent rides the caller took part in, as rider or driver"""
    rides = get_ride_history(request.user, request.query_params.get('limit'))
    return Response({
        'count': len(rides),
        'rides': RideSerializer(rides, many=True).data,
    })


# ==================== Driver APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated, IsDriver])
def accept_offer_view(request, ride_id):
    """Accept a ride offered to this driver. Exactly one driver wins."""
    result = accept_offer(request.user, ride_id)
    return _ride_response(result)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsDriver])
def decline_offer_view(request, ride_id):
    result = decline_offer(request.user, ride_id)
    return _ride_response(result)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsDriver])
def start_ride_view(request, ride_id):
    result = start_ride(request.user, ride_id)
    return _ride_response(result)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsDriver])
def progress_ride_view(request, ride_id):
    result = progress_ride(request.user, ride_id)
    return _ride_response(result)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsDriver])
def complete_ride_view(request, ride_id):
    """Complete the ride at dropoff; captures the payment hold"""
    result = complete_ride(request.user, ride_id)
    return _ride_response(result)

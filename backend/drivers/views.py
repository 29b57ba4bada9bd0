from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from drivers import services
from drivers.serializers import (
    BlockedRiderSerializer,
    BlockRiderSerializer,
    DriverProfileSerializer,
    HeartbeatSerializer,
    LedgerEntrySerializer,
    OnlineSerializer,
    VehicleSerializer,
)
from rides.permissions import IsDriver
from rides.serializers import RideSerializer
from services.ride_management.ride_lifecycle import get_current_driver_ride


class DriverProfileView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        profile = services.get_driver_profile(request.user)
        serializer = DriverProfileSerializer(profile, context={"request": request})
        return Response(serializer.data)

    def post(self, request):
        serializer = VehicleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        profile = services.update_vehicle(request.user, serializer.validated_data["vehicle_number"])
        return Response(DriverProfileSerializer(profile, context={"request": request}).data)


class DriverOnlineView(APIView):
    """Go online (optionally with a location fix) or offline."""
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request):
        serializer = OnlineSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        profile = services.set_driver_online(
            request.user,
            data["online"],
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
        )
        return Response({
            "message": "You are online" if profile.is_online else "You are offline",
            "is_online": profile.is_online,
            "last_heartbeat_at": profile.last_heartbeat_at,
        })


class DriverHeartbeatView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request):
        serializer = HeartbeatSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        profile = services.record_heartbeat(
            request.user,
            latitude=serializer.validated_data.get("latitude"),
            longitude=serializer.validated_data.get("longitude"),
        )
        return Response({
            "is_online": profile.is_online,
            "last_heartbeat_at": profile.last_heartbeat_at,
            "last_location_at": profile.last_location_at,
        })


class DriverCurrentRideView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        ride = get_current_driver_ride(request.user)
        if not ride:
            return Response({"has_active_ride": False, "message": "No active ride"})

        return Response({"has_active_ride": True, "ride": RideSerializer(ride).data})


class DriverLedgerView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        summary = services.get_ledger_summary(request.user)
        summary["recent"] = LedgerEntrySerializer(summary["recent"], many=True).data
        return Response(summary)


class BlockedRidersView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def get(self, request):
        blocked = services.list_blocked_riders(request.user)
        return Response({"blocked_riders": BlockedRiderSerializer(blocked, many=True).data})

    def post(self, request):
        serializer = BlockRiderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry, created = services.block_rider(request.user, serializer.validated_data["rider_id"])
        return Response(
            BlockedRiderSerializer(entry).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )

    def delete(self, request):
        serializer = BlockRiderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        removed = services.unblock_rider(request.user, serializer.validated_data["rider_id"])
        return Response({"removed": removed})

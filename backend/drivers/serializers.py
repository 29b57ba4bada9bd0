from rest_framework import serializers
from drivers.models import BlockedRider, DriverLedgerEntry, DriverProfile
from accounts.serializers import UserSerializer


class DriverProfileSerializer(serializers.ModelSerializer):
    """
    Full driver profile serializer
    """
    user = serializers.SerializerMethodField()

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "user",
            "vehicle_number",
            "service_tier",
            "is_approved",
            "is_online",
            "is_busy",
            "current_ride",
            "current_ride_status",
            "current_latitude",
            "current_longitude",
            "last_location_at",
            "last_heartbeat_at",
            "payout_account_status",
        ]
        read_only_fields = fields

    def get_user(self, obj):
        # Request context lets the nested serializer build absolute picture URLs
        return UserSerializer(obj.user, context=self.context).data


class DriverBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of driver info for ride details sent to riders.
    """
    username = serializers.CharField(source="user.username", read_only=True)
    phone_number = serializers.CharField(source="user.phone_number", read_only=True)

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "username",
            "phone_number",
            "vehicle_number",
            "service_tier",
        ]


class OnlineSerializer(serializers.Serializer):
    """
    Serializer for going online/offline, optionally with a location fix.
    """
    online = serializers.BooleanField()
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)


class HeartbeatSerializer(serializers.Serializer):
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)


class VehicleSerializer(serializers.Serializer):
    vehicle_number = serializers.CharField(max_length=20)


class LedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = DriverLedgerEntry
        fields = ["id", "ride", "entry_type", "amount_cents", "created_at"]


class BlockedRiderSerializer(serializers.ModelSerializer):
    rider_username = serializers.CharField(source="rider.username", read_only=True)

    class Meta:
        model = BlockedRider
        fields = ["id", "rider", "rider_username", "created_at"]
        read_only_fields = ["id", "rider_username", "created_at"]


class BlockRiderSerializer(serializers.Serializer):
    rider_id = serializers.IntegerField(min_value=1)

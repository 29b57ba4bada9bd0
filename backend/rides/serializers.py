from rest_framework import serializers

from accounts.serializers import RiderBasicSerializer
from drivers.serializers import DriverBasicSerializer
from .models import Ride, RideEvent, RideOffer, ServiceTier


class RideSerializer(serializers.ModelSerializer):
    """Serializer for rides, as shown to riders, drivers and the websocket fan-out"""
    rider = RiderBasicSerializer(read_only=True)
    driver = DriverBasicSerializer(read_only=True, source='driver.driver_profile', default=None)

    class Meta:
        model = Ride
        fields = [
            'id', 'rider', 'driver', 'status', 'service_tier',
            'pickup_latitude', 'pickup_longitude', 'pickup_address',
            'dropoff_latitude', 'dropoff_longitude', 'dropoff_address',
            'estimated_fare_cents', 'rider_fee_cents', 'driver_fee_cents',
            'total_charge_cents', 'driver_payout_cents', 'platform_fee_cents',
            'payment_status', 'dispatch_attempts', 'search_deadline', 'offer_expires_at',
            'driver_latitude', 'driver_longitude',
            'created_at', 'accepted_at', 'started_at', 'in_progress_at',
            'completed_at', 'cancelled_at', 'cancel_reason', 'cancelled_by',
        ]
        read_only_fields = fields


class RideRequestCreateSerializer(serializers.Serializer):
    """Input for requesting a ride"""
    pickup_latitude = serializers.FloatField(min_value=-90, max_value=90)
    pickup_longitude = serializers.FloatField(min_value=-180, max_value=180)
    dropoff_latitude = serializers.FloatField(min_value=-90, max_value=90)
    dropoff_longitude = serializers.FloatField(min_value=-180, max_value=180)
    estimated_fare_cents = serializers.IntegerField(min_value=1)
    service_tier = serializers.ChoiceField(choices=ServiceTier.choices, default=ServiceTier.STANDARD)
    pickup_address = serializers.CharField(required=False, allow_blank=True, default='')
    dropoff_address = serializers.CharField(required=False, allow_blank=True, default='')


class RideCancelSerializer(serializers.Serializer):
    """Serializer for ride cancellation"""
    reason = serializers.CharField(required=False, allow_blank=True, max_length=500, default='')


class RideOfferSerializer(serializers.ModelSerializer):
    class Meta:
        model = RideOffer
        fields = ['id', 'ride', 'driver', 'status', 'batch_number', 'distance_meters',
                  'created_at', 'expires_at', 'responded_at']


class RideEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = RideEvent
        fields = ['id', 'ride', 'event_type', 'metadata', 'created_at']


class PaymentStateSerializer(serializers.Serializer):
    ride_id = serializers.IntegerField()
    payment_status = serializers.CharField()
    needs_confirmation = serializers.BooleanField()
    hold_id = serializers.CharField(allow_null=True)
    client_secret = serializers.CharField(allow_null=True)
    amount_cents = serializers.IntegerField()
    recovered = serializers.BooleanField()
    error = serializers.CharField(allow_null=True)
    breakdown = serializers.DictField()

from django.db import models
from django.conf import settings
from django.utils import timezone


class ServiceTier(models.TextChoices):
    STANDARD = 'standard', 'Standard'
    COMFORT = 'comfort', 'Comfort'
    PREMIUM = 'premium', 'Premium'


class Ride(models.Model):
    """A rider's trip from request to completion or cancellation."""

    class Status(models.TextChoices):
        REQUESTED = 'requested', 'Requested'
        DISPATCHING = 'dispatching', 'Dispatching'
        OFFERED = 'offered', 'Offered'
        ACCEPTED = 'accepted', 'Accepted'
        STARTED = 'started', 'Started'
        IN_PROGRESS = 'in_progress', 'In Progress'
        COMPLETED = 'completed', 'Completed'
        CANCELLED = 'cancelled', 'Cancelled'

    class PaymentStatus(models.TextChoices):
        NONE = 'none', 'None'
        REQUIRES_AUTHORIZATION = 'requires_authorization', 'Requires Authorization'
        AUTHORIZED = 'authorized', 'Authorized'
        CAPTURED = 'captured', 'Captured'
        CAPTURE_FAILED = 'capture_failed', 'Capture Failed'
        CANCELLED = 'cancelled', 'Cancelled'
        REFUNDED = 'refunded', 'Refunded'
        REFUND_FAILED = 'refund_failed', 'Refund Failed'

    class CancelledBy(models.TextChoices):
        RIDER = 'rider', 'Rider'
        DRIVER = 'driver', 'Driver'
        SYSTEM = 'system', 'System'

    # Participants
    rider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='rides_requested'
    )

    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='rides_driven'
    )

    # Route
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_address = models.TextField(blank=True, default='')
    dropoff_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    dropoff_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    dropoff_address = models.TextField(blank=True, default='')
    service_tier = models.CharField(max_length=20, choices=ServiceTier.choices, default=ServiceTier.STANDARD)

    # Money, integer cents
    estimated_fare_cents = models.PositiveIntegerField()
    rider_fee_cents = models.PositiveIntegerField(default=0)
    driver_fee_cents = models.PositiveIntegerField(default=0)
    total_charge_cents = models.PositiveIntegerField(default=0)
    driver_payout_cents = models.PositiveIntegerField(default=0)
    platform_fee_cents = models.PositiveIntegerField(default=0)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.REQUESTED, db_index=True)
    payment_status = models.CharField(
        max_length=30, choices=PaymentStatus.choices, default=PaymentStatus.NONE, db_index=True
    )

    # Dispatch bookkeeping
    dispatch_attempts = models.PositiveIntegerField(default=0)
    attempted_driver_ids = models.JSONField(default=list, blank=True)
    search_deadline = models.DateTimeField(null=True, blank=True)
    offer_expires_at = models.DateTimeField(null=True, blank=True)

    # Last known driver position, mirrored from heartbeats
    driver_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    driver_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)

    # Payment hold
    payment_intent_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    payment_authorized_at = models.DateTimeField(null=True, blank=True)
    payment_captured_at = models.DateTimeField(null=True, blank=True)
    payment_error = models.TextField(blank=True, default='')
    transfer_destination = models.CharField(max_length=255, blank=True, default='')
    transfer_id = models.CharField(max_length=255, blank=True, default='')
    refund_id = models.CharField(max_length=255, blank=True, default='')
    transfer_missing_flagged_at = models.DateTimeField(null=True, blank=True)

    # Lifecycle timestamps
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    in_progress_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    cancel_reason = models.CharField(max_length=64, blank=True, default='')
    cancelled_by = models.CharField(max_length=10, choices=CancelledBy.choices, blank=True, default='')
    cancelled_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )

    class Meta:
        db_table = 'rides'
        ordering = ['-created_at']

    def __str__(self):
        return f"Ride #{self.id} - {self.rider} - {self.status}"

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def is_participant(self, user):
        return user.id is not None and user.id in (self.rider_id, self.driver_id)


SEARCHING_STATUSES = (Ride.Status.REQUESTED, Ride.Status.DISPATCHING, Ride.Status.OFFERED)
ACTIVE_STATUSES = (Ride.Status.ACCEPTED, Ride.Status.STARTED, Ride.Status.IN_PROGRESS)
TERMINAL_STATUSES = (Ride.Status.COMPLETED, Ride.Status.CANCELLED)


class RideOffer(models.Model):
    """A time-boxed proposal of one ride to one driver."""

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        ACCEPTED = 'accepted', 'Accepted'
        DECLINED = 'declined', 'Declined'
        EXPIRED = 'expired', 'Expired'
        TAKEN_BY_OTHER = 'taken_by_other', 'Taken By Other'
        REJECTED = 'rejected', 'Rejected'

    ride = models.ForeignKey(
        Ride,
        on_delete=models.CASCADE,
        related_name='offers'
    )

    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='ride_offers',
        limit_choices_to={'role': 'driver'}
    )

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    batch_number = models.PositiveIntegerField(default=1)
    distance_meters = models.FloatField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'ride_offers'
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['ride', 'driver'],
                name='unique_ride_driver'
            )
        ]
        indexes = [
            models.Index(fields=['status', 'expires_at'], name='ride_offers_status_exp_idx'),
        ]

    def __str__(self):
        return f"Offer #{self.id} - Ride {self.ride_id} -> Driver {self.driver_id} ({self.status})"

    def is_live(self, now=None):
        now = now or timezone.now()
        return self.status == self.Status.PENDING and self.expires_at > now


class RideEvent(models.Model):
    """Append-only timeline entry for a ride."""

    class EventType(models.TextChoices):
        RIDE_CREATED = 'ride_created'
        MATCHING_STARTED = 'matching_started'
        OFFER_CREATED = 'offer_created'
        OFFER_EXPIRED = 'offer_expired'
        OFFER_DECLINED = 'offer_declined'
        OFFER_ACCEPTED = 'offer_accepted'
        RIDE_ACCEPTED = 'ride_accepted'
        RIDE_STARTED = 'ride_started'
        RIDE_IN_PROGRESS = 'ride_in_progress'
        RIDE_COMPLETED = 'ride_completed'
        RIDE_CANCELLED = 'ride_cancelled'
        SEARCH_TIMEOUT = 'search_timeout'
        DRIVER_ONLINE_TRIGGERED_MATCH = 'driver_online_triggered_match'
        PAYMENT_INTENT_CREATED = 'payment_intent_created'
        PAYMENT_AUTHORIZED = 'payment_authorized'
        PAYMENT_CAPTURED = 'payment_captured'
        PAYMENT_CAPTURE_FAILED = 'payment_capture_failed'
        PAYMENT_CANCELLED = 'payment_cancelled'
        PAYMENT_REFUNDED = 'payment_refunded'
        PAYMENT_RECONCILED = 'payment_reconciled'
        TRANSFER_MISSING = 'transfer_missing'

    ride = models.ForeignKey(
        Ride,
        on_delete=models.PROTECT,
        related_name='events'
    )
    event_type = models.CharField(max_length=40, choices=EventType.choices)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = 'ride_events'
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.event_type} @ ride {self.ride_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Ride events are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Ride events are append-only")

from datetime import timedelta

from django.db import models
from django.utils import timezone
from django.conf import settings

from rides.models import ServiceTier

User = settings.AUTH_USER_MODEL


class DriverProfile(models.Model):
    """Driver presence, availability and busy lock"""

    class PayoutStatus(models.TextChoices):
        NONE = 'none', 'Not Connected'
        PENDING = 'pending', 'Pending'
        ACTIVE = 'active', 'Active'
        RESTRICTED = 'restricted', 'Restricted'

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='driver_profile')

    # Vehicle details
    vehicle_number = models.CharField(max_length=20, unique=True)
    service_tier = models.CharField(max_length=20, choices=ServiceTier.choices, default=ServiceTier.STANDARD)
    is_approved = models.BooleanField(default=False)

    # Presence; is_busy is set exactly when current_ride is set
    is_online = models.BooleanField(default=False)
    is_busy = models.BooleanField(default=False)
    current_ride = models.ForeignKey(
        'rides.Ride',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    current_ride_status = models.CharField(max_length=20, blank=True, default='')

    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    last_location_at = models.DateTimeField(null=True, blank=True)
    last_heartbeat_at = models.DateTimeField(null=True, blank=True)

    # Revenue-split destination
    payout_account_id = models.CharField(max_length=255, blank=True, default='')
    payout_account_status = models.CharField(
        max_length=20, choices=PayoutStatus.choices, default=PayoutStatus.NONE
    )

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'driver_profiles'
        indexes = [
            models.Index(fields=['is_online', 'is_busy'], name='driver_online_busy_idx'),
        ]

    def __str__(self):
        return f"{self.user.username} - {self.vehicle_number}"

    def has_fresh_heartbeat(self, now=None):
        if self.last_heartbeat_at is None:
            return False
        now = now or timezone.now()
        timeout = getattr(settings, 'DRIVER_HEARTBEAT_TIMEOUT_SECONDS', 120)
        return now - self.last_heartbeat_at <= timedelta(seconds=timeout)

    @property
    def has_location(self):
        return self.current_latitude is not None and self.current_longitude is not None


class BlockedRider(models.Model):
    """A rider a driver never wants to be offered again."""

    driver = models.ForeignKey(User, on_delete=models.CASCADE, related_name='blocked_riders')
    rider = models.ForeignKey(User, on_delete=models.CASCADE, related_name='blocked_by_drivers')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'driver_blocked_riders'
        constraints = [
            models.UniqueConstraint(fields=['driver', 'rider'], name='unique_driver_blocked_rider')
        ]

    def __str__(self):
        return f"{self.driver_id} blocks {self.rider_id}"


class DriverLedgerEntry(models.Model):
    """Payout owed to a driver, one row per completed ride."""

    class EntryType(models.TextChoices):
        TRIP_EARNING = 'trip_earning', 'Trip Earning'

    driver = models.ForeignKey(User, on_delete=models.CASCADE, related_name='ledger_entries')
    ride = models.ForeignKey('rides.Ride', on_delete=models.PROTECT, related_name='ledger_entries')
    entry_type = models.CharField(max_length=20, choices=EntryType.choices, default=EntryType.TRIP_EARNING)
    amount_cents = models.IntegerField()
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = 'driver_ledger_entries'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['ride', 'entry_type'], name='unique_ride_ledger_entry')
        ]

    def __str__(self):
        return f"{self.entry_type} {self.amount_cents} for driver {self.driver_id}"

from django.contrib import admin
from drivers.models import BlockedRider, DriverLedgerEntry, DriverProfile


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Admin panel for approving drivers and watching their presence"""

    list_display = [
        "user",
        "vehicle_number",
        "service_tier",
        "is_approved",
        "is_online",
        "is_busy",
        "current_ride",
        "last_heartbeat_at",
    ]

    list_filter = [
        "is_approved",
        "is_online",
        "is_busy",
        "service_tier",
    ]

    search_fields = [
        "user__username",
        "vehicle_number",
    ]

    readonly_fields = [
        "last_heartbeat_at",
        "last_location_at",
        "current_ride",
        "current_ride_status",
    ]

    ordering = ("user__username",)


@admin.register(DriverLedgerEntry)
class DriverLedgerEntryAdmin(admin.ModelAdmin):
    list_display = ["driver", "ride", "entry_type", "amount_cents", "created_at"]
    list_filter = ["entry_type"]
    search_fields = ["driver__username"]


admin.site.register(BlockedRider)

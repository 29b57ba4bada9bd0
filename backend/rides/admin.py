"""Tells what to show in the Django admin interface for rides app"""

from django.contrib import admin
from .models import Ride, RideOffer, RideEvent


class RideEventInline(admin.TabularInline):
    model = RideEvent
    extra = 0
    can_delete = False
    readonly_fields = ['event_type', 'metadata', 'created_at']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Ride)
class RideAdmin(admin.ModelAdmin):
    """Ride admin"""
    list_display = ['id', 'rider', 'driver', 'status', 'payment_status', 'service_tier', 'created_at', 'completed_at']
    list_filter = ['status', 'payment_status', 'service_tier', 'created_at']
    search_fields = ['rider__username', 'driver__username', 'pickup_address', 'payment_intent_id']
    readonly_fields = ['created_at', 'accepted_at', 'started_at', 'completed_at', 'cancelled_at', 'payment_intent_id']
    date_hierarchy = 'created_at'
    inlines = [RideEventInline]


@admin.register(RideOffer)
class RideOfferAdmin(admin.ModelAdmin):
    list_display = ("ride", "driver", "batch_number", "status", "created_at", "expires_at", "responded_at")
    list_filter = ("status",)
    search_fields = ("ride__id", "driver__username")

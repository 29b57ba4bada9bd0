from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from accounts.models import User
from drivers.models import DriverProfile


class DriverProfileInline(admin.StackedInline):
    """Driver approval and payout account, edited alongside the user"""

    model = DriverProfile
    can_delete = False
    fk_name = "user"
    fields = [
        "vehicle_number",
        "service_tier",
        "is_approved",
        "payout_account_id",
        "payout_account_status",
        "is_online",
        "is_busy",
        "current_ride",
    ]
    readonly_fields = ["is_online", "is_busy", "current_ride"]


class DriverApprovalFilter(admin.SimpleListFilter):
    title = "driver approval"
    parameter_name = "driver_approval"

    def lookups(self, request, model_admin):
        return [("approved", "Approved"), ("pending", "Awaiting approval")]

    def queryset(self, request, queryset):
        if self.value() == "approved":
            return queryset.filter(role=User.ROLE_DRIVER, driver_profile__is_approved=True)
        if self.value() == "pending":
            return queryset.filter(role=User.ROLE_DRIVER, driver_profile__is_approved=False)
        return queryset


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Riders, drivers and operators; driver profiles are edited inline"""

    list_display = ["username", "role", "phone_number", "driver_status", "is_active"]
    list_filter = ["role", DriverApprovalFilter, "is_active"]
    search_fields = ["username", "email", "phone_number", "driver_profile__vehicle_number"]
    ordering = ("-date_joined",)

    fieldsets = BaseUserAdmin.fieldsets + (
        ("Ride Platform", {"fields": ("role", "phone_number", "profile_picture")}),
    )
    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ("Ride Platform", {"fields": ("role", "phone_number")}),
    )

    def get_inlines(self, request, obj):
        if obj is not None and obj.is_driver:
            return [DriverProfileInline]
        return []

    @admin.display(description="Driver")
    def driver_status(self, obj):
        profile = getattr(obj, "driver_profile", None) if obj.is_driver else None
        if profile is None:
            return "-"
        if not profile.is_approved:
            return "awaiting approval"
        return "online" if profile.is_online else "offline"

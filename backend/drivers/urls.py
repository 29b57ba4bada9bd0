from django.urls import path
from .views import (
    BlockedRidersView,
    DriverCurrentRideView,
    DriverHeartbeatView,
    DriverLedgerView,
    DriverOnlineView,
    DriverProfileView,
)

urlpatterns = [
    path("profile/", DriverProfileView.as_view(), name="driver-profile"),
    path("online/", DriverOnlineView.as_view(), name="driver-online"),
    path("heartbeat/", DriverHeartbeatView.as_view(), name="driver-heartbeat"),
    path("current-ride/", DriverCurrentRideView.as_view(), name="driver-current-ride"),
    path("ledger/", DriverLedgerView.as_view(), name="driver-ledger"),
    path("blocked-riders/", BlockedRidersView.as_view(), name="driver-blocked-riders"),
]

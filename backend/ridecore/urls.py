from django.contrib import admin
from django.urls import path, include
from django.conf import settings
from django.conf.urls.static import static

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Registration and JWT token endpoints (at /api/auth/)
    path('api/auth/', include('accounts.urls')),

    # Driver presence, ledger and block list
    path('api/driver/', include('drivers.urls')),

    # Ride lifecycle, payment and event endpoints (at /api/rides/)
    path('api/rides/', include('rides.urls')),
]

# Serve media files in development
if settings.DEBUG:
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)

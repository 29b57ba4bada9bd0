from django.urls import path
from . import views

app_name = 'rides'

urlpatterns = [
    # Rider APIs
    path('request/', views.create_ride_request, name='request-ride'),
    path('history/', views.ride_history, name='ride-history'),
    path('<int:ride_id>/cancel/', views.cancel_ride_view, name='cancel-ride'),
    path('<int:ride_id>/payment/', views.payment_view, name='ride-payment'),
    path('<int:ride_id>/events/', views.ride_events, name='ride-events'),
    path('payments/webhook/', views.payment_webhook, name='payment-webhook'),

    # Driver Ride Actions
    path('<int:ride_id>/accept/', views.accept_offer_view, name='accept-offer'),
    path('<int:ride_id>/decline/', views.decline_offer_view, name='decline-offer'),
    path('<int:ride_id>/start/', views.start_ride_view, name='start-ride'),
    path('<int:ride_id>/progress/', views.progress_ride_view, name='progress-ride'),
    path('<int:ride_id>/complete/', views.complete_ride_view, name='complete-ride'),
]

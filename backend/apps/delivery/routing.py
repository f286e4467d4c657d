# backend/apps/delivery/routing.py
from django.urls import re_path, path
from .consumers import LiveTrackingConsumer
from apps.notifications.consumers import NotificationConsumer

websocket_urlpatterns = [
    # Live delivery tracking for customers and ops
    re_path(
        r"ws/orders/(?P<order_id>\d+)/$",
        LiveTrackingConsumer.as_asgi(),
    ),

    # Per-user dispatch events (assignments, payouts)
    path('ws/notifications/', NotificationConsumer.as_asgi()),
]

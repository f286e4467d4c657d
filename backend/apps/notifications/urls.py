# apps/notifications/urls.py
from django.urls import path
from .views import MyNotificationListAPIView, MarkNotificationsReadAPIView

urlpatterns = [
    path("my-history/", MyNotificationListAPIView.as_view()),
    path("mark-read/", MarkNotificationsReadAPIView.as_view()),
]

# apps/delivery/urls.py
from django.urls import path
from .views import (
    AdminAssignDeliveryAPIView,
    AdminAssignmentStatsAPIView,
    AdminAvailableDriversAPIView,
    AdminCancelDeliveryAPIView,
    AdminDispatchOrderAPIView,
    DeliveryChatAPIView,
    DeliveryCompleteAPIView,
    DeliveryDetailAPIView,
    DeliveryIssueAPIView,
    DeliveryLocationAPIView,
    DeliveryRatingAPIView,
    DeliveryStatusAPIView,
    DriverRespondDeliveryAPIView,
    MyDeliveriesAPIView,
    ProofOfDeliveryAPIView,
)

urlpatterns = [
    # Admin / System
    path("admin/assign/", AdminAssignDeliveryAPIView.as_view()),
    path("admin/orders/<int:order_id>/dispatch/", AdminDispatchOrderAPIView.as_view()),
    path("admin/available-drivers/", AdminAvailableDriversAPIView.as_view()),
    path("admin/stats/", AdminAssignmentStatsAPIView.as_view()),
    path("admin/<int:delivery_id>/cancel/", AdminCancelDeliveryAPIView.as_view()),

    # Driver Workflow
    path("me/", MyDeliveriesAPIView.as_view()),
    path("<int:delivery_id>/", DeliveryDetailAPIView.as_view()),
    path("<int:delivery_id>/respond/", DriverRespondDeliveryAPIView.as_view()),  # Accept/Reject
    path("<int:delivery_id>/status/", DeliveryStatusAPIView.as_view()),
    path("<int:delivery_id>/location/", DeliveryLocationAPIView.as_view()),
    path("<int:delivery_id>/proof/", ProofOfDeliveryAPIView.as_view()),
    path("<int:delivery_id>/complete/", DeliveryCompleteAPIView.as_view()),

    # Shared
    path("<int:delivery_id>/chat/", DeliveryChatAPIView.as_view()),
    path("<int:delivery_id>/issues/", DeliveryIssueAPIView.as_view()),
    path("<int:delivery_id>/rate/", DeliveryRatingAPIView.as_view()),
]

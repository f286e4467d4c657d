# apps/drivers/urls.py
from django.urls import path
from .views import (
    AdminActiveDriversAPIView,
    AdminForceEndShiftAPIView,
    BankAccountAPIView,
    CurrentShiftAPIView,
    DriverLocationAPIView,
    EndShiftAPIView,
    MyDriverProfileAPIView,
    ShiftBreakAPIView,
    ShiftHistoryAPIView,
    ShiftStatsAPIView,
    StartShiftAPIView,
)

urlpatterns = [
    # Driver App
    path("me/", MyDriverProfileAPIView.as_view()),
    path("location/", DriverLocationAPIView.as_view()),
    path("bank-account/", BankAccountAPIView.as_view()),

    # Shifts
    path("shifts/start/", StartShiftAPIView.as_view()),
    path("shifts/end/", EndShiftAPIView.as_view()),
    path("shifts/break/", ShiftBreakAPIView.as_view()),
    path("shifts/current/", CurrentShiftAPIView.as_view()),
    path("shifts/history/", ShiftHistoryAPIView.as_view()),
    path("shifts/stats/", ShiftStatsAPIView.as_view()),

    # Admin
    path("admin/active/", AdminActiveDriversAPIView.as_view()),
    path("admin/shifts/<int:shift_id>/force-end/", AdminForceEndShiftAPIView.as_view()),
]

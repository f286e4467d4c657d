# apps/payouts/urls.py
from django.urls import path
from .views import (
    AdminGenerateWeeklyPayoutsAPIView,
    AdminPayoutActionAPIView,
    InstantPayoutAPIView,
    LeaderboardAPIView,
    MyDailyEarningsAPIView,
    MyEarningsAPIView,
    MyPayoutsAPIView,
    MyWeeklyEarningsAPIView,
    PayoutDetailAPIView,
    PayoutSummaryAPIView,
    TipDeliveryAPIView,
)

urlpatterns = [
    # Driver Earnings
    path("earnings/", MyEarningsAPIView.as_view()),
    path("earnings/daily/", MyDailyEarningsAPIView.as_view()),
    path("earnings/weekly/", MyWeeklyEarningsAPIView.as_view()),
    path("summary/", PayoutSummaryAPIView.as_view()),
    path("leaderboard/", LeaderboardAPIView.as_view()),

    # Payouts
    path("", MyPayoutsAPIView.as_view()),
    path("instant/", InstantPayoutAPIView.as_view()),
    path("<int:payout_id>/", PayoutDetailAPIView.as_view()),

    # Customer
    path("tips/<int:delivery_id>/", TipDeliveryAPIView.as_view()),

    # Admin / Finance
    path("admin/generate-weekly/", AdminGenerateWeeklyPayoutsAPIView.as_view()),
    path("admin/<int:payout_id>/<str:action>/", AdminPayoutActionAPIView.as_view()),
]

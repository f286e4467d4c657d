# apps/payouts/views.py
from django.shortcuts import get_object_or_404
from django.utils.dateparse import parse_date
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import generics, status
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import IsAuthenticated, IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import DriverPayout
from .serializers import (
    AdjustmentSerializer,
    CompletePayoutSerializer,
    DriverPayoutDetailSerializer,
    DriverPayoutSerializer,
    FailPayoutSerializer,
    InstantPayoutSerializer,
    TipSerializer,
)
from .services import EarningsService, PayoutService
from apps.delivery.models import Delivery
from apps.drivers.permissions import IsDriver
from apps.utils.idempotency import idempotent


class StandardResultsSetPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


def _query_date(request, name):
    value = request.query_params.get(name)
    return parse_date(value) if value else None


class MyEarningsAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        period = request.query_params.get("period", "week")
        return Response(EarningsService.get_driver_earnings(request.user.driver_profile, period))


class MyDailyEarningsAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        return Response(EarningsService.get_daily_earnings(
            request.user.driver_profile, _query_date(request, "date")
        ))


class MyWeeklyEarningsAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        return Response(EarningsService.get_weekly_earnings(
            request.user.driver_profile, _query_date(request, "week_of")
        ))


class PayoutSummaryAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        return Response(EarningsService.get_payout_summary(request.user.driver_profile))


class MyPayoutsAPIView(generics.ListAPIView):
    permission_classes = [IsDriver]
    serializer_class = DriverPayoutSerializer
    pagination_class = StandardResultsSetPagination
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ['status', 'payout_type']

    def get_queryset(self):
        return DriverPayout.objects.filter(driver=self.request.user.driver_profile)\
            .order_by("-created_at")


class PayoutDetailAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, payout_id):
        payout = get_object_or_404(
            DriverPayout.objects.prefetch_related("items", "adjustment_log"), id=payout_id
        )
        driver = getattr(request.user, "driver_profile", None)
        if not request.user.is_staff and (driver is None or payout.driver_id != driver.id):
            return Response({"error": "Not allowed to view this payout"}, status=status.HTTP_403_FORBIDDEN)
        return Response(DriverPayoutDetailSerializer(payout).data)


class InstantPayoutAPIView(APIView):
    """
    Driver: cash out part of the balance now, minus the instant fee.
    """
    permission_classes = [IsDriver]

    @idempotent(timeout=86400)
    def post(self, request):
        serializer = InstantPayoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payout = PayoutService.request_instant_payout(
            request.user.driver_profile, serializer.validated_data["amount"]
        )
        return Response(DriverPayoutSerializer(payout).data, status=status.HTTP_201_CREATED)


class TipDeliveryAPIView(APIView):
    """
    Customer: tip the driver after delivery.
    """
    permission_classes = [IsAuthenticated]

    @idempotent(timeout=86400)
    def post(self, request, delivery_id):
        delivery = get_object_or_404(Delivery.objects.select_related("order"), id=delivery_id)
        if not request.user.is_staff and delivery.order.customer_id != request.user.id:
            return Response({"error": "Only the customer can tip this delivery"}, status=status.HTTP_403_FORBIDDEN)

        serializer = TipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        delivery = EarningsService.add_tip(delivery.id, serializer.validated_data["amount"])
        return Response({"delivery_id": delivery.id, "tip": delivery.tip, "earnings_total": delivery.earnings_total})


class LeaderboardAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        try:
            limit = max(1, min(int(request.query_params.get("limit", 10)), 100))
        except ValueError:
            return Response({"error": "Invalid limit"}, status=status.HTTP_400_BAD_REQUEST)

        period = request.query_params.get("period", "week")
        return Response(EarningsService.get_earnings_leaderboard(period=period, limit=limit))


class AdminPayoutActionAPIView(APIView):
    """
    Admin/Finance: move a payout through its lifecycle.
    """
    permission_classes = [IsAdminUser]

    def post(self, request, payout_id, action):
        if action == "process":
            payout = PayoutService.mark_processing(payout_id, processed_by=request.user)
        elif action == "complete":
            serializer = CompletePayoutSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            payout = PayoutService.mark_completed(
                payout_id,
                serializer.validated_data["transaction_id"],
                serializer.validated_data.get("transaction_reference", ""),
                processed_by=request.user,
            )
        elif action == "fail":
            serializer = FailPayoutSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            payout = PayoutService.mark_failed(payout_id, serializer.validated_data["reason"])
        elif action == "retry":
            payout = PayoutService.retry(payout_id)
        elif action == "cancel":
            payout = PayoutService.cancel(payout_id, request.data.get("reason", ""))
        elif action == "adjust":
            serializer = AdjustmentSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            data = serializer.validated_data
            payout = PayoutService.add_adjustment(
                payout_id, data["reason"], data["amount"], added_by=request.user, notes=data.get("notes", "")
            )
        else:
            return Response({"error": "Invalid action"}, status=status.HTTP_400_BAD_REQUEST)

        return Response(DriverPayoutDetailSerializer(payout).data)


class AdminGenerateWeeklyPayoutsAPIView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request):
        return Response(PayoutService.generate_weekly_payouts())

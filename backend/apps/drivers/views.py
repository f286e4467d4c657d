# apps/drivers/views.py
from django.utils.dateparse import parse_datetime
from rest_framework import status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .permissions import IsDriver, IsVerifiedDriver
from .serializers import (
    BankAccountSerializer,
    BreakSerializer,
    DriverLocationSerializer,
    DriverSerializer,
    DriverShiftSerializer,
    EndShiftSerializer,
    StartShiftSerializer,
)
from .services import DriverService, ShiftService


class MyDriverProfileAPIView(APIView):
    """
    Driver App Home: profile, balance and current shift.
    """
    permission_classes = [IsDriver]

    def get(self, request):
        driver = request.user.driver_profile
        current = ShiftService.get_current_shift(driver)
        return Response({
            "driver": DriverSerializer(driver).data,
            "shift": DriverShiftSerializer(current["shift"]).data if current else None,
        })


class StartShiftAPIView(APIView):
    permission_classes = [IsVerifiedDriver]

    def post(self, request):
        serializer = StartShiftSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        shift = ShiftService.start_shift(request.user.driver_profile, **serializer.validated_data)
        return Response(DriverShiftSerializer(shift).data, status=status.HTTP_201_CREATED)


class EndShiftAPIView(APIView):
    permission_classes = [IsDriver]

    def post(self, request):
        serializer = EndShiftSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        shift = ShiftService.end_shift(request.user.driver_profile, reason="manual", **serializer.validated_data)
        return Response(DriverShiftSerializer(shift).data)


class ShiftBreakAPIView(APIView):
    """
    POST starts a break, DELETE ends it.
    """
    permission_classes = [IsDriver]

    def post(self, request):
        serializer = BreakSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        shift = ShiftService.start_break(request.user.driver_profile, reason=serializer.validated_data.get("reason", ""))
        return Response(DriverShiftSerializer(shift).data)

    def delete(self, request):
        shift = ShiftService.end_break(request.user.driver_profile)
        return Response(DriverShiftSerializer(shift).data)


class CurrentShiftAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        current = ShiftService.get_current_shift(request.user.driver_profile)
        if current is None:
            return Response({"error": "No active shift"}, status=status.HTTP_404_NOT_FOUND)
        return Response({
            "shift": DriverShiftSerializer(current["shift"]).data,
            "current_duration_minutes": current["current_duration_minutes"],
            "current_active_minutes": current["current_active_minutes"],
            "is_on_break": current["is_on_break"],
        })


class ShiftHistoryAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        start = request.query_params.get("start")
        end = request.query_params.get("end")
        shifts = ShiftService.get_shift_history(
            request.user.driver_profile,
            start=parse_datetime(start) if start else None,
            end=parse_datetime(end) if end else None,
        ).prefetch_related("breaks")
        return Response(DriverShiftSerializer(shifts[:100], many=True).data)


class ShiftStatsAPIView(APIView):
    permission_classes = [IsDriver]

    def get(self, request):
        period = request.query_params.get("period", "week")
        if period not in ("day", "week", "month", "year"):
            return Response({"error": "Invalid period"}, status=status.HTTP_400_BAD_REQUEST)
        return Response(ShiftService.get_shift_stats(request.user.driver_profile, period))


class DriverLocationAPIView(APIView):
    """
    Driver: position ping while idle (no delivery in progress).
    """
    permission_classes = [IsDriver]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = 'location_ping'

    def post(self, request):
        serializer = DriverLocationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        ShiftService.update_location(
            request.user.driver_profile,
            serializer.validated_data["latitude"],
            serializer.validated_data["longitude"],
        )
        return Response({"status": "synced"})


class BankAccountAPIView(APIView):
    permission_classes = [IsDriver]

    def put(self, request):
        serializer = BankAccountSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        driver = DriverService.update_bank_account(
            request.user.driver_profile,
            data["bank_account_holder"],
            data["iban"],
            bic=data.get("bic", ""),
            bank_name=data.get("bank_name", ""),
        )
        return Response({
            "bank_account_holder": driver.bank_account_holder,
            "iban": f"****{driver.iban[-4:]}",
            "bank_account_verified": driver.bank_account_verified,
        })


class AdminActiveDriversAPIView(APIView):
    """
    Ops map: drivers currently on shift.
    """
    permission_classes = [IsAdminUser]

    def get(self, request):
        return Response(ShiftService.get_active_drivers_with_shifts())


class AdminForceEndShiftAPIView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, shift_id):
        shift = ShiftService.force_end_shift(shift_id, admin_notes=request.data.get("admin_notes", ""))
        return Response(DriverShiftSerializer(shift).data)

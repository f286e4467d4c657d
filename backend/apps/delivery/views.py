# apps/delivery/views.py
from django.shortcuts import get_object_or_404
from django.utils.dateparse import parse_datetime
from rest_framework import status
from rest_framework.permissions import IsAuthenticated, IsAdminUser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import state_machine as sm
from .auto_assign import AssignmentService
from .models import Delivery
from .serializers import (
    ChatMessageSerializer,
    DeliveryCompleteSerializer,
    DeliveryDetailSerializer,
    DeliverySerializer,
    DeliveryStatusUpdateSerializer,
    IssueSerializer,
    LocationUpdateSerializer,
    ProofOfDeliverySerializer,
    ProofSubmitSerializer,
    RatingSerializer,
)
from .services import DeliveryService
from apps.drivers.permissions import IsDriver


def _visible_delivery(request, delivery_id):
    """Driver on the job, the ordering customer, or staff."""
    delivery = get_object_or_404(
        Delivery.objects.select_related("order", "restaurant", "driver__user"), id=delivery_id
    )
    user = request.user
    driver = getattr(user, "driver_profile", None)
    if user.is_staff or delivery.order.customer_id == user.id:
        return delivery
    if driver is not None and delivery.driver_id == driver.id:
        return delivery
    return None


def _optional_int(value):
    """Blank -> None; raises ValueError on anything that is not a whole number."""
    if value in (None, ""):
        return None
    return int(value)


class MyDeliveriesAPIView(APIView):
    """
    Driver: List assigned deliveries.
    """
    permission_classes = [IsDriver]

    def get(self, request):
        qs = Delivery.objects.filter(driver=request.user.driver_profile)\
            .select_related('order', 'restaurant', 'driver__user')\
            .order_by("-created_at")

        if request.query_params.get("active") in ("1", "true"):
            qs = qs.filter(status__in=sm.DRIVER_BUSY_STATUSES)

        return Response(DeliverySerializer(qs[:100], many=True).data)


class DeliveryDetailAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, delivery_id):
        delivery = _visible_delivery(request, delivery_id)
        if delivery is None:
            return Response({"error": "Not allowed to view this delivery"}, status=status.HTTP_403_FORBIDDEN)
        return Response(DeliveryDetailSerializer(delivery).data)


class DriverRespondDeliveryAPIView(APIView):
    """
    Driver: Accept or Reject an assigned delivery.
    """
    permission_classes = [IsDriver]

    def post(self, request, delivery_id):
        action = request.data.get("action")
        if action not in ['accept', 'reject']:
            return Response({"error": "Invalid action"}, status=status.HTTP_400_BAD_REQUEST)

        driver = request.user.driver_profile
        if action == 'accept':
            delivery = AssignmentService.accept_assignment(delivery_id, driver.id)
        else:
            delivery = AssignmentService.reject_assignment(
                delivery_id, driver.id, reason=request.data.get("reason", "")
            )
            # The caller no longer owns the job; only tell them it was released
            return Response({"status": "rejected", "delivery_id": delivery.id})

        return Response(DeliverySerializer(delivery).data)


class DeliveryStatusAPIView(APIView):
    """
    Driver: progress through pickup and drop-off.
    """
    permission_classes = [IsDriver]

    def post(self, request, delivery_id):
        serializer = DeliveryStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        delivery = DeliveryService.update_status(
            delivery_id,
            data["status"],
            driver=request.user.driver_profile,
            actor=request.user,
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            note=data.get("note", ""),
        )
        return Response(DeliverySerializer(delivery).data)


class DeliveryLocationAPIView(APIView):
    """
    Driver: High-frequency GPS updates, broadcast to the tracking socket.
    """
    permission_classes = [IsDriver]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = 'location_ping'

    def post(self, request, delivery_id):
        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        DeliveryService.update_location(
            delivery_id,
            request.user.driver_profile,
            data["latitude"],
            data["longitude"],
            accuracy=data.get("accuracy"),
            speed=data.get("speed"),
            heading=data.get("heading"),
        )
        return Response({"status": "synced"})


class ProofOfDeliveryAPIView(APIView):
    permission_classes = [IsDriver]

    def post(self, request, delivery_id):
        serializer = ProofSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        proof = DeliveryService.submit_proof(
            delivery_id, request.user.driver_profile, **serializer.validated_data
        )
        return Response(ProofOfDeliverySerializer(proof).data, status=status.HTTP_201_CREATED)


class DeliveryCompleteAPIView(APIView):
    """
    Driver: Mark delivery as complete (OTP / proof when required).
    """
    permission_classes = [IsDriver]

    def post(self, request, delivery_id):
        serializer = DeliveryCompleteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        delivery = DeliveryService.complete_delivery(
            delivery_id,
            driver=request.user.driver_profile,
            otp=data.get("otp"),
            actual_distance_km=data.get("actual_distance_km"),
            actor=request.user,
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
        )
        return Response({
            "status": delivery.status,
            "earnings": delivery.earnings_breakdown(),
        })


class DeliveryChatAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, delivery_id):
        delivery = _visible_delivery(request, delivery_id)
        if delivery is None:
            return Response({"error": "Not allowed to view this delivery"}, status=status.HTTP_403_FORBIDDEN)
        return Response(ChatMessageSerializer(delivery.chat_messages.all(), many=True).data)

    def post(self, request, delivery_id):
        serializer = ChatMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        chat = DeliveryService.add_chat_message(
            delivery_id,
            request.user,
            data["message"],
            message_type=data.get("message_type", "text"),
            metadata=data.get("metadata"),
        )
        return Response(ChatMessageSerializer(chat).data, status=status.HTTP_201_CREATED)


class DeliveryIssueAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, delivery_id):
        if _visible_delivery(request, delivery_id) is None:
            return Response({"error": "Not allowed to report on this delivery"}, status=status.HTTP_403_FORBIDDEN)

        serializer = IssueSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        issue = DeliveryService.report_issue(
            delivery_id,
            request.user,
            serializer.validated_data["issue_type"],
            serializer.validated_data.get("description", ""),
        )
        return Response(IssueSerializer(issue).data, status=status.HTTP_201_CREATED)


class DeliveryRatingAPIView(APIView):
    """
    Customer: rate the driver once the order is delivered.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, delivery_id):
        serializer = RatingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        delivery = DeliveryService.rate_delivery(
            delivery_id,
            request.user,
            serializer.validated_data["rating"],
            serializer.validated_data.get("feedback", ""),
        )
        return Response({"status": "rated", "rating": delivery.customer_rating})


class AdminCancelDeliveryAPIView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, delivery_id):
        delivery = DeliveryService.cancel_delivery(
            delivery_id,
            cancelled_by=request.data.get("cancelled_by", "admin"),
            reason=request.data.get("reason", ""),
            actor=request.user,
        )
        return Response(DeliverySerializer(delivery).data)


class AdminAssignDeliveryAPIView(APIView):
    """
    Admin-only: Assign a specific driver to a pending delivery.
    """
    permission_classes = [IsAdminUser]

    def post(self, request):
        delivery_id = request.data.get("delivery_id")
        driver_id = request.data.get("driver_id")
        if not delivery_id or not driver_id:
            return Response({"error": "delivery_id and driver_id required"}, status=status.HTTP_400_BAD_REQUEST)

        delivery = AssignmentService.assign_delivery_to_driver(
            delivery_id, driver_id, actor=request.user, source="manual"
        )
        return Response(DeliverySerializer(delivery).data, status=status.HTTP_201_CREATED)


class AdminDispatchOrderAPIView(APIView):
    """
    Admin/System: create the delivery for an order and auto-assign it.
    """
    permission_classes = [IsAdminUser]

    def post(self, request, order_id):
        delivery = AssignmentService.create_delivery_for_order(order_id)
        if delivery.status == sm.PENDING:
            delivery = AssignmentService.auto_assign_delivery(delivery.id)
        return Response(DeliverySerializer(delivery).data, status=status.HTTP_201_CREATED)


class AdminAvailableDriversAPIView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        try:
            lat = float(request.query_params.get("latitude"))
            lng = float(request.query_params.get("longitude"))
            radius = float(request.query_params.get("radius_km", 0)) or None
        except (TypeError, ValueError):
            return Response({"error": "Invalid coordinates"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            restaurant_id = _optional_int(request.query_params.get("restaurant_id"))
        except ValueError:
            return Response({"error": "Invalid restaurant_id"}, status=status.HTTP_400_BAD_REQUEST)

        candidates = AssignmentService.find_available_drivers(
            lat, lng, radius_km=radius, restaurant_id=restaurant_id
        )
        return Response([
            {
                "driver_id": c["driver"].id,
                "name": c["driver"].full_name,
                "vehicle_type": c["driver"].vehicle_type,
                "distance_km": c["distance_km"],
                "eta_minutes": c["eta_minutes"],
                "score": c["score"],
            }
            for c in candidates
        ])


class AdminAssignmentStatsAPIView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        start = request.query_params.get("start")
        end = request.query_params.get("end")
        try:
            restaurant_id = _optional_int(request.query_params.get("restaurant_id"))
            start = parse_datetime(start) if start else None
            end = parse_datetime(end) if end else None
        except ValueError:
            return Response({"error": "Invalid filters"}, status=status.HTTP_400_BAD_REQUEST)

        stats = AssignmentService.get_assignment_stats(restaurant_id=restaurant_id, start=start, end=end)
        return Response(stats)

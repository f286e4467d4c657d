from rest_framework import serializers

from . import state_machine as sm
from .models import (
    Delivery,
    DeliveryChatMessage,
    DeliveryIssue,
    DeliveryStatusEvent,
    ProofOfDelivery,
)
from apps.orders.serializers import OrderSerializer


class DeliveryStatusEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = DeliveryStatusEvent
        fields = ("event", "note", "latitude", "longitude", "created_at")


class ProofOfDeliverySerializer(serializers.ModelSerializer):
    class Meta:
        model = ProofOfDelivery
        fields = (
            "pod_type", "photo_url", "signature_url", "otp_verified",
            "recipient_name", "latitude", "longitude", "completed_at",
        )


class DeliverySerializer(serializers.ModelSerializer):
    """
    Standard serializer for Delivery instances. The OTP is never exposed.
    """
    order = OrderSerializer(read_only=True)
    driver_name = serializers.CharField(source="driver.full_name", read_only=True, default=None)
    restaurant_name = serializers.CharField(source="restaurant.name", read_only=True)

    class Meta:
        model = Delivery
        fields = (
            "id",
            "delivery_number",
            "order",
            "restaurant",
            "restaurant_name",
            "driver",
            "driver_name",
            "status",
            "job_status",
            "source",
            "is_priority",
            "assignment_attempts",
            "assigned_at",
            "accepted_at",
            "assignment_expires_at",
            "pickup_address",
            "dropoff_address",
            "delivery_instructions",
            "estimated_distance_km",
            "estimated_duration_minutes",
            "actual_distance_km",
            "actual_duration_minutes",
            "actual_pickup_time",
            "actual_delivery_time",
            "driver_latitude",
            "driver_longitude",
            "pod_requires_otp",
            "pod_requires_photo",
            "pod_requires_signature",
            "base_fee",
            "distance_bonus",
            "wait_time_bonus",
            "peak_hour_bonus",
            "tip",
            "adjustments",
            "earnings_total",
            "currency",
            "customer_rating",
            "created_at",
        )
        read_only_fields = fields


class DeliveryDetailSerializer(DeliverySerializer):
    status_history = DeliveryStatusEventSerializer(many=True, read_only=True)
    proof = ProofOfDeliverySerializer(read_only=True)

    class Meta(DeliverySerializer.Meta):
        fields = DeliverySerializer.Meta.fields + ("status_history", "proof", "cancellation_reason", "notes")
        read_only_fields = fields


class DeliveryStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[choice for choice, _ in sm.STATUS_CHOICES])
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)
    note = serializers.CharField(required=False, allow_blank=True, default="")


class LocationUpdateSerializer(serializers.Serializer):
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)
    accuracy = serializers.FloatField(required=False, allow_null=True)
    speed = serializers.FloatField(required=False, allow_null=True)
    heading = serializers.FloatField(required=False, allow_null=True)


class DeliveryCompleteSerializer(serializers.Serializer):
    """
    Validates payload for completing a delivery.
    """
    otp = serializers.CharField(max_length=4, min_length=4, required=False)
    actual_distance_km = serializers.FloatField(required=False, min_value=0)
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)


class ProofSubmitSerializer(serializers.Serializer):
    pod_type = serializers.ChoiceField(choices=ProofOfDelivery.POD_TYPE_CHOICES)
    photo_url = serializers.URLField(required=False, allow_blank=True, default="")
    signature_url = serializers.URLField(required=False, allow_blank=True, default="")
    otp = serializers.CharField(required=False, max_length=4)
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)
    recipient_name = serializers.CharField(required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ChatMessageSerializer(serializers.ModelSerializer):
    class Meta:
        model = DeliveryChatMessage
        fields = ("id", "sender_type", "message_type", "message", "metadata", "is_read", "created_at")
        read_only_fields = ("id", "sender_type", "is_read", "created_at")


class IssueSerializer(serializers.ModelSerializer):
    class Meta:
        model = DeliveryIssue
        fields = ("id", "issue_type", "description", "is_resolved", "resolution", "created_at")
        read_only_fields = ("id", "is_resolved", "resolution", "created_at")


class RatingSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    feedback = serializers.CharField(required=False, allow_blank=True, default="")

from decimal import Decimal

from rest_framework import serializers

from .models import Driver, DriverShift, ShiftBreak


class DriverSerializer(serializers.ModelSerializer):
    name = serializers.CharField(source="full_name", read_only=True)

    class Meta:
        model = Driver
        fields = (
            "id",
            "name",
            "phone",
            "photo_url",
            "status",
            "shift_status",
            "is_available",
            "vehicle_type",
            "current_latitude",
            "current_longitude",
            "location_updated_at",
            "current_delivery",
            "average_rating",
            "total_ratings",
            "completion_rate",
            "total_deliveries",
            "completed_deliveries",
            "cancelled_deliveries",
            "current_balance",
            "lifetime_earnings",
            "bank_account_verified",
        )
        read_only_fields = fields


class ShiftBreakSerializer(serializers.ModelSerializer):
    class Meta:
        model = ShiftBreak
        fields = ("started_at", "ended_at", "duration_minutes", "reason")


class DriverShiftSerializer(serializers.ModelSerializer):
    breaks = ShiftBreakSerializer(many=True, read_only=True)
    is_on_break = serializers.BooleanField(read_only=True)

    class Meta:
        model = DriverShift
        fields = (
            "id",
            "started_at",
            "ended_at",
            "is_active",
            "end_reason",
            "duration_minutes",
            "is_on_break",
            "current_break_started_at",
            "breaks",
            "total_deliveries",
            "completed_deliveries",
            "cancelled_deliveries",
            "total_distance_km",
            "total_active_minutes",
            "total_break_minutes",
            "average_delivery_minutes",
            "earnings_delivery_fees",
            "earnings_distance_bonuses",
            "earnings_wait_time_bonuses",
            "earnings_peak_hour_bonuses",
            "earnings_tips",
            "earnings_incentive_bonus",
            "earnings_total",
            "goal_deliveries",
            "goal_earnings",
            "achieved_deliveries",
            "achieved_earnings",
            "notes",
        )
        read_only_fields = fields


class StartShiftSerializer(serializers.Serializer):
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)
    goal_deliveries = serializers.IntegerField(required=False, min_value=1)
    goal_earnings = serializers.DecimalField(max_digits=10, decimal_places=2, required=False, min_value=Decimal("0"))
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if ("latitude" in attrs) != ("longitude" in attrs):
            raise serializers.ValidationError("latitude and longitude must be sent together")
        return attrs


class EndShiftSerializer(serializers.Serializer):
    latitude = serializers.FloatField(required=False, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, min_value=-180, max_value=180)
    notes = serializers.CharField(required=False, allow_blank=True)


class BreakSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=100)


class DriverLocationSerializer(serializers.Serializer):
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)


class BankAccountSerializer(serializers.Serializer):
    bank_account_holder = serializers.CharField(max_length=150)
    iban = serializers.CharField(max_length=42)
    bic = serializers.CharField(max_length=14, required=False, allow_blank=True)
    bank_name = serializers.CharField(max_length=100, required=False, allow_blank=True)

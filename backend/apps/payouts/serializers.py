from decimal import Decimal

from rest_framework import serializers

from .models import DriverPayout, PayoutAdjustment, PayoutDelivery


class PayoutDeliverySerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutDelivery
        fields = ("delivery", "delivery_number", "completed_at", "earnings", "tip")


class PayoutAdjustmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutAdjustment
        fields = ("reason", "amount", "added_at", "notes")


class DriverPayoutSerializer(serializers.ModelSerializer):
    class Meta:
        model = DriverPayout
        fields = (
            "id",
            "payout_number",
            "payout_type",
            "status",
            "period_start",
            "period_end",
            "gross_amount",
            "net_amount",
            "currency",
            "delivery_fees",
            "distance_bonuses",
            "wait_time_bonuses",
            "peak_hour_bonuses",
            "tips",
            "incentive_bonuses",
            "referral_bonuses",
            "adjustments",
            "deductions",
            "tax_withheld",
            "processing_fee",
            "instant_payout_fee",
            "delivery_count",
            "payment_method",
            "processed_at",
            "failure_reason",
            "created_at",
        )
        read_only_fields = fields


class DriverPayoutDetailSerializer(DriverPayoutSerializer):
    items = PayoutDeliverySerializer(many=True, read_only=True)
    adjustment_log = PayoutAdjustmentSerializer(many=True, read_only=True)

    class Meta(DriverPayoutSerializer.Meta):
        fields = DriverPayoutSerializer.Meta.fields + ("items", "adjustment_log")
        read_only_fields = fields


class InstantPayoutSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))


class TipSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=8, decimal_places=2, min_value=Decimal("0.01"))


class CompletePayoutSerializer(serializers.Serializer):
    transaction_id = serializers.CharField(max_length=100)
    transaction_reference = serializers.CharField(max_length=100, required=False, allow_blank=True)


class FailPayoutSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500)


class AdjustmentSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    notes = serializers.CharField(required=False, allow_blank=True)

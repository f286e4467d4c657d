# apps/orders/serializers.py
from rest_framework import serializers
from .models import Order


class OrderSerializer(serializers.ModelSerializer):
    restaurant_name = serializers.CharField(source='restaurant.name', read_only=True, default=None)

    class Meta:
        model = Order
        fields = (
            "id",
            "restaurant",
            "restaurant_name",
            "status",
            "fulfillment_type",
            "total_amount",
            "delivery_address",
            "delivery_instructions",
            "delivery_status",
            "driver_info",
            "created_at",
        )
        read_only_fields = fields

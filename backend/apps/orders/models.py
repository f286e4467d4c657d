from django.conf import settings
from django.db import models
from django.utils import timezone

User = settings.AUTH_USER_MODEL


class Order(models.Model):
    """
    Order placed on the ordering platform.
    Dispatch reads the fulfilment/address fields and writes back
    `delivery_status` and the `driver_info` snapshot.
    """
    STATUS_CHOICES = (
        ("pending", "Pending"),
        ("confirmed", "Confirmed"),
        ("preparing", "Preparing"),
        ("ready", "Ready"),
        ("completed", "Completed"),
        ("cancelled", "Cancelled"),
    )

    FULFILLMENT_CHOICES = (
        ("dine_in", "Dine In"),
        ("takeaway", "Takeaway"),
        ("delivery", "Delivery"),
    )

    customer = models.ForeignKey(User, on_delete=models.CASCADE, related_name="orders")
    restaurant = models.ForeignKey(
        "restaurants.Restaurant",
        on_delete=models.SET_NULL,
        null=True,
        related_name="orders",
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    fulfillment_type = models.CharField(max_length=20, choices=FULFILLMENT_CHOICES, default="dine_in")
    total_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    # Snapshot of the drop-off address: street, city, postal_code, country, latitude, longitude
    delivery_address = models.JSONField(default=dict, blank=True)
    delivery_instructions = models.TextField(blank=True)

    delivery_status = models.CharField(max_length=30, blank=True)
    driver_info = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['restaurant', 'status', 'created_at']),
            models.Index(fields=['customer', '-created_at']),
        ]

    def __str__(self):
        return f"Order #{self.id} ({self.status})"

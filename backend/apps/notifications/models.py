# apps/notifications/models.py
from django.db import models
from django.conf import settings


class Notification(models.Model):
    """
    Typed dispatch event addressed to one user (driver or customer).
    Persisted first, then pushed over the user's websocket group.
    """
    EVENT_CHOICES = (
        ("delivery_assigned", "Delivery Assigned"),
        ("delivery_accepted", "Delivery Accepted"),
        ("delivery_reassigned", "Delivery Reassigned"),
        ("delivery_status", "Delivery Status"),
        ("delivery_completed", "Delivery Completed"),
        ("delivery_cancelled", "Delivery Cancelled"),
        ("tip_received", "Tip Received"),
        ("payout_created", "Payout Created"),
        ("payout_completed", "Payout Completed"),
        ("payout_failed", "Payout Failed"),
        ("shift_ended", "Shift Ended"),
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
    )

    event_type = models.CharField(max_length=40, choices=EVENT_CHOICES)
    title = models.CharField(max_length=100)
    message = models.TextField(blank=True)
    data = models.JSONField(default=dict, blank=True)
    is_read = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["user", "is_read", "-created_at"]),
        ]

    def __str__(self):
        return f"{self.event_type} -> {self.user_id}"

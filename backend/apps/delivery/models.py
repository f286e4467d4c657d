import secrets
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.utils import timezone

from . import state_machine as sm
from apps.utils.money import to_money, money_sum

User = settings.AUTH_USER_MODEL


class Delivery(models.Model):
    """
    Fulfilment leg of one delivery order. Child tables hold the
    append-only history, location trail, chat, issues and proof.
    """
    STATUS_CHOICES = sm.STATUS_CHOICES

    JOB_STATUS_CHOICES = (
        ("searching", "Searching"),
        ("assigned", "Assigned"),
        ("manual_intervention", "Manual Intervention"),
    )

    SOURCE_CHOICES = (
        ("auto", "Auto"),
        ("manual", "Manual"),
        ("broadcast", "Broadcast"),
    )

    CANCELLED_BY_CHOICES = (
        ("customer", "Customer"),
        ("driver", "Driver"),
        ("restaurant", "Restaurant"),
        ("admin", "Admin"),
        ("system", "System"),
    )

    EARNINGS_FIELDS = (
        "base_fee",
        "distance_bonus",
        "wait_time_bonus",
        "peak_hour_bonus",
        "tip",
        "adjustments",
    )

    # Model-level pricing (calculate_earnings); dispatch payouts use EarningsService
    FREE_DISTANCE_KM = 2
    WAIT_GRACE_MINUTES = 10
    WAIT_RATE_PER_MINUTE = Decimal("0.10")

    MAX_LOCATION_POINTS = 1000
    COMPACTED_LOCATION_POINTS = 500

    delivery_number = models.CharField(max_length=32, unique=True, editable=False)
    order = models.OneToOneField("orders.Order", on_delete=models.CASCADE, related_name="delivery")
    restaurant = models.ForeignKey(
        "restaurants.Restaurant", on_delete=models.PROTECT, related_name="deliveries"
    )
    driver = models.ForeignKey(
        "drivers.Driver",
        on_delete=models.PROTECT,
        related_name="deliveries",
        null=True,
        blank=True,
    )

    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default=sm.PENDING)
    previous_status = models.CharField(max_length=30, choices=STATUS_CHOICES, blank=True)
    job_status = models.CharField(max_length=20, choices=JOB_STATUS_CHOICES, default="searching")

    # Assignment
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default="auto")
    is_priority = models.BooleanField(default=False)
    assignment_attempts = models.PositiveIntegerField(default=0)
    assigned_at = models.DateTimeField(null=True, blank=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    assignment_expires_at = models.DateTimeField(null=True, blank=True)
    rejected_driver_ids = models.JSONField(default=list, blank=True)

    # Route
    pickup_address = models.JSONField(default=dict, blank=True)
    pickup_latitude = models.FloatField(null=True, blank=True)
    pickup_longitude = models.FloatField(null=True, blank=True)
    dropoff_address = models.JSONField(default=dict, blank=True)
    dropoff_latitude = models.FloatField(null=True, blank=True)
    dropoff_longitude = models.FloatField(null=True, blank=True)
    delivery_instructions = models.TextField(blank=True)

    estimated_distance_km = models.FloatField(default=0)
    estimated_duration_minutes = models.PositiveIntegerField(default=0)
    actual_distance_km = models.FloatField(null=True, blank=True)
    actual_duration_minutes = models.PositiveIntegerField(null=True, blank=True)

    arrived_at_restaurant_at = models.DateTimeField(null=True, blank=True)
    actual_pickup_time = models.DateTimeField(null=True, blank=True)
    actual_delivery_time = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # Live tracking
    driver_latitude = models.FloatField(null=True, blank=True)
    driver_longitude = models.FloatField(null=True, blank=True)
    driver_location_updated_at = models.DateTimeField(null=True, blank=True)

    # Proof of delivery requirements
    otp = models.CharField(max_length=4, blank=True)
    pod_requires_otp = models.BooleanField(default=False)
    pod_requires_photo = models.BooleanField(default=False)
    pod_requires_signature = models.BooleanField(default=False)

    # Earnings breakdown
    base_fee = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    distance_bonus = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    wait_time_bonus = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    peak_hour_bonus = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    tip = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    adjustments = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    earnings_total = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="EUR")

    # Feedback / cancellation
    customer_rating = models.PositiveSmallIntegerField(null=True, blank=True)
    customer_feedback = models.TextField(blank=True)
    rated_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=20, choices=CANCELLED_BY_CHOICES, blank=True)
    cancellation_reason = models.TextField(blank=True)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "Deliveries"
        indexes = [
            models.Index(fields=['driver', 'status'], name='active_driver_delivery_idx'),
            models.Index(fields=['driver', '-created_at']),
            models.Index(fields=['status', 'assignment_expires_at'], name='assignment_expiry_idx'),
            models.Index(fields=['restaurant', '-created_at']),
            models.Index(fields=['driver', 'status', 'actual_delivery_time'], name='driver_earnings_idx'),
        ]

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    @staticmethod
    def generate_delivery_number(now=None):
        now = timezone.localtime(now or timezone.now())
        return f"DLV-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

    @staticmethod
    def generate_otp():
        return str(1000 + secrets.randbelow(9000))

    def save(self, *args, **kwargs):
        if not self.delivery_number:
            self.delivery_number = self.generate_delivery_number(self.created_at)
        if not self.otp:
            self.otp = self.generate_otp()
        super().save(*args, **kwargs)

    def verify_otp(self, code):
        if not self.otp or code is None:
            return False
        return secrets.compare_digest(str(code).encode(), self.otp.encode())

    # ------------------------------------------------------------------
    # Geometry helpers
    # ------------------------------------------------------------------
    @property
    def pickup_coordinates(self):
        if self.pickup_latitude is None or self.pickup_longitude is None:
            return None
        return self.pickup_latitude, self.pickup_longitude

    @property
    def dropoff_coordinates(self):
        if self.dropoff_latitude is None or self.dropoff_longitude is None:
            return None
        return self.dropoff_latitude, self.dropoff_longitude

    @property
    def is_closed(self):
        return self.status in sm.CLOSED_STATUSES

    @property
    def wait_minutes(self):
        """Time the driver waited at the restaurant before pickup."""
        if not self.arrived_at_restaurant_at or not self.actual_pickup_time:
            return 0
        return max(0, round((self.actual_pickup_time - self.arrived_at_restaurant_at).total_seconds() / 60))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def update_status(self, new_status, latitude=None, longitude=None, note="", actor=None, at=None):
        """
        Unconditional setter: records history and lifecycle timestamps.
        Transition legality is checked by the services via state_machine.
        """
        at = at or timezone.now()
        self.previous_status = self.status
        self.status = new_status

        if new_status == sm.ASSIGNED:
            self.assigned_at = at
        elif new_status == sm.ACCEPTED:
            self.accepted_at = at
        elif new_status == sm.AT_RESTAURANT:
            self.arrived_at_restaurant_at = at
        elif new_status == sm.PICKED_UP:
            self.actual_pickup_time = at
        elif new_status == sm.DELIVERED:
            self.actual_delivery_time = at
            if self.actual_pickup_time:
                self.actual_duration_minutes = round((at - self.actual_pickup_time).total_seconds() / 60)
        elif new_status == sm.CANCELLED:
            self.cancelled_at = at

        self.save()
        self.record_event(new_status, note=note, latitude=latitude, longitude=longitude, actor=actor, at=at)

    def record_event(self, event, note="", latitude=None, longitude=None, actor=None, at=None):
        return DeliveryStatusEvent.objects.create(
            delivery=self,
            event=event,
            note=note or "",
            latitude=latitude,
            longitude=longitude,
            actor=actor if getattr(actor, "pk", None) else None,
            created_at=at or timezone.now(),
        )

    def add_chat_message(self, sender_type, message, sender=None, message_type="text", metadata=None):
        return DeliveryChatMessage.objects.create(
            delivery=self,
            sender=sender if getattr(sender, "pk", None) else None,
            sender_type=sender_type,
            message_type=message_type,
            message=message,
            metadata=metadata or {},
        )

    def update_driver_location(self, latitude, longitude, at=None, accuracy=None, speed=None, heading=None):
        at = at or timezone.now()
        self.driver_latitude = float(latitude)
        self.driver_longitude = float(longitude)
        self.driver_location_updated_at = at
        self.save(update_fields=["driver_latitude", "driver_longitude", "driver_location_updated_at", "updated_at"])

        point = DeliveryLocationPoint.objects.create(
            delivery=self,
            latitude=float(latitude),
            longitude=float(longitude),
            accuracy=accuracy,
            speed=speed,
            heading=heading,
            recorded_at=at,
        )

        if self.location_history.count() > self.MAX_LOCATION_POINTS:
            keep_ids = list(
                self.location_history.order_by("-recorded_at", "-id")
                .values_list("id", flat=True)[:self.COMPACTED_LOCATION_POINTS]
            )
            self.location_history.exclude(id__in=keep_ids).delete()

        return point

    # ------------------------------------------------------------------
    # Earnings
    # ------------------------------------------------------------------
    def recompute_earnings_total(self):
        self.earnings_total = money_sum(getattr(self, field) for field in self.EARNINGS_FIELDS)
        return self.earnings_total

    def calculate_earnings(self, base_fee=None, distance_rate=Decimal("0.5"), peak_multiplier=1, wait_time_minutes=0):
        """
        Recomputes this delivery's own breakdown (first 2 km free).
        Does not save.
        """
        if base_fee is not None:
            self.base_fee = to_money(base_fee)

        # Recorded distance wins over the dispatch estimate
        distance = self.actual_distance_km or self.estimated_distance_km
        billable_km = max(0, (distance or 0) - self.FREE_DISTANCE_KM)
        self.distance_bonus = to_money(Decimal(str(billable_km)) * Decimal(str(distance_rate)))

        extra_wait = max(0, (wait_time_minutes or 0) - self.WAIT_GRACE_MINUTES)
        self.wait_time_bonus = to_money(Decimal(str(extra_wait)) * self.WAIT_RATE_PER_MINUTE)

        multiplier = Decimal(str(peak_multiplier))
        self.peak_hour_bonus = to_money(self.base_fee * (multiplier - 1)) if multiplier > 1 else Decimal("0.00")

        self.recompute_earnings_total()
        return self.earnings_breakdown()

    def apply_earnings(self, breakdown):
        for field in ("base_fee", "distance_bonus", "wait_time_bonus", "peak_hour_bonus", "tip"):
            if field in breakdown:
                setattr(self, field, to_money(breakdown[field]))
        self.recompute_earnings_total()

    def earnings_breakdown(self):
        data = {field: to_money(getattr(self, field)) for field in self.EARNINGS_FIELDS}
        data["total"] = to_money(self.earnings_total)
        data["currency"] = self.currency
        return data

    def __str__(self):
        return f"{self.delivery_number} - {self.status}"


class DeliveryStatusEvent(models.Model):
    """Append-only status/event log."""
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="status_history")
    event = models.CharField(max_length=40)
    note = models.TextField(blank=True)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ("created_at", "id")


class DeliveryLocationPoint(models.Model):
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="location_history")
    latitude = models.FloatField()
    longitude = models.FloatField()
    accuracy = models.FloatField(null=True, blank=True)
    speed = models.FloatField(null=True, blank=True)
    heading = models.FloatField(null=True, blank=True)
    recorded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=['delivery', '-recorded_at']),
        ]


class DeliveryChatMessage(models.Model):
    SENDER_TYPE_CHOICES = (
        ("driver", "Driver"),
        ("customer", "Customer"),
        ("support", "Support"),
        ("system", "System"),
    )
    MESSAGE_TYPE_CHOICES = (
        ("text", "Text"),
        ("image", "Image"),
        ("location", "Location"),
        ("quick_reply", "Quick Reply"),
    )

    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="chat_messages")
    sender = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    sender_type = models.CharField(max_length=20, choices=SENDER_TYPE_CHOICES)
    message_type = models.CharField(max_length=20, choices=MESSAGE_TYPE_CHOICES, default="text")
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ("created_at", "id")


class DeliveryIssue(models.Model):
    ISSUE_TYPE_CHOICES = (
        ("wrong_address", "Wrong Address"),
        ("customer_unavailable", "Customer Unavailable"),
        ("customer_refused", "Customer Refused"),
        ("order_damaged", "Order Damaged"),
        ("items_missing", "Items Missing"),
        ("traffic_delay", "Traffic Delay"),
        ("vehicle_issue", "Vehicle Issue"),
        ("weather", "Weather"),
        ("other", "Other"),
    )

    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="issues")
    issue_type = models.CharField(max_length=30, choices=ISSUE_TYPE_CHOICES)
    description = models.TextField(blank=True)
    reported_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    is_resolved = models.BooleanField(default=False)
    resolution = models.TextField(blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)


class ProofOfDelivery(models.Model):
    POD_TYPE_CHOICES = (
        ("photo", "Photo"),
        ("signature", "Signature"),
        ("otp", "OTP"),
        ("customer_confirm", "Customer Confirmation"),
        ("gps", "GPS"),
    )

    delivery = models.OneToOneField(Delivery, on_delete=models.CASCADE, related_name="proof")
    pod_type = models.CharField(max_length=20, choices=POD_TYPE_CHOICES)
    photo_url = models.URLField(blank=True)
    signature_url = models.URLField(blank=True)
    otp_verified = models.BooleanField(default=False)
    customer_confirmed_at = models.DateTimeField(null=True, blank=True)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    recipient_name = models.CharField(max_length=150, blank=True)
    notes = models.TextField(blank=True)
    completed_at = models.DateTimeField(default=timezone.now)

# apps/drivers/models.py
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.utils.exceptions import InvalidStateError
from apps.utils.money import to_money, money_sum

User = settings.AUTH_USER_MODEL


class Driver(models.Model):
    """
    Delivery driver directory entry. Created by onboarding/admin, mutated
    by shift and assignment operations.
    """
    STATUS_CHOICES = (
        ("pending", "Pending"),
        ("verified", "Verified"),
        ("suspended", "Suspended"),
        ("deactivated", "Deactivated"),
    )

    SHIFT_STATUS_CHOICES = (
        ("offline", "Offline"),
        ("online", "Online"),
        ("on_break", "On Break"),
        ("on_delivery", "On Delivery"),
    )

    VEHICLE_CHOICES = (
        ("bicycle", "Bicycle"),
        ("scooter", "Scooter"),
        ("motorcycle", "Motorcycle"),
        ("car", "Car"),
    )

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="driver_profile")
    phone = models.CharField(max_length=20, blank=True)
    photo_url = models.URLField(blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    shift_status = models.CharField(max_length=20, choices=SHIFT_STATUS_CHOICES, default="offline")
    is_available = models.BooleanField(default=False)
    vehicle_type = models.CharField(max_length=20, choices=VEHICLE_CHOICES, default="scooter")

    # Empty means the driver may serve any restaurant
    restaurants = models.ManyToManyField("restaurants.Restaurant", blank=True, related_name="drivers")

    current_latitude = models.FloatField(null=True, blank=True)
    current_longitude = models.FloatField(null=True, blank=True)
    location_updated_at = models.DateTimeField(null=True, blank=True)

    current_delivery = models.ForeignKey(
        "delivery.Delivery",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    average_rating = models.FloatField(null=True, blank=True)
    total_ratings = models.PositiveIntegerField(default=0)
    # Fraction in [0, 1]; null until the first delivery is closed
    completion_rate = models.FloatField(null=True, blank=True)
    total_deliveries = models.PositiveIntegerField(default=0)
    completed_deliveries = models.PositiveIntegerField(default=0)
    cancelled_deliveries = models.PositiveIntegerField(default=0)

    current_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    lifetime_earnings = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    bank_account_holder = models.CharField(max_length=150, blank=True)
    iban = models.CharField(max_length=34, blank=True)
    bic = models.CharField(max_length=11, blank=True)
    bank_name = models.CharField(max_length=100, blank=True)
    bank_account_verified = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            # Candidate search for auto-assignment
            models.Index(
                fields=['status', 'shift_status', 'is_available'],
                name='driver_dispatch_idx'
            ),
            models.Index(fields=['current_latitude', 'current_longitude'], name='driver_location_idx'),
        ]

    @property
    def full_name(self):
        name = f"{self.user.first_name} {self.user.last_name}".strip()
        return name or self.user.get_username()

    @property
    def has_location(self):
        return self.current_latitude is not None and self.current_longitude is not None

    def set_location(self, latitude, longitude, at=None):
        self.current_latitude = float(latitude)
        self.current_longitude = float(longitude)
        self.location_updated_at = at or timezone.now()

    def mark_on_delivery(self, delivery):
        self.current_delivery = delivery
        self.is_available = False
        self.shift_status = "on_delivery"

    def release(self):
        """Back to the pool after a delivery closes or is handed back."""
        self.current_delivery = None
        self.is_available = True
        self.shift_status = "online"

    def record_delivery_outcome(self, completed):
        self.total_deliveries += 1
        if completed:
            self.completed_deliveries += 1
        else:
            self.cancelled_deliveries += 1
        self.completion_rate = round(self.completed_deliveries / self.total_deliveries, 4)

    def apply_rating(self, rating):
        previous = self.average_rating or 0
        self.average_rating = round((previous * self.total_ratings + rating) / (self.total_ratings + 1), 1)
        self.total_ratings += 1

    def public_snapshot(self):
        """Driver details copied onto the order for the customer app."""
        return {
            "id": self.id,
            "name": self.full_name,
            "photo": self.photo_url,
            "phone": self.phone,
            "vehicle_type": self.vehicle_type,
            "rating": self.average_rating,
        }

    def bank_snapshot(self):
        return {
            "bank_account_holder": self.bank_account_holder,
            "iban": self.iban,
            "bic": self.bic,
            "bank_name": self.bank_name,
        }

    def __str__(self):
        return f"Driver {self.full_name}"


class DriverShift(models.Model):
    """
    One continuous on-duty session. Frozen once `is_active` is False.
    """
    END_REASON_CHOICES = (
        ("manual", "Manual"),
        ("auto_timeout", "Auto Timeout"),
        ("system", "System"),
        ("admin", "Admin"),
    )

    # earnings-part key -> field
    EARNINGS_FIELDS = {
        "delivery_fee": "earnings_delivery_fees",
        "distance_bonus": "earnings_distance_bonuses",
        "wait_time_bonus": "earnings_wait_time_bonuses",
        "peak_hour_bonus": "earnings_peak_hour_bonuses",
        "tip": "earnings_tips",
        "incentive_bonus": "earnings_incentive_bonus",
    }

    MAX_LOCATION_SNAPSHOTS = 500
    COMPACTED_LOCATION_SNAPSHOTS = 300

    driver = models.ForeignKey(Driver, on_delete=models.CASCADE, related_name="shifts")

    started_at = models.DateTimeField(default=timezone.now)
    ended_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    end_reason = models.CharField(max_length=20, choices=END_REASON_CHOICES, blank=True)
    duration_minutes = models.PositiveIntegerField(default=0)

    current_break_started_at = models.DateTimeField(null=True, blank=True)

    start_latitude = models.FloatField(null=True, blank=True)
    start_longitude = models.FloatField(null=True, blank=True)
    end_latitude = models.FloatField(null=True, blank=True)
    end_longitude = models.FloatField(null=True, blank=True)

    total_deliveries = models.PositiveIntegerField(default=0)
    completed_deliveries = models.PositiveIntegerField(default=0)
    cancelled_deliveries = models.PositiveIntegerField(default=0)
    total_distance_km = models.FloatField(default=0)
    total_active_minutes = models.PositiveIntegerField(default=0)
    total_break_minutes = models.PositiveIntegerField(default=0)
    average_delivery_minutes = models.FloatField(default=0)

    earnings_delivery_fees = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    earnings_distance_bonuses = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    earnings_wait_time_bonuses = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    earnings_peak_hour_bonuses = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    earnings_tips = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    earnings_incentive_bonus = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    earnings_total = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    goal_deliveries = models.PositiveIntegerField(null=True, blank=True)
    goal_earnings = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    achieved_deliveries = models.PositiveIntegerField(default=0)
    achieved_earnings = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    notes = models.TextField(blank=True)
    admin_notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["driver"],
                condition=Q(is_active=True),
                name="one_active_shift_per_driver",
            ),
        ]
        indexes = [
            models.Index(fields=['driver', '-started_at']),
            models.Index(fields=['is_active', 'started_at']),
        ]

    @property
    def is_on_break(self):
        return self.current_break_started_at is not None

    @property
    def has_goals(self):
        return self.goal_deliveries is not None or self.goal_earnings is not None

    def _ensure_active(self):
        if not self.is_active:
            raise InvalidStateError("Shift has already ended", code="shift_ended")

    def start_break(self, reason="", at=None):
        self._ensure_active()
        if self.is_on_break:
            raise InvalidStateError("Already on break", code="already_on_break")

        at = at or timezone.now()
        shift_break = ShiftBreak.objects.create(shift=self, started_at=at, reason=reason or "")
        self.current_break_started_at = at
        self.save(update_fields=["current_break_started_at", "updated_at"])
        return shift_break

    def end_break(self, at=None):
        self._ensure_active()
        if not self.is_on_break:
            raise InvalidStateError("Not currently on break", code="not_on_break")

        at = at or timezone.now()
        shift_break = self.breaks.filter(ended_at__isnull=True).order_by("-started_at").first()
        if shift_break is not None:
            shift_break.close(at)

        self.current_break_started_at = None
        self.save(update_fields=["current_break_started_at", "updated_at"])
        return shift_break

    def end_shift(self, reason="manual", latitude=None, longitude=None, at=None):
        """
        Closes the shift and freezes duration, break/active time and earnings.
        An open break is closed at the same instant.
        """
        self._ensure_active()
        at = at or timezone.now()

        if self.is_on_break:
            self.end_break(at=at)

        self.ended_at = at
        self.is_active = False
        self.end_reason = reason
        if latitude is not None and longitude is not None:
            self.end_latitude = float(latitude)
            self.end_longitude = float(longitude)

        self.duration_minutes = round((at - self.started_at).total_seconds() / 60)
        self.total_break_minutes = sum(self.breaks.values_list("duration_minutes", flat=True))
        self.total_active_minutes = max(0, self.duration_minutes - self.total_break_minutes)
        self.recompute_earnings_total()
        self.save()

    def add_location_snapshot(self, latitude, longitude, at=None):
        self._ensure_active()
        snapshot = ShiftLocationSnapshot.objects.create(
            shift=self,
            latitude=float(latitude),
            longitude=float(longitude),
            recorded_at=at or timezone.now(),
        )

        if self.location_snapshots.count() > self.MAX_LOCATION_SNAPSHOTS:
            keep_ids = list(
                self.location_snapshots.order_by("-recorded_at", "-id")
                .values_list("id", flat=True)[:self.COMPACTED_LOCATION_SNAPSHOTS]
            )
            self.location_snapshots.exclude(id__in=keep_ids).delete()

        return snapshot

    def add_delivery(self, completed, distance_km=0, duration_minutes=0, earnings=None):
        """
        Folds one closed delivery into the shift stats and earnings.
        Caller holds the row lock.
        """
        self._ensure_active()

        self.total_deliveries += 1
        if completed:
            self.completed_deliveries += 1
            self.total_distance_km = round(self.total_distance_km + float(distance_km or 0), 2)
            n = self.completed_deliveries
            self.average_delivery_minutes = round(
                (self.average_delivery_minutes * (n - 1) + float(duration_minutes or 0)) / n, 2
            )
        else:
            self.cancelled_deliveries += 1

        for part, field in self.EARNINGS_FIELDS.items():
            amount = (earnings or {}).get(part)
            if amount:
                setattr(self, field, to_money(getattr(self, field)) + to_money(amount))

        self.recompute_earnings_total()

        if self.has_goals:
            self.achieved_deliveries = self.completed_deliveries
            self.achieved_earnings = self.earnings_total

        self.save()

    def recompute_earnings_total(self):
        self.earnings_total = money_sum(getattr(self, field) for field in self.EARNINGS_FIELDS.values())
        return self.earnings_total

    def current_duration_minutes(self, now=None):
        end = self.ended_at or now or timezone.now()
        return round((end - self.started_at).total_seconds() / 60)

    def current_active_minutes(self, now=None):
        """Live active time; an ongoing break counts as break time."""
        if not self.is_active:
            return self.total_active_minutes

        now = now or timezone.now()
        break_minutes = sum(self.breaks.filter(ended_at__isnull=False).values_list("duration_minutes", flat=True))
        if self.is_on_break:
            break_minutes += round((now - self.current_break_started_at).total_seconds() / 60)
        return max(0, self.current_duration_minutes(now) - break_minutes)

    def __str__(self):
        state = "active" if self.is_active else "ended"
        return f"Shift {self.id} ({self.driver_id}, {state})"


class ShiftBreak(models.Model):
    shift = models.ForeignKey(DriverShift, on_delete=models.CASCADE, related_name="breaks")
    started_at = models.DateTimeField(default=timezone.now)
    ended_at = models.DateTimeField(null=True, blank=True)
    duration_minutes = models.PositiveIntegerField(default=0)
    reason = models.CharField(max_length=100, blank=True)

    class Meta:
        ordering = ("started_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["shift"],
                condition=Q(ended_at__isnull=True),
                name="one_open_break_per_shift",
            ),
        ]

    def close(self, at):
        self.ended_at = at
        self.duration_minutes = round((at - self.started_at).total_seconds() / 60)
        self.save(update_fields=["ended_at", "duration_minutes"])


class ShiftLocationSnapshot(models.Model):
    shift = models.ForeignKey(DriverShift, on_delete=models.CASCADE, related_name="location_snapshots")
    latitude = models.FloatField()
    longitude = models.FloatField()
    recorded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=['shift', '-recorded_at']),
        ]

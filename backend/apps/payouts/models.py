# apps/payouts/models.py
import secrets
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.utils.exceptions import InvalidStateError
from apps.utils.money import to_money

User = settings.AUTH_USER_MODEL


def _money_field(**kwargs):
    return models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"), **kwargs)


class DriverPayout(models.Model):
    """
    One settlement batch for a driver. `net_amount` is derived on every save:
    gross - tax - processing fee - instant fee - deductions + adjustments.
    """
    TYPE_CHOICES = (
        ("weekly", "Weekly"),
        ("instant", "Instant"),
        ("adjustment", "Adjustment"),
        ("bonus", "Bonus"),
    )

    STATUS_CHOICES = (
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("cancelled", "Cancelled"),
    )

    METHOD_CHOICES = (
        ("bank_transfer", "Bank Transfer"),
        ("instant", "Instant"),
        ("manual", "Manual"),
    )

    NUMBER_PREFIXES = {
        "weekly": "PAY",
        "instant": "INS",
        "bonus": "BON",
        "adjustment": "ADJ",
    }

    BREAKDOWN_FIELDS = (
        "delivery_fees",
        "distance_bonuses",
        "wait_time_bonuses",
        "peak_hour_bonuses",
        "tips",
        "incentive_bonuses",
        "referral_bonuses",
        "adjustments",
        "deductions",
    )

    driver = models.ForeignKey("drivers.Driver", on_delete=models.PROTECT, related_name="payouts")
    payout_number = models.CharField(max_length=32, unique=True, editable=False)
    payout_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default="weekly")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")

    period_start = models.DateTimeField()
    period_end = models.DateTimeField()

    gross_amount = _money_field()
    net_amount = _money_field()
    currency = models.CharField(max_length=3, default="EUR")

    # Breakdown; adjustments may be negative
    delivery_fees = _money_field()
    distance_bonuses = _money_field()
    wait_time_bonuses = _money_field()
    peak_hour_bonuses = _money_field()
    tips = _money_field()
    incentive_bonuses = _money_field()
    referral_bonuses = _money_field()
    adjustments = _money_field()
    deductions = _money_field()

    delivery_count = models.PositiveIntegerField(default=0)

    payment_method = models.CharField(max_length=20, choices=METHOD_CHOICES, default="bank_transfer")
    bank_account_holder = models.CharField(max_length=150, blank=True)
    iban = models.CharField(max_length=34, blank=True)
    bic = models.CharField(max_length=11, blank=True)
    bank_name = models.CharField(max_length=100, blank=True)

    processed_at = models.DateTimeField(null=True, blank=True)
    processed_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    transaction_id = models.CharField(max_length=100, blank=True)
    transaction_reference = models.CharField(max_length=100, blank=True)
    failure_reason = models.TextField(blank=True)
    retry_count = models.PositiveIntegerField(default=0)

    tax_withheld = _money_field()
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    processing_fee = _money_field()
    instant_payout_fee = _money_field()

    notes = models.TextField(blank=True)
    admin_notes = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["driver", "period_start"],
                condition=Q(payout_type="weekly"),
                name="one_weekly_payout_per_period",
            ),
        ]
        indexes = [
            models.Index(fields=['driver', 'status']),
            models.Index(fields=['driver', '-period_start']),
            models.Index(fields=['status', '-created_at']),
            models.Index(fields=['payout_type', 'status']),
        ]

    @classmethod
    def generate_payout_number(cls, payout_type, now=None):
        now = timezone.localtime(now or timezone.now())
        prefix = cls.NUMBER_PREFIXES.get(payout_type, "PAY")
        return f"{prefix}-{now:%Y%m}-{secrets.token_hex(4).upper()}"

    def compute_net(self):
        return to_money(
            to_money(self.gross_amount)
            - to_money(self.tax_withheld)
            - to_money(self.processing_fee)
            - to_money(self.instant_payout_fee)
            - to_money(self.deductions)
            + to_money(self.adjustments)
        )

    def save(self, *args, **kwargs):
        if not self.payout_number:
            self.payout_number = self.generate_payout_number(self.payout_type, self.created_at)
        self.net_amount = self.compute_net()
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "net_amount" not in update_fields:
            kwargs["update_fields"] = list(update_fields) + ["net_amount"]
        super().save(*args, **kwargs)

    def set_bank_snapshot(self, driver):
        for field, value in driver.bank_snapshot().items():
            setattr(self, field, value or "")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def _require_status(self, allowed, action):
        if self.status not in allowed:
            raise InvalidStateError(f"Cannot {action} a {self.status} payout", code="invalid_payout_status")

    def mark_processing(self, processed_by=None):
        self._require_status({"pending"}, "process")
        self.status = "processing"
        if processed_by is not None:
            self.processed_by = processed_by
        self.save()

    def mark_completed(self, transaction_id, transaction_reference=""):
        self._require_status({"pending", "processing"}, "complete")
        self.status = "completed"
        self.processed_at = timezone.now()
        self.transaction_id = transaction_id or ""
        if transaction_reference:
            self.transaction_reference = transaction_reference
        self.save()

    def mark_failed(self, reason):
        self._require_status({"pending", "processing"}, "fail")
        self.status = "failed"
        self.failure_reason = reason or ""
        self.retry_count += 1
        self.save()

    def retry(self):
        self._require_status({"failed"}, "retry")
        self.status = "pending"
        self.failure_reason = ""
        self.save()

    def cancel(self, reason=""):
        self._require_status({"pending", "failed"}, "cancel")
        self.status = "cancelled"
        if reason:
            self.admin_notes = (self.admin_notes + "\n" if self.admin_notes else "") + f"Cancelled: {reason}"
        self.save()

    def add_adjustment(self, reason, amount, added_by=None, notes=""):
        """
        Logs an adjustment and folds it into the breakdown. Net changes,
        gross does not (adjustments are already a net term).
        """
        self._require_status({"pending"}, "adjust")
        amount = to_money(amount)
        adjustment = PayoutAdjustment.objects.create(
            payout=self,
            reason=reason,
            amount=amount,
            added_by=added_by,
            notes=notes or "",
        )
        self.adjustments = to_money(self.adjustments) + amount
        self.save()
        return adjustment

    def __str__(self):
        return f"{self.payout_number} ({self.status})"


class PayoutDelivery(models.Model):
    """Delivery included in a payout, frozen at payout creation."""
    payout = models.ForeignKey(DriverPayout, on_delete=models.CASCADE, related_name="items")
    delivery = models.ForeignKey("delivery.Delivery", on_delete=models.PROTECT, related_name="payout_items")
    delivery_number = models.CharField(max_length=32)
    completed_at = models.DateTimeField()
    earnings = _money_field()
    tip = _money_field()

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["payout", "delivery"], name="unique_delivery_per_payout"),
        ]


class PayoutAdjustment(models.Model):
    payout = models.ForeignKey(DriverPayout, on_delete=models.CASCADE, related_name="adjustment_log")
    reason = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    added_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    added_at = models.DateTimeField(default=timezone.now)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ("added_at", "id")

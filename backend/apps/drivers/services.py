# apps/drivers/services.py
import calendar
import logging
import re
from datetime import datetime, time, timedelta

from django.db import transaction, IntegrityError
from django.db.models import Sum, Avg, Count
from django.db.models.functions import TruncDate
from django.utils import timezone

from .models import Driver, DriverShift
from apps.delivery.state_machine import DRIVER_BUSY_STATUSES
from apps.utils.exceptions import (
    BusinessLogicException,
    InvalidStateError,
    NotFoundError,
)
from apps.utils.geo import is_valid_coordinate
from apps.utils.money import to_money

logger = logging.getLogger(__name__)

IBAN_RE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{11,30}$")
BIC_RE = re.compile(r"^[A-Z]{6}[A-Z0-9]{2}([A-Z0-9]{3})?$")


def local_midnight(now=None):
    now = timezone.localtime(now or timezone.now())
    return timezone.make_aware(datetime.combine(now.date(), time.min))


def months_ago(moment, months):
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class DriverService:

    @staticmethod
    def get_driver(driver_id, for_update=False):
        qs = Driver.objects.select_related("user")
        if for_update:
            qs = qs.select_for_update()
        driver = qs.filter(id=driver_id).first()
        if driver is None:
            raise NotFoundError("Driver not found", code="driver_not_found")
        return driver

    @staticmethod
    def has_active_delivery(driver):
        if driver.current_delivery_id:
            return True
        return driver.deliveries.filter(status__in=DRIVER_BUSY_STATUSES).exists()

    @staticmethod
    @transaction.atomic
    def update_bank_account(driver, holder, iban, bic="", bank_name=""):
        iban = re.sub(r"\s+", "", iban or "").upper()
        bic = re.sub(r"\s+", "", bic or "").upper()

        if not IBAN_RE.match(iban):
            raise BusinessLogicException("Invalid IBAN format", code="invalid_iban")
        if bic and not BIC_RE.match(bic):
            raise BusinessLogicException("Invalid BIC format", code="invalid_bic")
        if not (holder or "").strip():
            raise BusinessLogicException("Account holder is required", code="invalid_account_holder")

        driver = DriverService.get_driver(driver.id, for_update=True)
        driver.bank_account_holder = holder.strip()
        driver.iban = iban
        driver.bic = bic
        driver.bank_name = bank_name or ""
        # New details need re-verification by ops
        driver.bank_account_verified = False
        driver.save(update_fields=[
            "bank_account_holder", "iban", "bic", "bank_name", "bank_account_verified", "updated_at",
        ])
        logger.info(f"Bank account updated for driver {driver.id}")
        return driver


class ShiftService:
    """
    Shift lifecycle with its side effects on the driver's dispatch status.
    The driver row is locked first so two devices can't race a transition.
    """

    @staticmethod
    def get_active_shift(driver, for_update=False):
        qs = DriverShift.objects.filter(driver=driver, is_active=True)
        if for_update:
            qs = qs.select_for_update()
        return qs.first()

    @staticmethod
    def _require_active_shift(driver):
        shift = ShiftService.get_active_shift(driver, for_update=True)
        if shift is None:
            raise NotFoundError("No active shift found", code="no_active_shift")
        return shift

    @staticmethod
    @transaction.atomic
    def start_shift(driver, latitude=None, longitude=None, goal_deliveries=None, goal_earnings=None, notes=""):
        driver = DriverService.get_driver(driver.id, for_update=True)

        if driver.status != "verified":
            raise InvalidStateError("Driver must be verified to start a shift", code="driver_not_verified")

        if DriverShift.objects.filter(driver=driver, is_active=True).exists():
            raise InvalidStateError("A shift is already active", code="shift_already_active")

        has_location = latitude is not None and longitude is not None
        if has_location and not is_valid_coordinate(latitude, longitude):
            raise BusinessLogicException("Coordinates out of bounds", code="invalid_coordinates")

        try:
            # Savepoint so the unique-constraint race surfaces as a domain error
            with transaction.atomic():
                shift = DriverShift.objects.create(
                    driver=driver,
                    start_latitude=float(latitude) if has_location else None,
                    start_longitude=float(longitude) if has_location else None,
                    goal_deliveries=goal_deliveries,
                    goal_earnings=to_money(goal_earnings) if goal_earnings is not None else None,
                    notes=notes or "",
                )
        except IntegrityError:
            raise InvalidStateError("A shift is already active", code="shift_already_active")

        driver.shift_status = "online"
        driver.is_available = True
        update_fields = ["shift_status", "is_available", "updated_at"]
        if has_location:
            driver.set_location(latitude, longitude)
            update_fields += ["current_latitude", "current_longitude", "location_updated_at"]
        driver.save(update_fields=update_fields)

        logger.info(f"Driver {driver.id} started shift {shift.id}")
        return shift

    @staticmethod
    @transaction.atomic
    def start_break(driver, reason=""):
        driver = DriverService.get_driver(driver.id, for_update=True)
        shift = ShiftService._require_active_shift(driver)

        if DriverService.has_active_delivery(driver):
            raise InvalidStateError("Cannot take a break during an active delivery", code="active_delivery_restriction")

        try:
            with transaction.atomic():
                shift.start_break(reason=reason)
        except IntegrityError:
            raise InvalidStateError("Already on break", code="already_on_break")

        driver.shift_status = "on_break"
        driver.is_available = False
        driver.save(update_fields=["shift_status", "is_available", "updated_at"])
        return shift

    @staticmethod
    @transaction.atomic
    def end_break(driver):
        driver = DriverService.get_driver(driver.id, for_update=True)
        shift = ShiftService._require_active_shift(driver)

        shift.end_break()

        driver.shift_status = "online"
        driver.is_available = True
        driver.save(update_fields=["shift_status", "is_available", "updated_at"])
        return shift

    @staticmethod
    @transaction.atomic
    def end_shift(driver, reason="manual", latitude=None, longitude=None, notes=None):
        driver = DriverService.get_driver(driver.id, for_update=True)
        shift = ShiftService._require_active_shift(driver)

        if DriverService.has_active_delivery(driver):
            raise InvalidStateError("Cannot end shift with an active delivery", code="active_delivery_restriction")

        if notes:
            shift.notes = notes
        shift.end_shift(reason=reason, latitude=latitude, longitude=longitude)

        driver.shift_status = "offline"
        driver.is_available = False
        update_fields = ["shift_status", "is_available", "updated_at"]
        if latitude is not None and longitude is not None and is_valid_coordinate(latitude, longitude):
            driver.set_location(latitude, longitude)
            update_fields += ["current_latitude", "current_longitude", "location_updated_at"]
        driver.save(update_fields=update_fields)

        logger.info(
            f"Driver {driver.id} ended shift {shift.id} ({reason}): "
            f"{shift.duration_minutes} min, {shift.completed_deliveries} deliveries, {shift.earnings_total}"
        )
        return shift

    @staticmethod
    @transaction.atomic
    def force_end_shift(shift_id, admin_notes="", reason="admin"):
        """
        Ops termination. Does not check for an active delivery.
        """
        driver_id = DriverShift.objects.filter(id=shift_id).values_list("driver_id", flat=True).first()
        if driver_id is None:
            raise NotFoundError("Shift not found", code="shift_not_found")

        # Driver row before shift row, same order as completion and breaks
        driver = DriverService.get_driver(driver_id, for_update=True)
        shift = DriverShift.objects.select_for_update().get(id=shift_id)
        if admin_notes:
            shift.admin_notes = admin_notes
        shift.end_shift(reason=reason)

        driver.shift_status = "offline"
        driver.is_available = False
        driver.save(update_fields=["shift_status", "is_available", "updated_at"])

        logger.warning(f"Shift {shift.id} of driver {driver.id} force-ended ({reason})")
        return shift

    @staticmethod
    @transaction.atomic
    def update_location(driver, latitude, longitude):
        if not is_valid_coordinate(latitude, longitude):
            raise BusinessLogicException("Coordinates out of bounds", code="invalid_coordinates")

        now = timezone.now()
        Driver.objects.filter(id=driver.id).update(
            current_latitude=float(latitude),
            current_longitude=float(longitude),
            location_updated_at=now,
        )
        driver.set_location(latitude, longitude, at=now)

        shift = ShiftService.get_active_shift(driver, for_update=True)
        if shift is not None:
            shift.add_location_snapshot(latitude, longitude, at=now)
        return shift

    @staticmethod
    def record_delivery(driver, completed, distance_km=0, duration_minutes=0, earnings=None):
        """
        Folds a closed delivery into the driver's active shift, if any.
        Must run inside the caller's transaction.
        """
        shift = ShiftService.get_active_shift(driver, for_update=True)
        if shift is None:
            logger.warning(f"Driver {driver.id} closed a delivery without an active shift")
            return None
        shift.add_delivery(
            completed=completed,
            distance_km=distance_km,
            duration_minutes=duration_minutes,
            earnings=earnings,
        )
        return shift

    @staticmethod
    def get_current_shift(driver, now=None):
        shift = ShiftService.get_active_shift(driver)
        if shift is None:
            return None

        now = now or timezone.now()
        return {
            "shift": shift,
            "current_duration_minutes": shift.current_duration_minutes(now),
            "current_active_minutes": shift.current_active_minutes(now),
            "is_on_break": shift.is_on_break,
        }

    @staticmethod
    def get_shift_history(driver, start=None, end=None):
        qs = DriverShift.objects.filter(driver=driver)
        if start:
            qs = qs.filter(started_at__gte=start)
        if end:
            qs = qs.filter(started_at__lte=end)
        return qs.order_by("-started_at")

    @staticmethod
    def period_start(period, now=None):
        now = now or timezone.now()
        if period == "day":
            return local_midnight(now)
        if period == "month":
            return months_ago(now, 1)
        if period == "year":
            return months_ago(now, 12)
        return now - timedelta(days=7)

    @staticmethod
    def get_shift_stats(driver, period="week", now=None):
        """
        Summary over completed shifts in the period plus a per-day breakdown
        that also includes the running shift.
        """
        start = ShiftService.period_start(period, now)
        shifts = DriverShift.objects.filter(driver=driver, started_at__gte=start)

        summary = shifts.filter(is_active=False).aggregate(
            total_shifts=Count("id"),
            total_minutes=Sum("duration_minutes"),
            active_minutes=Sum("total_active_minutes"),
            break_minutes=Sum("total_break_minutes"),
            total_deliveries=Sum("completed_deliveries"),
            total_distance_km=Sum("total_distance_km"),
            total_earnings=Sum("earnings_total"),
            total_tips=Sum("earnings_tips"),
            avg_deliveries_per_shift=Avg("completed_deliveries"),
            avg_earnings_per_shift=Avg("earnings_total"),
            avg_delivery_minutes=Avg("average_delivery_minutes"),
        )

        daily = (
            shifts.annotate(day=TruncDate("started_at"))
            .values("day")
            .annotate(
                shifts=Count("id"),
                minutes=Sum("duration_minutes"),
                deliveries=Sum("completed_deliveries"),
                earnings=Sum("earnings_total"),
            )
            .order_by("day")
        )

        return {
            "period": period,
            "summary": {
                "total_shifts": summary["total_shifts"] or 0,
                "total_hours": round((summary["total_minutes"] or 0) / 60, 1),
                "total_active_hours": round((summary["active_minutes"] or 0) / 60, 1),
                "total_break_hours": round((summary["break_minutes"] or 0) / 60, 1),
                "total_deliveries": summary["total_deliveries"] or 0,
                "total_distance_km": round(summary["total_distance_km"] or 0, 2),
                "total_earnings": to_money(summary["total_earnings"]),
                "total_tips": to_money(summary["total_tips"]),
                "avg_deliveries_per_shift": round(summary["avg_deliveries_per_shift"] or 0, 1),
                "avg_earnings_per_shift": to_money(summary["avg_earnings_per_shift"]),
                "avg_delivery_minutes": round(summary["avg_delivery_minutes"] or 0, 1),
            },
            "daily": [
                {
                    "date": row["day"].isoformat() if row["day"] else None,
                    "shifts": row["shifts"],
                    "hours": round((row["minutes"] or 0) / 60, 1),
                    "deliveries": row["deliveries"] or 0,
                    "earnings": to_money(row["earnings"]),
                }
                for row in daily
            ],
        }

    @staticmethod
    def get_active_drivers_with_shifts(now=None):
        now = now or timezone.now()
        shifts = (
            DriverShift.objects.filter(is_active=True)
            .select_related("driver", "driver__user")
            .order_by("started_at")
        )
        return [
            {
                "driver_id": shift.driver_id,
                "name": shift.driver.full_name,
                "shift_status": shift.driver.shift_status,
                "is_available": shift.driver.is_available,
                "current_delivery_id": shift.driver.current_delivery_id,
                "latitude": shift.driver.current_latitude,
                "longitude": shift.driver.current_longitude,
                "shift_id": shift.id,
                "shift_started_at": shift.started_at,
                "current_duration_minutes": shift.current_duration_minutes(now),
                "completed_deliveries": shift.completed_deliveries,
                "earnings_total": shift.earnings_total,
            }
            for shift in shifts
        ]

    @staticmethod
    def auto_end_stale_shifts(max_hours, now=None):
        """
        Ends shifts left open longer than `max_hours` (forgotten clock-outs).
        Drivers still carrying a delivery are skipped and picked up next run.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(hours=max_hours)
        stale_ids = list(
            DriverShift.objects.filter(is_active=True, started_at__lt=cutoff).values_list("id", "driver_id")
        )

        ended = 0
        for shift_id, driver_id in stale_ids:
            try:
                with transaction.atomic():
                    driver = DriverService.get_driver(driver_id, for_update=True)
                    if DriverService.has_active_delivery(driver):
                        logger.info(f"Skipping stale shift {shift_id}: driver {driver_id} is on a delivery")
                        continue
                    ShiftService.force_end_shift(
                        shift_id,
                        admin_notes=f"Auto-ended after {max_hours}h",
                        reason="auto_timeout",
                    )
                    ended += 1
            except BusinessLogicException as exc:
                logger.warning(f"Could not auto-end shift {shift_id}: {exc.message}")

        return ended

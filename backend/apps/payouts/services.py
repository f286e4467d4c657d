# apps/payouts/services.py
import logging
from datetime import datetime, time, timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction, IntegrityError, DatabaseError
from django.db.models import F, Sum, Count
from django.utils import timezone

from .models import DriverPayout, PayoutDelivery
from apps.delivery import state_machine as sm
from apps.delivery.models import Delivery
from apps.drivers.models import Driver, DriverShift
from apps.drivers.services import DriverService, local_midnight, months_ago
from apps.notifications.services import NotificationService
from apps.utils.exceptions import (
    BusinessLogicException,
    InvalidStateError,
    NotFoundError,
)
from apps.utils.money import ZERO, to_money, money_sum

logger = logging.getLogger(__name__)

DISTANCE_BONUS_THRESHOLD_KM = Decimal("3")
DISTANCE_BONUS_PER_KM = Decimal("0.50")
WAIT_THRESHOLD_MINUTES = Decimal("10")
WAIT_BONUS_PER_MINUTE = Decimal("0.15")
PEAK_BONUS_RATE = Decimal("0.20")
# [start, end) local hours
PEAK_WINDOWS = ((11, 14), (18, 22))

EARNINGS_PERIODS = ("today", "week", "month", "all")


def _local_day_start(day):
    return timezone.make_aware(datetime.combine(day, time.min))


def last_completed_week(now=None):
    """
    (start, end) of the most recent Monday 00:00 to Monday 00:00 window that
    has fully elapsed, in local time. `end` is exclusive.
    """
    today = timezone.localtime(now or timezone.now()).date()
    this_monday = today - timedelta(days=today.weekday())
    return _local_day_start(this_monday - timedelta(days=7)), _local_day_start(this_monday)


class EarningsService:

    @staticmethod
    def is_peak_hour(when=None):
        when = when or timezone.now()
        if timezone.is_aware(when):
            when = timezone.localtime(when)
        return any(start <= when.hour < end for start, end in PEAK_WINDOWS)

    @staticmethod
    def calculate_delivery_earnings(base_fee, distance_km=0, wait_minutes=0, tip=0, when=None):
        """
        Per-delivery earnings. Each bonus is rounded to cents before summing
        so total always equals the sum of the stored components.
        """
        base_fee = to_money(base_fee)
        distance = Decimal(str(distance_km or 0))
        wait = Decimal(str(wait_minutes or 0))

        distance_bonus = to_money(max(ZERO, distance - DISTANCE_BONUS_THRESHOLD_KM) * DISTANCE_BONUS_PER_KM)
        wait_time_bonus = to_money(max(ZERO, wait - WAIT_THRESHOLD_MINUTES) * WAIT_BONUS_PER_MINUTE)

        peak_hour_bonus = ZERO
        if EarningsService.is_peak_hour(when):
            peak_hour_bonus = to_money((base_fee + distance_bonus) * PEAK_BONUS_RATE)

        tip = to_money(tip)
        breakdown = {
            "base_fee": base_fee,
            "distance_bonus": distance_bonus,
            "wait_time_bonus": wait_time_bonus,
            "peak_hour_bonus": peak_hour_bonus,
            "tip": tip,
        }
        breakdown["total"] = money_sum(breakdown.values())
        return breakdown

    @staticmethod
    def period_start(period, now=None):
        now = now or timezone.now()
        if period == "today":
            return local_midnight(now)
        if period == "week":
            return now - timedelta(days=7)
        if period == "month":
            return months_ago(now, 1)
        if period == "all":
            return None
        raise BusinessLogicException(f"Unknown period '{period}'", code="invalid_period")

    @staticmethod
    def _delivery_components(qs):
        totals = qs.aggregate(
            base_fees=Sum("base_fee"),
            distance_bonuses=Sum("distance_bonus"),
            wait_time_bonuses=Sum("wait_time_bonus"),
            peak_hour_bonuses=Sum("peak_hour_bonus"),
            tips=Sum("tip"),
            adjustments=Sum("adjustments"),
            deliveries=Count("id"),
        )
        deliveries = totals.pop("deliveries") or 0
        return {key: to_money(value) for key, value in totals.items()}, deliveries

    @staticmethod
    def get_driver_earnings(driver, period="week", now=None):
        now = now or timezone.now()
        start = EarningsService.period_start(period, now)

        deliveries = Delivery.objects.filter(
            driver=driver,
            status=sm.DELIVERED,
            actual_delivery_time__lte=now,
        )
        payouts = DriverPayout.objects.filter(driver=driver, created_at__lte=now).exclude(status="cancelled")
        if start is not None:
            deliveries = deliveries.filter(actual_delivery_time__gte=start)
            payouts = payouts.filter(created_at__gte=start)

        components, delivery_count = EarningsService._delivery_components(deliveries)
        payout_totals = payouts.aggregate(
            incentive_bonuses=Sum("incentive_bonuses"),
            referral_bonuses=Sum("referral_bonuses"),
            adjustments=Sum("adjustments"),
            deductions=Sum("deductions"),
        )

        breakdown = {
            "base_fees": components["base_fees"],
            "distance_bonuses": components["distance_bonuses"],
            "wait_time_bonuses": components["wait_time_bonuses"],
            "peak_hour_bonuses": components["peak_hour_bonuses"],
            "tips": components["tips"],
            "incentive_bonuses": to_money(payout_totals["incentive_bonuses"]),
            "referral_bonuses": to_money(payout_totals["referral_bonuses"]),
            "adjustments": to_money(components["adjustments"] + to_money(payout_totals["adjustments"])),
        }
        deductions = to_money(payout_totals["deductions"])
        gross = money_sum(breakdown.values())

        return {
            "period": period,
            "period_start": start,
            "period_end": now,
            "deliveries": delivery_count,
            "breakdown": {**breakdown, "deductions": deductions},
            "gross": gross,
            "net": to_money(gross - deductions),
        }

    @staticmethod
    def get_daily_earnings(driver, day=None):
        day = day or timezone.localdate()
        start = _local_day_start(day)
        end = start + timedelta(days=1)

        deliveries = Delivery.objects.filter(
            driver=driver,
            status=sm.DELIVERED,
            actual_delivery_time__gte=start,
            actual_delivery_time__lt=end,
        )
        totals = deliveries.aggregate(earnings=Sum("earnings_total"), tips=Sum("tip"), count=Count("id"))
        minutes = DriverShift.objects.filter(
            driver=driver,
            started_at__gte=start,
            started_at__lt=end,
        ).aggregate(total=Sum("duration_minutes"))["total"] or 0

        return {
            "date": day,
            "deliveries": totals["count"] or 0,
            "earnings": to_money(totals["earnings"]),
            "tips": to_money(totals["tips"]),
            "hours_worked": round(minutes / 60, 1),
        }

    @staticmethod
    def get_weekly_earnings(driver, week_of=None):
        """Monday to Sunday containing `week_of`, with one entry per day."""
        week_of = week_of or timezone.localdate()
        monday = week_of - timedelta(days=week_of.weekday())
        daily = [EarningsService.get_daily_earnings(driver, monday + timedelta(days=i)) for i in range(7)]

        return {
            "week_start": monday,
            "week_end": monday + timedelta(days=6),
            "deliveries": sum(day["deliveries"] for day in daily),
            "earnings": money_sum(day["earnings"] for day in daily),
            "tips": money_sum(day["tips"] for day in daily),
            "hours_worked": round(sum(day["hours_worked"] for day in daily), 1),
            "daily": daily,
        }

    @staticmethod
    def get_payout_summary(driver):
        driver = DriverService.get_driver(driver.id)
        pending = DriverPayout.objects.filter(driver=driver, status="pending").aggregate(total=Sum("net_amount"))
        last = (
            DriverPayout.objects.filter(driver=driver, status="completed")
            .order_by("-processed_at", "-id")
            .first()
        )
        return {
            "current_balance": to_money(driver.current_balance),
            "pending_payout": to_money(pending["total"]),
            "last_payout_date": last.processed_at if last else None,
            "last_payout_amount": last.net_amount if last else None,
            "lifetime_earnings": to_money(driver.lifetime_earnings),
            "currency": getattr(settings, "PAYOUT_CURRENCY", "EUR"),
        }

    @staticmethod
    def create_weekly_payout(driver, now=None):
        """
        Pending payout for the last completed week, or None when one already
        exists or nothing was delivered. Safe to call repeatedly.
        """
        start, end = last_completed_week(now)

        with transaction.atomic():
            driver = DriverService.get_driver(driver.id, for_update=True)

            if DriverPayout.objects.filter(driver=driver, payout_type="weekly", period_start=start).exists():
                logger.info(f"Weekly payout for driver {driver.id} from {start:%Y-%m-%d} already exists")
                return None

            deliveries = list(
                Delivery.objects.filter(
                    driver=driver,
                    status=sm.DELIVERED,
                    actual_delivery_time__gte=start,
                    actual_delivery_time__lt=end,
                ).order_by("actual_delivery_time")
            )
            if not deliveries:
                return None

            payout = DriverPayout(
                driver=driver,
                payout_type="weekly",
                payment_method="bank_transfer",
                period_start=start,
                period_end=end,
                delivery_count=len(deliveries),
                currency=getattr(settings, "PAYOUT_CURRENCY", "EUR"),
                delivery_fees=money_sum(d.base_fee for d in deliveries),
                distance_bonuses=money_sum(d.distance_bonus for d in deliveries),
                wait_time_bonuses=money_sum(d.wait_time_bonus for d in deliveries),
                peak_hour_bonuses=money_sum(d.peak_hour_bonus for d in deliveries),
                tips=money_sum(d.tip for d in deliveries),
                adjustments=money_sum(d.adjustments for d in deliveries),
            )
            payout.gross_amount = money_sum([
                payout.delivery_fees,
                payout.distance_bonuses,
                payout.wait_time_bonuses,
                payout.peak_hour_bonuses,
                payout.tips,
            ])
            payout.set_bank_snapshot(driver)

            try:
                with transaction.atomic():
                    payout.save()
            except IntegrityError:
                # Another worker created it between the check and the insert
                logger.info(f"Weekly payout for driver {driver.id} lost the race, skipping")
                return None

            PayoutDelivery.objects.bulk_create([
                PayoutDelivery(
                    payout=payout,
                    delivery=d,
                    delivery_number=d.delivery_number,
                    completed_at=d.actual_delivery_time,
                    earnings=d.earnings_total,
                    tip=d.tip,
                )
                for d in deliveries
            ])

            NotificationService.emit(
                driver.user,
                "payout_created",
                "Weekly payout ready",
                f"{payout.net_amount} {payout.currency} for {len(deliveries)} deliveries",
                data={"payout_id": payout.id, "payout_number": payout.payout_number},
            )

        logger.info(f"Created weekly payout {payout.payout_number} for driver {driver.id}: {payout.net_amount}")
        return payout

    @staticmethod
    @transaction.atomic
    def add_tip(delivery_id, amount):
        amount = to_money(amount)
        if amount <= ZERO:
            raise BusinessLogicException("Tip must be positive", code="invalid_tip")

        delivery = Delivery.objects.select_for_update().filter(id=delivery_id).first()
        if delivery is None:
            raise NotFoundError("Delivery not found", code="delivery_not_found")
        if delivery.status != sm.DELIVERED:
            raise InvalidStateError("Tips can only be added to delivered orders", code="tip_not_allowed")

        Delivery.objects.filter(id=delivery.id).update(
            tip=F("tip") + amount,
            earnings_total=F("earnings_total") + amount,
            updated_at=timezone.now(),
        )
        if delivery.driver_id:
            Driver.objects.filter(id=delivery.driver_id).update(
                current_balance=F("current_balance") + amount,
                lifetime_earnings=F("lifetime_earnings") + amount,
            )

        delivery.refresh_from_db()
        if delivery.driver_id:
            NotificationService.emit(
                delivery.driver.user,
                "tip_received",
                "You received a tip",
                f"{amount} {delivery.currency} on {delivery.delivery_number}",
                data={"delivery_id": delivery.id, "amount": amount},
            )
        logger.info(f"Tip {amount} added to delivery {delivery.delivery_number}")
        return delivery

    @staticmethod
    def get_earnings_leaderboard(period="week", limit=10, now=None):
        if period not in ("week", "month"):
            raise BusinessLogicException("Leaderboard period must be week or month", code="invalid_period")
        start = EarningsService.period_start(period, now)

        rows = list(
            Delivery.objects.filter(
                status=sm.DELIVERED,
                driver__isnull=False,
                actual_delivery_time__gte=start,
            )
            .values("driver_id")
            .annotate(earnings=Sum("earnings_total"), deliveries=Count("id"))
            .order_by("-earnings", "driver_id")[:limit]
        )
        drivers = Driver.objects.select_related("user").in_bulk([row["driver_id"] for row in rows])

        return [
            {
                "rank": rank,
                "driver_id": row["driver_id"],
                "name": drivers[row["driver_id"]].full_name if row["driver_id"] in drivers else "",
                "earnings": to_money(row["earnings"]),
                "deliveries": row["deliveries"],
            }
            for rank, row in enumerate(rows, start=1)
        ]


class PayoutService:
    """
    Payout lifecycle. Balance side effects happen in the same transaction
    as the status change.
    """

    @staticmethod
    def get_payout(payout_id, for_update=False):
        qs = DriverPayout.objects.select_related("driver", "driver__user")
        if for_update:
            qs = qs.select_for_update(of=("self",))
        payout = qs.filter(id=payout_id).first()
        if payout is None:
            raise NotFoundError("Payout not found", code="payout_not_found")
        return payout

    @staticmethod
    @transaction.atomic
    def request_instant_payout(driver, amount):
        amount = to_money(amount)
        minimum = to_money(getattr(settings, "PAYOUT_INSTANT_MINIMUM", "10.00"))
        fee = to_money(getattr(settings, "PAYOUT_INSTANT_FEE", "0.99"))

        driver = DriverService.get_driver(driver.id, for_update=True)
        if not driver.iban:
            raise BusinessLogicException("Add a bank account before requesting a payout", code="bank_account_required")
        if amount < minimum:
            raise BusinessLogicException(f"Minimum instant payout is {minimum}", code="below_minimum")
        if amount > to_money(driver.current_balance):
            raise BusinessLogicException("Amount exceeds available balance", code="insufficient_balance")

        now = timezone.now()
        payout = DriverPayout(
            driver=driver,
            payout_type="instant",
            payment_method="instant",
            period_start=now,
            period_end=now,
            gross_amount=amount,
            instant_payout_fee=fee,
            currency=getattr(settings, "PAYOUT_CURRENCY", "EUR"),
            created_at=now,
        )
        payout.set_bank_snapshot(driver)
        payout.save()

        Driver.objects.filter(id=driver.id).update(current_balance=F("current_balance") - amount)
        logger.info(f"Instant payout {payout.payout_number} requested by driver {driver.id}: {amount}")
        return payout

    @staticmethod
    @transaction.atomic
    def mark_processing(payout_id, processed_by=None):
        payout = PayoutService.get_payout(payout_id, for_update=True)
        payout.mark_processing(processed_by=processed_by)
        return payout

    @staticmethod
    @transaction.atomic
    def mark_completed(payout_id, transaction_id, transaction_reference="", processed_by=None):
        payout = PayoutService.get_payout(payout_id, for_update=True)
        if processed_by is not None:
            payout.processed_by = processed_by
        payout.mark_completed(transaction_id, transaction_reference)

        # Instant payouts were debited when requested
        if payout.payout_type != "instant":
            driver = DriverService.get_driver(payout.driver_id, for_update=True)
            driver.current_balance = max(ZERO, to_money(driver.current_balance) - payout.net_amount)
            driver.save(update_fields=["current_balance", "updated_at"])

        NotificationService.emit(
            payout.driver.user,
            "payout_completed",
            "Payout sent",
            f"{payout.net_amount} {payout.currency} is on its way",
            data={"payout_id": payout.id, "payout_number": payout.payout_number},
        )
        logger.info(f"Payout {payout.payout_number} completed ({transaction_id})")
        return payout

    @staticmethod
    @transaction.atomic
    def mark_failed(payout_id, reason):
        payout = PayoutService.get_payout(payout_id, for_update=True)
        payout.mark_failed(reason)

        if payout.payout_type == "instant":
            Driver.objects.filter(id=payout.driver_id).update(
                current_balance=F("current_balance") + payout.gross_amount
            )

        NotificationService.emit(
            payout.driver.user,
            "payout_failed",
            "Payout failed",
            reason or "",
            data={"payout_id": payout.id, "payout_number": payout.payout_number},
        )
        logger.warning(f"Payout {payout.payout_number} failed: {reason}")
        return payout

    @staticmethod
    @transaction.atomic
    def retry(payout_id):
        payout = PayoutService.get_payout(payout_id, for_update=True)

        if payout.payout_type == "instant" and payout.status == "failed":
            # The failure refunded the balance; take it again
            driver = DriverService.get_driver(payout.driver_id, for_update=True)
            if to_money(driver.current_balance) < payout.gross_amount:
                raise BusinessLogicException("Balance no longer covers this payout", code="insufficient_balance")
            Driver.objects.filter(id=driver.id).update(current_balance=F("current_balance") - payout.gross_amount)

        payout.retry()
        return payout

    @staticmethod
    @transaction.atomic
    def cancel(payout_id, reason=""):
        payout = PayoutService.get_payout(payout_id, for_update=True)
        was_pending = payout.status == "pending"
        payout.cancel(reason)

        # A failed instant payout was already refunded
        if payout.payout_type == "instant" and was_pending:
            Driver.objects.filter(id=payout.driver_id).update(
                current_balance=F("current_balance") + payout.gross_amount
            )
        logger.info(f"Payout {payout.payout_number} cancelled")
        return payout

    @staticmethod
    @transaction.atomic
    def add_adjustment(payout_id, reason, amount, added_by=None, notes=""):
        if not (reason or "").strip():
            raise BusinessLogicException("Adjustment reason is required", code="reason_required")
        payout = PayoutService.get_payout(payout_id, for_update=True)
        adjustment = payout.add_adjustment(reason, amount, added_by=added_by, notes=notes)
        logger.info(f"Adjustment {adjustment.amount} on payout {payout.payout_number}: {reason}")
        return payout

    @staticmethod
    def update_bank_account(driver, holder, iban, bic="", bank_name=""):
        return DriverService.update_bank_account(driver, holder, iban, bic=bic, bank_name=bank_name)

    @staticmethod
    def drivers_due_weekly_payout(now=None):
        start, end = last_completed_week(now)
        return list(
            Delivery.objects.filter(
                status=sm.DELIVERED,
                driver__isnull=False,
                actual_delivery_time__gte=start,
                actual_delivery_time__lt=end,
            )
            .values_list("driver_id", flat=True)
            .distinct()
            .order_by("driver_id")
        )

    @staticmethod
    def generate_weekly_payouts(now=None):
        """
        Creates weekly payouts for every driver with deliveries last week.
        One driver failing does not stop the batch.
        """
        summary = {"created": [], "skipped": 0, "failed": []}

        for driver_id in PayoutService.drivers_due_weekly_payout(now):
            try:
                driver = DriverService.get_driver(driver_id)
                payout = EarningsService.create_weekly_payout(driver, now=now)
            except (BusinessLogicException, DatabaseError) as exc:
                message = getattr(exc, "message", str(exc))
                logger.exception(f"Weekly payout failed for driver {driver_id}")
                summary["failed"].append({"driver_id": driver_id, "error": message})
                continue

            if payout is None:
                summary["skipped"] += 1
            else:
                summary["created"].append(payout.payout_number)

        logger.info(
            f"Weekly payouts: {len(summary['created'])} created, "
            f"{summary['skipped']} skipped, {len(summary['failed'])} failed"
        )
        return summary

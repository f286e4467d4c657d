# apps/payouts/tests.py
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from apps.delivery import state_machine as sm
from apps.delivery.models import Delivery
from apps.drivers.models import Driver
from apps.orders.models import Order
from apps.payouts.models import DriverPayout
from apps.payouts.services import EarningsService, PayoutService, last_completed_week
from apps.restaurants.models import Restaurant
from apps.utils.exceptions import BusinessLogicException, InvalidStateError

User = get_user_model()

# Wednesday; the last completed week is Mon 12 Oct 00:00 to Mon 19 Oct 00:00
NOW = timezone.make_aware(datetime(2026, 10, 21, 10, 0))


def at(day, hour=12):
    return timezone.make_aware(datetime(2026, 10, day, hour, 0))


class PayoutFixtureMixin:

    def make_fixtures(self):
        self.restaurant = Restaurant.objects.create(name="Chez Test", slug="chez-test", latitude=0, longitude=0)
        self.customer = User.objects.create_user(username="customer", password="pass")
        self.driver = self.make_driver("driver_a")

    def make_driver(self, username, **extra):
        user = User.objects.create_user(username=username, password="pass", first_name=username.title())
        defaults = {
            "status": "verified",
            "bank_account_holder": "Jean Test",
            "iban": "FR7630006000011234567890189",
            "bic": "AGRIFRPP",
        }
        defaults.update(extra)
        return Driver.objects.create(user=user, **defaults)

    def make_delivery(self, driver=None, delivered_at=None, status=sm.DELIVERED, **earnings):
        order = Order.objects.create(
            customer=self.customer, restaurant=self.restaurant, fulfillment_type="delivery"
        )
        fields = {
            "base_fee": Decimal("3.00"),
            "distance_bonus": Decimal("0.00"),
            "wait_time_bonus": Decimal("0.00"),
            "peak_hour_bonus": Decimal("0.00"),
            "tip": Decimal("0.00"),
        }
        fields.update(earnings)
        delivery = Delivery(
            order=order,
            restaurant=self.restaurant,
            driver=driver or self.driver,
            status=status,
            actual_delivery_time=delivered_at if status == sm.DELIVERED else None,
            **fields,
        )
        delivery.recompute_earnings_total()
        delivery.save()
        return delivery


class EarningsCalculationTestCase(TestCase):
    def test_peak_delivery_breakdown(self):
        earnings = EarningsService.calculate_delivery_earnings(
            base_fee=3, distance_km=5, wait_minutes=15, tip=2, when=at(14, 13)
        )
        self.assertEqual(earnings["distance_bonus"], Decimal("1.00"))
        self.assertEqual(earnings["wait_time_bonus"], Decimal("0.75"))
        self.assertEqual(earnings["peak_hour_bonus"], Decimal("0.80"))
        self.assertEqual(earnings["total"], Decimal("7.55"))

    def test_off_peak_short_delivery_is_base_fee(self):
        earnings = EarningsService.calculate_delivery_earnings(
            base_fee=3, distance_km=2.5, wait_minutes=10, when=at(14, 16)
        )
        self.assertEqual(earnings["distance_bonus"], Decimal("0.00"))
        self.assertEqual(earnings["wait_time_bonus"], Decimal("0.00"))
        self.assertEqual(earnings["peak_hour_bonus"], Decimal("0.00"))
        self.assertEqual(earnings["total"], Decimal("3.00"))

    def test_total_is_sum_of_components(self):
        earnings = EarningsService.calculate_delivery_earnings(
            base_fee="2.99", distance_km=7.333, wait_minutes=13, tip="1.10", when=at(14, 19)
        )
        parts = [earnings[key] for key in ("base_fee", "distance_bonus", "wait_time_bonus", "peak_hour_bonus", "tip")]
        self.assertEqual(earnings["total"], sum(parts))

    def test_peak_windows_are_half_open(self):
        self.assertTrue(EarningsService.is_peak_hour(at(14, 11)))
        self.assertFalse(EarningsService.is_peak_hour(at(14, 14)))
        self.assertTrue(EarningsService.is_peak_hour(at(14, 21)))
        self.assertFalse(EarningsService.is_peak_hour(at(14, 22)))

    def test_last_completed_week(self):
        start, end = last_completed_week(NOW)
        self.assertEqual(start, at(12, 0))
        self.assertEqual(end, at(19, 0))

    def test_unknown_period(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            EarningsService.period_start("fortnight")
        self.assertEqual(ctx.exception.code, "invalid_period")


class EarningsReportTestCase(PayoutFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.make_delivery(delivered_at=at(20, 12), distance_bonus=Decimal("1.00"), tip=Decimal("2.00"))
        self.make_delivery(delivered_at=at(21, 9))
        self.make_delivery(delivered_at=None, status=sm.CANCELLED)

    def test_driver_earnings_breakdown(self):
        report = EarningsService.get_driver_earnings(self.driver, period="week", now=NOW)

        self.assertEqual(report["deliveries"], 2)
        self.assertEqual(report["breakdown"]["base_fees"], Decimal("6.00"))
        self.assertEqual(report["breakdown"]["distance_bonuses"], Decimal("1.00"))
        self.assertEqual(report["breakdown"]["tips"], Decimal("2.00"))
        self.assertEqual(report["gross"], Decimal("9.00"))
        self.assertEqual(report["net"], Decimal("9.00"))

    def test_cancelled_payouts_do_not_count(self):
        DriverPayout.objects.create(
            driver=self.driver, payout_type="bonus", period_start=NOW, period_end=NOW,
            incentive_bonuses=Decimal("5.00"), status="cancelled", created_at=at(21, 8),
        )
        report = EarningsService.get_driver_earnings(self.driver, period="week", now=NOW)
        self.assertEqual(report["breakdown"]["incentive_bonuses"], Decimal("0.00"))

    def test_daily_and_weekly_rollups(self):
        daily = EarningsService.get_daily_earnings(self.driver, at(20).date())
        self.assertEqual(daily["deliveries"], 1)
        self.assertEqual(daily["earnings"], Decimal("6.00"))
        self.assertEqual(daily["tips"], Decimal("2.00"))

        weekly = EarningsService.get_weekly_earnings(self.driver, at(21).date())
        self.assertEqual(weekly["week_start"], at(19).date())
        self.assertEqual(len(weekly["daily"]), 7)
        self.assertEqual(weekly["deliveries"], 2)
        self.assertEqual(weekly["earnings"], Decimal("9.00"))

    def test_leaderboard_orders_by_earnings(self):
        rival = self.make_driver("driver_b")
        self.make_delivery(driver=rival, delivered_at=at(21, 8), base_fee=Decimal("12.00"))

        board = EarningsService.get_earnings_leaderboard(period="week", now=NOW)

        self.assertEqual([row["driver_id"] for row in board], [rival.id, self.driver.id])
        self.assertEqual(board[0]["rank"], 1)
        self.assertEqual(board[0]["earnings"], Decimal("12.00"))


class WeeklyPayoutTestCase(PayoutFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.make_delivery(delivered_at=at(14, 12), peak_hour_bonus=Decimal("0.60"))
        self.make_delivery(delivered_at=at(16, 19), tip=Decimal("1.50"))
        # Outside the window
        self.make_delivery(delivered_at=at(19, 9))

    def test_weekly_payout_covers_last_week(self):
        payout = EarningsService.create_weekly_payout(self.driver, now=NOW)

        self.assertEqual(payout.status, "pending")
        self.assertEqual(payout.delivery_count, 2)
        self.assertEqual(payout.period_start, at(12, 0))
        self.assertEqual(payout.period_end, at(19, 0))
        self.assertEqual(payout.gross_amount, Decimal("8.10"))
        self.assertEqual(payout.net_amount, Decimal("8.10"))
        self.assertEqual(payout.items.count(), 2)
        self.assertEqual(payout.iban, self.driver.iban)
        self.assertTrue(payout.payout_number.startswith("PAY-"))

    def test_weekly_payout_is_idempotent(self):
        first = EarningsService.create_weekly_payout(self.driver, now=NOW)
        second = EarningsService.create_weekly_payout(self.driver, now=NOW)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(DriverPayout.objects.filter(driver=self.driver, payout_type="weekly").count(), 1)

    def test_no_deliveries_no_payout(self):
        idle = self.make_driver("driver_idle")
        self.assertIsNone(EarningsService.create_weekly_payout(idle, now=NOW))

    def test_generate_weekly_payouts_summary(self):
        other = self.make_driver("driver_b")
        self.make_delivery(driver=other, delivered_at=at(15, 20))

        summary = PayoutService.generate_weekly_payouts(now=NOW)
        self.assertEqual(len(summary["created"]), 2)
        self.assertEqual(summary["failed"], [])

        rerun = PayoutService.generate_weekly_payouts(now=NOW)
        self.assertEqual(rerun["created"], [])
        self.assertEqual(rerun["skipped"], 2)

    def test_adjustment_changes_net_only(self):
        payout = EarningsService.create_weekly_payout(self.driver, now=NOW)
        payout = PayoutService.add_adjustment(payout.id, "Damaged bag", Decimal("-2.00"))

        self.assertEqual(payout.gross_amount, Decimal("8.10"))
        self.assertEqual(payout.net_amount, Decimal("6.10"))
        self.assertEqual(payout.adjustment_log.count(), 1)

        with self.assertRaises(BusinessLogicException) as ctx:
            PayoutService.add_adjustment(payout.id, "  ", Decimal("1.00"))
        self.assertEqual(ctx.exception.code, "reason_required")

    def test_completing_weekly_payout_debits_balance(self):
        Driver.objects.filter(id=self.driver.id).update(current_balance=Decimal("20.00"))
        payout = EarningsService.create_weekly_payout(self.driver, now=NOW)

        PayoutService.mark_processing(payout.id)
        payout = PayoutService.mark_completed(payout.id, "TX-1")

        self.assertEqual(payout.status, "completed")
        self.assertIsNotNone(payout.processed_at)
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.current_balance, Decimal("11.90"))

    def test_completed_payout_cannot_be_cancelled(self):
        payout = EarningsService.create_weekly_payout(self.driver, now=NOW)
        PayoutService.mark_completed(payout.id, "TX-1")

        with self.assertRaises(InvalidStateError) as ctx:
            PayoutService.cancel(payout.id)
        self.assertEqual(ctx.exception.code, "invalid_payout_status")


class TipTestCase(PayoutFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()

    def test_tip_credits_driver(self):
        delivery = self.make_delivery(delivered_at=at(20))

        delivery = EarningsService.add_tip(delivery.id, "2.50")

        self.assertEqual(delivery.tip, Decimal("2.50"))
        self.assertEqual(delivery.earnings_total, Decimal("5.50"))
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.current_balance, Decimal("2.50"))
        self.assertEqual(self.driver.lifetime_earnings, Decimal("2.50"))

    def test_tip_before_delivery_rejected(self):
        delivery = self.make_delivery(status=sm.IN_TRANSIT)
        with self.assertRaises(InvalidStateError) as ctx:
            EarningsService.add_tip(delivery.id, "2.00")
        self.assertEqual(ctx.exception.code, "tip_not_allowed")

    def test_tip_must_be_positive(self):
        delivery = self.make_delivery(delivered_at=at(20))
        with self.assertRaises(BusinessLogicException) as ctx:
            EarningsService.add_tip(delivery.id, "0")
        self.assertEqual(ctx.exception.code, "invalid_tip")


@patch("apps.payouts.services.NotificationService.emit")
class InstantPayoutTestCase(PayoutFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        Driver.objects.filter(id=self.driver.id).update(current_balance=Decimal("50.00"))
        self.driver.refresh_from_db()

    def balance(self):
        self.driver.refresh_from_db()
        return self.driver.current_balance

    def test_instant_payout_debits_at_request(self, _emit):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")

        self.assertEqual(payout.payout_type, "instant")
        self.assertEqual(payout.gross_amount, Decimal("20.00"))
        self.assertEqual(payout.instant_payout_fee, Decimal("0.99"))
        self.assertEqual(payout.net_amount, Decimal("19.01"))
        self.assertEqual(self.balance(), Decimal("30.00"))

        PayoutService.mark_completed(payout.id, "TX-2")
        self.assertEqual(self.balance(), Decimal("30.00"))

    def test_instant_payout_guards(self, _emit):
        with self.assertRaises(BusinessLogicException) as ctx:
            PayoutService.request_instant_payout(self.driver, "5.00")
        self.assertEqual(ctx.exception.code, "below_minimum")

        with self.assertRaises(BusinessLogicException) as ctx:
            PayoutService.request_instant_payout(self.driver, "60.00")
        self.assertEqual(ctx.exception.code, "insufficient_balance")

        Driver.objects.filter(id=self.driver.id).update(iban="")
        with self.assertRaises(BusinessLogicException) as ctx:
            PayoutService.request_instant_payout(self.driver, "20.00")
        self.assertEqual(ctx.exception.code, "bank_account_required")

        self.assertFalse(DriverPayout.objects.exists())

    def test_failure_refunds_and_retry_debits_again(self, emit):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")

        payout = PayoutService.mark_failed(payout.id, "Bank rejected")
        self.assertEqual(payout.status, "failed")
        self.assertEqual(payout.retry_count, 1)
        self.assertEqual(self.balance(), Decimal("50.00"))
        self.assertEqual(emit.call_args.args[1], "payout_failed")

        payout = PayoutService.retry(payout.id)
        self.assertEqual(payout.status, "pending")
        self.assertEqual(self.balance(), Decimal("30.00"))

    def test_retry_needs_balance(self, _emit):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")
        PayoutService.mark_failed(payout.id, "Bank rejected")
        Driver.objects.filter(id=self.driver.id).update(current_balance=Decimal("10.00"))

        with self.assertRaises(BusinessLogicException) as ctx:
            PayoutService.retry(payout.id)
        self.assertEqual(ctx.exception.code, "insufficient_balance")

    def test_cancel_pending_refunds(self, _emit):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")
        payout = PayoutService.cancel(payout.id, "Driver asked")

        self.assertEqual(payout.status, "cancelled")
        self.assertIn("Driver asked", payout.admin_notes)
        self.assertEqual(self.balance(), Decimal("50.00"))

    def test_cancel_after_failure_does_not_refund_twice(self, _emit):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")
        PayoutService.mark_failed(payout.id, "Bank rejected")
        PayoutService.cancel(payout.id)
        self.assertEqual(self.balance(), Decimal("50.00"))


class PayoutAPITestCase(PayoutFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.make_fixtures()
        Driver.objects.filter(id=self.driver.id).update(current_balance=Decimal("50.00"))
        self.client.force_authenticate(user=self.driver.user)

    def test_instant_payout_requires_idempotency_key(self):
        response = self.client.post("/api/v1/payouts/instant/", {"amount": "20.00"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "idempotency_key_required")

    def test_instant_payout_replay_creates_one_payout(self):
        headers = {"HTTP_IDEMPOTENCY_KEY": "cash-out-1"}
        first = self.client.post("/api/v1/payouts/instant/", {"amount": "20.00"}, **headers)
        second = self.client.post("/api/v1/payouts/instant/", {"amount": "20.00"}, **headers)

        self.assertEqual(first.status_code, status.HTTP_201_CREATED)
        self.assertEqual(second.status_code, status.HTTP_201_CREATED)
        self.assertEqual(first.data["payout_number"], second.data["payout_number"])
        self.assertEqual(DriverPayout.objects.filter(driver=self.driver).count(), 1)

    def test_summary_and_earnings(self):
        self.make_delivery(delivered_at=timezone.now() - timedelta(minutes=1))

        response = self.client.get("/api/v1/payouts/summary/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(Decimal(str(response.data["current_balance"])), Decimal("50.00"))

        response = self.client.get("/api/v1/payouts/earnings/", {"period": "today"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["deliveries"], 1)

        response = self.client.get("/api/v1/payouts/earnings/", {"period": "decade"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_leaderboard_limit_is_bounded(self):
        self.make_delivery(delivered_at=timezone.now() - timedelta(minutes=1))

        response = self.client.get("/api/v1/payouts/leaderboard/", {"limit": -1})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)

        response = self.client.get("/api/v1/payouts/leaderboard/", {"limit": "ten"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_other_driver_cannot_view_payout(self):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")
        other = self.make_driver("driver_b")
        self.client.force_authenticate(user=other.user)

        response = self.client.get(f"/api/v1/payouts/{payout.id}/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_only_customer_can_tip(self):
        delivery = self.make_delivery(delivered_at=timezone.now())
        headers = {"HTTP_IDEMPOTENCY_KEY": "tip-1"}

        response = self.client.post(f"/api/v1/payouts/tips/{delivery.id}/", {"amount": "2.00"}, **headers)
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.customer)
        response = self.client.post(f"/api/v1/payouts/tips/{delivery.id}/", {"amount": "2.00"}, **headers)
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_admin_actions(self):
        payout = PayoutService.request_instant_payout(self.driver, "20.00")
        admin = User.objects.create_user(username="finance", password="pass", is_staff=True)
        self.client.force_authenticate(user=admin)

        response = self.client.post(f"/api/v1/payouts/admin/{payout.id}/process/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "processing")

        response = self.client.post(f"/api/v1/payouts/admin/{payout.id}/retry/")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

        response = self.client.post(f"/api/v1/payouts/admin/{payout.id}/complete/", {"transaction_id": "TX-9"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "completed")

        response = self.client.post(f"/api/v1/payouts/admin/{payout.id}/explode/")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

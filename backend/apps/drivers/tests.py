# apps/drivers/tests.py
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from apps.delivery import state_machine as sm
from apps.delivery.models import Delivery
from apps.drivers.models import Driver, DriverShift, ShiftBreak, ShiftLocationSnapshot
from apps.drivers.services import DriverService, ShiftService
from apps.drivers.tasks import auto_end_stale_shifts
from apps.orders.models import Order
from apps.restaurants.models import Restaurant
from apps.utils.exceptions import BusinessLogicException, InvalidStateError, NotFoundError

User = get_user_model()


def make_driver(username, **extra):
    user = User.objects.create_user(username=username, password="pass")
    defaults = {"status": "verified"}
    defaults.update(extra)
    return Driver.objects.create(user=user, **defaults)


class ShiftLifecycleTestCase(TestCase):
    def setUp(self):
        self.driver = make_driver("driver_a")

    def test_start_shift_puts_driver_online(self):
        shift = ShiftService.start_shift(self.driver, latitude=48.8566, longitude=2.3522, goal_deliveries=10)

        self.assertTrue(shift.is_active)
        self.assertEqual(shift.start_latitude, 48.8566)
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.shift_status, "online")
        self.assertTrue(self.driver.is_available)
        self.assertEqual(self.driver.current_latitude, 48.8566)

    def test_only_one_active_shift(self):
        ShiftService.start_shift(self.driver)
        with self.assertRaises(InvalidStateError) as ctx:
            ShiftService.start_shift(self.driver)
        self.assertEqual(ctx.exception.code, "shift_already_active")
        self.assertEqual(DriverShift.objects.filter(driver=self.driver, is_active=True).count(), 1)

    def test_unverified_driver_cannot_start(self):
        pending = make_driver("driver_pending", status="pending")
        with self.assertRaises(InvalidStateError) as ctx:
            ShiftService.start_shift(pending)
        self.assertEqual(ctx.exception.code, "driver_not_verified")

    def test_start_rejects_bad_coordinates(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            ShiftService.start_shift(self.driver, latitude=95, longitude=0)
        self.assertEqual(ctx.exception.code, "invalid_coordinates")
        self.assertFalse(DriverShift.objects.exists())

    def test_break_cycle(self):
        ShiftService.start_shift(self.driver)

        shift = ShiftService.start_break(self.driver, reason="lunch")
        self.assertTrue(shift.is_on_break)
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.shift_status, "on_break")
        self.assertFalse(self.driver.is_available)

        with self.assertRaises(InvalidStateError) as ctx:
            ShiftService.start_break(self.driver)
        self.assertEqual(ctx.exception.code, "already_on_break")

        shift = ShiftService.end_break(self.driver)
        self.assertFalse(shift.is_on_break)
        self.assertEqual(shift.breaks.filter(ended_at__isnull=True).count(), 0)
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.shift_status, "online")

        with self.assertRaises(InvalidStateError) as ctx:
            ShiftService.end_break(self.driver)
        self.assertEqual(ctx.exception.code, "not_on_break")

    def test_break_without_shift(self):
        with self.assertRaises(NotFoundError) as ctx:
            ShiftService.start_break(self.driver)
        self.assertEqual(ctx.exception.code, "no_active_shift")

    def test_end_shift_freezes_durations(self):
        now = timezone.now()
        shift = DriverShift.objects.create(driver=self.driver, started_at=now - timedelta(hours=2))
        ShiftBreak.objects.create(
            shift=shift,
            started_at=now - timedelta(minutes=90),
            ended_at=now - timedelta(minutes=60),
            duration_minutes=30,
        )

        shift = ShiftService.end_shift(self.driver, latitude=48.85, longitude=2.35)

        self.assertFalse(shift.is_active)
        self.assertEqual(shift.end_reason, "manual")
        self.assertEqual(shift.duration_minutes, 120)
        self.assertEqual(shift.total_break_minutes, 30)
        self.assertEqual(shift.total_active_minutes, 90)
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.shift_status, "offline")
        self.assertFalse(self.driver.is_available)

    def test_end_shift_closes_open_break(self):
        ShiftService.start_shift(self.driver)
        ShiftService.start_break(self.driver)

        shift = ShiftService.end_shift(self.driver)

        self.assertFalse(shift.is_on_break)
        self.assertFalse(shift.breaks.filter(ended_at__isnull=True).exists())


class ActiveDeliveryRestrictionTestCase(TestCase):
    def setUp(self):
        self.driver = make_driver("driver_a")
        ShiftService.start_shift(self.driver)
        restaurant = Restaurant.objects.create(name="Chez Test", slug="chez-test", latitude=0, longitude=0)
        customer = User.objects.create_user(username="customer", password="pass")
        order = Order.objects.create(customer=customer, restaurant=restaurant, fulfillment_type="delivery")
        self.delivery = Delivery.objects.create(
            order=order, restaurant=restaurant, driver=self.driver, status=sm.PICKED_UP
        )
        Driver.objects.filter(id=self.driver.id).update(
            current_delivery=self.delivery, is_available=False, shift_status="on_delivery"
        )
        self.driver.refresh_from_db()

    def test_cannot_end_shift_with_delivery(self):
        with self.assertRaises(InvalidStateError) as ctx:
            ShiftService.end_shift(self.driver)
        self.assertEqual(ctx.exception.code, "active_delivery_restriction")

    def test_cannot_break_with_delivery(self):
        with self.assertRaises(InvalidStateError) as ctx:
            ShiftService.start_break(self.driver)
        self.assertEqual(ctx.exception.code, "active_delivery_restriction")

    def test_force_end_ignores_delivery(self):
        shift = ShiftService.get_active_shift(self.driver)
        shift = ShiftService.force_end_shift(shift.id, admin_notes="Phone lost")

        self.assertFalse(shift.is_active)
        self.assertEqual(shift.end_reason, "admin")
        self.assertEqual(shift.admin_notes, "Phone lost")

    def test_force_end_locks_driver_before_shift(self):
        shift = ShiftService.get_active_shift(self.driver)
        calls = Mock()
        with patch.object(DriverService, "get_driver", wraps=DriverService.get_driver) as lock_driver, \
                patch.object(DriverShift.objects, "select_for_update",
                             wraps=DriverShift.objects.select_for_update) as lock_shift:
            calls.attach_mock(lock_driver, "lock_driver")
            calls.attach_mock(lock_shift, "lock_shift")
            ShiftService.force_end_shift(shift.id)

        self.assertEqual([name for name, _, _ in calls.mock_calls][:2], ["lock_driver", "lock_shift"])
        lock_driver.assert_called_once_with(self.driver.id, for_update=True)

    def test_force_end_unknown_shift(self):
        with self.assertRaises(NotFoundError):
            ShiftService.force_end_shift(999999)

    def test_stale_shift_with_delivery_is_skipped(self):
        DriverShift.objects.filter(driver=self.driver).update(started_at=timezone.now() - timedelta(hours=20))
        self.assertEqual(ShiftService.auto_end_stale_shifts(14), 0)
        self.assertTrue(DriverShift.objects.get(driver=self.driver).is_active)


class ShiftTrackingTestCase(TestCase):
    def setUp(self):
        self.driver = make_driver("driver_a")
        self.shift = ShiftService.start_shift(self.driver)

    def test_location_snapshots_are_compacted(self):
        start = timezone.now() - timedelta(hours=1)
        ShiftLocationSnapshot.objects.bulk_create([
            ShiftLocationSnapshot(shift=self.shift, latitude=0, longitude=0, recorded_at=start + timedelta(seconds=i))
            for i in range(DriverShift.MAX_LOCATION_SNAPSHOTS)
        ])

        ShiftService.update_location(self.driver, 48.85, 2.35)

        snapshots = ShiftLocationSnapshot.objects.filter(shift=self.shift)
        self.assertEqual(snapshots.count(), DriverShift.COMPACTED_LOCATION_SNAPSHOTS)
        self.assertTrue(snapshots.filter(latitude=48.85).exists())
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.current_longitude, 2.35)

    def test_record_delivery_accumulates_earnings(self):
        ShiftService.record_delivery(
            self.driver,
            completed=True,
            distance_km=4.2,
            duration_minutes=18,
            earnings={"delivery_fee": Decimal("3.00"), "distance_bonus": Decimal("0.60"), "tip": Decimal("1.00")},
        )
        ShiftService.record_delivery(self.driver, completed=False)

        self.shift.refresh_from_db()
        self.assertEqual(self.shift.total_deliveries, 2)
        self.assertEqual(self.shift.completed_deliveries, 1)
        self.assertEqual(self.shift.cancelled_deliveries, 1)
        self.assertEqual(self.shift.earnings_total, Decimal("4.60"))
        self.assertEqual(self.shift.average_delivery_minutes, 18)

    def test_stale_shifts_auto_end(self):
        DriverShift.objects.filter(id=self.shift.id).update(started_at=timezone.now() - timedelta(hours=20))

        result = auto_end_stale_shifts()

        self.assertEqual(result, "Ended 1 shifts")
        self.shift.refresh_from_db()
        self.assertFalse(self.shift.is_active)
        self.assertEqual(self.shift.end_reason, "auto_timeout")
        self.driver.refresh_from_db()
        self.assertEqual(self.driver.shift_status, "offline")

    def test_shift_stats(self):
        ShiftService.end_shift(self.driver)
        stats = ShiftService.get_shift_stats(self.driver, period="week")

        self.assertEqual(stats["summary"]["total_shifts"], 1)
        self.assertEqual(len(stats["daily"]), 1)


class BankAccountTestCase(TestCase):
    def setUp(self):
        self.driver = make_driver("driver_a", bank_account_verified=True)

    def test_valid_iban_is_normalised(self):
        driver = DriverService.update_bank_account(
            self.driver, "Jean Test", "fr76 3000 6000 0112 3456 7890 189", bic="agrifrpp"
        )
        self.assertEqual(driver.iban, "FR7630006000011234567890189")
        self.assertEqual(driver.bic, "AGRIFRPP")
        self.assertFalse(driver.bank_account_verified)

    def test_invalid_details_rejected(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            DriverService.update_bank_account(self.driver, "Jean Test", "12345")
        self.assertEqual(ctx.exception.code, "invalid_iban")

        with self.assertRaises(BusinessLogicException) as ctx:
            DriverService.update_bank_account(self.driver, "Jean Test", "FR7630006000011234567890189", bic="X1")
        self.assertEqual(ctx.exception.code, "invalid_bic")

        with self.assertRaises(BusinessLogicException) as ctx:
            DriverService.update_bank_account(self.driver, " ", "FR7630006000011234567890189")
        self.assertEqual(ctx.exception.code, "invalid_account_holder")


class DriverAPITestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.driver = make_driver("driver_a")
        self.client.force_authenticate(user=self.driver.user)

    def test_shift_flow(self):
        response = self.client.post("/api/v1/drivers/shifts/start/", {"latitude": 48.85, "longitude": 2.35})
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

        response = self.client.post("/api/v1/drivers/shifts/start/")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["error"]["code"], "shift_already_active")

        response = self.client.post("/api/v1/drivers/shifts/break/", {"reason": "coffee"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        response = self.client.delete("/api/v1/drivers/shifts/break/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.get("/api/v1/drivers/shifts/current/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["is_on_break"])

        response = self.client.post("/api/v1/drivers/shifts/end/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.get("/api/v1/drivers/shifts/current/")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_start_needs_both_coordinates(self):
        response = self.client.post("/api/v1/drivers/shifts/start/", {"latitude": 48.85})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unverified_driver_forbidden(self):
        pending = make_driver("driver_pending", status="pending")
        self.client.force_authenticate(user=pending.user)
        response = self.client.post("/api/v1/drivers/shifts/start/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_bank_account_masked(self):
        response = self.client.put(
            "/api/v1/drivers/bank-account/",
            {"bank_account_holder": "Jean Test", "iban": "FR7630006000011234567890189"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["iban"], "****0189")

    def test_non_driver_rejected(self):
        customer = User.objects.create_user(username="customer", password="pass")
        self.client.force_authenticate(user=customer)
        response = self.client.get("/api/v1/drivers/me/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

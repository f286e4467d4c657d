# apps/delivery/tests.py
import math
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from apps.delivery import state_machine as sm
from apps.delivery.auto_assign import AssignmentService
from apps.delivery.models import Delivery, DeliveryLocationPoint
from apps.delivery.services import DeliveryService
from apps.drivers.models import Driver, DriverShift
from apps.orders.models import Order
from apps.restaurants.models import Restaurant
from apps.utils.exceptions import BusinessLogicException, InvalidStateError, ResourceUnavailableError

User = get_user_model()


def km_north(km):
    """Latitude offset (degrees) for `km` due north at the equator."""
    return math.degrees(km / 6371)


class DispatchFixtureMixin:
    """Restaurant at (0, 0), one customer, helpers for drivers and orders."""

    def make_restaurant(self):
        self.restaurant = Restaurant.objects.create(
            name="Chez Test", slug="chez-test", latitude=0.0, longitude=0.0
        )
        self.customer = User.objects.create_user(username="customer", password="pass")

    def make_driver(self, username, latitude=None, longitude=0.0, **extra):
        user = User.objects.create_user(username=username, password="pass")
        defaults = {
            "status": "verified",
            "shift_status": "online",
            "is_available": True,
            "current_latitude": km_north(1) if latitude is None else latitude,
            "current_longitude": longitude,
        }
        defaults.update(extra)
        return Driver.objects.create(user=user, **defaults)

    def make_order(self, dropoff_km_south=3):
        return Order.objects.create(
            customer=self.customer,
            restaurant=self.restaurant,
            status="ready",
            fulfillment_type="delivery",
            total_amount=Decimal("25.00"),
            delivery_address={
                "street": "1 rue de Test",
                "city": "Paris",
                "latitude": -km_north(dropoff_km_south),
                "longitude": 0.0,
            },
        )


class StateMachineTestCase(TestCase):
    def test_legal_transitions_pass(self):
        self.assertEqual(sm.transition(sm.PENDING, sm.ASSIGNED), sm.ASSIGNED)
        self.assertTrue(sm.can_transition(sm.PICKED_UP, sm.IN_TRANSIT))
        self.assertTrue(sm.can_transition(sm.FAILED, sm.PENDING))

    def test_illegal_transitions_raise(self):
        with self.assertRaises(sm.InvalidTransition) as ctx:
            sm.transition(sm.PENDING, sm.DELIVERED)
        self.assertEqual(ctx.exception.code, "invalid_transition")

        # Food is on board: no hand-back to the pool
        self.assertFalse(sm.can_transition(sm.PICKED_UP, sm.PENDING))

    def test_terminal_states_have_no_exits(self):
        for terminal in (sm.DELIVERED, sm.CANCELLED, sm.RETURNED):
            self.assertIn(terminal, sm.TERMINAL_STATUSES)
            for target, _ in sm.STATUS_CHOICES:
                self.assertFalse(sm.can_transition(terminal, target))


class AssignmentServiceTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.make_restaurant()
        self.driver = self.make_driver("driver_a")
        self.order = self.make_order()

    def test_create_delivery_is_idempotent_per_order(self):
        first = AssignmentService.create_delivery_for_order(self.order.id)
        second = AssignmentService.create_delivery_for_order(self.order.id)

        self.assertEqual(first.id, second.id)
        self.assertEqual(first.status, sm.PENDING)
        self.assertEqual(first.base_fee, Decimal("3.00"))
        self.assertEqual(len(first.otp), 4)
        self.order.refresh_from_db()
        self.assertEqual(self.order.delivery_status, sm.PENDING)

    def test_create_delivery_rejects_pickup_order(self):
        self.order.fulfillment_type = "takeaway"
        self.order.save()
        with self.assertRaises(InvalidStateError) as ctx:
            AssignmentService.create_delivery_for_order(self.order.id)
        self.assertEqual(ctx.exception.code, "not_delivery_order")

    def test_auto_assign_prices_route(self):
        # 1 km to the restaurant + 3 km to the customer = 4 km, 1 km over the free distance
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        delivery = AssignmentService.auto_assign_delivery(delivery.id)

        self.assertEqual(delivery.status, sm.ASSIGNED)
        self.assertEqual(delivery.driver_id, self.driver.id)
        self.assertAlmostEqual(delivery.estimated_distance_km, 4.0, places=2)
        self.assertEqual(delivery.distance_bonus, Decimal("0.50"))
        self.assertEqual(delivery.earnings_total, Decimal("3.50"))
        self.assertEqual(delivery.assignment_attempts, 1)
        self.assertIsNotNone(delivery.assignment_expires_at)

        self.driver.refresh_from_db()
        self.assertEqual(self.driver.current_delivery_id, delivery.id)
        self.assertFalse(self.driver.is_available)
        self.assertEqual(self.driver.shift_status, "on_delivery")

    def test_driver_holds_one_delivery_at_a_time(self):
        other_order = Order.objects.create(
            customer=self.customer, restaurant=self.restaurant, fulfillment_type="delivery"
        )
        first = AssignmentService.create_delivery_for_order(self.order.id)
        second = AssignmentService.create_delivery_for_order(other_order.id)

        AssignmentService.assign_delivery_to_driver(first.id, self.driver.id)
        with self.assertRaises(InvalidStateError) as ctx:
            AssignmentService.assign_delivery_to_driver(second.id, self.driver.id)
        self.assertEqual(ctx.exception.code, "driver_unavailable")

        second.refresh_from_db()
        self.assertEqual(second.status, sm.PENDING)
        self.assertIsNone(second.driver_id)

    def test_no_driver_in_range(self):
        self.driver.current_latitude = km_north(50)
        self.driver.save()
        delivery = AssignmentService.create_delivery_for_order(self.order.id)

        with self.assertRaises(ResourceUnavailableError) as ctx:
            AssignmentService.auto_assign_delivery(delivery.id)
        self.assertEqual(ctx.exception.code, "no_drivers_available")

    @patch("apps.delivery.auto_assign.AssignmentService.assign_delivery_to_driver")
    def test_skipped_candidates_leave_no_route_estimate(self, mock_assign):
        mock_assign.side_effect = InvalidStateError("Driver is not available", code="driver_unavailable")
        delivery = AssignmentService.create_delivery_for_order(self.order.id)

        with self.assertRaises(ResourceUnavailableError):
            AssignmentService.auto_assign_delivery(delivery.id)

        mock_assign.assert_called_once()
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, sm.PENDING)
        self.assertEqual(delivery.estimated_distance_km, 0)
        self.assertEqual(delivery.distance_bonus, Decimal("0.00"))
        self.assertEqual(delivery.earnings_total, Decimal("3.00"))

    def test_candidates_ranked_by_score(self):
        near = self.make_driver("driver_near", latitude=km_north(0.5), vehicle_type="motorcycle")
        candidates = AssignmentService.find_available_drivers(0.0, 0.0, radius_km=10)

        self.assertEqual([c["driver"].id for c in candidates], [near.id, self.driver.id])
        for candidate in candidates:
            self.assertGreaterEqual(candidate["score"], 0)
            self.assertLessEqual(candidate["score"], 1)

    def test_busy_and_offline_drivers_are_not_candidates(self):
        self.make_driver("driver_offline", shift_status="offline", is_available=False)
        self.make_driver("driver_unverified", status="pending")
        candidates = AssignmentService.find_available_drivers(0.0, 0.0, radius_km=10)
        self.assertEqual([c["driver"].id for c in candidates], [self.driver.id])

    def test_accept_clears_expiry(self):
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)

        delivery = AssignmentService.accept_assignment(delivery.id, self.driver.id)
        self.assertEqual(delivery.status, sm.ACCEPTED)
        self.assertIsNone(delivery.assignment_expires_at)
        self.assertIsNotNone(delivery.accepted_at)

    def test_accept_by_other_driver_rejected(self):
        other = self.make_driver("driver_b")
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)

        with self.assertRaises(InvalidStateError) as ctx:
            AssignmentService.accept_assignment(delivery.id, other.id)
        self.assertEqual(ctx.exception.code, "not_assigned_to_driver")

    def test_reject_reassigns_to_next_driver(self):
        driver_b = self.make_driver("driver_b", latitude=km_north(2))
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        delivery = AssignmentService.auto_assign_delivery(delivery.id)
        self.assertEqual(delivery.driver_id, self.driver.id)

        delivery = AssignmentService.reject_assignment(delivery.id, self.driver.id, reason="too far")

        self.assertEqual(delivery.status, sm.ASSIGNED)
        self.assertEqual(delivery.driver_id, driver_b.id)
        self.assertEqual(delivery.assignment_attempts, 2)
        self.assertIn(self.driver.id, delivery.rejected_driver_ids)

        self.driver.refresh_from_db()
        self.assertTrue(self.driver.is_available)
        self.assertIsNone(self.driver.current_delivery_id)
        self.assertEqual(self.driver.shift_status, "online")

    @patch("apps.delivery.tasks.retry_auto_assign_delivery.apply_async")
    def test_reject_without_other_driver_queues_retry(self, mock_apply):
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)

        with self.captureOnCommitCallbacks(execute=True):
            delivery = AssignmentService.reject_assignment(delivery.id, self.driver.id)

        self.assertEqual(delivery.status, sm.PENDING)
        self.assertIsNone(delivery.driver_id)
        mock_apply.assert_called_once()
        self.assertEqual(mock_apply.call_args.kwargs["args"], [delivery.id])

    def test_reject_after_pickup_not_allowed(self):
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)
        Delivery.objects.filter(id=delivery.id).update(status=sm.PICKED_UP)

        with self.assertRaises(InvalidStateError) as ctx:
            AssignmentService.reject_assignment(delivery.id, self.driver.id)
        self.assertEqual(ctx.exception.code, "delivery_not_rejectable")

    @override_settings(DISPATCH_MAX_ASSIGNMENT_ATTEMPTS=1)
    def test_attempt_cap_moves_to_manual_intervention(self):
        self.make_driver("driver_b", latitude=km_north(2))
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)

        delivery = AssignmentService.reject_assignment(delivery.id, self.driver.id)

        self.assertEqual(delivery.status, sm.PENDING)
        self.assertEqual(delivery.job_status, "manual_intervention")
        self.assertIsNone(delivery.driver_id)

    def test_expire_stale_assignments(self):
        driver_b = self.make_driver("driver_b", latitude=km_north(2))
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)

        expired = AssignmentService.expire_stale_assignments(now=timezone.now() + timedelta(minutes=5))

        self.assertEqual(expired, 1)
        delivery.refresh_from_db()
        self.assertEqual(delivery.driver_id, driver_b.id)
        self.assertIn(self.driver.id, delivery.rejected_driver_ids)
        self.assertTrue(delivery.status_history.filter(event="rejected", note="timeout").exists())

    def test_fresh_assignment_is_not_expired(self):
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)

        self.assertEqual(AssignmentService.expire_stale_assignments(), 0)
        delivery.refresh_from_db()
        self.assertEqual(delivery.driver_id, self.driver.id)


class DeliveryServiceTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.make_restaurant()
        self.driver = self.make_driver("driver_a")
        self.shift = DriverShift.objects.create(driver=self.driver)
        self.order = self.make_order()
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)
        self.delivery = AssignmentService.accept_assignment(delivery.id, self.driver.id)

    def advance(self, *statuses):
        for new_status in statuses:
            self.delivery = DeliveryService.update_status(self.delivery.id, new_status, driver=self.driver)

    def test_progress_records_timestamps(self):
        self.advance(sm.ARRIVING_RESTAURANT, sm.AT_RESTAURANT, sm.PICKED_UP)

        self.assertIsNotNone(self.delivery.arrived_at_restaurant_at)
        self.assertIsNotNone(self.delivery.actual_pickup_time)
        self.assertEqual(self.delivery.previous_status, sm.AT_RESTAURANT)
        self.order.refresh_from_db()
        self.assertEqual(self.order.delivery_status, sm.PICKED_UP)

    def test_skipping_states_is_rejected(self):
        with self.assertRaises(sm.InvalidTransition):
            DeliveryService.update_status(self.delivery.id, sm.PICKED_UP, driver=self.driver)

    def test_assignment_states_use_assignment_flow(self):
        with self.assertRaises(InvalidStateError) as ctx:
            DeliveryService.update_status(self.delivery.id, sm.ASSIGNED, driver=self.driver)
        self.assertEqual(ctx.exception.code, "use_assignment_flow")

    @patch("apps.payouts.services.EarningsService.is_peak_hour", return_value=False)
    def test_complete_delivery_settles_earnings(self, _mock_peak):
        self.advance(sm.ARRIVING_RESTAURANT, sm.AT_RESTAURANT, sm.PICKED_UP, sm.IN_TRANSIT)

        delivery = DeliveryService.complete_delivery(
            self.delivery.id, driver=self.driver, actual_distance_km=5
        )

        self.assertEqual(delivery.status, sm.DELIVERED)
        self.assertEqual(delivery.distance_bonus, Decimal("1.00"))
        self.assertEqual(delivery.earnings_total, Decimal("4.00"))

        self.driver.refresh_from_db()
        self.assertIsNone(self.driver.current_delivery_id)
        self.assertTrue(self.driver.is_available)
        self.assertEqual(self.driver.current_balance, Decimal("4.00"))
        self.assertEqual(self.driver.lifetime_earnings, Decimal("4.00"))
        self.assertEqual(self.driver.completed_deliveries, 1)

        self.shift.refresh_from_db()
        self.assertEqual(self.shift.completed_deliveries, 1)
        self.assertEqual(self.shift.earnings_total, Decimal("4.00"))
        self.assertEqual(self.shift.total_distance_km, 5)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "completed")

    def test_complete_requires_drop_off_state(self):
        with self.assertRaises(InvalidStateError) as ctx:
            DeliveryService.complete_delivery(self.delivery.id, driver=self.driver)
        self.assertEqual(ctx.exception.code, "delivery_not_completable")

    def test_complete_checks_otp_when_required(self):
        Delivery.objects.filter(id=self.delivery.id).update(pod_requires_otp=True, otp="1234")
        self.advance(sm.ARRIVING_RESTAURANT, sm.AT_RESTAURANT, sm.PICKED_UP, sm.IN_TRANSIT)

        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryService.complete_delivery(self.delivery.id, driver=self.driver, otp="0000")
        self.assertEqual(ctx.exception.code, "invalid_otp")

        delivery = DeliveryService.complete_delivery(self.delivery.id, driver=self.driver, otp="1234")
        self.assertEqual(delivery.status, sm.DELIVERED)

    def test_non_ascii_otp_is_rejected(self):
        Delivery.objects.filter(id=self.delivery.id).update(pod_requires_otp=True, otp="1234")
        self.advance(sm.ARRIVING_RESTAURANT, sm.AT_RESTAURANT, sm.PICKED_UP, sm.IN_TRANSIT)
        self.assertFalse(Delivery.objects.get(id=self.delivery.id).verify_otp("é123"))

        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryService.complete_delivery(self.delivery.id, driver=self.driver, otp="é123")
        self.assertEqual(ctx.exception.code, "invalid_otp")

    def test_cancel_releases_driver(self):
        delivery = DeliveryService.cancel_delivery(self.delivery.id, cancelled_by="admin", reason="closed")

        self.assertEqual(delivery.status, sm.CANCELLED)
        self.assertIsNotNone(delivery.cancelled_at)
        self.driver.refresh_from_db()
        self.assertIsNone(self.driver.current_delivery_id)
        self.assertEqual(self.driver.cancelled_deliveries, 1)

    def test_location_trail_is_compacted(self):
        self.advance(sm.ARRIVING_RESTAURANT)
        start = timezone.now() - timedelta(hours=1)
        DeliveryLocationPoint.objects.bulk_create([
            DeliveryLocationPoint(
                delivery=self.delivery, latitude=0.0, longitude=0.0,
                recorded_at=start + timedelta(seconds=i),
            )
            for i in range(Delivery.MAX_LOCATION_POINTS)
        ])

        point = DeliveryService.update_location(self.delivery.id, self.driver, 0.001, 0.001)

        points = DeliveryLocationPoint.objects.filter(delivery=self.delivery)
        self.assertEqual(points.count(), Delivery.COMPACTED_LOCATION_POINTS)
        self.assertTrue(points.filter(id=point.id).exists())

    def test_location_rejects_bad_coordinates(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryService.update_location(self.delivery.id, self.driver, 91, 0)
        self.assertEqual(ctx.exception.code, "invalid_coordinates")


class DeliveryAPITestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.make_restaurant()
        self.driver = self.make_driver("driver_a")
        self.order = self.make_order()
        delivery = AssignmentService.create_delivery_for_order(self.order.id)
        self.delivery = AssignmentService.assign_delivery_to_driver(delivery.id, self.driver.id)
        self.client.force_authenticate(user=self.driver.user)

    def test_accept_via_api(self):
        response = self.client.post(f"/api/v1/delivery/{self.delivery.id}/respond/", {"action": "accept"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], sm.ACCEPTED)

    def test_invalid_transition_maps_to_conflict(self):
        response = self.client.post(
            f"/api/v1/delivery/{self.delivery.id}/status/", {"status": sm.PICKED_UP}
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["error"]["code"], "invalid_transition")

    def test_location_ping_security(self):
        AssignmentService.accept_assignment(self.delivery.id, self.driver.id)

        response = self.client.post(
            f"/api/v1/delivery/{self.delivery.id}/location/", {"latitude": 0.001, "longitude": 0.001}
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.post(
            f"/api/v1/delivery/{self.delivery.id}/location/", {"latitude": 100.0, "longitude": 200.0}
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        intruder = self.make_driver("driver_b")
        self.client.force_authenticate(user=intruder.user)
        response = self.client.post(
            f"/api/v1/delivery/{self.delivery.id}/location/", {"latitude": 0.0, "longitude": 0.0}
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_proof_with_non_ascii_otp_is_bad_request(self):
        AssignmentService.accept_assignment(self.delivery.id, self.driver.id)
        for new_status in (sm.ARRIVING_RESTAURANT, sm.AT_RESTAURANT, sm.PICKED_UP, sm.IN_TRANSIT):
            DeliveryService.update_status(self.delivery.id, new_status, driver=self.driver)

        response = self.client.post(
            f"/api/v1/delivery/{self.delivery.id}/proof/", {"pod_type": "otp", "otp": "é123"}
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "invalid_otp")

    def test_available_drivers_rejects_bad_restaurant_id(self):
        admin = User.objects.create_user(username="ops", password="pass", is_staff=True)
        self.client.force_authenticate(user=admin)

        response = self.client.get(
            "/api/v1/delivery/admin/available-drivers/",
            {"latitude": 0, "longitude": 0, "restaurant_id": "abc"},
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.get("/api/v1/delivery/admin/stats/", {"restaurant_id": "abc"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_customer_cannot_use_driver_endpoints(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.get("/api/v1/delivery/me/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        response = self.client.get(f"/api/v1/delivery/{self.delivery.id}/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_admin_stats(self):
        admin = User.objects.create_user(username="ops", password="pass", is_staff=True)
        self.client.force_authenticate(user=admin)
        response = self.client.get("/api/v1/delivery/admin/stats/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total_deliveries"], 1)


class DeliveryEarningsQuoteTestCase(SimpleTestCase):
    def test_breakdown_components(self):
        delivery = Delivery(base_fee=Decimal("3.00"), estimated_distance_km=4.0)

        breakdown = delivery.calculate_earnings(peak_multiplier=1.5, wait_time_minutes=25)

        # 2 km over the free distance, 15 min over the grace period, half the base fee at peak
        self.assertEqual(breakdown["distance_bonus"], Decimal("1.00"))
        self.assertEqual(breakdown["wait_time_bonus"], Decimal("1.50"))
        self.assertEqual(breakdown["peak_hour_bonus"], Decimal("1.50"))
        self.assertEqual(breakdown["total"], Decimal("7.00"))
        self.assertEqual(delivery.earnings_total, Decimal("7.00"))

    def test_recorded_distance_wins_over_estimate(self):
        delivery = Delivery(base_fee=Decimal("3.00"), estimated_distance_km=4.0, actual_distance_km=6.5)
        breakdown = delivery.calculate_earnings()

        self.assertEqual(breakdown["distance_bonus"], Decimal("2.25"))
        self.assertEqual(breakdown["wait_time_bonus"], Decimal("0.00"))
        self.assertEqual(breakdown["peak_hour_bonus"], Decimal("0.00"))
        self.assertEqual(breakdown["total"], Decimal("5.25"))

        delivery.actual_distance_km = 0
        self.assertEqual(delivery.calculate_earnings()["distance_bonus"], Decimal("1.00"))

    def test_short_trip_with_new_base_fee(self):
        delivery = Delivery(base_fee=Decimal("3.00"), estimated_distance_km=1.5, tip=Decimal("2.00"))
        breakdown = delivery.calculate_earnings(base_fee=4, peak_multiplier=2, wait_time_minutes=10)

        self.assertEqual(breakdown["base_fee"], Decimal("4.00"))
        self.assertEqual(breakdown["distance_bonus"], Decimal("0.00"))
        self.assertEqual(breakdown["wait_time_bonus"], Decimal("0.00"))
        self.assertEqual(breakdown["peak_hour_bonus"], Decimal("4.00"))
        self.assertEqual(breakdown["total"], Decimal("10.00"))
        self.assertEqual(delivery.base_fee, Decimal("4.00"))

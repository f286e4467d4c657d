# apps/utils/tests.py
from decimal import Decimal
from types import SimpleNamespace

from django.core.cache import cache
from django.test import SimpleTestCase

from apps.utils.geo import (
    bounding_box,
    estimate_eta_minutes,
    haversine_km,
    is_valid_coordinate,
    score_driver,
)
from apps.utils.idempotency import job_lock
from apps.utils.money import money_sum, to_money


class GeoTestCase(SimpleTestCase):
    def test_haversine(self):
        self.assertAlmostEqual(haversine_km(0, 0, 0, 1), 111.19, places=2)
        self.assertEqual(haversine_km(48.85, 2.35, 48.85, 2.35), 0)
        # Paris -> Lyon
        self.assertAlmostEqual(haversine_km(48.8566, 2.3522, 45.7640, 4.8357), 391.5, delta=1)

    def test_haversine_is_symmetric(self):
        points = [(0, 0), (48.8566, 2.3522), (-33.8688, 151.2093), (89.9, -179.9), (-45.0, 179.9)]
        for lat1, lng1 in points:
            for lat2, lng2 in points:
                self.assertAlmostEqual(
                    haversine_km(lat1, lng1, lat2, lng2), haversine_km(lat2, lng2, lat1, lng1), places=9
                )
                self.assertGreaterEqual(haversine_km(lat1, lng1, lat2, lng2), 0)

    def test_score_stays_in_unit_interval(self):
        drivers = [
            SimpleNamespace(average_rating=0, completion_rate=0, vehicle_type="bicycle"),
            SimpleNamespace(average_rating=None, completion_rate=None, vehicle_type=None),
            SimpleNamespace(average_rating=7, completion_rate=1.5, vehicle_type="motorcycle"),
            SimpleNamespace(average_rating=-1, completion_rate=-0.2, vehicle_type="hovercraft"),
            SimpleNamespace(),
        ]
        for driver in drivers:
            for distance in (-5, 0, 3.2, 10, 250):
                for max_distance in (0, 10):
                    score = score_driver(driver, distance, max_distance)
                    self.assertGreaterEqual(score, 0)
                    self.assertLessEqual(score, 1)

    def test_eta_rounds_up(self):
        self.assertEqual(estimate_eta_minutes(0), 0)
        self.assertEqual(estimate_eta_minutes(5), 12)
        self.assertEqual(estimate_eta_minutes(5.1), 13)

    def test_bounding_box_contains_radius(self):
        min_lat, max_lat, min_lng, max_lng = bounding_box(48.85, 2.35, 10)
        self.assertLess(min_lat, 48.85)
        self.assertGreater(max_lat, 48.85)
        self.assertAlmostEqual(haversine_km(48.85, 2.35, max_lat, 2.35), 10, places=3)
        self.assertAlmostEqual(haversine_km(48.85, 2.35, 48.85, max_lng), 10, delta=0.05)

    def test_bounding_box_near_pole_spans_all_longitudes(self):
        _, max_lat, min_lng, max_lng = bounding_box(89.99, 0, 10)
        self.assertEqual(max_lat, 90.0)
        self.assertEqual((min_lng, max_lng), (-180.0, 180.0))

    def test_coordinate_validation(self):
        self.assertTrue(is_valid_coordinate(-90, 180))
        self.assertTrue(is_valid_coordinate("48.85", "2.35"))
        self.assertFalse(is_valid_coordinate(90.01, 0))
        self.assertFalse(is_valid_coordinate(None, 0))
        self.assertFalse(is_valid_coordinate("north", 0))

    def test_score_bounds(self):
        best = SimpleNamespace(average_rating=5, completion_rate=1, vehicle_type="motorcycle")
        worst = SimpleNamespace(average_rating=1, completion_rate=0, vehicle_type="bicycle")
        newcomer = SimpleNamespace(average_rating=None, completion_rate=None, vehicle_type="scooter")

        self.assertEqual(score_driver(best, 0, 10), 1.0)
        self.assertEqual(score_driver(worst, 20, 10), 0.11)
        self.assertEqual(score_driver(newcomer, 5, 10), 0.63)

    def test_closer_driver_scores_higher(self):
        driver = SimpleNamespace(average_rating=4.5, completion_rate=0.9, vehicle_type="car")
        self.assertGreater(score_driver(driver, 1, 10), score_driver(driver, 8, 10))


class MoneyTestCase(SimpleTestCase):
    def test_to_money(self):
        self.assertEqual(to_money(0.1), Decimal("0.10"))
        self.assertEqual(to_money("2.005"), Decimal("2.01"))
        self.assertEqual(to_money(None), Decimal("0.00"))

    def test_money_sum(self):
        self.assertEqual(money_sum([0.1, 0.2, "0.30"]), Decimal("0.60"))
        self.assertEqual(money_sum([]), Decimal("0.00"))


class JobLockTestCase(SimpleTestCase):
    def setUp(self):
        cache.clear()

    def test_single_flight(self):
        with job_lock("weekly_payouts", timeout=30) as first:
            self.assertTrue(first)
            with job_lock("weekly_payouts", timeout=30) as second:
                self.assertFalse(second)
        with job_lock("weekly_payouts", timeout=30) as again:
            self.assertTrue(again)

# apps/core/tests.py
import json
import logging
import time

from django.core.cache import cache
from django.http import JsonResponse
from django.test import TestCase, RequestFactory

from apps.core.middleware import CORRELATION_HEADER, CorrelationIDMiddleware, get_correlation_id
from apps.core.tasks import beat_heartbeat, monitor_stuck_deliveries
from apps.utils.logging import CorrelationIdFilter, GDPRJsonFormatter


class MiddlewareTestCase(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.seen = {}

        def get_response(request):
            self.seen["correlation_id"] = get_correlation_id()
            return JsonResponse({"status": "ok"})

        self.middleware = CorrelationIDMiddleware(get_response)

    def test_correlation_id_generation(self):
        request = self.factory.get("/")
        response = self.middleware(request)

        self.assertTrue(response.has_header(CORRELATION_HEADER))
        self.assertEqual(response[CORRELATION_HEADER], request.correlation_id)
        self.assertEqual(self.seen["correlation_id"], request.correlation_id)
        # Reset once the request is done
        self.assertIsNone(get_correlation_id())

    def test_client_id_is_echoed_and_bounded(self):
        request = self.factory.get("/", HTTP_X_CORRELATION_ID="abc-123")
        response = self.middleware(request)
        self.assertEqual(response[CORRELATION_HEADER], "abc-123")

        request = self.factory.get("/", HTTP_X_CORRELATION_ID="x" * 200)
        response = self.middleware(request)
        self.assertEqual(len(response[CORRELATION_HEADER]), 64)


class HealthCheckTestCase(TestCase):
    def setUp(self):
        cache.clear()

    def test_health_check_ok(self):
        beat_heartbeat()
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertEqual(response.json()["services"]["beat"], "ok")

    def test_missing_heartbeat_is_warming_up(self):
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["services"]["beat"], "warming_up")

    def test_stale_heartbeat_is_degraded_not_down(self):
        cache.set("celery_beat_health", time.time() - 600)
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "degraded")
        self.assertEqual(response.json()["services"]["beat"], "stuck")


class MonitoringTaskTestCase(TestCase):
    def test_nothing_stuck(self):
        self.assertEqual(monitor_stuck_deliveries(), "All systems nominal")


class LoggingTestCase(TestCase):
    def make_record(self, message):
        return logging.LogRecord("apps.payouts", logging.INFO, __file__, 1, message, None, None)

    def test_filter_stamps_correlation_id(self):
        record = self.make_record("hello")
        self.assertTrue(CorrelationIdFilter().filter(record))
        self.assertEqual(record.correlation_id, "N/A")

    def test_formatter_masks_bank_details(self):
        record = self.make_record("Payout to FR7630006000011234567890189 sent")
        output = json.loads(GDPRJsonFormatter().format(record))
        self.assertNotIn("FR7630006000011234567890189", output["message"])
        self.assertIn("FR76******0189", output["message"])

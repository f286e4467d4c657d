# apps/notifications/tests.py
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from apps.notifications.models import Notification
from apps.notifications.services import NotificationService
from apps.notifications.tasks import deliver_realtime_notification

User = get_user_model()


class NotificationServiceTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="driver", password="pass")

    @patch("apps.notifications.services.deliver_realtime_notification.delay")
    def test_emit_persists_then_pushes_after_commit(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            notification = NotificationService.emit(
                self.user, "tip_received", "You received a tip", "2.00 EUR", {"amount": Decimal("2.00")}
            )

        self.assertEqual(len(callbacks), 1)
        mock_delay.assert_called_once_with(notification.id)
        notification.refresh_from_db()
        self.assertEqual(notification.data, {"amount": "2.00"})
        self.assertFalse(notification.is_read)

    @patch("apps.notifications.services.deliver_realtime_notification.delay")
    def test_push_failure_does_not_raise(self, mock_delay):
        mock_delay.side_effect = ConnectionError("broker down")
        with self.captureOnCommitCallbacks(execute=True):
            notification = NotificationService.emit(self.user, "payout_created", "Weekly payout ready")
        self.assertTrue(Notification.objects.filter(id=notification.id).exists())

    def test_emit_without_user_is_dropped(self):
        self.assertIsNone(NotificationService.emit(None, "payout_created", "Weekly payout ready"))
        self.assertFalse(Notification.objects.exists())

    def test_realtime_delivery(self):
        notification = Notification.objects.create(user=self.user, event_type="delivery_assigned", title="New job")
        self.assertEqual(deliver_realtime_notification(notification.id), "Sent")
        self.assertEqual(deliver_realtime_notification(notification.id + 1), "Missing")

    def test_mark_read(self):
        first = Notification.objects.create(user=self.user, event_type="delivery_assigned", title="A")
        Notification.objects.create(user=self.user, event_type="delivery_assigned", title="B")

        self.assertEqual(NotificationService.mark_read(self.user, [first.id]), 1)
        self.assertEqual(NotificationService.mark_read(self.user), 1)
        self.assertFalse(Notification.objects.filter(is_read=False).exists())


class NotificationAPITestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="driver", password="pass")
        other = User.objects.create_user(username="other", password="pass")
        Notification.objects.create(user=self.user, event_type="delivery_assigned", title="Mine")
        Notification.objects.create(user=other, event_type="delivery_assigned", title="Theirs")
        self.client.force_authenticate(user=self.user)

    def test_history_is_scoped_to_user(self):
        response = self.client.get("/api/v1/notifications/my-history/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        titles = [row["title"] for row in response.data["results"]]
        self.assertEqual(titles, ["Mine"])

    def test_mark_read_api(self):
        response = self.client.post("/api/v1/notifications/mark-read/", {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["updated"], 1)

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.client.get("/api/v1/notifications/my-history/")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

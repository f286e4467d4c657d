# apps/notifications/services.py
import json
import logging

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from .models import Notification
from .tasks import deliver_realtime_notification

logger = logging.getLogger(__name__)


def group_for_user(user_id):
    return f"user_{user_id}"


class NotificationService:

    @staticmethod
    def emit(user, event_type, title, message="", data=None):
        """
        Persists the event and pushes it to the user's websocket group
        after commit. Delivery is fire-and-forget: a broken push never
        rolls back the dispatch operation that raised the event.
        """
        if user is None:
            logger.warning(f"Dropping '{event_type}' notification without a recipient")
            return None

        # Decimals/datetimes in payloads are stored as JSON-safe values
        payload = json.loads(json.dumps(data or {}, cls=DjangoJSONEncoder))

        notification = Notification.objects.create(
            user=user,
            event_type=event_type,
            title=title,
            message=message,
            data=payload,
        )

        def _push():
            try:
                deliver_realtime_notification.delay(notification.id)
            except Exception as exc:
                logger.warning(f"Could not queue notification {notification.id}: {exc}")

        transaction.on_commit(_push)
        return notification

    @staticmethod
    def mark_read(user, notification_ids=None):
        qs = Notification.objects.filter(user=user, is_read=False)
        if notification_ids:
            qs = qs.filter(id__in=notification_ids)
        return qs.update(is_read=True)

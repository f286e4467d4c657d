# apps/notifications/tasks.py
from asgiref.sync import async_to_sync
from celery import shared_task
from celery.utils.log import get_task_logger
from channels.layers import get_channel_layer

logger = get_task_logger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    queue='high_priority'  # Drivers wait on assignment pushes
)
def deliver_realtime_notification(self, notification_id):
    """
    Pushes a stored notification to the recipient's websocket group.
    """
    from .models import Notification
    from .services import group_for_user

    notification = Notification.objects.filter(id=notification_id).first()
    if notification is None:
        logger.warning(f"Notification {notification_id} vanished before delivery")
        return "Missing"

    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.error("No channel layer configured")
        return "Config Missing"

    try:
        async_to_sync(channel_layer.group_send)(
            group_for_user(notification.user_id),
            {
                "type": "notify",
                "id": notification.id,
                "event": notification.event_type,
                "title": notification.title,
                "message": notification.message,
                "data": notification.data,
                "created_at": notification.created_at.isoformat(),
            },
        )
        return "Sent"
    except (OSError, ConnectionError) as e:
        logger.warning(f"Channel layer push failed: {e}. Retrying...")
        raise self.retry(exc=e)

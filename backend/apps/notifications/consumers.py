# apps/notifications/consumers.py
import json
import logging

from channels.generic.websocket import AsyncWebsocketConsumer

from .services import group_for_user

logger = logging.getLogger(__name__)


class NotificationConsumer(AsyncWebsocketConsumer):
    """
    Per-user event stream (assignments, acceptances, payouts).
    Auth comes from the session/AuthMiddlewareStack scope.
    """

    async def connect(self):
        user = self.scope.get("user")
        if user is None or not user.is_authenticated:
            await self.close(code=4003)
            return

        self.group_name = group_for_user(user.id)
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

    async def disconnect(self, close_code):
        if hasattr(self, "group_name"):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def notify(self, event):
        await self.send(text_data=json.dumps({
            "type": event["event"],
            "id": event["id"],
            "title": event["title"],
            "message": event["message"],
            "data": event.get("data", {}),
            "created_at": event.get("created_at"),
        }))

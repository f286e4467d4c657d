# apps/delivery/consumers.py
import json
from channels.generic.websocket import AsyncWebsocketConsumer
from channels.db import database_sync_to_async

from apps.orders.models import Order


class LiveTrackingConsumer(AsyncWebsocketConsumer):
    """
    Real-time delivery tracking for one order.
    Auth: the session user from AuthMiddlewareStack.
    """

    async def connect(self):
        user = self.scope.get("user")
        if user is None or not user.is_authenticated:
            await self.close(code=4003)
            return

        try:
            self.order_id = int(self.scope['url_route']['kwargs']['order_id'])
        except (KeyError, ValueError):
            await self.close(code=4003)
            return

        self.room_group_name = f"tracking_{self.order_id}"

        if await self.can_access_job(user, self.order_id):
            await self.channel_layer.group_add(
                self.room_group_name,
                self.channel_name
            )
            await self.accept()
        else:
            await self.close(code=4003)

    async def disconnect(self, close_code):
        if hasattr(self, 'room_group_name'):
            await self.channel_layer.group_discard(
                self.room_group_name,
                self.channel_name,
            )

    async def receive(self, text_data=None, bytes_data=None):
        # Listen-only; drivers push location over HTTP (DeliveryLocationAPIView)
        pass

    async def location_broadcast(self, event):
        await self.send(text_data=json.dumps({
            "type": "driver_location",
            "lat": event["lat"],
            "lng": event["lng"],
            "heading": event.get("heading"),
        }))

    async def status_update(self, event):
        await self.send(text_data=json.dumps({
            "type": "status_update",
            "status": event["status"],
            "message": event.get("message", ""),
        }))

    async def chat_message(self, event):
        await self.send(text_data=json.dumps({
            "type": "chat_message",
            "id": event["id"],
            "sender_type": event["sender_type"],
            "message": event["message"],
            "created_at": event["created_at"],
        }))

    @database_sync_to_async
    def can_access_job(self, user, order_id):
        """
        Authorization: the customer, the assigned driver, or staff.
        """
        order = Order.objects.select_related('delivery__driver').filter(id=order_id).first()
        if order is None:
            return False

        if user.is_staff or order.customer_id == user.id:
            return True

        delivery = getattr(order, 'delivery', None)
        driver = getattr(user, 'driver_profile', None)
        return bool(delivery and driver and delivery.driver_id == driver.id)

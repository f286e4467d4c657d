# apps/delivery/services.py
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from . import state_machine as sm
from .models import Delivery, DeliveryIssue, ProofOfDelivery
from apps.drivers.models import Driver
from apps.drivers.services import DriverService, ShiftService
from apps.notifications.services import NotificationService
from apps.orders.models import Order
from apps.utils.exceptions import (
    BusinessLogicException,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from apps.utils.geo import is_valid_coordinate
from apps.utils.money import to_money

logger = logging.getLogger(__name__)


def tracking_group(order_id):
    return f"tracking_{order_id}"


def broadcast_tracking(order_id, message):
    """
    Queues a message for everyone watching the order's tracking socket.
    Runs after commit; a dead channel layer never breaks the request.
    """
    def _send():
        channel_layer = get_channel_layer()
        if channel_layer is None:
            return
        try:
            async_to_sync(channel_layer.group_send)(tracking_group(order_id), message)
        except Exception as exc:
            logger.warning(f"Tracking broadcast failed for order {order_id}: {exc}")

    transaction.on_commit(_send)


class DeliveryService:
    """
    Driver-facing delivery lifecycle after assignment. Assignment itself
    lives in AssignmentService (auto_assign.py).
    """

    @staticmethod
    def get_delivery(delivery_id, for_update=False):
        qs = Delivery.objects.all()
        if for_update:
            qs = qs.select_for_update()
        delivery = qs.filter(id=delivery_id).first()
        if delivery is None:
            raise NotFoundError("Delivery not found", code="delivery_not_found")
        return delivery

    @staticmethod
    def _ensure_owner(delivery, driver):
        if driver is not None and delivery.driver_id != driver.id:
            raise PermissionDeniedError("Delivery is not assigned to you", code="not_your_delivery")

    @staticmethod
    def sync_order(delivery, driver_info=None):
        """Writes the delivery status (and optionally driver info) back onto the order."""
        updates = {"delivery_status": delivery.status, "updated_at": timezone.now()}
        if driver_info is not None:
            updates["driver_info"] = driver_info
        if delivery.status == sm.DELIVERED:
            updates["status"] = "completed"
        Order.objects.filter(id=delivery.order_id).update(**updates)

    @staticmethod
    @transaction.atomic
    def update_status(delivery_id, new_status, driver=None, actor=None, latitude=None, longitude=None, note=""):
        """
        Table-validated status change. Assignment targets go through
        AssignmentService and `delivered` goes through complete_delivery.
        """
        if new_status in (sm.ASSIGNED, sm.ACCEPTED):
            raise InvalidStateError(
                "Assignment states are set by the assignment flow", code="use_assignment_flow"
            )
        if new_status == sm.DELIVERED:
            return DeliveryService.complete_delivery(delivery_id, driver=driver, actor=actor)
        if new_status == sm.CANCELLED:
            return DeliveryService.cancel_delivery(
                delivery_id,
                cancelled_by="driver" if driver else "admin",
                reason=note,
                actor=actor,
            )

        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        DeliveryService._ensure_owner(delivery, driver)
        sm.transition(delivery.status, new_status)

        if new_status == sm.PENDING and delivery.status in sm.DRIVER_BUSY_STATUSES:
            # Hand-back edges belong to reject/expiry
            raise InvalidStateError(
                "Use reject to hand a delivery back", code="use_assignment_flow"
            )

        previous = delivery.status
        delivery.update_status(new_status, latitude=latitude, longitude=longitude, note=note, actor=actor)

        if new_status in (sm.FAILED, sm.RETURNED) and previous in sm.DRIVER_BUSY_STATUSES:
            DeliveryService._release_driver(delivery, completed=False)

        if new_status == sm.PENDING:
            # failed -> pending: back into the dispatch pool
            delivery.driver = None
            delivery.job_status = "searching"
            delivery.save(update_fields=["driver", "job_status", "updated_at"])
            DeliveryService.sync_order(delivery, driver_info={})

            from .tasks import retry_auto_assign_delivery
            transaction.on_commit(lambda: retry_auto_assign_delivery.delay(delivery.id))
        else:
            DeliveryService.sync_order(delivery)

        broadcast_tracking(delivery.order_id, {
            "type": "status_update",
            "status": delivery.status,
            "message": note or delivery.get_status_display(),
        })
        logger.info(f"Delivery {delivery.delivery_number}: {previous} -> {new_status}")
        return delivery

    @staticmethod
    def _release_driver(delivery, completed):
        """Frees the driver and folds an unsuccessful delivery into their stats and shift."""
        driver = DriverService.get_driver(delivery.driver_id, for_update=True)
        driver.record_delivery_outcome(completed=completed)
        driver.release()
        driver.save(update_fields=[
            "current_delivery", "is_available", "shift_status",
            "total_deliveries", "completed_deliveries", "cancelled_deliveries",
            "completion_rate", "updated_at",
        ])
        ShiftService.record_delivery(driver, completed=completed)
        return driver

    @staticmethod
    @transaction.atomic
    def update_location(delivery_id, driver, latitude, longitude, accuracy=None, speed=None, heading=None):
        if not is_valid_coordinate(latitude, longitude):
            raise BusinessLogicException("Coordinates out of bounds", code="invalid_coordinates")

        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        DeliveryService._ensure_owner(delivery, driver)
        if delivery.status not in sm.DRIVER_BUSY_STATUSES:
            raise InvalidStateError("Delivery is not in progress", code="delivery_not_active")

        point = delivery.update_driver_location(
            latitude, longitude, accuracy=accuracy, speed=speed, heading=heading
        )
        ShiftService.update_location(driver, latitude, longitude)

        broadcast_tracking(delivery.order_id, {
            "type": "location_broadcast",
            "lat": float(latitude),
            "lng": float(longitude),
            "heading": heading,
        })
        return point

    @staticmethod
    @transaction.atomic
    def add_chat_message(delivery_id, user, message, message_type="text", metadata=None):
        if not (message or "").strip():
            raise BusinessLogicException("Message cannot be empty", code="empty_message")

        delivery = DeliveryService.get_delivery(delivery_id)
        driver = getattr(user, "driver_profile", None)

        if driver is not None and delivery.driver_id == driver.id:
            sender_type = "driver"
        elif delivery.order.customer_id == user.id:
            sender_type = "customer"
        elif user.is_staff:
            sender_type = "support"
        else:
            raise PermissionDeniedError("Not a participant of this delivery", code="not_participant")

        chat = delivery.add_chat_message(
            sender_type, message.strip(), sender=user, message_type=message_type, metadata=metadata
        )
        broadcast_tracking(delivery.order_id, {
            "type": "chat_message",
            "id": chat.id,
            "sender_type": sender_type,
            "message": chat.message,
            "created_at": chat.created_at.isoformat(),
        })
        return chat

    @staticmethod
    @transaction.atomic
    def submit_proof(delivery_id, driver, pod_type, photo_url="", signature_url="", otp=None,
                     latitude=None, longitude=None, recipient_name="", notes=""):
        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        DeliveryService._ensure_owner(delivery, driver)

        if delivery.status not in sm.COMPLETABLE_STATUSES:
            raise InvalidStateError("Proof can only be submitted at the drop-off", code="delivery_not_active")

        otp_verified = False
        if pod_type == "otp":
            if not delivery.verify_otp(otp):
                raise BusinessLogicException("Invalid OTP", code="invalid_otp")
            otp_verified = True
        elif pod_type == "photo" and not photo_url:
            raise BusinessLogicException("Photo URL is required", code="proof_required")
        elif pod_type == "signature" and not signature_url:
            raise BusinessLogicException("Signature URL is required", code="proof_required")

        proof, _ = ProofOfDelivery.objects.update_or_create(
            delivery=delivery,
            defaults={
                "pod_type": pod_type,
                "photo_url": photo_url or "",
                "signature_url": signature_url or "",
                "otp_verified": otp_verified,
                "customer_confirmed_at": timezone.now() if pod_type == "customer_confirm" else None,
                "latitude": latitude,
                "longitude": longitude,
                "recipient_name": recipient_name or "",
                "notes": notes or "",
                "completed_at": timezone.now(),
            },
        )
        delivery.record_event("proof_submitted", note=pod_type, latitude=latitude, longitude=longitude)
        return proof

    @staticmethod
    def _check_proof(delivery, otp):
        proof = ProofOfDelivery.objects.filter(delivery=delivery).first()

        if delivery.pod_requires_otp and not (proof and proof.otp_verified):
            if not delivery.verify_otp(otp):
                raise BusinessLogicException("Invalid OTP", code="invalid_otp")
        if delivery.pod_requires_photo and not (proof and proof.photo_url):
            raise BusinessLogicException("Photo proof is required", code="proof_required")
        if delivery.pod_requires_signature and not (proof and proof.signature_url):
            raise BusinessLogicException("Signature is required", code="proof_required")

    @staticmethod
    @transaction.atomic
    def complete_delivery(delivery_id, driver=None, otp=None, actual_distance_km=None, actor=None,
                          latitude=None, longitude=None):
        """
        Driver hands the order over. Verifies proof, prices the delivery
        and settles it onto the driver in the same transaction.
        """
        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        DeliveryService._ensure_owner(delivery, driver)

        if delivery.status not in sm.COMPLETABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot complete a delivery that is {delivery.status}", code="delivery_not_completable"
            )
        if delivery.driver_id is None:
            raise InvalidStateError("Delivery has no driver", code="delivery_not_completable")

        DeliveryService._check_proof(delivery, otp)

        if actual_distance_km is not None:
            if actual_distance_km < 0:
                raise BusinessLogicException("Distance cannot be negative", code="invalid_distance")
            delivery.actual_distance_km = float(actual_distance_km)

        if delivery.status == sm.IN_TRANSIT:
            delivery.update_status(sm.ARRIVED, latitude=latitude, longitude=longitude, actor=actor)
        sm.transition(delivery.status, sm.DELIVERED)
        delivery.update_status(sm.DELIVERED, latitude=latitude, longitude=longitude, actor=actor)

        earnings = DeliveryService._settle_completed_delivery(delivery)
        DeliveryService.sync_order(delivery)

        NotificationService.emit(
            delivery.order.customer,
            "delivery_completed",
            "Order delivered",
            f"Your order was delivered by {delivery.driver.full_name}.",
            {"delivery_id": delivery.id, "order_id": delivery.order_id},
        )
        broadcast_tracking(delivery.order_id, {
            "type": "status_update",
            "status": delivery.status,
            "message": "Delivered",
        })

        logger.info(f"Delivery {delivery.delivery_number} completed, earnings {earnings['total']}")
        return delivery

    @staticmethod
    def _settle_completed_delivery(delivery):
        """
        Prices the delivery and moves the money: delivery breakdown, driver
        balance (F() increments), driver stats, active shift.
        """
        from apps.payouts.services import EarningsService

        distance = delivery.actual_distance_km
        if distance is None:
            distance = delivery.estimated_distance_km

        earnings = EarningsService.calculate_delivery_earnings(
            base_fee=delivery.base_fee,
            distance_km=distance,
            wait_minutes=delivery.wait_minutes,
            tip=delivery.tip,
            when=delivery.actual_delivery_time,
        )
        delivery.apply_earnings(earnings)
        delivery.save(update_fields=list(Delivery.EARNINGS_FIELDS) + ["earnings_total", "updated_at"])

        total = to_money(delivery.earnings_total)
        Driver.objects.filter(id=delivery.driver_id).update(
            current_balance=F("current_balance") + total,
            lifetime_earnings=F("lifetime_earnings") + total,
        )

        driver = DriverService.get_driver(delivery.driver_id, for_update=True)
        driver.record_delivery_outcome(completed=True)
        driver.release()
        driver.save(update_fields=[
            "current_delivery", "is_available", "shift_status",
            "total_deliveries", "completed_deliveries", "cancelled_deliveries",
            "completion_rate", "updated_at",
        ])

        ShiftService.record_delivery(
            driver,
            completed=True,
            distance_km=distance,
            duration_minutes=delivery.actual_duration_minutes or 0,
            earnings={
                "delivery_fee": delivery.base_fee,
                "distance_bonus": delivery.distance_bonus,
                "wait_time_bonus": delivery.wait_time_bonus,
                "peak_hour_bonus": delivery.peak_hour_bonus,
                "tip": delivery.tip,
            },
        )
        return earnings

    @staticmethod
    @transaction.atomic
    def report_issue(delivery_id, user, issue_type, description=""):
        valid_types = {choice for choice, _ in DeliveryIssue.ISSUE_TYPE_CHOICES}
        if issue_type not in valid_types:
            raise BusinessLogicException("Unknown issue type", code="invalid_issue_type")

        delivery = DeliveryService.get_delivery(delivery_id)
        issue = DeliveryIssue.objects.create(
            delivery=delivery,
            issue_type=issue_type,
            description=description or "",
            reported_by=user,
        )
        delivery.record_event("issue_reported", note=issue_type, actor=user)
        logger.warning(f"Issue '{issue_type}' reported on delivery {delivery.delivery_number}")
        return issue

    @staticmethod
    @transaction.atomic
    def cancel_delivery(delivery_id, cancelled_by="admin", reason="", actor=None):
        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        sm.transition(delivery.status, sm.CANCELLED)

        previous = delivery.status
        delivery.cancelled_by = cancelled_by
        delivery.cancellation_reason = reason or ""
        delivery.update_status(sm.CANCELLED, note=reason, actor=actor)

        if delivery.driver_id and previous in sm.DRIVER_BUSY_STATUSES:
            driver = DeliveryService._release_driver(delivery, completed=False)
            NotificationService.emit(
                driver.user,
                "delivery_cancelled",
                "Delivery cancelled",
                f"Delivery {delivery.delivery_number} was cancelled.",
                {"delivery_id": delivery.id, "reason": reason},
            )

        DeliveryService.sync_order(delivery)
        broadcast_tracking(delivery.order_id, {
            "type": "status_update",
            "status": delivery.status,
            "message": reason or "Cancelled",
        })
        logger.info(f"Delivery {delivery.delivery_number} cancelled by {cancelled_by}")
        return delivery

    @staticmethod
    @transaction.atomic
    def rate_delivery(delivery_id, user, rating, feedback=""):
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            raise BusinessLogicException("Rating must be a number", code="invalid_rating")
        if not 1 <= rating <= 5:
            raise BusinessLogicException("Rating must be between 1 and 5", code="invalid_rating")

        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        if delivery.order.customer_id != user.id:
            raise PermissionDeniedError("Only the customer can rate this delivery", code="not_your_delivery")
        if delivery.status != sm.DELIVERED:
            raise InvalidStateError("Only delivered orders can be rated", code="delivery_not_delivered")
        if delivery.customer_rating is not None:
            raise InvalidStateError("Delivery already rated", code="already_rated")

        delivery.customer_rating = rating
        delivery.customer_feedback = feedback or ""
        delivery.rated_at = timezone.now()
        delivery.save(update_fields=["customer_rating", "customer_feedback", "rated_at", "updated_at"])

        driver = DriverService.get_driver(delivery.driver_id, for_update=True)
        driver.apply_rating(rating)
        driver.save(update_fields=["average_rating", "total_ratings", "updated_at"])
        return delivery

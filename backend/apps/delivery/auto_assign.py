# apps/delivery/auto_assign.py
import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction, OperationalError
from django.db.models import Avg, Count, F, Q, ExpressionWrapper, DurationField
from django.utils import timezone

from . import state_machine as sm
from .models import Delivery
from .services import DeliveryService, broadcast_tracking
from apps.drivers.models import Driver
from apps.drivers.services import DriverService
from apps.notifications.services import NotificationService
from apps.orders.models import Order
from apps.restaurants.models import Restaurant
from apps.utils.exceptions import (
    BusinessLogicException,
    InvalidStateError,
    NotFoundError,
    ResourceUnavailableError,
)
from apps.utils.geo import (
    bounding_box,
    estimate_eta_minutes,
    haversine_km,
    score_driver,
)
from apps.utils.money import to_money

logger = logging.getLogger(__name__)

FREE_DISTANCE_KM = 3
DISTANCE_RATE = Decimal("0.5")


def _setting(name, default):
    return getattr(settings, name, default)


class AssignmentService:
    """
    Driver matching. Candidates are ranked by score; locks are taken
    NOWAIT on the driver row so contended drivers are skipped, not waited on.
    """

    # Candidates tried per auto-assign run before giving up
    MAX_CANDIDATES_PER_RUN = 5

    @staticmethod
    def find_available_drivers(latitude, longitude, radius_km=None, restaurant_id=None, exclude_driver_ids=()):
        """
        Ranked candidate list (no side effects): verified, online, available,
        no current delivery, known location within `radius_km`.
        """
        radius_km = radius_km or _setting("DISPATCH_SEARCH_RADIUS_KM", 10)
        min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_km)

        qs = Driver.objects.filter(
            status="verified",
            shift_status="online",
            is_available=True,
            current_delivery__isnull=True,
            current_latitude__isnull=False,
            current_longitude__isnull=False,
            current_latitude__gte=min_lat,
            current_latitude__lte=max_lat,
        ).select_related("user")

        # Longitude window wraps across the antimeridian
        if min_lng <= max_lng:
            qs = qs.filter(current_longitude__gte=min_lng, current_longitude__lte=max_lng)
        else:
            qs = qs.filter(Q(current_longitude__gte=min_lng) | Q(current_longitude__lte=max_lng))

        if restaurant_id is not None:
            qs = qs.filter(Q(restaurants__isnull=True) | Q(restaurants__id=restaurant_id)).distinct()

        if exclude_driver_ids:
            qs = qs.exclude(id__in=list(exclude_driver_ids))

        candidates = []
        for driver in qs:
            distance = haversine_km(latitude, longitude, driver.current_latitude, driver.current_longitude)
            if distance > radius_km:
                continue
            candidates.append({
                "driver": driver,
                "distance_km": round(distance, 2),
                "eta_minutes": estimate_eta_minutes(distance),
                "score": score_driver(driver, distance, radius_km),
            })

        candidates.sort(key=lambda c: (-c["score"], c["distance_km"]))
        return candidates

    @staticmethod
    @transaction.atomic
    def create_delivery_for_order(order_id):
        """
        One delivery per order: returns the existing one on repeat calls.
        """
        order = Order.objects.select_for_update().select_related("restaurant").filter(id=order_id).first()
        if order is None:
            raise NotFoundError("Order not found", code="order_not_found")

        existing = Delivery.objects.filter(order=order).first()
        if existing is not None:
            return existing

        if order.fulfillment_type != "delivery":
            raise InvalidStateError("Order is not a delivery order", code="not_delivery_order")
        if order.restaurant is None:
            raise NotFoundError("Restaurant not found", code="restaurant_not_found")

        restaurant = order.restaurant
        pickup = restaurant.pickup_address()
        dropoff = order.delivery_address or {}
        if not dropoff:
            dropoff = dict(pickup)

        delivery = Delivery.objects.create(
            order=order,
            restaurant=restaurant,
            status=sm.PENDING,
            job_status="searching",
            pickup_address=pickup,
            pickup_latitude=restaurant.latitude,
            pickup_longitude=restaurant.longitude,
            dropoff_address=dropoff,
            dropoff_latitude=dropoff.get("latitude"),
            dropoff_longitude=dropoff.get("longitude"),
            delivery_instructions=order.delivery_instructions or "",
            base_fee=to_money(_setting("DISPATCH_BASE_DELIVERY_FEE", "3.00")),
            currency=_setting("PAYOUT_CURRENCY", "EUR"),
        )
        delivery.recompute_earnings_total()
        delivery.save(update_fields=["earnings_total"])
        delivery.record_event(sm.PENDING, note="Delivery created")

        order.delivery_status = sm.PENDING
        order.save(update_fields=["delivery_status", "updated_at"])

        logger.info(f"Delivery {delivery.delivery_number} created for order {order.id}")
        return delivery

    @staticmethod
    @transaction.atomic
    def assign_delivery_to_driver(delivery_id, driver_id, actor=None, source="manual", nowait=False):
        """
        Locks the delivery, then the driver. A second assignment racing for
        the same driver sees is_available=False once the first commits.
        """
        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)

        driver = Driver.objects.select_for_update(nowait=nowait).select_related("user").filter(id=driver_id).first()
        if driver is None:
            raise NotFoundError("Driver not found", code="driver_not_found")

        if delivery.status != sm.PENDING:
            raise InvalidStateError(
                f"Delivery is {delivery.status}, expected pending", code="delivery_not_pending"
            )
        if (
            driver.status != "verified"
            or driver.shift_status != "online"
            or not driver.is_available
            or driver.current_delivery_id is not None
        ):
            raise InvalidStateError("Driver is not available", code="driver_unavailable")

        timeout = _setting("DISPATCH_ASSIGNMENT_TIMEOUT_SECONDS", 120)
        now = timezone.now()

        delivery.driver = driver
        delivery.job_status = "assigned"
        delivery.source = source
        delivery.assignment_attempts += 1
        delivery.assignment_expires_at = now + timedelta(seconds=timeout)
        delivery.update_status(sm.ASSIGNED, actor=actor, at=now, note=f"Assigned to driver {driver.id}")

        driver.mark_on_delivery(delivery)
        driver.save(update_fields=["current_delivery", "is_available", "shift_status", "updated_at"])

        DeliveryService.sync_order(delivery, driver_info=driver.public_snapshot())

        NotificationService.emit(
            driver.user,
            "delivery_assigned",
            "New delivery assigned",
            f"Pickup at {delivery.restaurant.name}.",
            {
                "delivery_id": delivery.id,
                "delivery_number": delivery.delivery_number,
                "order_id": delivery.order_id,
                "pickup": delivery.pickup_address,
                "expires_at": delivery.assignment_expires_at,
            },
        )
        broadcast_tracking(delivery.order_id, {
            "type": "status_update",
            "status": delivery.status,
            "message": "Driver assigned",
        })

        logger.info(f"Delivery {delivery.delivery_number} assigned to driver {driver.id} ({source})")
        return delivery

    @staticmethod
    def _excluded_drivers(delivery, extra=()):
        excluded = set(extra or ())
        if _setting("DISPATCH_EXCLUDE_REJECTED_DRIVERS", True):
            excluded.update(delivery.rejected_driver_ids or [])
        return excluded

    @staticmethod
    @transaction.atomic
    def auto_assign_delivery(delivery_id, exclude_driver_ids=()):
        """
        Scores the pool around the restaurant and assigns the best driver
        whose row can be locked. Raises ResourceUnavailableError when no
        one is in range.
        """
        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        restaurant = Restaurant.objects.filter(id=delivery.restaurant_id).first()
        if restaurant is None or not restaurant.has_coordinates:
            raise NotFoundError("Restaurant location not found", code="restaurant_not_found")

        if delivery.status != sm.PENDING:
            raise InvalidStateError(
                f"Delivery is {delivery.status}, expected pending", code="delivery_not_pending"
            )

        radius = _setting("DISPATCH_SEARCH_RADIUS_KM", 10)
        candidates = AssignmentService.find_available_drivers(
            restaurant.latitude,
            restaurant.longitude,
            radius_km=radius,
            restaurant_id=restaurant.id,
            exclude_driver_ids=AssignmentService._excluded_drivers(delivery, exclude_driver_ids),
        )
        if not candidates:
            raise ResourceUnavailableError("No available drivers found", code="no_drivers_available")

        for candidate in candidates[:AssignmentService.MAX_CANDIDATES_PER_RUN]:
            driver = candidate["driver"]
            try:
                # Savepoint: a skipped candidate rolls back its route estimate too
                with transaction.atomic():
                    AssignmentService._estimate_route(delivery, restaurant, candidate["distance_km"])
                    return AssignmentService.assign_delivery_to_driver(
                        delivery.id, driver.id, source="auto", nowait=True
                    )
            except OperationalError:
                logger.info(f"Driver {driver.id} is locked by another assignment, skipping")
            except InvalidStateError as exc:
                if exc.code != "driver_unavailable":
                    raise
                logger.info(f"Driver {driver.id} became unavailable, skipping")

        raise ResourceUnavailableError("No available drivers found", code="no_drivers_available")

    @staticmethod
    def _estimate_route(delivery, restaurant, driver_distance_km):
        """
        Route = driver->restaurant (rounded to 0.1 km) + restaurant->customer.
        Distance bonus over the first 3 km is added to the estimate.
        """
        to_restaurant = round(driver_distance_km, 1)
        to_customer = 0.0
        if delivery.dropoff_coordinates is not None:
            to_customer = haversine_km(
                restaurant.latitude, restaurant.longitude, *delivery.dropoff_coordinates
            )
        total = round(to_restaurant + to_customer, 2)

        delivery.estimated_distance_km = total
        delivery.estimated_duration_minutes = estimate_eta_minutes(total)
        if total > FREE_DISTANCE_KM:
            delivery.distance_bonus = to_money(Decimal(str(total - FREE_DISTANCE_KM)) * DISTANCE_RATE)
        else:
            delivery.distance_bonus = to_money(0)
        delivery.recompute_earnings_total()
        delivery.save(update_fields=[
            "estimated_distance_km", "estimated_duration_minutes", "distance_bonus", "earnings_total", "updated_at",
        ])

    @staticmethod
    @transaction.atomic
    def accept_assignment(delivery_id, driver_id):
        delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
        if delivery.driver_id != driver_id:
            raise InvalidStateError("Delivery is not assigned to this driver", code="not_assigned_to_driver")
        if delivery.status != sm.ASSIGNED:
            raise InvalidStateError(
                f"Delivery is {delivery.status}, expected assigned", code="delivery_not_assigned"
            )

        sm.transition(delivery.status, sm.ACCEPTED)
        delivery.assignment_expires_at = None
        delivery.update_status(sm.ACCEPTED, note=f"Accepted by driver {driver_id}")
        DeliveryService.sync_order(delivery)

        order = Order.objects.select_related("customer").get(id=delivery.order_id)
        NotificationService.emit(
            order.customer,
            "delivery_accepted",
            "Driver on the way",
            f"{delivery.driver.full_name} accepted your delivery.",
            {
                "delivery_id": delivery.id,
                "order_id": order.id,
                "driver": delivery.driver.public_snapshot(),
                "estimated_duration_minutes": delivery.estimated_duration_minutes,
            },
        )
        broadcast_tracking(order.id, {
            "type": "status_update",
            "status": delivery.status,
            "message": "Driver accepted",
        })
        return delivery

    @staticmethod
    def reject_assignment(delivery_id, driver_id, reason=""):
        """
        Driver hands the job back. The delivery returns to pending and is
        re-offered to the remaining pool, bounded by the attempt cap. With
        no candidate left a background retry is queued.
        """
        with transaction.atomic():
            delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
            if delivery.driver_id != driver_id:
                raise InvalidStateError("Delivery is not assigned to this driver", code="not_assigned_to_driver")
            if delivery.status not in sm.REJECTABLE_STATUSES:
                raise InvalidStateError(
                    f"Delivery is {delivery.status} and can no longer be rejected", code="delivery_not_rejectable"
                )
            AssignmentService._hand_back(delivery, reason or "rejected")

        return AssignmentService.reassign(delivery_id)

    @staticmethod
    def _hand_back(delivery, reason):
        """Frees the driver and resets the delivery to pending. Caller holds the lock."""
        driver = DriverService.get_driver(delivery.driver_id, for_update=True)

        rejected = list(delivery.rejected_driver_ids or [])
        if driver.id not in rejected:
            rejected.append(driver.id)
        delivery.rejected_driver_ids = rejected
        delivery.record_event("rejected", note=reason, actor=driver.user)

        sm.transition(delivery.status, sm.PENDING)
        delivery.driver = None
        delivery.job_status = "searching"
        delivery.assignment_expires_at = None
        delivery.update_status(sm.PENDING, note=f"Driver {driver.id} released: {reason}")

        driver.release()
        driver.save(update_fields=["current_delivery", "is_available", "shift_status", "updated_at"])

        DeliveryService.sync_order(delivery, driver_info={})
        logger.info(f"Driver {driver.id} released delivery {delivery.delivery_number} ({reason})")

    @staticmethod
    def reassign(delivery_id):
        """
        One synchronous reassignment attempt. Returns the delivery in its
        resulting state; never loops.
        """
        max_attempts = _setting("DISPATCH_MAX_ASSIGNMENT_ATTEMPTS", 5)
        delivery = DeliveryService.get_delivery(delivery_id)

        if delivery.assignment_attempts >= max_attempts:
            Delivery.objects.filter(id=delivery.id).update(job_status="manual_intervention")
            delivery.refresh_from_db()
            logger.critical(
                f"Delivery {delivery.delivery_number} exhausted {max_attempts} assignment attempts. "
                f"Moved to Manual Intervention."
            )
            return delivery

        try:
            return AssignmentService.auto_assign_delivery(delivery.id)
        except ResourceUnavailableError as exc:
            logger.info(f"{exc.message} for delivery {delivery.delivery_number}; retry queued")
            from .tasks import retry_auto_assign_delivery
            countdown = _setting("DISPATCH_RETRY_COUNTDOWN_SECONDS", 30)
            transaction.on_commit(
                lambda: retry_auto_assign_delivery.apply_async(args=[delivery.id], countdown=countdown)
            )
            delivery.refresh_from_db()
            return delivery
        except BusinessLogicException as exc:
            # The hand-back already committed; the delivery stays pending for ops
            logger.warning(f"Reassignment of delivery {delivery.delivery_number} failed: {exc.message}")
            delivery.refresh_from_db()
            return delivery

    @staticmethod
    def expire_stale_assignments(now=None):
        """
        Assignments nobody accepted in time count as a rejection ('timeout').
        Returns the number of expired assignments.
        """
        now = now or timezone.now()
        stale_ids = list(
            Delivery.objects.filter(status=sm.ASSIGNED, assignment_expires_at__lt=now)
            .values_list("id", flat=True)
        )

        expired = 0
        for delivery_id in stale_ids:
            try:
                with transaction.atomic():
                    delivery = DeliveryService.get_delivery(delivery_id, for_update=True)
                    # Re-check under the lock: the driver may have accepted meanwhile
                    if delivery.status != sm.ASSIGNED or not delivery.assignment_expires_at \
                            or delivery.assignment_expires_at >= now:
                        continue
                    AssignmentService._hand_back(delivery, "timeout")
                expired += 1
                AssignmentService.reassign(delivery_id)
            except BusinessLogicException as exc:
                logger.warning(f"Could not expire assignment of delivery {delivery_id}: {exc.message}")

        if expired:
            logger.info(f"Expired {expired} stale assignments")
        return expired

    @staticmethod
    def get_assignment_stats(restaurant_id=None, start=None, end=None):
        qs = Delivery.objects.all()
        if restaurant_id is not None:
            qs = qs.filter(restaurant_id=restaurant_id)
        if start:
            qs = qs.filter(created_at__gte=start)
        if end:
            qs = qs.filter(created_at__lte=end)

        total = qs.count()
        delivered = qs.filter(status=sm.DELIVERED).count()

        assign_latency = qs.filter(assigned_at__isnull=False).aggregate(
            avg=Avg(ExpressionWrapper(F("assigned_at") - F("created_at"), output_field=DurationField()))
        )["avg"]
        delivery_latency = qs.filter(
            actual_delivery_time__isnull=False, accepted_at__isnull=False
        ).aggregate(
            avg=Avg(ExpressionWrapper(F("actual_delivery_time") - F("accepted_at"), output_field=DurationField()))
        )["avg"]

        top_drivers = (
            qs.filter(status=sm.DELIVERED, driver__isnull=False)
            .values("driver_id")
            .annotate(deliveries=Count("id"))
            .order_by("-deliveries", "driver_id")[:5]
        )

        return {
            "total_deliveries": total,
            "delivered": delivered,
            "manual_intervention": qs.filter(job_status="manual_intervention").count(),
            "avg_assignment_minutes": round(assign_latency.total_seconds() / 60, 1) if assign_latency else 0,
            "avg_delivery_minutes": round(delivery_latency.total_seconds() / 60, 1) if delivery_latency else 0,
            "success_rate": round(delivered / total * 100, 1) if total else 0,
            "top_drivers": [
                {"driver_id": row["driver_id"], "deliveries": row["deliveries"]}
                for row in top_drivers
            ],
        }

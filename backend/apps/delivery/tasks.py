# apps/delivery/tasks.py
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.db import transaction, OperationalError
from django.utils import timezone

from . import state_machine as sm
from .auto_assign import AssignmentService
from .models import Delivery
from apps.utils.exceptions import BusinessLogicException, ResourceUnavailableError
from apps.utils.idempotency import job_lock

logger = logging.getLogger(__name__)


def _flag_manual_intervention(delivery_id):
    with transaction.atomic():
        # Re-fetch with lock so a concurrent assignment wins cleanly
        delivery = Delivery.objects.select_for_update().filter(id=delivery_id).first()
        if delivery is not None and delivery.status == sm.PENDING:
            delivery.job_status = "manual_intervention"
            delivery.save(update_fields=["job_status", "updated_at"])


@shared_task(
    bind=True,
    max_retries=8,
    default_retry_delay=30,
    queue='high_priority'  # Critical for SLA
)
def retry_auto_assign_delivery(self, delivery_id):
    """
    Background retry of auto-assignment with exponential backoff.
    Gives up into manual intervention after max_retries or the attempt cap.
    """
    delivery = Delivery.objects.filter(id=delivery_id).first()
    if delivery is None:
        logger.error(f"Delivery {delivery_id} does not exist.")
        return "Delivery Not Found"

    # Stop if someone else already moved it on
    if delivery.status != sm.PENDING:
        return f"Delivery in state: {delivery.status}"

    max_attempts = getattr(settings, "DISPATCH_MAX_ASSIGNMENT_ATTEMPTS", 5)
    if delivery.assignment_attempts >= max_attempts:
        _flag_manual_intervention(delivery_id)
        logger.critical(f"Delivery {delivery_id} hit the attempt cap. Moved to Manual Intervention.")
        return "Manual Intervention"

    try:
        assigned = AssignmentService.auto_assign_delivery(delivery_id)
        logger.info(f"Driver {assigned.driver_id} assigned to delivery {delivery_id}")
        return "Assigned"
    except ResourceUnavailableError:
        if self.request.retries >= self.max_retries:
            _flag_manual_intervention(delivery_id)
            logger.critical(f"Delivery {delivery_id} failed auto-assignment. Moved to Manual Intervention.")
            return "Manual Intervention"
        logger.info(f"No driver found for delivery {delivery_id}. Retrying...")
        raise self.retry(countdown=min(30 * 2 ** self.request.retries, 600))
    except OperationalError as exc:
        # Transient DB trouble (lock timeouts, dropped connection)
        logger.error(f"System error in auto-assign task for delivery {delivery_id}: {exc}")
        raise self.retry(exc=exc)
    except BusinessLogicException as exc:
        logger.warning(f"Auto-assign for delivery {delivery_id} stopped: {exc.message}")
        return f"Stopped: {exc.code}"


@shared_task(queue='high_priority')
def dispatch_order(order_id):
    """
    Entry point for the order source: creates the delivery and tries to
    place it immediately, falling back to the retry task.
    """
    delivery = AssignmentService.create_delivery_for_order(order_id)
    if delivery.status != sm.PENDING:
        return f"Delivery in state: {delivery.status}"

    try:
        AssignmentService.auto_assign_delivery(delivery.id)
        return "Assigned"
    except ResourceUnavailableError:
        retry_auto_assign_delivery.apply_async(args=[delivery.id], countdown=30)
        return "Queued"


@shared_task(queue='high_priority')
def expire_stale_assignments():
    """
    Beat: every minute. Assignments nobody accepted are handed back.
    """
    with job_lock("expire_stale_assignments", timeout=55) as acquired:
        if not acquired:
            return "Skipped: already running"
        expired = AssignmentService.expire_stale_assignments()
    return f"Expired {expired} assignments"


@shared_task(queue='low_priority')
def requeue_unassigned_deliveries():
    """
    Safety net: pending deliveries still searching after a few minutes
    get a fresh retry chain.
    """
    cutoff = timezone.now() - timedelta(minutes=5)
    since = timezone.now() - timedelta(hours=24)

    stuck_ids = list(
        Delivery.objects.filter(
            status=sm.PENDING,
            job_status="searching",
            created_at__gte=since,
            updated_at__lt=cutoff,
        ).values_list("id", flat=True)
    )

    for delivery_id in stuck_ids:
        retry_auto_assign_delivery.delay(delivery_id)

    return f"Retried assignment for {len(stuck_ids)} stuck deliveries."

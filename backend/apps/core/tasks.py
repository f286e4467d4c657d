# apps/core/tasks.py
import logging
from celery import shared_task
from django.core.cache import cache
from django.utils import timezone
from datetime import timedelta

from apps.delivery import state_machine as sm
from apps.delivery.models import Delivery

logger = logging.getLogger(__name__)

STUCK_AFTER = timedelta(hours=2)


@shared_task
def monitor_stuck_deliveries():
    """
    SLA Monitor: Alerts on deliveries waiting for ops, or open deliveries
    that haven't moved for two hours.
    """
    limit = timezone.now() - STUCK_AFTER

    needs_ops = Delivery.objects.filter(status=sm.PENDING, job_status="manual_intervention").count()
    not_moving = Delivery.objects.filter(
        status__in=sm.DRIVER_BUSY_STATUSES,
        updated_at__lt=limit,
    ).count()

    if needs_ops or not_moving:
        msg = (
            f"[SLA BREACH] Stuck Deliveries: "
            f"ManualIntervention={needs_ops}, NoMovement={not_moving}"
        )
        logger.warning(msg)
        return msg

    return "All systems nominal"


@shared_task
def beat_heartbeat():
    """
    Liveness Signal: Writes timestamp to the cache.
    The health check reads it to make sure the scheduler is alive.
    """
    cache.set("celery_beat_health", timezone.now().timestamp(), timeout=120)
    return "Beat Alive"

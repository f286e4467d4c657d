from celery import shared_task
from django.conf import settings
import logging

from .services import ShiftService
from apps.utils.idempotency import job_lock

logger = logging.getLogger(__name__)


@shared_task
def auto_end_stale_shifts():
    """
    Beat: every 15 minutes. Closes shifts drivers forgot to end.
    """
    max_hours = getattr(settings, "SHIFT_MAX_DURATION_HOURS", 14)

    with job_lock("auto_end_stale_shifts", timeout=60 * 10) as acquired:
        if not acquired:
            return "Skipped: already running"
        ended = ShiftService.auto_end_stale_shifts(max_hours)

    if ended:
        logger.warning(f"Auto-ended {ended} shifts older than {max_hours}h")
    return f"Ended {ended} shifts"

from celery import shared_task
from django.db import OperationalError
import logging

from .services import EarningsService, PayoutService
from apps.drivers.models import Driver
from apps.utils.exceptions import BusinessLogicException
from apps.utils.idempotency import job_lock

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def generate_single_driver_payout(self, driver_id):
    """
    Helper task to create one driver's weekly payout.
    Uses retries for transient database failures.
    """
    try:
        driver = Driver.objects.select_related("user").get(id=driver_id)
        payout = EarningsService.create_weekly_payout(driver)
        if payout:
            logger.info(f"Generated payout {payout.payout_number} for driver {driver_id} - Amount: {payout.net_amount}")
            return True
        return False
    except Driver.DoesNotExist:
        logger.error(f"Driver {driver_id} not found during payout generation.")
        return False
    except BusinessLogicException as e:
        logger.warning(f"Payout for driver {driver_id} skipped: {e.message}")
        return False
    except OperationalError as e:
        logger.error(f"Error generating payout for driver {driver_id}: {e}")
        raise self.retry(exc=e)


@shared_task
def generate_weekly_payouts():
    """
    Beat: Monday 02:00. Fans out one child task per driver so a slow
    driver doesn't hold locks for the whole batch.
    """
    with job_lock("generate_weekly_payouts", timeout=60 * 30) as acquired:
        if not acquired:
            return "Skipped: already running"

        logger.info("Starting weekly payout processing...")
        driver_ids = PayoutService.drivers_due_weekly_payout()
        for driver_id in driver_ids:
            generate_single_driver_payout.delay(driver_id)

    logger.info(f"Queued {len(driver_ids)} payout tasks.")
    return f"Queued {len(driver_ids)} tasks"

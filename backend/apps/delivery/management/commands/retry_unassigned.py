from django.core.management.base import BaseCommand
from apps.delivery import state_machine as sm
from apps.delivery.models import Delivery
from apps.delivery.tasks import retry_auto_assign_delivery


class Command(BaseCommand):
    help = "Retry driver assignment for pending deliveries that are still searching"

    def handle(self, *args, **kwargs):
        delivery_ids = Delivery.objects.filter(
            status=sm.PENDING,
            job_status="searching",
        ).values_list("id", flat=True)

        count = 0
        for delivery_id in delivery_ids:
            retry_auto_assign_delivery.delay(delivery_id)
            count += 1

        self.stdout.write(f"{count} retry tasks queued")

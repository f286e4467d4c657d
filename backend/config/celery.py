# config/celery.py
import os
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import before_task_publish, task_prerun, task_failure
from kombu import Queue

# Set default settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('config')
app.config_from_object('django.conf:settings', namespace='CELERY')

# ------------------------------------------------------------------------------
# RELIABILITY: Queue Definitions
# ------------------------------------------------------------------------------
app.conf.task_queues = (
    Queue('default', routing_key='default'),
    Queue('high_priority', routing_key='high_priority'),
    Queue('low_priority', routing_key='low_priority'),
)

app.conf.task_default_queue = 'default'
app.conf.task_default_exchange = 'default'
app.conf.task_default_routing_key = 'default'

# Worker Reliability Defaults
app.conf.task_acks_late = True
app.conf.worker_prefetch_multiplier = 1
app.conf.task_reject_on_worker_lost = True
app.conf.broker_connection_retry_on_startup = True

app.autodiscover_tasks()

# ------------------------------------------------------------------------------
# TRACING: Propagate Correlation ID from Web to Worker
# ------------------------------------------------------------------------------
from apps.core.middleware import CORRELATION_HEADER, get_correlation_id, set_correlation_id  # noqa: E402


@before_task_publish.connect
def transfer_correlation_id(headers=None, **kwargs):
    if headers is None:
        return
    correlation_id = get_correlation_id()
    if correlation_id:
        headers[CORRELATION_HEADER] = correlation_id


@task_prerun.connect
def restore_correlation_id(task=None, **kwargs):
    # Eager tasks run inside the caller's context already
    if task.request.is_eager:
        return
    headers = getattr(task.request, "headers", None) or {}
    correlation_id = headers.get(CORRELATION_HEADER) or getattr(task.request, CORRELATION_HEADER, None)
    set_correlation_id(correlation_id or task.request.id)


# ------------------------------------------------------------------------------
# DB HARDENING
# ------------------------------------------------------------------------------
@task_prerun.connect
def close_old_connections(**kwargs):
    """
    Prevents 'connection already closed' errors with PgBouncer/Docker.
    """
    if app.conf.task_always_eager:
        return
    from django.db import close_old_connections
    close_old_connections()


# ------------------------------------------------------------------------------
# DEAD LETTER LOGGING
# ------------------------------------------------------------------------------
logger = logging.getLogger('celery.dlq')


@task_failure.connect
def handle_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, traceback=None, **opts):
    task_name = sender.name if sender else 'unknown_task'
    logger.critical(
        f"[DLQ] Task Failed Permanently: {task_name} (ID: {task_id})",
        extra={
            'task_name': task_name,
            'task_id': task_id,
            'args': args,
            'kwargs': kwargs,
            'exception': str(exception)
        }
    )


# ------------------------------------------------------------------------------
# BEAT SCHEDULE
# ------------------------------------------------------------------------------
app.conf.beat_schedule = {
    'expire-stale-assignments-every-minute': {
        'task': 'apps.delivery.tasks.expire_stale_assignments',
        'schedule': crontab(minute='*'),
    },
    'requeue-unassigned-deliveries-every-5-mins': {
        'task': 'apps.delivery.tasks.requeue_unassigned_deliveries',
        'schedule': crontab(minute='*/5'),
    },
    'auto-end-stale-shifts-every-15-mins': {
        'task': 'apps.drivers.tasks.auto_end_stale_shifts',
        'schedule': crontab(minute='*/15'),
    },
    'generate-weekly-payouts-monday': {
        'task': 'apps.payouts.tasks.generate_weekly_payouts',
        'schedule': crontab(hour=2, minute=0, day_of_week='mon'),
    },
    'monitor-stuck-deliveries-every-5-mins': {
        'task': 'apps.core.tasks.monitor_stuck_deliveries',
        'schedule': crontab(minute='*/5'),
    },
    'health-check-heartbeat': {
        'task': 'apps.core.tasks.beat_heartbeat',
        'schedule': crontab(minute='*'),
    },
}

app.conf.task_routes = {
    'apps.delivery.tasks.retry_auto_assign_delivery': {'queue': 'high_priority'},
    'apps.delivery.tasks.dispatch_order': {'queue': 'high_priority'},
    'apps.notifications.tasks.deliver_realtime_notification': {'queue': 'high_priority'},
    'apps.payouts.tasks.*': {'queue': 'default'},
    'apps.core.tasks.*': {'queue': 'default'},
}

import time
import logging
from django.http import JsonResponse
from django.db import connection, DatabaseError
from django.core.cache import cache

logger = logging.getLogger(__name__)

BEAT_STALE_SECONDS = 90


def health_check(request):
    """
    Liveness Probe.
    Returns 200 if DB/cache are up.
    Returns 503 ONLY if critical infrastructure is unreachable.
    """
    status_data = {
        "status": "ok",
        "services": {"db": "ok", "cache": "ok", "beat": "ok"}
    }

    # 1. Check Database (Critical)
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError as e:
        logger.critical(f"Health Check DB Fail: {e}")
        status_data["status"] = "error"
        status_data["services"]["db"] = "unreachable"
        return JsonResponse(status_data, status=503)

    # 2. Check Cache (Critical: job locks and idempotency live there)
    try:
        cache.set("health_ping", "pong", timeout=5)
        cache_ok = cache.get("health_ping") == "pong"
    except (ConnectionError, OSError) as e:
        logger.critical(f"Health Check cache Fail: {e}")
        cache_ok = False

    if not cache_ok:
        status_data["status"] = "error"
        status_data["services"]["cache"] = "unreachable"
        return JsonResponse(status_data, status=503)

    # 3. Check Celery Beat (Non-Critical for Liveness, Critical for Alerts)
    # A slow scheduler must not get the web container restarted.
    last_beat = cache.get("celery_beat_health")
    if last_beat is None:
        status_data["services"]["beat"] = "warming_up"
    elif time.time() - float(last_beat) > BEAT_STALE_SECONDS:
        status_data["services"]["beat"] = "stuck"
        status_data["status"] = "degraded"

    return JsonResponse(status_data, status=200)

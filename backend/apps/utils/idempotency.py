# apps/utils/idempotency.py
import functools
import json
import logging
import zlib
from contextlib import contextmanager

from django.core.cache import cache
from django.core.serializers.json import DjangoJSONEncoder
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


def idempotent(timeout=86400):
    """
    Makes a money-moving POST safe to retry.
    The first 2xx response for an Idempotency-Key is replayed for `timeout` seconds.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(view_instance, request, *args, **kwargs):
            key = request.headers.get("Idempotency-Key")

            if not key:
                return Response(
                    {"error": {"code": "idempotency_key_required", "message": "Idempotency-Key header is required."}},
                    status=status.HTTP_400_BAD_REQUEST
                )

            if len(key) > 128:
                return Response(
                    {"error": {"code": "idempotency_key_too_long", "message": "Idempotency-Key too long (max 128 chars)."}},
                    status=status.HTTP_400_BAD_REQUEST
                )

            # Scoped per user so two drivers can't collide on the same key
            user_id = request.user.id if request.user.is_authenticated else "anon"
            cache_key = f"idempotency:{user_id}:{key}"
            lock_key = f"lock:{cache_key}"

            cached_response = cache.get(cache_key)
            if cached_response:
                try:
                    data = json.loads(zlib.decompress(cached_response["data_compressed"]).decode("utf-8"))
                    return Response(data, status=cached_response["status"])
                except (ValueError, zlib.error):
                    logger.warning(f"Discarding corrupt idempotency entry {cache_key}")
                    cache.delete(cache_key)

            if not cache.add(lock_key, "processing", timeout=30):
                return Response(
                    {"error": {"code": "duplicate_request", "message": "Duplicate request in progress."}},
                    status=status.HTTP_409_CONFLICT
                )

            try:
                response = func(view_instance, request, *args, **kwargs)

                if 200 <= response.status_code < 300:
                    response_json = json.dumps(response.data, cls=DjangoJSONEncoder)
                    cache.set(cache_key, {
                        "status": response.status_code,
                        "data_compressed": zlib.compress(response_json.encode("utf-8"))
                    }, timeout=timeout)

                return response
            finally:
                cache.delete(lock_key)
        return wrapper
    return decorator


@contextmanager
def job_lock(name, timeout=600):
    """
    Cluster-wide single-flight guard for periodic jobs.

    Yields True when this process owns the lock, False when another
    replica is already running the job.
    """
    lock_key = f"job_lock:{name}"
    acquired = cache.add(lock_key, "running", timeout=timeout)
    try:
        yield acquired
    finally:
        if acquired:
            cache.delete(lock_key)

import uuid
import logging
from contextvars import ContextVar

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# ContextVar for Correlation ID (Async Safe)
_correlation_id = ContextVar("correlation_id", default=None)


def get_correlation_id():
    return _correlation_id.get()


def set_correlation_id(value):
    return _correlation_id.set(value)


class CorrelationIDMiddleware:
    """
    Attaches a correlation id to every request and echoes it back.
    Celery tasks published during the request inherit it (config/celery.py).
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        # Client-supplied ids end up in logs; keep them bounded
        correlation_id = correlation_id[:64]
        token = _correlation_id.set(correlation_id)
        request.correlation_id = correlation_id

        try:
            response = self.get_response(request)
            response[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            _correlation_id.reset(token)

import logging

from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


class BusinessLogicException(Exception):
    """
    Base class for domain errors (e.g. driver unavailable, invalid OTP).
    These are expected operational errors, not 500s.
    """
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_request"

    def __init__(self, message, code=None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)


class NotFoundError(BusinessLogicException):
    """Referenced delivery, driver, order or restaurant does not exist."""
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class InvalidStateError(BusinessLogicException):
    """Operation attempted from a state that does not allow it."""
    status_code = status.HTTP_409_CONFLICT
    default_code = "invalid_state"


class ResourceUnavailableError(BusinessLogicException):
    """
    Expected "nothing to match" outcome, e.g. no drivers in range.
    Callers log it at info, never as an error.
    """
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "resource_unavailable"


class PermissionDeniedError(BusinessLogicException):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "forbidden"


def custom_exception_handler(exc, context):
    """
    Custom DRF Exception Handler.
    Maps BusinessLogicException subclasses to their HTTP status with a
    standard error structure.
    """
    response = exception_handler(exc, context)

    if isinstance(exc, BusinessLogicException):
        if isinstance(exc, ResourceUnavailableError):
            logger.info(f"{exc.code}: {exc.message}")
        return Response(
            {
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "type": type(exc).__name__,
                }
            },
            status=exc.status_code,
        )

    if response is not None and response.status_code == 400:
        if "error" not in response.data:
            response.data = {
                "error": {
                    "code": "validation_error",
                    "details": response.data
                }
            }

    return response

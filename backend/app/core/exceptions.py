"""Domain error taxonomy for the subscription and payment lifecycle.

Every error raised by the services derives from ``AppError`` and carries the
HTTP status the API layer answers with. ``DeliveryError`` is not an
``AppError``: notification failures are logged by the caller and never reach
an HTTP client.
"""
from http import HTTPStatus
from typing import Any, Optional


class AppError(Exception):
    """Base class for service errors"""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    status_code = HTTPStatus.UNPROCESSABLE_ENTITY


class NotFound(AppError):
    status_code = HTTPStatus.NOT_FOUND


class Conflict(AppError):
    status_code = HTTPStatus.CONFLICT


class DuplicateActiveSubscription(Conflict):
    pass


class AlreadyCancelled(Conflict):
    pass


class AlreadyPaid(Conflict):
    pass


class AlreadyFinalized(Conflict):
    pass


class CapacityExceeded(AppError):
    status_code = HTTPStatus.CONFLICT


class InvalidTransition(AppError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, message: str, current: Optional[str] = None, requested: Optional[str] = None):
        details = {}
        if current:
            details["current"] = current
        if requested:
            details["requested"] = requested
        super().__init__(message, details=details)


class InvalidSignature(AppError):
    status_code = HTTPStatus.UNAUTHORIZED


class GatewayUnavailable(AppError):
    """Transient: network error, timeout or 5xx from the payment provider"""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class GatewayRejected(AppError):
    """Permanent: the provider refused the request (4xx)"""

    status_code = HTTPStatus.BAD_GATEWAY

    def __init__(self, message: str, provider_status: Optional[int] = None, provider_code: Optional[str] = None):
        details = {}
        if provider_status:
            details["provider_status"] = provider_status
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, details=details)


class DeliveryError(Exception):
    """Notification could not be delivered"""

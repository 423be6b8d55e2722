"""
shared/utils/errors.py
Typed application errors. Each carries the HTTP status it maps to;
main.py turns them into the standard response envelope.
"""

from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    """Base class for every error the API reports to clients on purpose."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Something went wrong"

    def __init__(self, message: Optional[str] = None, *, errors: Optional[Any] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Validation failed"


class UnauthorizedError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource is in a conflicting state"


class InvalidTransitionError(ConflictError):
    """Booking status change not allowed from the current status."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move booking from '{current}' to '{target}'")


class SevakIneligibleError(AppError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Sevak is not eligible for assignment"


class PaymentVerificationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Payment verification failed"


class PaymentGatewayError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment gateway error"


class RateLimitedError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Rate limit exceeded. Please slow down."

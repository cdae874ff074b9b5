"""
Errors raised by the request handlers.

Every error is an HTTPException so routes and services raise them the same
way they would raise a plain HTTPException; main.py renders all of them as
{"success": false, "message": ...}.
"""
from typing import Any, Optional

from fastapi import HTTPException, status


class ServiceSphereError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, headers: Optional[dict] = None):
        super().__init__(status_code=self.status_code, detail=message or self.default_message, headers=headers)

    @property
    def message(self) -> str:
        return self.detail


class ValidationFailed(ServiceSphereError):
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[Any] = None):
        super().__init__(message)
        self.errors = errors


class EmailTaken(ServiceSphereError):
    default_message = "User already exists with this email"


class InvalidCredentials(ServiceSphereError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid email or password"


class NotAuthenticated(ServiceSphereError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authorized to access this route"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(ServiceSphereError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Forbidden"


class NotFound(ServiceSphereError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class InvalidTransition(ServiceSphereError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot change status from {current} to {target}")
        self.current = current
        self.target = target


class PastDate(ServiceSphereError):
    default_message = "Scheduled date must be in the future"


class ProviderMismatch(ServiceSphereError):
    default_message = "Provider does not match service"


class SelfBooking(ServiceSphereError):
    default_message = "Cannot book your own service"


class BookingNotCompleted(ServiceSphereError):
    default_message = "Can only review completed bookings"


class DuplicateReview(ServiceSphereError):
    default_message = "Review already exists for this booking"


class UpstreamError(ServiceSphereError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Media storage is unavailable"

"""
Application error taxonomy.

Every expected failure carries a stable machine-readable ``code`` and the
HTTP status class it maps to. Anything that is not an ``AppError`` is treated
as unexpected by the exception handlers and rendered generically.
"""

from typing import Any, Optional


class AppError(Exception):
    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Any] = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """Malformed or out-of-range input."""

    status_code = 422
    default_code = "VALIDATION_ERROR"


class BadRequestError(AppError):
    """Action not valid in the entity's current status."""

    status_code = 400
    default_code = "BAD_REQUEST"


class UnauthorizedError(AppError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    """Seat race lost, duplicate booking, overlapping schedule."""

    status_code = 409
    default_code = "CONFLICT"

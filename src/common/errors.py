# src/common/errors.py
"""
Доменные ошибки приложения.

Каждая ошибка несёт стабильный вид (ErrorKind), не зависящий от транспорта.
HTTP-слой переводит вид в код ответа, realtime-слой - в неуспешный ack.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Стабильная таксономия ошибок."""
    VALIDATION_FAILED = "validation-failed"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    CAPACITY_EXCEEDED = "capacity-exceeded"
    RATE_LIMITED = "rate-limited"
    SERVICE_UNAVAILABLE = "service-unavailable"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CAPACITY_EXCEEDED: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 408,
    ErrorKind.INTERNAL: 500,
}


class AppError(Exception):
    """Базовая ошибка приложения."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def http_status(self) -> int:
        """HTTP-код, соответствующий виду ошибки."""
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_payload(self) -> dict[str, Any]:
        """Тело ответа в едином формате."""
        payload: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.kind.value,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationFailedError(AppError):
    kind = ErrorKind.VALIDATION_FAILED


class UnauthenticatedError(AppError):
    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(AppError):
    kind = ErrorKind.FORBIDDEN


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT


class CapacityExceededError(AppError):
    kind = ErrorKind.CAPACITY_EXCEEDED


class RateLimitedError(AppError):
    kind = ErrorKind.RATE_LIMITED


class ServiceUnavailableError(AppError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


class OperationTimeoutError(AppError):
    kind = ErrorKind.TIMEOUT


class InternalError(AppError):
    kind = ErrorKind.INTERNAL

# tests/common/test_errors.py
"""
Тесты для доменных ошибок.
"""

from __future__ import annotations

import pytest

from src.common.errors import (
    AppError,
    CapacityExceededError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    InternalError,
    NotFoundError,
    OperationTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
    UnauthenticatedError,
    ValidationFailedError,
)


class TestErrorKinds:
    """Тесты соответствия вида ошибки и HTTP-кода."""

    @pytest.mark.parametrize(
        "error_cls, kind, status",
        [
            (ValidationFailedError, ErrorKind.VALIDATION_FAILED, 400),
            (UnauthenticatedError, ErrorKind.UNAUTHENTICATED, 401),
            (ForbiddenError, ErrorKind.FORBIDDEN, 403),
            (NotFoundError, ErrorKind.NOT_FOUND, 404),
            (ConflictError, ErrorKind.CONFLICT, 409),
            (CapacityExceededError, ErrorKind.CAPACITY_EXCEEDED, 409),
            (RateLimitedError, ErrorKind.RATE_LIMITED, 429),
            (ServiceUnavailableError, ErrorKind.SERVICE_UNAVAILABLE, 503),
            (OperationTimeoutError, ErrorKind.TIMEOUT, 408),
            (InternalError, ErrorKind.INTERNAL, 500),
        ],
    )
    def test_kind_and_status(self, error_cls: type[AppError], kind: ErrorKind, status: int) -> None:
        error = error_cls("boom")
        assert error.kind is kind
        assert error.http_status == status
        assert isinstance(error, AppError)


class TestPayload:
    """Тесты тела ответа об ошибке."""

    def test_payload_without_details(self) -> None:
        payload = NotFoundError("Request not found").to_payload()
        assert payload == {
            "success": False,
            "message": "Request not found",
            "error": "not-found",
        }

    def test_payload_with_details(self) -> None:
        error = ValidationFailedError("Invalid input", {"field": "amount"})
        payload = error.to_payload()
        assert payload["details"] == {"field": "amount"}
        assert payload["error"] == "validation-failed"

    def test_str_is_message(self) -> None:
        assert str(ConflictError("Request is no longer available")) == "Request is no longer available"

# tests/core/test_state_machine.py
"""
Тесты машины состояний заявки.
"""

from __future__ import annotations

import pytest

from src.common.constants import RequestStatus, UserRole
from src.common.errors import ConflictError, ForbiddenError
from src.core.requests.state_machine import (
    CANCELLATION_LOCK_MESSAGE,
    RequestStateMachine,
)


class TestCanTransition:
    """Тесты для can_transition."""

    @pytest.mark.parametrize(
        "current, target",
        [
            ("pending", "accepted"),
            ("pending", "rejected"),
            ("pending", "cancelled"),
            ("accepted", "on_way"),
            ("on_way", "arrived"),
            ("arrived", "working"),
            ("working", "completed"),
            ("accepted", "completed"),
        ],
    )
    def test_allowed(self, current: str, target: str) -> None:
        assert RequestStateMachine.can_transition(current, target) is True

    @pytest.mark.parametrize(
        "current, target",
        [
            ("pending", "working"),
            ("accepted", "arrived"),
            ("completed", "cancelled"),
            ("cancelled", "pending"),
            ("working", "on_way"),
        ],
    )
    def test_not_allowed(self, current: str, target: str) -> None:
        assert RequestStateMachine.can_transition(current, target) is False

    def test_legacy_aliases(self) -> None:
        """in_progress и active нормализуются к каноническим статусам."""
        assert RequestStateMachine.can_transition("active", "in_progress") is True
        assert RequestStatus.normalize("in_progress") is RequestStatus.ON_WAY
        assert RequestStatus.normalize("ACTIVE") is RequestStatus.ACCEPTED

    def test_unknown_status(self) -> None:
        with pytest.raises(ValueError):
            RequestStatus.normalize("teleported")


class TestCheck:
    """Тесты для check (роль + переход)."""

    def test_mechanic_accepts(self) -> None:
        target = RequestStateMachine.check(RequestStatus.PENDING, "accepted", UserRole.MECHANIC)
        assert target is RequestStatus.ACCEPTED

    def test_user_cannot_accept(self) -> None:
        with pytest.raises(ForbiddenError):
            RequestStateMachine.check(RequestStatus.PENDING, RequestStatus.ACCEPTED, UserRole.USER)

    def test_mechanic_cannot_cancel(self) -> None:
        with pytest.raises(ForbiddenError):
            RequestStateMachine.check(RequestStatus.ACCEPTED, RequestStatus.CANCELLED, UserRole.MECHANIC)

    def test_user_cancels_accepted(self) -> None:
        target = RequestStateMachine.check(RequestStatus.ACCEPTED, RequestStatus.CANCELLED, UserRole.USER)
        assert target is RequestStatus.CANCELLED

    @pytest.mark.parametrize("current", [RequestStatus.ON_WAY, RequestStatus.ARRIVED, RequestStatus.WORKING])
    def test_user_cancellation_locked(self, current: RequestStatus) -> None:
        """После выезда механика клиент отменить заявку не может."""
        with pytest.raises(ConflictError) as exc_info:
            RequestStateMachine.check(current, RequestStatus.CANCELLED, UserRole.USER)
        assert exc_info.value.message == CANCELLATION_LOCK_MESSAGE

    @pytest.mark.parametrize("current", [RequestStatus.ON_WAY, RequestStatus.ARRIVED, RequestStatus.WORKING])
    def test_admin_can_cancel_after_journey(self, current: RequestStatus) -> None:
        assert RequestStateMachine.check(current, RequestStatus.CANCELLED, UserRole.ADMIN) is RequestStatus.CANCELLED

    @pytest.mark.parametrize(
        "current",
        [RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.REJECTED, RequestStatus.FAILED],
    )
    def test_terminal_status(self, current: RequestStatus) -> None:
        with pytest.raises(ConflictError, match=f"Request is already {current.value}"):
            RequestStateMachine.check(current, RequestStatus.ON_WAY, UserRole.MECHANIC)

    def test_invalid_transition(self) -> None:
        with pytest.raises(ConflictError, match="Invalid status transition") as exc_info:
            RequestStateMachine.check(RequestStatus.PENDING, RequestStatus.WORKING, UserRole.MECHANIC)
        assert exc_info.value.details == {"currentStatus": "pending", "requestedStatus": "working"}

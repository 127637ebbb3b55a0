# src/core/requests/state_machine.py
"""
Машина состояний заявки: допустимые переходы и роли, которые их выполняют.
"""

from __future__ import annotations

from src.common.constants import RequestStatus, UserRole, TERMINAL_REQUEST_STATUSES
from src.common.errors import ConflictError, ForbiddenError


_MECHANIC = frozenset({UserRole.MECHANIC})
_MECHANIC_OR_ADMIN = frozenset({UserRole.MECHANIC, UserRole.ADMIN})
_USER_OR_ADMIN = frozenset({UserRole.USER, UserRole.ADMIN})
_ADMIN = frozenset({UserRole.ADMIN})

# текущий статус -> {целевой статус: роли}
ALLOWED_TRANSITIONS: dict[RequestStatus, dict[RequestStatus, frozenset[UserRole]]] = {
    RequestStatus.PENDING: {
        RequestStatus.ACCEPTED: _MECHANIC,
        RequestStatus.REJECTED: _MECHANIC,
        RequestStatus.CANCELLED: _USER_OR_ADMIN,
    },
    RequestStatus.ACCEPTED: {
        RequestStatus.ON_WAY: _MECHANIC,
        RequestStatus.COMPLETED: _MECHANIC_OR_ADMIN,
        RequestStatus.CANCELLED: _USER_OR_ADMIN,
    },
    RequestStatus.ON_WAY: {
        RequestStatus.ARRIVED: _MECHANIC,
        RequestStatus.COMPLETED: _MECHANIC_OR_ADMIN,
        RequestStatus.CANCELLED: _ADMIN,
    },
    RequestStatus.ARRIVED: {
        RequestStatus.WORKING: _MECHANIC,
        RequestStatus.COMPLETED: _MECHANIC_OR_ADMIN,
        RequestStatus.CANCELLED: _ADMIN,
    },
    RequestStatus.WORKING: {
        RequestStatus.COMPLETED: _MECHANIC_OR_ADMIN,
        RequestStatus.CANCELLED: _ADMIN,
    },
}

# Механик уже выехал или работает: клиент отменить не может
CANCELLATION_LOCKED: frozenset[RequestStatus] = frozenset({
    RequestStatus.ON_WAY,
    RequestStatus.ARRIVED,
    RequestStatus.WORKING,
})

CANCELLATION_LOCK_MESSAGE = (
    "Cannot cancel request. Mechanic has started the journey or begun working. "
    "Please contact support."
)


class RequestStateMachine:
    """Проверка переходов статуса заявки."""

    @staticmethod
    def can_transition(current: RequestStatus | str, target: RequestStatus | str) -> bool:
        current = RequestStatus.normalize(current)
        target = RequestStatus.normalize(target)
        return target in ALLOWED_TRANSITIONS.get(current, {})

    @staticmethod
    def check(
        current: RequestStatus | str,
        target: RequestStatus | str,
        role: UserRole,
    ) -> RequestStatus:
        """
        Проверяет переход от имени роли.

        Returns:
            Канонический целевой статус

        Raises:
            ConflictError: Терминальный статус, блокировка отмены или недопустимый переход
            ForbiddenError: Роль не может выполнить переход
        """
        current = RequestStatus.normalize(current)
        target = RequestStatus.normalize(target)

        if current in TERMINAL_REQUEST_STATUSES:
            raise ConflictError(
                f"Request is already {current.value}",
                {"currentStatus": current.value, "requestedStatus": target.value},
            )

        if (
            target == RequestStatus.CANCELLED
            and role == UserRole.USER
            and current in CANCELLATION_LOCKED
        ):
            raise ConflictError(CANCELLATION_LOCK_MESSAGE, {"currentStatus": current.value})

        roles = ALLOWED_TRANSITIONS.get(current, {}).get(target)
        if roles is None:
            raise ConflictError(
                "Invalid status transition",
                {"currentStatus": current.value, "requestedStatus": target.value},
            )
        if role not in roles:
            raise ForbiddenError(f"Role {role.value} cannot move request to {target.value}")
        return target

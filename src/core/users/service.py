# src/core/users/service.py
"""
Администрирование аккаунтов.
"""

from __future__ import annotations

from src.common.constants import ROOM_ADMINS, TypeMsg, user_room
from src.common.errors import ConflictError, ForbiddenError, NotFoundError
from src.common.logger import log_info
from src.core.notifications.service import NotificationService, utc_now_iso
from src.core.users.models import Principal, User
from src.core.users.repository import UserRepository
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes


class UserService:
    """Блокировка и разблокировка пользователей администратором."""

    def __init__(self, db: DatabaseManager, notifier: NotificationService) -> None:
        self._repo = UserRepository(db)
        self._notifier = notifier

    async def set_active(self, admin: Principal, user_id: str, active: bool) -> User:
        """
        Меняет флаг is_active.

        Заблокированный пользователь не проходит проверку токена
        (HTTP и новое realtime-соединение), механик пропадает из поиска.
        Уже открытые соединения получают account:status_changed.
        """
        if not admin.is_admin:
            raise ForbiddenError("Admin role required")
        if user_id == admin.id and not active:
            raise ConflictError("Admins cannot deactivate their own account")

        user = await self._repo.set_active(user_id, active)
        if user is None:
            raise NotFoundError("User not found")

        payload = {"userId": user.id, "isActive": active, "timestamp": utc_now_iso()}
        await self._notifier.emit(user_room(user.id), "account:status_changed", payload)
        await self._notifier.emit(ROOM_ADMINS, "user:status_changed", payload)
        await self._notifier.publish(
            EventTypes.USER_STATUS_CHANGED,
            {"user_id": user.id, "is_active": active, "admin_id": admin.id},
        )
        await log_info(
            f"Пользователь {user.id} {'активирован' if active else 'заблокирован'} (админ {admin.id})",
            type_msg=TypeMsg.WARNING if not active else TypeMsg.INFO,
        )
        return user

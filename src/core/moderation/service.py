# src/core/moderation/service.py
"""
Модерация правок профиля механика.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import ChangeRequestStatus, TypeMsg, user_room
from src.common.errors import ConflictError, ForbiddenError, NotFoundError
from src.common.logger import log_info, log_error
from src.core.mechanics.repository import MechanicRepository
from src.core.moderation.models import ChangeRequest
from src.core.moderation.repository import ChangeLogRepository, ChangeRequestRepository
from src.core.notifications.service import NotificationService, utc_now_iso
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes
from src.infra.redis_client import RedisClient
from src.shared.models.common import Page, PaginationParams


class ModerationService:
    """
    Сервис модерации.

    Решение фиксируется условным UPDATE по статусу pending,
    поэтому одну заявку нельзя одобрить дважды.
    """

    def __init__(self, db: DatabaseManager, redis: RedisClient, notifier: NotificationService) -> None:
        self._db = db
        self._requests = ChangeRequestRepository(db)
        self._logs = ChangeLogRepository(db)
        self._mechanics = MechanicRepository(db)
        self._redis = redis
        self._notifier = notifier

    @staticmethod
    def _require_admin(principal: Principal) -> None:
        if not principal.is_admin:
            raise ForbiddenError("Admin role required")

    async def list(
        self,
        admin: Principal,
        status: Optional[ChangeRequestStatus],
        pagination: PaginationParams,
    ) -> Page[ChangeRequest]:
        self._require_admin(admin)
        items, total = await self._requests.list_page(status, pagination.limit, pagination.offset)
        return Page[ChangeRequest].create(items, total, pagination)

    async def _load_pending(self, change_id: str) -> ChangeRequest:
        change = await self._requests.get_by_id(change_id)
        if change is None:
            raise NotFoundError("Change request not found")
        if change.status != ChangeRequestStatus.PENDING:
            raise ConflictError(f"Change request is already {change.status.value}")
        return change

    async def approve(self, admin: Principal, change_id: str, notes: str | None = None) -> ChangeRequest:
        """
        Одобряет правку: значения `to` применяются к профилю
        в той же транзакции, что и решение, с записью в журнал.

        Raises:
            NotFoundError: Заявка или профиль не найдены
            ConflictError: Заявка уже решена
        """
        self._require_admin(admin)
        change = await self._load_pending(change_id)

        async with self._db.transaction() as conn:
            decided = await self._requests.decide(
                change_id, ChangeRequestStatus.APPROVED, admin.id, notes, conn=conn
            )
            if decided is None:
                raise ConflictError("Change request has already been decided")
            applied = await self._mechanics.apply_changes(change.mechanic_id, change.target_values, conn=conn)
            if not applied:
                raise NotFoundError("Mechanic not found")
            await self._logs.append(
                mechanic_id=change.mechanic_id,
                changed_by=admin.id,
                source="moderation",
                fields_changed=change.fields_changed,
                change_request_id=change.id,
                conn=conn,
            )

        await self._after_decision(decided)
        return decided

    async def reject(self, admin: Principal, change_id: str, notes: str | None = None) -> ChangeRequest:
        """Отклоняет правку с заметкой модератора."""
        self._require_admin(admin)
        await self._load_pending(change_id)

        decided = await self._requests.decide(change_id, ChangeRequestStatus.REJECTED, admin.id, notes)
        if decided is None:
            raise ConflictError("Change request has already been decided")

        await self._after_decision(decided)
        return decided

    async def _after_decision(self, change: ChangeRequest) -> None:
        try:
            await self._redis.delete(f"mechanic:{change.mechanic_id}")
        except Exception as e:
            await log_error(f"Ошибка сброса кэша механика {change.mechanic_id}: {e}")

        await log_info(
            f"Правка {change.id} механика {change.mechanic_id}: {change.status.value} "
            f"(модератор {change.reviewer_id})",
            type_msg=TypeMsg.INFO,
        )

        mechanic = await self._mechanics.get_by_id(change.mechanic_id)
        if mechanic is not None:
            await self._notifier.emit(
                user_room(mechanic.user_id),
                "mechanic:change_decided",
                {
                    "changeRequestId": change.id,
                    "status": change.status.value,
                    "notes": change.reviewer_notes,
                    "timestamp": utc_now_iso(),
                },
            )
        await self._notifier.publish(
            EventTypes.MECHANIC_CHANGE_DECIDED,
            {
                "change_request_id": change.id,
                "mechanic_id": change.mechanic_id,
                "status": change.status.value,
                "reviewer_id": change.reviewer_id,
            },
        )

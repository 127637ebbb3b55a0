# src/core/mechanics/service.py
"""
Сервис механиков.
Профиль, доступность, позиция, самостоятельные правки и верификация.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import Field

from src.common.constants import (
    ROOM_ADMINS,
    RequestStatus,
    TypeMsg,
    user_room,
)
from src.common.errors import ForbiddenError, NotFoundError, ValidationFailedError
from src.common.logger import log_info, log_error
from src.core.geo.distance import has_point
from src.core.geo.service import GeoIndex
from src.core.mechanics.models import (
    Mechanic,
    MechanicReview,
    ProfileUpdateDTO,
    VerificationUpdateDTO,
)
from src.core.mechanics.repository import MechanicRepository
from src.core.moderation.models import ChangeRequest
from src.core.moderation.repository import ChangeLogRepository, ChangeRequestRepository
from src.core.notifications.service import NotificationService, utc_now_iso
from src.core.pricing.policy import PricingPolicyService
from src.core.pricing.service import PricingEvaluator
from src.core.requests.models import MechanicStats, ServiceRequest
from src.core.requests.repository import RequestRepository
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes
from src.infra.redis_client import RedisClient
from src.shared.models.common import CamelModel, Page, PaginationParams


class ProfileUpdateResult(CamelModel):
    """Итог самостоятельной правки профиля."""

    status: str  # applied, pending_review, unchanged
    mechanic: Optional[Mechanic] = None
    change_request: Optional[ChangeRequest] = None
    diffs: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @property
    def pending_review(self) -> bool:
        return self.status == "pending_review"


class MechanicService:
    """
    Сервис механиков.
    Профили кэшируются в Redis, любое изменение сбрасывает кэш.
    """

    def __init__(
        self,
        db: DatabaseManager,
        redis: RedisClient,
        notifier: NotificationService,
        evaluator: PricingEvaluator | None = None,
    ) -> None:
        """
        Инициализация сервиса.

        Args:
            db: Менеджер базы данных
            redis: Клиент Redis
            notifier: Fan-out уведомлений
            evaluator: Калькулятор цен
        """
        self._db = db
        self._repo = MechanicRepository(db)
        self._requests = RequestRepository(db)
        self._change_requests = ChangeRequestRepository(db)
        self._change_logs = ChangeLogRepository(db)
        self._geo = GeoIndex(db)
        self._policies = PricingPolicyService(db, redis)
        self._evaluator = evaluator or PricingEvaluator()
        self._redis = redis
        self._notifier = notifier

    @staticmethod
    def _cache_key(mechanic_id: str) -> str:
        return f"mechanic:{mechanic_id}"

    async def _invalidate(self, mechanic_id: str) -> None:
        try:
            await self._redis.delete(self._cache_key(mechanic_id))
        except Exception as e:
            await log_error(f"Ошибка сброса кэша механика {mechanic_id}: {e}")

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_profile(self, mechanic_id: str) -> Mechanic:
        """
        Профиль механика по ID.

        Raises:
            NotFoundError: Профиль не найден
        """
        cache_key = self._cache_key(mechanic_id)
        try:
            cached = await self._redis.get_model(cache_key, Mechanic)
        except Exception as e:
            await log_error(f"Ошибка чтения кэша механика {mechanic_id}: {e}")
            cached = None
        if cached is not None:
            return cached

        mechanic = await self._repo.get_by_id(mechanic_id)
        if mechanic is None:
            raise NotFoundError("Mechanic not found")

        try:
            from src.config import settings
            await self._redis.set_model(cache_key, mechanic, ttl=settings.redis_ttl.PROFILE_TTL)
        except Exception as e:
            await log_error(f"Ошибка записи кэша механика {mechanic_id}: {e}")
        return mechanic

    async def find(self, mechanic_id: str) -> Optional[Mechanic]:
        """Профиль без исключения (None если нет)."""
        return await self._repo.get_by_id(mechanic_id)

    async def get_me(self, principal: Principal) -> Mechanic:
        """
        Профиль текущего механика.

        Raises:
            ForbiddenError: Принципал не механик
            NotFoundError: Профиль не создан
        """
        if not principal.is_mechanic:
            raise ForbiddenError("Mechanic role required")
        mechanic = await self._repo.get_by_user_id(principal.id)
        if mechanic is None:
            raise NotFoundError("Mechanic profile not found")
        return mechanic

    async def find_nearby(
        self,
        lon: float | None,
        lat: float | None,
        vehicle_type: str | None = None,
        radius_m: int | None = None,
        include_unavailable: bool = False,
    ) -> list[Mechanic]:
        return await self._geo.find_available_nearby(lon, lat, vehicle_type, radius_m, include_unavailable)

    async def list_reviews(self, mechanic_id: str, pagination: PaginationParams) -> Page[MechanicReview]:
        await self.get_profile(mechanic_id)
        reviews, total = await self._requests.list_reviews(mechanic_id, pagination.limit, pagination.offset)
        return Page[MechanicReview].create(reviews, total, pagination)

    async def history(
        self,
        principal: Principal,
        mechanic_id: str,
        statuses: list[RequestStatus] | None,
        pagination: PaginationParams,
    ) -> Page[ServiceRequest]:
        """
        Заявки механика (свои или любые для администратора).

        Raises:
            ForbiddenError: Чужая история
        """
        mechanic = await self.get_profile(mechanic_id)
        if not principal.is_admin and mechanic.user_id != principal.id:
            raise ForbiddenError("Access denied")
        items, total = await self._requests.list_for_mechanic(
            mechanic_id, statuses, pagination.limit, pagination.offset
        )
        return Page[ServiceRequest].create(items, total, pagination)

    async def stats(self, principal: Principal) -> MechanicStats:
        mechanic = await self.get_me(principal)
        return await self._requests.mechanic_stats(mechanic.id)

    # =========================================================================
    # ДОСТУПНОСТЬ И ПОЗИЦИЯ
    # =========================================================================

    async def set_availability(self, principal: Principal, is_available: bool) -> Mechanic:
        """
        Включает или выключает приём заявок.
        Без текущей позиции берётся позиция гаража.
        """
        mechanic = await self.get_me(principal)
        updated = await self._repo.set_availability(mechanic.id, is_available)
        if updated is None:
            raise NotFoundError("Mechanic profile not found")
        await self._invalidate(mechanic.id)

        await self._notifier.emit(
            ROOM_ADMINS,
            "mechanic:availability_changed",
            {"mechanicId": mechanic.id, "isAvailable": is_available, "timestamp": utc_now_iso()},
        )
        await log_info(
            f"Механик {mechanic.id}: доступность={is_available}",
            type_msg=TypeMsg.INFO,
        )
        return updated

    async def update_location(self, principal: Principal, lon: float, lat: float) -> Mechanic:
        """
        Сохраняет текущую позицию механика.

        Raises:
            ValidationFailedError: Нулевые или нечисловые координаты
        """
        if not has_point(lon, lat):
            raise ValidationFailedError("Valid non-zero coordinates are required")
        mechanic = await self.get_me(principal)
        updated = await self._repo.update_location(mechanic.id, lon, lat)
        if updated is None:
            raise NotFoundError("Mechanic profile not found")
        await self._invalidate(mechanic.id)
        return updated

    async def store_location(self, mechanic_id: str, lon: float, lat: float) -> None:
        """Сохраняет позицию из realtime-потока (без повторной проверки роли)."""
        if not has_point(lon, lat):
            return
        await self._repo.update_location(mechanic_id, lon, lat)
        await self._invalidate(mechanic_id)

    # =========================================================================
    # ПРАВКИ ПРОФИЛЯ
    # =========================================================================

    async def update_profile(self, principal: Principal, dto: ProfileUpdateDTO) -> ProfileUpdateResult:
        """
        Самостоятельная правка профиля.

        Чувствительные поля и резкие изменения диапазона цен уходят
        на модерацию, остальное применяется сразу с записью в журнал.

        Returns:
            ProfileUpdateResult (applied / pending_review / unchanged)
        """
        mechanic = await self.get_me(principal)
        policy = await self._policies.get_current()
        decision = self._evaluator.evaluate_edit(mechanic, dto.changes(), policy)

        if not decision.diffs:
            return ProfileUpdateResult(status="unchanged", mechanic=mechanic)

        if decision.requires_review:
            change_request = await self._change_requests.create(
                mechanic_id=mechanic.id,
                requested_by=principal.id,
                fields_changed=decision.diffs,
                reasons=decision.reasons,
            )
            await self._notifier.emit(
                ROOM_ADMINS,
                "mechanic:change_requested",
                {
                    "changeRequestId": change_request.id,
                    "mechanicId": mechanic.id,
                    "fields": list(decision.diffs),
                    "reasons": decision.reasons,
                    "timestamp": utc_now_iso(),
                },
            )
            await self._notifier.publish(
                EventTypes.MECHANIC_CHANGE_REQUESTED,
                {"change_request_id": change_request.id, "mechanic_id": mechanic.id},
            )
            await log_info(
                f"Правка профиля механика {mechanic.id} отправлена на модерацию: {decision.reasons}",
                type_msg=TypeMsg.INFO,
            )
            return ProfileUpdateResult(
                status="pending_review",
                change_request=change_request,
                diffs=decision.diffs,
            )

        async with self._db.transaction() as conn:
            await self._repo.apply_changes(mechanic.id, decision.changes, conn=conn)
            await self._change_logs.append(
                mechanic_id=mechanic.id,
                changed_by=principal.id,
                source="self",
                fields_changed=decision.diffs,
                conn=conn,
            )
        await self._invalidate(mechanic.id)
        await self._notifier.publish(
            EventTypes.MECHANIC_PROFILE_UPDATED,
            {"mechanic_id": mechanic.id, "fields": list(decision.diffs)},
        )
        await log_info(
            f"Профиль механика {mechanic.id} обновлён: {', '.join(decision.diffs)}",
            type_msg=TypeMsg.INFO,
        )
        return ProfileUpdateResult(
            status="applied",
            mechanic=await self._repo.get_by_id(mechanic.id),
            diffs=decision.diffs,
        )

    # =========================================================================
    # АДМИНИСТРИРОВАНИЕ
    # =========================================================================

    async def set_verification(
        self,
        admin: Principal,
        mechanic_id: str,
        dto: VerificationUpdateDTO,
    ) -> Mechanic:
        """Меняет статус верификации механика."""
        updated = await self._repo.set_verification(mechanic_id, dto.status)
        if updated is None:
            raise NotFoundError("Mechanic not found")
        await self._invalidate(mechanic_id)

        await self._notifier.emit(
            user_room(updated.user_id),
            "mechanic:verification_updated",
            {
                "mechanicId": mechanic_id,
                "status": dto.status.value,
                "notes": dto.notes,
                "timestamp": utc_now_iso(),
            },
        )
        await self._notifier.publish(
            EventTypes.MECHANIC_VERIFICATION_CHANGED,
            {"mechanic_id": mechanic_id, "status": dto.status.value, "admin_id": admin.id},
        )
        await log_info(
            f"Верификация механика {mechanic_id}: {dto.status.value} (админ {admin.id})",
            type_msg=TypeMsg.INFO,
        )
        return updated

    async def backfill_current_location(self, admin: Principal) -> int:
        """Заполняет текущую позицию из гаража у всех механиков без позиции."""
        updated = await self._repo.backfill_current_location()
        await log_info(
            f"Позиция механиков заполнена из гаража: {updated} (админ {admin.id})",
            type_msg=TypeMsg.INFO,
        )
        return updated

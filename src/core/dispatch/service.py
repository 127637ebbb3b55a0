# src/core/dispatch/service.py
"""
Диспетчер заявок.
Создание заявки с оценкой стоимости и рассылка предложений механикам.
"""

from __future__ import annotations

from typing import Any, Optional

from src.common.constants import ROOM_ADMINS, TypeMsg, user_room
from src.common.errors import AppError, InternalError, NotFoundError
from src.common.logger import log_info, log_error
from src.core.geo.service import GeoIndex
from src.core.mechanics.models import Mechanic
from src.core.mechanics.repository import MechanicRepository
from src.core.notifications.service import NotificationService, utc_now_iso
from src.core.pricing.service import PricingEvaluator
from src.core.requests.models import CreateRequestDTO, PickupLocation, ServiceRequest
from src.core.requests.repository import RequestRepository
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes


class Dispatcher:
    """
    Диспетчер.

    Заявка с mechanicId уходит только выбранному механику,
    без него - всем доступным механикам в радиусе рассылки.
    Администраторы получают уведомление о каждой новой заявке.
    """

    def __init__(
        self,
        db: DatabaseManager,
        notifier: NotificationService,
        evaluator: PricingEvaluator | None = None,
        geo: GeoIndex | None = None,
    ) -> None:
        """
        Инициализация диспетчера.

        Args:
            db: Менеджер базы данных
            notifier: Fan-out уведомлений
            evaluator: Оценщик стоимости
            geo: Гео-индекс механиков
        """
        from src.config import settings

        self._requests = RequestRepository(db)
        self._mechanics = MechanicRepository(db)
        self._notifier = notifier
        self._evaluator = evaluator or PricingEvaluator()
        self._geo = geo or GeoIndex(db)
        self._broadcast_radius_km = settings.dispatch.BROADCAST_RADIUS_KM
        self._match_radius_km = settings.dispatch.MATCH_RADIUS_KM

    # =========================================================================
    # СОЗДАНИЕ ЗАЯВКИ
    # =========================================================================

    async def create_request(self, principal: Principal, dto: CreateRequestDTO) -> ServiceRequest:
        """
        Создаёт заявку и рассылает предложение.

        Args:
            principal: Заявитель
            dto: Тело запроса (валидировано pydantic)

        Returns:
            Сохранённая заявка в статусе pending

        Raises:
            NotFoundError: Указанный механик не существует
            InternalError: Ошибка сохранения
        """
        target: Optional[Mechanic] = None
        if dto.mechanic_id:
            target = await self._mechanics.get_by_id(dto.mechanic_id)
            if target is None:
                raise NotFoundError("Mechanic not found")

        estimate = self._evaluator.estimate(
            target,
            dto.vehicle_type.value,
            [service.to_priced() for service in dto.selected_services],
            fallback_cost=dto.estimated_cost,
        )

        draft = ServiceRequest(
            id="",
            user_id=principal.id,
            mechanic_id=target.id if target else None,
            vehicle_type=dto.vehicle_type,
            problem_type=dto.problem_type,
            description=dto.description,
            pickup=dto.pickup_location,
            priority=dto.priority,
            is_emergency=dto.is_emergency,
            selected_services=estimate.priced_services,
            vehicle_multiplier=estimate.vehicle_multiplier,
            estimated_cost=estimate.estimated_cost,
            estimated_cost_range=estimate.estimated_cost_range,
        )

        try:
            request = await self._requests.create(draft)
        except AppError:
            raise
        except Exception as e:
            await log_error(f"Ошибка сохранения заявки пользователя {principal.id}: {e}", exc_info=True)
            raise InternalError("Failed to create request") from e

        await log_info(
            f"Создана заявка {request.id}: {request.problem_type}/{request.vehicle_type.value}, "
            f"оценка {request.estimated_cost}, механик {request.mechanic_id or 'любой'}",
            type_msg=TypeMsg.INFO,
        )

        message = f"New {request.problem_type} request from {principal.name or 'a customer'}"
        if target is not None:
            await self._offer_direct(request, target, message)
        else:
            await self._offer_broadcast(request, message)

        await self._notifier.emit(
            ROOM_ADMINS,
            "new_request_created",
            {
                "type": "REQUEST_CREATED",
                "request": request.to_wire(),
                "message": message,
                "timestamp": utc_now_iso(),
            },
        )
        await self._notifier.publish(
            EventTypes.REQUEST_CREATED,
            {
                "request_id": request.id,
                "user_id": request.user_id,
                "mechanic_id": request.mechanic_id,
                "vehicle_type": request.vehicle_type.value,
                "estimated_cost": request.estimated_cost,
            },
        )
        return request

    async def _offer_direct(self, request: ServiceRequest, mechanic: Mechanic, message: str) -> None:
        await self._notifier.emit(
            user_room(mechanic.user_id),
            "new_request_notification",
            self._offer_payload(request, message, mechanic.distance_from(request.pickup.longitude, request.pickup.latitude)),
        )

    async def _offer_broadcast(self, request: ServiceRequest, message: str) -> int:
        """Предложение каждому доступному механику в радиусе, с расстоянием."""
        pickup: PickupLocation = request.pickup
        nearby = await self._geo.find_available_nearby(
            pickup.longitude,
            pickup.latitude,
            vehicle_type=request.vehicle_type.value,
            radius_m=int(self._broadcast_radius_km * 1000),
        )
        for mechanic in nearby:
            await self._notifier.emit(
                user_room(mechanic.user_id),
                "new_request_notification",
                self._offer_payload(request, message, mechanic.distance_km),
            )

        await log_info(
            f"Заявка {request.id} разослана {len(nearby)} механикам в радиусе {self._broadcast_radius_km} км",
            type_msg=TypeMsg.INFO,
        )
        return len(nearby)

    @staticmethod
    def _offer_payload(request: ServiceRequest, message: str, distance_km: float | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "NEW_REQUEST",
            "request": request.to_wire(),
            "message": message,
            "timestamp": utc_now_iso(),
        }
        if distance_km is not None and distance_km != float("inf"):
            payload["distance"] = round(distance_km, 2)
        return payload

    # =========================================================================
    # ПОДБОР
    # =========================================================================

    async def match(self, lon: float, lat: float, vehicle_type: str | None = None) -> Mechanic:
        """
        Ближайший доступный механик в радиусе подбора.

        Raises:
            NotFoundError: В радиусе никого нет
        """
        candidates = await self._geo.find_available_nearby(
            lon,
            lat,
            vehicle_type=vehicle_type,
            radius_m=int(self._match_radius_km * 1000),
        )
        if not candidates:
            raise NotFoundError("No mechanics available nearby")
        return candidates[0]

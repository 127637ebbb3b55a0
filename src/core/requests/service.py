# src/core/requests/service.py
"""
Сервис жизненного цикла заявки.
Принятие, переходы статуса, оценки и рассылка событий по комнатам.
"""

from __future__ import annotations

from typing import Any, Optional

from src.common.constants import (
    ROOM_MECHANICS,
    RequestStatus,
    TypeMsg,
    UserRole,
    request_room,
    user_room,
)
from src.common.errors import (
    CapacityExceededError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from src.common.logger import log_info, log_error
from src.core.chat.service import ChatService
from src.core.mechanics.models import Mechanic
from src.core.mechanics.repository import MechanicRepository
from src.core.notifications.service import NotificationService, utc_now_iso
from src.core.requests.models import (
    AcceptRequestDTO,
    RateRequestDTO,
    ServiceRequest,
    StatusUpdateDTO,
)
from src.core.requests.repository import RequestRepository, make_note
from src.core.requests.state_machine import RequestStateMachine
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes
from src.infra.redis_client import RedisClient
from src.shared.models.common import Page, PaginationParams


NOT_AVAILABLE_MESSAGE = "Request is no longer available"

_STATUS_MESSAGES: dict[RequestStatus, str] = {
    RequestStatus.ACCEPTED: "Request accepted",
    RequestStatus.ON_WAY: "Mechanic started journey - Location sharing enabled",
    RequestStatus.ARRIVED: "Mechanic arrived at location - Location sharing stopped",
    RequestStatus.WORKING: "Mechanic started working",
    RequestStatus.COMPLETED: "Service completed",
    RequestStatus.CANCELLED: "Request cancelled",
    RequestStatus.REJECTED: "Request rejected",
}

_EVENT_BY_STATUS: dict[RequestStatus, str] = {
    RequestStatus.COMPLETED: EventTypes.REQUEST_COMPLETED,
    RequestStatus.CANCELLED: EventTypes.REQUEST_CANCELLED,
}


class LifecycleService:
    """
    Сервис жизненного цикла заявки.

    Каждый переход - условный UPDATE по ожидаемому статусу; проверки
    ролей и допустимых рёбер выполняет RequestStateMachine.
    """

    def __init__(
        self,
        db: DatabaseManager,
        redis: RedisClient,
        notifier: NotificationService,
        chat: ChatService | None = None,
    ) -> None:
        """
        Инициализация сервиса.

        Args:
            db: Менеджер базы данных
            redis: Клиент Redis
            notifier: Fan-out уведомлений
            chat: Сервис чатов (создание при принятии, закрытие при завершении)
        """
        self._db = db
        self._repo = RequestRepository(db)
        self._mechanics = MechanicRepository(db)
        self._redis = redis
        self._notifier = notifier
        self._chat = chat or ChatService(db, notifier)

    @staticmethod
    def _cache_key(request_id: str) -> str:
        return f"request:{request_id}"

    async def _invalidate_cache(self, request_id: str) -> None:
        try:
            await self._redis.delete(self._cache_key(request_id))
        except Exception as e:
            await log_error(f"Ошибка сброса кэша заявки {request_id}: {e}")

    async def _load(self, request_id: str) -> ServiceRequest:
        request = await self._repo.get_by_id(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_request(self, principal: Principal, request_id: str) -> ServiceRequest:
        """
        Заявка для заявителя, назначенного механика или администратора.
        Механик видит и ожидающие заявки, чтобы решить, брать ли их.

        Raises:
            NotFoundError: Заявка не найдена
            ForbiddenError: Нет доступа
        """
        cache_key = self._cache_key(request_id)
        request: Optional[ServiceRequest] = None
        try:
            request = await self._redis.get_model(cache_key, ServiceRequest)
        except Exception as e:
            await log_error(f"Ошибка чтения кэша заявки {request_id}: {e}")

        if request is None:
            request = await self._load(request_id)
            try:
                from src.config import settings
                await self._redis.set_model(cache_key, request, ttl=settings.redis_ttl.REQUEST_TTL)
            except Exception as e:
                await log_error(f"Ошибка записи кэша заявки {request_id}: {e}")

        if not self.can_view(principal, request):
            raise ForbiddenError("Access denied")
        return request

    @staticmethod
    def can_view(principal: Principal, request: ServiceRequest) -> bool:
        if principal.is_admin or request.is_participant(principal.id):
            return True
        return principal.is_mechanic and request.status == RequestStatus.PENDING

    async def list_for_user(
        self,
        principal: Principal,
        statuses: list[RequestStatus] | None,
        pagination: PaginationParams,
    ) -> Page[ServiceRequest]:
        items, total = await self._repo.list_for_user(
            principal.id, statuses, pagination.limit, pagination.offset
        )
        return Page[ServiceRequest].create(items, total, pagination)

    async def list_for_mechanic(
        self,
        principal: Principal,
        statuses: list[RequestStatus] | None,
        pagination: PaginationParams,
    ) -> Page[ServiceRequest]:
        mechanic = await self._require_mechanic(principal)
        items, total = await self._repo.list_for_mechanic(
            mechanic.id, statuses, pagination.limit, pagination.offset
        )
        return Page[ServiceRequest].create(items, total, pagination)

    async def list_all(
        self,
        principal: Principal,
        statuses: list[RequestStatus] | None,
        pagination: PaginationParams,
    ) -> Page[ServiceRequest]:
        if not principal.is_admin:
            raise ForbiddenError("Admin role required")
        items, total = await self._repo.list_all(statuses, pagination.limit, pagination.offset)
        return Page[ServiceRequest].create(items, total, pagination)

    # =========================================================================
    # ПРИНЯТИЕ И ОТКАЗ
    # =========================================================================

    async def _require_mechanic(self, principal: Principal) -> Mechanic:
        if not principal.is_mechanic:
            raise ForbiddenError("Mechanic role required")
        mechanic = await self._mechanics.get_by_user_id(principal.id)
        if mechanic is None:
            raise NotFoundError("Mechanic profile not found")
        return mechanic

    async def accept(
        self,
        principal: Principal,
        request_id: str,
        dto: AcceptRequestDTO | None = None,
    ) -> ServiceRequest:
        """
        Механик принимает заявку.

        Под advisory-блокировкой механика считаются активные заявки,
        затем заявка назначается условным UPDATE (только из pending).

        Raises:
            ForbiddenError: Не механик, не верифицирован или заявка адресована другому
            ConflictError: Механик недоступен или заявку уже забрали
            CapacityExceededError: Достигнут лимит одновременных заявок
        """
        dto = dto or AcceptRequestDTO()
        mechanic = await self._require_mechanic(principal)
        if not mechanic.is_dispatchable:
            raise ForbiddenError("Mechanic is not verified")
        if not mechanic.is_available:
            raise ConflictError("Mechanic is not available")

        request = await self._load(request_id)
        if request.status != RequestStatus.PENDING:
            raise ConflictError(NOT_AVAILABLE_MESSAGE)
        if request.mechanic_id and request.mechanic_id != mechanic.id:
            raise ForbiddenError("Request is assigned to another mechanic")

        async with self._db.transaction() as conn:
            await self._repo.lock_mechanic(mechanic.id, conn)
            active = await self._repo.count_active(mechanic.id, conn)
            if active >= mechanic.max_concurrent_jobs:
                raise CapacityExceededError(
                    "Maximum concurrent jobs reached",
                    {"activeJobs": active, "maxConcurrentJobs": mechanic.max_concurrent_jobs},
                )
            accepted = await self._repo.accept_if_pending(
                request_id,
                mechanic.id,
                dto.estimated_arrival_time,
                dto.estimated_cost,
                conn=conn,
            )
            if accepted is None:
                raise ConflictError(NOT_AVAILABLE_MESSAGE)

        await self._invalidate_cache(request_id)
        await log_info(
            f"Заявка {request_id} принята механиком {mechanic.id}",
            type_msg=TypeMsg.INFO,
        )

        await self._notifier.emit(
            user_room(accepted.user_id),
            "request_accepted_notification",
            {
                "type": "REQUEST_ACCEPTED",
                "request": accepted.to_wire(),
                "mechanic": {
                    "id": mechanic.id,
                    "name": mechanic.name or "Mechanic",
                    "phone": mechanic.phone,
                    "rating": mechanic.rating,
                    "experience": mechanic.experience_years,
                },
                "message": f"{mechanic.name or 'A mechanic'} accepted your request and is on the way!",
                "timestamp": utc_now_iso(),
            },
        )
        await self._notifier.emit(
            ROOM_MECHANICS,
            "request_taken_notification",
            {
                "type": "REQUEST_TAKEN",
                "requestId": accepted.id,
                "message": "Request has been accepted by another mechanic",
            },
        )
        await self._broadcast_status(accepted, mechanic.name or "Mechanic")

        try:
            chat = await self._chat.ensure_for_request(accepted)
        except Exception as e:
            await log_error(f"Не удалось создать чат для заявки {request_id}: {e}", exc_info=True)
        else:
            payload = {"requestId": accepted.id, "chatId": chat.id}
            await self._notifier.emit_many(
                [user_room(accepted.user_id), user_room(principal.id)],
                "chat_ready",
                payload,
            )

        await self._notifier.publish(
            EventTypes.REQUEST_ACCEPTED,
            {"request_id": accepted.id, "mechanic_id": mechanic.id, "user_id": accepted.user_id},
        )
        return accepted

    async def reject(self, principal: Principal, request_id: str, reason: str | None = None) -> ServiceRequest:
        """
        Механик отклоняет ожидающую заявку.

        Raises:
            ConflictError: Заявка уже не pending
            ForbiddenError: Заявка адресована другому механику
        """
        mechanic = await self._require_mechanic(principal)
        request = await self._load(request_id)
        if request.status != RequestStatus.PENDING:
            raise ConflictError(NOT_AVAILABLE_MESSAGE)
        if request.mechanic_id and request.mechanic_id != mechanic.id:
            raise ForbiddenError("Request is assigned to another mechanic")

        return await self._apply(
            request,
            RequestStatus.REJECTED,
            UserRole.MECHANIC,
            actor_name=mechanic.name or "Mechanic",
            cancellation_reason=reason,
        )

    # =========================================================================
    # ПЕРЕХОДЫ СТАТУСА
    # =========================================================================

    async def _assigned_mechanic_request(self, principal: Principal, request_id: str) -> ServiceRequest:
        request = await self._load(request_id)
        if not principal.is_mechanic or request.mechanic_user_id != principal.id:
            raise ForbiddenError("Only the assigned mechanic can update this request")
        return request

    async def start_journey(self, principal: Principal, request_id: str) -> ServiceRequest:
        request = await self._assigned_mechanic_request(principal, request_id)
        return await self._apply(request, RequestStatus.ON_WAY, UserRole.MECHANIC, principal.name or "Mechanic")

    async def mark_arrived(self, principal: Principal, request_id: str) -> ServiceRequest:
        request = await self._assigned_mechanic_request(principal, request_id)
        return await self._apply(request, RequestStatus.ARRIVED, UserRole.MECHANIC, principal.name or "Mechanic")

    async def start_work(self, principal: Principal, request_id: str) -> ServiceRequest:
        request = await self._assigned_mechanic_request(principal, request_id)
        return await self._apply(request, RequestStatus.WORKING, UserRole.MECHANIC, principal.name or "Mechanic")

    async def complete(
        self,
        principal: Principal,
        request_id: str,
        actual_cost: float | None = None,
        notes: str | None = None,
    ) -> ServiceRequest:
        request = await self._assigned_mechanic_request(principal, request_id)
        return await self._apply(
            request,
            RequestStatus.COMPLETED,
            UserRole.MECHANIC,
            principal.name or "Mechanic",
            actual_cost=actual_cost,
            note_author=UserRole.MECHANIC.value,
            notes=notes,
        )

    async def update_status(self, principal: Principal, request_id: str, dto: StatusUpdateDTO) -> ServiceRequest:
        """
        Общий переход статуса от имени заявителя, назначенного механика или администратора.
        Отмена клиентом после выезда механика запрещена.

        Raises:
            ForbiddenError: Не участник заявки
            ConflictError: Недопустимый переход или блокировка отмены
        """
        # accepted от механика - то же, что PUT /accept, в том числе для ещё не назначенной заявки
        if dto.status == RequestStatus.ACCEPTED and principal.is_mechanic:
            return await self.accept(principal, request_id)

        request = await self._load(request_id)
        role = self._acting_role(principal, request)

        return await self._apply(
            request,
            dto.status,
            role,
            principal.name or role.value,
            actual_cost=dto.actual_cost,
            cancellation_reason=dto.cancellation_reason,
            note_author=role.value,
            notes=dto.notes,
        )

    async def force_status(self, admin: Principal, request_id: str, status: RequestStatus) -> ServiceRequest:
        """Переход от имени администратора (включая отмену после выезда)."""
        if not admin.is_admin:
            raise ForbiddenError("Admin role required")
        request = await self._load(request_id)
        return await self._apply(
            request,
            status,
            UserRole.ADMIN,
            admin.name or "Admin",
            note_author=UserRole.ADMIN.value,
            notes=f"Status forced to {status.value} by admin",
        )

    @staticmethod
    def _acting_role(principal: Principal, request: ServiceRequest) -> UserRole:
        if principal.is_admin:
            return UserRole.ADMIN
        if principal.is_mechanic and request.mechanic_user_id == principal.id:
            return UserRole.MECHANIC
        if request.user_id == principal.id:
            return UserRole.USER
        raise ForbiddenError("Access denied")

    async def _apply(
        self,
        request: ServiceRequest,
        target: RequestStatus,
        role: UserRole,
        actor_name: str,
        *,
        actual_cost: float | None = None,
        cancellation_reason: str | None = None,
        note_author: str | None = None,
        notes: str | None = None,
    ) -> ServiceRequest:
        target = RequestStateMachine.check(request.status, target, role)
        note = make_note(note_author or role.value, notes) if notes else None

        async with self._db.transaction() as conn:
            updated = await self._repo.transition(
                request.id,
                request.status,
                target,
                actual_cost=actual_cost,
                cancellation_reason=cancellation_reason,
                note=note,
                conn=conn,
            )
            if updated is None:
                raise ConflictError(
                    "Request status changed concurrently, reload and retry",
                    {"expectedStatus": request.status.value},
                )
            # Счётчик растёт ровно один раз: только выигравший CAS попадает сюда
            if target == RequestStatus.COMPLETED and updated.mechanic_id:
                await self._mechanics.increment_completed_jobs(updated.mechanic_id, conn=conn)

        await self._invalidate_cache(request.id)
        await log_info(
            f"Заявка {request.id}: {request.status.value} -> {target.value} ({role.value})",
            type_msg=TypeMsg.INFO,
        )
        await self._after_transition(updated, actor_name)
        return updated

    async def _broadcast_status(self, request: ServiceRequest, actor_name: str) -> None:
        status = request.status
        payload = {"requestId": request.id, "request": request.to_wire(), "status": status.value}
        await self._notifier.emit_many(
            [user_room(request.user_id), ROOM_MECHANICS, request_room(request.id)],
            f"request:{status.value}",
            payload,
        )
        await self._notifier.emit(
            request_room(request.id),
            "request_status_changed",
            {
                "requestId": request.id,
                "status": status.value,
                "message": _STATUS_MESSAGES.get(status, f"Status changed to {status.value}"),
                "updatedBy": actor_name,
                "timestamp": utc_now_iso(),
            },
        )

    async def _after_transition(self, request: ServiceRequest, actor_name: str) -> None:
        await self._broadcast_status(request, actor_name)
        mechanic_room = user_room(request.mechanic_user_id) if request.mechanic_user_id else None

        if request.status == RequestStatus.ON_WAY and mechanic_room:
            await self._notifier.emit(
                mechanic_room,
                "auto_start_location_sharing",
                {"requestId": request.id, "message": "Location sharing started automatically"},
            )
        elif request.status == RequestStatus.ARRIVED and mechanic_room:
            await self._notifier.emit(
                mechanic_room,
                "auto_stop_location_sharing",
                {
                    "requestId": request.id,
                    "message": "Location sharing stopped automatically - Mechanic arrived",
                },
            )
        elif request.status == RequestStatus.COMPLETED:
            await self._notifier.emit(request_room(request.id), "service_completed", {"requestId": request.id})
            await self._finalize_chat(request.id)
        elif request.status == RequestStatus.CANCELLED and mechanic_room:
            await self._notifier.emit(
                mechanic_room,
                "request:cancelled",
                {"requestId": request.id, "request": request.to_wire(), "status": request.status.value},
            )

        await self._notifier.publish(
            _EVENT_BY_STATUS.get(request.status, EventTypes.REQUEST_STATUS_CHANGED),
            {"request_id": request.id, "status": request.status.value, "mechanic_id": request.mechanic_id},
        )

    async def _finalize_chat(self, request_id: str) -> None:
        try:
            await self._chat.finalize_for_request(request_id)
        except Exception as e:
            await log_error(f"Не удалось закрыть чат заявки {request_id}: {e}")

    async def after_payment_completion(self, request: ServiceRequest, was_completed: bool) -> None:
        """Рассылка после перевода заявки в completed оплатой."""
        await self._invalidate_cache(request.id)
        if not was_completed:
            await self._after_transition(request, "Payment")

    # =========================================================================
    # ОЦЕНКИ
    # =========================================================================

    async def rate(self, principal: Principal, request_id: str, dto: RateRequestDTO) -> ServiceRequest:
        """
        Оценка завершённой заявки одной из сторон.

        Оценка клиента пересчитывает средний рейтинг механика.

        Raises:
            ConflictError: Заявка не завершена или уже оценена этой стороной
            ForbiddenError: Не участник заявки
        """
        request = await self._load(request_id)
        if request.status != RequestStatus.COMPLETED:
            raise ConflictError("Can only rate completed requests")

        is_requester = request.user_id == principal.id
        is_mechanic = principal.is_mechanic and request.mechanic_user_id == principal.id
        if not is_requester and not is_mechanic:
            raise ForbiddenError("Access denied")

        new_average: float | None = None
        async with self._db.transaction() as conn:
            updated = await self._repo.set_rating(
                request_id, is_requester, dto.rating, dto.comment, conn=conn
            )
            if updated is None:
                raise ConflictError("Request has already been rated")
            if is_requester and updated.mechanic_id:
                new_average = await self._mechanics.update_rating(updated.mechanic_id, dto.rating, conn=conn)

        await self._invalidate_cache(request_id)
        if new_average is not None and updated.mechanic_id:
            try:
                await self._redis.delete(f"mechanic:{updated.mechanic_id}")
            except Exception as e:
                await log_error(f"Ошибка сброса кэша механика {updated.mechanic_id}: {e}")

        if is_requester and updated.mechanic_user_id:
            await self._notifier.emit(
                user_room(updated.mechanic_user_id),
                "review:new",
                {
                    "mechanicId": updated.mechanic_id,
                    "review": self._review_payload(updated, principal),
                },
            )

        await self._notifier.publish(
            EventTypes.REQUEST_RATED,
            {
                "request_id": request_id,
                "by": "user" if is_requester else "mechanic",
                "rating": dto.rating,
                "mechanic_rating_avg": new_average,
            },
        )
        await log_info(
            f"Заявка {request_id} оценена ({'клиент' if is_requester else 'механик'}): {dto.rating}",
            type_msg=TypeMsg.INFO,
        )
        return updated

    @staticmethod
    def _review_payload(request: ServiceRequest, principal: Principal) -> dict[str, Any]:
        return {
            "id": request.id,
            "rating": request.rating.user_rating,
            "comment": request.rating.user_comment or "",
            "date": (request.updated_at.isoformat() if request.updated_at else utc_now_iso()),
            "user": {"id": principal.id, "name": principal.name},
        }

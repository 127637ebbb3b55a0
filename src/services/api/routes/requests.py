# src/services/api/routes/requests.py
"""
Заявки на помощь: создание, переходы статуса, оценка.

Endpoints:
- POST /requests - создать заявку
- GET /requests/my-requests - заявки клиента
- GET /requests/mechanic-requests - заявки механика
- GET /requests/all - все заявки (администратор)
- GET /requests/{id} - заявка
- PUT /requests/{id}/accept | reject | start-journey | arrived | start-work | complete
- PUT /requests/{id}/status - общий переход
- PUT /requests/{id}/rate - оценка
- PUT /requests/{id}/payment-completed - устаревший путь записи платежа
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, status

from src.common.constants import RequestStatus
from src.core.dispatch.service import Dispatcher
from src.core.payments.models import PaymentCompletedDTO
from src.core.payments.service import PaymentService
from src.core.requests.models import (
    AcceptRequestDTO,
    CompleteRequestDTO,
    CreateRequestDTO,
    RateRequestDTO,
    RejectRequestDTO,
    StatusUpdateDTO,
)
from src.core.requests.service import LifecycleService
from src.core.users.models import Principal
from src.services.api.dependencies import (
    get_current_principal,
    get_dispatcher,
    get_lifecycle_service,
    get_pagination,
    get_payment_service,
    get_status_filter,
    require_mechanic,
)
from src.shared.models.common import ApiResponse, PaginationParams


router = APIRouter(prefix="/requests", tags=["Requests"])


# === СОЗДАНИЕ И ЧТЕНИЕ ===

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_request(
    dto: CreateRequestDTO,
    principal: Principal = Depends(get_current_principal),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """
    Создать заявку.

    С mechanicId предложение получает только этот механик,
    иначе все доступные механики в радиусе.
    """
    request = await dispatcher.create_request(principal, dto)
    return ApiResponse.ok("Request created successfully", request)


@router.get("/my-requests")
async def my_requests(
    statuses: Optional[list[RequestStatus]] = Depends(get_status_filter),
    pagination: PaginationParams = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    page = await service.list_for_user(principal, statuses, pagination)
    return ApiResponse.ok("Requests retrieved", page)


@router.get("/mechanic-requests")
async def mechanic_requests(
    statuses: Optional[list[RequestStatus]] = Depends(get_status_filter),
    pagination: PaginationParams = Depends(get_pagination),
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    page = await service.list_for_mechanic(principal, statuses, pagination)
    return ApiResponse.ok("Requests retrieved", page)


@router.get("/all")
async def all_requests(
    statuses: Optional[list[RequestStatus]] = Depends(get_status_filter),
    pagination: PaginationParams = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    page = await service.list_all(principal, statuses, pagination)
    return ApiResponse.ok("Requests retrieved", page)


@router.get("/{request_id}")
async def get_request(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.get_request(principal, request_id)
    return ApiResponse.ok("Request retrieved", request)


# === ДЕЙСТВИЯ МЕХАНИКА ===

@router.put("/{request_id}/accept")
async def accept_request(
    request_id: str,
    dto: Optional[AcceptRequestDTO] = Body(None),
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.accept(principal, request_id, dto)
    return ApiResponse.ok("Request accepted successfully", request)


@router.put("/{request_id}/reject")
async def reject_request(
    request_id: str,
    dto: Optional[RejectRequestDTO] = Body(None),
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.reject(principal, request_id, dto.reason if dto else None)
    return ApiResponse.ok("Request rejected", request)


@router.put("/{request_id}/start-journey")
async def start_journey(
    request_id: str,
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.start_journey(principal, request_id)
    return ApiResponse.ok("Journey started", request)


@router.put("/{request_id}/arrived")
async def mark_arrived(
    request_id: str,
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.mark_arrived(principal, request_id)
    return ApiResponse.ok("Arrival confirmed", request)


@router.put("/{request_id}/start-work")
async def start_work(
    request_id: str,
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.start_work(principal, request_id)
    return ApiResponse.ok("Work started", request)


@router.put("/{request_id}/complete")
async def complete_request(
    request_id: str,
    dto: Optional[CompleteRequestDTO] = Body(None),
    principal: Principal = Depends(require_mechanic),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    dto = dto or CompleteRequestDTO()
    request = await service.complete(principal, request_id, dto.actual_cost, dto.notes)
    return ApiResponse.ok("Request completed", request)


# === ОБЩИЙ ПЕРЕХОД, ОЦЕНКА, ОПЛАТА ===

@router.put("/{request_id}/status")
async def update_status(
    request_id: str,
    dto: StatusUpdateDTO,
    principal: Principal = Depends(get_current_principal),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.update_status(principal, request_id, dto)
    return ApiResponse.ok(f"Request status updated to {request.status.value}", request)


@router.put("/{request_id}/rate")
async def rate_request(
    request_id: str,
    dto: RateRequestDTO,
    principal: Principal = Depends(get_current_principal),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    request = await service.rate(principal, request_id, dto)
    return ApiResponse.ok("Rating submitted", request)


@router.put("/{request_id}/payment-completed", deprecated=True)
async def payment_completed(
    request_id: str,
    dto: PaymentCompletedDTO,
    principal: Principal = Depends(get_current_principal),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """Устаревший путь: то же, что POST /payment."""
    payment, request = await payments.record_payment(
        principal,
        request_id,
        dto.amount,
        dto.method,
        transaction_id=dto.transaction_id,
    )
    return ApiResponse.ok("Payment recorded", {"payment": payment, "request": request})

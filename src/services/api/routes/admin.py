# src/services/api/routes/admin.py
"""
Администрирование: блокировка пользователей, верификация механиков,
принудительные переходы, модерация правок профиля, политика цен,
настройки платформы и режим обслуживания.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import Field, field_validator

from src.common.constants import ChangeRequestStatus, RequestStatus
from src.core.maintenance.service import MaintenanceService
from src.core.mechanics.models import VerificationUpdateDTO
from src.core.mechanics.service import MechanicService
from src.core.moderation.models import ModerationDecisionDTO
from src.core.moderation.service import ModerationService
from src.core.pricing.models import PricingPolicyUpdateDTO
from src.core.pricing.policy import PricingPolicyService
from src.core.requests.service import LifecycleService
from src.core.users.models import Principal
from src.core.users.service import UserService
from src.services.api.dependencies import (
    get_lifecycle_service,
    get_maintenance_service,
    get_mechanic_service,
    get_moderation_service,
    get_pagination,
    get_pricing_policy_service,
    get_user_service,
    require_admin,
)
from src.shared.models.common import ApiResponse, CamelModel, PaginationParams


router = APIRouter(prefix="/admin", tags=["Admin"])


# === REQUEST MODELS ===

class ForceStatusDTO(CamelModel):
    """Тело PUT /admin/requests/{id}/status."""
    status: RequestStatus

    @field_validator("status", mode="before")
    @classmethod
    def normalize_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return RequestStatus.normalize(v)
        return v


class MaintenanceStartDTO(CamelModel):
    reason: Optional[str] = Field(None, max_length=500)


class UserStatusDTO(CamelModel):
    """Тело PUT /admin/users/{id}/status."""
    is_active: bool


# === ПОЛЬЗОВАТЕЛИ ===

@router.put("/users/{user_id}/status")
async def set_user_status(
    user_id: str,
    dto: UserStatusDTO,
    admin: Principal = Depends(require_admin),
    service: UserService = Depends(get_user_service),
) -> dict[str, Any]:
    user = await service.set_active(admin, user_id, dto.is_active)
    return ApiResponse.ok(f"User {'activated' if dto.is_active else 'deactivated'} successfully", {"user": user})


# === МЕХАНИКИ ===

@router.put("/mechanics/{mechanic_id}/verification")
async def set_verification(
    mechanic_id: str,
    dto: VerificationUpdateDTO,
    admin: Principal = Depends(require_admin),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    mechanic = await service.set_verification(admin, mechanic_id, dto)
    return ApiResponse.ok(f"Verification status set to {dto.status.value}", mechanic)


@router.post("/mechanics/backfill-current-location")
async def backfill_current_location(
    admin: Principal = Depends(require_admin),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    updated = await service.backfill_current_location(admin)
    return ApiResponse.ok(f"Backfilled {updated} mechanics", {"updated": updated})


# === ЗАЯВКИ ===

@router.put("/requests/{request_id}/status")
async def force_request_status(
    request_id: str,
    dto: ForceStatusDTO,
    admin: Principal = Depends(require_admin),
    service: LifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    """Переход от имени администратора, включая отмену после выезда механика."""
    request = await service.force_status(admin, request_id, dto.status)
    return ApiResponse.ok(f"Request status set to {request.status.value}", request)


# === МОДЕРАЦИЯ ===

@router.get("/change-requests")
async def list_change_requests(
    status: Optional[ChangeRequestStatus] = Query(ChangeRequestStatus.PENDING),
    pagination: PaginationParams = Depends(get_pagination),
    admin: Principal = Depends(require_admin),
    service: ModerationService = Depends(get_moderation_service),
) -> dict[str, Any]:
    page = await service.list(admin, status, pagination)
    return ApiResponse.ok("Change requests retrieved", page)


@router.put("/change-requests/{change_id}/approve")
async def approve_change_request(
    change_id: str,
    dto: Optional[ModerationDecisionDTO] = Body(None),
    admin: Principal = Depends(require_admin),
    service: ModerationService = Depends(get_moderation_service),
) -> dict[str, Any]:
    change = await service.approve(admin, change_id, dto.notes if dto else None)
    return ApiResponse.ok("Change request approved", change)


@router.put("/change-requests/{change_id}/reject")
async def reject_change_request(
    change_id: str,
    dto: Optional[ModerationDecisionDTO] = Body(None),
    admin: Principal = Depends(require_admin),
    service: ModerationService = Depends(get_moderation_service),
) -> dict[str, Any]:
    change = await service.reject(admin, change_id, dto.notes if dto else None)
    return ApiResponse.ok("Change request rejected", change)


# === ПОЛИТИКА ЦЕН ===

@router.get("/policies/pricing")
async def get_pricing_policy(
    admin: Principal = Depends(require_admin),
    service: PricingPolicyService = Depends(get_pricing_policy_service),
) -> dict[str, Any]:
    policy = await service.get_current()
    return ApiResponse.ok("Pricing policy retrieved", policy)


@router.put("/policies/pricing")
async def update_pricing_policy(
    dto: PricingPolicyUpdateDTO,
    admin: Principal = Depends(require_admin),
    service: PricingPolicyService = Depends(get_pricing_policy_service),
) -> dict[str, Any]:
    policy = await service.update(admin, dto)
    return ApiResponse.ok("Pricing policy updated", policy)


# === РЕЖИМ ОБСЛУЖИВАНИЯ ===

@router.post("/maintenance/start")
async def start_maintenance(
    dto: Optional[MaintenanceStartDTO] = Body(None),
    admin: Principal = Depends(require_admin),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, Any]:
    result = await service.start(admin, dto.reason if dto else None)
    return ApiResponse.ok("Maintenance mode enabled", result)


@router.post("/maintenance/stop")
async def stop_maintenance(
    admin: Principal = Depends(require_admin),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, Any]:
    result = await service.stop(admin)
    return ApiResponse.ok("Maintenance mode disabled", result)


# === НАСТРОЙКИ ===

@router.get("/settings")
async def get_settings(
    admin: Principal = Depends(require_admin),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, Any]:
    return ApiResponse.ok("Settings loaded", await service.list_settings(admin))


@router.put("/settings")
async def update_settings(
    values: dict[str, Any] = Body(...),
    admin: Principal = Depends(require_admin),
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, Any]:
    """Тело - объект {key: value}; переданные ключи перезаписываются."""
    return ApiResponse.ok("Settings updated", await service.update_settings(admin, values))

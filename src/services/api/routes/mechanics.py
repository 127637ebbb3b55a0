# src/services/api/routes/mechanics.py
"""
Механики: поиск, профиль, отзывы, доступность и позиция.
"""

from __future__ import annotations

import math
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import field_validator

from src.common.constants import RequestStatus, VehicleType
from src.core.dispatch.service import Dispatcher
from src.core.mechanics.models import AvailabilityUpdateDTO, LocationUpdateDTO, ProfileUpdateDTO
from src.core.mechanics.service import MechanicService
from src.core.users.models import Principal
from src.services.api.dependencies import (
    get_current_principal,
    get_dispatcher,
    get_mechanic_service,
    get_pagination,
    get_status_filter,
    require_mechanic,
)
from src.shared.models.common import ApiResponse, CamelModel, PaginationParams


router = APIRouter(prefix="/mechanics", tags=["Mechanics"])


# === REQUEST MODELS ===

class MatchRequestDTO(CamelModel):
    """Тело POST /mechanics/match."""
    longitude: float
    latitude: float
    vehicle_type: Optional[VehicleType] = None

    @field_validator("longitude", "latitude")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("coordinate must be finite")
        return v


# === ПОИСК ===

@router.get("/nearby")
async def nearby_mechanics(
    longitude: Optional[float] = Query(None),
    latitude: Optional[float] = Query(None),
    vehicle_type: Optional[VehicleType] = Query(None, alias="vehicleType"),
    max_distance: Optional[int] = Query(None, alias="maxDistance", ge=1),
    include_unavailable: bool = Query(False, alias="includeUnavailable"),
    principal: Principal = Depends(get_current_principal),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    """
    Механики поблизости.
    Без координат возвращаются все подходящие, по рейтингу.
    """
    mechanics = await service.find_nearby(
        longitude,
        latitude,
        vehicle_type=vehicle_type.value if vehicle_type else None,
        radius_m=max_distance,
        include_unavailable=include_unavailable,
    )
    return ApiResponse.ok(f"Found {len(mechanics)} mechanics", mechanics)


@router.post("/match")
async def match_mechanic(
    dto: MatchRequestDTO,
    principal: Principal = Depends(get_current_principal),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    mechanic = await dispatcher.match(
        dto.longitude,
        dto.latitude,
        dto.vehicle_type.value if dto.vehicle_type else None,
    )
    return ApiResponse.ok("Mechanic matched", mechanic)


# === СВОЙ ПРОФИЛЬ ===

@router.get("/profile/me")
async def my_profile(
    principal: Principal = Depends(require_mechanic),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    mechanic = await service.get_me(principal)
    return ApiResponse.ok("Profile retrieved", mechanic)


@router.get("/stats")
async def my_stats(
    principal: Principal = Depends(require_mechanic),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    stats = await service.stats(principal)
    return ApiResponse.ok("Statistics retrieved", stats)


@router.put("/availability")
async def update_availability(
    dto: AvailabilityUpdateDTO,
    principal: Principal = Depends(require_mechanic),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    mechanic = await service.set_availability(principal, dto.is_available)
    message = "You are now available" if dto.is_available else "You are now unavailable"
    return ApiResponse.ok(message, mechanic)


@router.put("/location")
async def update_location(
    dto: LocationUpdateDTO,
    principal: Principal = Depends(require_mechanic),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    mechanic = await service.update_location(principal, dto.longitude, dto.latitude)
    return ApiResponse.ok("Location updated", mechanic)


@router.put("/profile")
async def update_profile(
    dto: ProfileUpdateDTO,
    principal: Principal = Depends(require_mechanic),
    service: MechanicService = Depends(get_mechanic_service),
):
    """
    Правка профиля.
    Чувствительные поля и крупные изменения цен уходят на модерацию (202).
    """
    result = await service.update_profile(principal, dto)
    if result.pending_review:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=ApiResponse.ok("Changes submitted for admin review", result),
        )
    return ApiResponse.ok("Profile updated", result)


# === ПУБЛИЧНЫЙ ПРОФИЛЬ ===

@router.get("/{mechanic_id}/profile")
async def mechanic_profile(
    mechanic_id: str,
    principal: Principal = Depends(get_current_principal),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    mechanic = await service.get_profile(mechanic_id)
    return ApiResponse.ok("Profile retrieved", mechanic)


@router.get("/{mechanic_id}/reviews")
async def mechanic_reviews(
    mechanic_id: str,
    pagination: PaginationParams = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    page = await service.list_reviews(mechanic_id, pagination)
    return ApiResponse.ok("Reviews retrieved", page)


@router.get("/{mechanic_id}/history")
async def mechanic_history(
    mechanic_id: str,
    statuses: Optional[list[RequestStatus]] = Depends(get_status_filter),
    pagination: PaginationParams = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    service: MechanicService = Depends(get_mechanic_service),
) -> dict[str, Any]:
    page = await service.history(principal, mechanic_id, statuses, pagination)
    return ApiResponse.ok("History retrieved", page)

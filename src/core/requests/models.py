# src/core/requests/models.py
"""
Модели заявок на помощь.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator

from src.common.constants import (
    PaymentMethod,
    PaymentStatus,
    Priority,
    RequestStatus,
    VehicleType,
    ACTIVE_REQUEST_STATUSES,
    TERMINAL_REQUEST_STATUSES,
)
from src.core.pricing.models import PricedService
from src.shared.models.common import CamelModel, PriceBand


class PickupLocation(CamelModel):
    """Точка, где нужна помощь."""

    longitude: float
    latitude: float
    address: str = ""
    landmark: Optional[str] = None


class Timeline(CamelModel):
    """Метки времени жизненного цикла. Каждая ставится один раз."""

    requested_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    on_way_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class RatingInfo(CamelModel):
    """Оценки сторон."""

    user_rating: Optional[int] = None
    user_comment: Optional[str] = None
    mechanic_rating: Optional[int] = None
    mechanic_comment: Optional[str] = None


class RequestNote(CamelModel):
    """Заметка к заявке."""

    author: str
    content: str
    ts: datetime


class ServiceRequest(CamelModel):
    """Заявка на помощь на дороге."""

    id: str
    user_id: str
    mechanic_id: Optional[str] = None
    # Пользователь-владелец профиля механика (для персональной комнаты)
    mechanic_user_id: Optional[str] = None

    vehicle_type: VehicleType
    problem_type: str
    description: str
    pickup: PickupLocation

    status: RequestStatus = RequestStatus.PENDING
    priority: Priority = Priority.MEDIUM
    is_emergency: bool = False

    selected_services: list[PricedService] = Field(default_factory=list)
    vehicle_multiplier: float = 1.0
    estimated_cost: Optional[float] = None
    estimated_cost_range: PriceBand = Field(default_factory=PriceBand)
    actual_cost: Optional[float] = None
    estimated_arrival_at: Optional[datetime] = None

    payment_status: PaymentStatus = PaymentStatus.NONE
    payment_method: Optional[PaymentMethod] = None
    payment_ids: list[str] = Field(default_factory=list)

    timeline: Timeline = Field(default_factory=Timeline)
    rating: RatingInfo = Field(default_factory=RatingInfo)
    cancellation_reason: Optional[str] = None
    notes: list[RequestNote] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Заявка занимает механика."""
        return self.status in ACTIVE_REQUEST_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def is_participant(self, principal_id: str) -> bool:
        """Принципал - заявитель или назначенный механик."""
        return principal_id in (self.user_id, self.mechanic_user_id)


class SelectedServiceInput(CamelModel):
    """Выбранная клиентом услуга (строкой или объектом)."""

    key: str = Field(..., min_length=1)
    label: str = ""
    notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def from_plain_key(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"key": value}
        return value

    def to_priced(self) -> PricedService:
        return PricedService(key=self.key, label=self.label, notes=self.notes)


class CreateRequestDTO(CamelModel):
    """Тело POST /requests."""

    vehicle_type: VehicleType
    problem_type: str = Field(..., min_length=1, max_length=64)
    description: str = Field(..., max_length=500)
    pickup_location: PickupLocation
    mechanic_id: Optional[str] = None
    selected_services: list[SelectedServiceInput] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    is_emergency: bool = False
    estimated_cost: Optional[float] = None

    @field_validator("description")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("description must not be empty")
        return v.strip()

    @field_validator("pickup_location")
    @classmethod
    def usable_point(cls, v: PickupLocation) -> PickupLocation:
        for coord in (v.longitude, v.latitude):
            if not math.isfinite(coord) or coord == 0:
                raise ValueError("pickup coordinates must be non-zero finite numbers")
        return v

    @field_validator("mechanic_id")
    @classmethod
    def empty_as_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class AcceptRequestDTO(CamelModel):
    """Тело PUT /requests/{id}/accept."""

    estimated_arrival_time: Optional[datetime] = None
    estimated_cost: Optional[float] = Field(None, ge=0)


class RejectRequestDTO(CamelModel):
    """Тело PUT /requests/{id}/reject."""

    reason: Optional[str] = Field(None, max_length=500)


class StatusUpdateDTO(CamelModel):
    """Тело PUT /requests/{id}/status."""

    status: RequestStatus
    actual_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    cancellation_reason: Optional[str] = Field(None, max_length=500)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return RequestStatus.normalize(v)
        return v


class CompleteRequestDTO(CamelModel):
    """Тело PUT /requests/{id}/complete."""

    actual_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class RateRequestDTO(CamelModel):
    """Тело PUT /requests/{id}/rate."""

    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class MechanicStats(CamelModel):
    """Сводка по механику."""

    total_jobs: int = 0
    completed_jobs: int = 0
    cancelled_jobs: int = 0
    active_jobs: int = 0
    total_earnings: float = 0.0
    rating: float = 5.0
    total_ratings: int = 0


def parse_status_filter(raw: str | None) -> list[RequestStatus] | None:
    """
    Разбирает фильтр статусов вида "accepted,on_way" (синонимы допускаются).

    Raises:
        ValueError: Неизвестный статус
    """
    if not raw:
        return None
    return [RequestStatus.normalize(part) for part in raw.split(",") if part.strip()] or None
